"""
SQLAlchemy database models
"""
from sqlalchemy import Column, Integer, String, Float, DateTime, Text, JSON, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from database import Base


class CellStatus(enum.Enum):
    """Lifecycle of a single cell value inside a row document"""
    NONE = "none"                            # stored as an absent "status" key
    PENDING = "pending"                      # queued by a job, not yet picked up
    PROCESSING = "processing"                # picked up by the synchronous engine
    COMPLETE = "complete"
    ERROR = "error"
    BATCH_SUBMITTED = "batch_submitted"      # part of a provider-side batch
    BATCH_PROCESSING = "batch_processing"


class JobStatus(enum.Enum):
    """Status of cursor-based jobs (enrichment, email finder, formula)"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    ERROR = "error"


class BatchJobStatus(enum.Enum):
    """Internal status of a provider-side batch job"""
    PENDING = "pending"
    UPLOADING = "uploading"
    SUBMITTED = "submitted"
    PROCESSING = "processing"
    DOWNLOADING = "downloading"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class RemoteBatchStatus(enum.Enum):
    """Batch lifecycle as reported by the Azure OpenAI Batch API"""
    PENDING_UPLOAD = "pending_upload"   # local only, before the remote batch exists
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


# =============================================================================
# TABLE DATA
# =============================================================================

class DataTable(Base):
    """Spreadsheet-style table"""
    __tablename__ = "tables"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    columns = relationship("TableColumn", back_populates="table", cascade="all, delete-orphan",
                           order_by="TableColumn.order")


class TableColumn(Base):
    """Column definition; enrichment and formula columns point at their config"""
    __tablename__ = "columns"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    type = Column(String(20), default="text")  # text, number, enrichment, formula, email
    width = Column(Integer, default=150)
    order = Column(Integer, default=0)

    enrichment_config_id = Column(String(36), ForeignKey("enrichment_configs.id", ondelete="SET NULL"), nullable=True)
    formula_config_id = Column(String(36), ForeignKey("formula_configs.id", ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)

    table = relationship("DataTable", back_populates="columns")

    __table_args__ = (
        Index('ix_columns_table_id', 'table_id'),
    )


class Row(Base):
    """Table row; `data` is the cell map keyed by column id"""
    __tablename__ = "rows"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    data = Column(JSON, default=dict)  # {columnId: CellValue document}

    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index('ix_rows_table_id', 'table_id'),
    )


# =============================================================================
# CONFIGS
# =============================================================================

class EnrichmentConfig(Base):
    """Prompt template and model settings for an enrichment column"""
    __tablename__ = "enrichment_configs"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    model = Column(String(100), nullable=False, default="gemini-2.0-flash")
    prompt = Column(Text, nullable=False)
    input_columns = Column(JSON, default=list)   # column ids referenced by the prompt
    output_columns = Column(JSON, default=list)  # Data Guide field names, in order
    output_format = Column(String(20), default="text")  # text, json
    temperature = Column(Float, default=0.7)
    max_tokens = Column(Integer, nullable=True)

    cost_limit_enabled = Column(Boolean, default=False)
    max_cost_per_row = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FormulaConfig(Base):
    """Saved formula for a formula column"""
    __tablename__ = "formula_configs"

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    formula = Column(Text, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# =============================================================================
# JOBS
# =============================================================================

class EnrichmentJob(Base):
    """Cursor-based AI enrichment job advanced by the synchronous engine"""
    __tablename__ = "enrichment_jobs"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    config_id = Column(String(36), nullable=False)  # no FK: a deleted config fails the job
    target_column_id = Column(String(36), nullable=False)

    row_ids = Column(JSON, nullable=False, default=list)
    current_index = Column(Integer, default=0)
    status = Column(String(20), default=JobStatus.PENDING.value)

    processed_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    total_cost = Column(Float, default=0.0)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_enrichment_jobs_status', 'status'),
        Index('ix_enrichment_jobs_target_column', 'target_column_id'),
    )


class BatchEnrichmentJob(Base):
    """Enrichment submitted to the Azure OpenAI Batch API"""
    __tablename__ = "batch_enrichment_jobs"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    config_id = Column(String(36), nullable=False)
    target_column_id = Column(String(36), nullable=False)

    # Jobs larger than the provider row limit are split into a group
    batch_group_id = Column(String(36), nullable=True)
    batch_number = Column(Integer, default=1)
    total_batches = Column(Integer, default=1)

    row_mappings = Column(JSON, nullable=False, default=list)  # [{rowId, customId}]

    azure_batch_id = Column(String(100))
    azure_file_id = Column(String(100))
    azure_output_file_id = Column(String(100))
    azure_error_file_id = Column(String(100))
    azure_status = Column(String(20), default=RemoteBatchStatus.PENDING_UPLOAD.value)
    status = Column(String(20), default=BatchJobStatus.PENDING.value)

    total_rows = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    success_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)     # provider-reported line errors
    orphan_count = Column(Integer, default=0)    # mapped rows missing from the results
    total_cost = Column(Float, default=0.0)
    total_input_tokens = Column(Integer, default=0)
    total_output_tokens = Column(Integer, default=0)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    submitted_at = Column(DateTime)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_batch_jobs_status', 'status'),
        Index('ix_batch_jobs_target_column', 'target_column_id'),
    )


class EmailFinderJob(Base):
    """Cursor-based email lookup job"""
    __tablename__ = "email_finder_jobs"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    target_column_id = Column(String(36), nullable=False)

    input_mode = Column(String(20), default="full_name")  # full_name, first_last
    full_name_column_id = Column(String(36))
    first_name_column_id = Column(String(36))
    last_name_column_id = Column(String(36))
    domain_column_id = Column(String(36), nullable=False)

    row_ids = Column(JSON, nullable=False, default=list)
    current_index = Column(Integer, default=0)
    status = Column(String(20), default=JobStatus.PENDING.value)

    processed_count = Column(Integer, default=0)
    found_count = Column(Integer, default=0)
    not_found_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_email_jobs_status', 'status'),
    )


class FormulaJob(Base):
    """Durable progress record for a formula run"""
    __tablename__ = "formula_jobs"

    id = Column(String(36), primary_key=True)
    table_id = Column(String(36), ForeignKey("tables.id", ondelete="CASCADE"), nullable=False)
    formula_config_id = Column(String(36), nullable=False)
    target_column_id = Column(String(36), nullable=False)

    row_ids = Column(JSON, nullable=False, default=list)
    current_index = Column(Integer, default=0)
    status = Column(String(20), default=JobStatus.PENDING.value)

    processed_count = Column(Integer, default=0)
    error_count = Column(Integer, default=0)
    last_error = Column(Text)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        Index('ix_formula_jobs_status', 'status'),
    )
