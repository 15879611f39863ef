"""
Synchronous enrichment engine

Each scheduled invocation advances every active job by one bounded batch of
rows. All progress lives in the job record (current_index plus counters), so
any invocation can pick up where the previous one stopped.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings
from models import CellStatus, EnrichmentConfig, EnrichmentJob, JobStatus, Row, TableColumn
from services.ai_provider import (
    AIProviderService, ai_provider_service, calculate_cost, get_provider_from_model,
    get_provider_rate_limits, max_output_tokens_for_budget,
)
from services.cell_values import CellMetadata, enrichment_error_cells, enrichment_result_cells, with_status
from services.job_controller import JobAdmissionError, JobNotFoundError, job_controller
from services.job_state import ACTIVE_JOB_STATUSES, touch, transition
from services.prompt_builder import build_prompt, index_columns_by_name
from services.response_parser import parse_ai_response
from services.row_batcher import RowPatch, apply_patches
from services.table_service import get_table_columns, load_rows, resolve_output_column_ids
import logging

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"


class CostLimitExceeded(Exception):
    pass


@dataclass
class EnrichmentContext:
    """Everything a row needs that is shared across the batch"""
    config: EnrichmentConfig
    target_column_id: str
    columns_by_name: Dict[str, TableColumn]
    output_column_ids: Dict[str, str]

    @property
    def model_id(self) -> str:
        return self.config.model or DEFAULT_MODEL


@dataclass
class RowOutcome:
    row_id: str
    cells: Dict[str, Dict[str, Any]]
    cost: float = 0.0
    failed: bool = False
    error: Optional[str] = None


@dataclass
class SweepSummary:
    active_jobs: int = 0
    processed: int = 0
    stale_completed: List[str] = field(default_factory=list)
    failed_jobs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activeJobs": self.active_jobs,
            "processed": self.processed,
            "staleCompleted": self.stale_completed,
            "failedJobs": self.failed_jobs,
        }


def build_context(db: Session, config: EnrichmentConfig, table_id: str, target_column_id: str) -> EnrichmentContext:
    columns = get_table_columns(db, table_id)
    return EnrichmentContext(
        config=config,
        target_column_id=target_column_id,
        columns_by_name=index_columns_by_name(columns),
        output_column_ids=resolve_output_column_ids(columns, config.output_columns, exclude_column_id=target_column_id),
    )


class EnrichmentEngine:
    """Cursor-based batch processor for EnrichmentJob records"""

    def __init__(self, ai_service: Optional[AIProviderService] = None):
        self.ai_service = ai_service or ai_provider_service
        self.batch_size = settings.ENRICHMENT_BATCH_SIZE
        self.timeout_seconds = settings.AI_TIMEOUT_SECONDS
        self.stale_after = timedelta(minutes=settings.STALE_JOB_MINUTES)

    # ------------------------------------------------------------------
    # Row level
    # ------------------------------------------------------------------

    async def enrich_row(self, row_cells: Dict[str, Any], ctx: EnrichmentContext) -> RowOutcome:
        """Generate, price and parse one row. Raises on provider failure or timeout."""
        config = ctx.config
        model_id = ctx.model_id
        prompt = build_prompt(
            config.prompt,
            row_cells,
            ctx.columns_by_name,
            config.output_columns or [],
            include_metadata_fields=True,
        )

        ceiling = config.max_tokens or settings.DEFAULT_MAX_OUTPUT_TOKENS
        max_tokens = ceiling
        if config.cost_limit_enabled and config.max_cost_per_row:
            max_tokens = max_output_tokens_for_budget(model_id, prompt, config.max_cost_per_row, ceiling)
            if max_tokens <= 0:
                raise CostLimitExceeded(
                    f"Estimated prompt cost exceeds the per-row limit of ${config.max_cost_per_row}"
                )

        try:
            result = await asyncio.wait_for(
                self.ai_service.generate(
                    prompt,
                    model_id,
                    temperature=config.temperature if config.temperature is not None else 0.7,
                    max_output_tokens=max_tokens,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise TimeoutError(f"AI request timed out after {int(self.timeout_seconds)} seconds") from None

        cost = calculate_cost(model_id, result.input_tokens, result.output_tokens)
        parsed = parse_ai_response(result.text)
        metadata = CellMetadata(
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            time_taken_ms=result.time_taken_ms,
            total_cost=cost,
            forced_to_finish_early=max_tokens < ceiling and result.finish_reason == "length",
        )
        cells = enrichment_result_cells(
            parsed.display_value,
            parsed.structured_data,
            result.text,
            metadata,
            ctx.target_column_id,
            ctx.output_column_ids,
        )
        return RowOutcome(row_id="", cells=cells, cost=cost)

    async def _run_row(self, row_id: str, row_cells: Dict[str, Any], ctx: EnrichmentContext) -> RowOutcome:
        try:
            outcome = await self.enrich_row(row_cells, ctx)
            outcome.row_id = row_id
            return outcome
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"[ENRICH] Row {row_id} failed: {message}")
            return RowOutcome(
                row_id=row_id,
                cells=enrichment_error_cells(message, ctx.target_column_id, ctx.output_column_ids),
                failed=True,
                error=message,
            )

    async def run_rows(self, rows: List[Row], ctx: EnrichmentContext) -> List[RowOutcome]:
        """Run rows in provider-sized concurrent chunks with a pause between chunks"""
        limits = get_provider_rate_limits(get_provider_from_model(ctx.model_id))
        size = max(1, limits.concurrent_requests)
        outcomes: List[RowOutcome] = []
        for i in range(0, len(rows), size):
            chunk = rows[i:i + size]
            outcomes.extend(await asyncio.gather(
                *[self._run_row(row.id, dict(row.data or {}), ctx) for row in chunk]
            ))
            if i + size < len(rows) and limits.delay_between_chunks_ms:
                await asyncio.sleep(limits.delay_between_chunks_ms / 1000)
        return outcomes

    # ------------------------------------------------------------------
    # Job level
    # ------------------------------------------------------------------

    def _finish(self, db: Session, job_id: str, **values) -> bool:
        values.update({"status": JobStatus.COMPLETE.value, "completed_at": datetime.utcnow()})
        return transition(db, EnrichmentJob, job_id, values, ACTIVE_JOB_STATUSES)

    async def process_job_batch(self, db: Session, job: EnrichmentJob) -> int:
        """Advance one job by one batch. Returns the number of row ids attempted."""
        job_id = job.id
        row_ids = list(job.row_ids or [])
        start = job.current_index or 0

        if start >= len(row_ids):
            self._finish(db, job_id)
            return 0

        # A cancelled job fails this guard and is skipped
        if not transition(db, EnrichmentJob, job_id, {"status": JobStatus.RUNNING.value}, ACTIVE_JOB_STATUSES):
            logger.info(f"[ENRICH] Job {job_id} is no longer active, skipping")
            return 0

        config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == job.config_id).first()
        if config is None:
            transition(
                db, EnrichmentJob, job_id,
                {"status": JobStatus.ERROR.value, "last_error": "Enrichment config not found",
                 "completed_at": datetime.utcnow()},
                ACTIVE_JOB_STATUSES,
            )
            logger.error(f"[ENRICH] Job {job_id}: config {job.config_id} not found")
            return 0

        ctx = build_context(db, config, job.table_id, job.target_column_id)
        batch_ids = row_ids[start:start + self.batch_size]
        found = load_rows(db, batch_ids)
        rows = [found[rid] for rid in dict.fromkeys(batch_ids) if rid in found]

        if not rows:
            self._finish(db, job_id, current_index=len(row_ids))
            logger.info(f"[ENRICH] Job {job_id}: no rows left in batch, completed")
            return 0

        # Processing marks; the same documents are the base for the result writes
        base_docs = {}
        for row in rows:
            data = dict(row.data or {})
            data[ctx.target_column_id] = with_status(data, ctx.target_column_id, CellStatus.PROCESSING)
            base_docs[row.id] = data
        apply_patches(db, [RowPatch(row_id=rid, data=data) for rid, data in base_docs.items()])
        rows = list(load_rows(db, list(base_docs)).values())

        logger.info(f"[ENRICH] Job {job_id}: rows {start}-{start + len(batch_ids)} of {len(row_ids)} "
                    f"({len(rows)} resolved, model={ctx.model_id})")
        outcomes = await self.run_rows(rows, ctx)

        patches = []
        batch_cost = 0.0
        batch_errors = 0
        for outcome in outcomes:
            data = dict(base_docs.get(outcome.row_id) or {})
            data.update(outcome.cells)
            patches.append(RowPatch(row_id=outcome.row_id, data=data))
            batch_cost += outcome.cost
            if outcome.failed:
                batch_errors += 1
        apply_patches(db, patches)

        # Cursor and counters move together, once, and only from the cursor we started at
        new_index = start + len(batch_ids)
        done = new_index >= len(row_ids)
        advanced = transition(
            db, EnrichmentJob, job_id,
            {
                "current_index": new_index,
                "processed_count": EnrichmentJob.processed_count + len(batch_ids),
                "error_count": EnrichmentJob.error_count + batch_errors,
                "total_cost": EnrichmentJob.total_cost + batch_cost,
                "status": JobStatus.COMPLETE.value if done else JobStatus.RUNNING.value,
                "completed_at": datetime.utcnow() if done else None,
            },
            [JobStatus.RUNNING.value],
            EnrichmentJob.current_index == start,
        )
        if not advanced:
            logger.info(f"[ENRICH] Job {job_id}: cursor not advanced (cancelled or advanced elsewhere)")
        elif done:
            logger.info(f"[ENRICH] Job {job_id} complete")
        return len(batch_ids)

    def is_stale(self, job: EnrichmentJob, now: datetime) -> bool:
        if not job.updated_at or not job.current_index:
            return False
        return now - job.updated_at > self.stale_after

    async def process_active_jobs(self, db: Session, now: Optional[datetime] = None) -> SweepSummary:
        """Scheduled entry point: one batch for every pending/running job"""
        now = now or datetime.utcnow()
        jobs = (
            db.query(EnrichmentJob)
            .filter(EnrichmentJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(EnrichmentJob.created_at)
            .all()
        )
        summary = SweepSummary(active_jobs=len(jobs))

        for job in jobs:
            job_id = job.id
            try:
                if self.is_stale(job, now):
                    logger.warning(f"[ENRICH] Job {job_id} is stale "
                                   f"({(now - job.updated_at).total_seconds() / 60:.1f} min), completing")
                    if job_controller.force_complete_job(db, job_id):
                        summary.stale_completed.append(job_id)
                    continue
                summary.processed += await self.process_job_batch(db, job)
            except Exception as e:
                logger.error(f"[ENRICH] Job {job_id} batch failed: {e}", exc_info=True)
                db.rollback()
                touch(db, EnrichmentJob, job_id, last_error=str(e))
                summary.failed_jobs[job_id] = str(e)

        return summary

    # ------------------------------------------------------------------
    # Single cell retry
    # ------------------------------------------------------------------

    async def retry_cell(self, db: Session, row_id: str, column_id: str) -> Dict[str, Any]:
        """Re-run the enrichment for one cell right away; returns the new cell document"""
        column = db.query(TableColumn).filter(TableColumn.id == column_id).first()
        if column is None:
            raise JobNotFoundError(f"Column {column_id} not found")
        if not column.enrichment_config_id:
            raise JobAdmissionError("Column has no enrichment config")
        config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == column.enrichment_config_id).first()
        if config is None:
            raise JobAdmissionError("Enrichment config not found")
        row = db.query(Row).filter(Row.id == row_id).first()
        if row is None:
            raise JobNotFoundError(f"Row {row_id} not found")

        ctx = build_context(db, config, column.table_id, column_id)
        data = dict(row.data or {})
        data[column_id] = with_status(data, column_id, CellStatus.PROCESSING)
        apply_patches(db, [RowPatch(row_id=row_id, data=data)])

        outcome = await self._run_row(row_id, data, ctx)
        data.update(outcome.cells)
        apply_patches(db, [RowPatch(row_id=row_id, data=data)])
        return data[column_id]


# Singleton instance
enrichment_engine = EnrichmentEngine()
