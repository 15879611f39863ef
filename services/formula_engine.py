"""
Formula jobs

A formula run is a durable FormulaJob with a cursor, so progress survives
restarts and can be read by any process.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from models import CellStatus, FormulaConfig, FormulaJob, JobStatus, TableColumn
from services.cell_values import CellValue, clear_status, error_cell
from services.formula_evaluator import evaluate_formula, validate_formula
from services.job_controller import IN_FLIGHT_STATUSES, JobAdmissionError, JobNotFoundError, rewrite_cells
from services.job_state import ACTIVE_JOB_STATUSES, transition
from services.row_batcher import RowPatch, apply_patches
from services.table_service import get_table_columns, list_row_ids, load_rows
import logging

logger = logging.getLogger(__name__)


class FormulaEngine:
    def __init__(self):
        self.batch_size = settings.FORMULA_BATCH_SIZE

    def get_job(self, db: Session, job_id: str) -> Optional[FormulaJob]:
        return db.query(FormulaJob).filter(FormulaJob.id == job_id).first()

    def _save_config(self, db: Session, formula: str, name: str, config_id: Optional[str]) -> FormulaConfig:
        config = None
        if config_id:
            config = db.query(FormulaConfig).filter(FormulaConfig.id == config_id).first()
            if config is None:
                raise JobAdmissionError("Formula config not found")
            config.formula = formula
            config.name = name
        else:
            config = FormulaConfig(id=str(uuid.uuid4()), name=name, formula=formula)
            db.add(config)
        db.commit()
        db.refresh(config)
        return config

    def _output_column(self, db: Session, table_id: str, name: str, config: FormulaConfig) -> TableColumn:
        """Column already bound to the config, otherwise a new formula column"""
        column = (
            db.query(TableColumn)
            .filter(TableColumn.table_id == table_id, TableColumn.formula_config_id == config.id)
            .first()
        )
        if column is not None:
            column.name = name
        else:
            next_order = (db.query(func.max(TableColumn.order)).filter(TableColumn.table_id == table_id).scalar() or 0) + 1
            column = TableColumn(
                id=str(uuid.uuid4()),
                table_id=table_id,
                name=name,
                type="formula",
                order=next_order,
                formula_config_id=config.id,
            )
            db.add(column)
        db.commit()
        db.refresh(column)
        return column

    def create_formula_job(
        self,
        db: Session,
        table_id: str,
        formula: str,
        output_column_name: str,
        row_ids: Optional[List[str]] = None,
        config_id: Optional[str] = None,
    ) -> Tuple[Optional[FormulaJob], TableColumn]:
        """
        Save the formula, bind it to an output column and queue a job over
        `row_ids` (all rows when None). Returns (None, column) when there are
        no rows to process.
        """
        if not formula or not formula.strip():
            raise JobAdmissionError("formula is required")
        if not output_column_name:
            raise JobAdmissionError("outputColumnName is required")

        check = validate_formula(formula, get_table_columns(db, table_id))
        if check.error:
            logger.info(f"[FORMULA] Formula does not evaluate on sample values: {check.error}")

        config = self._save_config(db, formula, output_column_name, config_id)
        column = self._output_column(db, table_id, output_column_name, config)

        if not row_ids:
            row_ids = list_row_ids(db, table_id)
        row_ids = list(dict.fromkeys(row_ids))
        if not row_ids:
            return None, column

        self.cancel_formula_jobs(db, column.id)

        job = FormulaJob(
            id=str(uuid.uuid4()),
            table_id=table_id,
            formula_config_id=config.id,
            target_column_id=column.id,
            row_ids=row_ids,
            current_index=0,
            status=JobStatus.PENDING.value,
            processed_count=0,
            error_count=0,
        )
        db.add(job)
        db.commit()

        patches = []
        for row in load_rows(db, row_ids).values():
            data = dict(row.data or {})
            data[column.id] = CellValue(status=CellStatus.PENDING).to_dict()
            patches.append(RowPatch(row_id=row.id, data=data))
        apply_patches(db, patches)

        logger.info(f"[FORMULA] Created job {job.id} for column {column.id} with {len(row_ids)} rows")
        return self.get_job(db, job.id), column

    def cancel_formula_jobs(self, db: Session, column_id: str) -> int:
        jobs = (
            db.query(FormulaJob)
            .filter(FormulaJob.target_column_id == column_id, FormulaJob.status.in_(ACTIVE_JOB_STATUSES))
            .all()
        )
        cancelled = 0
        for job in jobs:
            if transition(db, FormulaJob, job.id, {"status": JobStatus.CANCELLED.value}, ACTIVE_JOB_STATUSES):
                rewrite_cells(db, job.row_ids or [], [column_id], IN_FLIGHT_STATUSES, clear_status)
                cancelled += 1
        return cancelled

    def process_job_batch(self, db: Session, job: FormulaJob) -> int:
        """Evaluate one batch of rows and advance the cursor. Returns rows attempted."""
        job_id = job.id
        row_ids = list(job.row_ids or [])
        start = job.current_index or 0

        if start >= len(row_ids):
            transition(db, FormulaJob, job_id,
                       {"status": JobStatus.COMPLETE.value, "completed_at": datetime.utcnow()},
                       ACTIVE_JOB_STATUSES)
            return 0

        if not transition(db, FormulaJob, job_id, {"status": JobStatus.RUNNING.value}, ACTIVE_JOB_STATUSES):
            return 0

        config = db.query(FormulaConfig).filter(FormulaConfig.id == job.formula_config_id).first()
        if config is None:
            transition(
                db, FormulaJob, job_id,
                {"status": JobStatus.ERROR.value, "last_error": "Formula config not found",
                 "completed_at": datetime.utcnow()},
                ACTIVE_JOB_STATUSES,
            )
            return 0

        columns = get_table_columns(db, job.table_id)
        batch_ids = row_ids[start:start + self.batch_size]
        patches = []
        errors = 0
        for row in load_rows(db, batch_ids).values():
            data = dict(row.data or {})
            result = evaluate_formula(config.formula, data, columns)
            if result.error:
                data[job.target_column_id] = error_cell(result.error)
                errors += 1
            else:
                data[job.target_column_id] = CellValue(value=result.value, status=CellStatus.COMPLETE).to_dict()
            patches.append(RowPatch(row_id=row.id, data=data))
        apply_patches(db, patches)

        new_index = start + len(batch_ids)
        done = new_index >= len(row_ids)
        transition(
            db, FormulaJob, job_id,
            {
                "current_index": new_index,
                "processed_count": FormulaJob.processed_count + len(batch_ids),
                "error_count": FormulaJob.error_count + errors,
                "status": JobStatus.COMPLETE.value if done else JobStatus.RUNNING.value,
                "completed_at": datetime.utcnow() if done else None,
            },
            [JobStatus.RUNNING.value],
            FormulaJob.current_index == start,
        )
        return len(batch_ids)

    def process_formula_jobs(
        self, db: Session, batches_per_job: int = 1, max_batches: Optional[int] = None
    ) -> Dict[str, Any]:
        """Advance each active job by up to `batches_per_job` batches, committing after each"""
        jobs = (
            db.query(FormulaJob)
            .filter(FormulaJob.status.in_(ACTIVE_JOB_STATUSES))
            .order_by(FormulaJob.created_at)
            .all()
        )
        processed = 0
        batches = 0
        for job in jobs:
            job_id = job.id
            for _ in range(batches_per_job):
                if max_batches is not None and batches >= max_batches:
                    break
                db.expire_all()
                job = self.get_job(db, job_id)
                if job is None or job.status not in ACTIVE_JOB_STATUSES:
                    break
                attempted = self.process_job_batch(db, job)
                batches += 1
                processed += attempted
                if attempted == 0:
                    break
        if processed:
            logger.info(f"[FORMULA] Processed {processed} rows across {len(jobs)} jobs")
        return {"activeJobs": len(jobs), "processed": processed}

    def get_formula_progress(self, db: Session, job_id: str) -> Dict[str, Any]:
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Formula job {job_id} not found")
        return {
            "jobId": job.id,
            "columnId": job.target_column_id,
            "completed": job.processed_count or 0,
            "total": len(job.row_ids or []),
            "errors": job.error_count or 0,
            "status": job.status,
        }


# Singleton instance
formula_engine = FormulaEngine()
