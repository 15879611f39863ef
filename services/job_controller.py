"""
Job admission and cancellation

At most one active job targets a column. Creating a job cancels whatever is
active on that column first; cancelling a job resets the cells it left in
pending/processing so nothing stays stuck.
"""
import uuid
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from models import (
    BatchEnrichmentJob, BatchJobStatus, CellStatus, EnrichmentConfig, EnrichmentJob, JobStatus
)
from services.cell_values import clear_status, error_cell, get_cell, is_empty, with_status
from services.job_state import ACTIVE_BATCH_STATUSES, ACTIVE_JOB_STATUSES, transition
from services.row_batcher import RowPatch, apply_patches
from services.table_service import get_table_columns, list_row_ids, load_rows, resolve_output_column_ids
import logging

logger = logging.getLogger(__name__)

STALE_CELL_MESSAGE = "Processing timed out. Please retry."
CANCELLED_BY_USER = "Cancelled by user"

IN_FLIGHT_STATUSES = {CellStatus.PENDING, CellStatus.PROCESSING}
BATCH_CELL_STATUSES = {CellStatus.BATCH_SUBMITTED, CellStatus.BATCH_PROCESSING}


class JobNotFoundError(Exception):
    pass


class JobAdmissionError(Exception):
    """Job request cannot be admitted (unknown config, no rows)"""


def rewrite_cells(
    db: Session,
    row_ids: Iterable[str],
    column_ids: List[str],
    statuses: Iterable[CellStatus],
    replacement: Callable[[Dict, str], Optional[Dict]],
    batch_job_id: Optional[str] = None,
) -> int:
    """
    Replace every cell in `column_ids` whose status is in `statuses` with
    replacement(row_data, column_id); a None replacement removes the cell.
    With batch_job_id set, only cells tagged with that batch job match.
    Returns the number of cells rewritten.
    """
    statuses = set(statuses)
    patches = []
    rewritten = 0
    for row in load_rows(db, list(row_ids)).values():
        data = dict(row.data or {})
        changed = False
        for column_id in column_ids:
            cell = get_cell(data, column_id)
            if cell is None or cell.status not in statuses:
                continue
            if batch_job_id is not None and cell.batch_job_id != batch_job_id:
                continue
            new_cell = replacement(data, column_id)
            if new_cell is None:
                data.pop(column_id, None)
            else:
                data[column_id] = new_cell
            changed = True
            rewritten += 1
        if changed:
            patches.append(RowPatch(row_id=row.id, data=data))
    apply_patches(db, patches)
    return rewritten


def job_column_ids(db: Session, table_id: str, config_id: str, target_column_id: str) -> List[str]:
    """Target column plus the Data Guide output columns of the job's config"""
    config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == config_id).first()
    if config is None or not config.output_columns:
        return [target_column_id]
    columns = get_table_columns(db, table_id)
    output_ids = resolve_output_column_ids(columns, config.output_columns, exclude_column_id=target_column_id)
    return [target_column_id] + list(output_ids.values())


class JobController:
    """Admission, cancellation and stuck-cell recovery for enrichment jobs"""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, db: Session, job_id: str) -> Optional[EnrichmentJob]:
        return db.query(EnrichmentJob).filter(EnrichmentJob.id == job_id).first()

    def list_jobs(self, db: Session, column_id: Optional[str] = None, active_only: bool = True) -> List[EnrichmentJob]:
        query = db.query(EnrichmentJob)
        if column_id:
            query = query.filter(EnrichmentJob.target_column_id == column_id)
        if active_only:
            query = query.filter(EnrichmentJob.status.in_(ACTIVE_JOB_STATUSES))
        return query.order_by(EnrichmentJob.created_at.desc()).all()

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def create_job(
        self,
        db: Session,
        config_id: str,
        table_id: str,
        target_column_id: str,
        row_ids: Optional[List[str]] = None,
        only_empty: bool = False,
    ) -> EnrichmentJob:
        """
        Queue an enrichment job. Active jobs on the same column are cancelled
        before the new job is inserted, then every targeted cell is marked
        pending. row_ids=None targets every row of the table.
        """
        config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == config_id).first()
        if config is None:
            raise JobAdmissionError("Enrichment config not found")

        if row_ids is None:
            row_ids = list_row_ids(db, table_id)
        row_ids = list(dict.fromkeys(row_ids))

        if only_empty:
            rows = load_rows(db, row_ids)
            row_ids = [rid for rid in row_ids if rid in rows and is_empty(rows[rid].data, target_column_id)]

        if not row_ids:
            raise JobAdmissionError("No rows to enrich")

        cancelled = self.cancel_jobs_for_column(db, target_column_id)
        for batch_job in self.active_batch_jobs_for_column(db, target_column_id):
            self.cancel_batch_job_locally(db, batch_job)
            cancelled += 1
        if cancelled:
            logger.info(f"[ENRICH] Cancelled {cancelled} active job(s) on column {target_column_id}")

        job = EnrichmentJob(
            id=str(uuid.uuid4()),
            table_id=table_id,
            config_id=config_id,
            target_column_id=target_column_id,
            row_ids=row_ids,
            current_index=0,
            status=JobStatus.PENDING.value,
            processed_count=0,
            error_count=0,
            total_cost=0.0,
        )
        db.add(job)
        db.commit()
        db.refresh(job)

        rows = load_rows(db, row_ids)
        patches = []
        for row in rows.values():
            data = dict(row.data or {})
            data[target_column_id] = with_status(data, target_column_id, CellStatus.PENDING)
            patches.append(RowPatch(row_id=row.id, data=data))
        apply_patches(db, patches)

        logger.info(f"[ENRICH] Created job {job.id} for column {target_column_id} with {len(row_ids)} rows")
        return self.get_job(db, job.id)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _reset_job_cells(self, db: Session, job: EnrichmentJob) -> int:
        columns = job_column_ids(db, job.table_id, job.config_id, job.target_column_id)
        return rewrite_cells(db, job.row_ids or [], columns, IN_FLIGHT_STATUSES, clear_status)

    def cancel_job(self, db: Session, job_id: str) -> bool:
        """Cancel one job and reset its in-flight cells; False if it was already terminal"""
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        cancelled = transition(db, EnrichmentJob, job_id, {"status": JobStatus.CANCELLED.value}, ACTIVE_JOB_STATUSES)
        job = self.get_job(db, job_id)
        if job.status == JobStatus.CANCELLED.value:
            reset = self._reset_job_cells(db, job)
            logger.info(f"[ENRICH] Job {job_id} cancelled, {reset} cells reset")
        return cancelled

    def cancel_jobs_for_column(self, db: Session, column_id: str) -> int:
        jobs = self.list_jobs(db, column_id=column_id, active_only=True)
        return sum(1 for job in jobs if self.cancel_job(db, job.id))

    def cancel_all_jobs(self, db: Session) -> int:
        jobs = self.list_jobs(db, active_only=True)
        return sum(1 for job in jobs if self.cancel_job(db, job.id))

    def reset_stuck_cells(self, db: Session) -> int:
        """
        Reset pending/processing cells left behind by any cancelled job.
        Columns with an active job are skipped: their in-flight cells belong
        to that job. Idempotent.
        """
        busy_columns = {job.target_column_id for job in self.list_jobs(db, active_only=True)}
        cancelled_jobs = (
            db.query(EnrichmentJob)
            .filter(EnrichmentJob.status == JobStatus.CANCELLED.value)
            .all()
        )
        total = 0
        for job in cancelled_jobs:
            if job.target_column_id in busy_columns:
                continue
            total += self._reset_job_cells(db, job)
        logger.info(f"[ENRICH] Reset {total} stuck cells across {len(cancelled_jobs)} cancelled jobs")
        return total

    def force_complete_job(self, db: Session, job_id: str, message: str = STALE_CELL_MESSAGE) -> bool:
        """
        Finish an abandoned job. Cells still processing become errors with
        `message`; cells never picked up lose their pending status.
        """
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")

        completed = transition(
            db, EnrichmentJob, job_id,
            {"status": JobStatus.COMPLETE.value, "completed_at": datetime.utcnow()},
            ACTIVE_JOB_STATUSES,
        )
        if not completed:
            return False

        columns = job_column_ids(db, job.table_id, job.config_id, job.target_column_id)
        row_ids = job.row_ids or []
        timed_out = rewrite_cells(db, row_ids, columns, [CellStatus.PROCESSING], lambda data, col: error_cell(message))
        cleared = rewrite_cells(db, row_ids, columns, [CellStatus.PENDING], clear_status)
        logger.info(f"[ENRICH] Job {job_id} force-completed ({timed_out} timed out, {cleared} cleared)")
        return True

    # ------------------------------------------------------------------
    # Provider batch jobs on the same column
    # ------------------------------------------------------------------

    def active_batch_jobs_for_column(self, db: Session, column_id: str) -> List[BatchEnrichmentJob]:
        return (
            db.query(BatchEnrichmentJob)
            .filter(
                BatchEnrichmentJob.target_column_id == column_id,
                BatchEnrichmentJob.status.in_(ACTIVE_BATCH_STATUSES),
            )
            .all()
        )

    def cancel_batch_job_locally(self, db: Session, job: BatchEnrichmentJob, message: str = CANCELLED_BY_USER) -> bool:
        """Mark a batch job cancelled and fail the cells it still owns"""
        cancelled = transition(
            db, BatchEnrichmentJob, job.id,
            {"status": BatchJobStatus.CANCELLED.value, "last_error": message, "completed_at": datetime.utcnow()},
            ACTIVE_BATCH_STATUSES,
        )
        if cancelled:
            columns = job_column_ids(db, job.table_id, job.config_id, job.target_column_id)
            row_ids = [m["rowId"] for m in job.row_mappings or []]
            failed = rewrite_cells(
                db, row_ids, columns, BATCH_CELL_STATUSES,
                lambda data, col: error_cell(message),
                batch_job_id=job.id,
            )
            logger.info(f"[BATCH] Job {job.id} cancelled locally, {failed} cells failed")
        return cancelled


def job_to_dict(job: EnrichmentJob) -> Dict:
    total = len(job.row_ids or [])
    return {
        "id": job.id,
        "tableId": job.table_id,
        "configId": job.config_id,
        "targetColumnId": job.target_column_id,
        "status": job.status,
        "currentIndex": job.current_index,
        "totalRows": total,
        "processedCount": job.processed_count,
        "errorCount": job.error_count,
        "totalCost": job.total_cost,
        "lastError": job.last_error,
        "progress": round((job.processed_count or 0) / total * 100) if total else 0,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


# Singleton instance
job_controller = JobController()
