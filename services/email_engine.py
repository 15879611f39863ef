"""
Email finder job engine

Same cursor model as the enrichment engine, but each sweep keeps taking
batches from the oldest active job until its wall-clock budget runs out.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import settings
from models import CellStatus, EmailFinderJob, JobStatus, TableColumn
from services.cell_values import CellValue, cell_text, clear_status, error_cell, with_status
from services.email_finder import EmailFinderClient, clean_domain, clean_full_name, combine_names
from services.job_controller import (
    IN_FLIGHT_STATUSES, STALE_CELL_MESSAGE, JobAdmissionError, JobNotFoundError, rewrite_cells
)
from services.job_state import ACTIVE_JOB_STATUSES, transition
from services.row_batcher import RowPatch, apply_patches
from services.table_service import get_table_columns, list_row_ids, load_rows
import logging

logger = logging.getLogger(__name__)

INPUT_MODES = ("full_name", "first_last")
NOT_FOUND_VALUE = "Not Found"


@dataclass
class EmailBatchResult:
    processed: int = 0
    found: int = 0
    not_found: int = 0
    errors: int = 0

    def add(self, other: "EmailBatchResult"):
        self.processed += other.processed
        self.found += other.found
        self.not_found += other.not_found
        self.errors += other.errors


@dataclass
class EmailSweepSummary(EmailBatchResult):
    stale_completed: int = 0
    time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "found": self.found,
            "notFound": self.not_found,
            "errors": self.errors,
            "staleCompleted": self.stale_completed,
            "timeMs": self.time_ms,
        }


def email_job_to_dict(job: EmailFinderJob) -> Dict[str, Any]:
    total = len(job.row_ids or [])
    return {
        "id": job.id,
        "tableId": job.table_id,
        "targetColumnId": job.target_column_id,
        "inputMode": job.input_mode,
        "status": job.status,
        "currentIndex": job.current_index,
        "totalRows": total,
        "processedCount": job.processed_count,
        "foundCount": job.found_count,
        "notFoundCount": job.not_found_count,
        "errorCount": job.error_count,
        "lastError": job.last_error,
        "progress": round((job.processed_count or 0) / total * 100) if total else 0,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


class EmailEngine:
    """Creates, advances and cancels EmailFinderJob records"""

    def __init__(self, client_factory: Optional[Callable[[], EmailFinderClient]] = None,
                 rate_limit_ms: Optional[int] = None):
        self.client_factory = client_factory or EmailFinderClient
        self.batch_size = settings.EMAIL_BATCH_SIZE
        self.max_execution_seconds = settings.EMAIL_MAX_EXECUTION_SECONDS
        self.batch_reserve_seconds = settings.EMAIL_BATCH_TIME_RESERVE_SECONDS
        self.stale_after = timedelta(minutes=settings.EMAIL_STALE_JOB_MINUTES)
        self.rate_limit_ms = settings.EMAIL_RATE_LIMIT_MS if rate_limit_ms is None else rate_limit_ms

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_email_job(self, db: Session, job_id: str) -> Optional[EmailFinderJob]:
        return db.query(EmailFinderJob).filter(EmailFinderJob.id == job_id).first()

    def list_email_jobs(
        self,
        db: Session,
        table_id: Optional[str] = None,
        column_id: Optional[str] = None,
        active_only: bool = False,
    ) -> List[EmailFinderJob]:
        query = db.query(EmailFinderJob)
        if table_id:
            query = query.filter(EmailFinderJob.table_id == table_id)
        if column_id:
            query = query.filter(EmailFinderJob.target_column_id == column_id)
        if active_only:
            query = query.filter(EmailFinderJob.status.in_(ACTIVE_JOB_STATUSES))
        return query.order_by(EmailFinderJob.created_at.desc()).all()

    # ------------------------------------------------------------------
    # Admission and cancellation
    # ------------------------------------------------------------------

    def _output_column(self, db: Session, table_id: str, name: str) -> TableColumn:
        for column in get_table_columns(db, table_id):
            if column.name.lower() == name.lower():
                return column
        next_order = (db.query(func.max(TableColumn.order)).filter(TableColumn.table_id == table_id).scalar() or 0) + 1
        column = TableColumn(id=str(uuid.uuid4()), table_id=table_id, name=name, type="text", width=200, order=next_order)
        db.add(column)
        db.commit()
        db.refresh(column)
        return column

    def create_email_job(
        self,
        db: Session,
        table_id: str,
        input_mode: str,
        domain_column_id: str,
        row_ids: Optional[List[str]] = None,
        output_column_name: Optional[str] = None,
        target_column_id: Optional[str] = None,
        full_name_column_id: Optional[str] = None,
        first_name_column_id: Optional[str] = None,
        last_name_column_id: Optional[str] = None,
    ) -> EmailFinderJob:
        if not self.client_factory().is_configured():
            raise JobAdmissionError("Email finder API key not configured")
        if input_mode not in INPUT_MODES:
            raise JobAdmissionError(f"Unknown input mode: {input_mode}")
        if not domain_column_id:
            raise JobAdmissionError("domainColumnId is required")
        if input_mode == "full_name" and not full_name_column_id:
            raise JobAdmissionError("fullNameColumnId is required for fullName mode")
        if input_mode == "first_last" and not (first_name_column_id and last_name_column_id):
            raise JobAdmissionError("firstNameColumnId and lastNameColumnId are required for firstLast mode")

        if row_ids is None:
            row_ids = list_row_ids(db, table_id)
        row_ids = list(dict.fromkeys(row_ids))
        if not row_ids:
            raise JobAdmissionError("No rows to process")

        if not target_column_id:
            target_column_id = self._output_column(db, table_id, output_column_name or "Email").id

        cancelled = self.cancel_email_jobs(db, target_column_id)
        if cancelled:
            logger.info(f"[EMAIL] Cancelled {cancelled} active job(s) on column {target_column_id}")

        job = EmailFinderJob(
            id=str(uuid.uuid4()),
            table_id=table_id,
            target_column_id=target_column_id,
            input_mode=input_mode,
            full_name_column_id=full_name_column_id if input_mode == "full_name" else None,
            first_name_column_id=first_name_column_id if input_mode == "first_last" else None,
            last_name_column_id=last_name_column_id if input_mode == "first_last" else None,
            domain_column_id=domain_column_id,
            row_ids=row_ids,
            current_index=0,
            status=JobStatus.PENDING.value,
            processed_count=0,
            found_count=0,
            not_found_count=0,
            error_count=0,
        )
        db.add(job)
        db.commit()

        patches = []
        for row in load_rows(db, row_ids).values():
            data = dict(row.data or {})
            data[target_column_id] = CellValue(status=CellStatus.PENDING).to_dict()
            patches.append(RowPatch(row_id=row.id, data=data))
        apply_patches(db, patches)

        logger.info(f"[EMAIL] Created job {job.id} for column {target_column_id} with {len(row_ids)} rows")
        return self.get_email_job(db, job.id)

    def cancel_email_job(self, db: Session, job_id: str) -> bool:
        job = self.get_email_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Email job {job_id} not found")
        cancelled = transition(db, EmailFinderJob, job_id, {"status": JobStatus.CANCELLED.value}, ACTIVE_JOB_STATUSES)
        if cancelled:
            reset = rewrite_cells(db, job.row_ids or [], [job.target_column_id], IN_FLIGHT_STATUSES, clear_status)
            logger.info(f"[EMAIL] Job {job_id} cancelled, {reset} cells reset")
        return cancelled

    def cancel_email_jobs(self, db: Session, column_id: str) -> int:
        jobs = self.list_email_jobs(db, column_id=column_id, active_only=True)
        return sum(1 for job in jobs if self.cancel_email_job(db, job.id))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def _row_inputs(self, job: EmailFinderJob, data: Dict[str, Any]):
        if job.input_mode == "full_name" and job.full_name_column_id:
            name = clean_full_name(cell_text(data, job.full_name_column_id))
        elif job.input_mode == "first_last" and job.first_name_column_id and job.last_name_column_id:
            name = combine_names(cell_text(data, job.first_name_column_id), cell_text(data, job.last_name_column_id))
        else:
            name = ""
        return name, clean_domain(cell_text(data, job.domain_column_id))

    async def _lookup_cell(self, client: EmailFinderClient, name: str, domain: str):
        """(cell document, outcome) where outcome is found / not_found"""
        if not name or not domain:
            message = "Invalid or empty name" if not name else "Invalid or empty domain"
            cell = CellValue(
                value=None,
                status=CellStatus.COMPLETE,
                enrichment_data={"name": name, "domain": domain, "error": message},
            )
            return cell.to_dict(), "not_found"

        result = await client.find_email(name, domain)
        if result.success and result.email:
            cell = CellValue(
                value=result.email,
                status=CellStatus.COMPLETE,
                enrichment_data={
                    "email": result.email,
                    "verificationStatus": result.status or "unknown",
                    "confidence": result.confidence or "unknown",
                    "name": name,
                    "domain": domain,
                },
            )
            return cell.to_dict(), "found"

        cell = CellValue(
            value=NOT_FOUND_VALUE,
            status=CellStatus.COMPLETE,
            enrichment_data={"name": name, "domain": domain, "error": result.error or "No valid email found"},
        )
        return cell.to_dict(), "not_found"

    async def process_job_batch(self, db: Session, job: EmailFinderJob, client: EmailFinderClient) -> EmailBatchResult:
        job_id = job.id
        row_ids = list(job.row_ids or [])
        start = job.current_index or 0
        result = EmailBatchResult()

        if start >= len(row_ids):
            transition(db, EmailFinderJob, job_id,
                       {"status": JobStatus.COMPLETE.value, "completed_at": datetime.utcnow()},
                       ACTIVE_JOB_STATUSES)
            return result

        if not transition(db, EmailFinderJob, job_id, {"status": JobStatus.RUNNING.value}, ACTIVE_JOB_STATUSES):
            return result

        batch_ids = row_ids[start:start + self.batch_size]
        found = load_rows(db, batch_ids)
        rows = [found[rid] for rid in dict.fromkeys(batch_ids) if rid in found]

        base_docs = {}
        for row in rows:
            data = dict(row.data or {})
            data[job.target_column_id] = with_status(data, job.target_column_id, CellStatus.PROCESSING)
            base_docs[row.id] = data
        apply_patches(db, [RowPatch(row_id=rid, data=data) for rid, data in base_docs.items()])

        patches = []
        for row_id, data in base_docs.items():
            try:
                name, domain = self._row_inputs(job, data)
                cell, outcome = await self._lookup_cell(client, name, domain)
                if outcome == "found":
                    result.found += 1
                else:
                    result.not_found += 1
            except Exception as e:
                logger.warning(f"[EMAIL] Row {row_id} failed: {e}")
                cell = error_cell(str(e) or type(e).__name__)
                result.errors += 1
            data = dict(data)
            data[job.target_column_id] = cell
            patches.append(RowPatch(row_id=row_id, data=data))
            if self.rate_limit_ms:
                await asyncio.sleep(self.rate_limit_ms / 1000)
        apply_patches(db, patches)

        result.processed = len(batch_ids)
        new_index = start + len(batch_ids)
        done = new_index >= len(row_ids)
        advanced = transition(
            db, EmailFinderJob, job_id,
            {
                "current_index": new_index,
                "processed_count": EmailFinderJob.processed_count + result.processed,
                "found_count": EmailFinderJob.found_count + result.found,
                "not_found_count": EmailFinderJob.not_found_count + result.not_found,
                "error_count": EmailFinderJob.error_count + result.errors,
                "status": JobStatus.COMPLETE.value if done else JobStatus.RUNNING.value,
                "completed_at": datetime.utcnow() if done else None,
            },
            [JobStatus.RUNNING.value],
            EmailFinderJob.current_index == start,
        )
        if not advanced:
            logger.info(f"[EMAIL] Job {job_id}: cursor not advanced (cancelled or advanced elsewhere)")
        logger.info(f"[EMAIL] Job {job_id}: {result.processed} rows, {result.found} found, "
                    f"{result.not_found} not found, {result.errors} errors")
        return result

    def is_stale(self, job: EmailFinderJob, now: datetime) -> bool:
        if not job.updated_at or not job.current_index:
            return False
        return now - job.updated_at > self.stale_after

    def complete_stale_job(self, db: Session, job: EmailFinderJob) -> bool:
        completed = transition(
            db, EmailFinderJob, job.id,
            {"status": JobStatus.COMPLETE.value, "completed_at": datetime.utcnow()},
            ACTIVE_JOB_STATUSES,
        )
        if completed:
            timed_out = rewrite_cells(
                db, job.row_ids or [], [job.target_column_id], [CellStatus.PROCESSING],
                lambda data, col: error_cell(STALE_CELL_MESSAGE),
            )
            logger.warning(f"[EMAIL] Job {job.id} was stale, completed ({timed_out} cells timed out)")
        return completed

    async def process_email_jobs(
        self,
        db: Session,
        client: Optional[EmailFinderClient] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[datetime] = None,
    ) -> EmailSweepSummary:
        """
        Scheduled entry point. Keeps taking batches from the oldest active job
        and stops starting new ones once less than the batch reserve is left.
        """
        started = clock()
        summary = EmailSweepSummary()
        owns_client = client is None
        client = client or self.client_factory()

        try:
            while clock() - started < self.max_execution_seconds:
                job = (
                    db.query(EmailFinderJob)
                    .filter(EmailFinderJob.status.in_(ACTIVE_JOB_STATUSES))
                    .order_by(EmailFinderJob.created_at)
                    .first()
                )
                if job is None:
                    break

                if self.is_stale(job, now or datetime.utcnow()):
                    if self.complete_stale_job(db, job):
                        summary.stale_completed += 1
                    continue

                if clock() - started > self.max_execution_seconds - self.batch_reserve_seconds:
                    break

                batch = await self.process_job_batch(db, job, client)
                summary.add(batch)
                if batch.processed == 0:
                    db.expire_all()
                    refreshed = self.get_email_job(db, job.id)
                    if refreshed is not None and refreshed.status in ACTIVE_JOB_STATUSES:
                        break
        finally:
            if owns_client:
                await client.aclose()

        summary.time_ms = int((clock() - started) * 1000)
        return summary


# Singleton instance
email_engine = EmailEngine()
