"""
Provider-side batch enrichment

Submission uploads one request line per row to the Azure OpenAI Batch API.
Reconciliation maps the remote batch lifecycle onto the local job status and
writes results back into rows. The scheduled poller and the manual force-sync
both go through reconcile_batch_job().
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings
from models import BatchEnrichmentJob, BatchJobStatus, CellStatus, EnrichmentConfig, RemoteBatchStatus
from services.batch_provider import (
    AzureBatchService, BatchProviderError, BatchStatus, azure_batch_service,
    calculate_batch_cost, generate_batch_jsonl, parse_batch_results,
)
from services.cell_values import (
    CellMetadata, CellValue, enrichment_error_cells, enrichment_result_cells, error_cell,
)
from services.job_controller import JobAdmissionError, JobNotFoundError, job_column_ids, job_controller
from services.job_state import ACTIVE_BATCH_STATUSES, POLLABLE_BATCH_STATUSES, touch, transition
from services.prompt_builder import build_prompt, index_columns_by_name
from services.response_parser import parse_ai_response
from services.row_batcher import RowPatch, apply_patches
from services.table_service import (
    ensure_output_columns, get_table_columns, list_row_ids, load_rows, resolve_output_column_ids,
)
import logging

logger = logging.getLogger(__name__)

ORPHANED_ROW_MESSAGE = "Row exceeded Azure batch limit (25,000 max). Please resubmit."
NO_OUTPUT_MESSAGE = "Batch completed but no output file available"
FAILED_MESSAGE = "Batch job failed"
EXPIRED_MESSAGE = "Batch job expired (exceeded 24 hour window)"
CANCELLED_MESSAGE = "Batch job was cancelled"
UPLOAD_FAILED_MESSAGE = "Job failed during upload - please resubmit"

IN_PROGRESS_REMOTE = {
    RemoteBatchStatus.VALIDATING.value,
    RemoteBatchStatus.IN_PROGRESS.value,
    RemoteBatchStatus.FINALIZING.value,
}


def _now() -> datetime:
    return datetime.utcnow()


class BatchEngine:
    """Submits, reconciles and cancels BatchEnrichmentJob records"""

    def __init__(self, batch_service: Optional[AzureBatchService] = None):
        self.batch_service = batch_service or azure_batch_service
        self.max_batch_rows = settings.MAX_BATCH_ROWS

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit_batch_job(
        self,
        db: Session,
        config_id: str,
        table_id: str,
        target_column_id: str,
        row_ids: Optional[List[str]] = None,
    ) -> List[BatchEnrichmentJob]:
        """
        Submit rows as one or more provider batches (split at MAX_BATCH_ROWS).
        Returns the created jobs; a group whose upload fails ends in `error`
        with its cells failed, other groups are unaffected.
        """
        if not self.batch_service.is_configured():
            raise BatchProviderError("Azure OpenAI Batch API is not configured")

        config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == config_id).first()
        if config is None:
            raise JobAdmissionError("Enrichment config not found")

        if not row_ids:
            row_ids = list_row_ids(db, table_id)
        found = load_rows(db, row_ids)
        ordered_ids = [rid for rid in dict.fromkeys(row_ids) if rid in found]
        if not ordered_ids:
            raise JobAdmissionError("No rows to process")

        # One active job per column, whichever engine owns it
        job_controller.cancel_jobs_for_column(db, target_column_id)
        await self.cancel_batch_jobs_for_column(db, target_column_id)

        columns = ensure_output_columns(db, table_id, config.output_columns)
        columns_by_name = index_columns_by_name(columns)
        output_ids = resolve_output_column_ids(columns, config.output_columns, exclude_column_id=target_column_id)

        groups = [ordered_ids[i:i + self.max_batch_rows] for i in range(0, len(ordered_ids), self.max_batch_rows)]
        group_id = str(uuid.uuid4()) if len(groups) > 1 else None
        if group_id:
            logger.info(f"[BATCH] Splitting {len(ordered_ids)} rows into {len(groups)} batches (group {group_id})")

        jobs = []
        for number, group in enumerate(groups, start=1):
            job = await self._submit_group(
                db, config, table_id, target_column_id, group, columns_by_name, output_ids,
                group_id=group_id, batch_number=number, total_batches=len(groups),
            )
            jobs.append(job)
        return jobs

    async def _submit_group(
        self,
        db: Session,
        config: EnrichmentConfig,
        table_id: str,
        target_column_id: str,
        row_ids: List[str],
        columns_by_name: Dict[str, Any],
        output_ids: Dict[str, str],
        group_id: Optional[str],
        batch_number: int,
        total_batches: int,
    ) -> BatchEnrichmentJob:
        rows = load_rows(db, row_ids)
        row_prompts = [
            (rid, build_prompt(config.prompt, rows[rid].data, columns_by_name,
                               config.output_columns or [], include_metadata_fields=True))
            for rid in row_ids
        ]
        jsonl, mappings = generate_batch_jsonl(row_prompts)

        job = BatchEnrichmentJob(
            id=str(uuid.uuid4()),
            table_id=table_id,
            config_id=config.id,
            target_column_id=target_column_id,
            batch_group_id=group_id,
            batch_number=batch_number,
            total_batches=total_batches,
            row_mappings=mappings,
            azure_status=RemoteBatchStatus.PENDING_UPLOAD.value,
            status=BatchJobStatus.UPLOADING.value,
            total_rows=len(row_ids),
        )
        db.add(job)
        db.commit()
        job_id = job.id

        submitted = CellValue(status=CellStatus.BATCH_SUBMITTED, batch_job_id=job_id).to_dict()
        touched_columns = [target_column_id] + list(output_ids.values())
        patches = []
        for rid in row_ids:
            data = dict(rows[rid].data or {})
            for column_id in touched_columns:
                data[column_id] = dict(submitted)
            patches.append(RowPatch(row_id=rid, data=data))
        apply_patches(db, patches)

        file_id = None
        try:
            file_id = await self.batch_service.upload_file(jsonl, filename=f"batch_{job_id}.jsonl")
            touch(db, BatchEnrichmentJob, job_id, azure_file_id=file_id)

            metadata = {"jobId": job_id, "tableId": table_id}
            if group_id:
                metadata["batchGroupId"] = group_id
            remote = await self.batch_service.create_batch(file_id, metadata=metadata)
            transition(
                db, BatchEnrichmentJob, job_id,
                {
                    "azure_batch_id": remote.batch_id,
                    "azure_status": remote.status,
                    "status": BatchJobStatus.SUBMITTED.value,
                    "submitted_at": _now(),
                },
                [BatchJobStatus.UPLOADING.value],
            )
            logger.info(f"[BATCH] Job {job_id} submitted as {remote.batch_id} "
                        f"({len(row_ids)} rows, batch {batch_number}/{total_batches})")
        except Exception as e:
            reason = str(e) or type(e).__name__
            logger.error(f"[BATCH] Submission failed for job {job_id}: {reason}", exc_info=True)
            db.rollback()
            message = f"Batch submission failed: {reason}"
            self._write_error_cells(db, row_ids, touched_columns, message)
            transition(
                db, BatchEnrichmentJob, job_id,
                {"status": BatchJobStatus.ERROR.value, "last_error": reason, "completed_at": _now()},
                ACTIVE_BATCH_STATUSES,
            )
            if file_id:
                await self.batch_service.delete_file(file_id)

        return self.get_job(db, job_id)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def get_job(self, db: Session, job_id: str) -> Optional[BatchEnrichmentJob]:
        return db.query(BatchEnrichmentJob).filter(BatchEnrichmentJob.id == job_id).first()

    def list_jobs(self, db: Session, column_id: Optional[str] = None, active_only: bool = True) -> List[BatchEnrichmentJob]:
        query = db.query(BatchEnrichmentJob)
        if column_id:
            query = query.filter(BatchEnrichmentJob.target_column_id == column_id)
        if active_only:
            query = query.filter(BatchEnrichmentJob.status.in_(ACTIVE_BATCH_STATUSES))
        return query.order_by(BatchEnrichmentJob.created_at.desc()).all()

    def _write_error_cells(self, db: Session, row_ids: List[str], column_ids: List[str], message: str) -> int:
        cells = {column_id: error_cell(message) for column_id in column_ids}
        patches = []
        for row in load_rows(db, row_ids).values():
            data = dict(row.data or {})
            data.update(cells)
            patches.append(RowPatch(row_id=row.id, data=data))
        return apply_patches(db, patches)

    def _fail_job(
        self,
        db: Session,
        job: BatchEnrichmentJob,
        message: str,
        bookkeeping: Dict[str, Any],
        final_status: str = BatchJobStatus.ERROR.value,
    ) -> Dict[str, Any]:
        """Fail every mapped row with `message`, then move the job to its terminal status"""
        job_id = job.id
        row_ids = [m["rowId"] for m in job.row_mappings or []]
        columns = job_column_ids(db, job.table_id, job.config_id, job.target_column_id)
        failed = self._write_error_cells(db, row_ids, columns, message)
        transition(
            db, BatchEnrichmentJob, job_id,
            {**bookkeeping, "status": final_status, "last_error": message, "completed_at": _now()},
            POLLABLE_BATCH_STATUSES,
        )
        logger.warning(f"[BATCH] Job {job_id} -> {final_status}: {message} ({failed} rows failed)")
        return {"jobId": job_id, "status": final_status, "error": message, "rowsFailed": failed}

    async def _apply_results(
        self,
        db: Session,
        job: BatchEnrichmentJob,
        remote: BatchStatus,
        bookkeeping: Dict[str, Any],
    ) -> Dict[str, Any]:
        job_id = job.id
        if not transition(
            db, BatchEnrichmentJob, job_id,
            {**bookkeeping, "status": BatchJobStatus.DOWNLOADING.value},
            POLLABLE_BATCH_STATUSES,
        ):
            return {"jobId": job_id, "status": "skipped"}
        job = self.get_job(db, job_id)

        results = []
        if remote.output_file_id:
            results.extend(parse_batch_results(await self.batch_service.download_file(remote.output_file_id)))
        if remote.error_file_id:
            results.extend(parse_batch_results(await self.batch_service.download_file(remote.error_file_id)))

        by_custom_id = {}
        for line in results:
            by_custom_id.setdefault(line.custom_id, line)

        config = db.query(EnrichmentConfig).filter(EnrichmentConfig.id == job.config_id).first()
        output_names = config.output_columns if config else []
        output_ids = resolve_output_column_ids(
            get_table_columns(db, job.table_id), output_names, exclude_column_id=job.target_column_id
        )

        mappings = job.row_mappings or []
        rows = load_rows(db, [m["rowId"] for m in mappings])

        success = errors = orphans = 0
        input_tokens = output_tokens = 0
        patches = []
        for mapping in mappings:
            row = rows.get(mapping["rowId"])
            if row is None:
                continue
            data = dict(row.data or {})
            line = by_custom_id.get(mapping["customId"])

            if line is None:
                orphans += 1
                data.update(enrichment_error_cells(ORPHANED_ROW_MESSAGE, job.target_column_id, output_ids))
            elif line.error:
                errors += 1
                data.update(enrichment_error_cells(line.error, job.target_column_id, output_ids))
            else:
                success += 1
                input_tokens += line.input_tokens
                output_tokens += line.output_tokens
                parsed = parse_ai_response(line.text)
                metadata = CellMetadata(
                    input_tokens=line.input_tokens,
                    output_tokens=line.output_tokens,
                    time_taken_ms=0,
                    total_cost=calculate_batch_cost(line.input_tokens, line.output_tokens),
                )
                data.update(enrichment_result_cells(
                    parsed.display_value, parsed.structured_data, line.text or "",
                    metadata, job.target_column_id, output_ids,
                ))
            patches.append(RowPatch(row_id=row.id, data=data))
        apply_patches(db, patches)

        if orphans:
            logger.warning(f"[BATCH] Job {job_id}: {orphans} rows missing from the batch results")

        transition(
            db, BatchEnrichmentJob, job_id,
            {
                "status": BatchJobStatus.COMPLETE.value,
                "processed_count": success + errors + orphans,
                "success_count": success,
                "error_count": errors,
                "orphan_count": orphans,
                "total_input_tokens": input_tokens,
                "total_output_tokens": output_tokens,
                "total_cost": calculate_batch_cost(input_tokens, output_tokens),
                "last_error": ORPHANED_ROW_MESSAGE if orphans else None,
                "completed_at": _now(),
            },
            [BatchJobStatus.DOWNLOADING.value],
        )

        for file_id in (job.azure_file_id, remote.output_file_id, remote.error_file_id):
            await self.batch_service.delete_file(file_id)

        logger.info(f"[BATCH] Job {job_id} complete: {success} ok, {errors} errors, {orphans} orphaned")
        return {
            "jobId": job_id,
            "status": BatchJobStatus.COMPLETE.value,
            "successCount": success,
            "errorCount": errors,
            "orphanCount": orphans,
        }

    async def reconcile_batch_job(self, db: Session, job: BatchEnrichmentJob) -> Dict[str, Any]:
        """Fetch the remote batch status and apply it to the job and its rows"""
        job_id = job.id
        if not job.azure_batch_id:
            raise JobAdmissionError(f"Batch job {job_id} has no remote batch id")

        remote = await self.batch_service.get_status(job.azure_batch_id)
        status = remote.status
        bookkeeping: Dict[str, Any] = {"azure_status": status}
        if remote.output_file_id:
            bookkeeping["azure_output_file_id"] = remote.output_file_id
        if remote.error_file_id:
            bookkeeping["azure_error_file_id"] = remote.error_file_id

        if status in IN_PROGRESS_REMOTE:
            if remote.request_counts:
                counts = remote.request_counts
                bookkeeping.update(
                    processed_count=counts["completed"] + counts["failed"],
                    success_count=counts["completed"],
                    error_count=counts["failed"],
                )
            transition(
                db, BatchEnrichmentJob, job_id,
                {**bookkeeping, "status": BatchJobStatus.PROCESSING.value},
                POLLABLE_BATCH_STATUSES,
            )
            return {"jobId": job_id, "status": BatchJobStatus.PROCESSING.value,
                    "azureStatus": status, "requestCounts": remote.request_counts}

        if status == RemoteBatchStatus.COMPLETED.value:
            if not remote.output_file_id:
                return self._fail_job(db, job, NO_OUTPUT_MESSAGE, bookkeeping)
            return await self._apply_results(db, job, remote, bookkeeping)

        if status == RemoteBatchStatus.FAILED.value:
            message = "; ".join(remote.errors) if remote.errors else FAILED_MESSAGE
            return self._fail_job(db, job, message, bookkeeping)

        if status == RemoteBatchStatus.EXPIRED.value:
            return self._fail_job(db, job, EXPIRED_MESSAGE, bookkeeping)

        if status in (RemoteBatchStatus.CANCELLED.value, RemoteBatchStatus.CANCELLING.value):
            return self._fail_job(db, job, CANCELLED_MESSAGE, bookkeeping,
                                  final_status=BatchJobStatus.CANCELLED.value)

        logger.warning(f"[BATCH] Job {job_id}: unknown remote status {status!r}")
        touch(db, BatchEnrichmentJob, job_id, **bookkeeping)
        return {"jobId": job_id, "status": job.status, "azureStatus": status}

    async def poll_batch_jobs(self, db: Session) -> Dict[str, Any]:
        """Scheduled trigger: reconcile every job that has a live remote batch"""
        jobs = (
            db.query(BatchEnrichmentJob)
            .filter(BatchEnrichmentJob.status.in_(POLLABLE_BATCH_STATUSES))
            .order_by(BatchEnrichmentJob.created_at)
            .all()
        )
        results = []
        for job in jobs:
            job_id = job.id
            if not job.azure_batch_id:
                logger.warning(f"[BATCH] Job {job_id} has no remote batch id, skipping")
                continue
            try:
                results.append(await self.reconcile_batch_job(db, job))
            except Exception as e:
                logger.error(f"[BATCH] Reconciliation failed for job {job_id}: {e}", exc_info=True)
                db.rollback()
                touch(db, BatchEnrichmentJob, job_id, last_error=str(e))
                results.append({"jobId": job_id, "status": "error", "error": str(e)})
        return {"processed": len(results), "results": results}

    async def force_sync_batch_job(self, db: Session, job_id: str) -> Dict[str, Any]:
        """Manual trigger for the same reconciliation the poller runs"""
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        if job.status not in POLLABLE_BATCH_STATUSES:
            return {"jobId": job_id, "status": job.status, "message": "Job is not awaiting remote results"}
        return await self.reconcile_batch_job(db, job)

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def get_batch_job_status(self, db: Session, job_id: str) -> Dict[str, Any]:
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job {job_id} not found")

        remote = None
        remote_error = None
        if job.azure_batch_id:
            try:
                status = await self.batch_service.get_status(job.azure_batch_id)
                remote = {
                    "status": status.status,
                    "outputFileId": status.output_file_id,
                    "errorFileId": status.error_file_id,
                    "requestCounts": status.request_counts,
                    "errors": status.errors,
                }
            except BatchProviderError as e:
                remote_error = str(e)
        return {"job": batch_job_to_dict(job), "remote": remote, "remoteError": remote_error}

    async def cancel_batch_job(self, db: Session, job_id: str) -> bool:
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        if job.status not in ACTIVE_BATCH_STATUSES:
            return False
        if job.azure_batch_id:
            try:
                await self.batch_service.cancel_batch(job.azure_batch_id)
            except BatchProviderError as e:
                logger.warning(f"[BATCH] Remote cancel failed for {job.azure_batch_id}: {e}")
        return job_controller.cancel_batch_job_locally(db, job)

    async def cancel_batch_jobs_for_column(self, db: Session, column_id: str) -> int:
        jobs = job_controller.active_batch_jobs_for_column(db, column_id)
        cancelled = 0
        for job in jobs:
            if await self.cancel_batch_job(db, job.id):
                cancelled += 1
        return cancelled

    def mark_batch_job_error(self, db: Session, job_id: str, message: str = UPLOAD_FAILED_MESSAGE) -> Dict[str, Any]:
        """For jobs that never reached the provider: fail the job and all its rows"""
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        row_ids = [m["rowId"] for m in job.row_mappings or []]
        columns = job_column_ids(db, job.table_id, job.config_id, job.target_column_id)
        failed = self._write_error_cells(db, row_ids, columns, message)
        transition(
            db, BatchEnrichmentJob, job_id,
            {"status": BatchJobStatus.ERROR.value, "last_error": message, "completed_at": _now()},
            ACTIVE_BATCH_STATUSES,
        )
        return {"jobId": job_id, "status": self.get_job(db, job_id).status, "rowsFailed": failed}

    def mark_batch_job_complete(self, db: Session, job_id: str) -> Dict[str, Any]:
        """For jobs whose rows were written but whose status update was lost"""
        job = self.get_job(db, job_id)
        if job is None:
            raise JobNotFoundError(f"Batch job {job_id} not found")
        previous = job.status
        transition(
            db, BatchEnrichmentJob, job_id,
            {"status": BatchJobStatus.COMPLETE.value, "completed_at": _now()},
            ACTIVE_BATCH_STATUSES,
        )
        return {"jobId": job_id, "previousStatus": previous, "status": self.get_job(db, job_id).status}


def batch_job_to_dict(job: BatchEnrichmentJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "tableId": job.table_id,
        "configId": job.config_id,
        "targetColumnId": job.target_column_id,
        "batchGroupId": job.batch_group_id,
        "batchNumber": job.batch_number,
        "totalBatches": job.total_batches,
        "azureBatchId": job.azure_batch_id,
        "azureStatus": job.azure_status,
        "status": job.status,
        "totalRows": job.total_rows,
        "processedCount": job.processed_count,
        "successCount": job.success_count,
        "errorCount": job.error_count,
        "orphanCount": job.orphan_count,
        "totalCost": job.total_cost,
        "totalInputTokens": job.total_input_tokens,
        "totalOutputTokens": job.total_output_tokens,
        "lastError": job.last_error,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "submittedAt": job.submitted_at.isoformat() if job.submitted_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


# Singleton instance
batch_engine = BatchEngine()
