"""
Batch enrichment endpoints
Submission, status and operator recovery for Azure OpenAI Batch jobs
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import get_db
from routers.enrichment import require_db
from services.batch_engine import batch_engine, batch_job_to_dict
from services.batch_provider import BatchProviderError
from services.job_controller import JobAdmissionError, JobNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/enrichment/batch", tags=["batch"])


@router.post("")
async def submit_batch(body: dict, db: Session = Depends(get_db)):
    db = require_db(db)

    config_id = body.get("configId")
    table_id = body.get("tableId")
    target_column_id = body.get("targetColumnId")
    if not config_id or not table_id or not target_column_id:
        raise HTTPException(status_code=400, detail="configId, tableId and targetColumnId are required")

    try:
        jobs = await batch_engine.submit_batch_job(
            db, config_id, table_id, target_column_id, row_ids=body.get("rowIds"),
        )
    except JobAdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BatchProviderError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return {
        "success": all(j.status != "error" for j in jobs),
        "jobs": [batch_job_to_dict(j) for j in jobs],
        "batchGroupId": jobs[0].batch_group_id if jobs else None,
    }


@router.get("/status")
async def batch_status(
    jobId: Optional[str] = None,
    columnId: Optional[str] = None,
    activeOnly: bool = False,
    db: Session = Depends(get_db),
):
    db = require_db(db)
    if jobId:
        try:
            return await batch_engine.get_batch_job_status(db, jobId)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Batch job not found")

    jobs = batch_engine.list_jobs(db, column_id=columnId, active_only=activeOnly)
    return {"jobs": [batch_job_to_dict(j) for j in jobs]}


@router.delete("/cancel")
async def cancel_batch(jobId: Optional[str] = None, columnId: Optional[str] = None, db: Session = Depends(get_db)):
    db = require_db(db)
    if columnId:
        cancelled = await batch_engine.cancel_batch_jobs_for_column(db, columnId)
        return {"success": True, "cancelled": cancelled}
    if jobId:
        try:
            cancelled = await batch_engine.cancel_batch_job(db, jobId)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Batch job not found")
        return {"success": True, "cancelled": 1 if cancelled else 0}
    raise HTTPException(status_code=400, detail="jobId or columnId is required")


@router.post("/poll")
async def poll_batches(db: Session = Depends(get_db)):
    """Run one reconciliation sweep inline"""
    db = require_db(db)
    return await batch_engine.poll_batch_jobs(db)


@router.post("/{job_id}/force-sync")
async def force_sync(job_id: str, db: Session = Depends(get_db)):
    db = require_db(db)
    try:
        return await batch_engine.force_sync_batch_job(db, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Batch job not found")


@router.post("/{job_id}/mark-error")
async def mark_error(job_id: str, body: Optional[dict] = None, db: Session = Depends(get_db)):
    db = require_db(db)
    message = (body or {}).get("message")
    try:
        if message:
            return batch_engine.mark_batch_job_error(db, job_id, message)
        return batch_engine.mark_batch_job_error(db, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Batch job not found")


@router.post("/{job_id}/mark-complete")
async def mark_complete(job_id: str, db: Session = Depends(get_db)):
    db = require_db(db)
    try:
        return batch_engine.mark_batch_job_complete(db, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Batch job not found")
