"""
Enrichment job endpoints
Create, inspect and cancel cursor-based jobs; retry single cells
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import get_db
from services.enrichment_engine import enrichment_engine
from services.job_controller import JobAdmissionError, JobNotFoundError, job_controller, job_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/enrichment", tags=["enrichment"])


def require_db(db: Optional[Session]) -> Session:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not available")
    return db


@router.post("/jobs")
async def create_job(body: dict, db: Session = Depends(get_db)):
    """Queue an enrichment job; replaces any active job on the target column"""
    db = require_db(db)

    config_id = body.get("configId")
    table_id = body.get("tableId")
    target_column_id = body.get("targetColumnId")
    if not config_id or not table_id or not target_column_id:
        raise HTTPException(status_code=400, detail="configId, tableId and targetColumnId are required")

    try:
        job = job_controller.create_job(
            db,
            config_id=config_id,
            table_id=table_id,
            target_column_id=target_column_id,
            row_ids=body.get("rowIds"),
            only_empty=bool(body.get("onlyEmpty", False)),
        )
    except JobAdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"jobId": job.id, "job": job_to_dict(job), "message": f"Queued {len(job.row_ids)} rows"}


@router.get("/jobs")
async def list_jobs(
    columnId: Optional[str] = None,
    jobId: Optional[str] = None,
    activeOnly: bool = True,
    db: Session = Depends(get_db),
):
    db = require_db(db)
    if jobId:
        job = job_controller.get_job(db, jobId)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": job_to_dict(job)}

    jobs = job_controller.list_jobs(db, column_id=columnId, active_only=activeOnly)
    return {"jobs": [job_to_dict(j) for j in jobs]}


@router.delete("/jobs")
async def cancel_jobs(
    jobId: Optional[str] = None,
    columnId: Optional[str] = None,
    cancel_all: bool = Query(False, alias="all"),
    resetStuck: bool = False,
    db: Session = Depends(get_db),
):
    """Cancel one job, every job on a column, or everything; optionally reset stuck cells"""
    db = require_db(db)

    if resetStuck:
        reset = job_controller.reset_stuck_cells(db)
        return {"success": True, "cellsReset": reset}

    if cancel_all:
        cancelled = job_controller.cancel_all_jobs(db)
        return {"success": True, "cancelled": cancelled}

    if columnId:
        cancelled = job_controller.cancel_jobs_for_column(db, columnId)
        return {"success": True, "cancelled": cancelled}

    if jobId:
        try:
            cancelled = job_controller.cancel_job(db, jobId)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"success": True, "cancelled": 1 if cancelled else 0}

    raise HTTPException(status_code=400, detail="jobId, columnId, all or resetStuck is required")


@router.post("/jobs/{job_id}/complete")
async def force_complete_job(job_id: str, db: Session = Depends(get_db)):
    """Finish an abandoned job; cells still processing become timeout errors"""
    db = require_db(db)
    try:
        completed = job_controller.force_complete_job(db, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": completed, "job": job_to_dict(job_controller.get_job(db, job_id))}


@router.post("/process")
async def process_jobs(db: Session = Depends(get_db)):
    """Run one sweep inline (same work as the scheduled task)"""
    db = require_db(db)
    summary = await enrichment_engine.process_active_jobs(db)
    return summary.to_dict()


@router.post("/retry-cell")
async def retry_cell(body: dict, db: Session = Depends(get_db)):
    db = require_db(db)
    row_id = body.get("rowId")
    column_id = body.get("columnId")
    if not row_id or not column_id:
        raise HTTPException(status_code=400, detail="rowId and columnId are required")

    try:
        cell = await enrichment_engine.retry_cell(db, row_id, column_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except JobAdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": cell.get("status") != "error", "cell": cell}
