"""
Email finder and formula job endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
import logging

from database import get_db
from routers.enrichment import require_db
from services.email_engine import email_engine, email_job_to_dict
from services.formula_engine import formula_engine
from services.formula_evaluator import validate_formula
from services.job_controller import JobAdmissionError, JobNotFoundError
from services.table_service import get_table_columns

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["lookups"])

# Request payloads use camelCase mode names
INPUT_MODE_ALIASES = {"fullName": "full_name", "firstLast": "first_last"}


# =============================================================================
# EMAIL FINDER
# =============================================================================

@router.post("/email-finder/jobs")
async def create_email_job(body: dict, db: Session = Depends(get_db)):
    db = require_db(db)

    table_id = body.get("tableId")
    row_ids = body.get("rowIds")
    if not table_id or not row_ids:
        raise HTTPException(status_code=400, detail="tableId and rowIds are required")

    input_mode = body.get("inputMode")
    try:
        job = email_engine.create_email_job(
            db,
            table_id=table_id,
            input_mode=INPUT_MODE_ALIASES.get(input_mode, input_mode),
            domain_column_id=body.get("domainColumnId"),
            row_ids=row_ids,
            output_column_name=body.get("outputColumnName"),
            target_column_id=body.get("targetColumnId"),
            full_name_column_id=body.get("fullNameColumnId"),
            first_name_column_id=body.get("firstNameColumnId"),
            last_name_column_id=body.get("lastNameColumnId"),
        )
    except JobAdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {
        "success": True,
        "jobId": job.id,
        "targetColumnId": job.target_column_id,
        "message": f"Email finder job created for {len(job.row_ids)} rows",
    }


@router.get("/email-finder/jobs")
async def list_email_jobs(
    tableId: Optional[str] = None,
    columnId: Optional[str] = None,
    activeOnly: bool = False,
    db: Session = Depends(get_db),
):
    db = require_db(db)
    jobs = email_engine.list_email_jobs(db, table_id=tableId, column_id=columnId, active_only=activeOnly)
    return {"jobs": [email_job_to_dict(j) for j in jobs]}


@router.delete("/email-finder/jobs")
async def cancel_email_jobs(jobId: Optional[str] = None, columnId: Optional[str] = None,
                            db: Session = Depends(get_db)):
    db = require_db(db)
    if columnId:
        return {"success": True, "cancelled": email_engine.cancel_email_jobs(db, columnId)}
    if jobId:
        try:
            cancelled = email_engine.cancel_email_job(db, jobId)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Email job not found")
        return {"success": True, "cancelled": 1 if cancelled else 0}
    raise HTTPException(status_code=400, detail="jobId or columnId is required")


# =============================================================================
# FORMULAS
# =============================================================================

@router.post("/formula/run")
async def run_formula(body: dict, db: Session = Depends(get_db)):
    db = require_db(db)

    table_id = body.get("tableId")
    formula = body.get("formula")
    output_column_name = body.get("outputColumnName")
    if not table_id or not formula or not output_column_name:
        raise HTTPException(status_code=400, detail="tableId, formula, and outputColumnName are required")

    try:
        job, column = formula_engine.create_formula_job(
            db, table_id, formula, output_column_name,
            row_ids=body.get("rowIds"),
            config_id=body.get("configId"),
        )
    except JobAdmissionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if job is None:
        return {"jobId": None, "columnId": column.id, "message": "No rows to process"}
    return {"jobId": job.id, "columnId": column.id}


@router.get("/formula/run")
async def formula_progress(jobId: Optional[str] = None, db: Session = Depends(get_db)):
    db = require_db(db)
    if not jobId:
        raise HTTPException(status_code=400, detail="jobId is required")
    try:
        return formula_engine.get_formula_progress(db, jobId)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")


@router.post("/formula/validate")
async def check_formula(body: dict, db: Session = Depends(get_db)):
    db = require_db(db)
    table_id = body.get("tableId")
    formula = body.get("formula")
    if not table_id or not formula:
        raise HTTPException(status_code=400, detail="tableId and formula are required")
    result = validate_formula(formula, get_table_columns(db, table_id))
    if result.error:
        return {"valid": False, "error": result.error}
    return {"valid": True}
