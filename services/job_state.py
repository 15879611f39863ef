"""
Guarded job status transitions

Jobs are never locked. Every status change is a conditional UPDATE that only
matches while the job is still in one of the expected statuses, so repeated
or concurrent invocations cannot move a job out of a terminal state.
"""
from datetime import datetime
from typing import Any, Dict, Iterable

from sqlalchemy.orm import Session

from models import JobStatus, BatchJobStatus

ACTIVE_JOB_STATUSES = [JobStatus.PENDING.value, JobStatus.RUNNING.value]
TERMINAL_JOB_STATUSES = [JobStatus.COMPLETE.value, JobStatus.CANCELLED.value, JobStatus.ERROR.value]

ACTIVE_BATCH_STATUSES = [
    BatchJobStatus.PENDING.value,
    BatchJobStatus.UPLOADING.value,
    BatchJobStatus.SUBMITTED.value,
    BatchJobStatus.PROCESSING.value,
    BatchJobStatus.DOWNLOADING.value,
]
# Statuses that have a remote batch to reconcile against
POLLABLE_BATCH_STATUSES = [
    BatchJobStatus.SUBMITTED.value,
    BatchJobStatus.PROCESSING.value,
    BatchJobStatus.DOWNLOADING.value,
]
TERMINAL_BATCH_STATUSES = [
    BatchJobStatus.COMPLETE.value,
    BatchJobStatus.ERROR.value,
    BatchJobStatus.CANCELLED.value,
]


def transition(
    db: Session,
    model,
    job_id: str,
    values: Dict[str, Any],
    from_statuses: Iterable[str],
    *criteria,
) -> bool:
    """
    Apply `values` to the job only if its status is in `from_statuses` (and
    any extra criteria hold). Commits; returns True when a row was updated.
    """
    values = dict(values)
    values.setdefault("updated_at", datetime.utcnow())
    updated = (
        db.query(model)
        .filter(model.id == job_id, model.status.in_(list(from_statuses)), *criteria)
        .update(values, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def touch(db: Session, model, job_id: str, **values) -> None:
    """Unconditional bookkeeping update (last_error, remote ids, counters)"""
    values.setdefault("updated_at", datetime.utcnow())
    db.query(model).filter(model.id == job_id).update(values, synchronize_session=False)
    db.commit()
