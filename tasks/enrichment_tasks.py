"""
Celery tasks driving the job engines
"""
import asyncio

from celery import Task
from database import SessionLocal
import logging

from celery_app import celery_app
from services.batch_engine import batch_engine
from services.email_engine import email_engine
from services.enrichment_engine import enrichment_engine
from services.formula_engine import formula_engine

logger = logging.getLogger(__name__)


class DatabaseTask(Task):
    """Base task class that provides database session"""
    _db = None

    def get_db(self):
        """Get or create database session"""
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        """Clean up database session after task completes"""
        if self._db is not None:
            self._db.close()
            self._db = None


@celery_app.task(bind=True, base=DatabaseTask, name="tasks.process_enrichment_jobs")
def process_enrichment_jobs(self):
    """Advance every active enrichment job by one batch"""
    db = self.get_db()
    try:
        summary = asyncio.run(enrichment_engine.process_active_jobs(db))
        logger.info(f"Task process_enrichment_jobs completed: {summary.to_dict()}")
        return summary.to_dict()
    except Exception as e:
        logger.error(f"Task process_enrichment_jobs failed: {e}", exc_info=True)
        raise


@celery_app.task(bind=True, base=DatabaseTask, name="tasks.poll_batch_jobs")
def poll_batch_jobs(self):
    """Reconcile every in-flight provider batch against its remote status"""
    db = self.get_db()
    try:
        result = asyncio.run(batch_engine.poll_batch_jobs(db))
        logger.info(f"Task poll_batch_jobs completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Task poll_batch_jobs failed: {e}", exc_info=True)
        raise


@celery_app.task(bind=True, base=DatabaseTask, name="tasks.force_sync_batch_job")
def force_sync_batch_job(self, job_id: str):
    db = self.get_db()
    try:
        result = asyncio.run(batch_engine.force_sync_batch_job(db, job_id))
        logger.info(f"Task force_sync_batch_job completed for job {job_id}: {result}")
        return result
    except Exception as e:
        logger.error(f"Task force_sync_batch_job failed for job {job_id}: {e}", exc_info=True)
        raise


@celery_app.task(bind=True, base=DatabaseTask, name="tasks.process_email_jobs")
def process_email_jobs(self):
    """Run email lookups until the sweep's time budget is used up"""
    db = self.get_db()
    try:
        summary = asyncio.run(email_engine.process_email_jobs(db))
        logger.info(f"Task process_email_jobs completed: {summary.to_dict()}")
        return summary.to_dict()
    except Exception as e:
        logger.error(f"Task process_email_jobs failed: {e}", exc_info=True)
        raise


@celery_app.task(bind=True, base=DatabaseTask, name="tasks.process_formula_jobs")
def process_formula_jobs(self):
    db = self.get_db()
    try:
        result = formula_engine.process_formula_jobs(db)
        logger.info(f"Task process_formula_jobs completed: {result}")
        return result
    except Exception as e:
        logger.error(f"Task process_formula_jobs failed: {e}", exc_info=True)
        raise
