"""
Celery application for the scheduled job sweeps
"""
from celery import Celery
from config import settings

# Create Celery app instance
celery_app = Celery(
    "row_enrichment",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=10 * 60,  # 10 minutes
    task_soft_time_limit=8 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=50,  # Restart worker after 50 tasks
)

# Every sweep is idempotent, so overlapping beats are harmless
celery_app.conf.beat_schedule = {
    "process-enrichment-jobs": {
        "task": "tasks.process_enrichment_jobs",
        "schedule": float(settings.ENRICHMENT_POLL_SECONDS),
    },
    "poll-batch-jobs": {
        "task": "tasks.poll_batch_jobs",
        "schedule": float(settings.BATCH_POLL_SECONDS),
    },
    "process-email-jobs": {
        "task": "tasks.process_email_jobs",
        "schedule": float(settings.EMAIL_POLL_SECONDS),
    },
    "process-formula-jobs": {
        "task": "tasks.process_formula_jobs",
        "schedule": float(settings.FORMULA_POLL_SECONDS),
    },
}

# Import tasks (this registers them with celery_app)
from tasks import enrichment_tasks  # noqa: E402,F401

if __name__ == "__main__":
    celery_app.start()
