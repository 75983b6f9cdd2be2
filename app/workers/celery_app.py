"""
Celery Application Configuration
"""
from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import settings
from app.core.logging import setup_logging

celery_app = Celery(
    "messagejs_core",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    worker_concurrency=settings.DISPATCH_CONCURRENCY,
    # a job is acknowledged only after it finishes; a crashed worker's job is redelivered
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=settings.DISPATCH_RESULT_EXPIRES_SECONDS,
    task_annotations={
        "app.workers.tasks.dispatch_message": {"rate_limit": settings.DISPATCH_RATE_LIMIT},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # QUEUED messages whose enqueue failed after the insert
    "sweep-orphaned-messages-every-minute": {
        "task": "app.workers.tasks.sweep_orphaned_messages",
        "schedule": 60.0,
    },
    "cleanup-dispatch-jobs-hourly": {
        "task": "app.workers.tasks.cleanup_dispatch_jobs",
        "schedule": 3600.0,  # 1 hour
    },
}


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    """Worker processes log the same JSON lines as the API instead of Celery's format"""
    setup_logging(
        level=settings.LOG_LEVEL,
        json_format=settings.LOG_JSON,
        app_name=settings.APP_NAME,
        service="worker",
    )
