"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "webhook_retry",
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
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "process-webhook-retries": {
        "task": "app.workers.tasks.process_webhook_retries",
        "schedule": settings.WEBHOOK_RETRY_INTERVAL_SECONDS,
    },
    # רשומות שנתקעו ב-processing אחרי קריסת worker חוזרות לתור
    "release-stale-webhook-retries-every-5-minutes": {
        "task": "app.workers.tasks.release_stale_webhook_retries",
        "schedule": 300.0,  # 5 דקות
    },
}
