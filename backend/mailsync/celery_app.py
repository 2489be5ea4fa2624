"""Celery app for worker-hosted status sync. Uses Redis; beat runs the same two cadences as the in-process scheduler."""
from celery import Celery
from celery.schedules import crontab

from .config import settings

celery_app = Celery(
    "mailsync",
    broker=settings.celery_broker,
    backend=settings.redis_url,
    include=["mailsync.tasks"],
)
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.scheduler_timezone,
    enable_utc=True,
    # No redelivery of a half-finished run; the next run resumes from the checkpoint.
    task_acks_late=False,
    beat_schedule={
        "status-sync-interval": {
            "task": "mailsync.tasks.run_status_sync",
            "schedule": crontab(minute=0, hour=f"*/{settings.scheduler_interval_hours}"),
            "kwargs": {"trigger": "interval"},
        },
        "status-sync-daily": {
            "task": "mailsync.tasks.run_status_sync",
            "schedule": crontab(minute=0, hour=settings.scheduler_daily_hour),
            "kwargs": {"trigger": "daily"},
        },
    },
)
