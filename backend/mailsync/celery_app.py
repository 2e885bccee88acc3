"""Celery app for background and scheduled syncs. Uses Redis; DB session per task."""
import logging

from celery import Celery
from celery.signals import after_setup_logger

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
    timezone="UTC",
    enable_utc=True,
    # A worker lost mid-sync requeues the task; the job resumes from its step log.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
)

if settings.sync_schedule_minutes > 0:
    celery_app.conf.beat_schedule = {
        "sync-all-accounts": {
            "task": "mailsync.tasks.sync_all_accounts",
            "schedule": settings.sync_schedule_minutes * 60.0,
        },
    }


@after_setup_logger.connect
def _configure_log_level(logger, *args, **kwargs):
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
