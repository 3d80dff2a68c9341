"""MedStock — Celery worker configuration."""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from medstock.config import configure_logging, get_settings

settings = get_settings()

celery_app = Celery(
    "medstock",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_retry_delay=60,
    task_max_retries=3,
    task_routes={
        "medstock.tasks.*": {"queue": "default"},
    },
    include=[
        "medstock.tasks.expiry_tasks",
        "medstock.tasks.notification_tasks",
    ],
)

# Celery Beat schedule: check, then quarantine what already expired, then flag the rest
celery_app.conf.beat_schedule = {
    "daily-expiry-check": {
        "task": "medstock.tasks.expiry_tasks.run_scheduled_expiry_check",
        "schedule": crontab(hour=settings.EXPIRY_CHECK_HOUR, minute=settings.EXPIRY_CHECK_MINUTE),
    },
    "daily-auto-quarantine": {
        "task": "medstock.tasks.expiry_tasks.auto_quarantine_expired_batches",
        "schedule": crontab(hour=settings.AUTO_QUARANTINE_HOUR, minute=settings.AUTO_QUARANTINE_MINUTE),
    },
    "daily-mark-expired": {
        "task": "medstock.tasks.expiry_tasks.mark_expired_batches",
        "schedule": crontab(hour=settings.EXPIRED_SWEEP_HOUR, minute=settings.EXPIRED_SWEEP_MINUTE),
    },
}


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging(settings)
