"""MedStock — Scheduled expiry and quarantine Celery tasks."""
import asyncio
import logging

from medstock.core.errors import AlreadyRunError
from medstock.db.session import async_session_maker
from medstock.services.alert_service import ExpiryAlertService
from medstock.services.check_runner import ExpiryCheckOrchestrator
from medstock.services.notification_gateway import get_notification_gateway
from medstock.services.quarantine_service import QuarantineService
from medstock.worker import celery_app

logger = logging.getLogger(__name__)


@celery_app.task
def run_scheduled_expiry_check() -> dict:
    """Nightly expiry sweep. A run already in progress is logged, not retried."""
    try:
        return asyncio.run(_run_scheduled_expiry_check())
    except AlreadyRunError as exc:
        logger.warning("Scheduled expiry check skipped: %s", exc.message)
        return {"skipped": True, "reason": exc.message}


async def _run_scheduled_expiry_check() -> dict:
    async with async_session_maker() as db:
        result = await ExpiryCheckOrchestrator.run_scheduled(db, get_notification_gateway())
        return {
            "run_id": str(result.run_id),
            "status": result.status,
            "items_checked": result.items_checked,
            "alerts_generated": result.alerts_generated,
            "duplicates_skipped": result.duplicates_skipped,
            "errors": result.errors,
        }


@celery_app.task
def auto_quarantine_expired_batches() -> dict:
    return asyncio.run(_auto_quarantine_expired_batches())


async def _auto_quarantine_expired_batches() -> dict:
    async with async_session_maker() as db:
        return await QuarantineService.auto_quarantine_expired(db, get_notification_gateway())


@celery_app.task
def mark_expired_batches() -> int:
    return asyncio.run(_mark_expired_batches())


async def _mark_expired_batches() -> int:
    async with async_session_maker() as db:
        return await ExpiryAlertService.mark_expired_batches(db, get_notification_gateway())
