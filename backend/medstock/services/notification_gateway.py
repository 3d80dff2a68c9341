"""MedStock — Notification gateway port and its adapters."""
import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from medstock.config import get_settings

logger = logging.getLogger(__name__)

# ── Event types ───────────────────────────────────────────────────────────────
EVENT_EXPIRY_CHECK_SUMMARY = "EXPIRY_CHECK_SUMMARY"
EVENT_BATCH_EXPIRED = "BATCH_EXPIRED"
EVENT_QUARANTINE_CREATED = "QUARANTINE_CREATED"


def expiry_event(severity: str) -> str:
    return f"EXPIRY_{severity}"


def quarantine_event(action: str) -> str:
    return f"QUARANTINE_{action}"


class NotificationGateway(ABC):
    """Outbound port. Implementations deliver an event to everyone holding ``roles``."""

    @abstractmethod
    async def notify(self, roles: list[str], event_type: str, payload: dict[str, Any]) -> None:
        ...


class LoggingNotificationGateway(NotificationGateway):
    """Writes each event to the application log."""

    async def notify(self, roles: list[str], event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Notification %s -> %s: %s", event_type, ",".join(roles), payload)


class WebhookNotificationGateway(NotificationGateway):
    """Hands events to the ``deliver_notification`` Celery task."""

    def __init__(self, url: str):
        self.url = url

    async def notify(self, roles: list[str], event_type: str, payload: dict[str, Any]) -> None:
        from medstock.tasks.notification_tasks import deliver_notification

        event = {
            "event_type": event_type,
            "roles": list(roles),
            "payload": payload,
            "emitted_at": datetime.now(timezone.utc).isoformat(),
        }
        # delay() publishes to the broker synchronously
        await asyncio.to_thread(deliver_notification.delay, self.url, event)


async def safe_notify(
    gateway: NotificationGateway,
    roles: list[str],
    event_type: str,
    payload: dict[str, Any],
) -> bool:
    """Notify and report whether the gateway accepted the event. Never raises."""
    try:
        await gateway.notify(list(roles), event_type, payload)
        return True
    except Exception as exc:
        logger.error("Notification %s failed: %s", event_type, exc, exc_info=True)
        return False


def get_notification_gateway() -> NotificationGateway:
    settings = get_settings()
    if settings.NOTIFICATION_BACKEND == "webhook":
        if not settings.NOTIFICATION_WEBHOOK_URL:
            raise RuntimeError("NOTIFICATION_BACKEND=webhook requires NOTIFICATION_WEBHOOK_URL")
        return WebhookNotificationGateway(settings.NOTIFICATION_WEBHOOK_URL)
    return LoggingNotificationGateway()
