"""MedStock — Notification delivery Celery task."""
import hashlib
import hmac
import json
import logging

import httpx

from medstock.config import get_settings
from medstock.worker import celery_app

logger = logging.getLogger(__name__)


def sign_payload(body: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def post_event(url: str, event: dict, secret: str, client: httpx.Client | None = None) -> httpx.Response:
    """POST one signed event. Raises for any non-2xx response."""
    body = json.dumps(event, separators=(",", ":"), default=str)
    headers = {
        "Content-Type": "application/json",
        "X-MedStock-Signature": sign_payload(body, secret),
        "X-MedStock-Event": event.get("event_type", ""),
    }
    if client is None:
        with httpx.Client(timeout=10.0) as owned:
            response = owned.post(url, content=body, headers=headers)
    else:
        response = client.post(url, content=body, headers=headers)
    response.raise_for_status()
    return response


@celery_app.task(bind=True, max_retries=3)
def deliver_notification(self, url: str, event: dict) -> None:
    """
    Delivers a notification event to the webhook URL with exponential backoff.
    Retries 3 times on connection errors or non-2xx responses.
    """
    try:
        post_event(url, event, get_settings().NOTIFICATION_WEBHOOK_SECRET)
    except (httpx.RequestError, httpx.HTTPStatusError) as exc:
        # 5s, 10s, 20s
        delay = (2 ** self.request.retries) * 5
        logger.warning("Notification %s delivery failed, retrying in %ss: %s", event.get("event_type"), delay, exc)
        raise self.retry(exc=exc, countdown=delay)
