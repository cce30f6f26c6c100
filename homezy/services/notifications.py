"""Fire-and-forget notification delivery for lead and claim events"""

import logging
from typing import Any

import httpx

from homezy.config import settings

logger = logging.getLogger(__name__)

# Event kinds delivered to professionals and homeowners
DIRECT_LEAD_RECEIVED = "direct_lead_received"
DIRECT_LEAD_REMINDER_1 = "direct_lead_reminder_1"
DIRECT_LEAD_REMINDER_2 = "direct_lead_reminder_2"
DIRECT_LEAD_CONVERTED = "direct_lead_converted"
DIRECT_LEAD_ACCEPTED = "direct_lead_accepted"
DIRECT_LEAD_DECLINED = "direct_lead_declined"
LEAD_CLAIMED = "lead_claimed"
QUOTE_ACCEPTED = "quote_accepted"
LEAD_CANCELLED = "lead_cancelled"


class Notifier:
    """Delivery interface; implementations may raise, callers go through ``safe_notify``"""

    async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Default notifier: writes the event to the application log"""

    async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        logger.info(
            f"Notification {kind} -> {recipient_id}",
            extra={"professional_id": recipient_id, "lead_id": payload.get("lead_id")},
        )


class WebhookNotifier(Notifier):
    """POSTs each event as JSON to an external delivery service"""

    def __init__(self, url: str, timeout: float = 5.0, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    async def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        body = {"recipient_id": recipient_id, "kind": kind, "payload": payload}
        if self._client is not None:
            response = await self._client.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=body)
            response.raise_for_status()


async def safe_notify(
    notifier: Notifier | None,
    recipient_id: str | None,
    kind: str,
    payload: dict[str, Any],
) -> bool:
    """Deliver a notification without ever failing the caller's operation"""
    if notifier is None or not recipient_id:
        return False
    try:
        await notifier.notify(recipient_id, kind, payload)
        return True
    except Exception as e:
        logger.error(f"Failed to deliver {kind} notification to {recipient_id}: {e}", exc_info=True)
        return False


def get_notifier() -> Notifier:
    """Notifier selected by configuration"""
    if settings.notification_webhook_url:
        return WebhookNotifier(
            settings.notification_webhook_url,
            timeout=settings.notification_timeout_seconds,
        )
    return LoggingNotifier()
