from __future__ import annotations

from datetime import datetime, timezone
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import httpx

from deskplan.core.config import get_settings


logger = logging.getLogger(__name__)

EVENT_TRIAL_STARTED = "trial.started"
EVENT_TRIAL_REMINDER = "trial.reminder"
EVENT_TRIAL_CONVERTED = "trial.converted"
EVENT_TRIAL_CANCELLED = "trial.cancelled"
EVENT_TRIAL_EXTENDED = "trial.extended"
EVENT_TRIAL_EXPIRED = "trial.expired"
EVENT_SUBSCRIPTION_PROVISIONED = "subscription.provisioned"
EVENT_SUBSCRIPTION_CANCELLED = "subscription.cancelled"
EVENT_SUBSCRIPTION_PLAN_CHANGED = "subscription.plan_changed"
EVENT_USAGE_WARNING = "usage.warning"


class Notifier(Protocol):
    async def send(self, event: str, tenant_id: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    # Default delivery when no webhook is configured; emails are rendered elsewhere.
    async def send(self, event: str, tenant_id: str, payload: dict[str, Any]) -> None:
        logger.info("notification event=%s tenant_id=%s payload=%s", event, tenant_id, payload)


def build_notification_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 so receivers can authenticate notification payloads.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


class WebhookNotifier:
    def __init__(
        self,
        *,
        url: str,
        secret: str,
        timeout_ms: int = 2000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout = timeout_ms / 1000.0
        # Injectable transport keeps tests off the network.
        self._transport = transport

    async def send(self, event: str, tenant_id: str, payload: dict[str, Any]) -> None:
        document = {
            "event_type": event,
            "tenant_id": tenant_id,
            "payload": payload,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        body = json.dumps(document, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Deskplan-Signature": build_notification_signature(self._secret, body),
            "X-Deskplan-Event": event,
        }
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._url, content=body, headers=headers)
            response.raise_for_status()


def build_notifier() -> Notifier:
    settings = get_settings()
    if not settings.notify_webhook_enabled:
        return LoggingNotifier()
    if not settings.notify_webhook_url or not settings.notify_webhook_secret:
        logger.warning("notify_webhook_missing_config")
        return LoggingNotifier()
    return WebhookNotifier(
        url=settings.notify_webhook_url,
        secret=settings.notify_webhook_secret,
        timeout_ms=settings.notify_webhook_timeout_ms,
    )


async def notify_safely(
    notifier: Notifier,
    event: str,
    tenant_id: str,
    payload: dict[str, Any],
) -> bool:
    # Fire-and-forget: a failed notification never affects the state change it reports.
    try:
        await notifier.send(event, tenant_id, payload)
        return True
    except Exception as exc:  # noqa: BLE001 - notification failures are non-fatal
        logger.warning("notification_failed event=%s tenant_id=%s", event, tenant_id, exc_info=exc)
        return False
