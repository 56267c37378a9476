"""Outbound notification collaborators.

Delivery channels (email, SMS, push) live outside this service. A sender only
needs to accept `notify(user_id, template, context)`.
"""

from __future__ import annotations

from typing import Any, Protocol
from uuid import UUID

import httpx

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger

logger = get_logger(__name__)


class NotificationSender(Protocol):
    async def notify(self, user_id: UUID, template: str, context: dict[str, Any]) -> None: ...


class LoggingNotificationSender:
    """Records notifications in the log; used when no webhook is configured."""

    async def notify(self, user_id: UUID, template: str, context: dict[str, Any]) -> None:
        logger.info(
            "approval.notification.dispatch",
            extra={
                "user_id": str(user_id),
                "template": template,
                "context_keys": sorted(context),
            },
        )


class WebhookNotificationSender:
    """POSTs each notification to the delivery service's webhook."""

    def __init__(self, url: str, *, timeout: float, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def notify(self, user_id: UUID, template: str, context: dict[str, Any]) -> None:
        body = {"user_id": str(user_id), "template": template, "context": context}
        if self._client is not None:
            response = await self._client.post(self._url, json=body, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(self._url, json=body)
        response.raise_for_status()


def get_notification_sender() -> NotificationSender:
    url = settings.notification_webhook_url.strip()
    if url:
        return WebhookNotificationSender(url, timeout=settings.notification_timeout_seconds)
    return LoggingNotificationSender()
