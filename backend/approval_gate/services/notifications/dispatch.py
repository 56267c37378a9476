"""Approval notification dispatch handler run by the queue worker."""

from __future__ import annotations

import asyncio

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger
from approval_gate.services.notifications.queue import (
    ApprovalNotification,
    decode_notification_task,
    requeue_if_failed,
)
from approval_gate.services.notifications.senders import (
    NotificationSender,
    get_notification_sender,
)
from approval_gate.services.queue import QueuedTask

logger = get_logger(__name__)


async def _dispatch(notification: ApprovalNotification, sender: NotificationSender) -> None:
    context = {
        **notification.context,
        "request_id": str(notification.request_id),
        "request_code": notification.request_code,
    }
    for user_id in notification.target_ids:
        await asyncio.wait_for(
            sender.notify(user_id, notification.template, context),
            timeout=settings.notification_timeout_seconds,
        )
    logger.info(
        "approval.notification.delivered",
        extra={
            "template": notification.template,
            "request_id": str(notification.request_id),
            "target_count": len(notification.target_ids),
        },
    )


async def process_notification_task(
    task: QueuedTask,
    *,
    sender: NotificationSender | None = None,
) -> None:
    """Decode and deliver one queued notification; errors propagate for requeue."""
    notification = decode_notification_task(task)
    await _dispatch(notification, sender or get_notification_sender())


def requeue_notification_task(task: QueuedTask, *, delay_seconds: float = 0) -> bool:
    """Requeue a failed notification task."""
    notification = decode_notification_task(task)
    return requeue_if_failed(notification, delay_seconds=delay_seconds)
