"""Approval notification queue persistence helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger
from approval_gate.services.queue import QueuedTask, enqueue_task
from approval_gate.services.queue import requeue_if_failed as generic_requeue_if_failed

logger = get_logger(__name__)
TASK_TYPE = "approval_notification"

TEMPLATE_REQUESTED = "approval.requested"
TEMPLATE_REMINDER = "approval.reminder"
TEMPLATE_ESCALATED = "approval.escalated"
TEMPLATE_RESOLVED = "approval.resolved"
TEMPLATE_CANCELLED = "approval.cancelled"
TEMPLATE_EXECUTED = "approval.executed"
TEMPLATE_EXECUTION_FAILED = "approval.execution_failed"


@dataclass(frozen=True)
class ApprovalNotification:
    """One templated message fanned out to a set of users."""

    template: str
    request_id: UUID
    request_code: str
    target_ids: list[UUID] = field(default_factory=list)
    context: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    attempts: int = 0


def _task_from_notification(notification: ApprovalNotification) -> QueuedTask:
    return QueuedTask(
        task_type=TASK_TYPE,
        payload={
            "template": notification.template,
            "request_id": str(notification.request_id),
            "request_code": notification.request_code,
            "target_ids": [str(tid) for tid in notification.target_ids],
            "context": notification.context,
        },
        created_at=notification.created_at,
        attempts=notification.attempts,
    )


def decode_notification_task(task: QueuedTask) -> ApprovalNotification:
    """Decode a QueuedTask into an ApprovalNotification."""
    if task.task_type != TASK_TYPE:
        raise ValueError(f"Unexpected task_type={task.task_type!r}; expected {TASK_TYPE!r}")

    p: dict[str, Any] = task.payload
    return ApprovalNotification(
        template=str(p["template"]),
        request_id=UUID(p["request_id"]),
        request_code=str(p.get("request_code", "")),
        target_ids=[UUID(tid) for tid in p.get("target_ids", [])],
        context=p.get("context", {}),
        created_at=task.created_at,
        attempts=task.attempts,
    )


def enqueue_notification(notification: ApprovalNotification) -> bool:
    """Hand a notification to the Redis queue; False means it was not accepted."""
    if not notification.target_ids:
        return True
    queued = _task_from_notification(notification)
    accepted = enqueue_task(queued, settings.rq_queue_name, redis_url=settings.redis_url)
    if accepted:
        logger.info(
            "approval.notification.enqueued",
            extra={
                "template": notification.template,
                "request_id": str(notification.request_id),
                "target_count": len(notification.target_ids),
            },
        )
    else:
        logger.warning(
            "approval.notification.enqueue_failed",
            extra={
                "template": notification.template,
                "request_id": str(notification.request_id),
            },
        )
    return accepted


def requeue_if_failed(
    notification: ApprovalNotification,
    *,
    delay_seconds: float = 0,
) -> bool:
    """Requeue a failed notification with capped retries."""
    return generic_requeue_if_failed(
        _task_from_notification(notification),
        settings.rq_queue_name,
        max_retries=settings.rq_dispatch_max_retries,
        redis_url=settings.redis_url,
        delay_seconds=delay_seconds,
    )
