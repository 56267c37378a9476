"""Approval notification queueing + dispatch utilities."""

from approval_gate.services.notifications.queue import (
    TASK_TYPE,
    ApprovalNotification,
    decode_notification_task,
    enqueue_notification,
)

__all__ = [
    "TASK_TYPE",
    "ApprovalNotification",
    "decode_notification_task",
    "enqueue_notification",
]
