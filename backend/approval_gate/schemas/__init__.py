"""Public schema exports shared across API route modules."""

from approval_gate.schemas.action_types import (
    ActionTypeCreate,
    ActionTypeRead,
    ActionTypeUpdate,
    EscalationPolicyPayload,
    StandingApproverCreate,
    StandingApproverRead,
)
from approval_gate.schemas.approval_requests import (
    ApprovalMetricsRead,
    ApprovalRequestCreate,
    ApprovalRequestRead,
    ApproverCreate,
    ApproverRead,
    AttachmentRef,
    CancelPayload,
    DecisionCreate,
    DecisionRead,
    HistoryEventRead,
)
from approval_gate.schemas.errors import ErrorResponse
from approval_gate.schemas.health import HealthStatusResponse

__all__ = [
    "ActionTypeCreate",
    "ActionTypeRead",
    "ActionTypeUpdate",
    "ApprovalMetricsRead",
    "ApprovalRequestCreate",
    "ApprovalRequestRead",
    "ApproverCreate",
    "ApproverRead",
    "AttachmentRef",
    "CancelPayload",
    "DecisionCreate",
    "DecisionRead",
    "ErrorResponse",
    "EscalationPolicyPayload",
    "HealthStatusResponse",
    "HistoryEventRead",
    "StandingApproverCreate",
    "StandingApproverRead",
]
