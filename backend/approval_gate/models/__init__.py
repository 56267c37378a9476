"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from approval_gate.models.action_types import ActionType
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approval_transitions import ApprovalTransition
from approval_gate.models.approvers import Approver

__all__ = [
    "ActionType",
    "ApprovalRequest",
    "ApprovalTransition",
    "Approver",
]
