"""Domain exceptions raised by approval services.

Each class carries the HTTP status and machine-readable code that
`install_error_handling` uses when the error escapes an endpoint.
"""

from __future__ import annotations

from typing import Any

from fastapi import status


class ApprovalError(Exception):
    """Base class for all approval domain errors."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "approval_error"

    def __init__(self, detail: str, **context: Any) -> None:
        super().__init__(detail)
        self.detail = detail
        self.context = context


class ValidationError(ApprovalError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "validation_error"


class PolicyError(ApprovalError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "policy_error"


class ActionTypeInactive(PolicyError):
    code = "action_type_inactive"


class NoEligibleApprovers(PolicyError):
    code = "no_eligible_approvers"


class SelfApprovalNotAllowed(PolicyError):
    code = "self_approval_not_allowed"


class PolicyLocked(PolicyError):
    code = "policy_locked"


class StateError(ApprovalError):
    status_code = status.HTTP_409_CONFLICT
    code = "state_error"


class InvalidTransition(StateError):
    code = "invalid_transition"


class InvalidState(StateError):
    code = "invalid_state"


class AlreadyDecided(StateError):
    code = "already_decided"


class ConcurrencyConflict(StateError):
    code = "concurrency_conflict"


class NotFoundError(ApprovalError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class Forbidden(ApprovalError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "forbidden"


class ExecutionError(ApprovalError):
    """Raised by action handlers; stored on the request rather than retried."""

    status_code = status.HTTP_502_BAD_GATEWAY
    code = "execution_error"
