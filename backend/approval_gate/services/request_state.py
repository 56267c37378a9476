"""Approval request state machine and the guarded status write.

Every writer that changes a request (votes, cancellation, the sweep, the
executor) goes through `guarded_update`, a compare-and-swap on the
`version` column. A writer holding a stale copy gets `False` back and must
re-read before deciding again.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import update
from sqlmodel import col

from approval_gate.core.errors import InvalidTransition, NotFoundError
from approval_gate.core.logging import get_logger
from approval_gate.core.time import utcnow
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approvers import Approver
from approval_gate.services.transitions import ACTOR_USER, record_transition

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_REJECTED = "rejected"
STATUS_CANCELLED = "cancelled"
STATUS_EXECUTED = "executed"
STATUS_EXECUTION_ERROR = "execution_error"

ALL_STATUSES = frozenset(
    {
        STATUS_PENDING,
        STATUS_APPROVED,
        STATUS_REJECTED,
        STATUS_CANCELLED,
        STATUS_EXECUTED,
        STATUS_EXECUTION_ERROR,
    },
)
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED}),
    STATUS_APPROVED: frozenset({STATUS_EXECUTED, STATUS_EXECUTION_ERROR}),
}
# `approved` is terminal for voting but still waits on the executor.
VOTING_CLOSED_STATUSES = ALL_STATUSES - {STATUS_PENDING}
RESOLVED_STATUSES = frozenset({STATUS_APPROVED, STATUS_REJECTED, STATUS_CANCELLED})

DECISION_APPROVED = "approved"
DECISION_REJECTED = "rejected"
VALID_DECISIONS = frozenset({DECISION_APPROVED, DECISION_REJECTED})

SOURCE_STANDING = "standing"
SOURCE_AD_HOC = "ad_hoc"
SOURCE_ESCALATION = "escalation"
SOURCE_SYSTEM = "system"

SYSTEM_ACTOR_ID = UUID(int=0)


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def ensure_transition_allowed(from_status: str, to_status: str) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidTransition(
            f"Cannot move request from {from_status!r} to {to_status!r}",
            from_status=from_status,
            to_status=to_status,
        )


async def load_request(session: AsyncSession, request_id: UUID) -> ApprovalRequest:
    """Read the request as currently stored, bypassing stale identity-map state."""
    request = await ApprovalRequest.objects.by_id(request_id).fresh().first(session)
    if request is None:
        raise NotFoundError("Approval request not found", request_id=str(request_id))
    return request


async def load_request_slots(session: AsyncSession, request_id: UUID) -> list[Approver]:
    """Return every vote slot of a request, active or not, oldest first."""
    return await (
        Approver.objects.filter_by(request_id=request_id)
        .order_by(col(Approver.created_at).asc(), col(Approver.id).asc())
        .fresh()
        .all(session)
    )


async def guarded_update(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    to_status: str | None = None,
    actor_id: UUID | None = None,
    actor_type: str = ACTOR_USER,
    reason: str = "",
    tally: dict[str, Any] | None = None,
    values: dict[str, Any] | None = None,
) -> bool:
    """Compare-and-swap `request` against the version it was read at.

    With `to_status` the row must also still carry the status it was read
    with; the transition is validated and logged. Without it only the version
    is bumped (plus `values`), which serializes writers that touch the same
    request without changing its status.

    Returns False when another writer got there first; nothing is written.
    """
    expected_version = request.version
    from_status = request.status
    now = utcnow()
    new_values: dict[str, Any] = {
        **(values or {}),
        "version": expected_version + 1,
        "updated_at": now,
    }
    if to_status is not None:
        ensure_transition_allowed(from_status, to_status)
        new_values["status"] = to_status
        if to_status in RESOLVED_STATUSES:
            new_values.setdefault("resolved_at", now)

    statement = (
        update(ApprovalRequest)
        .where(col(ApprovalRequest.id) == request.id)
        .where(col(ApprovalRequest.version) == expected_version)
        .where(col(ApprovalRequest.status) == from_status)
        .values(**new_values)
    )
    result = await session.exec(statement)  # type: ignore[call-overload]
    if result.rowcount != 1:
        logger.info(
            "approval.request.cas_conflict",
            extra={
                "request_id": str(request.id),
                "expected_version": expected_version,
                "to_status": to_status,
            },
        )
        return False

    for key, value in new_values.items():
        setattr(request, key, value)
    if to_status is not None:
        record_transition(
            session,
            request_id=request.id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            actor_type=actor_type,
            reason=reason,
            tally=tally,
        )
        logger.info(
            "approval.request.transition",
            extra={
                "request_id": str(request.id),
                "code": request.code,
                "from_status": from_status,
                "to_status": to_status,
                "reason": reason,
            },
        )
    return True
