"""Append-only transition log writes and reads."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlmodel import col

from approval_gate.core.time import utcnow
from approval_gate.models.approval_transitions import ApprovalTransition

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

ACTOR_USER = "user"
ACTOR_SYSTEM = "system"


def record_transition(
    session: AsyncSession,
    *,
    request_id: UUID,
    from_status: str | None,
    to_status: str,
    actor_id: UUID | None,
    actor_type: str = ACTOR_USER,
    reason: str = "",
    tally: dict[str, Any] | None = None,
) -> ApprovalTransition:
    """Stage one transition row in the caller's transaction."""
    entry = ApprovalTransition(
        request_id=request_id,
        from_status=from_status,
        to_status=to_status,
        actor_id=actor_id,
        actor_type=actor_type,
        reason=reason,
        tally=tally,
        created_at=utcnow(),
    )
    session.add(entry)
    return entry


async def list_transitions(session: AsyncSession, request_id: UUID) -> list[ApprovalTransition]:
    return await (
        ApprovalTransition.objects.filter_by(request_id=request_id)
        .order_by(col(ApprovalTransition.created_at).asc(), col(ApprovalTransition.id).asc())
        .all(session)
    )
