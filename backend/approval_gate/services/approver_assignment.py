"""Approver assignment: vote slots and the decisions recorded in them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from approval_gate.core.config import settings
from approval_gate.core.errors import (
    AlreadyDecided,
    ConcurrencyConflict,
    Forbidden,
    InvalidState,
    NotFoundError,
    ValidationError,
)
from approval_gate.core.logging import get_logger
from approval_gate.core.time import utcnow
from approval_gate.models.approvers import Approver
from approval_gate.services.action_executor import get_action_executor
from approval_gate.services.action_registry import get_policy, list_standing_approvers
from approval_gate.services.decision_aggregator import (
    Outcome,
    ensure_not_self_vote,
    finalize,
    resolve,
)
from approval_gate.services.notifications.queue import (
    TEMPLATE_REQUESTED,
    ApprovalNotification,
    enqueue_notification,
)
from approval_gate.services.request_state import (
    DECISION_REJECTED,
    SOURCE_AD_HOC,
    SOURCE_STANDING,
    STATUS_PENDING,
    VALID_DECISIONS,
    load_request,
    load_request_slots,
)
from approval_gate.services.transitions import ACTOR_USER

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.core.auth import Actor
    from approval_gate.models.action_types import ActionType
    from approval_gate.models.approval_requests import ApprovalRequest
    from approval_gate.services.action_executor import ActionExecutor

logger = get_logger(__name__)


@dataclass(frozen=True)
class DecisionResult:
    """What a voter gets back: the request as stored and their slot."""

    request: ApprovalRequest
    slot: Approver
    outcome: Outcome | None
    late: bool = False

    @property
    def resolved(self) -> bool:
        return self.outcome is not None and self.outcome.status is not None


def _active_slot_for(slots: Iterable[Approver], user_id: UUID) -> Approver | None:
    for slot in slots:
        if slot.user_id == user_id and slot.active:
            return slot
    return None


def stage_slots(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    user_ids: Iterable[UUID],
    source: str,
    existing: Iterable[Approver] = (),
    action_type: ActionType | None = None,
) -> list[Approver]:
    """Add one active slot per user not already holding one.

    When `action_type` disallows self-approval the requester is skipped.
    """
    taken = {slot.user_id for slot in existing if slot.active}
    skip_requester = action_type is not None and not action_type.allow_self_approval
    now = utcnow()
    created: list[Approver] = []
    for user_id in user_ids:
        if user_id in taken:
            continue
        if skip_requester and user_id == request.requester_id:
            continue
        slot = Approver(
            user_id=user_id,
            request_id=request.id,
            action_type_id=request.action_type_id,
            source=source,
            created_at=now,
            updated_at=now,
        )
        session.add(slot)
        created.append(slot)
        taken.add(user_id)
    return created


async def seed_request_slots(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    action_type: ActionType,
) -> list[Approver]:
    """Copy the action type's active standing approvers onto a new request."""
    standing = await list_standing_approvers(session, action_type.id)
    return stage_slots(
        session,
        request=request,
        user_ids=[approver.user_id for approver in standing],
        source=SOURCE_STANDING,
        action_type=action_type,
    )


def notify_new_approvers(request: ApprovalRequest, user_ids: list[UUID], *, template: str) -> bool:
    return enqueue_notification(
        ApprovalNotification(
            template=template,
            request_id=request.id,
            request_code=request.code,
            target_ids=user_ids,
            context={
                "requester_name": request.requester_name,
                "deadline": request.deadline.isoformat() if request.deadline else None,
            },
        ),
    )


def _validate_vote(decision: str, justification: str) -> None:
    if decision not in VALID_DECISIONS:
        raise ValidationError(
            f"decision must be one of: {', '.join(sorted(VALID_DECISIONS))}",
            field="decision",
        )
    if decision == DECISION_REJECTED and not justification:
        raise ValidationError("A justification is required to reject", field="justification")


async def cast_decision(
    session: AsyncSession,
    *,
    request_id: UUID,
    voter_id: UUID,
    decision: str,
    justification: str = "",
    attachments: list[dict[str, Any]] | None = None,
    executor: ActionExecutor | None = None,
) -> DecisionResult:
    """Record one approver's decision and re-run aggregation.

    The vote and the resulting status change commit together under the
    request's version guard. On a lost race the whole attempt is rolled back
    and replayed against fresh state. A vote arriving after the request left
    `pending` is kept for audit, flagged `late`, and changes nothing.
    """
    justification = (justification or "").strip()
    for attempt in range(settings.aggregation_max_retries):
        request = await load_request(session, request_id)
        action_type = await get_policy(session, request.action_type_id)
        # Self-votes are refused whatever the decision value.
        ensure_not_self_vote(action_type, request, voter_id)
        _validate_vote(decision, justification)

        slots = await load_request_slots(session, request.id)
        slot = _active_slot_for(slots, voter_id)
        if slot is None:
            raise NotFoundError(
                "Caller is not an approver for this request",
                request_id=str(request_id),
            )
        if slot.decision is not None:
            raise AlreadyDecided("Approver has already decided", approver_id=str(slot.id))

        now = utcnow()
        slot.decision = decision
        slot.justification = justification
        slot.decided_at = now
        slot.attachments = list(attachments or [])
        slot.updated_at = now

        if request.status != STATUS_PENDING:
            slot.late = True
            session.add(slot)
            await session.commit()
            logger.info(
                "approval.decision.late",
                extra={
                    "request_id": str(request.id),
                    "approver_id": str(slot.id),
                    "status": request.status,
                },
            )
            return DecisionResult(request=request, slot=slot, outcome=None, late=True)

        session.add(slot)
        outcome = await resolve(
            session,
            request=request,
            action_type=action_type,
            actor_id=voter_id,
            actor_type=ACTOR_USER,
        )
        if outcome is None:
            await session.rollback()
            session.expunge_all()
            logger.info(
                "approval.decision.retry",
                extra={"request_id": str(request_id), "attempt": attempt + 1},
            )
            continue

        await session.commit()
        logger.info(
            "approval.decision.recorded",
            extra={
                "request_id": str(request.id),
                "approver_id": str(slot.id),
                "decision": decision,
                "status": request.status,
                "tally": outcome.tally.as_dict(),
            },
        )
        await finalize(
            session,
            request=request,
            outcome=outcome,
            executor=executor or get_action_executor(),
        )
        return DecisionResult(request=request, slot=slot, outcome=outcome)

    raise ConcurrencyConflict(
        "Could not record decision after repeated concurrent updates",
        request_id=str(request_id),
    )


async def add_ad_hoc_approver(
    session: AsyncSession,
    *,
    request_id: UUID,
    user_id: UUID,
    actor: Actor,
    executor: ActionExecutor | None = None,
) -> Approver:
    """Widen the voter pool of a pending request and re-run aggregation."""
    if not actor.is_admin:
        raise Forbidden("Only administrators can add approvers to a request")

    for _ in range(settings.aggregation_max_retries):
        request = await load_request(session, request_id)
        if request.status != STATUS_PENDING:
            raise InvalidState(
                f"Cannot add approvers to a {request.status} request",
                request_id=str(request_id),
            )
        action_type = await get_policy(session, request.action_type_id)
        if user_id == request.requester_id and not action_type.allow_self_approval:
            raise ValidationError("The requester cannot approve this action type")
        slots = await load_request_slots(session, request.id)
        if _active_slot_for(slots, user_id) is not None:
            raise ValidationError(
                "User already holds an active slot on this request",
                user_id=str(user_id),
            )
        (slot,) = stage_slots(
            session,
            request=request,
            user_ids=[user_id],
            source=SOURCE_AD_HOC,
            existing=slots,
        )
        outcome = await resolve(
            session,
            request=request,
            action_type=action_type,
            actor_id=actor.id,
        )
        if outcome is None:
            await session.rollback()
            session.expunge_all()
            continue
        await session.commit()
        logger.info(
            "approval.approver.added",
            extra={"request_id": str(request.id), "user_id": str(user_id)},
        )
        notify_new_approvers(request, [user_id], template=TEMPLATE_REQUESTED)
        await finalize(
            session,
            request=request,
            outcome=outcome,
            executor=executor or get_action_executor(),
        )
        return slot

    raise ConcurrencyConflict("Could not add approver", request_id=str(request_id))


async def deactivate_request_approver(
    session: AsyncSession,
    *,
    request_id: UUID,
    approver_id: UUID,
    actor: Actor,
) -> Approver:
    """Remove an undecided slot from a pending request."""
    if not actor.is_admin:
        raise Forbidden("Only administrators can remove approvers from a request")

    for _ in range(settings.aggregation_max_retries):
        request = await load_request(session, request_id)
        if request.status != STATUS_PENDING:
            raise InvalidState(
                f"Cannot change approvers of a {request.status} request",
                request_id=str(request_id),
            )
        slots = await load_request_slots(session, request.id)
        slot = next((item for item in slots if item.id == approver_id), None)
        if slot is None:
            raise NotFoundError("Approver not found on this request", approver_id=str(approver_id))
        if slot.decision is not None:
            raise AlreadyDecided("A slot that has voted cannot be removed")
        if not slot.active:
            return slot
        action_type = await get_policy(session, request.action_type_id)
        slot.active = False
        slot.updated_at = utcnow()
        session.add(slot)
        outcome = await resolve(
            session,
            request=request,
            action_type=action_type,
            actor_id=actor.id,
        )
        if outcome is None:
            await session.rollback()
            session.expunge_all()
            continue
        await session.commit()
        logger.info(
            "approval.approver.deactivated",
            extra={"request_id": str(request.id), "approver_id": str(approver_id)},
        )
        await finalize(session, request=request, outcome=outcome, executor=get_action_executor())
        return slot

    raise ConcurrencyConflict("Could not remove approver", request_id=str(request_id))


async def list_request_approvers(session: AsyncSession, request_id: UUID) -> list[Approver]:
    await load_request(session, request_id)
    return await load_request_slots(session, request_id)
