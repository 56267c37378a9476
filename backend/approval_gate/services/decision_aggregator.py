"""Decision aggregation: turn a request's vote slots into a status.

`evaluate` is pure and deterministic over the slots it is given. `resolve`
re-reads the slots, evaluates them, and applies the outcome through the
guarded write so concurrent voters cannot both transition the request.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from approval_gate.core.errors import SelfApprovalNotAllowed, ValidationError
from approval_gate.core.logging import get_logger
from approval_gate.services.notifications.queue import (
    TEMPLATE_RESOLVED,
    ApprovalNotification,
    enqueue_notification,
)
from approval_gate.services.request_state import (
    DECISION_APPROVED,
    DECISION_REJECTED,
    SOURCE_SYSTEM,
    STATUS_APPROVED,
    STATUS_REJECTED,
    guarded_update,
    load_request_slots,
)
from approval_gate.services.transitions import ACTOR_USER

if TYPE_CHECKING:
    from collections.abc import Iterable
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.models.action_types import ActionType
    from approval_gate.models.approval_requests import ApprovalRequest
    from approval_gate.models.approvers import Approver
    from approval_gate.services.action_executor import ActionExecutor

logger = get_logger(__name__)

STRATEGY_SIMPLE = "simple"
STRATEGY_MAJORITY = "majority"
VALID_STRATEGIES = frozenset({STRATEGY_SIMPLE, STRATEGY_MAJORITY})


@dataclass(frozen=True)
class Tally:
    """Vote counts over the active human slots of a request."""

    strategy: str
    quorum: int
    eligible: int
    approvals: int
    rejections: int

    @property
    def pending(self) -> int:
        return self.eligible - self.approvals - self.rejections

    @property
    def quorum_reachable(self) -> bool:
        return self.eligible >= self.quorum

    def as_dict(self) -> dict[str, Any]:
        return {**asdict(self), "pending": self.pending}


@dataclass(frozen=True)
class Outcome:
    """Result of one evaluation; `status` is None while the request stays pending."""

    status: str | None
    tally: Tally
    reason: str = ""


def is_auto_approved(action_type: ActionType, requester_profile: str | None) -> bool:
    """Whether the requester's role tag short-circuits voting."""
    if not requester_profile:
        return False
    profile = requester_profile.strip().lower()
    return profile in {tag.strip().lower() for tag in action_type.auto_approval_profiles or []}


def ensure_not_self_vote(
    action_type: ActionType,
    request: ApprovalRequest,
    voter_id: UUID,
) -> None:
    if voter_id == request.requester_id and not action_type.allow_self_approval:
        raise SelfApprovalNotAllowed(
            "Requesters may not decide on their own request for this action type",
            request_id=str(request.id),
        )


def voting_slots(slots: Iterable[Approver]) -> list[Approver]:
    """Active human slots; system-authored decisions never count as votes."""
    return [slot for slot in slots if slot.active and slot.source != SOURCE_SYSTEM]


def _decided_in_order(slots: list[Approver]) -> list[Approver]:
    decided = [slot for slot in slots if slot.decision is not None and not slot.late]
    return sorted(
        decided,
        key=lambda slot: (slot.decided_at or datetime.max, str(slot.id)),
    )


def compute_tally(action_type: ActionType, slots: Iterable[Approver]) -> Tally:
    active = voting_slots(slots)
    decided = _decided_in_order(active)
    return Tally(
        strategy=action_type.strategy,
        quorum=max(1, action_type.min_approvers),
        eligible=len(active),
        approvals=sum(1 for slot in decided if slot.decision == DECISION_APPROVED),
        rejections=sum(1 for slot in decided if slot.decision == DECISION_REJECTED),
    )


def evaluate(action_type: ActionType, slots: Iterable[Approver]) -> Outcome:
    """Compute the status implied by the recorded votes.

    While fewer active slots exist than the quorum the request cannot resolve
    by votes and stays pending; only escalation or expiry moves it.
    """
    slot_list = list(slots)
    tally = compute_tally(action_type, slot_list)
    if not tally.quorum_reachable:
        return Outcome(status=None, tally=tally, reason="quorum_unreachable")

    if action_type.strategy == STRATEGY_SIMPLE:
        decided = _decided_in_order(voting_slots(slot_list))
        if not decided:
            return Outcome(status=None, tally=tally)
        first = decided[0]
        status = STATUS_APPROVED if first.decision == DECISION_APPROVED else STATUS_REJECTED
        return Outcome(status=status, tally=tally, reason=f"simple:first_{first.decision}")

    if action_type.strategy == STRATEGY_MAJORITY:
        q = tally.quorum
        if tally.approvals * 2 > q:
            return Outcome(status=STATUS_APPROVED, tally=tally, reason="majority:approved")
        if tally.rejections >= q - q // 2:
            return Outcome(status=STATUS_REJECTED, tally=tally, reason="majority:rejected")
        return Outcome(status=None, tally=tally)

    raise ValidationError(
        f"Unknown approval strategy {action_type.strategy!r}",
        action_type_id=str(action_type.id),
    )


async def resolve(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    action_type: ActionType,
    actor_id: UUID | None,
    actor_type: str = ACTOR_USER,
    values: dict[str, Any] | None = None,
) -> Outcome | None:
    """Evaluate the current slots and write the outcome under the version guard.

    Returns None when the guarded write lost a race.
    """
    slots = await load_request_slots(session, request.id)
    outcome = evaluate(action_type, slots)
    swapped = await guarded_update(
        session,
        request=request,
        to_status=outcome.status,
        actor_id=actor_id,
        actor_type=actor_type,
        reason=outcome.reason,
        tally=outcome.tally.as_dict(),
        values=values,
    )
    if not swapped:
        return None
    if outcome.status is None and outcome.reason == "quorum_unreachable":
        logger.info(
            "approval.request.quorum_unreachable",
            extra={
                "request_id": str(request.id),
                "eligible": outcome.tally.eligible,
                "quorum": outcome.tally.quorum,
            },
        )
    return outcome


async def finalize(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    outcome: Outcome,
    executor: ActionExecutor,
) -> None:
    """Side effects owed by the writer that committed a transition."""
    if outcome.status is None:
        return
    slots = await load_request_slots(session, request.id)
    voters = [slot.user_id for slot in voting_slots(slots)]
    enqueue_notification(
        ApprovalNotification(
            template=TEMPLATE_RESOLVED,
            request_id=request.id,
            request_code=request.code,
            target_ids=list(dict.fromkeys([request.requester_id, *voters])),
            context={"status": outcome.status, "reason": outcome.reason},
        ),
    )
    if outcome.status == STATUS_APPROVED:
        await executor.execute(session, request)
