"""Approval request store: submission, cancellation, and read models."""

from __future__ import annotations

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func
from sqlmodel import col, select

from approval_gate.core.config import settings
from approval_gate.core.errors import (
    ActionTypeInactive,
    ConcurrencyConflict,
    Forbidden,
    InvalidState,
    NoEligibleApprovers,
    NotFoundError,
    ValidationError,
)
from approval_gate.core.logging import get_logger
from approval_gate.core.time import as_naive_utc, utcnow
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approval_transitions import ApprovalTransition
from approval_gate.models.approvers import Approver
from approval_gate.services.action_executor import get_action_executor
from approval_gate.services.action_registry import get_policy
from approval_gate.services.approver_assignment import (
    notify_new_approvers,
    seed_request_slots,
)
from approval_gate.services.decision_aggregator import (
    Outcome,
    compute_tally,
    finalize,
    is_auto_approved,
    voting_slots,
)
from approval_gate.services.notifications.queue import (
    TEMPLATE_CANCELLED,
    TEMPLATE_REQUESTED,
    ApprovalNotification,
    enqueue_notification,
)
from approval_gate.services.request_state import (
    ALL_STATUSES,
    DECISION_APPROVED,
    SOURCE_SYSTEM,
    STATUS_APPROVED,
    STATUS_CANCELLED,
    STATUS_PENDING,
    SYSTEM_ACTOR_ID,
    guarded_update,
    load_request,
    load_request_slots,
)
from approval_gate.services.transitions import ACTOR_SYSTEM, list_transitions, record_transition

if TYPE_CHECKING:
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

    from approval_gate.core.auth import Actor
    from approval_gate.models.action_types import ActionType
    from approval_gate.services.action_executor import ActionExecutor

logger = get_logger(__name__)

CODE_PREFIX = "SOL"
_CODE_ALPHABET = string.digits + string.ascii_uppercase
_CODE_RANDOM_LENGTH = 6
_CODE_ATTEMPTS = 5


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_CODE_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_request_code(now_ms: int | None = None) -> str:
    """`SOL-<base36 epoch ms>-<6 random>`, upper-case."""
    millis = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(_CODE_RANDOM_LENGTH))
    return f"{CODE_PREFIX}-{_base36(millis)}-{suffix}"


async def _unique_code(session: AsyncSession) -> str:
    for _ in range(_CODE_ATTEMPTS):
        code = generate_request_code()
        if not await ApprovalRequest.objects.filter_by(code=code).exists(session):
            return code
    raise ConcurrencyConflict("Could not allocate a unique request code")


async def _ensure_no_duplicate_pending(
    session: AsyncSession,
    *,
    requester_id: UUID,
    action_type_id: UUID,
    target_ref: str | None,
) -> None:
    queryset = ApprovalRequest.objects.filter_by(
        requester_id=requester_id,
        action_type_id=action_type_id,
        status=STATUS_PENDING,
    )
    if target_ref is not None:
        queryset = queryset.filter(col(ApprovalRequest.target_ref) == target_ref)
    duplicate = await queryset.first(session)
    if duplicate is not None:
        raise ValidationError(
            f"A pending request for this item already exists ({duplicate.code})",
            existing_code=duplicate.code,
        )


async def submit(
    session: AsyncSession,
    *,
    action_type_id: UUID,
    requester: Actor,
    justification: str,
    payload: str,
    execution_method: str | None = None,
    deadline: datetime | None = None,
    attachments: list[dict[str, Any]] | None = None,
    notes: str | None = None,
    executor: ActionExecutor | None = None,
) -> ApprovalRequest:
    """Suspend a critical action until its approvers decide.

    All validation happens before anything is written, so a rejected
    submission leaves no trace.
    """
    executor = executor or get_action_executor()
    action_type = await get_policy(session, action_type_id)
    if not action_type.active:
        raise ActionTypeInactive(
            f"Action type {action_type.code!r} is inactive",
            action_type_id=str(action_type_id),
        )
    justification = (justification or "").strip()
    if not justification:
        raise ValidationError("justification is required", field="justification")
    method = (execution_method or action_type.execution_method or "").strip()
    if not method:
        raise ValidationError("execution_method is required", field="execution_method")
    parsed = executor.validate_payload(method, payload)
    target_ref = parsed.target_ref()
    target_ref = f"{method}:{target_ref}" if target_ref is not None else None

    await _ensure_no_duplicate_pending(
        session,
        requester_id=requester.id,
        action_type_id=action_type.id,
        target_ref=target_ref,
    )

    now = utcnow()
    deadline = as_naive_utc(deadline)
    if deadline is None and action_type.deadline_hours:
        deadline = now + timedelta(hours=action_type.deadline_hours)
    elif deadline is not None and deadline <= now:
        raise ValidationError("deadline must be in the future", field="deadline")

    request = ApprovalRequest(
        code=await _unique_code(session),
        action_type_id=action_type.id,
        requester_id=requester.id,
        requester_name=requester.name,
        requester_email=requester.email,
        requester_profile=requester.profile,
        justification=justification,
        action_payload=payload,
        execution_method=method,
        target_ref=target_ref,
        status=STATUS_PENDING,
        deadline=deadline,
        attachments=list(attachments or []),
        notes=notes,
        created_at=now,
        updated_at=now,
    )
    session.add(request)
    await session.flush()
    record_transition(
        session,
        request_id=request.id,
        from_status=None,
        to_status=STATUS_PENDING,
        actor_id=requester.id,
        reason="submitted",
    )

    if is_auto_approved(action_type, requester.profile):
        return await _auto_approve(
            session,
            request=request,
            action_type=action_type,
            executor=executor,
        )

    slots = await seed_request_slots(session, request=request, action_type=action_type)
    if not slots:
        await session.rollback()
        raise NoEligibleApprovers(
            f"No eligible approvers configured for {action_type.code!r}",
            action_type_id=str(action_type.id),
        )
    tally = compute_tally(action_type, slots)
    await session.commit()
    logger.info(
        "approval.request.submitted",
        extra={
            "request_id": str(request.id),
            "code": request.code,
            "action_type": action_type.code,
            "requester_id": str(requester.id),
            "approver_count": len(slots),
            "quorum_reachable": tally.quorum_reachable,
        },
    )
    notify_new_approvers(request, [slot.user_id for slot in slots], template=TEMPLATE_REQUESTED)
    return request


async def _auto_approve(
    session: AsyncSession,
    *,
    request: ApprovalRequest,
    action_type: ActionType,
    executor: ActionExecutor,
) -> ApprovalRequest:
    now = utcnow()
    system_slot = Approver(
        user_id=SYSTEM_ACTOR_ID,
        request_id=request.id,
        action_type_id=request.action_type_id,
        source=SOURCE_SYSTEM,
        decision=DECISION_APPROVED,
        justification=f"auto-approved for profile {request.requester_profile}",
        decided_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(system_slot)
    tally = compute_tally(action_type, [])
    swapped = await guarded_update(
        session,
        request=request,
        to_status=STATUS_APPROVED,
        actor_id=SYSTEM_ACTOR_ID,
        actor_type=ACTOR_SYSTEM,
        reason="auto_approval",
        tally=tally.as_dict(),
    )
    if not swapped:
        await session.rollback()
        raise ConcurrencyConflict("Request changed during auto-approval")
    await session.commit()
    logger.info(
        "approval.request.auto_approved",
        extra={
            "request_id": str(request.id),
            "code": request.code,
            "profile": request.requester_profile,
        },
    )
    await finalize(
        session,
        request=request,
        outcome=Outcome(status=STATUS_APPROVED, tally=tally, reason="auto_approval"),
        executor=executor,
    )
    return request


async def cancel(
    session: AsyncSession,
    *,
    request_id: UUID,
    actor: Actor,
    reason: str = "",
) -> ApprovalRequest:
    """Withdraw a pending request; only its requester or an administrator may."""
    for _ in range(settings.aggregation_max_retries):
        request = await load_request(session, request_id)
        if actor.id != request.requester_id and not actor.is_admin:
            raise Forbidden("Only the requester or an administrator can cancel")
        if request.status != STATUS_PENDING:
            raise InvalidState(
                f"Cannot cancel a {request.status} request",
                request_id=str(request_id),
            )
        swapped = await guarded_update(
            session,
            request=request,
            to_status=STATUS_CANCELLED,
            actor_id=actor.id,
            reason=reason.strip() or "cancelled",
        )
        if not swapped:
            await session.rollback()
            session.expunge_all()
            continue
        await session.commit()
        slots = await load_request_slots(session, request.id)
        enqueue_notification(
            ApprovalNotification(
                template=TEMPLATE_CANCELLED,
                request_id=request.id,
                request_code=request.code,
                target_ids=[slot.user_id for slot in voting_slots(slots)],
                context={"reason": reason},
            ),
        )
        return request

    raise ConcurrencyConflict("Could not cancel request", request_id=str(request_id))


async def get_request(session: AsyncSession, request_id: UUID) -> ApprovalRequest:
    return await load_request(session, request_id)


async def get_request_by_code(session: AsyncSession, code: str) -> ApprovalRequest:
    request = await ApprovalRequest.objects.filter_by(code=code.strip().upper()).first(session)
    if request is None:
        raise NotFoundError("Approval request not found", code=code)
    return request


@dataclass(frozen=True)
class RequestFilters:
    status: str | None = None
    requester_id: UUID | None = None
    action_type_id: UUID | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None
    pending_for: UUID | None = None


def build_request_statement(filters: RequestFilters) -> SelectOfScalar[ApprovalRequest]:
    """Newest-first select over requests matching `filters`."""
    statement = select(ApprovalRequest)
    if filters.status is not None:
        if filters.status not in ALL_STATUSES:
            raise ValidationError(f"Unknown status {filters.status!r}", field="status")
        statement = statement.where(col(ApprovalRequest.status) == filters.status)
    if filters.requester_id is not None:
        statement = statement.where(col(ApprovalRequest.requester_id) == filters.requester_id)
    if filters.action_type_id is not None:
        statement = statement.where(col(ApprovalRequest.action_type_id) == filters.action_type_id)
    if filters.created_from is not None:
        statement = statement.where(
            col(ApprovalRequest.created_at) >= as_naive_utc(filters.created_from),
        )
    if filters.created_to is not None:
        statement = statement.where(
            col(ApprovalRequest.created_at) <= as_naive_utc(filters.created_to),
        )
    if filters.pending_for is not None:
        awaiting = select(Approver.request_id).where(
            col(Approver.user_id) == filters.pending_for,
            col(Approver.active).is_(True),
            col(Approver.decision).is_(None),
        )
        statement = statement.where(
            col(ApprovalRequest.status) == STATUS_PENDING,
            col(ApprovalRequest.id).in_(awaiting),
        )
    return statement.order_by(col(ApprovalRequest.created_at).desc(), col(ApprovalRequest.id))


@dataclass(frozen=True)
class RequestPage:
    items: list[ApprovalRequest]
    total: int
    limit: int
    offset: int


async def list_requests(
    session: AsyncSession,
    filters: RequestFilters | None = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> RequestPage:
    if limit < 1 or offset < 0:
        raise ValidationError("limit must be positive and offset non-negative")
    statement = build_request_statement(filters or RequestFilters())
    count_statement = select(func.count()).select_from(statement.order_by(None).subquery())
    total = int((await session.exec(count_statement)).one())
    items = list(await session.exec(statement.limit(limit).offset(offset)))
    return RequestPage(items=items, total=total, limit=limit, offset=offset)


@dataclass(frozen=True)
class HistoryEvent:
    at: datetime
    kind: str
    actor_id: UUID | None
    detail: dict[str, Any] = field(default_factory=dict)


async def get_request_history(session: AsyncSession, request_id: UUID) -> list[HistoryEvent]:
    """Transitions and votes of one request, oldest first, for audit replay."""
    await load_request(session, request_id)
    transitions: list[ApprovalTransition] = await list_transitions(session, request_id)
    slots = await load_request_slots(session, request_id)

    events: list[HistoryEvent] = [
        HistoryEvent(
            at=entry.created_at,
            kind="transition",
            actor_id=entry.actor_id,
            detail={
                "from_status": entry.from_status,
                "to_status": entry.to_status,
                "actor_type": entry.actor_type,
                "reason": entry.reason,
                "tally": entry.tally,
            },
        )
        for entry in transitions
    ]
    for slot in slots:
        events.append(
            HistoryEvent(
                at=slot.created_at,
                kind="approver_assigned",
                actor_id=slot.user_id,
                detail={"approver_id": str(slot.id), "source": slot.source},
            ),
        )
        if slot.decided_at is not None:
            events.append(
                HistoryEvent(
                    at=slot.decided_at,
                    kind="decision",
                    actor_id=slot.user_id,
                    detail={
                        "approver_id": str(slot.id),
                        "decision": slot.decision,
                        "justification": slot.justification,
                        "late": slot.late,
                        "source": slot.source,
                    },
                ),
            )
    order = {"approver_assigned": 0, "decision": 1, "transition": 2}
    events.sort(key=lambda event: (event.at, order[event.kind]))
    return events


@dataclass(frozen=True)
class ApprovalMetrics:
    total: int
    by_status: dict[str, int]
    resolved: int
    mean_resolution_seconds: float | None
    late_votes: int


async def approval_metrics(
    session: AsyncSession,
    *,
    action_type_id: UUID | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
) -> ApprovalMetrics:
    """Counts per status and mean time from submission to resolution."""
    filters = RequestFilters(
        action_type_id=action_type_id,
        created_from=created_from,
        created_to=created_to,
    )
    scoped = build_request_statement(filters).order_by(None).subquery()
    rows = await session.exec(
        select(scoped.c.status, func.count()).group_by(scoped.c.status),
    )
    by_status = {status: 0 for status in sorted(ALL_STATUSES)}
    for status, count in rows:
        by_status[str(status)] = int(count)

    resolved_rows = await session.exec(
        select(scoped.c.created_at, scoped.c.resolved_at).where(
            scoped.c.resolved_at.is_not(None),
        ),
    )
    durations = [
        (resolved_at - created_at).total_seconds() for created_at, resolved_at in resolved_rows
    ]
    late_votes = (
        await session.exec(
            select(func.count())
            .select_from(Approver)
            .where(
                col(Approver.late).is_(True),
                col(Approver.request_id).in_(select(scoped.c.id)),
            ),
        )
    ).one()
    return ApprovalMetrics(
        total=sum(by_status.values()),
        by_status=by_status,
        resolved=sum(by_status.values()) - by_status[STATUS_PENDING],
        mean_resolution_seconds=(sum(durations) / len(durations)) if durations else None,
        late_votes=int(late_votes),
    )
