"""Periodic sweep over pending requests: reminders, escalations, expiry.

One sweep walks every pending request that has a deadline:

* inside the reminder window and not yet reminded for it: one reminder to
  the approvers who have not voted;
* past the deadline with escalations left: widen the voter pool from the
  escalation policy, notify the supervisor, extend the deadline;
* past the deadline otherwise: reject with a system decision ("expired").

Every write goes through the request's version guard, so running the sweep
twice, or alongside voters, never double-applies anything.
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from sqlmodel import col

from approval_gate.core.config import settings
from approval_gate.core.logging import get_logger
from approval_gate.core.time import as_naive_utc, utcnow
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.models.approvers import Approver
from approval_gate.services.action_executor import get_action_executor
from approval_gate.services.action_registry import get_policy, parse_escalation_policy
from approval_gate.services.approver_assignment import notify_new_approvers, stage_slots
from approval_gate.services.decision_aggregator import (
    Outcome,
    compute_tally,
    finalize,
    resolve,
    voting_slots,
)
from approval_gate.services.notifications.queue import (
    TEMPLATE_ESCALATED,
    TEMPLATE_REMINDER,
)
from approval_gate.services.request_state import (
    DECISION_REJECTED,
    SOURCE_ESCALATION,
    SOURCE_SYSTEM,
    STATUS_PENDING,
    STATUS_REJECTED,
    SYSTEM_ACTOR_ID,
    guarded_update,
    load_request_slots,
)
from approval_gate.services.transitions import ACTOR_SYSTEM

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import async_sessionmaker
    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.models.action_types import ActionType
    from approval_gate.services.action_executor import ActionExecutor

logger = get_logger(__name__)

EXPIRED_REASON = "expired"


@dataclass
class SweepReport:
    """Counts of what one sweep did."""

    scanned: int = 0
    reminders: int = 0
    escalations: int = 0
    expired: int = 0
    resolved: int = 0
    skipped: int = 0


def _undecided_voters(slots: list[Approver]) -> list:
    return [slot.user_id for slot in voting_slots(slots) if slot.decision is None]


async def _remind(
    session: AsyncSession,
    request: ApprovalRequest,
    *,
    now: datetime,
    window: timedelta,
) -> bool:
    """Send one reminder per window; the stamp is claimed before notifying."""
    if request.deadline is None:
        return False
    window_opened_at = request.deadline - window
    if request.last_reminder_at is not None and request.last_reminder_at >= window_opened_at:
        return False
    slots = await load_request_slots(session, request.id)
    targets = _undecided_voters(slots)
    if not targets:
        return False

    previous = (request.reminder_count, request.last_reminder_at)
    claimed = await guarded_update(
        session,
        request=request,
        values={"reminder_count": request.reminder_count + 1, "last_reminder_at": now},
    )
    if not claimed:
        await session.rollback()
        return False
    await session.commit()

    if notify_new_approvers(request, targets, template=TEMPLATE_REMINDER):
        logger.info(
            "approval.sweep.reminder_sent",
            extra={"request_id": str(request.id), "target_count": len(targets)},
        )
        return True

    # Not handed off: release the stamp so the next sweep tries again.
    released = await guarded_update(
        session,
        request=request,
        values={"reminder_count": previous[0], "last_reminder_at": previous[1]},
    )
    if released:
        await session.commit()
    else:
        await session.rollback()
    logger.warning(
        "approval.sweep.reminder_not_sent",
        extra={"request_id": str(request.id), "released": released},
    )
    return False


async def _expire(
    session: AsyncSession,
    request: ApprovalRequest,
    action_type: ActionType,
    *,
    now: datetime,
    executor: ActionExecutor,
) -> bool:
    slots = await load_request_slots(session, request.id)
    session.add(
        Approver(
            user_id=SYSTEM_ACTOR_ID,
            request_id=request.id,
            action_type_id=request.action_type_id,
            source=SOURCE_SYSTEM,
            decision=DECISION_REJECTED,
            justification=EXPIRED_REASON,
            decided_at=now,
            created_at=now,
            updated_at=now,
        ),
    )
    tally = compute_tally(action_type, slots)
    swapped = await guarded_update(
        session,
        request=request,
        to_status=STATUS_REJECTED,
        actor_id=SYSTEM_ACTOR_ID,
        actor_type=ACTOR_SYSTEM,
        reason=EXPIRED_REASON,
        tally=tally.as_dict(),
    )
    if not swapped:
        await session.rollback()
        return False
    await session.commit()
    logger.info(
        "approval.sweep.expired",
        extra={"request_id": str(request.id), "code": request.code},
    )
    await finalize(
        session,
        request=request,
        outcome=Outcome(status=STATUS_REJECTED, tally=tally, reason=EXPIRED_REASON),
        executor=executor,
    )
    return True


async def _escalate(
    session: AsyncSession,
    request: ApprovalRequest,
    action_type: ActionType,
    *,
    now: datetime,
    executor: ActionExecutor,
) -> Outcome | None:
    policy = parse_escalation_policy(action_type.escalation_policy)
    if policy is None:
        return None
    slots = await load_request_slots(session, request.id)
    added = stage_slots(
        session,
        request=request,
        user_ids=policy.approver_ids,
        source=SOURCE_ESCALATION,
        existing=slots,
        action_type=action_type,
    )
    outcome = await resolve(
        session,
        request=request,
        action_type=action_type,
        actor_id=SYSTEM_ACTOR_ID,
        actor_type=ACTOR_SYSTEM,
        values={
            "escalation_count": request.escalation_count + 1,
            "last_escalation_at": now,
            "deadline": now + timedelta(hours=policy.extension_hours),
        },
    )
    if outcome is None:
        await session.rollback()
        return None
    await session.commit()
    logger.info(
        "approval.sweep.escalated",
        extra={
            "request_id": str(request.id),
            "escalation_count": request.escalation_count,
            "added_approvers": len(added),
            "supervisor_id": str(policy.supervisor_id) if policy.supervisor_id else None,
        },
    )
    targets = [slot.user_id for slot in added]
    if policy.supervisor_id is not None:
        targets.append(policy.supervisor_id)
    notify_new_approvers(request, list(dict.fromkeys(targets)), template=TEMPLATE_ESCALATED)
    await finalize(session, request=request, outcome=outcome, executor=executor)
    return outcome


async def run_sweep_once(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    reminder_window: timedelta | None = None,
    executor: ActionExecutor | None = None,
) -> SweepReport:
    """Apply reminders, escalations, and expiry to every due pending request."""
    # Deadline columns are naive UTC.
    now = as_naive_utc(now) or utcnow()
    window = reminder_window or timedelta(hours=settings.reminder_window_hours)
    executor = executor or get_action_executor()
    report = SweepReport()

    candidates = await (
        ApprovalRequest.objects.filter_by(status=STATUS_PENDING)
        .filter(col(ApprovalRequest.deadline).is_not(None))
        .filter(col(ApprovalRequest.deadline) <= now + window)
        .order_by(col(ApprovalRequest.deadline).asc())
        .fresh()
        .all(session)
    )
    request_ids = [request.id for request in candidates]
    await session.rollback()

    for request_id in request_ids:
        report.scanned += 1
        request = await ApprovalRequest.objects.by_id(request_id).fresh().first(session)
        if request is None or request.status != STATUS_PENDING or request.deadline is None:
            report.skipped += 1
            continue
        try:
            if request.deadline > now:
                if await _remind(session, request, now=now, window=window):
                    report.reminders += 1
                continue

            action_type = await get_policy(session, request.action_type_id)
            policy = parse_escalation_policy(action_type.escalation_policy)
            if policy is not None and request.escalation_count < policy.max_escalations:
                outcome = await _escalate(
                    session, request, action_type, now=now, executor=executor
                )
                if outcome is None:
                    report.skipped += 1
                    continue
                report.escalations += 1
                if outcome.status is not None:
                    report.resolved += 1
            elif await _expire(session, request, action_type, now=now, executor=executor):
                report.expired += 1
            else:
                report.skipped += 1
        except Exception:
            await session.rollback()
            report.skipped += 1
            logger.exception(
                "approval.sweep.request_failed",
                extra={"request_id": str(request_id)},
            )

    logger.info(
        "approval.sweep.complete",
        extra={
            "scanned": report.scanned,
            "reminders": report.reminders,
            "escalations": report.escalations,
            "expired": report.expired,
            "skipped": report.skipped,
        },
    )
    return report


class EscalationScheduler:
    """Runs `run_sweep_once` on a fixed interval in a single background task."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: float | None = None,
        reminder_window: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
        executor: ActionExecutor | None = None,
        stop_timeout_seconds: float | None = None,
    ) -> None:
        self._session_maker = session_maker
        self.interval_seconds = (
            settings.escalation_sweep_interval_seconds
            if interval_seconds is None
            else interval_seconds
        )
        self.stop_timeout_seconds = (
            max(self.interval_seconds, 5)
            if stop_timeout_seconds is None
            else stop_timeout_seconds
        )
        self._reminder_window = reminder_window
        self._clock = clock
        self._executor = executor
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()
        self._sweep_lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepReport:
        async with self._sweep_lock, self._session_maker() as session:
            return await run_sweep_once(
                session,
                now=self._clock(),
                reminder_window=self._reminder_window,
                executor=self._executor,
            )

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("approval.sweep.failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except TimeoutError:
                continue

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop(), name="approval-escalation-sweep")
        logger.info(
            "approval.sweep.scheduler_started",
            extra={"interval_seconds": self.interval_seconds},
        )

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._stopping.set()
        try:
            await asyncio.wait_for(task, timeout=self.stop_timeout_seconds)
        except TimeoutError:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        logger.info("approval.sweep.scheduler_stopped")
