# ruff: noqa: INP001
"""Reminder, escalation, and expiry sweeps over pending requests."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from approval_gate.core.auth import Actor
from approval_gate.core.time import utcnow
from approval_gate.services import escalation_scheduler
from approval_gate.services.action_registry import add_standing_approver, register_action_type
from approval_gate.services.approval_requests import submit
from approval_gate.services.approver_assignment import cast_decision
from approval_gate.services.escalation_scheduler import (
    EscalationScheduler,
    SweepReport,
    run_sweep_once,
)
from approval_gate.services.queue import QueuedTask
from approval_gate.services.request_state import load_request, load_request_slots
from approval_gate.services.transitions import list_transitions

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import FakeRedis, RecordingInvoker

    from approval_gate.models.approvers import Approver

QUEUE = "approval-notifications"
WINDOW = timedelta(hours=24)
REQUESTER = Actor(id=uuid4(), name="Ana", profile="tecnico")


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


def _session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def _seed_request(
    session: AsyncSession,
    approvers: list[UUID],
    *,
    deadline_hours: float = 1,
    min_approvers: int = 1,
    escalation_policy: dict[str, Any] | None = None,
) -> UUID:
    action_type = await register_action_type(
        session,
        code="suspender_beneficio",
        name="Suspend benefit",
        min_approvers=min_approvers,
        deadline_hours=deadline_hours,
        escalation_policy=escalation_policy,
    )
    for user_id in approvers:
        await add_standing_approver(session, action_type_id=action_type.id, user_id=user_id)
    request = await submit(
        session,
        action_type_id=action_type.id,
        requester=REQUESTER,
        justification="Income above threshold",
        payload=json.dumps({"benefit_id": str(uuid4()), "reason": "income"}),
    )
    return request.id


def _queued(fake_redis: FakeRedis) -> list[dict[str, Any]]:
    return [QueuedTask.from_json(raw).payload for raw in fake_redis.queued(QUEUE)]


@pytest.mark.asyncio
async def test_reminder_is_sent_once_per_window(fake_redis: FakeRedis) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    approver = uuid4()
    async with maker() as session:
        request_id = await _seed_request(session, [approver], deadline_hours=10)

    async with maker() as session:
        first = await run_sweep_once(session, reminder_window=WINDOW)
    async with maker() as session:
        second = await run_sweep_once(session, reminder_window=WINDOW)

    assert first.reminders == 1
    assert second.reminders == 0
    async with maker() as session:
        request = await load_request(session, request_id)
        assert request.status == "pending"
        assert request.reminder_count == 1
        assert request.last_reminder_at is not None

    reminders = [item for item in _queued(fake_redis) if item["template"] == "approval.reminder"]
    assert len(reminders) == 1
    assert reminders[0]["target_ids"] == [str(approver)]
    await engine.dispose()


@pytest.mark.asyncio
async def test_reminder_outside_window_is_not_sent(fake_redis: FakeRedis) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    async with maker() as session:
        await _seed_request(session, [uuid4()], deadline_hours=72)

    async with maker() as session:
        report = await run_sweep_once(session, reminder_window=WINDOW)

    assert report.scanned == 0
    assert [item["template"] for item in _queued(fake_redis)] == ["approval.requested"]
    await engine.dispose()


@pytest.mark.asyncio
async def test_failed_reminder_handoff_releases_the_stamp(fake_redis: FakeRedis) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    async with maker() as session:
        request_id = await _seed_request(session, [uuid4()], deadline_hours=10)

    fake_redis.fail = True
    async with maker() as session:
        failed = await run_sweep_once(session, reminder_window=WINDOW)
    assert failed.reminders == 0
    async with maker() as session:
        request = await load_request(session, request_id)
        assert request.reminder_count == 0
        assert request.last_reminder_at is None

    fake_redis.fail = False
    async with maker() as session:
        retried = await run_sweep_once(session, reminder_window=WINDOW)
    assert retried.reminders == 1
    await engine.dispose()


@pytest.mark.asyncio
async def test_overdue_request_without_policy_expires_as_rejected(
    invoker: RecordingInvoker,
) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    async with maker() as session:
        request_id = await _seed_request(session, [uuid4()], deadline_hours=1)

    async with maker() as session:
        report = await run_sweep_once(
            session,
            now=utcnow() + timedelta(hours=2),
            reminder_window=WINDOW,
        )

    assert report.expired == 1
    async with maker() as session:
        request = await load_request(session, request_id)
        assert request.status == "rejected"
        assert request.resolved_at is not None
        slots = await load_request_slots(session, request_id)
        system_votes = [slot for slot in slots if slot.source == "system"]
        assert len(system_votes) == 1
        assert system_votes[0].decision == "rejected"
        assert system_votes[0].justification == "expired"
        transitions = await list_transitions(session, request_id)
        assert transitions[-1].to_status == "rejected"
        assert transitions[-1].actor_type == "system"
        assert transitions[-1].reason == "expired"

    async with maker() as session:
        again = await run_sweep_once(session, now=utcnow() + timedelta(hours=3))
    assert again.scanned == 0
    assert invoker.calls == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_escalation_widens_pool_then_expires_when_exhausted(fake_redis: FakeRedis) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    standing, escalation_approver, supervisor = uuid4(), uuid4(), uuid4()
    async with maker() as session:
        request_id = await _seed_request(
            session,
            [standing],
            deadline_hours=1,
            escalation_policy={
                "approver_ids": [str(escalation_approver), str(standing)],
                "supervisor_id": str(supervisor),
                "max_escalations": 1,
                "extension_hours": 12,
            },
        )

    first_now = utcnow() + timedelta(hours=2)
    async with maker() as session:
        first = await run_sweep_once(session, now=first_now, reminder_window=WINDOW)

    assert first.escalations == 1
    assert first.expired == 0
    async with maker() as session:
        request = await load_request(session, request_id)
        assert request.status == "pending"
        assert request.escalation_count == 1
        assert request.last_escalation_at == first_now
        assert request.deadline == first_now + timedelta(hours=12)
        slots = await load_request_slots(session, request_id)
        assert sorted((slot.source, slot.user_id == standing) for slot in slots) == [
            ("escalation", False),
            ("standing", True),
        ]

    escalated = [item for item in _queued(fake_redis) if item["template"] == "approval.escalated"]
    assert len(escalated) == 1
    assert escalated[0]["target_ids"] == [str(escalation_approver), str(supervisor)]

    async with maker() as session:
        final = await run_sweep_once(
            session,
            now=first_now + timedelta(hours=13),
            reminder_window=WINDOW,
        )
    assert final.escalations == 0
    assert final.expired == 1
    async with maker() as session:
        assert (await load_request(session, request_id)).status == "rejected"
    await engine.dispose()


@pytest.mark.asyncio
async def test_escalation_can_complete_an_unreachable_quorum(invoker: RecordingInvoker) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    standing, escalation_approver = uuid4(), uuid4()
    async with maker() as session:
        request_id = await _seed_request(
            session,
            [standing],
            min_approvers=2,
            escalation_policy={"approver_ids": [str(escalation_approver)]},
        )
        stalled = await cast_decision(
            session,
            request_id=request_id,
            voter_id=standing,
            decision="approved",
        )
        assert stalled.request.status == "pending"

    async with maker() as session:
        report = await run_sweep_once(
            session,
            now=utcnow() + timedelta(hours=2),
            reminder_window=WINDOW,
        )

    assert report.escalations == 1
    assert report.resolved == 1
    async with maker() as session:
        assert (await load_request(session, request_id)).status == "executed"
    assert len(invoker.calls) == 1
    await engine.dispose()


@pytest.mark.asyncio
async def test_sweep_skips_requests_that_fail_and_keeps_going(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    async with maker() as session:
        request_id = await _seed_request(session, [uuid4()], deadline_hours=1)

    async def _boom(*args: object, **kwargs: object) -> bool:
        del args, kwargs
        raise RuntimeError("domain offline")

    monkeypatch.setattr(escalation_scheduler, "_expire", _boom)
    async with maker() as session:
        report = await run_sweep_once(session, now=utcnow() + timedelta(hours=2))

    assert report.scanned == 1
    assert report.skipped == 1
    assert report.expired == 0
    async with maker() as session:
        assert (await load_request(session, request_id)).status == "pending"
    await engine.dispose()


@pytest.mark.asyncio
async def test_scheduler_runs_sweep_with_injected_clock(monkeypatch: pytest.MonkeyPatch) -> None:
    engine = await _make_engine()
    fixed_now = datetime(2025, 6, 1, 12, 0, 0)
    seen: list[datetime | None] = []
    swept = asyncio.Event()

    async def _fake_sweep(
        session: AsyncSession,
        *,
        now: datetime | None = None,
        reminder_window: timedelta | None = None,
        executor: object = None,
    ) -> SweepReport:
        del session, reminder_window, executor
        seen.append(now)
        swept.set()
        return SweepReport()

    monkeypatch.setattr(escalation_scheduler, "run_sweep_once", _fake_sweep)
    scheduler = EscalationScheduler(
        _session_maker(engine),
        interval_seconds=3600,
        clock=lambda: fixed_now,
    )

    await scheduler.start()
    assert scheduler.running
    await asyncio.wait_for(swept.wait(), timeout=2)
    await scheduler.stop()

    assert not scheduler.running
    assert seen == [fixed_now]
    await scheduler.stop()
    await engine.dispose()


def test_sweep_schedule_replaces_existing_job(monkeypatch: pytest.MonkeyPatch) -> None:
    from approval_gate.core.config import settings
    from approval_gate.services import sweep_schedule

    class _Job:
        def __init__(self, job_id: str) -> None:
            self.id = job_id

    class _FakeScheduler:
        instances: list[_FakeScheduler] = []

        def __init__(self, *, queue_name: str, connection: object) -> None:
            del connection
            self.queue_name = queue_name
            self.cancelled: list[str] = []
            self.scheduled: list[dict[str, Any]] = []
            _FakeScheduler.instances.append(self)

        def get_jobs(self) -> list[_Job]:
            return [_Job(settings.sweep_schedule_id), _Job("webhook-digest")]

        def cancel(self, job: _Job) -> None:
            self.cancelled.append(job.id)

        def schedule(self, scheduled_time: datetime, **kwargs: Any) -> None:
            del scheduled_time
            self.scheduled.append(kwargs)

    monkeypatch.setattr(sweep_schedule, "Scheduler", _FakeScheduler)
    monkeypatch.setattr(sweep_schedule.Redis, "from_url", staticmethod(lambda url: object()))

    sweep_schedule.bootstrap_sweep_schedule(interval_seconds=30)

    scheduler = _FakeScheduler.instances[-1]
    assert scheduler.cancelled == [settings.sweep_schedule_id]
    assert len(scheduler.scheduled) == 1
    job = scheduler.scheduled[0]
    assert job["func"] is sweep_schedule.run_sweep_job
    assert job["interval"] == 30
    assert job["id"] == settings.sweep_schedule_id


@pytest.mark.asyncio
async def test_sweep_accepts_timezone_aware_now(invoker: RecordingInvoker) -> None:
    engine = await _make_engine()
    maker = _session_maker(engine)
    async with maker() as session:
        request_id = await _seed_request(session, [uuid4()], deadline_hours=1)

    async with maker() as session:
        report = await run_sweep_once(
            session,
            now=datetime.now(UTC) + timedelta(hours=2),
            reminder_window=WINDOW,
        )

    assert report.expired == 1
    assert report.skipped == 0
    async with maker() as session:
        assert (await load_request(session, request_id)).status == "rejected"
    assert invoker.calls == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_last_moment_vote_beats_expiry(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    invoker: RecordingInvoker,
) -> None:
    # File-backed so the voter gets its own connection.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'expiry.db'}")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    maker = _session_maker(engine)
    approver = uuid4()
    async with maker() as session:
        request_id = await _seed_request(session, [approver], deadline_hours=1)

    original_load_slots = escalation_scheduler.load_request_slots
    voted = False

    async def _load_slots_then_vote(session: AsyncSession, target_id: UUID) -> list[Approver]:
        nonlocal voted
        slots = await original_load_slots(session, target_id)
        if not voted:
            voted = True
            async with maker() as voter_session:
                result = await cast_decision(
                    voter_session,
                    request_id=target_id,
                    voter_id=approver,
                    decision="approved",
                )
                assert result.request.status == "executed"
        return slots

    monkeypatch.setattr(escalation_scheduler, "load_request_slots", _load_slots_then_vote)
    async with maker() as session:
        report = await run_sweep_once(session, now=utcnow() + timedelta(hours=2))

    assert voted
    assert report.scanned == 1
    assert report.expired == 0
    assert report.skipped == 1
    async with maker() as session:
        assert (await load_request(session, request_id)).status == "executed"
        transitions = await list_transitions(session, request_id)
        assert [t.to_status for t in transitions if t.from_status == "pending"] == ["approved"]
        assert all(t.to_status != "rejected" for t in transitions)
        slots = await load_request_slots(session, request_id)
        assert all(slot.source != "system" for slot in slots)
    assert len(invoker.calls) == 1
    await engine.dispose()


@pytest.mark.asyncio
async def test_stop_cancels_a_hung_sweep_and_waits_for_it(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    engine = await _make_engine()
    entered = asyncio.Event()
    cancelled: list[bool] = []

    async def _hung_sweep(session: AsyncSession, **kwargs: object) -> SweepReport:
        del session, kwargs
        entered.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return SweepReport()

    monkeypatch.setattr(escalation_scheduler, "run_sweep_once", _hung_sweep)
    scheduler = EscalationScheduler(
        _session_maker(engine),
        interval_seconds=3600,
        stop_timeout_seconds=0.05,
    )

    await scheduler.start()
    await asyncio.wait_for(entered.wait(), timeout=2)
    await scheduler.stop()

    assert cancelled == [True]
    assert not scheduler.running
    await engine.dispose()
