# ruff: noqa: INP001
"""Concurrent voters racing on the same request resolve it exactly once."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from approval_gate.core.auth import Actor
from approval_gate.models.approval_requests import ApprovalRequest
from approval_gate.services import approver_assignment
from approval_gate.services.action_registry import add_standing_approver, register_action_type
from approval_gate.services.approval_requests import submit
from approval_gate.services.approver_assignment import cast_decision
from approval_gate.services.request_state import guarded_update, load_request
from approval_gate.services.transitions import list_transitions

if TYPE_CHECKING:
    from pathlib import Path

    from conftest import RecordingInvoker

REQUESTER = Actor(id=uuid4(), name="Ana", profile="tecnico")


async def _make_engine(tmp_path: Path) -> AsyncEngine:
    # File-backed so each session gets its own connection.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'race.db'}")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


async def _seed_request(
    session: AsyncSession,
    approvers: list[UUID],
    *,
    strategy: str = "simple",
    min_approvers: int = 1,
) -> UUID:
    action_type = await register_action_type(
        session,
        code="suspender_beneficio",
        name="Suspend benefit",
        strategy=strategy,
        min_approvers=min_approvers,
    )
    for user_id in approvers:
        await add_standing_approver(session, action_type_id=action_type.id, user_id=user_id)
    request = await submit(
        session,
        action_type_id=action_type.id,
        requester=REQUESTER,
        justification="Beneficiary moved abroad",
        payload=json.dumps({"benefit_id": str(uuid4()), "reason": "moved abroad"}),
    )
    return request.id


@pytest.mark.asyncio
async def test_racing_voter_loses_and_is_recorded_late(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    invoker: RecordingInvoker,
) -> None:
    engine = await _make_engine(tmp_path)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    approver_a, approver_b = uuid4(), uuid4()
    async with session_maker() as session:
        request_id = await _seed_request(session, [approver_a, approver_b])

    interleaved = False

    async def _load_then_let_rival_commit(
        session: AsyncSession,
        target_id: UUID,
    ) -> ApprovalRequest:
        nonlocal interleaved
        stale = await load_request(session, target_id)
        if interleaved:
            return stale
        interleaved = True
        async with session_maker() as rival_session:
            rival = await cast_decision(
                rival_session,
                request_id=target_id,
                voter_id=approver_b,
                decision="rejected",
                justification="Missing proof of address",
            )
            assert rival.request.status == "rejected"
        return stale

    monkeypatch.setattr(approver_assignment, "load_request", _load_then_let_rival_commit)

    async with session_maker() as session:
        result = await cast_decision(
            session,
            request_id=request_id,
            voter_id=approver_a,
            decision="approved",
        )

        assert result.late
        assert result.request.status == "rejected"
        assert result.slot.decision == "approved"

        transitions = await list_transitions(session, request_id)
        resolutions = [t for t in transitions if t.from_status == "pending"]
        assert [(t.to_status, t.actor_id) for t in resolutions] == [("rejected", approver_b)]

        stored = await load_request(session, request_id)
        assert stored.status == "rejected"
        assert stored.version == 2

    assert invoker.calls == []
    await engine.dispose()


@pytest.mark.asyncio
async def test_guarded_update_rejects_stale_version(tmp_path: Path) -> None:
    engine = await _make_engine(tmp_path)
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        request_id = await _seed_request(session, [uuid4()])

    async with session_maker() as first, session_maker() as second:
        mine = await load_request(first, request_id)
        read_version = mine.version
        theirs = await load_request(second, request_id)

        assert await guarded_update(second, request=theirs, values={"notes": "touched"})
        await second.commit()

        assert not await guarded_update(first, request=mine, to_status="cancelled")
        await first.rollback()

        current = await load_request(first, request_id)
        assert current.status == "pending"
        assert current.notes == "touched"
        assert current.version == read_version + 1
    await engine.dispose()
