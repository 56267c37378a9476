# ruff: noqa: INP001
"""Action type registration, policy locking, and the policy cache."""

from __future__ import annotations

import json
from uuid import uuid4

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from approval_gate.core.auth import Actor
from approval_gate.core.errors import NotFoundError, PolicyLocked, ValidationError
from approval_gate.services import action_registry
from approval_gate.services.action_registry import (
    PolicyCache,
    activate,
    add_standing_approver,
    deactivate,
    deactivate_standing_approver,
    get_policy,
    get_policy_by_code,
    list_action_types,
    list_standing_approvers,
    parse_escalation_policy,
    register_action_type,
    update_policy,
)
from approval_gate.services.approval_requests import submit


async def _make_engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.connect() as conn, conn.begin():
        await conn.run_sync(SQLModel.metadata.create_all)
    return engine


def _session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.mark.asyncio
async def test_register_defaults_execution_method_to_code_and_normalizes_tags() -> None:
    engine = await _make_engine()
    async with _session_maker(engine)() as session:
        action_type = await register_action_type(
            session,
            code="Cancelar_Beneficio",
            name="  Cancel benefit ",
            strategy="majority",
            min_approvers=3,
            auto_approval_profiles=["Super_Admin", "super_admin", " gestor "],
            deadline_hours=72,
        )

        assert action_type.code == "cancelar_beneficio"
        assert action_type.name == "Cancel benefit"
        assert action_type.execution_method == "cancelar_beneficio"
        assert action_type.auto_approval_profiles == ["super_admin", "gestor"]
        assert action_type.policy_version == 1
        assert action_type.active
    await engine.dispose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"code": "1-bad code"},
        {"name": "   "},
        {"strategy": "unanimous"},
        {"min_approvers": 0},
        {"execution_method": "drop_database"},
        {"deadline_hours": 0},
        {"auto_approval_profiles": ["has space"]},
        {"escalation_policy": {"max_escalations": 2}},
        {"escalation_policy": {"approver_ids": ["not-a-uuid"]}},
        {"escalation_policy": {"supervisor_id": str(uuid4()), "extension_hours": -1}},
    ],
)
async def test_register_rejects_invalid_policy(overrides: dict[str, object]) -> None:
    engine = await _make_engine()
    params: dict[str, object] = {"code": "suspender_pagamento", "name": "Suspend payment"}
    params.update(overrides)
    async with _session_maker(engine)() as session:
        with pytest.raises(ValidationError):
            await register_action_type(session, **params)  # type: ignore[arg-type]
    await engine.dispose()


@pytest.mark.asyncio
async def test_register_rejects_duplicate_code() -> None:
    engine = await _make_engine()
    async with _session_maker(engine)() as session:
        await register_action_type(session, code="suspender_pagamento", name="Suspend payment")

        with pytest.raises(ValidationError):
            await register_action_type(session, code="SUSPENDER_PAGAMENTO", name="Again")
    await engine.dispose()


def test_escalation_policy_parsing_fills_defaults() -> None:
    supervisor = uuid4()
    approver = uuid4()

    policy = parse_escalation_policy(
        {
            "approver_ids": [str(approver)],
            "supervisor_id": str(supervisor),
            "max_escalations": None,
            "extension_hours": None,
        },
    )

    assert policy is not None
    assert policy.approver_ids == (approver,)
    assert policy.supervisor_id == supervisor
    assert policy.max_escalations == 1
    assert policy.extension_hours == 24.0
    assert parse_escalation_policy(None) is None
    assert parse_escalation_policy({}) is None


@pytest.mark.asyncio
async def test_policy_fields_lock_once_a_request_exists() -> None:
    engine = await _make_engine()
    approver = uuid4()
    async with _session_maker(engine)() as session:
        action_type = await register_action_type(
            session,
            code="suspender_beneficio",
            name="Suspend benefit",
        )
        action_type_id = action_type.id
        await add_standing_approver(session, action_type_id=action_type_id, user_id=approver)

        unlocked = await update_policy(
            session,
            action_type_id=action_type_id,
            changes={"min_approvers": 2, "strategy": "majority"},
        )
        assert unlocked.policy_version == 2
        assert unlocked.min_approvers == 2

        await submit(
            session,
            action_type_id=action_type_id,
            requester=Actor(id=uuid4(), profile="tecnico"),
            justification="Duplicate benefit",
            payload=json.dumps({"benefit_id": str(uuid4()), "reason": "duplicate"}),
        )

        with pytest.raises(PolicyLocked):
            await update_policy(session, action_type_id=action_type_id, changes={"min_approvers": 1})

        renamed = await update_policy(
            session,
            action_type_id=action_type_id,
            changes={"name": "Suspend benefit (fraud)", "description": "Fraud desk only"},
        )
        assert renamed.name == "Suspend benefit (fraud)"
        assert renamed.min_approvers == 2
        assert renamed.policy_version == 2

        with pytest.raises(ValidationError):
            await update_policy(session, action_type_id=action_type_id, changes={"code": "x"})
    await engine.dispose()


@pytest.mark.asyncio
async def test_update_invalidates_cached_policy() -> None:
    engine = await _make_engine()
    async with _session_maker(engine)() as session:
        action_type = await register_action_type(
            session,
            code="suspender_beneficio",
            name="Suspend benefit",
        )
        action_type_id = action_type.id
        cached = await get_policy(session, action_type_id)
        assert cached.min_approvers == 1
        assert action_registry.policy_cache.get(action_type_id) is not None

        await update_policy(session, action_type_id=action_type_id, changes={"min_approvers": 3})

        assert action_registry.policy_cache.get(action_type_id) is None
        assert (await get_policy(session, action_type_id)).min_approvers == 3
    await engine.dispose()


def test_policy_cache_expires_and_hands_out_copies(monkeypatch: pytest.MonkeyPatch) -> None:
    from approval_gate.models.action_types import ActionType

    clock = [100.0]
    monkeypatch.setattr(action_registry.time, "monotonic", lambda: clock[0])
    cache = PolicyCache(ttl_seconds=10)
    action_type = ActionType(code="bloquear_beneficio", name="Block benefit")

    cache.put(action_type)
    first = cache.get(action_type.id)
    assert first is not None
    first.min_approvers = 99
    second = cache.get(action_type.id)
    assert second is not None
    assert second.min_approvers == 1

    clock[0] += 11
    assert cache.get(action_type.id) is None

    disabled = PolicyCache(ttl_seconds=0)
    disabled.put(action_type)
    assert disabled.get(action_type.id) is None


@pytest.mark.asyncio
async def test_activation_toggles_and_listing() -> None:
    engine = await _make_engine()
    async with _session_maker(engine)() as session:
        first = await register_action_type(session, code="suspender_beneficio", name="Suspend")
        await register_action_type(session, code="bloquear_beneficio", name="Block")
        first_id = first.id

        deactivated = await deactivate(session, first_id)
        assert not deactivated.active
        assert deactivated.policy_version == 2
        assert [item.code for item in await list_action_types(session, active=True)] == [
            "bloquear_beneficio",
        ]
        assert [item.code for item in await list_action_types(session)] == [
            "bloquear_beneficio",
            "suspender_beneficio",
        ]

        reactivated = await activate(session, first_id)
        assert reactivated.active
        assert reactivated.policy_version == 3

        by_code = await get_policy_by_code(session, "suspender_beneficio")
        assert by_code.id == first_id
        with pytest.raises(NotFoundError):
            await get_policy_by_code(session, "excluir_documento")

        with pytest.raises(NotFoundError):
            await activate(session, uuid4())
    await engine.dispose()


@pytest.mark.asyncio
async def test_standing_approver_lifecycle() -> None:
    engine = await _make_engine()
    user_id = uuid4()
    async with _session_maker(engine)() as session:
        action_type = await register_action_type(session, code="suspender_beneficio", name="S")
        action_type_id = action_type.id

        approver = await add_standing_approver(
            session,
            action_type_id=action_type_id,
            user_id=user_id,
        )
        approver_id = approver.id
        with pytest.raises(ValidationError):
            await add_standing_approver(session, action_type_id=action_type_id, user_id=user_id)

        removed = await deactivate_standing_approver(
            session,
            action_type_id=action_type_id,
            approver_id=approver_id,
        )
        assert not removed.active
        assert await list_standing_approvers(session, action_type_id) == []
        assert len(await list_standing_approvers(session, action_type_id, include_inactive=True)) == 1

        restored = await add_standing_approver(
            session,
            action_type_id=action_type_id,
            user_id=user_id,
        )
        assert restored.id == approver_id
        assert restored.active

        with pytest.raises(NotFoundError):
            await deactivate_standing_approver(
                session,
                action_type_id=uuid4(),
                approver_id=approver_id,
            )
        with pytest.raises(NotFoundError):
            await add_standing_approver(session, action_type_id=uuid4(), user_id=user_id)
    await engine.dispose()
