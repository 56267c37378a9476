"""Action type endpoints: policy registration and standing approvers."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, status

from approval_gate.api.deps import ACTOR_DEP, ADMIN_DEP, SESSION_DEP
from approval_gate.core.auth import Actor
from approval_gate.schemas.action_types import (
    ActionTypeCreate,
    ActionTypeRead,
    ActionTypeUpdate,
    StandingApproverCreate,
    StandingApproverRead,
)
from approval_gate.services import action_registry

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.models.action_types import ActionType

router = APIRouter(prefix="/action-types", tags=["action-types"])


def _to_read(action_type: ActionType) -> ActionTypeRead:
    return ActionTypeRead.model_validate(action_type, from_attributes=True)


@router.post("", response_model=ActionTypeRead, status_code=status.HTTP_201_CREATED)
async def register_action_type(
    payload: ActionTypeCreate,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> ActionTypeRead:
    """Register a critical action and the policy that gates it."""
    action_type = await action_registry.register_action_type(
        session,
        code=payload.code,
        name=payload.name,
        description=payload.description,
        strategy=payload.strategy,
        min_approvers=payload.min_approvers,
        allow_self_approval=payload.allow_self_approval,
        auto_approval_profiles=payload.auto_approval_profiles,
        execution_method=payload.execution_method,
        deadline_hours=payload.deadline_hours,
        escalation_policy=(
            payload.escalation_policy.model_dump(mode="json", exclude_none=True)
            if payload.escalation_policy is not None
            else None
        ),
    )
    return _to_read(action_type)


@router.get("", response_model=list[ActionTypeRead])
async def list_action_types(
    active: bool | None = None,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> list[ActionTypeRead]:
    action_types = await action_registry.list_action_types(session, active=active)
    return [_to_read(item) for item in action_types]


@router.get("/{action_type_id}", response_model=ActionTypeRead)
async def get_action_type(
    action_type_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> ActionTypeRead:
    return _to_read(await action_registry.get_policy(session, action_type_id))


@router.patch("/{action_type_id}", response_model=ActionTypeRead)
async def update_action_type(
    action_type_id: UUID,
    payload: ActionTypeUpdate,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> ActionTypeRead:
    """Update descriptive fields, or policy fields while no request references the type."""
    changes = payload.model_dump(mode="json", exclude_unset=True)
    action_type = await action_registry.update_policy(
        session,
        action_type_id=action_type_id,
        changes=changes,
    )
    return _to_read(action_type)


@router.post("/{action_type_id}/activate", response_model=ActionTypeRead)
async def activate_action_type(
    action_type_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> ActionTypeRead:
    return _to_read(await action_registry.activate(session, action_type_id))


@router.post("/{action_type_id}/deactivate", response_model=ActionTypeRead)
async def deactivate_action_type(
    action_type_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> ActionTypeRead:
    """Block new submissions; pending requests of this type keep running."""
    return _to_read(await action_registry.deactivate(session, action_type_id))


@router.get("/{action_type_id}/approvers", response_model=list[StandingApproverRead])
async def list_standing_approvers(
    action_type_id: UUID,
    include_inactive: bool = False,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> list[StandingApproverRead]:
    await action_registry.get_policy(session, action_type_id)
    approvers = await action_registry.list_standing_approvers(
        session,
        action_type_id,
        include_inactive=include_inactive,
    )
    return [StandingApproverRead.model_validate(item, from_attributes=True) for item in approvers]


@router.post(
    "/{action_type_id}/approvers",
    response_model=StandingApproverRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_standing_approver(
    action_type_id: UUID,
    payload: StandingApproverCreate,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> StandingApproverRead:
    approver = await action_registry.add_standing_approver(
        session,
        action_type_id=action_type_id,
        user_id=payload.user_id,
    )
    return StandingApproverRead.model_validate(approver, from_attributes=True)


@router.delete("/{action_type_id}/approvers/{approver_id}", response_model=StandingApproverRead)
async def remove_standing_approver(
    action_type_id: UUID,
    approver_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> StandingApproverRead:
    """Stop seeding this approver into new requests; past votes are kept."""
    approver = await action_registry.deactivate_standing_approver(
        session,
        action_type_id=action_type_id,
        approver_id=approver_id,
    )
    return StandingApproverRead.model_validate(approver, from_attributes=True)
