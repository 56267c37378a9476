"""Approval request endpoints: submission, voting, cancellation, and audit reads."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Query, status

from approval_gate.api.deps import ACTOR_DEP, ADMIN_DEP, SESSION_DEP
from approval_gate.core.auth import Actor
from approval_gate.db.pagination import paginate
from approval_gate.schemas.approval_requests import (
    ApprovalMetricsRead,
    ApprovalRequestCreate,
    ApprovalRequestRead,
    ApproverCreate,
    ApproverRead,
    CancelPayload,
    DecisionCreate,
    DecisionRead,
    HistoryEventRead,
)
from approval_gate.schemas.pagination import DefaultLimitOffsetPage
from approval_gate.services import approval_requests as request_store
from approval_gate.services.approver_assignment import (
    add_ad_hoc_approver,
    cast_decision,
    deactivate_request_approver,
    list_request_approvers,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from fastapi_pagination.limit_offset import LimitOffsetPage
    from sqlmodel.ext.asyncio.session import AsyncSession

    from approval_gate.models.approval_requests import ApprovalRequest

router = APIRouter(prefix="/approval-requests", tags=["approval-requests"])

STATUS_QUERY = Query(default=None, alias="status")
DATE_QUERY = Query(default=None)


def _to_read(request: ApprovalRequest) -> ApprovalRequestRead:
    return ApprovalRequestRead.model_validate(request, from_attributes=True)


def _to_read_many(items: Sequence[object]) -> list[ApprovalRequestRead]:
    return [ApprovalRequestRead.model_validate(item, from_attributes=True) for item in items]


@router.post("", response_model=ApprovalRequestRead, status_code=status.HTTP_201_CREATED)
async def submit_request(
    payload: ApprovalRequestCreate,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ACTOR_DEP,
) -> ApprovalRequestRead:
    """Suspend a critical action until its approvers decide."""
    request = await request_store.submit(
        session,
        action_type_id=payload.action_type_id,
        requester=actor,
        justification=payload.justification,
        payload=payload.action_payload,
        execution_method=payload.execution_method,
        deadline=payload.deadline,
        attachments=[item.model_dump() for item in payload.attachments],
        notes=payload.notes,
    )
    return _to_read(request)


@router.get("", response_model=DefaultLimitOffsetPage[ApprovalRequestRead])
async def list_requests(
    request_status: str | None = STATUS_QUERY,
    requester_id: UUID | None = None,
    action_type_id: UUID | None = None,
    created_from: datetime | None = DATE_QUERY,
    created_to: datetime | None = DATE_QUERY,
    pending_for: UUID | None = None,
    mine_to_decide: bool = False,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ACTOR_DEP,
) -> LimitOffsetPage[ApprovalRequestRead]:
    """List requests newest first; `mine_to_decide` narrows to the caller's pending votes."""
    filters = request_store.RequestFilters(
        status=request_status,
        requester_id=requester_id,
        action_type_id=action_type_id,
        created_from=created_from,
        created_to=created_to,
        pending_for=actor.id if mine_to_decide else pending_for,
    )
    statement = request_store.build_request_statement(filters)
    return await paginate(session, statement, transformer=_to_read_many)


@router.get("/metrics", response_model=ApprovalMetricsRead)
async def get_metrics(
    action_type_id: UUID | None = None,
    created_from: datetime | None = DATE_QUERY,
    created_to: datetime | None = DATE_QUERY,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ADMIN_DEP,
) -> ApprovalMetricsRead:
    """Counts per status and mean time to resolution."""
    metrics = await request_store.approval_metrics(
        session,
        action_type_id=action_type_id,
        created_from=created_from,
        created_to=created_to,
    )
    return ApprovalMetricsRead.model_validate(metrics, from_attributes=True)


@router.get("/code/{code}", response_model=ApprovalRequestRead)
async def get_request_by_code(
    code: str,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> ApprovalRequestRead:
    return _to_read(await request_store.get_request_by_code(session, code))


@router.get("/{request_id}", response_model=ApprovalRequestRead)
async def get_request(
    request_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> ApprovalRequestRead:
    return _to_read(await request_store.get_request(session, request_id))


@router.get("/{request_id}/history", response_model=list[HistoryEventRead])
async def get_request_history(
    request_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> list[HistoryEventRead]:
    """Transitions and votes in the order they happened."""
    events = await request_store.get_request_history(session, request_id)
    return [HistoryEventRead.model_validate(event, from_attributes=True) for event in events]


@router.post("/{request_id}/decisions", response_model=DecisionRead)
async def decide(
    request_id: UUID,
    payload: DecisionCreate,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ACTOR_DEP,
) -> DecisionRead:
    """Record the caller's vote; a vote on a closed request comes back `late`."""
    result = await cast_decision(
        session,
        request_id=request_id,
        voter_id=actor.id,
        decision=payload.decision,
        justification=payload.justification,
        attachments=[item.model_dump() for item in payload.attachments],
    )
    return DecisionRead(
        request=_to_read(result.request),
        approver=ApproverRead.model_validate(result.slot, from_attributes=True),
        late=result.late,
        resolved=result.resolved,
        tally=result.outcome.tally.as_dict() if result.outcome is not None else None,
    )


@router.post("/{request_id}/cancel", response_model=ApprovalRequestRead)
async def cancel_request(
    request_id: UUID,
    payload: CancelPayload | None = None,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ACTOR_DEP,
) -> ApprovalRequestRead:
    request = await request_store.cancel(
        session,
        request_id=request_id,
        actor=actor,
        reason=payload.reason if payload is not None else "",
    )
    return _to_read(request)


@router.get("/{request_id}/approvers", response_model=list[ApproverRead])
async def get_request_approvers(
    request_id: UUID,
    session: AsyncSession = SESSION_DEP,
    _: Actor = ACTOR_DEP,
) -> list[ApproverRead]:
    slots = await list_request_approvers(session, request_id)
    return [ApproverRead.model_validate(slot, from_attributes=True) for slot in slots]


@router.post(
    "/{request_id}/approvers",
    response_model=ApproverRead,
    status_code=status.HTTP_201_CREATED,
)
async def add_request_approver(
    request_id: UUID,
    payload: ApproverCreate,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ADMIN_DEP,
) -> ApproverRead:
    """Widen the voter pool of a pending request."""
    slot = await add_ad_hoc_approver(
        session,
        request_id=request_id,
        user_id=payload.user_id,
        actor=actor,
    )
    return ApproverRead.model_validate(slot, from_attributes=True)


@router.delete("/{request_id}/approvers/{approver_id}", response_model=ApproverRead)
async def remove_request_approver(
    request_id: UUID,
    approver_id: UUID,
    session: AsyncSession = SESSION_DEP,
    actor: Actor = ADMIN_DEP,
) -> ApproverRead:
    slot = await deactivate_request_approver(
        session,
        request_id=request_id,
        approver_id=approver_id,
        actor=actor,
    )
    return ApproverRead.model_validate(slot, from_attributes=True)
