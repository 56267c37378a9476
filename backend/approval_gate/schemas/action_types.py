"""Schemas for action type and standing approver payloads."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class EscalationPolicyPayload(SQLModel):
    """What the sweep does once a pending request passes its deadline."""

    approver_ids: list[UUID] = Field(default_factory=list)
    supervisor_id: UUID | None = None
    max_escalations: int | None = Field(default=None, ge=1)
    extension_hours: float | None = Field(default=None, gt=0)


class ActionTypeCreate(SQLModel):
    """Payload for registering a critical action and its approval policy."""

    code: str
    name: str
    description: str = ""
    strategy: str = "simple"
    min_approvers: int = 1
    allow_self_approval: bool = False
    auto_approval_profiles: list[str] = Field(default_factory=list)
    execution_method: str = ""
    deadline_hours: float | None = None
    escalation_policy: EscalationPolicyPayload | None = None


class ActionTypeUpdate(SQLModel):
    """Partial update; policy fields are refused once requests exist."""

    name: str | None = None
    description: str | None = None
    strategy: str | None = None
    min_approvers: int | None = None
    allow_self_approval: bool | None = None
    auto_approval_profiles: list[str] | None = None
    execution_method: str | None = None
    deadline_hours: float | None = None
    escalation_policy: EscalationPolicyPayload | None = None


class ActionTypeRead(SQLModel):
    """Action type returned by read endpoints."""

    id: UUID
    code: str
    name: str
    description: str
    strategy: str
    min_approvers: int
    allow_self_approval: bool
    auto_approval_profiles: list[str]
    execution_method: str
    deadline_hours: float | None = None
    escalation_policy: dict[str, object] | None = None
    active: bool
    policy_version: int
    created_at: datetime
    updated_at: datetime


class StandingApproverCreate(SQLModel):
    user_id: UUID


class StandingApproverRead(SQLModel):
    id: UUID
    user_id: UUID
    action_type_id: UUID | None = None
    source: str
    active: bool
    created_at: datetime
    updated_at: datetime
