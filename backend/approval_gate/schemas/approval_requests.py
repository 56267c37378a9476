"""Schemas for approval request, decision, and audit payloads."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class AttachmentRef(SQLModel):
    """Pointer to a file kept by the external storage service."""

    name: str
    url: str
    mime_type: str | None = None
    size: int | None = Field(default=None, ge=0)


class ApprovalRequestCreate(SQLModel):
    """Payload for submitting a critical action for approval.

    `action_payload` is the serialized action exactly as it should be
    replayed once approved.
    """

    action_type_id: UUID
    justification: str
    action_payload: str
    execution_method: str | None = None
    deadline: datetime | None = None
    attachments: list[AttachmentRef] = Field(default_factory=list)
    notes: str | None = None


class ApprovalRequestRead(SQLModel):
    """Approval request returned by read endpoints."""

    id: UUID
    code: str
    action_type_id: UUID
    requester_id: UUID
    requester_name: str
    requester_email: str
    requester_profile: str
    justification: str
    action_payload: str
    execution_method: str
    status: str
    deadline: datetime | None = None
    reminder_count: int
    last_reminder_at: datetime | None = None
    escalation_count: int
    last_escalation_at: datetime | None = None
    attachments: list[dict[str, object]] = Field(default_factory=list)
    notes: str | None = None
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    execution_error: str | None = None
    execution_result: dict[str, object] | None = None
    version: int
    created_at: datetime
    updated_at: datetime


class ApproverRead(SQLModel):
    """Vote slot of one approver on one request."""

    id: UUID
    user_id: UUID
    request_id: UUID | None = None
    source: str
    decision: str | None = None
    justification: str
    decided_at: datetime | None = None
    attachments: list[dict[str, object]] = Field(default_factory=list)
    active: bool
    late: bool
    created_at: datetime


class ApproverCreate(SQLModel):
    user_id: UUID


class DecisionCreate(SQLModel):
    """Payload for casting a vote."""

    decision: str = Field(examples=["approved", "rejected"])
    justification: str = ""
    attachments: list[AttachmentRef] = Field(default_factory=list)


class DecisionRead(SQLModel):
    """Outcome of a vote. `late` votes were stored but changed nothing."""

    request: ApprovalRequestRead
    approver: ApproverRead
    late: bool = False
    resolved: bool = False
    tally: dict[str, object] | None = None


class CancelPayload(SQLModel):
    reason: str = ""


class HistoryEventRead(SQLModel):
    at: datetime
    kind: str
    actor_id: UUID | None = None
    detail: dict[str, object] = Field(default_factory=dict)


class ApprovalMetricsRead(SQLModel):
    """Aggregate counts for a reporting window."""

    total: int
    by_status: dict[str, int]
    resolved: int
    mean_resolution_seconds: float | None = None
    late_votes: int
