"""Approval request model: one suspended critical action awaiting decisions."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, Text
from sqlmodel import Field

from approval_gate.core.time import utcnow
from approval_gate.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ApprovalRequest(QueryModel, table=True):
    """Pending or resolved request to perform a critical action."""

    __tablename__ = "approval_requests"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    code: str = Field(unique=True, index=True)
    action_type_id: UUID = Field(foreign_key="action_types.id", index=True)
    requester_id: UUID = Field(index=True)
    requester_name: str = Field(default="")
    requester_email: str = Field(default="")
    requester_profile: str = Field(default="")
    justification: str
    # Stored verbatim; replayed to the executor without re-serialization.
    action_payload: str = Field(sa_column=Column(Text, nullable=False))
    execution_method: str
    target_ref: str | None = Field(default=None, index=True)
    status: str = Field(default="pending", index=True)
    deadline: datetime | None = Field(default=None, index=True)
    reminder_count: int = Field(default=0)
    last_reminder_at: datetime | None = None
    escalation_count: int = Field(default=0)
    last_escalation_at: datetime | None = None
    attachments: list[dict[str, object]] = Field(default_factory=list, sa_column=Column(JSON))
    notes: str | None = None
    resolved_at: datetime | None = None
    executed_at: datetime | None = None
    execution_error: str | None = None
    execution_result: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    updated_at: datetime = Field(default_factory=utcnow)
