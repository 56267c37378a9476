"""Append-only log of approval request status changes."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from approval_gate.core.time import utcnow
from approval_gate.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ApprovalTransition(QueryModel, table=True):
    """One status change, with the tally that caused it."""

    __tablename__ = "approval_transitions"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    request_id: UUID = Field(foreign_key="approval_requests.id", index=True)
    from_status: str | None = None
    to_status: str
    actor_id: UUID | None = None
    actor_type: str = Field(default="user")
    reason: str = Field(default="")
    tally: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, index=True)
