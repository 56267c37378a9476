"""Approver model covering standing assignments and per-request vote slots."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from approval_gate.core.time import utcnow
from approval_gate.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class Approver(QueryModel, table=True):
    """A user entitled to decide, either for an action type or for one request.

    Rows with `action_type_id` set and `request_id` unset are standing
    assignments. Rows with `request_id` set are vote slots seeded from them
    (or added ad hoc / by escalation).
    """

    __tablename__ = "approvers"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(index=True)
    action_type_id: UUID | None = Field(default=None, foreign_key="action_types.id", index=True)
    request_id: UUID | None = Field(
        default=None, foreign_key="approval_requests.id", index=True
    )
    source: str = Field(default="standing")
    decision: str | None = Field(default=None, index=True)
    justification: str = Field(default="")
    decided_at: datetime | None = None
    attachments: list[dict[str, object]] = Field(default_factory=list, sa_column=Column(JSON))
    active: bool = Field(default=True, index=True)
    late: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
