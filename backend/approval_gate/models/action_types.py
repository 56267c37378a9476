"""Action type model holding the approval policy for one critical action."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from approval_gate.core.time import utcnow
from approval_gate.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class ActionType(QueryModel, table=True):
    """Registered critical action and the policy governing its approval."""

    __tablename__ = "action_types"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    code: str = Field(unique=True, index=True)
    name: str
    description: str = Field(default="")
    strategy: str = Field(default="simple")
    min_approvers: int = Field(default=1)
    allow_self_approval: bool = Field(default=False)
    auto_approval_profiles: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    execution_method: str = Field(default="")
    deadline_hours: float | None = None
    escalation_policy: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    active: bool = Field(default=True, index=True)
    policy_version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
