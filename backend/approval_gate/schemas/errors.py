"""Structured error payload schema used by API responses."""

from __future__ import annotations

from pydantic import Field
from sqlmodel import SQLModel


class ErrorResponse(SQLModel):
    """Error body returned by every handler installed on the app."""

    detail: str | dict[str, object] | list[object] = Field(
        description="Human-readable message, or validation issues for 422 responses.",
        examples=["Approval request not found"],
    )
    code: str | None = Field(
        default=None,
        description="Machine-readable error code for domain errors.",
        examples=["not_found", "self_approval_not_allowed", "concurrency_conflict"],
    )
    request_id: str | None = Field(
        default=None,
        description="Request correlation identifier injected by middleware.",
    )
