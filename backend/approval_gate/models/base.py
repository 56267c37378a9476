"""Shared SQLModel base with a query manager."""

from __future__ import annotations

from typing import ClassVar

from sqlmodel import SQLModel

from approval_gate.db.query_manager import ManagerDescriptor


class QueryModel(SQLModel, table=False):
    """Base model exposing `Model.objects` for chainable queries."""

    objects: ClassVar[ManagerDescriptor] = ManagerDescriptor()
