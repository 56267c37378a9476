"""Pagination helpers bridging SQLModel statements and fastapi-pagination."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from fastapi_pagination.ext.sqlalchemy import paginate as _paginate

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from fastapi_pagination.bases import AbstractPage
    from sqlalchemy.sql import Select
    from sqlmodel.ext.asyncio.session import AsyncSession

T = TypeVar("T")


async def paginate(
    session: AsyncSession,
    statement: Select[Any],
    *,
    transformer: Callable[[Sequence[Any]], Sequence[T]] | None = None,
) -> AbstractPage[T]:
    """Run `statement` through the current page params and wrap the result."""
    return await _paginate(session, statement, transformer=transformer)
