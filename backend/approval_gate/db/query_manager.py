"""Chainable, immutable query builder exposed as `Model.objects`."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlalchemy import func
from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT", bound=SQLModel)


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Wrap a select statement; each refinement returns a new queryset."""

    model: type[ModelT]
    statement: SelectOfScalar[ModelT]

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.where(*criteria))

    def filter_by(self, **kwargs: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.filter_by(**kwargs))

    def order_by(self, *clauses: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.order_by(*clauses))

    def limit(self, count: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.limit(count))

    def offset(self, count: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.offset(count))

    def for_update(self) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.with_for_update())

    def fresh(self) -> QuerySet[ModelT]:
        """Overwrite identity-map state with the row as currently stored."""
        return replace(
            self,
            statement=self.statement.execution_options(populate_existing=True),
        )

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement))

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.statement)).first()

    async def exists(self, session: AsyncSession) -> bool:
        return (await session.exec(self.statement.limit(1))).first() is not None

    async def count(self, session: AsyncSession) -> int:
        count_statement = select(func.count()).select_from(self.statement.subquery())
        return int((await session.exec(count_statement)).one())


class ModelManager(Generic[ModelT]):
    """Entry point for building querysets against one model."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def all(self) -> QuerySet[ModelT]:
        return QuerySet(model=self.model, statement=select(self.model))

    def by_id(self, obj_id: Any) -> QuerySet[ModelT]:
        pk = getattr(self.model, "id")
        return self.all().filter(col(pk) == obj_id)

    def by_ids(self, obj_ids: list[Any]) -> QuerySet[ModelT]:
        pk = getattr(self.model, "id")
        return self.all().filter(col(pk).in_(obj_ids))

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return self.all().filter(*criteria)

    def filter_by(self, **kwargs: Any) -> QuerySet[ModelT]:
        return self.all().filter_by(**kwargs)


class ManagerDescriptor:
    """Class-level descriptor returning a manager bound to the owning model."""

    def __get__(self, instance: object, owner: type[ModelT]) -> ModelManager[ModelT]:
        return ModelManager(owner)
