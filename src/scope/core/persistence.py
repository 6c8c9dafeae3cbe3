"""Narrow persistence interface consumed by the isolation guard.

Five verbs: find, create, update, delete, and execute (raw SQL). Every call
carries the SessionSettings the storage policy evaluates. The SQLAlchemy
implementation applies those settings and runs the statement inside one
transaction on one borrowed connection, so the policy always sees the
settings of the statement it is checking.
"""

from __future__ import annotations

from typing import Any, Protocol, TypeVar

from sqlalchemy import TextClause, delete, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.scope.core.rls import SessionSettings, apply_session_settings

ModelT = TypeVar("ModelT")


class Persistence(Protocol):
    async def find(
        self,
        model: type[ModelT],
        filters: dict[str, Any],
        settings: SessionSettings,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ModelT]: ...

    async def create(self, model: type[ModelT], values: dict[str, Any], settings: SessionSettings) -> ModelT: ...

    async def update(
        self,
        model: type[ModelT],
        filters: dict[str, Any],
        values: dict[str, Any],
        settings: SessionSettings,
    ) -> list[ModelT]: ...

    async def delete(self, model: type[Any], filters: dict[str, Any], settings: SessionSettings) -> int: ...

    async def execute(
        self,
        statement: str | TextClause,
        params: dict[str, Any] | None,
        settings: SessionSettings,
    ) -> list[dict[str, Any]]: ...


def _order_clause(model: type[Any], order_by: str) -> Any:
    """``"name"`` sorts ascending, ``"-name"`` descending."""
    descending = order_by.startswith("-")
    column = getattr(model, order_by.lstrip("-"))
    return column.desc() if descending else column.asc()


class SqlAlchemyPersistence:
    """Persistence backed by an async_sessionmaker.

    Each call opens a session, begins a transaction, writes the session
    settings, runs the statement, and commits. Nothing is shared between
    calls, so settings never leak to another borrower of the connection.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def find(
        self,
        model: type[ModelT],
        filters: dict[str, Any],
        settings: SessionSettings,
        order_by: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[ModelT]:
        stmt = select(model).filter_by(**filters)
        if order_by:
            stmt = stmt.order_by(_order_clause(model, order_by))
        if limit is not None:
            stmt = stmt.limit(limit)
        if offset:
            stmt = stmt.offset(offset)

        async with self._session_factory() as session, session.begin():
            await apply_session_settings(session, settings)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def create(self, model: type[ModelT], values: dict[str, Any], settings: SessionSettings) -> ModelT:
        instance = model(**values)
        async with self._session_factory() as session, session.begin():
            await apply_session_settings(session, settings)
            session.add(instance)
            await session.flush()
            await session.refresh(instance)
        return instance

    async def update(
        self,
        model: type[ModelT],
        filters: dict[str, Any],
        values: dict[str, Any],
        settings: SessionSettings,
    ) -> list[ModelT]:
        stmt = update(model).filter_by(**filters).values(**values).returning(model)
        async with self._session_factory() as session, session.begin():
            await apply_session_settings(session, settings)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete(self, model: type[Any], filters: dict[str, Any], settings: SessionSettings) -> int:
        stmt = delete(model).filter_by(**filters)
        async with self._session_factory() as session, session.begin():
            await apply_session_settings(session, settings)
            result = await session.execute(stmt)
            return result.rowcount or 0

    async def execute(
        self,
        statement: str | TextClause,
        params: dict[str, Any] | None,
        settings: SessionSettings,
    ) -> list[dict[str, Any]]:
        if isinstance(statement, str):
            statement = text(statement)
        async with self._session_factory() as session, session.begin():
            await apply_session_settings(session, settings)
            result = await session.execute(statement, params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]
