"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all models
- get_engine(): Lazy engine singleton
- get_session_factory(): async_sessionmaker bound to the engine
- Pool checkout event that resets session settings (RESET ALL) so a
  connection returned by one request never carries tenant settings into
  the next borrower
- init_db() / close_db(): startup and shutdown hooks
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.scope.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
            echo=False,
        )

        # Session settings must never outlive a checkout
        @event.listens_for(_engine.sync_engine, "checkout")
        def reset_session_settings(dbapi_conn: Any, connection_record: Any, connection_proxy: Any) -> None:
            cursor = dbapi_conn.cursor()
            cursor.execute("RESET ALL")
            cursor.close()

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory shared by repositories."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all persistence models."""


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create tables and install row-level security policies."""
    # Registers every model on Base.metadata
    import src.scope.models  # noqa: F401
    from src.scope.core.rls import apply_rls_policies

    settings = get_settings()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if settings.APPLY_RLS_ON_STARTUP:
            await apply_rls_policies(conn, Base.metadata)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
