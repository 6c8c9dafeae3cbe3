"""User account repository."""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.scope.exceptions import Conflict
from src.scope.models.user import User

logger = structlog.get_logger(__name__)


def parse_uuid(value: Any) -> uuid.UUID | None:
    """Coerce a UUID or its string form; None when malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class UserRepository:
    """Async access to the global ``users`` table.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, user_id: Any) -> User | None:
        parsed = parse_uuid(user_id)
        if parsed is None:
            return None
        async with self._session_factory() as session:
            return await session.get(User, parsed)

    async def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup."""
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(func.lower(User.email) == email.lower()))
            return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        is_superuser: bool = False,
    ) -> User:
        """Insert a user. Raises Conflict when the email is taken."""
        user = User(
            email=email.lower(),
            password=password_hash,
            first_name=first_name,
            last_name=last_name,
            is_active=True,
            is_superuser=is_superuser,
        )
        try:
            async with self._session_factory() as session, session.begin():
                session.add(user)
                await session.flush()
                await session.refresh(user)
        except IntegrityError as exc:
            raise Conflict("A user with this email already exists") from exc
        logger.info("users.created", user_id=str(user.id))
        return user
