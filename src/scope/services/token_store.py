"""Revoked-token store backed by the ``blacklisted_tokens`` table.

The unique index on the token value makes every lookup a single index
probe and makes inserts idempotent: a second blacklist of the same token
is a no-op that returns the existing record.

Lookups fail closed. Transient database errors are retried with
exponential backoff; if the store is still unreachable the caller gets
TokenStoreUnavailable, never a silent "not blacklisted".
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.scope.core.monitoring import tokens_revoked_total
from src.scope.exceptions import TokenStoreUnavailable
from src.scope.models.token import BlacklistedToken

logger = structlog.get_logger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


class TokenStore:
    """Async persistence for blacklisted JWTs.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _insert(
        self,
        session: AsyncSession,
        token: str,
        user_id: str,
        expires_at: datetime,
        reason: str | None,
    ) -> bool:
        """INSERT ... ON CONFLICT (token) DO NOTHING. True if this call inserted the row."""
        stmt = (
            pg_insert(BlacklistedToken)
            .values(token=token, user_id=str(user_id), expires_at=expires_at, reason=reason)
            .on_conflict_do_nothing(index_elements=["token"])
            .returning(BlacklistedToken.id)
        )
        result = await session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        if inserted:
            tokens_revoked_total.labels(reason=reason or "unspecified").inc()
        return inserted

    async def blacklist(
        self,
        token: str,
        user_id: str,
        expires_at: datetime,
        reason: str | None = None,
    ) -> BlacklistedToken:
        """Blacklist a token. Idempotent: repeat calls return the existing record."""
        async with self._session_factory() as session, session.begin():
            inserted = await self._insert(session, token, user_id, expires_at, reason)
            result = await session.execute(select(BlacklistedToken).where(BlacklistedToken.token == token))
            record = result.scalar_one()

        logger.info(
            "token_store.blacklisted",
            user_id=str(user_id),
            reason=reason,
            already_blacklisted=not inserted,
        )
        return record

    async def consume(self, token: str, user_id: str, expires_at: datetime, reason: str | None = None) -> bool:
        """Atomically blacklist a single-use token.

        Returns True only for the one caller whose insert created the row,
        so two concurrent consumers of the same refresh token cannot both win.
        """
        try:
            async with self._session_factory() as session, session.begin():
                inserted = await self._insert(session, token, user_id, expires_at, reason)
        except TRANSIENT_ERRORS as exc:
            logger.error("token_store.unavailable", error=str(exc))
            raise TokenStoreUnavailable() from exc
        if not inserted:
            logger.warning("token_store.reuse_detected", user_id=str(user_id), reason=reason)
        return inserted

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    async def _exists(self, token: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(BlacklistedToken.id).where(BlacklistedToken.token == token).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def is_blacklisted(self, token: str) -> bool:
        """Check whether a token has been revoked.

        Raises:
            TokenStoreUnavailable: The store could not be consulted after retries.
        """
        try:
            return await self._exists(token)
        except TRANSIENT_ERRORS as exc:
            logger.error("token_store.unavailable", error=str(exc))
            raise TokenStoreUnavailable() from exc

    async def purge_expired(self, now: datetime | None = None) -> int:
        """Delete rows whose expiry is strictly before ``now``. Returns the count."""
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as session, session.begin():
            result = await session.execute(delete(BlacklistedToken).where(BlacklistedToken.expires_at < now))
            count = result.rowcount or 0
        logger.info("token_store.purged", count=count, cutoff=now.isoformat())
        return count

    async def remove(self, token: str) -> None:
        """Administrative removal of a blacklist entry."""
        async with self._session_factory() as session, session.begin():
            await session.execute(delete(BlacklistedToken).where(BlacklistedToken.token == token))
        logger.info("token_store.removed")
