"""Daily purge of expired blacklist rows.

Blacklist entries are only needed until the revoked token would have
expired on its own. TokenCleanupScheduler wraps an AsyncIOScheduler with a
single cron job that runs the purge once a day at TOKEN_PURGE_HOUR_UTC.
A failed run is logged and the next day's run still fires.

Exports:
    run_token_purge: One purge pass, never raises.
    TokenCleanupScheduler: Cron wrapper started and stopped by the lifespan.
"""

from __future__ import annotations

from typing import Any

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.scope.core.monitoring import blacklisted_tokens_purged_last_run

logger = structlog.get_logger(__name__)

JOB_ID = "token_cleanup_daily_purge"


async def run_token_purge(token_store: Any) -> int:
    """Run one purge. Returns the number of rows removed, 0 on failure."""
    try:
        count = await token_store.purge_expired()
    except Exception:
        logger.warning("token_cleanup.failed", exc_info=True)
        return 0
    blacklisted_tokens_purged_last_run.set(count)
    logger.info("token_cleanup.completed", purged=count)
    return count


class TokenCleanupScheduler:
    """Cron job purging expired blacklist rows once a day (UTC).

    Args:
        token_store: Anything with an async ``purge_expired()``.
        hour: Hour of day, 0-23, at which the purge fires.
    """

    def __init__(self, token_store: Any, hour: int = 3) -> None:
        self._token_store = token_store
        self._hour = hour
        self._scheduler: AsyncIOScheduler | None = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        """Register the daily job and start the scheduler.

        Must be called with a running event loop. An invalid hour raises
        ValueError before anything is scheduled.
        """
        trigger = CronTrigger(hour=self._hour, minute=0, timezone="UTC")

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self.run_once,
            trigger=trigger,
            id=JOB_ID,
            name="Purge expired blacklisted tokens",
            misfire_grace_time=3600,
            coalesce=True,
            max_instances=1,
        )
        self._scheduler.start()
        self._started = True
        logger.info("token_cleanup.scheduled", hour_utc=self._hour)

    async def run_once(self) -> int:
        return await run_token_purge(self._token_store)

    def get_job(self):
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(JOB_ID)

    def stop(self) -> None:
        """Shut down the scheduler."""
        if self._scheduler and self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("token_cleanup.stopped")


__all__ = ["TokenCleanupScheduler", "run_token_purge"]
