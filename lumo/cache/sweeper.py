"""Periodic removal of expired TTL entries.

Reads already treat expired rows as misses, so sweeping only keeps the table
small; the ``expires_at`` index makes the delete cheap.
"""

from __future__ import annotations

import logging
from typing import Optional

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lumo.cache.store import CacheStore

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "compute-cache-sweep"


def create_scheduler() -> AsyncIOScheduler:
    return AsyncIOScheduler(jobstores={"default": MemoryJobStore()}, timezone="UTC")


class CacheSweeper:
    """Runs ``CacheStore.delete_expired`` on an APScheduler interval job."""

    def __init__(
        self,
        store: CacheStore,
        *,
        scheduler: Optional[AsyncIOScheduler] = None,
        interval_seconds: int = 900,
    ) -> None:
        self._store = store
        self._scheduler = scheduler or create_scheduler()
        self._interval_seconds = interval_seconds

    @property
    def scheduler(self) -> AsyncIOScheduler:
        return self._scheduler

    def start(self) -> None:
        if self._interval_seconds <= 0:
            logger.info("Cache sweeper disabled (interval %s)", self._interval_seconds)
            return
        self._scheduler.add_job(
            self.sweep_once,
            "interval",
            seconds=self._interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        if not self._scheduler.running:
            self._scheduler.start()

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def sweep_once(self) -> int:
        result = await self._store.delete_expired()
        if result.is_failure():
            logger.warning("Cache sweep failed: %s", result.error)
            return 0
        removed = result.unwrap()
        if removed:
            logger.info("Cache sweep removed %s expired entries", removed)
        return removed


__all__ = ["CacheSweeper", "create_scheduler", "SWEEP_JOB_ID"]
