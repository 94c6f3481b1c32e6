"""Read-through compute cache with deployment-wide recompute deduplication.

Callers wrap every expensive or rate-limited operation::

    result = await get_or_compute_ttl_cache(
        "market:assets:v1", 60, fetch_assets
    )
    return result.to_dict()

Flow for a request:
1. Lock-free read; a valid entry is returned immediately.
2. On a miss (or forced refresh) take the lock for ``"<key>:<scope>"``.
3. Re-read inside the lock; a concurrent caller may already have written.
4. Otherwise run ``compute()`` once, write the value back, return it.

When the database cannot be reached the cache fails open and calls
``compute()`` directly, so an outage means "no caching", never "no data".
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from lumo.cache.locks import (
    LockProvider,
    LockTimeoutError,
    LockUnavailableError,
    create_lock_provider,
)
from lumo.cache.policies import CachePolicy, DailyPolicy, TtlPolicy
from lumo.cache.store import CacheEntry, CacheStore, Clock
from lumo.cache.sweeper import CacheSweeper
from lumo.core.bootstrap import ensure_database_ready
from lumo.core.db import check_connection, dispose_async_engine, get_async_engine
from lumo.core.metrics import CacheMetrics, PerformanceTimer, get_metrics, log_cache_summary
from lumo.core.settings import get_settings
from lumo.core.timezone import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")
Compute = Callable[[], Awaitable[T]]


@dataclass(frozen=True)
class CacheMeta:
    hit: bool
    scope: str
    stored_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"hit": self.hit, "scope": self.scope}
        if self.stored_at is not None:
            payload["storedAt"] = self.stored_at.isoformat()
        return payload


@dataclass(frozen=True)
class CacheResult(Generic[T]):
    data: T
    meta: CacheMeta

    def to_dict(self) -> dict[str, Any]:
        return {"data": self.data, "cache": self.meta.to_dict()}


def stable_hash(value: Any) -> str:
    """SHA-256 of the canonical JSON form of ``value``, for building cache keys."""
    encoded = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValueError("Cache key must be a non-empty string")
    return key


class ComputeCache:
    """
    Read-through cache over ``CacheStore`` and a ``LockProvider``.

    Args:
        engine: database engine; ``None`` disables caching entirely
        store: store override (defaults to ``CacheStore(engine)``)
        locks: lock provider override (defaults by engine dialect)
        clock: source of aware UTC "now" shared with the store
        lock_timeout: seconds to wait for the lock before computing
            without it; ``None`` waits indefinitely
    """

    def __init__(
        self,
        engine: Optional[AsyncEngine] = None,
        *,
        store: Optional[CacheStore] = None,
        locks: Optional[LockProvider] = None,
        clock: Clock = utcnow,
        lock_timeout: Optional[float] = None,
        lock_poll_interval: float = 0.1,
        metrics: Optional[CacheMetrics] = None,
    ):
        if store is None and engine is not None:
            store = CacheStore(engine, clock=clock)
        if locks is None and store is not None:
            locks = create_lock_provider(store.engine, poll_interval=lock_poll_interval)
        self._store = store
        self._locks = locks
        self._clock = clock
        self._lock_timeout = lock_timeout
        self.metrics = metrics or get_metrics()

    @property
    def enabled(self) -> bool:
        return self._store is not None and self._locks is not None

    @property
    def store(self) -> Optional[CacheStore]:
        return self._store

    async def check_health(self) -> bool:
        if self._store is None:
            return False
        return await check_connection(self._store.engine)

    async def get_or_compute_ttl(
        self,
        key: str,
        ttl_seconds: int,
        compute: Compute[T],
        *,
        force_refresh: bool = False,
    ) -> CacheResult[T]:
        return await self.get_or_compute(
            key, TtlPolicy(ttl_seconds), compute, force_refresh=force_refresh
        )

    async def get_or_compute_daily(
        self,
        key: str,
        date_et: str,
        compute: Compute[T],
        *,
        force_refresh: bool = False,
    ) -> CacheResult[T]:
        return await self.get_or_compute(
            key, DailyPolicy(date_et), compute, force_refresh=force_refresh
        )

    async def get_or_compute(
        self,
        key: str,
        policy: CachePolicy,
        compute: Compute[T],
        *,
        force_refresh: bool = False,
    ) -> CacheResult[T]:
        _validate_key(key)
        scope = policy.scope
        log_extra = {"cache_key": key, "scope": scope}

        if not self.enabled:
            data = await self._run_compute(key, scope, compute)
            return CacheResult(data, CacheMeta(hit=False, scope=scope))

        requested_at = self._clock()

        if not force_refresh:
            cached = await self._store.get(key, scope)
            if cached.is_failure():
                logger.warning(
                    "Cache read failed, computing without cache: %s", cached.error, extra=log_extra
                )
                return await self._fail_open(key, scope, compute)
            entry = cached.unwrap()
            if entry is not None:
                return self._hit(entry, log_extra)

        lock_name = f"{key}:{scope}"
        entered = False
        try:
            async with self._locks.hold(lock_name, timeout=self._lock_timeout) as conn:
                entered = True
                return await self._locked_refresh(
                    key,
                    policy,
                    compute,
                    force_refresh=force_refresh,
                    requested_at=requested_at,
                    connection=conn,
                )
        except LockTimeoutError as exc:
            if entered:
                raise
            self.metrics.record_lock_timeout()
            logger.warning(
                "Lock wait timed out after %.2fs, computing without lock",
                exc.timeout,
                extra=log_extra,
            )
            return await self._compute_and_store(key, policy, compute)
        except LockUnavailableError as exc:
            if entered:
                raise
            logger.warning(
                "Cache lock unavailable, computing without cache: %s", exc, extra=log_extra
            )
            return await self._fail_open(key, scope, compute)

    async def _locked_refresh(
        self,
        key: str,
        policy: CachePolicy,
        compute: Compute[T],
        *,
        force_refresh: bool,
        requested_at: datetime,
        connection: Optional[AsyncConnection] = None,
    ) -> CacheResult[T]:
        scope = policy.scope
        log_extra = {"cache_key": key, "scope": scope}

        cached = await self._store.get(key, scope, include_expired=True, connection=connection)
        if cached.is_failure():
            logger.warning(
                "Cache re-read failed under lock, computing without cache: %s",
                cached.error,
                extra=log_extra,
            )
            return await self._fail_open(key, scope, compute)

        entry = cached.unwrap()
        if policy.accepts(
            entry, now=self._clock(), requested_at=requested_at, force_refresh=force_refresh
        ):
            return self._hit(entry, log_extra)

        return await self._compute_and_store(key, policy, compute, connection=connection)

    async def _compute_and_store(
        self,
        key: str,
        policy: CachePolicy,
        compute: Compute[T],
        *,
        connection: Optional[AsyncConnection] = None,
    ) -> CacheResult[T]:
        scope = policy.scope
        data = await self._run_compute(key, scope, compute)

        options = policy.write_options(self._clock())
        stored = await self._store.put(
            key,
            scope,
            data,
            expires_at=options.expires_at,
            supersede_daily_scopes=options.supersede_daily_scopes,
            connection=connection,
        )
        if stored.is_failure():
            self.metrics.record_write_error()
            logger.warning(
                "Cache write failed, returning uncached value: %s",
                stored.error,
                extra={"cache_key": key, "scope": scope},
            )
            return CacheResult(data, CacheMeta(hit=False, scope=scope))

        self.metrics.record_write()
        return CacheResult(data, CacheMeta(hit=False, scope=scope, stored_at=stored.unwrap()))

    async def _fail_open(self, key: str, scope: str, compute: Compute[T]) -> CacheResult[T]:
        self.metrics.record_fail_open()
        data = await self._run_compute(key, scope, compute)
        return CacheResult(data, CacheMeta(hit=False, scope=scope))

    async def _run_compute(self, key: str, scope: str, compute: Compute[T]) -> T:
        self.metrics.record_miss()
        with PerformanceTimer() as timer:
            try:
                data = await compute()
            except Exception as exc:
                self.metrics.record_compute_error()
                logger.warning(
                    "Cache compute failed: %s",
                    exc,
                    extra={"cache_key": key, "scope": scope, "duration_ms": round(timer.elapsed_ms, 1)},
                )
                raise
        self.metrics.record_compute(timer.elapsed_ms)
        logger.info(
            "Computed %s (%s) in %.1fms",
            key,
            scope,
            timer.elapsed_ms,
            extra={"cache_key": key, "scope": scope, "duration_ms": round(timer.elapsed_ms, 1)},
        )
        return data

    def _hit(self, entry: CacheEntry, log_extra: dict[str, str]) -> CacheResult[Any]:
        self.metrics.record_hit()
        logger.debug("Cache hit", extra=log_extra)
        return CacheResult(
            entry.payload,
            CacheMeta(hit=True, scope=entry.scope, stored_at=entry.updated_at),
        )


# Process-wide instances
_compute_cache: Optional[ComputeCache] = None
_sweeper: Optional[CacheSweeper] = None


def init_compute_cache(engine: Optional[AsyncEngine] = None) -> ComputeCache:
    """
    Build the process-wide cache from settings.

    Args:
        engine: engine override; defaults to the configured database engine

    Returns:
        The initialized cache (disabled when no database is configured)
    """
    global _compute_cache
    settings = get_settings()
    if not settings.cache_enabled:
        engine = None
        logger.info("Compute cache disabled by CACHE_ENABLED")
    elif engine is None:
        engine = get_async_engine()
        if engine is None:
            logger.warning("No database configured; compute cache runs without caching")

    _compute_cache = ComputeCache(
        engine,
        lock_timeout=settings.cache_lock_timeout_seconds,
        lock_poll_interval=settings.cache_lock_poll_interval,
    )
    return _compute_cache


def get_compute_cache() -> ComputeCache:
    if _compute_cache is None:
        return init_compute_cache()
    return _compute_cache


async def start_compute_cache(engine: Optional[AsyncEngine] = None) -> ComputeCache:
    """
    Application startup hook.

    Applies pending migrations to the configured database, builds the
    process-wide cache and starts the expired-row sweeper. An explicit
    ``engine`` is assumed to be migrated by its owner. A database that is
    unreachable at startup does not fail the hook; each cache call then
    fails open until it comes back.
    """
    global _sweeper
    settings = get_settings()
    if engine is None and settings.cache_enabled:
        try:
            await ensure_database_ready()
        except Exception as exc:
            logger.warning(
                "Cache schema migration failed, cache calls will compute directly "
                "until the database is reachable: %s",
                exc,
            )

    cache = init_compute_cache(engine)
    if cache.store is not None and settings.cache_sweep_interval_seconds > 0:
        _sweeper = CacheSweeper(
            cache.store, interval_seconds=settings.cache_sweep_interval_seconds
        )
        _sweeper.start()
    return cache


async def shutdown_compute_cache() -> None:
    global _compute_cache, _sweeper
    if _sweeper is not None:
        await _sweeper.shutdown()
        _sweeper = None
    if _compute_cache is not None:
        log_cache_summary(_compute_cache.metrics)
    _compute_cache = None
    await dispose_async_engine()


async def get_or_compute_ttl_cache(
    key: str,
    ttl_seconds: int,
    compute: Compute[T],
    *,
    force_refresh: bool = False,
) -> CacheResult[T]:
    return await get_compute_cache().get_or_compute_ttl(
        key, ttl_seconds, compute, force_refresh=force_refresh
    )


async def get_or_compute_daily_cache(
    key: str,
    date_et: str,
    compute: Compute[T],
    *,
    force_refresh: bool = False,
) -> CacheResult[T]:
    return await get_compute_cache().get_or_compute_daily(
        key, date_et, compute, force_refresh=force_refresh
    )


__all__ = [
    "CacheMeta",
    "CacheResult",
    "ComputeCache",
    "stable_hash",
    "init_compute_cache",
    "get_compute_cache",
    "start_compute_cache",
    "shutdown_compute_cache",
    "get_or_compute_ttl_cache",
    "get_or_compute_daily_cache",
]
