import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from lumo.cache import facade as facade_module
from lumo.cache.facade import (
    CacheMeta,
    CacheResult,
    ComputeCache,
    get_or_compute_daily_cache,
    get_or_compute_ttl_cache,
    init_compute_cache,
    shutdown_compute_cache,
    stable_hash,
    start_compute_cache,
)
from lumo.cache.locks import LocalLock, PostgresAdvisoryLock
from lumo.cache.store import CacheStore
from lumo.core.db import build_async_engine
from lumo.core.result import DatabaseError, failure, success
from lumo.core.timezone import utcnow


class CountingCompute:
    def __init__(self, values=None, delay=0.0):
        self.calls = 0
        self._values = values
        self._delay = delay

    async def __call__(self):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._values is None:
            return {"call": self.calls}
        value = self._values[self.calls - 1]
        if isinstance(value, Exception):
            raise value
        return value


@pytest.fixture
def cache(store, clock, metrics):
    return ComputeCache(store=store, locks=LocalLock(), clock=clock, metrics=metrics)


@pytest.fixture
def live_cache(engine, metrics):
    return ComputeCache(engine, clock=utcnow, metrics=metrics)


@pytest.fixture
def reset_global_cache(monkeypatch):
    monkeypatch.setattr(facade_module, "_compute_cache", None)
    monkeypatch.setattr(facade_module, "_sweeper", None)
    yield
    facade_module._compute_cache = None
    facade_module._sweeper = None


@pytest.mark.asyncio
async def test_miss_computes_stores_and_then_hits(cache, clock, metrics):
    compute = CountingCompute()

    first = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)
    second = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)

    assert compute.calls == 1
    assert first.data == {"call": 1}
    assert first.meta == CacheMeta(hit=False, scope="ttl", stored_at=clock())
    assert second.data == {"call": 1}
    assert second.meta == CacheMeta(hit=True, scope="ttl", stored_at=clock())
    assert metrics.hits == 1
    assert metrics.misses == 1
    assert metrics.writes == 1


@pytest.mark.asyncio
async def test_concurrent_misses_compute_once(live_cache):
    compute = CountingCompute(delay=0.05)

    results = await asyncio.gather(
        *(live_cache.get_or_compute_ttl("market:assets:v1", 60, compute) for _ in range(10))
    )

    assert compute.calls == 1
    assert all(result.data == {"call": 1} for result in results)
    assert sum(1 for result in results if not result.meta.hit) == 1


@pytest.mark.asyncio
async def test_ttl_entry_recomputed_once_expired(cache, clock):
    compute = CountingCompute()

    await cache.get_or_compute_ttl("market:movers:v1", 60, compute)
    clock.advance(59)
    still_cached = await cache.get_or_compute_ttl("market:movers:v1", 60, compute)
    clock.advance(1)
    refreshed = await cache.get_or_compute_ttl("market:movers:v1", 60, compute)

    assert still_cached.meta.hit is True
    assert refreshed.meta.hit is False
    assert refreshed.data == {"call": 2}
    assert compute.calls == 2


@pytest.mark.asyncio
async def test_zero_ttl_always_recomputes_sequential_calls(cache, clock):
    compute = CountingCompute()

    for _ in range(3):
        result = await cache.get_or_compute_ttl("market:quotes:v1", 0, compute)
        assert result.meta.hit is False
        clock.advance(0.001)

    assert compute.calls == 3


@pytest.mark.asyncio
async def test_zero_ttl_still_deduplicates_concurrent_calls(live_cache):
    compute = CountingCompute(delay=0.05)

    results = await asyncio.gather(
        *(live_cache.get_or_compute_ttl("market:quotes:v1", 0, compute) for _ in range(5))
    )

    assert compute.calls == 1
    assert {result.data["call"] for result in results} == {1}


@pytest.mark.asyncio
async def test_force_refresh_recomputes_and_overwrites(cache, store, clock):
    compute = CountingCompute()
    await cache.get_or_compute_ttl("market:assets:v1", 60, compute)

    clock.advance(1)
    forced = await cache.get_or_compute_ttl("market:assets:v1", 60, compute, force_refresh=True)
    after = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)

    assert forced.meta.hit is False
    assert forced.data == {"call": 2}
    assert after.meta.hit is True
    assert after.data == {"call": 2}
    assert (await store.get("market:assets:v1", "ttl")).unwrap().payload == {"call": 2}


@pytest.mark.asyncio
async def test_concurrent_forced_refreshes_share_one_compute(live_cache):
    compute = CountingCompute(delay=0.05)

    results = await asyncio.gather(
        *(
            live_cache.get_or_compute_ttl("market:assets:v1", 60, compute, force_refresh=True)
            for _ in range(5)
        )
    )

    assert compute.calls == 1
    assert sum(1 for result in results if result.meta.hit) == 4


@pytest.mark.asyncio
async def test_daily_entries_are_reused_within_the_day(cache):
    compute = CountingCompute()

    first = await cache.get_or_compute_daily("ai:brief:v1", "2024-01-02", compute)
    second = await cache.get_or_compute_daily("ai:brief:v1", "2024-01-02", compute)

    assert compute.calls == 1
    assert first.meta.scope == "daily:2024-01-02"
    assert second.meta.hit is True


@pytest.mark.asyncio
async def test_new_day_supersedes_previous_daily_entry(cache, store):
    compute = CountingCompute()

    await cache.get_or_compute_daily("ai:brief:v1", "2024-01-01", compute)
    await cache.get_or_compute_daily("ai:brief:v1", "2024-01-02", compute)

    assert (await store.get("ai:brief:v1", "daily:2024-01-01")).unwrap() is None
    assert (await store.get("ai:brief:v1", "daily:2024-01-02")).unwrap().payload == {"call": 2}


@pytest.mark.asyncio
async def test_daily_and_ttl_scopes_of_one_key_are_independent(cache):
    compute = CountingCompute()

    await cache.get_or_compute_daily("ai:brief:v1", "2024-01-02", compute)
    ttl = await cache.get_or_compute_ttl("ai:brief:v1", 60, compute)

    assert ttl.meta.hit is False
    assert compute.calls == 2


@pytest.mark.asyncio
async def test_compute_error_propagates_and_writes_nothing(cache, store, metrics):
    compute = CountingCompute(values=[RuntimeError("upstream 503"), {"ok": True}])

    with pytest.raises(RuntimeError, match="upstream 503"):
        await cache.get_or_compute_ttl("market:assets:v1", 60, compute)

    assert (await store.get("market:assets:v1", "ttl")).unwrap() is None
    assert metrics.compute_errors == 1

    retried = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)
    assert retried.data == {"ok": True}
    assert compute.calls == 2


@pytest.mark.asyncio
async def test_waiter_computes_after_holder_fails(live_cache):
    compute = CountingCompute(values=[RuntimeError("upstream 503"), {"ok": True}], delay=0.02)

    results = await asyncio.gather(
        live_cache.get_or_compute_ttl("market:assets:v1", 60, compute),
        live_cache.get_or_compute_ttl("market:assets:v1", 60, compute),
        return_exceptions=True,
    )

    errors = [result for result in results if isinstance(result, RuntimeError)]
    values = [result for result in results if isinstance(result, CacheResult)]
    assert compute.calls == 2
    assert len(errors) == 1
    assert [value.data for value in values] == [{"ok": True}]


@pytest.mark.asyncio
async def test_unreachable_database_fails_open(tmp_path, metrics):
    engine = build_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'cache.db'}")
    cache = ComputeCache(engine, metrics=metrics)
    compute = CountingCompute()
    try:
        first = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)
        second = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)
    finally:
        await engine.dispose()

    assert first.data == {"call": 1}
    assert second.data == {"call": 2}
    assert first.meta == CacheMeta(hit=False, scope="ttl")
    assert metrics.fail_opens == 2


@pytest.mark.asyncio
async def test_unavailable_lock_fails_open_without_writing(store, clock, metrics):
    broken_engine = MagicMock()
    broken_engine.connect = AsyncMock(side_effect=OSError("connection refused"))
    cache = ComputeCache(
        store=store,
        locks=PostgresAdvisoryLock(broken_engine),
        clock=clock,
        metrics=metrics,
    )

    result = await cache.get_or_compute_ttl("market:assets:v1", 60, CountingCompute())

    assert result.data == {"call": 1}
    assert result.meta.stored_at is None
    assert metrics.fail_opens == 1
    assert (await store.get("market:assets:v1", "ttl")).unwrap() is None


@pytest.mark.asyncio
async def test_write_failure_still_returns_value(clock, metrics):
    store = MagicMock(spec=CacheStore)
    store.get = AsyncMock(return_value=success(None))
    store.put = AsyncMock(
        return_value=failure(DatabaseError(operation="CacheStore.put", message="disk full"))
    )
    cache = ComputeCache(store=store, locks=LocalLock(), clock=clock, metrics=metrics)

    result = await cache.get_or_compute_ttl("market:assets:v1", 60, CountingCompute())

    assert result.data == {"call": 1}
    assert result.meta == CacheMeta(hit=False, scope="ttl")
    assert metrics.write_errors == 1


@pytest.mark.asyncio
async def test_lock_timeout_computes_without_lock_and_stores(store, clock, metrics):
    locks = LocalLock()
    cache = ComputeCache(store=store, locks=locks, clock=clock, lock_timeout=0.02, metrics=metrics)
    compute = CountingCompute()

    async with locks.hold("market:assets:v1:ttl"):
        result = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)

    assert result.data == {"call": 1}
    assert result.meta.stored_at == clock()
    assert metrics.lock_timeouts == 1
    assert (await store.get("market:assets:v1", "ttl")).unwrap().payload == {"call": 1}


@pytest.mark.asyncio
async def test_disabled_cache_always_computes(metrics):
    cache = ComputeCache(metrics=metrics)
    compute = CountingCompute()

    first = await cache.get_or_compute_ttl("market:assets:v1", 60, compute)
    second = await cache.get_or_compute_daily("ai:brief:v1", "2024-01-02", compute)

    assert cache.enabled is False
    assert compute.calls == 2
    assert first.meta == CacheMeta(hit=False, scope="ttl")
    assert second.meta == CacheMeta(hit=False, scope="daily:2024-01-02")
    assert await cache.check_health() is False


@pytest.mark.asyncio
async def test_check_health_against_live_database(live_cache):
    assert await live_cache.check_health() is True


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "call",
    [
        lambda cache, compute: cache.get_or_compute_ttl("", 60, compute),
        lambda cache, compute: cache.get_or_compute_ttl("market:assets:v1", -1, compute),
        lambda cache, compute: cache.get_or_compute_ttl("market:assets:v1", 1.5, compute),
        lambda cache, compute: cache.get_or_compute_daily("ai:brief:v1", "2024-1-2", compute),
        lambda cache, compute: cache.get_or_compute_daily("ai:brief:v1", "2024-02-30", compute),
    ],
)
async def test_invalid_arguments_are_rejected_before_compute(cache, call):
    compute = CountingCompute()

    with pytest.raises(ValueError):
        await call(cache, compute)

    assert compute.calls == 0


def test_cache_result_serializes_for_api_responses():
    stored_at = datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc)
    result = CacheResult({"spy": 450.1}, CacheMeta(hit=True, scope="ttl", stored_at=stored_at))

    assert result.to_dict() == {
        "data": {"spy": 450.1},
        "cache": {"hit": True, "scope": "ttl", "storedAt": "2024-01-02T14:30:00+00:00"},
    }
    assert CacheMeta(hit=False, scope="ttl").to_dict() == {"hit": False, "scope": "ttl"}


def test_stable_hash_ignores_key_order():
    assert stable_hash({"a": 1, "b": [1, 2]}) == stable_hash({"b": [1, 2], "a": 1})
    assert stable_hash({"a": 1}) != stable_hash({"a": 2})
    assert len(stable_hash("x")) == 64


@pytest.mark.asyncio
async def test_module_level_helpers_use_process_cache(engine, reset_global_cache):
    init_compute_cache(engine)
    compute = CountingCompute()

    first = await get_or_compute_ttl_cache("market:assets:v1", 60, compute)
    second = await get_or_compute_ttl_cache("market:assets:v1", 60, compute)
    daily = await get_or_compute_daily_cache("ai:brief:v1", "2024-01-02", compute)

    assert first.meta.hit is False
    assert second.meta.hit is True
    assert daily.meta.scope == "daily:2024-01-02"
    assert compute.calls == 2


@pytest.mark.asyncio
async def test_init_without_database_runs_uncached(reset_global_cache):
    cache = init_compute_cache()
    compute = CountingCompute()

    await get_or_compute_ttl_cache("market:assets:v1", 60, compute)
    await get_or_compute_ttl_cache("market:assets:v1", 60, compute)

    assert cache.enabled is False
    assert compute.calls == 2


@pytest.mark.asyncio
async def test_cache_enabled_false_disables_caching(engine, monkeypatch, reset_global_cache):
    from lumo.core.settings import get_settings

    monkeypatch.setenv("CACHE_ENABLED", "false")
    get_settings.cache_clear()
    try:
        cache = init_compute_cache(engine)
    finally:
        get_settings.cache_clear()

    assert cache.enabled is False


@pytest.mark.asyncio
async def test_start_and_shutdown_manage_sweeper(engine, reset_global_cache):
    from lumo.cache.sweeper import SWEEP_JOB_ID

    cache = await start_compute_cache(engine)
    sweeper = facade_module._sweeper

    assert cache.enabled is True
    assert sweeper is not None
    assert sweeper.scheduler.get_job(SWEEP_JOB_ID) is not None

    await shutdown_compute_cache()

    assert facade_module._sweeper is None
    assert facade_module._compute_cache is None
    assert not sweeper.scheduler.running


class ReaderAfterWriteStore(CacheStore):
    """Store where another caller's lock-free read lands right after every write."""

    async def put(self, key, scope, payload, **kwargs):
        result = await super().put(key, scope, payload, **kwargs)
        await self.get(key, scope)
        return result


@pytest.mark.asyncio
async def test_zero_ttl_waiters_reuse_value_despite_interleaved_reader(engine, metrics):
    store = ReaderAfterWriteStore(engine, clock=utcnow)
    cache = ComputeCache(store=store, locks=LocalLock(), clock=utcnow, metrics=metrics)
    compute = CountingCompute(delay=0.05)

    results = await asyncio.gather(
        *(cache.get_or_compute_ttl("market:quotes:v1", 0, compute) for _ in range(5))
    )

    assert compute.calls == 1
    assert {result.data["call"] for result in results} == {1}


class ConnectionLock(LocalLock):
    """Local lock that hands out a fixed lock-owning connection."""

    def __init__(self, connection):
        super().__init__()
        self.connection = connection

    @asynccontextmanager
    async def hold(self, name, *, timeout=None):
        async with super().hold(name, timeout=timeout):
            yield self.connection


@pytest.mark.asyncio
async def test_critical_section_runs_on_lock_connection(clock, metrics):
    lock_connection = object()
    store = MagicMock(spec=CacheStore)
    store.get = AsyncMock(return_value=success(None))
    store.put = AsyncMock(return_value=success(clock()))
    cache = ComputeCache(
        store=store, locks=ConnectionLock(lock_connection), clock=clock, metrics=metrics
    )

    await cache.get_or_compute_ttl("market:assets:v1", 60, CountingCompute())

    fast_read, locked_read = store.get.await_args_list
    assert "connection" not in fast_read.kwargs
    assert locked_read.kwargs["connection"] is lock_connection
    assert store.put.await_args.kwargs["connection"] is lock_connection


@pytest.mark.asyncio
async def test_start_with_unreachable_database_fails_open(tmp_path, monkeypatch, reset_global_cache):
    from lumo.core import bootstrap, db
    from lumo.core.settings import get_settings

    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'missing' / 'cache.db'}")
    monkeypatch.setattr(bootstrap, "_bootstrap_complete", False)
    monkeypatch.setattr(db, "_async_engine", None)
    get_settings.cache_clear()
    try:
        cache = await start_compute_cache()
        result = await get_or_compute_ttl_cache("market:assets:v1", 60, CountingCompute())
    finally:
        await shutdown_compute_cache()
        get_settings.cache_clear()

    assert cache.enabled is True
    assert result.data == {"call": 1}
    assert result.meta == CacheMeta(hit=False, scope="ttl")
