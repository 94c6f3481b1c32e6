from lumo.cache.facade import (
    CacheMeta,
    CacheResult,
    ComputeCache,
    get_compute_cache,
    get_or_compute_daily_cache,
    get_or_compute_ttl_cache,
    init_compute_cache,
    shutdown_compute_cache,
    stable_hash,
    start_compute_cache,
)
from lumo.cache.locks import LockTimeoutError, LockUnavailableError, advisory_lock_id
from lumo.cache.policies import DailyPolicy, TtlPolicy
from lumo.cache.store import CacheEntry, CacheStore

__all__ = [
    "CacheEntry",
    "CacheMeta",
    "CacheResult",
    "CacheStore",
    "ComputeCache",
    "DailyPolicy",
    "LockTimeoutError",
    "LockUnavailableError",
    "TtlPolicy",
    "advisory_lock_id",
    "get_compute_cache",
    "get_or_compute_daily_cache",
    "get_or_compute_ttl_cache",
    "init_compute_cache",
    "shutdown_compute_cache",
    "stable_hash",
    "start_compute_cache",
]
