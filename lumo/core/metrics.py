"""In-process counters for the compute cache.

Counters are per process and feed logs and operator tooling. Every record
is mirrored to the Prometheus series in ``lumo.core.prometheus``, which is
where deployment-wide aggregation happens.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from lumo.core import prometheus as prom

logger = logging.getLogger(__name__)

# Rolling window of compute durations kept for the avg/p95 summary.
COMPUTE_SAMPLE_WINDOW = 1024


@dataclass
class CacheMetrics:
    """Compute cache counters."""

    hits: int = 0
    misses: int = 0
    computes: int = 0
    writes: int = 0
    compute_errors: int = 0
    write_errors: int = 0
    fail_opens: int = 0
    lock_timeouts: int = 0
    compute_ms: deque[float] = field(
        default_factory=lambda: deque(maxlen=COMPUTE_SAMPLE_WINDOW)
    )

    @property
    def hit_rate(self) -> float:
        """Hit rate in percent."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total * 100

    def record_hit(self) -> None:
        self.hits += 1
        prom.CACHE_REQUESTS_TOTAL.labels(outcome="hit").inc()

    def record_miss(self) -> None:
        self.misses += 1
        prom.CACHE_REQUESTS_TOTAL.labels(outcome="miss").inc()

    def record_compute(self, duration_ms: float) -> None:
        self.computes += 1
        self.compute_ms.append(duration_ms)
        prom.CACHE_COMPUTE_DURATION_SECONDS.observe(duration_ms / 1000)

    def record_write(self) -> None:
        self.writes += 1
        prom.CACHE_WRITES_TOTAL.labels(status="ok").inc()

    def record_compute_error(self) -> None:
        self.compute_errors += 1
        prom.CACHE_COMPUTE_ERRORS_TOTAL.inc()

    def record_write_error(self) -> None:
        self.write_errors += 1
        prom.CACHE_WRITES_TOTAL.labels(status="error").inc()

    def record_fail_open(self) -> None:
        self.fail_opens += 1
        prom.CACHE_FAIL_OPEN_TOTAL.inc()

    def record_lock_timeout(self) -> None:
        self.lock_timeouts += 1
        prom.CACHE_LOCK_TIMEOUTS_TOTAL.inc()

    def summary(self) -> dict[str, Any]:
        durations = sorted(self.compute_ms)
        count = len(durations)
        p95_idx = int(count * 0.95)
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hit_rate,
            "computes": self.computes,
            "writes": self.writes,
            "compute_errors": self.compute_errors,
            "write_errors": self.write_errors,
            "fail_opens": self.fail_opens,
            "lock_timeouts": self.lock_timeouts,
            "avg_compute_ms": sum(durations) / count if count else 0.0,
            "p95_compute_ms": (durations[p95_idx] if p95_idx < count else durations[-1]) if count else 0.0,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


_metrics: CacheMetrics | None = None


def get_metrics() -> CacheMetrics:
    """Get the process-wide metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = CacheMetrics()
    return _metrics


def reset_metrics() -> None:
    global _metrics
    _metrics = CacheMetrics()


class PerformanceTimer:
    """
    Context manager measuring wall time of a block.

    Usage:
        with PerformanceTimer() as timer:
            data = await compute()
        metrics.record_compute(timer.elapsed_ms)
    """

    def __init__(self) -> None:
        self.start_time: float = 0.0
        self.end_time: float = 0.0

    def __enter__(self) -> PerformanceTimer:
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.end_time = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self.end_time or time.perf_counter()
        return (end - self.start_time) * 1000


def log_cache_summary(metrics: CacheMetrics | None = None) -> None:
    summary = (metrics or get_metrics()).summary()
    logger.info(
        "Compute cache: hit rate %.2f%%, %s computes, %s fail-opens, %s lock timeouts",
        summary["hit_rate"],
        summary["computes"],
        summary["fail_opens"],
        summary["lock_timeouts"],
    )


__all__ = [
    "CacheMetrics",
    "PerformanceTimer",
    "get_metrics",
    "reset_metrics",
    "log_cache_summary",
]
