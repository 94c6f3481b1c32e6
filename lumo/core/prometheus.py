"""Prometheus metrics for the compute cache.

Labels stay low-cardinality: outcomes only, never cache keys.
"""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

CACHE_REQUESTS_TOTAL = Counter(
    "compute_cache_requests_total",
    "Compute cache lookups by outcome (hit or miss).",
    labelnames=("outcome",),
)

CACHE_WRITES_TOTAL = Counter(
    "compute_cache_writes_total",
    "Compute cache write-backs by status (ok or error).",
    labelnames=("status",),
)

CACHE_COMPUTE_ERRORS_TOTAL = Counter(
    "compute_cache_compute_errors_total",
    "compute() calls that raised.",
)

CACHE_FAIL_OPEN_TOTAL = Counter(
    "compute_cache_fail_open_total",
    "Requests served by computing directly because the store or lock was unavailable.",
)

CACHE_LOCK_TIMEOUTS_TOTAL = Counter(
    "compute_cache_lock_timeouts_total",
    "Lock waits that hit the deadline and computed without the lock.",
)

CACHE_COMPUTE_DURATION_SECONDS = Histogram(
    "compute_cache_compute_duration_seconds",
    "Wall time of successful compute() calls in seconds.",
    buckets=(
        0.005,
        0.01,
        0.025,
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        30.0,
        60.0,
    ),
)

# Ensure labelled series exist before the first observation.
for _outcome in ("hit", "miss"):
    CACHE_REQUESTS_TOTAL.labels(outcome=_outcome)
for _status in ("ok", "error"):
    CACHE_WRITES_TOTAL.labels(status=_status)


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for a ``/metrics`` endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST


__all__ = [
    "CACHE_REQUESTS_TOTAL",
    "CACHE_WRITES_TOTAL",
    "CACHE_COMPUTE_ERRORS_TOTAL",
    "CACHE_FAIL_OPEN_TOTAL",
    "CACHE_LOCK_TIMEOUTS_TOTAL",
    "CACHE_COMPUTE_DURATION_SECONDS",
    "render_latest",
]
