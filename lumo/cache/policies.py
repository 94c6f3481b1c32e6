"""Freshness policies for the compute cache.

A policy names the scope an entry lives in, decides whether a stored entry
may be served, and says how a freshly computed value is written back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from lumo.cache.store import CacheEntry
from lumo.core.timezone import validate_calendar_date
from lumo.domain.models import DAILY_SCOPE_PREFIX, TTL_SCOPE


@dataclass(frozen=True)
class WriteOptions:
    expires_at: Optional[datetime]
    supersede_daily_scopes: bool


class CachePolicy(ABC):
    scope: str

    @abstractmethod
    def write_options(self, now: datetime) -> WriteOptions:
        ...

    def accepts(
        self,
        entry: Optional[CacheEntry],
        *,
        now: datetime,
        requested_at: datetime,
        force_refresh: bool,
    ) -> bool:
        """Decide whether ``entry`` can be returned instead of computing.

        An entry written at or after ``requested_at`` was produced by a
        concurrent caller while this one waited for the lock, so it is served
        even for forced refreshes and zero TTLs. Otherwise a forced refresh
        never accepts, and a normal read accepts any unexpired entry.
        """
        if entry is None:
            return False
        if entry.updated_at >= requested_at:
            return True
        if force_refresh:
            return False
        return not entry.is_expired(now)


class TtlPolicy(CachePolicy):
    """Entries stay valid for ``ttl_seconds`` after they are written."""

    scope = TTL_SCOPE

    def __init__(self, ttl_seconds: int):
        if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int):
            raise ValueError(f"ttl_seconds must be an integer, got {ttl_seconds!r}")
        if ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {ttl_seconds}")
        self.ttl_seconds = ttl_seconds

    def write_options(self, now: datetime) -> WriteOptions:
        return WriteOptions(
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            supersede_daily_scopes=False,
        )

    def __repr__(self) -> str:
        return f"TtlPolicy(ttl_seconds={self.ttl_seconds})"


class DailyPolicy(CachePolicy):
    """One entry per calendar day; writing a new day supersedes older days.

    ``date_et`` is the caller's already-normalized date in the market
    timezone (see ``lumo.core.timezone.market_date_string``).
    """

    def __init__(self, date_et: str):
        self.date_et = validate_calendar_date(date_et)
        self.scope = f"{DAILY_SCOPE_PREFIX}{self.date_et}"

    def write_options(self, now: datetime) -> WriteOptions:
        return WriteOptions(expires_at=None, supersede_daily_scopes=True)

    def __repr__(self) -> str:
        return f"DailyPolicy(date_et={self.date_et!r})"


__all__ = ["CachePolicy", "TtlPolicy", "DailyPolicy", "WriteOptions"]
