"""Reference-zone calendar helpers used to build daily cache scopes."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from lumo.core.settings import DEFAULT_MARKET_TIMEZONE, get_settings

__all__ = [
    "InvalidTimezoneError",
    "validate_timezone_name",
    "ensure_timezone",
    "ensure_aware_utc",
    "utcnow",
    "date_string_in_timezone",
    "market_date_string",
    "validate_calendar_date",
]

_CALENDAR_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class InvalidTimezoneError(ValueError):
    """Raised when a provided timezone identifier cannot be resolved."""


def validate_timezone_name(tz_name: Optional[str]) -> str:
    candidate = (tz_name or "").strip()
    if not candidate:
        raise InvalidTimezoneError("Timezone must be provided")
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezoneError(f"Invalid timezone: {candidate}") from exc
    return candidate


def ensure_timezone(tz_name: Optional[str]) -> ZoneInfo:
    return ZoneInfo(validate_timezone_name(tz_name))


def ensure_aware_utc(dt: datetime) -> datetime:
    """Treat naive values as UTC (SQLite drops tzinfo) and convert to UTC."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def date_string_in_timezone(moment: datetime, tz_name: str) -> str:
    """Return ``YYYY-MM-DD`` for ``moment`` as seen in ``tz_name``."""

    zone = ensure_timezone(tz_name)
    return ensure_aware_utc(moment).astimezone(zone).date().isoformat()


def market_date_string(moment: Optional[datetime] = None) -> str:
    """Today's trading calendar date in the configured market timezone.

    Every server instance gets the same answer regardless of its local zone,
    which is what makes ``daily:<date>`` scopes agree across the deployment.
    """

    tz_name = get_settings().market_timezone or DEFAULT_MARKET_TIMEZONE
    return date_string_in_timezone(moment or utcnow(), tz_name)


def validate_calendar_date(value: str) -> str:
    """Return ``value`` if it is a real ``YYYY-MM-DD`` date, else raise ValueError."""

    text = (value or "").strip() if isinstance(value, str) else ""
    if not _CALENDAR_DATE_RE.match(text):
        raise ValueError(f"Expected a YYYY-MM-DD date, got {value!r}")
    date.fromisoformat(text)
    return text
