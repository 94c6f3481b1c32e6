from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from lumo.core.env import load_env


PROJECT_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_DATA_DIR = Path.home() / ".lumo" / "data"
DEFAULT_MARKET_TIMEZONE = "America/New_York"


@dataclass(frozen=True)
class Settings:
    environment: str  # development, staging, production, test
    data_dir: Path
    database_url_async: Optional[str]
    database_url_sync: Optional[str]
    sql_echo: bool
    db_pool_size: int
    db_max_overflow: int
    db_pool_timeout: int
    db_pool_recycle: int
    cache_enabled: bool
    cache_lock_timeout_seconds: Optional[float]
    cache_lock_poll_interval: float
    cache_sweep_interval_seconds: int
    market_timezone: str
    log_level: str
    log_json: bool
    log_file: str

    @property
    def database_configured(self) -> bool:
        return bool(self.database_url_async)


def _get_int(name: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_float(name: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw.strip())
    except (TypeError, ValueError):
        return default
    if minimum is not None and value < minimum:
        return default
    return value


def _get_optional_float(name: str, *, minimum: float = 0.0) -> Optional[float]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    if value < minimum:
        return None
    return value


def _get_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


load_env()


def _database_url_from_parts() -> Optional[str]:
    host = (os.getenv("DB_HOST") or "").strip()
    database = (os.getenv("DB_NAME") or "").strip()
    user = os.getenv("DB_USER") or ""
    password = os.getenv("DB_PASSWORD") or ""
    if not host or not database or not user or not password:
        return None
    port = (os.getenv("DB_PORT") or "5432").strip() or "5432"
    return (
        f"postgresql+asyncpg://{quote(user, safe='')}:{quote(password, safe='')}"
        f"@{host}:{port}/{database}"
    )


def split_database_url(raw_url: str) -> tuple[str, str]:
    """Return ``(async_url, sync_url)`` for a configured database URL."""

    url = raw_url.strip()
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]

    # Sync URLs always name psycopg2, the shipped sync driver.
    if url.startswith("postgresql+asyncpg://"):
        return url, url.replace("+asyncpg", "+psycopg2", 1)
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("+psycopg2", "+asyncpg", 1), url
    if url.startswith("postgresql://"):
        rest = url[len("postgresql://"):]
        return "postgresql+asyncpg://" + rest, "postgresql+psycopg2://" + rest
    if url.startswith("sqlite+aiosqlite://"):
        return url, url.replace("sqlite+aiosqlite://", "sqlite://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1), url
    return url, url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    environment = os.getenv("ENVIRONMENT", "development").strip().lower()
    if environment not in {"development", "production", "staging", "test"}:
        environment = "development"

    data_dir_env = (os.getenv("DATA_DIR") or "").strip()
    data_dir = Path(data_dir_env).expanduser() if data_dir_env else DEFAULT_DATA_DIR

    raw_db_url = (os.getenv("DATABASE_URL") or "").strip() or _database_url_from_parts()
    if raw_db_url:
        async_url, sync_url = split_database_url(raw_db_url)
    else:
        async_url = sync_url = None

    market_timezone = (os.getenv("MARKET_TIMEZONE") or "").strip() or DEFAULT_MARKET_TIMEZONE

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    log_json = _get_bool("LOG_JSON", default=False)
    log_file = os.getenv("LOG_FILE", "").strip()

    return Settings(
        environment=environment,
        data_dir=data_dir,
        database_url_async=async_url,
        database_url_sync=sync_url,
        sql_echo=_get_bool("SQL_ECHO", default=False),
        db_pool_size=_get_int("DB_POOL_SIZE", 5, minimum=1),
        db_max_overflow=_get_int("DB_MAX_OVERFLOW", 5, minimum=0),
        db_pool_timeout=_get_int("DB_POOL_TIMEOUT", 30, minimum=1),
        db_pool_recycle=_get_int("DB_POOL_RECYCLE", 1800, minimum=60),
        cache_enabled=_get_bool("CACHE_ENABLED", default=True),
        cache_lock_timeout_seconds=_get_optional_float("CACHE_LOCK_TIMEOUT_SECONDS"),
        cache_lock_poll_interval=_get_float("CACHE_LOCK_POLL_INTERVAL", 0.1, minimum=0.01),
        cache_sweep_interval_seconds=_get_int("CACHE_SWEEP_INTERVAL_SECONDS", 900, minimum=0),
        market_timezone=market_timezone,
        log_level=log_level,
        log_json=log_json,
        log_file=log_file,
    )
