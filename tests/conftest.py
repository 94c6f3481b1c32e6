import os
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

# Deterministic environment: no database unless a test builds its own engine.
TEST_ENV = {
    "ENVIRONMENT": "test",
    "DATABASE_URL": "",
    "CACHE_ENABLED": "true",
    "MARKET_TIMEZONE": "America/New_York",
    "LOG_LEVEL": "DEBUG",
}

for key, value in TEST_ENV.items():
    os.environ[key] = value
for key in ("DB_HOST", "DB_NAME", "DB_USER", "DB_PASSWORD", "CACHE_LOCK_TIMEOUT_SECONDS"):
    os.environ.pop(key, None)

from lumo.cache.store import CacheStore
from lumo.core.db import build_async_engine
from lumo.core.metrics import CacheMetrics
from lumo.migrations.runner import upgrade_to_head


class FakeClock:
    """Manually advanced UTC clock shared by the store and the facade."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(scope="session", autouse=True)
def _reset_settings_cache():
    from lumo.core import settings as settings_module

    settings_module.get_settings.cache_clear()
    yield
    settings_module.get_settings.cache_clear()


@pytest.fixture
def sqlite_urls(tmp_path):
    path = tmp_path / "cache.db"
    return f"sqlite+aiosqlite:///{path}", f"sqlite:///{path}"


@pytest_asyncio.fixture
async def engine(sqlite_urls):
    async_url, sync_url = sqlite_urls
    upgrade_to_head(sync_url)
    engine = build_async_engine(async_url)
    yield engine
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 2, 14, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(engine, clock):
    return CacheStore(engine, clock=clock)


@pytest.fixture
def metrics():
    return CacheMetrics()
