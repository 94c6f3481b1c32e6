"""Deployment-wide mutual exclusion for cache recomputation.

PostgreSQL session-level advisory locks give exclusion across every process
that shares the database. The lock belongs to the database session, so a
crashed holder (or a dropped connection) releases it automatically.

Dialects without advisory locks get ``LocalLock``, which only excludes
callers inside one process.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL bigint is signed; lock ids are reduced into [0, 2**63 - 1).
_MAX_SIGNED_BIGINT = (1 << 63) - 1


class LockUnavailableError(Exception):
    """The lock could not be acquired because the database is unreachable."""

    def __init__(self, name: str, original_exception: Optional[BaseException] = None):
        self.name = name
        self.original_exception = original_exception
        detail = f": {original_exception}" if original_exception else ""
        super().__init__(f"Lock '{name}' unavailable{detail}")


class LockTimeoutError(Exception):
    """The lock was still held by someone else when the wait deadline passed."""

    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.2f}s waiting for lock '{name}'")


def advisory_lock_id(name: str) -> int:
    """Map a lock name to a stable id accepted by ``pg_advisory_lock``.

    Takes the first 8 bytes of the SHA-256 digest as an unsigned integer and
    reduces it modulo ``2**63 - 1``. Every process derives the same id.
    """
    digest = hashlib.sha256(name.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % _MAX_SIGNED_BIGINT


class LockProvider(Protocol):
    def hold(
        self, name: str, *, timeout: Optional[float] = None
    ) -> AsyncContextManager[Optional[AsyncConnection]]: ...

    async def with_lock(
        self, name: str, fn: Callable[[], Awaitable[T]], *, timeout: Optional[float] = None
    ) -> T: ...


class _LockProviderBase:
    async def with_lock(
        self,
        name: str,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``fn`` while holding the lock named ``name``."""
        async with self.hold(name, timeout=timeout):
            return await fn()


class PostgresAdvisoryLock(_LockProviderBase):
    """Session-scoped ``pg_advisory_lock`` on a dedicated pooled connection."""

    def __init__(self, engine: AsyncEngine, *, poll_interval: float = 0.1):
        self._engine = engine
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def hold(
        self, name: str, *, timeout: Optional[float] = None
    ) -> AsyncIterator[Optional[AsyncConnection]]:
        """
        Hold the advisory lock for ``name`` for the duration of the block.

        Yields the connection that owns the lock. Work done inside the block
        should run on it rather than check out a second pooled connection.

        Raises:
            LockUnavailableError: the connection or lock query failed
            LockTimeoutError: ``timeout`` elapsed before the lock was granted

        Exceptions raised inside the block propagate unchanged; the lock is
        released on every exit path.
        """
        lock_id = advisory_lock_id(name)
        try:
            conn = await self._engine.connect()
        except Exception as exc:
            raise LockUnavailableError(name, exc) from exc

        try:
            await self._acquire(conn, name, lock_id, timeout)
        except LockTimeoutError:
            await conn.close()
            raise
        except BaseException as exc:
            # Also covers cancellation mid-wait: the lock may have been granted
            # server-side, so the session is dropped instead of pooled.
            await conn.invalidate()
            await conn.close()
            if isinstance(exc, Exception):
                raise LockUnavailableError(name, exc) from exc
            raise

        try:
            yield conn
        finally:
            await self._release(conn, name, lock_id)

    async def _acquire(
        self,
        conn: AsyncConnection,
        name: str,
        lock_id: int,
        timeout: Optional[float],
    ) -> None:
        params = {"lock_id": lock_id}
        if timeout is None:
            await conn.execute(text("SELECT pg_advisory_lock(:lock_id)"), params)
        else:
            loop = asyncio.get_running_loop()
            deadline = loop.time() + timeout
            while True:
                granted = (
                    await conn.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), params)
                ).scalar()
                if granted:
                    break
                remaining = deadline - loop.time()
                if remaining <= 0:
                    await conn.rollback()
                    raise LockTimeoutError(name, timeout)
                await asyncio.sleep(min(self._poll_interval, remaining))
        # The lock is session level; end the implicit transaction so the
        # connection is not left idle in transaction while the body runs.
        await conn.commit()
        logger.debug("Advisory lock acquired", extra={"lock_id": lock_id})

    async def _release(self, conn: AsyncConnection, name: str, lock_id: int) -> None:
        try:
            await conn.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": lock_id})
            await conn.commit()
        except Exception as exc:
            # A pooled connection must never go back still holding the lock;
            # dropping it ends the session and frees the lock server-side.
            logger.warning(
                "Failed to release advisory lock '%s', invalidating connection: %s",
                name,
                exc,
                extra={"lock_id": lock_id},
            )
            await conn.invalidate()
        finally:
            await conn.close()


class LocalLock(_LockProviderBase):
    """Process-local stand-in keyed by the same lock ids.

    Used for SQLite, which has no advisory locks. Only callers in this
    process are excluded from each other. Yields ``None``: there is no
    lock-owning connection, so callers use pooled sessions.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}

    @asynccontextmanager
    async def hold(
        self, name: str, *, timeout: Optional[float] = None
    ) -> AsyncIterator[Optional[AsyncConnection]]:
        lock_id = advisory_lock_id(name)
        lock = self._locks.setdefault(lock_id, asyncio.Lock())
        self._waiters[lock_id] = self._waiters.get(lock_id, 0) + 1
        try:
            if timeout is None:
                await lock.acquire()
            else:
                try:
                    await asyncio.wait_for(lock.acquire(), timeout)
                except asyncio.TimeoutError as exc:
                    raise LockTimeoutError(name, timeout) from exc
            try:
                yield None
            finally:
                lock.release()
        finally:
            self._waiters[lock_id] -= 1
            if self._waiters[lock_id] == 0:
                del self._waiters[lock_id]
                self._locks.pop(lock_id, None)


def create_lock_provider(engine: AsyncEngine, *, poll_interval: float = 0.1) -> LockProvider:
    """Pick the lock implementation matching the engine's dialect."""
    if engine.dialect.name == "postgresql":
        return PostgresAdvisoryLock(engine, poll_interval=poll_interval)
    logger.warning(
        "Dialect %s has no advisory locks; cache recomputation is only "
        "deduplicated within this process",
        engine.dialect.name,
    )
    return LocalLock()


__all__ = [
    "LockUnavailableError",
    "LockTimeoutError",
    "LockProvider",
    "PostgresAdvisoryLock",
    "LocalLock",
    "advisory_lock_id",
    "create_lock_provider",
]
