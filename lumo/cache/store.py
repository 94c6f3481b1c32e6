"""Durable storage of compute cache entries.

Rows live in ``api_cache_entries`` so every process in the deployment sees the
same values. Database trouble is reported through the Result pattern; the
facade decides whether to degrade.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Optional

from sqlalchemy import and_, delete, func, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker

from lumo.cache.locks import advisory_lock_id
from lumo.core.result import DatabaseError, Result, failure, success
from lumo.core.timezone import ensure_aware_utc, utcnow
from lumo.domain.models import DAILY_SCOPE_PREFIX, TTL_SCOPE, ApiCacheEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def daily_supersede_lock_id(key: str) -> int:
    """Transaction lock id shared by every daily write of ``key``."""
    return advisory_lock_id(f"{key}:{DAILY_SCOPE_PREFIX}supersede")


@dataclass(frozen=True)
class CacheEntry:
    """Detached snapshot of an ``api_cache_entries`` row."""

    key: str
    scope: str
    payload: Any
    expires_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


def _snapshot(row: ApiCacheEntry) -> CacheEntry:
    return CacheEntry(
        key=row.cache_key,
        scope=row.scope,
        payload=row.payload,
        expires_at=ensure_aware_utc(row.expires_at) if row.expires_at is not None else None,
        created_at=ensure_aware_utc(row.created_at),
        updated_at=ensure_aware_utc(row.updated_at),
    )


class CacheStore:
    """Repository over ``api_cache_entries``."""

    def __init__(self, engine: AsyncEngine, *, clock: Clock = utcnow):
        self._engine = engine
        self._clock = clock
        self._session_factory = async_sessionmaker(
            bind=engine,
            expire_on_commit=False,
            class_=AsyncSession,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def _session(
        self, connection: Optional[AsyncConnection] = None
    ) -> AsyncIterator[AsyncSession]:
        # A lock holder passes its own connection so the critical section
        # never needs a second pooled connection.
        if connection is not None:
            session = AsyncSession(bind=connection, expire_on_commit=False)
        else:
            session = self._session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    def _insert_factory(self):
        return pg_insert if self._engine.dialect.name == "postgresql" else sqlite_insert

    async def get(
        self,
        key: str,
        scope: str,
        *,
        include_expired: bool = False,
        connection: Optional[AsyncConnection] = None,
    ) -> Result[Optional[CacheEntry], DatabaseError]:
        """
        Read the entry for ``(key, scope)``.

        Expired rows are never deleted here; a caller still waiting on the
        lock must be able to re-read what the holder just wrote. The sweeper
        removes them.

        Args:
            include_expired: return an expired row as-is instead of as a miss
            connection: run on this connection (the lock holder's) instead of
                a pooled session

        Returns:
            Success(None) when no row exists or the row has expired,
            Success(entry) for a live row, Failure on database errors.
        """
        try:
            async with self._session(connection) as session:
                row = await session.get(ApiCacheEntry, (key, scope))
                entry = _snapshot(row) if row is not None else None
        except Exception as e:
            return failure(
                DatabaseError(
                    operation="CacheStore.get",
                    message=str(e),
                    original_exception=e,
                )
            )

        if entry is not None and not include_expired and entry.is_expired(self._clock()):
            return success(None)
        return success(entry)

    async def put(
        self,
        key: str,
        scope: str,
        payload: Any,
        *,
        expires_at: Optional[datetime] = None,
        supersede_daily_scopes: bool = False,
        connection: Optional[AsyncConnection] = None,
    ) -> Result[datetime, DatabaseError]:
        """
        Upsert the entry for ``(key, scope)``.

        With ``supersede_daily_scopes`` and a ``daily:`` scope, every other
        daily row of the same key is deleted in the same transaction. On
        PostgreSQL such writes are serialized per key with a transaction
        advisory lock, so two dates written at once cannot both survive.

        Returns:
            Result with the stored timestamp (the row's new ``updated_at``)
        """
        now = self._clock()
        supersede = supersede_daily_scopes and scope.startswith(DAILY_SCOPE_PREFIX)
        try:
            async with self._session(connection) as session:
                async with session.begin():
                    if supersede and self._engine.dialect.name == "postgresql":
                        await session.execute(
                            text("SELECT pg_advisory_xact_lock(:lock_id)"),
                            {"lock_id": daily_supersede_lock_id(key)},
                        )

                    stmt = self._insert_factory()(ApiCacheEntry).values(
                        cache_key=key,
                        scope=scope,
                        payload=payload,
                        expires_at=expires_at,
                        created_at=now,
                        updated_at=now,
                    )
                    stmt = stmt.on_conflict_do_update(
                        index_elements=["cache_key", "scope"],
                        set_={
                            "payload": stmt.excluded.payload,
                            "expires_at": stmt.excluded.expires_at,
                            "updated_at": stmt.excluded.updated_at,
                        },
                    )
                    await session.execute(stmt)

                    if supersede:
                        result = await session.execute(
                            delete(ApiCacheEntry).where(
                                ApiCacheEntry.cache_key == key,
                                ApiCacheEntry.scope.like(f"{DAILY_SCOPE_PREFIX}%"),
                                ApiCacheEntry.scope != scope,
                            )
                        )
                        if result.rowcount:
                            logger.info(
                                "Superseded %s older daily cache entries",
                                result.rowcount,
                                extra={"cache_key": key, "scope": scope},
                            )
            return success(now)
        except Exception as e:
            return failure(
                DatabaseError(
                    operation="CacheStore.put",
                    message=str(e),
                    original_exception=e,
                )
            )

    async def delete_expired(self, now: Optional[datetime] = None) -> Result[int, DatabaseError]:
        """Delete every TTL row whose ``expires_at`` has passed."""
        cutoff = now or self._clock()
        try:
            async with self._session() as session:
                result = await session.execute(
                    delete(ApiCacheEntry).where(
                        and_(
                            ApiCacheEntry.expires_at.is_not(None),
                            ApiCacheEntry.expires_at <= cutoff,
                        )
                    )
                )
                await session.commit()
                return success(result.rowcount or 0)
        except Exception as e:
            return failure(
                DatabaseError(
                    operation="CacheStore.delete_expired",
                    message=str(e),
                    original_exception=e,
                )
            )

    async def purge(self, key: Optional[str] = None) -> Result[int, DatabaseError]:
        """Delete all entries, or all entries of one key."""
        stmt = delete(ApiCacheEntry)
        if key is not None:
            stmt = stmt.where(ApiCacheEntry.cache_key == key)
        try:
            async with self._session() as session:
                result = await session.execute(stmt)
                await session.commit()
                return success(result.rowcount or 0)
        except Exception as e:
            return failure(
                DatabaseError(
                    operation="CacheStore.purge",
                    message=str(e),
                    original_exception=e,
                )
            )

    async def count_by_scope_kind(self) -> Result[dict[str, int], DatabaseError]:
        """Row counts split into ``ttl`` and ``daily`` entries."""
        try:
            async with self._session() as session:
                rows = await session.execute(
                    select(ApiCacheEntry.scope, func.count()).group_by(ApiCacheEntry.scope)
                )
                counts = {"ttl": 0, "daily": 0}
                for scope, count in rows:
                    kind = "ttl" if scope == TTL_SCOPE else "daily"
                    counts[kind] += count
                return success(counts)
        except Exception as e:
            return failure(
                DatabaseError(
                    operation="CacheStore.count_by_scope_kind",
                    message=str(e),
                    original_exception=e,
                )
            )


__all__ = ["CacheEntry", "CacheStore", "daily_supersede_lock_id"]
