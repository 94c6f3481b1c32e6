from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base

TTL_SCOPE = "ttl"
DAILY_SCOPE_PREFIX = "daily:"


class ApiCacheEntry(Base):
    """One cached compute result, unique per (cache_key, scope)."""

    __tablename__ = "api_cache_entries"
    __table_args__ = (Index("ix_api_cache_entries_expires_at", "expires_at"),)

    cache_key: Mapped[str] = mapped_column(Text, primary_key=True)
    scope: Mapped[str] = mapped_column(Text, primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON().with_variant(JSONB(), "postgresql"), nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<ApiCacheEntry {self.cache_key} {self.scope}>"
