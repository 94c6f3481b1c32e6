"""Startup helpers ensuring the cache schema exists."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from lumo.core.settings import get_settings
from lumo.migrations import upgrade_to_head

logger = logging.getLogger(__name__)

_bootstrap_lock = asyncio.Lock()
_bootstrap_complete = False


async def ensure_database_ready(sync_url: Optional[str] = None) -> bool:
    """Apply pending migrations once per process.

    Returns False without touching anything when no database is configured.
    """

    global _bootstrap_complete
    if _bootstrap_complete:
        return True

    async with _bootstrap_lock:
        if _bootstrap_complete:
            return True

        url = sync_url or get_settings().database_url_sync
        if not url:
            logger.warning("No database configured; skipping cache schema migrations")
            return False

        logger.info("Applying database migrations")
        revision = await asyncio.to_thread(upgrade_to_head, url)
        _bootstrap_complete = True
        logger.info("Database ready at revision %s", revision)
        return True


__all__ = ["ensure_database_ready"]
