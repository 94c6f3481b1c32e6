"""Operator commands for the compute cache table."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from lumo.cache.store import CacheStore
from lumo.core.bootstrap import ensure_database_ready
from lumo.core.db import check_connection, dispose_async_engine, get_async_engine
from lumo.core.logging import configure_logging
from lumo.core.metrics import get_metrics


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage the compute cache table")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("migrate", help="Apply pending database migrations")
    sub.add_parser("sweep", help="Delete expired TTL entries")
    purge = sub.add_parser("purge", help="Delete cached entries to force a cold start")
    purge.add_argument("--key", default=None, help="Only purge this cache key")
    sub.add_parser("stats", help="Show entry counts and connectivity")
    return parser


async def run(args: argparse.Namespace, store: Optional[CacheStore] = None) -> int:
    if args.command == "migrate":
        return 0 if await ensure_database_ready() else 1

    if store is None:
        engine = get_async_engine()
        if engine is None:
            print("No database configured (set DATABASE_URL)", file=sys.stderr)
            return 1
        store = CacheStore(engine)

    if args.command == "sweep":
        result = await store.delete_expired()
        if result.is_failure():
            print(str(result.error), file=sys.stderr)
            return 1
        print(f"Removed {result.unwrap()} expired entries")
        return 0

    if args.command == "purge":
        result = await store.purge(args.key)
        if result.is_failure():
            print(str(result.error), file=sys.stderr)
            return 1
        target = f"key {args.key!r}" if args.key else "all keys"
        print(f"Purged {result.unwrap()} entries for {target}")
        return 0

    counts = await store.count_by_scope_kind()
    report = {
        "database_reachable": await check_connection(store.engine),
        "entries": counts.unwrap_or(None),
        "process_metrics": get_metrics().summary(),
    }
    print(json.dumps(report, indent=2, default=str))
    return 0 if counts.is_success() else 1


async def _main(argv: Optional[Sequence[str]]) -> int:
    args = build_parser().parse_args(argv)
    try:
        return await run(args)
    finally:
        await dispose_async_engine()


def main(argv: Optional[Sequence[str]] = None) -> int:
    configure_logging()
    return asyncio.run(_main(argv))


__all__ = ["build_parser", "run", "main"]
