"""Minimal migration runner inspired by Alembic.

Migration modules live in ``lumo.migrations.versions``. Each exposes
``revision`` and ``down_revision`` identifiers plus ``upgrade`` and
``downgrade`` callables taking a synchronous SQLAlchemy connection. The
applied revision is tracked in the ``alembic_version`` table so the schema
can later be handed over to Alembic proper.
"""

from __future__ import annotations

import importlib
import logging
import pkgutil
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import List, Optional, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine

from lumo.core.settings import get_settings

logger = logging.getLogger(__name__)

MIGRATIONS_PACKAGE = "lumo.migrations.versions"
VERSION_TABLE = "alembic_version"
VERSION_COLUMN = "version_num"


@dataclass(frozen=True)
class MigrationModule:
    revision: str
    down_revision: Optional[str]
    module: ModuleType


def _discover_migrations() -> List[MigrationModule]:
    package = importlib.import_module(MIGRATIONS_PACKAGE)
    package_path = Path(package.__file__).resolve().parent
    modules: List[MigrationModule] = []

    for module_info in pkgutil.iter_modules([str(package_path)]):
        if module_info.ispkg or module_info.name.startswith("_"):
            continue
        module = importlib.import_module(f"{MIGRATIONS_PACKAGE}.{module_info.name}")
        revision = getattr(module, "revision", None)
        if revision is None:
            raise RuntimeError(f"Migration {module_info.name} is missing 'revision'")
        modules.append(
            MigrationModule(
                revision=revision,
                down_revision=getattr(module, "down_revision", None),
                module=module,
            )
        )

    modules.sort(key=lambda item: item.revision)

    previous_revision: Optional[str] = None
    for migration in modules:
        if migration.down_revision != previous_revision:
            raise RuntimeError(
                "Migrations are out of order: "
                f"{migration.revision} declares down_revision={migration.down_revision!r}, "
                f"expected {previous_revision!r}."
            )
        previous_revision = migration.revision

    return modules


def _ensure_version_storage(conn: Connection) -> None:
    conn.execute(
        text(
            f"CREATE TABLE IF NOT EXISTS {VERSION_TABLE} "
            f"({VERSION_COLUMN} VARCHAR(64) PRIMARY KEY)"
        )
    )


def _read_revision(conn: Connection) -> Optional[str]:
    row = conn.execute(text(f"SELECT {VERSION_COLUMN} FROM {VERSION_TABLE} LIMIT 1")).first()
    return row[0] if row else None


def _write_revision(conn: Connection, revision: str) -> None:
    conn.execute(text(f"DELETE FROM {VERSION_TABLE}"))
    conn.execute(
        text(f"INSERT INTO {VERSION_TABLE} ({VERSION_COLUMN}) VALUES (:revision)"),
        {"revision": revision},
    )


def _pending(migrations: Sequence[MigrationModule], current: Optional[str]) -> Sequence[MigrationModule]:
    if current is None:
        return migrations
    for index, item in enumerate(migrations):
        if item.revision == current:
            return migrations[index + 1:]
    raise RuntimeError(f"Database is at unknown migration revision {current!r}.")


def _resolve_engine(engine_or_url: Engine | str | None) -> tuple[Engine, bool]:
    if isinstance(engine_or_url, Engine):
        return engine_or_url, False
    url = engine_or_url or get_settings().database_url_sync
    if not url:
        raise RuntimeError("No database configured. Set DATABASE_URL or DB_HOST/DB_NAME/DB_USER/DB_PASSWORD.")
    return create_engine(url, future=True), True


def upgrade_to_head(engine_or_url: Engine | str | None = None) -> Optional[str]:
    """Apply pending migrations; return the revision the database ends at."""

    migrations = _discover_migrations()
    engine, should_dispose = _resolve_engine(engine_or_url)
    try:
        with engine.begin() as conn:
            _ensure_version_storage(conn)
            current = _read_revision(conn)
            for migration in _pending(migrations, current):
                upgrade = getattr(migration.module, "upgrade", None)
                if upgrade is None:
                    raise RuntimeError(f"Migration {migration.revision} is missing upgrade()")
                logger.info("Applying migration %s", migration.revision)
                upgrade(conn)
                _write_revision(conn, migration.revision)
                current = migration.revision
            return current
    finally:
        if should_dispose:
            engine.dispose()


def current_revision(engine_or_url: Engine | str | None = None) -> Optional[str]:
    engine, should_dispose = _resolve_engine(engine_or_url)
    try:
        with engine.begin() as conn:
            _ensure_version_storage(conn)
            return _read_revision(conn)
    finally:
        if should_dispose:
            engine.dispose()
