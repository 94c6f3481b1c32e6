"""Create api_cache_entries for the compute cache."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.engine import Connection

from lumo.migrations.utils import table_exists

revision = "0001_create_api_cache_entries"
down_revision = None
branch_labels = None
depends_on = None


def upgrade(conn: Connection) -> None:
    if not table_exists(conn, "api_cache_entries"):
        if conn.dialect.name == "postgresql":
            conn.execute(
                sa.text(
                    """
                    CREATE TABLE api_cache_entries (
                        cache_key TEXT NOT NULL,
                        scope TEXT NOT NULL,
                        payload JSONB NOT NULL,
                        expires_at TIMESTAMP WITH TIME ZONE,
                        created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                        updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                        PRIMARY KEY (cache_key, scope)
                    )
                    """
                )
            )
        else:
            conn.execute(
                sa.text(
                    """
                    CREATE TABLE api_cache_entries (
                        cache_key TEXT NOT NULL,
                        scope TEXT NOT NULL,
                        payload JSON NOT NULL,
                        expires_at TIMESTAMP,
                        created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (cache_key, scope)
                    )
                    """
                )
            )

    conn.execute(
        sa.text(
            "CREATE INDEX IF NOT EXISTS ix_api_cache_entries_expires_at "
            "ON api_cache_entries (expires_at)"
        )
    )


def downgrade(conn: Connection) -> None:  # pragma: no cover - rollback helper
    conn.execute(sa.text("DROP INDEX IF EXISTS ix_api_cache_entries_expires_at"))
    conn.execute(sa.text("DROP TABLE IF EXISTS api_cache_entries"))
