from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.engine import Connection


def table_exists(conn: Connection, table_name: str) -> bool:
    return table_name in inspect(conn).get_table_names()
