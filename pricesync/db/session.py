"""Database engine helpers."""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql.schema import Table

DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/pricesync"


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    return create_engine(url, pool_pre_ping=True, future=True)


def dialect_insert(conn: Connection, table: Table):
    """Insert construct that supports ``on_conflict_do_*`` for the bound dialect."""
    if conn.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif conn.dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:  # pragma: no cover - unsupported backend
        raise NotImplementedError(f"Upserts not supported on {conn.dialect.name}")
    return insert(table)
