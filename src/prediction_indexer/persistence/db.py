"""Database engine construction: PostgreSQL in production, SQLite WAL for local runs.

Usage:
    engine = create_db_engine("postgresql://...")
    create_tables(engine)
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine as SAEngine

from prediction_indexer.persistence.schema import metadata

log = logging.getLogger("idx.persistence")


def _set_sqlite_wal(dbapi_conn, connection_record):
    """Enable WAL mode so the listener's upserts don't block crawler transactions."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_db_engine(
    url: str,
    pool_size: int = 10,
    max_overflow: int = 5,
    pool_timeout: float = 20.0,
) -> SAEngine:
    """Build a pooled engine. Does not connect."""
    if url.startswith("sqlite"):
        db_file = url.split("sqlite:///", 1)[-1]
        if db_file and db_file != url and not db_file.startswith(":memory:"):
            Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, pool_pre_ping=True)
        event.listen(engine, "connect", _set_sqlite_wal)
        return engine

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
        pool_recycle=1800,
    )


def create_tables(engine: SAEngine) -> list[str]:
    """Create any missing tables. Returns the table names known to the schema."""
    metadata.create_all(engine)
    log.info("DB │ schema ensured (%d tables)", len(metadata.tables))
    return sorted(metadata.tables)
