"""
SQLite connections shared by workers, sweeps and the CLI.

Every connection is opened through ``connect()``:
  - ``foreign_keys`` on, so roster rows cannot outlive their guild.
  - ``busy_timeout`` so concurrent worker processes wait instead of failing.
  - WAL journal for file databases; sweeps read while workers write.
  - ``sqlite3.Row`` rows.

``get_connection()`` wraps it for one unit of work::

    with get_connection("data/db/wow_harvester.db") as conn:
        apply_schema(conn)
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


def connect(db_path: str, *, wal_mode: bool = True, busy_timeout_ms: int = 5000) -> sqlite3.Connection:
    """Open and configure a connection; the caller closes it.

    Parent directories of a file database are created on demand.
    """
    in_memory = db_path == MEMORY_DB
    if not in_memory:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row
    # pragmas before any DDL
    conn.execute("PRAGMA foreign_keys = ON;")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
    if wal_mode and not in_memory:
        mode = conn.execute("PRAGMA journal_mode = WAL;").fetchone()[0]
        logger.debug("Opened %s (journal_mode=%s)", db_path, mode)
    return conn


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Yield a configured connection; commit on clean exit, roll back on error.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened.
    """
    conn = connect(db_path, wal_mode=wal_mode, busy_timeout_ms=busy_timeout_ms)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
