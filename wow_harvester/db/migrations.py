"""
Sequential schema migrations.

  1. A ``schema_versions`` table tracks applied migration ids.
  2. Each migration is a function taking a ``sqlite3.Connection``.
  3. ``run_migrations()`` applies the ones not yet recorded, in insertion order.

The base schema comes from ``apply_schema()``; migrations carry only the
incremental changes made after a database was first created.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _applied_versions(conn: sqlite3.Connection) -> set[str]:
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row["version_id"] for row in rows}


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table});").fetchall()}


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_baseline(conn: sqlite3.Connection) -> None:
    """Anchor the version history; the baseline tables come from apply_schema()."""


def migration_0002_audit_subject_name(conn: sqlite3.Connection) -> None:
    """Databases created before audit rows carried the member's display name."""
    if "subject_name" not in _columns(conn, "guild_audit_log"):
        conn.execute("ALTER TABLE guild_audit_log ADD COLUMN subject_name TEXT;")
    conn.commit()


def migration_0003_character_item_level(conn: sqlite3.Connection) -> None:
    """Add ``average_item_level`` to characters if missing."""
    if "average_item_level" not in _columns(conn, "characters"):
        conn.execute("ALTER TABLE characters ADD COLUMN average_item_level INTEGER;")
    conn.commit()


# ── Registry ──────────────────────────────────────────────────────────────────

MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_baseline": (migration_0001_baseline, "Baseline"),
    "0002_audit_subject_name": (
        migration_0002_audit_subject_name,
        "Add subject_name to guild_audit_log",
    ),
    "0003_character_item_level": (
        migration_0003_character_item_level,
        "Add average_item_level to characters",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Args:
        conn: An open ``sqlite3.Connection`` with the base schema applied.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            continue
        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            conn.execute(
                "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
                (version_id, description),
            )
            conn.commit()
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    if count:
        logger.info("Applied %d migration(s).", count)
    return count
