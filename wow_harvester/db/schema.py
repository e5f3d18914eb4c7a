"""
SQLite schema DDL for the harvested entities.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is idempotent:
safe to call on an already-initialized database (worker restart, tests).

Every table has a natural-key uniqueness constraint so that a redelivered
job upserts the same row instead of inserting a second one:

  characters        guid
  guilds            guid
  guild_members     (guild_guid, member_id)
  guild_audit_log   (guild_guid, subject_id, action, observed_at)
  leaderboard_runs  (connected_realm_id, dungeon_id, period, ranking)
  market_orders     (order_id, connected_realm_id)
  run_metadata      run_slug
"""

from __future__ import annotations

import logging
import sqlite3

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_CHARACTERS = """
CREATE TABLE IF NOT EXISTS characters (
    guid                TEXT    NOT NULL PRIMARY KEY,
    character_id        INTEGER NOT NULL,
    name                TEXT    NOT NULL,
    realm_slug          TEXT    NOT NULL,
    level               INTEGER,
    faction             TEXT,
    race                TEXT,
    character_class     TEXT,
    active_spec         TEXT,
    guild_guid          TEXT,
    achievement_points  INTEGER,
    average_item_level  INTEGER,
    last_login_at       TEXT,
    updated_at          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_characters_guild
    ON characters(guild_guid)
    WHERE guild_guid IS NOT NULL;
"""

_DDL_GUILDS = """
CREATE TABLE IF NOT EXISTS guilds (
    guid                TEXT    NOT NULL PRIMARY KEY,
    guild_id            INTEGER NOT NULL,
    name                TEXT    NOT NULL,
    realm_slug          TEXT    NOT NULL,
    faction             TEXT,
    member_count        INTEGER,
    achievement_points  INTEGER,
    created_at          TEXT,
    updated_at          TEXT    NOT NULL
);
"""

_DDL_GUILD_MEMBERS = """
CREATE TABLE IF NOT EXISTS guild_members (
    guild_guid  TEXT    NOT NULL REFERENCES guilds(guid) ON DELETE CASCADE,
    member_id   INTEGER NOT NULL,
    rank        INTEGER NOT NULL CHECK (rank >= 0),
    name        TEXT,
    realm_slug  TEXT,
    level       INTEGER,
    PRIMARY KEY (guild_guid, member_id)
);
"""

_DDL_GUILD_AUDIT_LOG = """
CREATE TABLE IF NOT EXISTS guild_audit_log (
    audit_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    guild_guid    TEXT    NOT NULL,
    subject_id    INTEGER NOT NULL,
    subject_name  TEXT,
    action        TEXT    NOT NULL,
    rank_before   INTEGER,
    rank_after    INTEGER,
    observed_at   TEXT    NOT NULL,
    UNIQUE (guild_guid, subject_id, action, observed_at)
);

CREATE INDEX IF NOT EXISTS idx_audit_guild_time
    ON guild_audit_log(guild_guid, observed_at DESC);
"""

_DDL_LEADERBOARD_RUNS = """
CREATE TABLE IF NOT EXISTS leaderboard_runs (
    run_row_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    connected_realm_id  INTEGER NOT NULL,
    dungeon_id          INTEGER NOT NULL,
    period              INTEGER NOT NULL,
    ranking             INTEGER NOT NULL,
    keystone_level      INTEGER NOT NULL,
    duration_ms         INTEGER NOT NULL,
    completed_at        TEXT,
    members_json        TEXT    NOT NULL DEFAULT '[]',
    UNIQUE (connected_realm_id, dungeon_id, period, ranking)
);
"""

_DDL_MARKET_ORDERS = """
CREATE TABLE IF NOT EXISTS market_orders (
    order_id            INTEGER NOT NULL,
    connected_realm_id  INTEGER NOT NULL,
    item_id             INTEGER NOT NULL,
    quantity            INTEGER NOT NULL DEFAULT 1,
    unit_price          INTEGER,
    buyout              INTEGER,
    bid                 INTEGER,
    time_left           TEXT,
    last_seen_at        TEXT    NOT NULL,
    PRIMARY KEY (order_id, connected_realm_id)
);

CREATE INDEX IF NOT EXISTS idx_orders_item
    ON market_orders(item_id, connected_realm_id);
"""

_DDL_RUN_METADATA = """
CREATE TABLE IF NOT EXISTS run_metadata (
    run_id          INTEGER PRIMARY KEY AUTOINCREMENT,
    run_slug        TEXT    NOT NULL UNIQUE,
    pipeline_stage  TEXT    NOT NULL,
    status          TEXT    NOT NULL DEFAULT 'started',
    config_snapshot TEXT    NOT NULL,
    rows_processed  INTEGER NOT NULL DEFAULT 0,
    error_message   TEXT,
    started_at      TEXT    NOT NULL,
    finished_at     TEXT
);
"""

_ALL_DDL = [
    _DDL_CHARACTERS,
    _DDL_GUILDS,
    _DDL_GUILD_MEMBERS,
    _DDL_GUILD_AUDIT_LOG,
    _DDL_LEADERBOARD_RUNS,
    _DDL_MARKET_ORDERS,
    _DDL_RUN_METADATA,
]

ALL_TABLE_NAMES = [
    "characters",
    "guilds",
    "guild_members",
    "guild_audit_log",
    "leaderboard_runs",
    "market_orders",
    "run_metadata",
]


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    for ddl in _ALL_DDL:
        for statement in _split_ddl(ddl):
            conn.execute(statement)
    conn.commit()
    logger.info("Schema applied: %d tables verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return the table names present in the database, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    """Return the explicitly created index names, sorted."""
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' AND name LIKE 'idx_%' ORDER BY name;"
    ).fetchall()
    return [row["name"] for row in rows]
