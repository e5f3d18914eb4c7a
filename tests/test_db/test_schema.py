"""Tests for SQLite schema — idempotency, migrations, FK enforcement."""

from __future__ import annotations

import sqlite3

import pytest

from wow_harvester.db.connection import get_connection
from wow_harvester.db.migrations import MIGRATIONS, run_migrations
from wow_harvester.db.schema import (
    ALL_TABLE_NAMES,
    apply_schema,
    get_existing_indexes,
    get_existing_tables,
)


class TestApplySchema:
    def test_all_tables_created(self, in_memory_db):
        tables = get_existing_tables(in_memory_db)
        for expected_table in ALL_TABLE_NAMES:
            assert expected_table in tables, (
                f"Expected table '{expected_table}' not found in database. "
                f"Found: {tables}"
            )
        assert "schema_versions" in tables

    def test_idempotent_double_apply(self, in_memory_db):
        """apply_schema() called twice must not raise errors."""
        apply_schema(in_memory_db)
        assert len(get_existing_tables(in_memory_db)) >= len(ALL_TABLE_NAMES)

    def test_key_indexes_created(self, in_memory_db):
        indexes = get_existing_indexes(in_memory_db)
        for idx in ("idx_characters_guild", "idx_audit_guild_time", "idx_orders_item"):
            assert idx in indexes, f"Expected index '{idx}' not found. Found: {indexes}"


class TestMigrations:
    def test_fixture_applied_everything(self, in_memory_db):
        rows = in_memory_db.execute("SELECT version_id FROM schema_versions;").fetchall()
        assert {r["version_id"] for r in rows} == set(MIGRATIONS)

    def test_rerun_applies_nothing(self, in_memory_db):
        assert run_migrations(in_memory_db) == 0

    def test_fresh_database_applies_all(self):
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        try:
            apply_schema(conn)
            assert run_migrations(conn) == len(MIGRATIONS) == 3
            assert run_migrations(conn) == 0
        finally:
            conn.close()

    def test_legacy_audit_table_gains_column(self):
        conn = sqlite3.connect(":memory:")
        conn.row_factory = sqlite3.Row
        try:
            conn.execute(
                """
                CREATE TABLE guild_audit_log (
                    audit_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    guild_guid TEXT NOT NULL,
                    subject_id INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    rank_before INTEGER,
                    rank_after INTEGER,
                    observed_at TEXT NOT NULL,
                    UNIQUE (guild_guid, subject_id, action, observed_at)
                );
                """
            )
            apply_schema(conn)
            run_migrations(conn)
            cols = [row[1] for row in conn.execute("PRAGMA table_info(guild_audit_log);").fetchall()]
            assert "subject_name" in cols
        finally:
            conn.close()


class TestForeignKeyEnforcement:
    def test_fk_enforcement_is_on(self, in_memory_db):
        row = in_memory_db.execute("PRAGMA foreign_keys;").fetchone()
        assert row[0] == 1, "PRAGMA foreign_keys should be 1 (enabled)"

    def test_member_needs_guild(self, in_memory_db):
        with pytest.raises(sqlite3.IntegrityError):
            in_memory_db.execute(
                "INSERT INTO guild_members (guild_guid, member_id, rank) VALUES ('ghost@x', 1, 0);"
            )

    def test_deleting_guild_cascades(self, db, sample_guild, sample_roster):
        db.guilds.upsert(sample_guild)
        db.members.upsert_many(sample_guild.guid, sample_roster.values())
        db.conn.execute("DELETE FROM guilds WHERE guid = ?;", (sample_guild.guid,))
        assert db.members.count() == 0


class TestConnection:
    def test_file_connection_settings(self, tmp_path):
        path = tmp_path / "nested" / "harvest.db"
        with get_connection(str(path)) as conn:
            assert conn.execute("PRAGMA foreign_keys;").fetchone()[0] == 1
            assert conn.execute("PRAGMA journal_mode;").fetchone()[0].lower() == "wal"
        assert path.exists()
