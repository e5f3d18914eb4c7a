"""
Repositories for guilds, their membership rows and the roster audit log.

``guild_members`` is the last persisted roster per guild, keyed by the
stable ``member_id``; the roster diff compares a fresh fetch against it.
Audit inserts use ``INSERT OR IGNORE`` on ``(guild_guid, subject_id,
action, observed_at)`` so replaying the same diff adds nothing.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Optional

from wow_harvester.db.repositories.base import BaseRepository
from wow_harvester.models.guild import AuditAction, AuditLogEntry, Guild, RosterMember
from wow_harvester.utils.time_utils import isoformat_or_none

_GUILD_FILTER_COLUMNS = frozenset({"name", "realm_slug", "guild_id", "faction"})


class GuildRepository(BaseRepository):
    """Read/write access to the ``guilds`` table."""

    def upsert(self, guild: Guild) -> None:
        self.execute(
            """
            INSERT INTO guilds (
                guid, guild_id, name, realm_slug, faction,
                member_count, achievement_points, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(guid) DO UPDATE SET
                guild_id           = excluded.guild_id,
                name               = excluded.name,
                realm_slug         = excluded.realm_slug,
                faction            = excluded.faction,
                member_count       = excluded.member_count,
                achievement_points = excluded.achievement_points,
                created_at         = excluded.created_at,
                updated_at         = excluded.updated_at;
            """,
            (
                guild.guid,
                guild.guild_id,
                guild.name,
                guild.realm_slug,
                guild.faction,
                guild.member_count,
                guild.achievement_points,
                isoformat_or_none(guild.created_at),
                guild.updated_at.isoformat(),
            ),
        )

    def get(self, guid: str) -> Optional[Guild]:
        row = self.fetchone("SELECT * FROM guilds WHERE guid = ?;", (guid,))
        return _row_to_guild(row) if row else None

    def exists(self, guid: str) -> bool:
        return self.fetchone("SELECT 1 FROM guilds WHERE guid = ?;", (guid,)) is not None

    def find_by(self, limit: Optional[int] = None, **filters: Any) -> list[Guild]:
        """Guilds matching every ``column=value`` filter, ordered by guid."""
        rows = self.select_where("guilds", filters, _GUILD_FILTER_COLUMNS, "guid", limit)
        return [_row_to_guild(r) for r in rows]

    def stalest(self, limit: int = 1000) -> list[Guild]:
        """Guilds ordered by ``updated_at`` ascending, for refresh sweeps."""
        rows = self.fetchall(
            "SELECT * FROM guilds ORDER BY updated_at ASC, guid ASC LIMIT ?;",
            (limit,),
        )
        return [_row_to_guild(r) for r in rows]

    def count(self) -> int:
        return self.count_rows("guilds")


class GuildMemberRepository(BaseRepository):
    """Read/write access to ``guild_members``."""

    def roster(self, guild_guid: str) -> dict[int, RosterMember]:
        """Persisted roster for ``guild_guid`` keyed by ``member_id``."""
        rows = self.fetchall(
            "SELECT * FROM guild_members WHERE guild_guid = ? ORDER BY member_id;",
            (guild_guid,),
        )
        return {
            r["member_id"]: RosterMember(
                member_id=r["member_id"],
                rank=r["rank"],
                name=r["name"],
                realm_slug=r["realm_slug"],
                level=r["level"],
            )
            for r in rows
        }

    def upsert_many(self, guild_guid: str, members: Iterable[RosterMember]) -> int:
        params = [(guild_guid, m.member_id, m.rank, m.name, m.realm_slug, m.level) for m in members]
        if not params:
            return 0
        self.executemany(
            """
            INSERT INTO guild_members (guild_guid, member_id, rank, name, realm_slug, level)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_guid, member_id) DO UPDATE SET
                rank       = excluded.rank,
                name       = excluded.name,
                realm_slug = excluded.realm_slug,
                level      = excluded.level;
            """,
            params,
        )
        return len(params)

    def remove_many(self, guild_guid: str, member_ids: Iterable[int]) -> int:
        params = [(guild_guid, mid) for mid in member_ids]
        if not params:
            return 0
        self.executemany(
            "DELETE FROM guild_members WHERE guild_guid = ? AND member_id = ?;",
            params,
        )
        return len(params)

    def count(self, guild_guid: Optional[str] = None) -> int:
        if guild_guid is None:
            return self.count_rows("guild_members")
        return self.count_rows("guild_members", "guild_guid = ?", (guild_guid,))


class AuditLogRepository(BaseRepository):
    """Append-only access to ``guild_audit_log``."""

    def insert_many(self, entries: Iterable[AuditLogEntry]) -> int:
        """Insert audit rows, ignoring ones already recorded.

        Returns:
            Number of rows actually inserted.
        """
        inserted = 0
        for e in entries:
            cur = self.execute(
                """
                INSERT OR IGNORE INTO guild_audit_log (
                    guild_guid, subject_id, subject_name, action,
                    rank_before, rank_after, observed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    e.group_id,
                    e.subject_id,
                    e.subject_name,
                    e.action.value,
                    e.before,
                    e.after,
                    e.observed_at.isoformat(),
                ),
            )
            inserted += cur.rowcount
        return inserted

    def for_guild(self, guild_guid: str, limit: int = 500) -> list[AuditLogEntry]:
        rows = self.fetchall(
            """
            SELECT * FROM guild_audit_log
            WHERE guild_guid = ?
            ORDER BY observed_at DESC, audit_id ASC
            LIMIT ?;
            """,
            (guild_guid, limit),
        )
        return [_row_to_entry(r) for r in rows]

    def count(self, guild_guid: Optional[str] = None) -> int:
        if guild_guid is None:
            return self.count_rows("guild_audit_log")
        return self.count_rows("guild_audit_log", "guild_guid = ?", (guild_guid,))


# ── Private helpers ────────────────────────────────────────────────────────────

def _row_to_guild(row: sqlite3.Row) -> Guild:
    return Guild(
        guid=row["guid"],
        guild_id=row["guild_id"],
        name=row["name"],
        realm_slug=row["realm_slug"],
        faction=row["faction"],
        member_count=row["member_count"],
        achievement_points=row["achievement_points"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_entry(row: sqlite3.Row) -> AuditLogEntry:
    return AuditLogEntry(
        subject_id=row["subject_id"],
        group_id=row["guild_guid"],
        action=AuditAction(row["action"]),
        before=row["rank_before"],
        after=row["rank_after"],
        observed_at=datetime.fromisoformat(row["observed_at"]),
        subject_name=row["subject_name"],
    )
