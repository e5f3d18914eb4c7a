"""Repository for ``characters``."""

from __future__ import annotations

import sqlite3
from datetime import datetime
from typing import Any, Optional

from wow_harvester.db.repositories.base import BaseRepository
from wow_harvester.models.character import Character
from wow_harvester.utils.time_utils import isoformat_or_none

_FILTER_COLUMNS = frozenset({"name", "realm_slug", "guild_guid", "character_id", "faction", "level"})

_UPSERT = """
INSERT INTO characters (
    guid, character_id, name, realm_slug, level, faction, race,
    character_class, active_spec, guild_guid, achievement_points,
    average_item_level, last_login_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(guid) DO UPDATE SET
    character_id       = excluded.character_id,
    name               = excluded.name,
    realm_slug         = excluded.realm_slug,
    level              = excluded.level,
    faction            = excluded.faction,
    race               = excluded.race,
    character_class    = excluded.character_class,
    active_spec        = excluded.active_spec,
    guild_guid         = excluded.guild_guid,
    achievement_points = excluded.achievement_points,
    average_item_level = excluded.average_item_level,
    last_login_at      = excluded.last_login_at,
    updated_at         = excluded.updated_at;
"""


class CharacterRepository(BaseRepository):
    """Read/write access to the ``characters`` table."""

    def upsert(self, character: Character) -> None:
        """Insert or refresh a character by ``guid``."""
        self.execute(
            _UPSERT,
            (
                character.guid,
                character.character_id,
                character.name,
                character.realm_slug,
                character.level,
                character.faction,
                character.race,
                character.character_class,
                character.active_spec,
                character.guild_guid,
                character.achievement_points,
                character.average_item_level,
                isoformat_or_none(character.last_login_at),
                character.updated_at.isoformat(),
            ),
        )

    def get(self, guid: str) -> Optional[Character]:
        row = self.fetchone("SELECT * FROM characters WHERE guid = ?;", (guid,))
        return _row_to_character(row) if row else None

    def exists(self, guid: str) -> bool:
        return self.fetchone("SELECT 1 FROM characters WHERE guid = ?;", (guid,)) is not None

    def find_by(self, limit: Optional[int] = None, **filters: Any) -> list[Character]:
        """Characters matching every ``column=value`` filter, ordered by guid."""
        rows = self.select_where("characters", filters, _FILTER_COLUMNS, "guid", limit)
        return [_row_to_character(r) for r in rows]

    def find_by_guild(self, guild_guid: str) -> list[Character]:
        return self.find_by(guild_guid=guild_guid)

    def count(self) -> int:
        return self.count_rows("characters")


def _row_to_character(row: sqlite3.Row) -> Character:
    return Character(
        guid=row["guid"],
        character_id=row["character_id"],
        name=row["name"],
        realm_slug=row["realm_slug"],
        level=row["level"],
        faction=row["faction"],
        race=row["race"],
        character_class=row["character_class"],
        active_spec=row["active_spec"],
        guild_guid=row["guild_guid"],
        achievement_points=row["achievement_points"],
        average_item_level=row["average_item_level"],
        last_login_at=datetime.fromisoformat(row["last_login_at"]) if row["last_login_at"] else None,
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
