"""
Character model — the normalized profile summary.

``guid`` (``name@realm-slug``) is the natural key used for upserts, envelope
ids and progress markers; ``character_id`` is Blizzard's numeric id, which
survives renames but not realm transfers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

VALID_FACTIONS = frozenset({"alliance", "horde", "neutral"})


class Character(BaseModel):
    """A character as last observed upstream.

    Attributes:
        guid: ``name@realm`` natural key.
        character_id: Blizzard character id.
        name: Display name.
        realm_slug: Realm slug.
        level: Character level.
        faction: ``"alliance"``, ``"horde"`` or ``"neutral"``.
        race: Race name.
        character_class: Class name.
        active_spec: Active specialization name.
        guild_guid: ``name@realm`` of the guild, if any.
        achievement_points: Total achievement points.
        average_item_level: Equipped item level.
        last_login_at: Last login reported by the API.
        updated_at: When this record was last refreshed.
    """

    model_config = ConfigDict(frozen=True)

    guid: str
    character_id: int
    name: str
    realm_slug: str
    level: Optional[int] = None
    faction: Optional[str] = None
    race: Optional[str] = None
    character_class: Optional[str] = None
    active_spec: Optional[str] = None
    guild_guid: Optional[str] = None
    achievement_points: Optional[int] = None
    average_item_level: Optional[int] = None
    last_login_at: Optional[datetime] = None
    updated_at: datetime

    @field_validator("guid")
    @classmethod
    def validate_guid(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError(f"guid must look like name@realm, got '{v}'.")
        return v

    @field_validator("faction")
    @classmethod
    def validate_faction(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in VALID_FACTIONS:
            raise ValueError(f"Invalid faction '{v}'. Must be one of {sorted(VALID_FACTIONS)}.")
        return v
