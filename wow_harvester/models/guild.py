"""
Guild, roster and audit models.

Rank numbering follows the upstream API: ``0`` is the guild master and larger
numbers mean less authority.  The owner rank is modelled as
``GuildRole.OWNER`` and compared by equality, never as a bare literal.
"""

from __future__ import annotations

from datetime import datetime
from enum import IntEnum, StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator


class GuildRole(IntEnum):
    """Distinguished roster ranks."""

    OWNER = 0


class AuditAction(StrEnum):
    JOIN = "JOIN"
    LEAVE = "LEAVE"
    PROMOTE = "PROMOTE"
    DEMOTE = "DEMOTE"
    OWNER_CHANGE = "OWNER_CHANGE"


class Guild(BaseModel):
    """Guild summary.

    Attributes:
        guid: ``name@realm`` natural key.
        guild_id: Blizzard guild id.
        name: Display name.
        realm_slug: Realm slug.
        faction: ``"alliance"`` or ``"horde"``.
        member_count: Members reported by the summary endpoint.
        achievement_points: Guild achievement points.
        created_at: Guild founding time.
        updated_at: When this record was last refreshed.
    """

    model_config = ConfigDict(frozen=True)

    guid: str
    guild_id: int
    name: str
    realm_slug: str
    faction: Optional[str] = None
    member_count: Optional[int] = None
    achievement_points: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: datetime


class RosterMember(BaseModel):
    """One membership row, keyed by stable ``member_id`` (not display name)."""

    model_config = ConfigDict(frozen=True)

    member_id: int
    rank: int
    name: Optional[str] = None
    realm_slug: Optional[str] = None
    level: Optional[int] = None

    @field_validator("rank")
    @classmethod
    def validate_rank(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"rank must be >= 0, got {v}.")
        return v

    @property
    def guid(self) -> Optional[str]:
        if self.name and self.realm_slug:
            return f"{self.name.lower()}@{self.realm_slug}"
        return None


class AuditLogEntry(BaseModel):
    """A logged roster transition.

    ``before`` / ``after`` are rank values; ``None`` on the side where the
    member was absent (JOIN has no ``before``, LEAVE has no ``after``).
    """

    model_config = ConfigDict(frozen=True)

    subject_id: int
    group_id: str
    action: AuditAction
    before: Optional[int] = None
    after: Optional[int] = None
    observed_at: datetime
    subject_name: Optional[str] = None
