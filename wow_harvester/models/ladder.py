"""Mythic-plus leaderboard run model."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class LadderMember(BaseModel):
    model_config = ConfigDict(frozen=True)

    character_id: int
    name: str
    realm_slug: str
    faction: Optional[str] = None
    spec_id: Optional[int] = None


class LeaderboardRun(BaseModel):
    """One ranked group on a realm × dungeon × period leaderboard."""

    model_config = ConfigDict(frozen=True)

    connected_realm_id: int
    dungeon_id: int
    period: int
    ranking: int
    keystone_level: int
    duration_ms: int
    completed_at: Optional[datetime] = None
    members: tuple[LadderMember, ...] = ()
