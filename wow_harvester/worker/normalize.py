"""
Normalize upstream JSON bodies into domain models.

Only the fields the models carry are read.  A body missing a required field
raises ``UpstreamSchemaError`` (permanent: the unit of work is marked done
and nothing is written); optional fields default to ``None``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import ValidationError

from wow_harvester.errors import UpstreamSchemaError
from wow_harvester.messaging.envelope import make_guid
from wow_harvester.models.character import Character
from wow_harvester.models.guild import Guild, RosterMember
from wow_harvester.models.ladder import LadderMember, LeaderboardRun
from wow_harvester.models.market import COMMODITIES_REALM_ID, AuctionOrder
from wow_harvester.utils.time_utils import from_epoch_ms


def _require(body: Any, *path: str) -> Any:
    value = body
    for part in path:
        if not isinstance(value, dict) or part not in value:
            raise UpstreamSchemaError(f"Response is missing '{'.'.join(path)}'.")
        value = value[part]
    return value


def _optional(body: Any, *path: str) -> Any:
    value = body
    for part in path:
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def _faction(body: Any) -> Optional[str]:
    faction = _optional(body, "faction", "type")
    return faction.lower() if isinstance(faction, str) else None


def _name(body: Any, field: str) -> Optional[str]:
    """Blizzard returns localized names either as a string or ``{"name": ...}``."""
    value = _optional(body, field)
    if isinstance(value, dict):
        value = value.get("name")
    return value if isinstance(value, str) else None


def character_from_profile(body: Any, observed_at: datetime) -> Character:
    """Profile summary → ``Character``."""
    name = _require(body, "name")
    realm_slug = _require(body, "realm", "slug")
    guild_name = _optional(body, "guild", "name")
    guild_realm = _optional(body, "guild", "realm", "slug")
    try:
        return Character(
            guid=make_guid(name, realm_slug),
            character_id=_require(body, "id"),
            name=name,
            realm_slug=realm_slug,
            level=_optional(body, "level"),
            faction=_faction(body),
            race=_name(body, "race"),
            character_class=_name(body, "character_class"),
            active_spec=_name(body, "active_spec"),
            guild_guid=make_guid(guild_name, guild_realm) if guild_name and guild_realm else None,
            achievement_points=_optional(body, "achievement_points"),
            average_item_level=_optional(body, "average_item_level"),
            last_login_at=from_epoch_ms(_optional(body, "last_login_timestamp")),
            updated_at=observed_at,
        )
    except ValidationError as exc:
        raise UpstreamSchemaError(f"Invalid character profile: {exc}") from exc


def guild_from_summary(body: Any, observed_at: datetime) -> Guild:
    """Guild summary → ``Guild``."""
    name = _require(body, "name")
    realm_slug = _require(body, "realm", "slug")
    try:
        return Guild(
            guid=make_guid(name, realm_slug),
            guild_id=_require(body, "id"),
            name=name,
            realm_slug=realm_slug,
            faction=_faction(body),
            member_count=_optional(body, "member_count"),
            achievement_points=_optional(body, "achievement_points"),
            created_at=from_epoch_ms(_optional(body, "created_timestamp")),
            updated_at=observed_at,
        )
    except ValidationError as exc:
        raise UpstreamSchemaError(f"Invalid guild summary: {exc}") from exc


def roster_from_body(body: Any) -> list[RosterMember]:
    """Guild roster → ``RosterMember`` rows keyed by the character id."""
    members = _require(body, "members")
    if not isinstance(members, list):
        raise UpstreamSchemaError("Roster 'members' is not a list.")
    roster: list[RosterMember] = []
    try:
        for entry in members:
            character = _require(entry, "character")
            roster.append(
                RosterMember(
                    member_id=_require(character, "id"),
                    rank=_require(entry, "rank"),
                    name=_optional(character, "name"),
                    realm_slug=_optional(character, "realm", "slug"),
                    level=_optional(character, "level"),
                )
            )
    except ValidationError as exc:
        raise UpstreamSchemaError(f"Invalid roster entry: {exc}") from exc
    return roster


def leaderboard_from_body(
    body: Any,
    connected_realm_id: int,
    dungeon_id: int,
    period: int,
) -> list[LeaderboardRun]:
    """Mythic-plus leaderboard → one ``LeaderboardRun`` per leading group.

    A leaderboard with no ``leading_groups`` (no runs that week) is valid
    and yields an empty list.
    """
    groups = _optional(body, "leading_groups") or []
    runs: list[LeaderboardRun] = []
    try:
        for group in groups:
            members = tuple(
                LadderMember(
                    character_id=_require(m, "profile", "id"),
                    name=_require(m, "profile", "name"),
                    realm_slug=_require(m, "profile", "realm", "slug"),
                    faction=_faction(m),
                    spec_id=_optional(m, "specialization", "id"),
                )
                for m in _optional(group, "members") or []
            )
            runs.append(
                LeaderboardRun(
                    connected_realm_id=connected_realm_id,
                    dungeon_id=dungeon_id,
                    period=period,
                    ranking=_require(group, "ranking"),
                    keystone_level=_require(group, "keystone_level"),
                    duration_ms=_require(group, "duration"),
                    completed_at=from_epoch_ms(_optional(group, "completed_timestamp")),
                    members=members,
                )
            )
    except ValidationError as exc:
        raise UpstreamSchemaError(f"Invalid leaderboard group: {exc}") from exc
    return runs


def auctions_from_body(
    body: Any,
    connected_realm_id: Optional[int],
    observed_at: datetime,
) -> list[AuctionOrder]:
    """Auctions (or commodities when ``connected_realm_id`` is ``None``) → orders."""
    auctions = _require(body, "auctions")
    if not isinstance(auctions, list):
        raise UpstreamSchemaError("'auctions' is not a list.")
    realm_id = COMMODITIES_REALM_ID if connected_realm_id is None else connected_realm_id
    orders: list[AuctionOrder] = []
    try:
        for a in auctions:
            orders.append(
                AuctionOrder(
                    order_id=_require(a, "id"),
                    connected_realm_id=realm_id,
                    item_id=_require(a, "item", "id"),
                    quantity=_optional(a, "quantity") or 1,
                    unit_price=_optional(a, "unit_price"),
                    buyout=_optional(a, "buyout"),
                    bid=_optional(a, "bid"),
                    time_left=_optional(a, "time_left"),
                    last_seen_at=observed_at,
                )
            )
    except ValidationError as exc:
        raise UpstreamSchemaError(f"Invalid auction entry: {exc}") from exc
    return orders


def leaderboard_dungeon_ids(body: Any) -> list[int]:
    """Dungeon ids from a connected realm's mythic leaderboard index."""
    return sorted({_require(entry, "id") for entry in _optional(body, "current_leaderboards") or []})


def current_period_id(body: Any) -> int:
    return int(_require(body, "current_period", "id"))
