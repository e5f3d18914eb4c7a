"""
Blizzard API path builders.

Docs: https://develop.battle.net/documentation/world-of-warcraft

Namespaces:
  ``profile-{region}``  characters, guilds, rosters
  ``dynamic-{region}``  auctions, mythic-plus leaderboards, keystone periods
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode


def rate_target(region: str) -> str:
    """Rate-limit target shared by every Blizzard call in ``region``."""
    return f"blizzard:{region}"


def _query(namespace: str, region: str, locale: str) -> str:
    return urlencode({"namespace": f"{namespace}-{region}", "locale": locale})


def character_profile_path(realm_slug: str, name_slug: str, region: str = "us", locale: str = "en_US") -> str:
    return (
        f"/profile/wow/character/{quote(realm_slug)}/{quote(name_slug)}"
        f"?{_query('profile', region, locale)}"
    )


def guild_path(realm_slug: str, guild_slug: str, region: str = "us", locale: str = "en_US") -> str:
    return f"/data/wow/guild/{quote(realm_slug)}/{quote(guild_slug)}?{_query('profile', region, locale)}"


def guild_roster_path(realm_slug: str, guild_slug: str, region: str = "us", locale: str = "en_US") -> str:
    return (
        f"/data/wow/guild/{quote(realm_slug)}/{quote(guild_slug)}/roster"
        f"?{_query('profile', region, locale)}"
    )


def mythic_leaderboard_index_path(connected_realm_id: int, region: str = "us", locale: str = "en_US") -> str:
    return (
        f"/data/wow/connected-realm/{connected_realm_id}/mythic-leaderboard/index"
        f"?{_query('dynamic', region, locale)}"
    )


def mythic_leaderboard_path(
    connected_realm_id: int,
    dungeon_id: int,
    period: int,
    region: str = "us",
    locale: str = "en_US",
) -> str:
    return (
        f"/data/wow/connected-realm/{connected_realm_id}/mythic-leaderboard/"
        f"{dungeon_id}/period/{period}?{_query('dynamic', region, locale)}"
    )


def keystone_period_index_path(region: str = "us", locale: str = "en_US") -> str:
    return f"/data/wow/mythic-keystone/period/index?{_query('dynamic', region, locale)}"


def auctions_path(connected_realm_id: Optional[int], region: str = "us", locale: str = "en_US") -> str:
    """Connected-realm auctions, or region-wide commodities when ``None``."""
    if connected_realm_id is None:
        return f"/data/wow/auctions/commodities?{_query('dynamic', region, locale)}"
    return f"/data/wow/connected-realm/{connected_realm_id}/auctions?{_query('dynamic', region, locale)}"
