"""Tests for upstream body normalization."""

from __future__ import annotations

import pytest

from wow_harvester.errors import UpstreamSchemaError
from wow_harvester.models.market import COMMODITIES_REALM_ID
from wow_harvester.worker.normalize import (
    auctions_from_body,
    character_from_profile,
    current_period_id,
    guild_from_summary,
    leaderboard_dungeon_ids,
    leaderboard_from_body,
    roster_from_body,
)


class TestCharacter:
    def test_full_profile(self, bodies, now):
        character = character_from_profile(bodies.profile(guild="Rage Quit"), now)
        assert character.guid == "thrall@area-52"
        assert character.character_id == 1001
        assert character.faction == "horde"
        assert character.character_class == "Shaman"
        assert character.guild_guid == "rage-quit@area-52"
        assert character.last_login_at is not None
        assert character.updated_at == now

    def test_guildless(self, bodies, now):
        assert character_from_profile(bodies.profile(), now).guild_guid is None

    def test_missing_id(self, bodies, now):
        body = bodies.profile()
        del body["id"]
        with pytest.raises(UpstreamSchemaError, match="'id'"):
            character_from_profile(body, now)

    def test_not_a_dict(self, now):
        with pytest.raises(UpstreamSchemaError):
            character_from_profile(None, now)


class TestGuild:
    def test_summary(self, bodies, now):
        guild = guild_from_summary(bodies.guild(), now)
        assert guild.guid == "rage-quit@area-52"
        assert guild.guild_id == 77
        assert guild.faction == "horde"
        assert guild.created_at is not None

    def test_roster(self, bodies):
        roster = roster_from_body(bodies.roster((1, "Alpha", 0), (2, "Bravo", 3)))
        assert [(m.member_id, m.rank, m.name) for m in roster] == [(1, 0, "Alpha"), (2, 3, "Bravo")]
        assert roster[0].guid == "alpha@area-52"

    def test_roster_negative_rank(self, bodies):
        with pytest.raises(UpstreamSchemaError):
            roster_from_body(bodies.roster((1, "Alpha", -1)))

    def test_roster_members_must_be_list(self):
        with pytest.raises(UpstreamSchemaError):
            roster_from_body({"members": "nope"})


class TestLeaderboard:
    def test_groups(self, bodies):
        body = bodies.leaderboard([(1, "Alpha"), (2, "Bravo")], [(3, "Charlie")])
        runs = leaderboard_from_body(body, 3676, 375, 940)
        assert [r.ranking for r in runs] == [1, 2]
        assert runs[0].members[1].name == "Bravo"
        assert runs[0].members[0].faction == "alliance"
        assert runs[0].members[0].spec_id == 262

    def test_empty_leaderboard(self):
        assert leaderboard_from_body({}, 3676, 375, 940) == []

    def test_index_and_period(self, bodies):
        assert leaderboard_dungeon_ids(bodies.leaderboard_index(503, 375, 375)) == [375, 503]
        assert current_period_id({"current_period": {"id": 940}}) == 940
        with pytest.raises(UpstreamSchemaError):
            current_period_id({})


class TestAuctions:
    def test_realm_orders(self, bodies, now):
        orders = auctions_from_body(bodies.auctions((9, 19019, 500)), 3676, now)
        assert orders[0].connected_realm_id == 3676
        assert orders[0].buyout == 500
        assert orders[0].time_left == "LONG"

    def test_commodities_use_region_realm(self, bodies, now):
        orders = auctions_from_body(bodies.auctions((9, 2589, 10)), None, now)
        assert orders[0].connected_realm_id == COMMODITIES_REALM_ID

    def test_bad_time_left(self, now):
        body = {"auctions": [{"id": 1, "item": {"id": 2}, "time_left": "FOREVER"}]}
        with pytest.raises(UpstreamSchemaError):
            auctions_from_body(body, 3676, now)
