"""Tests for RosterSyncService: diff-and-persist against SQLite."""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from wow_harvester.models.guild import AuditAction, RosterMember
from wow_harvester.roster.service import RosterSyncService


@pytest.fixture
def service(db) -> RosterSyncService:
    return RosterSyncService(db)


class TestRosterSync:
    def test_first_sync_stores_roster_without_audit(self, service, db, sample_guild, sample_roster, now):
        result = service.sync(sample_guild.guid, sample_roster.values(), guild=sample_guild, observed_at=now)

        assert len(result.joins) == 3
        assert db.guilds.exists(sample_guild.guid)
        assert set(db.members.roster(sample_guild.guid)) == {1, 2, 3}
        assert db.audit.count(sample_guild.guid) == 0

    def test_second_sync_audits_changes(self, service, db, sample_guild, sample_roster, now):
        service.sync(sample_guild.guid, sample_roster.values(), guild=sample_guild, observed_at=now)

        changed = dict(sample_roster)
        del changed[2]
        changed[3] = changed[3].model_copy(update={"rank": 2})
        changed[4] = RosterMember(member_id=4, rank=5, name="Delta", realm_slug="area-52")
        later = now + timedelta(hours=1)
        service.sync(sample_guild.guid, changed.values(), observed_at=later)

        roster = db.members.roster(sample_guild.guid)
        assert set(roster) == {1, 3, 4}
        assert roster[3].rank == 2
        actions = sorted((e.subject_name, e.action) for e in db.audit.for_guild(sample_guild.guid))
        assert actions == [
            ("Bravo", AuditAction.LEAVE),
            ("Charlie", AuditAction.PROMOTE),
            ("Delta", AuditAction.JOIN),
        ]

    def test_replaying_same_snapshot_is_noop(self, service, db, sample_guild, sample_roster, now):
        service.sync(sample_guild.guid, sample_roster.values(), guild=sample_guild, observed_at=now)
        result = service.sync(sample_guild.guid, sample_roster.values(), observed_at=now)
        assert result.is_empty
        assert db.members.count(sample_guild.guid) == 3
        assert db.audit.count() == 0

    def test_audit_replay_ignored(self, service, db, sample_guild, sample_roster, now):
        service.sync(sample_guild.guid, sample_roster.values(), guild=sample_guild, observed_at=now)
        changed = {k: v for k, v in sample_roster.items() if k != 3}
        result = service.sync(sample_guild.guid, changed.values(), observed_at=now)
        # a crashed-then-replayed diff produces the same audit row again
        assert db.audit.insert_many(result.audit_entries(sample_guild.guid, now)) == 0
        assert db.audit.count(sample_guild.guid) == 1

    def test_owner_handover_persisted(self, service, db, sample_guild, sample_roster, now):
        service.sync(sample_guild.guid, sample_roster.values(), guild=sample_guild, observed_at=now)
        handover = {
            2: sample_roster[2].model_copy(update={"rank": 0}),
            3: sample_roster[3],
        }
        result = service.sync(sample_guild.guid, handover.values(), observed_at=now + timedelta(days=1))

        assert result.owner_changed
        actions = sorted(e.action for e in db.audit.for_guild(sample_guild.guid))
        assert actions == [AuditAction.OWNER_CHANGE, AuditAction.OWNER_CHANGE]
        assert db.members.roster(sample_guild.guid)[2].rank == 0

    def test_unknown_guild_rejected_by_foreign_key(self, service, db, sample_roster):
        with pytest.raises(sqlite3.IntegrityError):
            service.sync("ghost@area-52", sample_roster.values())
        assert db.members.count() == 0
