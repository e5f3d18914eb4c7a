"""
Apply a roster diff to the database.

``RosterSyncService.sync()`` reads the persisted roster, diffs the fresh one
against it, and in a single transaction:

  1. upserts the guild summary (when given),
  2. upserts joined / changed members and deletes departed ones,
  3. inserts the audited events into ``guild_audit_log``.

Re-running ``sync()`` with the same snapshot finds no differences and writes
nothing; replaying a diff after a crash between steps is absorbed by the
upserts and the audit table's uniqueness constraint.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from wow_harvester.db.persistence import Persistence
from wow_harvester.models.guild import Guild, RosterMember
from wow_harvester.roster.diff import DiffResult, diff
from wow_harvester.utils.logging import log_event
from wow_harvester.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class RosterSyncService:
    """Diff-and-persist for guild rosters.

    Args:
        db:                  Open persistence facade.
        lower_rank_is_higher: Rank ordering passed through to ``diff()``.
    """

    def __init__(self, db: Persistence, lower_rank_is_higher: bool = True) -> None:
        self.db = db
        self.lower_rank_is_higher = lower_rank_is_higher

    def sync(
        self,
        guild_guid: str,
        members: Iterable[RosterMember],
        *,
        guild: Optional[Guild] = None,
        observed_at: Optional[datetime] = None,
    ) -> DiffResult:
        """Persist ``members`` as the current roster of ``guild_guid``.

        Returns:
            The ``DiffResult`` that was applied.
        """
        observed_at = observed_at or utcnow()
        current = {m.member_id: m for m in members}
        previous = self.db.members.roster(guild_guid)

        result = diff(
            previous,
            current,
            lower_rank_is_higher=self.lower_rank_is_higher,
            suppress_initial_joins=not previous,
        )

        with self.db.transaction():
            if guild is not None:
                self.db.guilds.upsert(guild)
            self.db.members.upsert_many(guild_guid, result.upserts)
            self.db.members.remove_many(guild_guid, result.removals)
            audited = self.db.audit.insert_many(result.audit_entries(guild_guid, observed_at))

        if not result.is_empty:
            log_event(
                logger,
                logging.INFO,
                "roster.sync",
                f"Roster of {guild_guid} changed",
                guild_guid=guild_guid,
                joins=len(result.joins),
                leaves=len(result.leaves),
                events=len(result.events),
                audited=audited,
                owner_changed=result.owner_changed,
            )
        return result
