"""Repository for ``leaderboard_runs``."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime

from wow_harvester.db.repositories.base import BaseRepository
from wow_harvester.models.ladder import LadderMember, LeaderboardRun
from wow_harvester.utils.time_utils import isoformat_or_none


class LeaderboardRepository(BaseRepository):
    """Read/write access to the ``leaderboard_runs`` table."""

    def upsert_many(self, runs: Iterable[LeaderboardRun]) -> int:
        params = [
            (
                r.connected_realm_id,
                r.dungeon_id,
                r.period,
                r.ranking,
                r.keystone_level,
                r.duration_ms,
                isoformat_or_none(r.completed_at),
                json.dumps([m.model_dump() for m in r.members]),
            )
            for r in runs
        ]
        if not params:
            return 0
        self.executemany(
            """
            INSERT INTO leaderboard_runs (
                connected_realm_id, dungeon_id, period, ranking,
                keystone_level, duration_ms, completed_at, members_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(connected_realm_id, dungeon_id, period, ranking) DO UPDATE SET
                keystone_level = excluded.keystone_level,
                duration_ms    = excluded.duration_ms,
                completed_at   = excluded.completed_at,
                members_json   = excluded.members_json;
            """,
            params,
        )
        return len(params)

    def get_leaderboard(self, connected_realm_id: int, dungeon_id: int, period: int) -> list[LeaderboardRun]:
        rows = self.fetchall(
            """
            SELECT * FROM leaderboard_runs
            WHERE connected_realm_id = ? AND dungeon_id = ? AND period = ?
            ORDER BY ranking;
            """,
            (connected_realm_id, dungeon_id, period),
        )
        return [
            LeaderboardRun(
                connected_realm_id=r["connected_realm_id"],
                dungeon_id=r["dungeon_id"],
                period=r["period"],
                ranking=r["ranking"],
                keystone_level=r["keystone_level"],
                duration_ms=r["duration_ms"],
                completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
                members=tuple(LadderMember(**m) for m in json.loads(r["members_json"])),
            )
            for r in rows
        ]

    def count(self) -> int:
        return self.count_rows("leaderboard_runs")
