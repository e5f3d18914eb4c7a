"""
Mythic-plus leaderboard sweep.

Enumerates connected realms × dungeons × keystone periods into a flat list
of independent leaderboard jobs.  Dungeons come from each realm's
leaderboard index and the current period from the keystone period index
(both rate-controlled fetches) unless ``[ladder] periods`` pins them.

Units whose identity marker is still live are left out, so re-running a
sweep after a crash only publishes what is left::

    100 units, 40 already done  →  60 envelopes
"""

from __future__ import annotations

import logging
from typing import Any

from wow_harvester.errors import UpstreamPermanentError
from wow_harvester.ingestion.progress import progress_key
from wow_harvester.messaging.envelope import JobEnvelope, leaderboard_job
from wow_harvester.models.meta import RunMetadata
from wow_harvester.producers.base import SweepProducer
from wow_harvester.upstream import blizzard
from wow_harvester.worker import normalize

logger = logging.getLogger(__name__)


class LadderSweep(SweepProducer):
    stage_name = "sweep_ladder"

    async def _periods(self) -> list[int]:
        if self.config.ladder.periods:
            return sorted(set(self.config.ladder.periods))
        region = self.config.upstream.region
        response = await self._require_gateway().fetch(
            blizzard.rate_target(region),
            blizzard.keystone_period_index_path(region, self.config.upstream.locale),
        )
        current = normalize.current_period_id(response.body)
        return [current - back for back in range(self.config.ladder.period_lookback, -1, -1)]

    async def _dungeons(self, connected_realm_id: int) -> list[int]:
        region = self.config.upstream.region
        try:
            response = await self._require_gateway().fetch(
                blizzard.rate_target(region),
                blizzard.mythic_leaderboard_index_path(connected_realm_id, region, self.config.upstream.locale),
            )
        except UpstreamPermanentError as exc:
            logger.warning("No leaderboard index for realm %d: %s", connected_realm_id, exc)
            return []
        return normalize.leaderboard_dungeon_ids(response.body)

    async def _enumerate(self, run: RunMetadata, **kwargs: Any) -> list[JobEnvelope]:
        realms = kwargs.get("connected_realm_ids") or self.config.realms.connected_realm_ids
        periods = await self._periods()

        region = self.config.upstream.region
        units: dict[str, JobEnvelope] = {}
        for realm_id in realms:
            for dungeon_id in await self._dungeons(realm_id):
                for period in periods:
                    env = leaderboard_job(realm_id, dungeon_id, period, region=region)
                    units[progress_key("osint", "ladder", env.payload.scoped_key)] = env

        pending = await self.progress.pending(list(units))
        logger.info(
            "Ladder sweep: %d realm(s), %d period(s), %d unit(s), %d pending",
            len(realms), len(periods), len(units), len(pending),
        )
        return [units[key] for key in pending]
