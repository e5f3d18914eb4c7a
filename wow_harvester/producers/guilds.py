"""
Guild re-index sweep.

Emits an index-origin guild job for every known guild, stalest first, plus
any ``seeds`` (``(name, realm)`` pairs) not yet in the repository.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Optional

from wow_harvester.messaging.envelope import GuildOrigin, JobEnvelope, guild_job, make_guid
from wow_harvester.models.meta import RunMetadata
from wow_harvester.producers.base import SweepProducer

logger = logging.getLogger(__name__)


class GuildSweep(SweepProducer):
    stage_name = "sweep_guilds"

    async def _enumerate(
        self,
        run: RunMetadata,
        limit: Optional[int] = None,
        seeds: Iterable[tuple[str, str]] = (),
        **kwargs: Any,
    ) -> list[JobEnvelope]:
        region = self.config.upstream.region
        envelopes: list[JobEnvelope] = []
        seen: set[str] = set()

        for name, realm in seeds:
            guid = make_guid(name, realm)
            if guid not in seen:
                seen.add(guid)
                envelopes.append(
                    guild_job(name, realm, GuildOrigin.INDEX, source="guild-sweep", region=region)
                )

        for guild in self.db.guilds.stalest(limit or 1000):
            if guild.guid in seen:
                continue
            seen.add(guild.guid)
            envelopes.append(
                guild_job(
                    guild.name,
                    guild.realm_slug,
                    GuildOrigin.INDEX,
                    source="guild-sweep",
                    region=region,
                    guild_id=guild.guild_id,
                )
            )

        logger.info("Guild sweep: %d guild job(s)", len(envelopes))
        return envelopes
