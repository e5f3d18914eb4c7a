"""Auctions sweep: one job per connected realm plus the region commodity market."""

from __future__ import annotations

from typing import Any

from wow_harvester.messaging.envelope import JobEnvelope, auctions_job
from wow_harvester.models.meta import RunMetadata
from wow_harvester.producers.base import SweepProducer


class AuctionsSweep(SweepProducer):
    stage_name = "sweep_auctions"

    async def _enumerate(
        self,
        run: RunMetadata,
        include_commodities: bool = True,
        **kwargs: Any,
    ) -> list[JobEnvelope]:
        region = self.config.upstream.region
        realms = kwargs.get("connected_realm_ids") or self.config.realms.connected_realm_ids
        envelopes = [auctions_job(realm_id, region=region) for realm_id in realms]
        if include_commodities:
            envelopes.append(auctions_job(None, region=region))
        return envelopes
