"""
Per-kind job handlers.

Each handler turns one ``JobEnvelope`` into upstream fetches, normalized
rows, a single write transaction and a list of follow-on envelopes.  The
surrounding bookkeeping (identity markers, counters, publishing the
follow-ups) belongs to ``IngestionWorker``; handlers only declare:

  ``progress_key(envelope)``   identity marker for the unit of work, or
                               ``None`` for recurring work (auctions)
  ``marker_ttl``               how long that marker suppresses a re-fetch
  ``bypasses_marker(env)``     True for on-demand requests that must fetch

Content-hash dedup, where a handler uses it, is claimed before the write
and released again if the write fails so a redelivery is not mistaken for
a duplicate.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, ClassVar, Optional

from wow_harvester.config import AppConfig
from wow_harvester.db.persistence import Persistence
from wow_harvester.ingestion.progress import ProgressStore, progress_key
from wow_harvester.messaging.envelope import (
    AuctionsJob,
    CharacterJob,
    CharacterOrigin,
    GuildJob,
    GuildOrigin,
    JobEnvelope,
    JobKind,
    LeaderboardJob,
    character_job,
    guild_job,
    make_guid,
)
from wow_harvester.models.guild import RosterMember
from wow_harvester.roster.service import RosterSyncService
from wow_harvester.upstream import blizzard
from wow_harvester.upstream.client import UpstreamResponse
from wow_harvester.utils.time_utils import utcnow
from wow_harvester.worker import normalize
from wow_harvester.worker.gateway import NOT_MODIFIED, UpstreamGateway

logger = logging.getLogger(__name__)


class JobStatus(StrEnum):
    """``status`` field of a handler's reply body."""

    OK = "ok"
    SKIPPED = "skipped"
    DUPLICATE = "duplicate"
    NOT_MODIFIED = "not-modified"
    NOT_FOUND = "not-found"


@dataclass
class WorkerContext:
    """Everything a handler needs, shared by all handlers of a worker."""

    gateway: UpstreamGateway
    progress: ProgressStore
    db: Persistence
    config: AppConfig = field(default_factory=AppConfig)
    clock: Callable[[], datetime] = utcnow


@dataclass
class HandlerOutcome:
    """Result of one handled envelope.

    Attributes:
        status:     Reply status.
        body:       Extra reply fields (entity snapshot, counts).
        follow_ups: Envelopes to publish after the write committed.
        written:    Rows written.
    """

    status: JobStatus = JobStatus.OK
    body: dict[str, Any] = field(default_factory=dict)
    follow_ups: list[JobEnvelope] = field(default_factory=list)
    written: int = 0

    def reply(self) -> dict[str, Any]:
        return {"status": str(self.status), **self.body}


class JobHandler(ABC):
    """Base class for one ``JobKind``."""

    kind: ClassVar[JobKind]

    def __init__(self, ctx: WorkerContext) -> None:
        self.ctx = ctx

    @property
    def marker_ttl(self) -> int:
        return self.ctx.config.progress.character_ttl_seconds

    def progress_key(self, envelope: JobEnvelope) -> Optional[str]:
        return None

    def bypasses_marker(self, envelope: JobEnvelope) -> bool:
        return False

    @abstractmethod
    async def handle(self, envelope: JobEnvelope) -> HandlerOutcome:
        ...

    # ── Shared helpers ────────────────────────────────────────────────────────

    def _locale(self) -> str:
        return self.ctx.config.upstream.locale

    @staticmethod
    def _auth_headers(payload: Any) -> dict[str, str]:
        if payload.access_token:
            return {"Authorization": f"Bearer {payload.access_token}"}
        return {}

    async def _fetch(
        self, payload: Any, path: str, extra_headers: Optional[dict[str, str]] = None
    ) -> UpstreamResponse:
        headers = self._auth_headers(payload)
        if extra_headers:
            headers.update(extra_headers)
        return await self.ctx.gateway.fetch(blizzard.rate_target(payload.region), path, headers)


# ── Characters ────────────────────────────────────────────────────────────────


class CharacterHandler(JobHandler):
    """Profile summary → ``characters`` row; unknown guild → guild job."""

    kind = JobKind.CHARACTER

    def progress_key(self, envelope: JobEnvelope) -> Optional[str]:
        return progress_key("osint", "character", envelope.payload.scoped_key)

    def bypasses_marker(self, envelope: JobEnvelope) -> bool:
        return envelope.payload.origin == CharacterOrigin.REQUEST

    async def handle(self, envelope: JobEnvelope) -> HandlerOutcome:
        job: CharacterJob = envelope.payload
        response = await self._fetch(
            job,
            blizzard.character_profile_path(job.realm_slug, job.name_slug, job.region, self._locale()),
        )
        character = normalize.character_from_profile(response.body, self.ctx.clock())
        if job.guild_guid and character.guild_guid is None:
            # Roster-discovered members keep their guild until a profile says otherwise.
            character = character.model_copy(update={"guild_guid": job.guild_guid})

        db = self.ctx.db
        with db.transaction():
            db.characters.upsert(character)

        follow_ups: list[JobEnvelope] = []
        guild = response.body.get("guild") if isinstance(response.body, dict) else None
        if character.guild_guid and guild and not db.guilds.exists(character.guild_guid):
            follow_ups.append(
                guild_job(
                    guild["name"],
                    guild["realm"]["slug"],
                    GuildOrigin.CHARACTER,
                    source=f"character:{character.guid}",
                    region=job.region,
                    guild_id=guild.get("id"),
                )
            )

        return HandlerOutcome(
            body={"character": character.model_dump(mode="json")},
            follow_ups=follow_ups,
            written=1,
        )


# ── Guilds ────────────────────────────────────────────────────────────────────


class GuildHandler(JobHandler):
    """Guild summary + roster → ``guilds`` row, roster diff, audit rows.

    Joined members become roster-origin character jobs; a new owner becomes a
    guild-master-origin job.  An unchanged roster body (same content hash as
    the last written one) refreshes the guild row only.
    """

    kind = JobKind.GUILD

    @property
    def marker_ttl(self) -> int:
        return self.ctx.config.progress.guild_ttl_seconds

    def progress_key(self, envelope: JobEnvelope) -> Optional[str]:
        return progress_key("osint", "guild", envelope.payload.scoped_key)

    def bypasses_marker(self, envelope: JobEnvelope) -> bool:
        return envelope.payload.origin == GuildOrigin.REQUEST

    async def handle(self, envelope: JobEnvelope) -> HandlerOutcome:
        job: GuildJob = envelope.payload
        region, locale = job.region, self._locale()
        summary = await self._fetch(job, blizzard.guild_path(job.realm_slug, job.name_slug, region, locale))
        roster_resp = await self._fetch(
            job, blizzard.guild_roster_path(job.realm_slug, job.name_slug, region, locale)
        )

        now = self.ctx.clock()
        guild = normalize.guild_from_summary(summary.body, now)
        members = normalize.roster_from_body(roster_resp.body)

        namespace = progress_key("osint", "roster", job.scoped_key)
        unchanged, digest = await self.ctx.progress.payload_unchanged(namespace, roster_resp.body["members"])

        db = self.ctx.db
        if unchanged:
            with db.transaction():
                db.guilds.upsert(guild)
            return HandlerOutcome(
                status=JobStatus.DUPLICATE,
                body={"guild": guild.guid, "members": len(members)},
                written=1,
            )

        result = RosterSyncService(db).sync(guild.guid, members, guild=guild, observed_at=now)
        await self.ctx.progress.mark_seen(namespace, digest, self.ctx.config.progress.payload_hash_ttl_seconds)

        follow_ups: list[JobEnvelope] = []
        owner_id = result.current_owner
        for event in result.joins:
            if event.member_id != owner_id:
                env = self._member_job(event.member, guild.guid, CharacterOrigin.ROSTER, job.region)
                if env is not None:
                    follow_ups.append(env)
        if owner_id is not None and (result.owner_changed or any(e.member_id == owner_id for e in result.joins)):
            env = self._member_job(
                next(m for m in members if m.member_id == owner_id),
                guild.guid,
                CharacterOrigin.GUILD_MASTER,
                job.region,
            )
            if env is not None:
                follow_ups.append(env)

        return HandlerOutcome(
            body={
                "guild": guild.guid,
                "members": len(members),
                "events": len(result.events),
                "audited": len(result.audited_events),
            },
            follow_ups=follow_ups,
            written=1 + len(result.upserts) + len(result.removals),
        )

    @staticmethod
    def _member_job(
        member: RosterMember,
        guild_guid: str,
        origin: CharacterOrigin,
        region: str,
    ) -> Optional[JobEnvelope]:
        if not member.name or not member.realm_slug:
            return None
        return character_job(
            member.name,
            member.realm_slug,
            origin,
            source=f"guild:{guild_guid}",
            region=region,
            character_id=member.member_id,
            guild_guid=guild_guid,
            guild_rank=member.rank,
        )


# ── Leaderboards ──────────────────────────────────────────────────────────────


class LeaderboardHandler(JobHandler):
    """One realm × dungeon × period leaderboard → ``leaderboard_runs``.

    A closed period never changes, so the identity marker lives for days; a
    404 (dungeon not in rotation that week) marks the unit done as well.
    """

    kind = JobKind.LEADERBOARD

    @property
    def marker_ttl(self) -> int:
        return self.ctx.config.progress.ladder_ttl_seconds

    def progress_key(self, envelope: JobEnvelope) -> Optional[str]:
        job: LeaderboardJob = envelope.payload
        return progress_key("osint", "ladder", job.scoped_key)

    async def handle(self, envelope: JobEnvelope) -> HandlerOutcome:
        job: LeaderboardJob = envelope.payload
        response = await self._fetch(
            job,
            blizzard.mythic_leaderboard_path(
                job.connected_realm_id, job.dungeon_id, job.period, job.region, self._locale()
            ),
        )
        runs = normalize.leaderboard_from_body(
            response.body, job.connected_realm_id, job.dungeon_id, job.period
        )

        db = self.ctx.db
        with db.transaction():
            written = db.leaderboards.upsert_many(runs)

        follow_ups: list[JobEnvelope] = []
        seen: set[str] = set()
        for run in runs:
            for member in run.members:
                guid = make_guid(member.name, member.realm_slug)
                if guid in seen:
                    continue
                seen.add(guid)
                follow_ups.append(
                    character_job(
                        member.name,
                        member.realm_slug,
                        CharacterOrigin.LADDER_MYTHIC_PLUS,
                        source=envelope.id,
                        region=job.region,
                        character_id=member.character_id,
                    )
                )

        return HandlerOutcome(
            body={"runs": len(runs), "characters": len(seen)},
            follow_ups=follow_ups,
            written=written,
        )


# ── Auctions ──────────────────────────────────────────────────────────────────


class AuctionsHandler(JobHandler):
    """Connected-realm auctions or region commodities → ``market_orders``.

    Auctions are re-fetched every sweep, so there is no identity marker.
    The previous ``Last-Modified`` is sent as ``If-Modified-Since`` and a 304
    writes nothing; an unchanged body is caught by the content hash.
    """

    kind = JobKind.AUCTIONS

    @staticmethod
    def _namespace(job: AuctionsJob) -> str:
        return progress_key("dma", "auctions", job.region, job.natural_key)

    async def handle(self, envelope: JobEnvelope) -> HandlerOutcome:
        job: AuctionsJob = envelope.payload
        store = self.ctx.progress.store
        namespace = self._namespace(job)
        lm_key = f"{namespace}:last-modified"
        ttl = self.ctx.config.progress.payload_hash_ttl_seconds

        last_modified = await store.get(lm_key)
        conditional = {"If-Modified-Since": last_modified} if last_modified else None
        response = await self._fetch(
            job, blizzard.auctions_path(job.connected_realm_id, job.region, self._locale()), conditional
        )
        if response.status == NOT_MODIFIED:
            return HandlerOutcome(status=JobStatus.NOT_MODIFIED, body={"market": job.natural_key})

        orders = normalize.auctions_from_body(response.body, job.connected_realm_id, self.ctx.clock())
        unchanged, digest = await self.ctx.progress.payload_unchanged(namespace, response.body["auctions"])
        if unchanged:
            return HandlerOutcome(
                status=JobStatus.DUPLICATE, body={"market": job.natural_key, "orders": len(orders)}
            )

        db = self.ctx.db
        with db.transaction():
            written = db.orders.upsert_many(orders)
        await self.ctx.progress.mark_seen(namespace, digest, ttl)

        new_last_modified = response.headers.get("last-modified")
        if new_last_modified:
            await store.set(lm_key, new_last_modified, ttl_seconds=ttl)

        return HandlerOutcome(body={"market": job.natural_key, "orders": written}, written=written)


def default_handlers(ctx: WorkerContext) -> dict[JobKind, JobHandler]:
    handlers: list[JobHandler] = [
        CharacterHandler(ctx),
        GuildHandler(ctx),
        LeaderboardHandler(ctx),
        AuctionsHandler(ctx),
    ]
    return {h.kind: h for h in handlers}
