"""
``JobEnvelope``: the routed, prioritized unit of distributed work.

The payload is a tagged union discriminated by ``kind``; each variant
carries only the fields its handler needs plus optional upstream
credentials (``region``, ``access_token``).

Envelope ids are deterministic from the payload's natural key::

    character:thrall@area-52
    guild:rage-quit@area-52
    leaderboard:3676:375:940
    auctions:3676            (auctions:commodities for the region market)
    guild:eu:rage-quit@draenor  (regions other than "us" are prefixed)

so re-emitting the same logical job is harmless: queued duplicates are
collapsed by the broker and completed work is skipped via progress markers.

Factories map each producer origin to a priority and tier::

    env = character_job("Thrall", "Area 52", CharacterOrigin.LADDER_MYTHIC_PLUS)
    env.id            # "character:thrall@area-52"
    env.routing_key   # "osint.characters.ladder-mythic-plus.normal"
    env.priority      # 7
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from wow_harvester.errors import EnvelopeValidationError
from wow_harvester.messaging.topology import (
    TIER_POLICIES,
    PriorityTier,
    build_routing_key,
    tier_of,
)
from wow_harvester.utils.time_utils import utcnow

MIN_PRIORITY = 0
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
DEFAULT_REGION = "us"


class JobKind(StrEnum):
    CHARACTER = "character"
    GUILD = "guild"
    LEADERBOARD = "leaderboard"
    AUCTIONS = "auctions"


class CharacterOrigin(StrEnum):
    """Which producer discovered the character."""

    REQUEST = "request"
    GUILD_MASTER = "guild-master"
    WARCRAFT_LOGS = "warcraft-logs"
    LADDER_MYTHIC_PLUS = "ladder-mythic-plus"
    LADDER_PVP = "ladder-pvp"
    LFG = "lfg"
    INDEX = "index"
    ROSTER = "roster"
    MIGRATION = "migration"


class GuildOrigin(StrEnum):
    REQUEST = "request"
    CHARACTER = "character"
    INDEX = "index"


# origin → (priority, tier)
CHARACTER_ROUTING: dict[CharacterOrigin, tuple[int, PriorityTier]] = {
    CharacterOrigin.REQUEST: (10, PriorityTier.URGENT),
    CharacterOrigin.GUILD_MASTER: (9, PriorityTier.HIGH),
    CharacterOrigin.WARCRAFT_LOGS: (8, PriorityTier.HIGH),
    CharacterOrigin.LADDER_MYTHIC_PLUS: (7, PriorityTier.NORMAL),
    CharacterOrigin.LADDER_PVP: (7, PriorityTier.NORMAL),
    CharacterOrigin.LFG: (6, PriorityTier.NORMAL),
    CharacterOrigin.INDEX: (5, PriorityTier.NORMAL),
    CharacterOrigin.ROSTER: (3, PriorityTier.LOW),
    CharacterOrigin.MIGRATION: (2, PriorityTier.LOW),
}

GUILD_ROUTING: dict[GuildOrigin, tuple[int, PriorityTier]] = {
    GuildOrigin.REQUEST: (10, PriorityTier.URGENT),
    GuildOrigin.CHARACTER: (5, PriorityTier.NORMAL),
    GuildOrigin.INDEX: (4, PriorityTier.LOW),
}

# kind → (domain, resource)
KIND_FAMILY: dict[JobKind, tuple[str, str]] = {
    JobKind.CHARACTER: ("osint", "characters"),
    JobKind.GUILD: ("osint", "guilds"),
    JobKind.LEADERBOARD: ("osint", "ladder"),
    JobKind.AUCTIONS: ("dma", "auctions"),
}


# ── Slugs ─────────────────────────────────────────────────────────────────────

_SLUG_STRIP = re.compile(r"['’]")
_SLUG_SPACE = re.compile(r"\s+")


def to_slug(value: str) -> str:
    """Blizzard-style slug: lowercase, apostrophes dropped, spaces → ``-``.

    ``"Mal'Ganis"`` → ``"malganis"``, ``"Area 52"`` → ``"area-52"``.
    """
    value = _SLUG_STRIP.sub("", value.strip().lower())
    return _SLUG_SPACE.sub("-", value)


def make_guid(name: str, realm: str) -> str:
    """``name@realm`` identity used for characters and guilds."""
    return f"{to_slug(name)}@{to_slug(realm)}"


# ── Payload variants ──────────────────────────────────────────────────────────


class _JobPayload(BaseModel, ABC):
    model_config = ConfigDict(frozen=True, extra="forbid")

    region: str = DEFAULT_REGION
    access_token: Optional[str] = None

    @property
    @abstractmethod
    def natural_key(self) -> str:
        """Identity of the upstream resource within its region."""

    @property
    def scoped_key(self) -> str:
        """``natural_key`` qualified by region; the default region stays bare."""
        if self.region == DEFAULT_REGION:
            return self.natural_key
        return f"{self.region}:{self.natural_key}"


class _NamedPayload(_JobPayload):
    name: str
    realm: str

    @field_validator("name", "realm")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("name and realm must not be blank.")
        return v.strip()

    @property
    def realm_slug(self) -> str:
        return to_slug(self.realm)

    @property
    def name_slug(self) -> str:
        return to_slug(self.name)

    @property
    def natural_key(self) -> str:
        return make_guid(self.name, self.realm)


class CharacterJob(_NamedPayload):
    """Fetch one character profile."""

    kind: Literal["character"] = "character"
    origin: CharacterOrigin
    character_id: Optional[int] = None
    guild_guid: Optional[str] = None
    guild_rank: Optional[int] = None


class GuildJob(_NamedPayload):
    """Fetch a guild summary and roster, then diff the roster."""

    kind: Literal["guild"] = "guild"
    origin: GuildOrigin = GuildOrigin.INDEX
    guild_id: Optional[int] = None


class LeaderboardJob(_JobPayload):
    """Fetch one mythic-plus leaderboard: realm × dungeon × period."""

    kind: Literal["leaderboard"] = "leaderboard"
    connected_realm_id: int
    dungeon_id: int
    period: int

    @property
    def natural_key(self) -> str:
        return f"{self.connected_realm_id}:{self.dungeon_id}:{self.period}"


class AuctionsJob(_JobPayload):
    """Fetch a connected realm's auctions, or region commodities when no realm."""

    kind: Literal["auctions"] = "auctions"
    connected_realm_id: Optional[int] = None

    @property
    def is_commodities(self) -> bool:
        return self.connected_realm_id is None

    @property
    def natural_key(self) -> str:
        return "commodities" if self.is_commodities else str(self.connected_realm_id)


JobPayload = Annotated[
    Union[CharacterJob, GuildJob, LeaderboardJob, AuctionsJob],
    Field(discriminator="kind"),
]


def make_envelope_id(payload: _JobPayload) -> str:
    return f"{payload.kind}:{payload.scoped_key}"


# ── Envelope ──────────────────────────────────────────────────────────────────


class JobEnvelope(BaseModel):
    """A unit of distributed work.

    Attributes:
        id:          Deterministic from the payload natural key.
        routing_key: ``domain.resource[.qualifier].tier``.
        payload:     Tagged-union job parameters.
        priority:    0-10, higher serviced first within a queue.
        expires_at:  Discarded (not retried) after this instant.
        attempt:     0 on first delivery, incremented on each redelivery.
        source:      Producer label for logs.
        created_at:  When the logical job was first emitted.
        last_error:  Error from the previous attempt, if any.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    routing_key: str
    payload: JobPayload
    priority: int = DEFAULT_PRIORITY
    expires_at: Optional[datetime] = None
    attempt: int = 0
    source: str = "harvester"
    created_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: int) -> int:
        if not MIN_PRIORITY <= v <= MAX_PRIORITY:
            raise ValueError(f"priority must be in [{MIN_PRIORITY}, {MAX_PRIORITY}], got {v}.")
        return v

    @field_validator("attempt")
    @classmethod
    def validate_attempt(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"attempt must be >= 0, got {v}.")
        return v

    @field_validator("routing_key")
    @classmethod
    def validate_routing_key(cls, v: str) -> str:
        tier_of(v)
        if len(v.split(".")) < 3:
            raise ValueError(f"routing_key '{v}' must look like domain.resource[.qualifier].tier.")
        return v

    @model_validator(mode="after")
    def validate_id(self) -> "JobEnvelope":
        expected = make_envelope_id(self.payload)
        if self.id != expected:
            raise ValueError(f"Envelope id '{self.id}' does not match payload key '{expected}'.")
        return self

    @property
    def kind(self) -> JobKind:
        return JobKind(self.payload.kind)

    @property
    def tier(self) -> PriorityTier:
        return tier_of(self.routing_key)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def next_attempt(self, error: Optional[str] = None) -> "JobEnvelope":
        return self.model_copy(update={"attempt": self.attempt + 1, "last_error": error})

    def with_access_token(self, token: str) -> "JobEnvelope":
        """Copy carrying ``token`` as the upstream credential; the id is unchanged."""
        return self.model_copy(update={"payload": self.payload.model_copy(update={"access_token": token})})

    def encode(self) -> str:
        return self.model_dump_json()

    @classmethod
    def decode(cls, raw: Union[str, bytes, dict[str, Any]]) -> "JobEnvelope":
        """Parse a message body.

        Raises:
            EnvelopeValidationError: If the body is not a valid envelope.
        """
        try:
            if isinstance(raw, dict):
                return cls.model_validate(raw)
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise EnvelopeValidationError(f"Malformed envelope: {exc}") from exc


# ── Factories ─────────────────────────────────────────────────────────────────


def envelope_for(
    payload: Union[CharacterJob, GuildJob, LeaderboardJob, AuctionsJob],
    *,
    tier: PriorityTier,
    priority: int,
    qualifier: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    source: str = "harvester",
) -> JobEnvelope:
    domain, resource = KIND_FAMILY[JobKind(payload.kind)]
    if expires_at is None and tier == PriorityTier.URGENT:
        expires_at = utcnow() + timedelta(seconds=TIER_POLICIES[tier].message_ttl_seconds)
    return JobEnvelope(
        id=make_envelope_id(payload),
        routing_key=build_routing_key(domain, resource, tier, qualifier),
        payload=payload,
        priority=priority,
        expires_at=expires_at,
        source=source,
    )


def character_job(
    name: str,
    realm: str,
    origin: CharacterOrigin,
    *,
    source: str = "harvester",
    **fields: Any,
) -> JobEnvelope:
    priority, tier = CHARACTER_ROUTING[origin]
    payload = CharacterJob(name=name, realm=realm, origin=origin, **fields)
    return envelope_for(payload, tier=tier, priority=priority, qualifier=str(origin), source=source)


def guild_job(
    name: str,
    realm: str,
    origin: GuildOrigin = GuildOrigin.INDEX,
    *,
    source: str = "harvester",
    **fields: Any,
) -> JobEnvelope:
    priority, tier = GUILD_ROUTING[origin]
    payload = GuildJob(name=name, realm=realm, origin=origin, **fields)
    return envelope_for(payload, tier=tier, priority=priority, qualifier=str(origin), source=source)


def leaderboard_job(
    connected_realm_id: int,
    dungeon_id: int,
    period: int,
    *,
    source: str = "ladder-sweep",
    **fields: Any,
) -> JobEnvelope:
    payload = LeaderboardJob(
        connected_realm_id=connected_realm_id, dungeon_id=dungeon_id, period=period, **fields
    )
    return envelope_for(payload, tier=PriorityTier.LOW, priority=4, qualifier="mythic-plus", source=source)


def auctions_job(
    connected_realm_id: Optional[int] = None,
    *,
    source: str = "auctions-sweep",
    **fields: Any,
) -> JobEnvelope:
    payload = AuctionsJob(connected_realm_id=connected_realm_id, **fields)
    qualifier = "commodities" if payload.is_commodities else None
    return envelope_for(payload, tier=PriorityTier.NORMAL, priority=6, qualifier=qualifier, source=source)
