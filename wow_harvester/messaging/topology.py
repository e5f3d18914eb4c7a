"""
Broker topology: exchanges, priority-tier queues, bindings, dead-lettering.

Routing keys follow ``domain.resource[.qualifier].tier``::

    osint.characters.request.urgent
    osint.characters.ladder-mythic-plus.normal
    osint.guilds.index.low
    dma.auctions.normal

Each (domain, resource, tier) gets one durable queue named
``domain.resource.tier`` bound to ``<domain>.exchange`` with the pattern
``domain.resource.#.tier``.  Every tier has its own priority ceiling and
message TTL, and every queue dead-letters into ``dlx.exchange`` which feeds
the single inspection queue ``dlx.dlq``.

The empty exchange ``""`` routes straight to the queue named by the routing
key (reply queues use it).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Optional

DEFAULT_EXCHANGE = ""
DEAD_LETTER_EXCHANGE = "dlx.exchange"
DEAD_LETTER_QUEUE = "dlx.dlq"


class PriorityTier(StrEnum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Service order when a consumer listens to several tiers.
TIER_ORDER: tuple[PriorityTier, ...] = (
    PriorityTier.URGENT,
    PriorityTier.HIGH,
    PriorityTier.NORMAL,
    PriorityTier.LOW,
)


@dataclass(frozen=True)
class TierPolicy:
    max_priority: int
    message_ttl_seconds: int


TIER_POLICIES: dict[PriorityTier, TierPolicy] = {
    PriorityTier.URGENT: TierPolicy(max_priority=10, message_ttl_seconds=5 * 60),
    PriorityTier.HIGH: TierPolicy(max_priority=10, message_ttl_seconds=60 * 60),
    PriorityTier.NORMAL: TierPolicy(max_priority=7, message_ttl_seconds=12 * 3600),
    PriorityTier.LOW: TierPolicy(max_priority=5, message_ttl_seconds=24 * 3600),
}

# (domain, resource) families that get one queue per tier.
RESOURCE_FAMILIES: tuple[tuple[str, str], ...] = (
    ("osint", "characters"),
    ("osint", "guilds"),
    ("osint", "ladder"),
    ("dma", "auctions"),
)


# ── Topic matching ────────────────────────────────────────────────────────────


def topic_matches(pattern: str, key: str) -> bool:
    """AMQP topic match: ``*`` is exactly one word, ``#`` is zero or more."""
    return _match(pattern.split("."), key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


def build_routing_key(
    domain: str,
    resource: str,
    tier: PriorityTier,
    qualifier: Optional[str] = None,
) -> str:
    parts = [domain, resource]
    if qualifier:
        parts.append(qualifier)
    parts.append(str(tier))
    return ".".join(parts)


def tier_of(routing_key: str) -> PriorityTier:
    """Return the tier encoded as the last routing-key word.

    Raises:
        ValueError: If the last word is not a known tier.
    """
    return PriorityTier(routing_key.rsplit(".", 1)[-1])


# ── Declarations ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class QueueSpec:
    """A durable queue declaration.

    Attributes:
        name:                    Queue name.
        max_priority:            Envelope priorities above this are clamped.
        message_ttl_seconds:     Messages waiting longer are discarded.
        dead_letter_exchange:    Where rejected/exhausted messages go.
        dead_letter_routing_key: Routing key used on the dead-letter exchange.
        tier:                    Priority tier, ``None`` for non-tier queues.
        collapse_duplicates:     Drop a publish whose message id is already
                                 waiting here. Off for queues where every
                                 copy must be kept.
    """

    name: str
    max_priority: int = 10
    message_ttl_seconds: Optional[int] = None
    dead_letter_exchange: Optional[str] = DEAD_LETTER_EXCHANGE
    dead_letter_routing_key: Optional[str] = None
    tier: Optional[PriorityTier] = None
    durable: bool = True
    collapse_duplicates: bool = True


@dataclass(frozen=True)
class Binding:
    exchange: str
    pattern: str
    queue: str


@dataclass
class Topology:
    """All exchanges, queues and bindings a broker must declare."""

    queues: dict[str, QueueSpec] = field(default_factory=dict)
    bindings: list[Binding] = field(default_factory=list)

    def add_queue(self, spec: QueueSpec, bindings: Iterable[tuple[str, str]] = ()) -> None:
        self.queues[spec.name] = spec
        for exchange, pattern in bindings:
            self.bindings.append(Binding(exchange, pattern, spec.name))

    @property
    def exchanges(self) -> set[str]:
        return {b.exchange for b in self.bindings}

    def route(self, exchange: str, routing_key: str) -> list[str]:
        """Return the queue names a message published this way lands in."""
        if exchange == DEFAULT_EXCHANGE:
            return [routing_key] if routing_key in self.queues else []
        matched: list[str] = []
        for binding in self.bindings:
            if binding.exchange == exchange and topic_matches(binding.pattern, routing_key):
                if binding.queue not in matched:
                    matched.append(binding.queue)
        return matched

    def queues_matching(self, pattern: str) -> list[str]:
        """Queue names matching a topic pattern, in tier service order."""
        names = [
            name for name, spec in self.queues.items()
            if spec.tier is not None and topic_matches(pattern, name)
        ]
        return sorted(names, key=lambda n: TIER_ORDER.index(self.queues[n].tier))

    @staticmethod
    def exchange_for(routing_key: str) -> str:
        """Domain exchange for a routing key (``osint.*`` → ``osint.exchange``)."""
        return f"{routing_key.split('.', 1)[0]}.exchange"


def build_topology(
    families: Iterable[tuple[str, str]] = RESOURCE_FAMILIES,
) -> Topology:
    """Declare one queue per family × tier plus the dead-letter queue."""
    topology = Topology()
    for domain, resource in families:
        for tier in TIER_ORDER:
            policy = TIER_POLICIES[tier]
            name = f"{domain}.{resource}.{tier}"
            topology.add_queue(
                QueueSpec(
                    name=name,
                    max_priority=policy.max_priority,
                    message_ttl_seconds=policy.message_ttl_seconds,
                    dead_letter_exchange=DEAD_LETTER_EXCHANGE,
                    dead_letter_routing_key=f"dlx.{name}",
                    tier=tier,
                ),
                bindings=[(f"{domain}.exchange", f"{domain}.{resource}.#.{tier}")],
            )
    topology.add_queue(
        QueueSpec(name=DEAD_LETTER_QUEUE, dead_letter_exchange=None, collapse_duplicates=False),
        bindings=[(DEAD_LETTER_EXCHANGE, "#")],
    )
    return topology
