"""
Message broker abstraction and the in-process implementation.

The ``Broker`` contract is deliberately close to AMQP so the ``Router`` can
express priority tiers, dead-lettering and request/reply without caring
which backend is underneath:

  ``declare(topology)``            queues, bindings, dead-letter targets
  ``publish(exchange, key, msg)``  topic-routed fan-out; returns queues hit
  ``get(queues, timeout)``         first non-empty queue in the given order wins
  ``ack`` / ``nack(requeue)``      nack without requeue dead-letters
  ``declare_reply_queue()``        exclusive queue for request/reply

Per queue, the broker:
  - clamps message priority to the queue's ``max_priority``;
  - drops a publish whose ``message_id`` is already waiting in that queue
    (replies and other messages with ``reply_to`` are never collapsed);
  - discards messages past their expiry instead of delivering them.

``InMemoryBroker`` serves single-process runs (``run-local``, tests);
``RedisBroker`` (``redis_broker.py``) shares queues between processes.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional
from uuid import uuid4

from wow_harvester.messaging.topology import (
    DEFAULT_EXCHANGE,
    QueueSpec,
    Topology,
)

logger = logging.getLogger(__name__)

REPLY_QUEUE_PREFIX = "reply"


@dataclass
class BrokerMessage:
    """A message as the broker sees it.

    Attributes:
        message_id:     Dedup identity (the envelope id for jobs).
        body:           Serialized payload (JSON text).
        priority:       0-10; clamped per queue on enqueue.
        routing_key:    Key the message was published with.
        expires_at:     Epoch seconds after which it is discarded.
        reply_to:       Queue name for request/reply.
        correlation_id: Request/reply correlation.
        headers:        Free-form metadata (dead-letter reason etc.).
    """

    message_id: str
    body: str
    priority: int = 0
    routing_key: str = ""
    expires_at: Optional[float] = None
    reply_to: Optional[str] = None
    correlation_id: Optional[str] = None
    headers: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "BrokerMessage":
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class Delivery:
    """A message handed to a consumer and awaiting ack/nack."""

    queue: str
    message: BrokerMessage
    delivery_tag: str


# ── Shared helpers ────────────────────────────────────────────────────────────


def prepare_for_queue(message: BrokerMessage, spec: Optional[QueueSpec], now: float) -> BrokerMessage:
    """Apply a queue's priority ceiling and message TTL to a message copy."""
    if spec is None:
        return message
    priority = min(max(message.priority, 0), spec.max_priority)
    expires_at = message.expires_at
    if spec.message_ttl_seconds is not None:
        queue_expiry = now + spec.message_ttl_seconds
        expires_at = queue_expiry if expires_at is None else min(expires_at, queue_expiry)
    return replace(message, priority=priority, expires_at=expires_at)


def dead_letter_copy(
    message: BrokerMessage,
    queue: str,
    reason: str,
    error: Optional[str] = None,
) -> BrokerMessage:
    """Copy of ``message`` annotated for the dead-letter queue (no expiry)."""
    headers = dict(message.headers)
    headers["x-death-reason"] = reason
    headers["x-death-queue"] = queue
    headers["x-death-routing-key"] = message.routing_key
    headers["x-death-count"] = int(headers.get("x-death-count", 0)) + 1
    headers["x-death-at"] = time.time()
    if error:
        headers["x-death-error"] = error[:2000]
    return replace(message, expires_at=None, reply_to=None, correlation_id=None, headers=headers)


def is_expired(message: BrokerMessage, now: float) -> bool:
    return message.expires_at is not None and message.expires_at <= now


# ── Contract ──────────────────────────────────────────────────────────────────


class Broker(ABC):
    """Abstract message broker."""

    def __init__(self) -> None:
        self.topology = Topology()
        self.expired_count = 0

    @abstractmethod
    async def declare(self, topology: Topology) -> None:
        ...

    @abstractmethod
    async def publish(self, exchange: str, routing_key: str, message: BrokerMessage) -> int:
        """Route and enqueue ``message``.

        Returns:
            Number of queues the message was enqueued in (0 = unroutable or
            collapsed into an identical waiting message).
        """
        ...

    @abstractmethod
    async def get(self, queues: Sequence[str], timeout: float) -> Optional[Delivery]:
        """Pop the best message from the first non-empty queue, waiting up to ``timeout``."""
        ...

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def nack(
        self,
        delivery: Delivery,
        requeue: bool = False,
        reason: str = "rejected",
        error: Optional[str] = None,
    ) -> None:
        """Negative-acknowledge; without ``requeue`` the message is dead-lettered."""
        ...

    @abstractmethod
    async def declare_reply_queue(self) -> str:
        ...

    @abstractmethod
    async def delete_queue(self, name: str) -> None:
        ...

    @abstractmethod
    async def peek(self, queue: str, limit: int = 50) -> list[BrokerMessage]:
        """Return up to ``limit`` waiting messages without consuming them."""
        ...

    @abstractmethod
    async def depth(self, queue: str) -> int:
        ...

    async def close(self) -> None:
        return None


# ── In-process implementation ─────────────────────────────────────────────────


class InMemoryBroker(Broker):
    """asyncio broker with per-queue priority heaps.

    Args:
        clock: Wall clock in seconds, used for message expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        super().__init__()
        self._clock = clock
        self._heaps: dict[str, list[tuple[int, int, BrokerMessage]]] = {}
        self._waiting_ids: dict[str, set[str]] = {}
        self._inflight: dict[str, Delivery] = {}
        self._seq = itertools.count()
        self._cond = asyncio.Condition()

    async def declare(self, topology: Topology) -> None:
        for name, spec in topology.queues.items():
            self.topology.queues[name] = spec
            self._heaps.setdefault(name, [])
            self._waiting_ids.setdefault(name, set())
        for binding in topology.bindings:
            if binding not in self.topology.bindings:
                self.topology.bindings.append(binding)

    def _enqueue(self, queue: str, message: BrokerMessage) -> bool:
        spec = self.topology.queues.get(queue)
        if spec is None:
            return False
        waiting = self._waiting_ids[queue]
        collapse = spec.collapse_duplicates and message.reply_to is None
        if collapse and message.message_id in waiting:
            logger.debug("Collapsed duplicate %s on %s", message.message_id, queue)
            return False
        prepared = prepare_for_queue(message, spec, self._clock())
        heapq.heappush(self._heaps[queue], (-prepared.priority, next(self._seq), prepared))
        if collapse:
            waiting.add(message.message_id)
        return True

    async def publish(self, exchange: str, routing_key: str, message: BrokerMessage) -> int:
        message = replace(message, routing_key=routing_key)
        async with self._cond:
            queues = self.topology.route(exchange, routing_key)
            enqueued = sum(1 for q in queues if self._enqueue(q, message))
            if enqueued:
                self._cond.notify_all()
        if not queues:
            logger.warning("Unroutable message %s (%s/%s)", message.message_id, exchange, routing_key)
        return enqueued

    def _pop_first(self, queues: Sequence[str]) -> Optional[Delivery]:
        now = self._clock()
        for queue in queues:
            heap = self._heaps.get(queue)
            while heap:
                _, _, message = heapq.heappop(heap)
                if message.reply_to is None:
                    self._waiting_ids[queue].discard(message.message_id)
                if is_expired(message, now):
                    self.expired_count += 1
                    logger.debug("Discarded expired %s from %s", message.message_id, queue)
                    continue
                delivery = Delivery(queue=queue, message=message, delivery_tag=uuid4().hex)
                self._inflight[delivery.delivery_tag] = delivery
                return delivery
        return None

    async def get(self, queues: Sequence[str], timeout: float) -> Optional[Delivery]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        async with self._cond:
            while True:
                delivery = self._pop_first(queues)
                if delivery is not None:
                    return delivery
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    return self._pop_first(queues)

    async def ack(self, delivery: Delivery) -> None:
        self._inflight.pop(delivery.delivery_tag, None)

    async def nack(
        self,
        delivery: Delivery,
        requeue: bool = False,
        reason: str = "rejected",
        error: Optional[str] = None,
    ) -> None:
        self._inflight.pop(delivery.delivery_tag, None)
        async with self._cond:
            if requeue:
                if self._enqueue(delivery.queue, delivery.message):
                    self._cond.notify_all()
                return
            spec = self.topology.queues.get(delivery.queue)
            if spec is None or spec.dead_letter_exchange is None:
                logger.warning(
                    "Dropping %s from %s: no dead-letter target", delivery.message.message_id, delivery.queue
                )
                return
            dead = dead_letter_copy(delivery.message, delivery.queue, reason, error)
            routing_key = spec.dead_letter_routing_key or delivery.message.routing_key
            dead = replace(dead, routing_key=routing_key)
            targets = self.topology.route(spec.dead_letter_exchange, routing_key)
            if not any(self._enqueue(q, dead) for q in targets):
                logger.warning("Dead letter for %s was not routed", delivery.message.message_id)
            else:
                self._cond.notify_all()

    async def declare_reply_queue(self) -> str:
        name = f"{REPLY_QUEUE_PREFIX}.{uuid4().hex}"
        await self.declare(_reply_topology(name))
        return name

    async def delete_queue(self, name: str) -> None:
        self.topology.queues.pop(name, None)
        self._heaps.pop(name, None)
        self._waiting_ids.pop(name, None)

    async def peek(self, queue: str, limit: int = 50) -> list[BrokerMessage]:
        heap = self._heaps.get(queue, [])
        return [message for _, _, message in sorted(heap)[:limit]]

    async def depth(self, queue: str) -> int:
        return len(self._heaps.get(queue, []))

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)


def _reply_topology(name: str) -> Topology:
    topology = Topology()
    topology.add_queue(QueueSpec(name=name, dead_letter_exchange=None, durable=False, collapse_duplicates=False))
    return topology


__all__ = [
    "DEFAULT_EXCHANGE",
    "Broker",
    "BrokerMessage",
    "Delivery",
    "InMemoryBroker",
]
