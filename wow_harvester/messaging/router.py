"""
Router: publish, subscribe, request/reply and failure policy over a ``Broker``.

Failure policy applied to every delivery:

  malformed envelope        → dead-lettered immediately (reason ``rejected``)
  expired envelope          → acked and dropped, never retried
  UpstreamTransientError    → republished with ``attempt + 1`` until
                              ``max_transient_attempts``, then dead-lettered
  any other handler error   → republished until ``max_attempts``, then
                              dead-lettered (reason ``max-attempts``)

Broker errors raised by the router's own calls are not caught: losing the
broker ends ``run()`` so the process can be restarted cleanly.

Request/reply::

    result = await router.request(character_job("Thrall", "Area 52",
                                                 CharacterOrigin.REQUEST),
                                  timeout=5.0)
    if result.status == RequestStatus.PENDING:
        ...  # not found yet, the job stays queued and completes on its own

``request()`` publishes exactly once and never raises on timeout.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from wow_harvester.errors import (
    EnvelopeValidationError,
    InfrastructureError,
    UpstreamTransientError,
)
from wow_harvester.messaging.broker import Broker, BrokerMessage, Delivery
from wow_harvester.messaging.envelope import JobEnvelope
from wow_harvester.messaging.topology import (
    DEAD_LETTER_QUEUE,
    DEFAULT_EXCHANGE,
    Topology,
    build_topology,
)
from wow_harvester.utils.logging import log_event
from wow_harvester.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

Handler = Callable[[JobEnvelope], Awaitable[Optional[dict[str, Any]]]]


class RequestStatus(StrEnum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class RequestResult:
    """Outcome of ``Router.request()``.

    ``PENDING`` means no reply arrived in time; the job is still queued.
    """

    status: RequestStatus
    envelope_id: str
    body: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == RequestStatus.PENDING


@dataclass
class PublishReport:
    requested: int = 0
    published: int = 0
    collapsed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class DispatchStats:
    handled: int = 0
    retried: int = 0
    dead_lettered: int = 0
    rejected: int = 0
    expired: int = 0


@dataclass(frozen=True)
class DeadLetter:
    """A dead-lettered message as shown by ``inspect-dlq``."""

    message_id: str
    reason: str
    queue: str
    routing_key: str
    error: Optional[str]
    attempt: Optional[int]
    dead_at: Optional[datetime]


@dataclass
class Subscription:
    pattern: str
    handler: Handler
    concurrency: int
    queues: list[str]


class Router:
    """Routes ``JobEnvelope``s through a ``Broker``.

    Args:
        broker:                 Message broker.
        topology:               Queue layout; defaults to ``build_topology()``.
        max_attempts:           Delivery budget for handler errors.
        max_transient_attempts: Delivery budget for upstream transient errors.
        request_timeout:        Default ``request()`` timeout in seconds.
        poll_timeout:           How long a consumer slot blocks per ``get``.
        clock:                  Returns the current aware datetime.
    """

    def __init__(
        self,
        broker: Broker,
        topology: Optional[Topology] = None,
        *,
        max_attempts: int = 3,
        max_transient_attempts: int = 10,
        request_timeout: float = 5.0,
        poll_timeout: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.broker = broker
        self.topology = topology or build_topology()
        self.max_attempts = max_attempts
        self.max_transient_attempts = max_transient_attempts
        self.request_timeout = request_timeout
        self.poll_timeout = poll_timeout
        self._clock = clock
        self._subscriptions: list[Subscription] = []
        self._started = False
        self.stats = DispatchStats()

    async def start(self) -> None:
        if not self._started:
            await self.broker.declare(self.topology)
            self._started = True

    # ── Publishing ────────────────────────────────────────────────────────────

    def _to_message(
        self,
        envelope: JobEnvelope,
        reply_to: Optional[str],
        correlation_id: Optional[str],
    ) -> BrokerMessage:
        return BrokerMessage(
            message_id=envelope.id,
            body=envelope.encode(),
            priority=envelope.priority,
            routing_key=envelope.routing_key,
            expires_at=envelope.expires_at.timestamp() if envelope.expires_at else None,
            reply_to=reply_to,
            correlation_id=correlation_id,
            headers={"attempt": envelope.attempt, "source": envelope.source},
        )

    async def publish(
        self,
        envelope: JobEnvelope,
        *,
        reply_to: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> int:
        """Publish one envelope to its domain exchange.

        Returns:
            Number of queues it landed in (0 when collapsed or unroutable).
        """
        await self.start()
        exchange = Topology.exchange_for(envelope.routing_key)
        message = self._to_message(envelope, reply_to, correlation_id)
        return await self.broker.publish(exchange, envelope.routing_key, message)

    async def publish_bulk(self, envelopes: Iterable[JobEnvelope]) -> PublishReport:
        """Publish many envelopes; individual failures are reported, not raised.

        Raises:
            InfrastructureError: If every publish failed.
        """
        batch = list(envelopes)
        report = PublishReport(requested=len(batch))
        if not batch:
            return report

        results = await asyncio.gather(
            *(self.publish(envelope) for envelope in batch), return_exceptions=True
        )
        for envelope, result in zip(batch, results):
            if isinstance(result, BaseException):
                report.failed += 1
                report.errors.append(f"{envelope.id}: {result}")
            elif result:
                report.published += 1
            else:
                report.collapsed += 1

        if report.failed:
            logger.warning(
                "publish_bulk: %d/%d failed (first: %s)",
                report.failed, report.requested, report.errors[0],
            )
        if report.failed == report.requested:
            raise InfrastructureError(f"All {report.failed} publishes failed: {report.errors[0]}")
        return report

    # ── Request / reply ───────────────────────────────────────────────────────

    async def request(self, envelope: JobEnvelope, timeout: Optional[float] = None) -> RequestResult:
        """Publish ``envelope`` and wait for its correlated reply.

        Returns ``RequestStatus.PENDING`` when no reply arrives within
        ``timeout``; the job is not cancelled and is not published again.
        """
        await self.start()
        timeout = self.request_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        reply_queue = await self.broker.declare_reply_queue()
        correlation_id = uuid4().hex

        try:
            await self.publish(envelope, reply_to=reply_queue, correlation_id=correlation_id)
            deadline = loop.time() + timeout
            while (remaining := deadline - loop.time()) > 0:
                delivery = await self.broker.get([reply_queue], timeout=remaining)
                if delivery is None:
                    break
                await self.broker.ack(delivery)
                if delivery.message.correlation_id != correlation_id:
                    logger.debug("Ignoring uncorrelated reply on %s", reply_queue)
                    continue
                reply = json.loads(delivery.message.body)
                return RequestResult(
                    status=RequestStatus(reply["status"]),
                    envelope_id=envelope.id,
                    body=reply.get("body"),
                    error=reply.get("error"),
                )
        finally:
            await self.broker.delete_queue(reply_queue)

        log_event(
            logger,
            logging.INFO,
            "router.request_pending",
            f"No reply for {envelope.id} within {timeout:.1f}s; left queued",
            envelope_id=envelope.id,
            timeout_s=timeout,
        )
        return RequestResult(status=RequestStatus.PENDING, envelope_id=envelope.id)

    async def _reply(
        self,
        message: BrokerMessage,
        status: RequestStatus,
        body: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        if not message.reply_to:
            return
        reply = BrokerMessage(
            message_id=uuid4().hex,
            body=json.dumps({"status": str(status), "body": body, "error": error}, default=str),
            correlation_id=message.correlation_id,
        )
        await self.broker.publish(DEFAULT_EXCHANGE, message.reply_to, reply)

    # ── Consuming ─────────────────────────────────────────────────────────────

    def subscribe(self, pattern: str, handler: Handler, concurrency: int = 1) -> Subscription:
        """Register ``handler`` for every tier queue matching ``pattern``.

        Queues are serviced in tier order (urgent first).

        Raises:
            ValueError: If no queue matches or concurrency < 1.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}.")
        queues = self.topology.queues_matching(pattern)
        if not queues:
            raise ValueError(f"No queues match subscription pattern '{pattern}'.")
        subscription = Subscription(pattern, handler, concurrency, queues)
        self._subscriptions.append(subscription)
        logger.info("Subscribed %s → %s (concurrency=%d)", pattern, ", ".join(queues), concurrency)
        return subscription

    async def run(
        self,
        stop: Optional[asyncio.Event] = None,
        *,
        until_idle: bool = False,
    ) -> DispatchStats:
        """Run every subscription's consumer slots.

        Args:
            stop:       Set to stop consuming after in-progress jobs finish.
            until_idle: Also stop once every slot has found its queues empty
                        with nothing in progress (``run-local``, tests).
        """
        await self.start()
        stop = stop or asyncio.Event()
        slots = [
            (subscription, index)
            for subscription in self._subscriptions
            for index in range(subscription.concurrency)
        ]
        if not slots:
            raise ValueError("Router.run() called with no subscriptions.")

        idle: set[int] = set()
        busy = 0

        async def consume(slot_id: int, subscription: Subscription) -> None:
            nonlocal busy
            while not stop.is_set():
                delivery = await self.broker.get(subscription.queues, timeout=self.poll_timeout)
                if delivery is None:
                    idle.add(slot_id)
                    if until_idle and busy == 0 and len(idle) == len(slots):
                        stop.set()
                    continue
                idle.discard(slot_id)
                busy += 1
                try:
                    await self._dispatch(delivery, subscription.handler)
                finally:
                    busy -= 1

        tasks = [
            asyncio.create_task(consume(slot_id, subscription))
            for slot_id, (subscription, _) in enumerate(slots)
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        return self.stats

    async def _dispatch(self, delivery: Delivery, handler: Handler) -> None:
        message = delivery.message
        try:
            envelope = JobEnvelope.decode(message.body)
        except EnvelopeValidationError as exc:
            await self._reject(delivery, exc)
            return

        if envelope.is_expired(self._clock()):
            self.stats.expired += 1
            await self.broker.ack(delivery)
            logger.info("Dropped expired envelope %s (attempt %d)", envelope.id, envelope.attempt)
            return

        try:
            result = await handler(envelope)
        except EnvelopeValidationError as exc:
            await self._reject(delivery, exc)
        except UpstreamTransientError as exc:
            await self._retry_or_dead_letter(delivery, envelope, exc, self.max_transient_attempts)
        except Exception as exc:
            logger.error("Handler failed for %s (attempt %d): %s", envelope.id, envelope.attempt, exc,
                         exc_info=not isinstance(exc, InfrastructureError))
            await self._retry_or_dead_letter(delivery, envelope, exc, self.max_attempts)
        else:
            await self.broker.ack(delivery)
            self.stats.handled += 1
            await self._reply(message, RequestStatus.COMPLETED, body=result)

    async def _reject(self, delivery: Delivery, exc: Exception) -> None:
        self.stats.rejected += 1
        log_event(
            logger,
            logging.ERROR,
            "router.rejected",
            f"Rejected malformed message {delivery.message.message_id}: {exc}",
            message_id=delivery.message.message_id,
            queue=delivery.queue,
        )
        await self.broker.nack(delivery, requeue=False, reason="rejected", error=str(exc))
        await self._reply(delivery.message, RequestStatus.FAILED, error=str(exc))

    async def _retry_or_dead_letter(
        self,
        delivery: Delivery,
        envelope: JobEnvelope,
        exc: Exception,
        budget: int,
    ) -> None:
        error = f"{type(exc).__name__}: {exc}"
        if envelope.attempt + 1 < budget:
            retry = envelope.next_attempt(error)
            await self.publish(
                retry,
                reply_to=delivery.message.reply_to,
                correlation_id=delivery.message.correlation_id,
            )
            await self.broker.ack(delivery)
            self.stats.retried += 1
            logger.info("Requeued %s as attempt %d/%d: %s", envelope.id, retry.attempt + 1, budget, error)
            return

        await self.broker.nack(delivery, requeue=False, reason="max-attempts", error=error)
        self.stats.dead_lettered += 1
        log_event(
            logger,
            logging.ERROR,
            "router.dead_letter",
            f"Dead-lettered {envelope.id} after {envelope.attempt + 1} attempt(s): {error}",
            envelope_id=envelope.id,
            routing_key=envelope.routing_key,
            attempts=envelope.attempt + 1,
        )
        await self._reply(delivery.message, RequestStatus.FAILED, error=error)

    # ── Inspection ────────────────────────────────────────────────────────────

    async def dead_letters(self, limit: int = 50) -> list[DeadLetter]:
        await self.start()
        entries: list[DeadLetter] = []
        for message in await self.broker.peek(DEAD_LETTER_QUEUE, limit):
            headers = message.headers
            dead_at = headers.get("x-death-at")
            entries.append(
                DeadLetter(
                    message_id=message.message_id,
                    reason=headers.get("x-death-reason", "unknown"),
                    queue=headers.get("x-death-queue", ""),
                    routing_key=headers.get("x-death-routing-key", message.routing_key),
                    error=headers.get("x-death-error"),
                    attempt=headers.get("attempt"),
                    dead_at=datetime.fromtimestamp(dead_at, tz=utcnow().tzinfo) if dead_at else None,
                )
            )
        return entries

    async def queue_depths(self) -> dict[str, int]:
        await self.start()
        return {name: await self.broker.depth(name) for name in self.topology.queues}
