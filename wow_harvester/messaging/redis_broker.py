"""
Redis-backed ``Broker`` for multi-process deployments.

Layout (all keys under ``<prefix>:broker:``)::

    queue:<name>    ZSET   member = BrokerMessage JSON
                           score  = (10 - priority) * 1e13 + enqueue-ms
    queued:<name>   SET    message ids currently waiting (publish dedup)
    inflight        HASH   delivery_tag → {"queue", "message"} JSON

Every state change spanning more than one key runs as a Lua script, so a
crash or a competing consumer never sees half of it:

  - ``ENQUEUE_SCRIPT`` claims the message id in ``queued:<name>`` and adds
    the message to ``queue:<name>`` together.
  - ``POP_SCRIPT`` takes the best message from the first non-empty queue in
    the caller's order, releases its id and records it in ``inflight``.

Redis services the highest tier first and, within a queue, the highest
priority first with FIFO among equals.  ``get()`` polls ``POP_SCRIPT`` until
its timeout runs out.

Routing happens client side from the declared ``Topology``; every process
declares the same topology at start-up.  Messages left in ``inflight`` by a
crashed process are put back with ``recover_inflight()``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any, Optional
from uuid import uuid4

import redis.asyncio as aioredis
import redis.exceptions

from wow_harvester.errors import InfrastructureError
from wow_harvester.messaging.broker import (
    REPLY_QUEUE_PREFIX,
    Broker,
    BrokerMessage,
    Delivery,
    dead_letter_copy,
    is_expired,
    prepare_for_queue,
)
from wow_harvester.messaging.envelope import MAX_PRIORITY
from wow_harvester.messaging.topology import DEFAULT_EXCHANGE, QueueSpec, Topology

logger = logging.getLogger(__name__)

_PRIORITY_STRIDE = 1e13
REPLY_QUEUE_TTL_SECONDS = 300
POLL_INTERVAL_SECONDS = 0.05

# KEYS[1] = queued ids set, KEYS[2] = queue zset
# ARGV = message id, message JSON, score, collapse ("1"/"0"), expire seconds ("0" = none)
ENQUEUE_SCRIPT = """
if ARGV[4] == '1' then
    if redis.call('SADD', KEYS[1], ARGV[1]) == 0 then
        return 0
    end
end
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[2])
local ttl = tonumber(ARGV[5])
if ttl > 0 then
    redis.call('EXPIRE', KEYS[2], ttl)
end
return 1
"""

# KEYS[1] = inflight hash, then (queue zset, queued ids set) pairs in service order
# ARGV[1] = delivery tag, ARGV[2..] = queue names matching the pairs
# Returns {pair index (1-based), message JSON} or nil when every queue is empty.
POP_SCRIPT = """
local n = 0
for i = 2, #KEYS, 2 do
    n = n + 1
    local popped = redis.call('ZPOPMIN', KEYS[i])
    if #popped > 0 then
        local raw = popped[1]
        local message = cjson.decode(raw)
        if message['reply_to'] == nil or message['reply_to'] == cjson.null then
            redis.call('SREM', KEYS[i + 1], message['message_id'])
        end
        redis.call('HSET', KEYS[1], ARGV[1], cjson.encode({queue = ARGV[n + 1], message = raw}))
        return {n, raw}
    end
end
return nil
"""


def message_score(priority: int, enqueued_ms: float) -> float:
    return (MAX_PRIORITY - priority) * _PRIORITY_STRIDE + enqueued_ms


class RedisBroker(Broker):
    """``Broker`` over Redis sorted sets.

    Args:
        client:        Async Redis client (``decode_responses=True``).
        key_prefix:    Namespace for broker keys.
        clock:         Wall clock in seconds.
        poll_interval: Seconds between pops while ``get()`` waits.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        key_prefix: str = "harvester",
        clock: Callable[[], float] = time.time,
        poll_interval: float = POLL_INTERVAL_SECONDS,
    ) -> None:
        super().__init__()
        self._redis = client
        self._prefix = f"{key_prefix}:broker"
        self._clock = clock
        self._poll_interval = poll_interval

    # ── Keys ──────────────────────────────────────────────────────────────────

    def _queue_key(self, name: str) -> str:
        return f"{self._prefix}:queue:{name}"

    def _ids_key(self, name: str) -> str:
        return f"{self._prefix}:queued:{name}"

    @property
    def _inflight_key(self) -> str:
        return f"{self._prefix}:inflight"

    async def _call(self, op: str, coro: Any) -> Any:
        try:
            return await coro
        except redis.exceptions.RedisError as exc:
            logger.error("Redis broker %s failed: %s", op, exc)
            raise InfrastructureError(f"Redis broker {op} failed: {exc}") from exc

    # ── Broker contract ───────────────────────────────────────────────────────

    async def declare(self, topology: Topology) -> None:
        for name, spec in topology.queues.items():
            self.topology.queues[name] = spec
        for binding in topology.bindings:
            if binding not in self.topology.bindings:
                self.topology.bindings.append(binding)
        await self._call("PING", self._redis.ping())

    def _route(self, exchange: str, routing_key: str) -> list[str]:
        if exchange == DEFAULT_EXCHANGE and routing_key.startswith(f"{REPLY_QUEUE_PREFIX}."):
            return [routing_key]
        return self.topology.route(exchange, routing_key)

    def _spec(self, queue: str) -> Optional[QueueSpec]:
        spec = self.topology.queues.get(queue)
        if spec is None and queue.startswith(f"{REPLY_QUEUE_PREFIX}."):
            # reply queue declared by another process
            spec = _reply_spec(queue)
        return spec

    async def _enqueue(self, queue: str, message: BrokerMessage) -> bool:
        spec = self._spec(queue)
        prepared = prepare_for_queue(message, spec, self._clock())
        collapse = spec is not None and spec.collapse_duplicates and message.reply_to is None
        expire = REPLY_QUEUE_TTL_SECONDS if queue.startswith(f"{REPLY_QUEUE_PREFIX}.") else 0
        added = await self._call(
            "ENQUEUE",
            self._redis.eval(
                ENQUEUE_SCRIPT,
                2,
                self._ids_key(queue),
                self._queue_key(queue),
                message.message_id,
                prepared.to_json(),
                repr(message_score(prepared.priority, self._clock() * 1000)),
                "1" if collapse else "0",
                str(expire),
            ),
        )
        if not int(added):
            logger.debug("Collapsed duplicate %s on %s", message.message_id, queue)
            return False
        return True

    async def publish(self, exchange: str, routing_key: str, message: BrokerMessage) -> int:
        message = replace(message, routing_key=routing_key)
        queues = self._route(exchange, routing_key)
        if not queues:
            logger.warning("Unroutable message %s (%s/%s)", message.message_id, exchange, routing_key)
            return 0
        enqueued = 0
        for queue in queues:
            if await self._enqueue(queue, message):
                enqueued += 1
        return enqueued

    async def _pop(self, queues: Sequence[str]) -> Optional[Delivery]:
        keys = [self._inflight_key]
        for queue in queues:
            keys += [self._queue_key(queue), self._ids_key(queue)]
        tag = uuid4().hex
        popped = await self._call("POP", self._redis.eval(POP_SCRIPT, len(keys), *keys, tag, *queues))
        if not popped:
            return None
        index, raw = popped
        queue = queues[int(index) - 1]
        return Delivery(queue=queue, message=BrokerMessage.from_json(raw), delivery_tag=tag)

    async def get(self, queues: Sequence[str], timeout: float) -> Optional[Delivery]:
        if not queues:
            return None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(timeout, 0.0)
        while True:
            delivery = await self._pop(queues)
            if delivery is not None:
                if not is_expired(delivery.message, self._clock()):
                    return delivery
                self.expired_count += 1
                logger.debug("Discarded expired %s from %s", delivery.message.message_id, delivery.queue)
                await self.ack(delivery)
                continue
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def ack(self, delivery: Delivery) -> None:
        await self._call("HDEL", self._redis.hdel(self._inflight_key, delivery.delivery_tag))

    async def nack(
        self,
        delivery: Delivery,
        requeue: bool = False,
        reason: str = "rejected",
        error: Optional[str] = None,
    ) -> None:
        # enqueue before releasing the in-flight record; a crash in between
        # leaves the message recoverable instead of lost
        if requeue:
            await self._enqueue(delivery.queue, delivery.message)
            await self.ack(delivery)
            return
        spec = self.topology.queues.get(delivery.queue)
        if spec is None or spec.dead_letter_exchange is None:
            logger.warning("Dropping %s from %s: no dead-letter target", delivery.message.message_id, delivery.queue)
            await self.ack(delivery)
            return
        routing_key = spec.dead_letter_routing_key or delivery.message.routing_key
        dead = replace(
            dead_letter_copy(delivery.message, delivery.queue, reason, error),
            routing_key=routing_key,
        )
        routed = False
        for queue in self.topology.route(spec.dead_letter_exchange, routing_key):
            routed = await self._enqueue(queue, dead) or routed
        if not routed:
            logger.warning("Dead letter for %s was not routed", delivery.message.message_id)
        await self.ack(delivery)

    async def declare_reply_queue(self) -> str:
        name = f"{REPLY_QUEUE_PREFIX}.{uuid4().hex}"
        self.topology.queues[name] = _reply_spec(name)
        return name

    async def delete_queue(self, name: str) -> None:
        self.topology.queues.pop(name, None)
        await self._call("DEL", self._redis.delete(self._queue_key(name), self._ids_key(name)))

    async def peek(self, queue: str, limit: int = 50) -> list[BrokerMessage]:
        raws = await self._call("ZRANGE", self._redis.zrange(self._queue_key(queue), 0, limit - 1))
        return [BrokerMessage.from_json(raw) for raw in raws]

    async def depth(self, queue: str) -> int:
        return int(await self._call("ZCARD", self._redis.zcard(self._queue_key(queue))))

    async def recover_inflight(self) -> int:
        """Requeue every message left in-flight by a crashed consumer.

        Only safe when no other consumer of these queues is running.

        Returns:
            Number of messages requeued.
        """
        entries = await self._call("HGETALL", self._redis.hgetall(self._inflight_key))
        recovered = 0
        for tag, raw in entries.items():
            record = json.loads(raw)
            message = BrokerMessage.from_json(record["message"])
            await self._enqueue(record["queue"], message)
            await self._call("HDEL", self._redis.hdel(self._inflight_key, tag))
            recovered += 1
        if recovered:
            logger.warning("Recovered %d in-flight message(s).", recovered)
        return recovered

    async def close(self) -> None:
        await self._redis.aclose()


def _reply_spec(name: str) -> QueueSpec:
    return QueueSpec(name=name, dead_letter_exchange=None, durable=False, collapse_duplicates=False)
