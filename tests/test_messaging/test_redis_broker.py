"""Tests for the Redis broker against a mocked ``redis.asyncio`` client.

Both Lua scripts go through ``client.eval``; the ``scripts`` fixture answers
them from a small script of pop results and records enqueues.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
import redis.exceptions

from wow_harvester.errors import InfrastructureError
from wow_harvester.messaging.broker import BrokerMessage
from wow_harvester.messaging.redis_broker import (
    ENQUEUE_SCRIPT,
    POP_SCRIPT,
    RedisBroker,
    message_score,
)
from wow_harvester.messaging.topology import DEAD_LETTER_QUEUE, build_topology

CHAR_KEY = "osint.characters.lfg.normal"
CHAR_QUEUE = "osint.characters.normal"
QUEUE_KEY = f"hv:broker:queue:{CHAR_QUEUE}"
IDS_KEY = f"hv:broker:queued:{CHAR_QUEUE}"
DLQ_KEY = f"hv:broker:queue:{DEAD_LETTER_QUEUE}"
INFLIGHT_KEY = "hv:broker:inflight"


class EvalScript:
    """Answers ``client.eval`` by script: enqueue results and queued pops."""

    def __init__(self) -> None:
        self.enqueue_result = 1
        self.pops: list = []
        self.enqueues: list[tuple] = []
        self.pop_calls: list[tuple] = []

    async def __call__(self, script, numkeys, *args):
        keys, argv = args[:numkeys], args[numkeys:]
        if script == ENQUEUE_SCRIPT:
            self.enqueues.append((keys, argv))
            return self.enqueue_result
        assert script == POP_SCRIPT
        self.pop_calls.append((keys, argv))
        return self.pops.pop(0) if self.pops else None

    def stored(self, index: int = -1) -> BrokerMessage:
        _, argv = self.enqueues[index]
        return BrokerMessage.from_json(argv[1])


@pytest.fixture
def scripts() -> EvalScript:
    return EvalScript()


@pytest.fixture
def client(scripts: EvalScript) -> AsyncMock:
    mock = AsyncMock()
    mock.eval.side_effect = scripts.__call__
    return mock


@pytest.fixture
def broker(client: AsyncMock) -> RedisBroker:
    return RedisBroker(client, key_prefix="hv", clock=lambda: 1000.0, poll_interval=0.01)


def _run(broker: RedisBroker, scenario):
    async def wrapped():
        await broker.declare(build_topology())
        return await scenario()

    return asyncio.run(wrapped())


class TestScore:
    def test_priority_dominates_time(self):
        assert message_score(10, 9e12) < message_score(9, 0)

    def test_fifo_within_priority(self):
        assert message_score(5, 1) < message_score(5, 2)


class TestPublish:
    def test_enqueue_claims_id_and_adds_member_in_one_script(self, broker, scripts):
        message = BrokerMessage(message_id="character:a@b", body="{}", priority=9)

        async def scenario():
            return await broker.publish("osint.exchange", CHAR_KEY, message)

        assert _run(broker, scenario) == 1
        [(keys, argv)] = scripts.enqueues
        assert keys == (IDS_KEY, QUEUE_KEY)
        message_id, _raw, score, collapse, expire = argv
        assert message_id == "character:a@b"
        assert float(score) == message_score(7, 1_000_000.0)
        assert collapse == "1"
        assert expire == "0"
        stored = scripts.stored()
        assert stored.priority == 7
        assert stored.routing_key == CHAR_KEY
        assert stored.expires_at == pytest.approx(1000.0 + 12 * 3600)

    def test_duplicate_collapsed_when_script_refuses(self, broker, scripts):
        scripts.enqueue_result = 0

        async def scenario():
            return await broker.publish("osint.exchange", CHAR_KEY, BrokerMessage("a", "{}"))

        assert _run(broker, scenario) == 0

    def test_unroutable(self, broker, scripts):
        async def scenario():
            return await broker.publish("osint.exchange", "osint.mounts.low", BrokerMessage("a", "{}"))

        assert _run(broker, scenario) == 0
        assert scripts.enqueues == []

    def test_reply_queue_routed_by_name_and_expires(self, broker, scripts):
        async def scenario():
            name = await broker.declare_reply_queue()
            await broker.publish("", name, BrokerMessage("r", "{}", correlation_id="c"))
            return name

        name = _run(broker, scenario)
        [(keys, argv)] = scripts.enqueues
        assert keys[1] == f"hv:broker:queue:{name}"
        assert argv[3] == "0"
        assert argv[4] == "300"

    def test_reply_queue_from_another_process_still_expires(self, broker, scripts):
        async def scenario():
            return await broker.publish("", "reply.remote", BrokerMessage("r", "{}", correlation_id="c"))

        assert _run(broker, scenario) == 1
        _, argv = scripts.enqueues[0]
        assert argv[3] == "0"
        assert argv[4] == "300"


class TestGet:
    def test_get_pops_and_tracks_inflight_atomically(self, broker, client, scripts):
        raw = BrokerMessage("character:a@b", "{}", priority=5).to_json()
        scripts.pops = [[2, raw]]

        async def scenario():
            return await broker.get(["osint.characters.urgent", CHAR_QUEUE], timeout=1.0)

        delivery = _run(broker, scenario)
        assert delivery.queue == CHAR_QUEUE
        assert delivery.message.message_id == "character:a@b"
        [(keys, argv)] = scripts.pop_calls
        assert keys == (
            INFLIGHT_KEY,
            "hv:broker:queue:osint.characters.urgent",
            "hv:broker:queued:osint.characters.urgent",
            QUEUE_KEY,
            IDS_KEY,
        )
        assert argv == (delivery.delivery_tag, "osint.characters.urgent", CHAR_QUEUE)
        client.hset.assert_not_awaited()
        client.srem.assert_not_awaited()

    def test_timeout_polls_until_deadline(self, broker, scripts):
        async def scenario():
            return await broker.get([CHAR_QUEUE], timeout=0.05)

        assert _run(broker, scenario) is None
        assert len(scripts.pop_calls) >= 2

    def test_waits_for_a_later_message(self, broker, scripts):
        raw = BrokerMessage("late", "{}").to_json()
        scripts.pops = [None, None, [1, raw]]

        async def scenario():
            return await broker.get([CHAR_QUEUE], timeout=1.0)

        assert _run(broker, scenario).message.message_id == "late"

    def test_expired_message_skipped_and_released(self, broker, client, scripts):
        stale = BrokerMessage("old", "{}", expires_at=10.0).to_json()
        fresh = BrokerMessage("new", "{}").to_json()
        scripts.pops = [[1, stale], [1, fresh]]

        async def scenario():
            return await broker.get([CHAR_QUEUE], timeout=1.0)

        assert _run(broker, scenario).message.message_id == "new"
        assert broker.expired_count == 1
        stale_tag = scripts.pop_calls[0][1][0]
        client.hdel.assert_awaited_once_with(INFLIGHT_KEY, stale_tag)


class TestAckNackRecover:
    def test_nack_dead_letters_then_releases(self, broker, client, scripts):
        raw = BrokerMessage("character:a@b", "{}", routing_key=CHAR_KEY).to_json()
        scripts.pops = [[1, raw]]

        async def scenario():
            delivery = await broker.get([CHAR_QUEUE], timeout=1.0)
            await broker.nack(delivery, reason="max-attempts", error="boom")
            return delivery

        delivery = _run(broker, scenario)
        client.hdel.assert_awaited_once_with(INFLIGHT_KEY, delivery.delivery_tag)
        [(keys, argv)] = scripts.enqueues
        assert keys[1] == DLQ_KEY
        assert argv[3] == "0"
        dead = scripts.stored()
        assert dead.headers["x-death-reason"] == "max-attempts"
        assert dead.headers["x-death-error"] == "boom"

    def test_requeue_uses_original_queue(self, broker, scripts):
        raw = BrokerMessage("character:a@b", "{}", routing_key=CHAR_KEY).to_json()
        scripts.pops = [[1, raw]]

        async def scenario():
            delivery = await broker.get([CHAR_QUEUE], timeout=1.0)
            await broker.nack(delivery, requeue=True)

        _run(broker, scenario)
        [(keys, argv)] = scripts.enqueues
        assert keys == (IDS_KEY, QUEUE_KEY)
        assert argv[3] == "1"

    def test_recover_inflight(self, broker, client, scripts):
        raw = BrokerMessage("character:a@b", "{}").to_json()
        client.hgetall.return_value = {"tag-1": json.dumps({"queue": CHAR_QUEUE, "message": raw})}

        async def scenario():
            return await broker.recover_inflight()

        assert _run(broker, scenario) == 1
        [(keys, argv)] = scripts.enqueues
        assert keys == (IDS_KEY, QUEUE_KEY)
        assert argv[0] == "character:a@b"
        client.hdel.assert_awaited_once_with(INFLIGHT_KEY, "tag-1")

    def test_redis_error_mapped(self, broker, client):
        client.ping.side_effect = redis.exceptions.ConnectionError("down")
        with pytest.raises(InfrastructureError, match="PING"):
            asyncio.run(broker.declare(build_topology()))

    def test_script_error_mapped(self, broker, client):
        client.eval.side_effect = redis.exceptions.ResponseError("NOSCRIPT")

        async def scenario():
            return await broker.publish("osint.exchange", CHAR_KEY, BrokerMessage("a", "{}"))

        with pytest.raises(InfrastructureError, match="ENQUEUE"):
            _run(broker, scenario)

    def test_depth(self, broker, client):
        client.zcard.return_value = 4
        assert asyncio.run(broker.depth(CHAR_QUEUE)) == 4
        client.zcard.assert_awaited_once_with(QUEUE_KEY)
