"""Tests for the process-local key/value store."""

from __future__ import annotations

import asyncio

from wow_harvester.store.base import KeyValueStore
from wow_harvester.store.memory import MemoryKeyValueStore


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestMemoryStore:
    def test_satisfies_protocol(self):
        assert isinstance(MemoryKeyValueStore(), KeyValueStore)

    def test_set_get_delete(self):
        store = MemoryKeyValueStore()

        async def scenario():
            assert await store.get("k") is None
            assert await store.set("k", "v") is True
            assert await store.get("k") == "v"
            assert await store.exists("k") is True
            assert await store.delete("k") is True
            assert await store.delete("k") is False
            return await store.exists("k")

        assert asyncio.run(scenario()) is False

    def test_ttl_expiry(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)

        async def scenario():
            await store.set("k", "v", ttl_seconds=10)
            clock.now = 9.9
            alive = await store.exists("k")
            remaining = await store.ttl("k")
            clock.now = 10.0
            return alive, remaining, await store.exists("k")

        alive, remaining, after = asyncio.run(scenario())
        assert alive is True
        assert 0 < remaining <= 0.1 + 1e-9
        assert after is False
        assert len(store) == 0

    def test_only_if_absent(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)

        async def scenario():
            first = await store.set("lock", "a", ttl_seconds=5, only_if_absent=True)
            second = await store.set("lock", "b", ttl_seconds=5, only_if_absent=True)
            clock.now = 6
            third = await store.set("lock", "c", ttl_seconds=5, only_if_absent=True)
            return first, second, third, await store.get("lock")

        assert asyncio.run(scenario()) == (True, False, True, "c")

    def test_delete_if_equals(self):
        store = MemoryKeyValueStore()

        async def scenario():
            await store.set("lock", "mine")
            wrong = await store.delete_if_equals("lock", "theirs")
            right = await store.delete_if_equals("lock", "mine")
            return wrong, right, await store.exists("lock")

        assert asyncio.run(scenario()) == (False, True, False)

    def test_incr_keeps_first_window(self):
        clock = FakeClock()
        store = MemoryKeyValueStore(clock=clock)

        async def scenario():
            counts = [await store.incr("c", ttl_seconds=10)]
            clock.now = 5
            counts.append(await store.incr("c", ttl_seconds=10))
            clock.now = 10
            counts.append(await store.incr("c", ttl_seconds=10))
            return counts

        # the second incr does not extend the window, so the third starts over
        assert asyncio.run(scenario()) == [1, 2, 1]

    def test_close_clears(self):
        store = MemoryKeyValueStore()

        async def scenario():
            await store.set("k", "v")
            await store.close()

        asyncio.run(scenario())
        assert len(store) == 0
