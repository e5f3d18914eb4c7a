"""Tests for the read-through character lookup over request/reply."""

from __future__ import annotations

import asyncio

import pytest

from wow_harvester.services import CharacterLookupService, LookupStatus
from wow_harvester.worker.worker import IngestionWorker

PROFILE = "/profile/wow/character/area-52/thrall"


@pytest.fixture
def service(db, router) -> CharacterLookupService:
    return CharacterLookupService(db, router, timeout=1.0)


def _with_worker(ctx, router, call):
    """Run ``call()`` while a characters worker consumes in the background."""

    async def scenario():
        IngestionWorker(ctx, router, role="characters").subscribe(concurrency=1)
        stop = asyncio.Event()
        consumer = asyncio.create_task(router.run(stop))
        try:
            return await call()
        finally:
            stop.set()
            await consumer

    return asyncio.run(scenario())


class TestCharacterLookup:
    def test_found_in_database(self, service, db, upstream, bodies, ctx, router):
        upstream.ok(PROFILE, bodies.profile())
        first = _with_worker(ctx, router, lambda: service.lookup("Thrall", "Area 52"))
        second = asyncio.run(service.lookup("thrall", "area-52"))
        assert first.status == LookupStatus.FOUND
        assert second.status == LookupStatus.FOUND
        assert second.character == db.characters.get("thrall@area-52")
        assert upstream.calls_to(PROFILE) == 1

    def test_fetched_by_worker(self, service, ctx, router, upstream, bodies):
        upstream.ok(PROFILE, bodies.profile(level=72))
        result = _with_worker(ctx, router, lambda: service.lookup("Thrall", "area-52"))
        assert result.status == LookupStatus.FOUND
        assert result.guid == "thrall@area-52"
        assert result.character.level == 72
        assert result.message == "Found."

    def test_pending_without_worker_queues_once(self, service, broker):
        async def scenario():
            first = await service.lookup("Thrall", "area-52", timeout=0.05)
            second = await service.lookup("Thrall", "area-52", timeout=0.05)
            return first, second, await broker.depth("osint.characters.urgent")

        first, second, depth = asyncio.run(scenario())
        assert first.status == LookupStatus.PENDING
        assert second.status == LookupStatus.PENDING
        assert first.character is None
        assert "queued" in first.message
        assert depth == 1

    def test_not_found_upstream(self, service, ctx, router, db):
        result = _with_worker(ctx, router, lambda: service.lookup("Nobody", "area-52"))
        assert result.status == LookupStatus.NOT_FOUND
        assert "404" in result.error
        assert db.characters.get("nobody@area-52") is None

    def test_refresh_bypasses_database(self, service, ctx, router, upstream, bodies):
        upstream.ok(PROFILE, bodies.profile())

        async def twice():
            await service.lookup("Thrall", "area-52")
            return await service.lookup("Thrall", "area-52", refresh=True)

        result = _with_worker(ctx, router, twice)
        assert result.status == LookupStatus.FOUND
        assert upstream.calls_to(PROFILE) == 2
