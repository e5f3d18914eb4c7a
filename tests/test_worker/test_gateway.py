"""Tests for the rate-controlled upstream gateway."""

from __future__ import annotations

import asyncio
import json

import pytest

from wow_harvester.errors import (
    UpstreamNotFoundError,
    UpstreamPermanentError,
    UpstreamTimeoutError,
    UpstreamTransientError,
)
from wow_harvester.upstream.client import UpstreamResponse
from wow_harvester.worker.gateway import UpstreamGateway

TARGET = "blizzard:us"


def _fetch(gateway, path: str = "/data/wow/x"):
    return asyncio.run(gateway.fetch(TARGET, path))


class TestGatewayStatuses:
    def test_success_returned(self, gateway, upstream, limiters):
        upstream.ok("/data/wow/x", {"id": 1})
        assert _fetch(gateway).body == {"id": 1}
        assert limiters.get(TARGET).current_delay_ms == 100.0
        assert limiters.get(TARGET).state.consecutive_successes == 1

    def test_rate_limited_raises_and_backs_off(self, gateway, upstream, limiters, store):
        upstream.add("/data/wow/x", UpstreamResponse(429, {}, None))
        with pytest.raises(UpstreamTransientError) as excinfo:
            _fetch(gateway)
        assert excinfo.value.status == 429
        assert excinfo.value.target == TARGET
        assert limiters.get(TARGET).current_delay_ms == pytest.approx(150.0)
        shared = asyncio.run(store.get(f"ratelimit:{TARGET}"))
        assert json.loads(shared)["delay_ms"] == pytest.approx(150.0)

    def test_quota_exhausted_body_still_used(self, gateway, upstream, limiters):
        upstream.add("/data/wow/x", UpstreamResponse(200, {"retry-after": "2"}, {"id": 1}))
        assert _fetch(gateway).body == {"id": 1}
        assert limiters.get(TARGET).current_delay_ms == 2000.0

    def test_not_found(self, gateway, upstream, limiters):
        with pytest.raises(UpstreamNotFoundError):
            _fetch(gateway, "/profile/wow/character/area-52/nobody")
        assert limiters.get(TARGET).state.consecutive_successes == 1

    @pytest.mark.parametrize("status", [401, 500, 502])
    def test_server_errors_transient(self, gateway, upstream, limiters, status):
        upstream.add("/data/wow/x", UpstreamResponse(status, {}, None))
        with pytest.raises(UpstreamTransientError):
            _fetch(gateway)
        assert limiters.get(TARGET).current_delay_ms == 100.0

    def test_other_client_errors_permanent(self, gateway, upstream):
        upstream.add("/data/wow/x", UpstreamResponse(400, {}, None))
        with pytest.raises(UpstreamPermanentError) as excinfo:
            _fetch(gateway)
        assert not isinstance(excinfo.value, UpstreamNotFoundError)

    def test_not_modified_returned(self, gateway, upstream):
        upstream.add("/data/wow/x", UpstreamResponse(304, {}, None))
        assert _fetch(gateway).status == 304

    def test_timeout_backs_off_and_reraises(self, gateway, upstream, limiters):
        upstream.add("/data/wow/x", UpstreamTimeoutError("slow", path="/data/wow/x"))
        with pytest.raises(UpstreamTimeoutError) as excinfo:
            _fetch(gateway)
        assert excinfo.value.target == TARGET
        assert limiters.get(TARGET).current_delay_ms == pytest.approx(150.0)


class TestGatewayPacing:
    def test_adopts_shared_delay_before_calling(self, gateway, upstream, limiters, store):
        upstream.ok("/data/wow/x", {})
        asyncio.run(store.set(f"ratelimit:{TARGET}", json.dumps({"delay_ms": 800.0})))
        _fetch(gateway)
        # adopted 800ms, then one success does not recover yet
        assert limiters.get(TARGET).current_delay_ms == 800.0

    def test_consecutive_calls_are_spaced(self, gateway, upstream, sleeps):
        upstream.ok("/data/wow/x", {})

        async def scenario():
            await gateway.fetch(TARGET, "/data/wow/x")
            await gateway.fetch(TARGET, "/data/wow/x")

        asyncio.run(scenario())
        assert len(sleeps) == 1
        assert 0 < sleeps[0] <= 0.1


class TestGatewayKeyPool:
    @pytest.fixture
    def pooled(self, upstream, limiters, key_pool) -> UpstreamGateway:
        return UpstreamGateway(upstream, limiters, timeout=5.0, keys=key_pool)

    def test_pooled_token_attached_when_missing(self, pooled, upstream):
        upstream.ok("/data/wow/x", {})
        _fetch(pooled)
        assert upstream.calls[0][1]["Authorization"] == "Bearer tok-alpha"

    def test_rate_limits_counted_then_key_rotated(self, pooled, upstream, key_pool):
        upstream.add("/data/wow/x", UpstreamResponse(429, {}, None))
        upstream.ok("/data/wow/y", {})
        async def scenario():
            alpha = {"Authorization": f"Bearer {await key_pool.next_token()}"}
            for _ in range(3):
                with pytest.raises(UpstreamTransientError):
                    await pooled.fetch(TARGET, "/data/wow/x", alpha)
            await pooled.fetch(TARGET, "/data/wow/y", alpha)
            return await key_pool.is_locked("alpha")

        assert asyncio.run(scenario()) is True
        sent = [headers["Authorization"] for _, headers in upstream.calls]
        assert sent == ["Bearer tok-alpha"] * 3 + ["Bearer tok-bravo"]

    def test_quota_exhausted_success_not_counted(self, pooled, upstream, key_pool):
        upstream.add("/data/wow/x", UpstreamResponse(200, {"retry-after": "2"}, {"id": 1}))
        _fetch(pooled)
        assert asyncio.run(key_pool.snapshot())[0]["errors"] == 0

    def test_without_pool_headers_untouched(self, gateway, upstream):
        upstream.ok("/data/wow/x", {})
        _fetch(gateway)
        assert "Authorization" not in upstream.calls[0][1]
