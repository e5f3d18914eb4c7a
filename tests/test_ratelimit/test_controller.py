"""Tests for the adaptive rate controller, response classification and the shared registry."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from wow_harvester.config import RateLimitPolicy, RateLimitsConfig
from wow_harvester.ratelimit.controller import (
    RateController,
    RateControllerRegistry,
    classify_response,
    parse_retry_after,
)
from wow_harvester.store.memory import MemoryKeyValueStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _controller(clock=None, sleeps=None, **policy) -> RateController:
    async def _sleep(seconds: float) -> None:
        if sleeps is not None:
            sleeps.append(seconds)
        if clock is not None:
            clock.now += seconds

    return RateController(
        "blizzard:us",
        RateLimitPolicy(jitter_ms=0.0, **policy),
        clock=clock or FakeClock(),
        sleep=_sleep,
    )


# ── Delay feedback loop ───────────────────────────────────────────────────────

class TestFeedbackLoop:
    def test_starts_at_initial_delay(self):
        assert _controller().current_delay_ms == 100.0

    def test_backoff_multiplies(self):
        c = _controller()
        c.on_limited()
        assert c.current_delay_ms == pytest.approx(150.0)
        c.on_limited()
        assert c.current_delay_ms == pytest.approx(225.0)

    def test_recovery_after_threshold(self):
        c = _controller()
        c.on_limited()
        for _ in range(4):
            c.on_success()
        assert c.current_delay_ms == pytest.approx(150.0)
        c.on_success()
        assert c.current_delay_ms == pytest.approx(150.0 / 1.1)
        assert c.current_delay_ms == pytest.approx(136.36, abs=0.01)

    def test_recovery_converges_to_initial(self):
        c = _controller()
        c.on_limited()
        for _ in range(5 * 10):
            c.on_success()
        assert c.current_delay_ms == 100.0

    def test_never_below_initial(self):
        c = _controller()
        for _ in range(50):
            c.on_success()
        assert c.current_delay_ms == 100.0

    def test_limited_resets_success_streak(self):
        c = _controller()
        c.on_limited()
        for _ in range(4):
            c.on_success()
        c.on_limited()
        c.on_success()
        assert c.state.consecutive_successes == 1
        assert c.current_delay_ms == pytest.approx(225.0)

    def test_larger_hint_wins(self):
        c = _controller()
        c.on_limited(hint_ms=3000.0)
        assert c.current_delay_ms == 3000.0

    def test_smaller_hint_ignored(self):
        c = _controller()
        c.on_limited(hint_ms=10.0)
        assert c.current_delay_ms == pytest.approx(150.0)

    def test_adopt_only_raises(self):
        c = _controller()
        assert c.adopt(400.0) is True
        assert c.current_delay_ms == 400.0
        assert c.adopt(200.0) is False
        assert c.current_delay_ms == 400.0

    def test_stats_throttled_flag(self):
        c = _controller()
        assert c.stats().throttled is False
        c.on_limited(hint_ms=250.0)
        stats = c.stats()
        assert stats.throttled is True
        assert stats.rate_limit_events == 1
        assert stats.target == "blizzard:us"


# ── wait() ────────────────────────────────────────────────────────────────────

class TestWait:
    def test_first_call_does_not_sleep(self):
        sleeps: list[float] = []
        c = _controller(sleeps=sleeps)
        assert asyncio.run(c.wait()) == 0.0
        assert sleeps == []

    def test_spacing_between_calls(self):
        clock = FakeClock()
        sleeps: list[float] = []
        c = _controller(clock=clock, sleeps=sleeps)

        async def scenario():
            await c.wait()
            clock.now += 0.03
            return await c.wait()

        slept = asyncio.run(scenario())
        assert slept == pytest.approx(0.07)
        assert sleeps == [pytest.approx(0.07)]

    def test_no_sleep_when_enough_time_passed(self):
        clock = FakeClock()
        sleeps: list[float] = []
        c = _controller(clock=clock, sleeps=sleeps)

        async def scenario():
            await c.wait()
            clock.now += 1.0
            await c.wait()

        asyncio.run(scenario())
        assert sleeps == []

    def test_concurrent_callers_serialized(self):
        clock = FakeClock()
        sleeps: list[float] = []
        c = _controller(clock=clock, sleeps=sleeps)

        async def scenario():
            await asyncio.gather(*(c.wait() for _ in range(4)))

        asyncio.run(scenario())
        # first call free, each later one spaced by the full delay
        assert sleeps == [pytest.approx(0.1)] * 3

    def test_jitter_within_bounds(self):
        sleeps: list[float] = []

        async def _sleep(seconds: float) -> None:
            sleeps.append(seconds)

        c = RateController("t", RateLimitPolicy(jitter_ms=50.0), clock=FakeClock(), sleep=_sleep)
        asyncio.run(c.wait())
        assert len(sleeps) == 1
        assert 0.0 <= sleeps[0] <= 0.05


# ── Classification ────────────────────────────────────────────────────────────

class TestClassifyResponse:
    @pytest.mark.parametrize("status", [403, 429, 503])
    def test_rate_limit_statuses(self, status):
        signal = classify_response(status, {})
        assert signal.limited is True
        assert signal.reason == f"status:{status}"

    def test_retry_after_on_success(self):
        signal = classify_response(200, {"Retry-After": "2"})
        assert signal.limited is True
        assert signal.hint_ms == 2000.0

    def test_remaining_zero(self):
        assert classify_response(200, {"X-RateLimit-Remaining": "0"}).limited is True
        assert classify_response(200, {"x-ratelimit-remaining": "7"}).limited is False

    def test_plain_responses_not_limited(self):
        assert classify_response(200, {}).limited is False
        assert classify_response(404, {}).limited is False
        assert classify_response(500, {}).limited is False

    def test_status_carries_hint(self):
        signal = classify_response(429, {"retry-after": "1.5"})
        assert signal.hint_ms == 1500.0


class TestParseRetryAfter:
    def test_seconds(self):
        assert parse_retry_after("3") == 3000.0

    def test_http_date(self):
        now = datetime(2026, 2, 24, 15, 0, 0, tzinfo=timezone.utc)
        later = (now + timedelta(seconds=10)).strftime("%a, %d %b %Y %H:%M:%S GMT")
        assert parse_retry_after(later, now=now) == pytest.approx(10_000.0)

    def test_past_date_is_zero(self):
        now = datetime(2026, 2, 24, 15, 0, 0, tzinfo=timezone.utc)
        assert parse_retry_after("Tue, 24 Feb 2026 14:00:00 GMT", now=now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_unparseable(self, value):
        assert parse_retry_after(value) is None


# ── Registry ──────────────────────────────────────────────────────────────────

class TestRegistry:
    def test_one_controller_per_target(self):
        registry = RateControllerRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")

    def test_per_target_policy(self):
        config = RateLimitsConfig(targets={"blizzard:eu": RateLimitPolicy(initial_delay_ms=500.0)})
        registry = RateControllerRegistry(config)
        assert registry.get("blizzard:eu").current_delay_ms == 500.0
        assert registry.get("blizzard:us").current_delay_ms == 100.0

    def test_shared_delay_adopted(self):
        store = MemoryKeyValueStore()
        first = RateControllerRegistry(store=store)
        second = RateControllerRegistry(store=store)

        async def scenario():
            first.get("blizzard:us").on_limited()
            await first.publish("blizzard:us")
            await second.sync("blizzard:us")

        asyncio.run(scenario())
        assert second.get("blizzard:us").current_delay_ms == pytest.approx(150.0)

    def test_sync_rate_limited_by_interval(self):
        store = MemoryKeyValueStore()
        clock = FakeClock()
        writer = RateControllerRegistry(store=store)
        reader = RateControllerRegistry(store=store, clock=clock, sync_interval_seconds=5.0)

        async def scenario():
            await reader.sync("t")
            writer.get("t").on_limited()
            await writer.publish("t")
            await reader.sync("t")
            before = reader.get("t").current_delay_ms
            await reader.sync("t", force=True)
            return before

        before = asyncio.run(scenario())
        assert before == 100.0
        assert reader.get("t").current_delay_ms == pytest.approx(150.0)

    def test_malformed_shared_state_ignored(self):
        store = MemoryKeyValueStore()
        registry = RateControllerRegistry(store=store)

        async def scenario():
            await store.set("ratelimit:t", "not json")
            await registry.sync("t")

        asyncio.run(scenario())
        assert registry.get("t").current_delay_ms == 100.0

    def test_no_store_is_noop(self):
        registry = RateControllerRegistry()

        async def scenario():
            await registry.publish("t")
            await registry.sync("t")

        asyncio.run(scenario())
        assert registry.stats() == []
