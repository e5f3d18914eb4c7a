"""
Adaptive per-target delay controller.

One ``RateController`` exists per upstream target (e.g. ``"blizzard:us"``)
per process, shared by every handler slot that calls that target.  It is a
multiplicative-increase / divisive-decrease loop:

  - ``on_limited()`` multiplies the delay by ``backoff_factor`` (and takes a
    larger ``Retry-After`` hint when one is given), resetting the success
    streak.
  - ``on_success()`` divides the delay by ``recovery_factor`` once every
    ``recovery_threshold`` consecutive successes, snapping back to the
    initial delay when within 1 ms of it.

``current_delay_ms`` never drops below ``initial_delay_ms`` and has no upper
bound.  Example with the default policy::

    100 ms  --on_limited-->  150 ms  --5x on_success-->  ~136.36 ms
           ... further successes converge back to exactly 100 ms.

``wait()`` is the only suspension point in a handler's hot path.  It holds
a per-target ``asyncio.Lock`` while sleeping so concurrent callers for the
same target queue behind one another instead of firing together.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Optional

from wow_harvester.config import RateLimitPolicy, RateLimitsConfig
from wow_harvester.utils.logging import log_event

if TYPE_CHECKING:
    from wow_harvester.store.base import KeyValueStore

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = frozenset({403, 429, 503})
_SNAP_TOLERANCE_MS = 1.0


# ── State ─────────────────────────────────────────────────────────────────────


@dataclass
class RateLimiterState:
    """Mutable feedback-loop state for one target.

    Attributes:
        target:                  Upstream target identifier.
        current_delay_ms:        Minimum spacing between consecutive calls.
        consecutive_successes:   Successes since the last recovery step or backoff.
        total_rate_limit_events: Lifetime count of ``on_limited`` calls.
        total_successes:         Lifetime count of ``on_success`` calls.
        last_call_at:            Clock reading (seconds) of the last ``wait()`` exit.
    """

    target: str
    current_delay_ms: float
    consecutive_successes: int = 0
    total_rate_limit_events: int = 0
    total_successes: int = 0
    last_call_at: Optional[float] = None


@dataclass(frozen=True)
class RateStats:
    """Read-only snapshot returned by ``RateController.stats()``."""

    target: str
    delay_ms: float
    throttled: bool
    consecutive_successes: int
    rate_limit_events: int


@dataclass(frozen=True)
class RateSignal:
    """Outcome of ``classify_response()``.

    Attributes:
        limited: True when the response means "slow down".
        hint_ms: Upstream-suggested wait from ``Retry-After``, if any.
        reason:  Short label for logs (``"status:429"``, ``"retry-after"``...).
    """

    limited: bool
    hint_ms: Optional[float] = None
    reason: str = ""


# ── Controller ────────────────────────────────────────────────────────────────


class RateController:
    """Adaptive delay for a single upstream target.

    Args:
        target: Target identifier used in logs and shared-state keys.
        policy: Delay parameters.
        clock:  Monotonic clock in seconds (injectable for tests).
        sleep:  Coroutine used to suspend (injectable for tests).
        rng:    Random source for jitter.
    """

    def __init__(
        self,
        target: str,
        policy: RateLimitPolicy | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.target = target
        self.policy = policy or RateLimitPolicy()
        self.state = RateLimiterState(
            target=target, current_delay_ms=self.policy.initial_delay_ms
        )
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._lock = asyncio.Lock()

    @property
    def current_delay_ms(self) -> float:
        return self.state.current_delay_ms

    async def wait(self) -> float:
        """Suspend until the next call to this target is allowed.

        Sleeps ``max(0, current_delay - elapsed_since_last_call)`` plus a
        uniform jitter in ``[0, jitter_ms]``.

        Returns:
            Seconds actually slept.
        """
        async with self._lock:
            delay_s = self.state.current_delay_ms / 1000.0
            remaining = 0.0
            if self.state.last_call_at is not None:
                elapsed = self._clock() - self.state.last_call_at
                remaining = max(0.0, delay_s - elapsed)

            jitter = 0.0
            if self.policy.jitter_ms > 0:
                jitter = self._rng.uniform(0.0, self.policy.jitter_ms) / 1000.0

            total = remaining + jitter
            if total > 0:
                await self._sleep(total)
            self.state.last_call_at = self._clock()
        return total

    def on_success(self) -> None:
        """Record a successful call; step the delay down every N successes."""
        state = self.state
        state.consecutive_successes += 1
        state.total_successes += 1

        if state.consecutive_successes < self.policy.recovery_threshold:
            return

        state.consecutive_successes = 0
        initial = self.policy.initial_delay_ms
        recovered = max(initial, state.current_delay_ms / self.policy.recovery_factor)
        if recovered - initial < _SNAP_TOLERANCE_MS:
            recovered = initial

        if recovered != state.current_delay_ms:
            logger.debug(
                "Rate recovery | target=%s | %.1fms -> %.1fms",
                self.target, state.current_delay_ms, recovered,
            )
        state.current_delay_ms = recovered

    def on_limited(self, hint_ms: Optional[float] = None) -> None:
        """Record a rate-limit signal and back off.

        Args:
            hint_ms: Upstream-suggested wait; used when larger than the
                multiplied delay.
        """
        state = self.state
        backed_off = state.current_delay_ms * self.policy.backoff_factor
        if hint_ms is not None and hint_ms > backed_off:
            backed_off = hint_ms

        previous = state.current_delay_ms
        state.current_delay_ms = max(backed_off, self.policy.initial_delay_ms)
        state.consecutive_successes = 0
        state.total_rate_limit_events += 1

        log_event(
            logger,
            logging.WARNING,
            "ratelimit.backoff",
            f"Rate limited on {self.target}: {previous:.1f}ms -> {state.current_delay_ms:.1f}ms",
            target=self.target,
            delay_ms=round(state.current_delay_ms, 2),
            hint_ms=hint_ms,
            events=state.total_rate_limit_events,
        )

    def adopt(self, delay_ms: float) -> bool:
        """Raise the local delay to a larger value observed elsewhere.

        Returns:
            True if the delay changed.
        """
        if delay_ms > self.state.current_delay_ms:
            self.state.current_delay_ms = delay_ms
            self.state.consecutive_successes = 0
            return True
        return False

    def stats(self) -> RateStats:
        """Return the current delay and whether the target counts as throttled.

        A target is throttled while its delay exceeds
        ``initial_delay_ms * throttled_ratio``.
        """
        threshold = self.policy.initial_delay_ms * self.policy.throttled_ratio
        return RateStats(
            target=self.target,
            delay_ms=self.state.current_delay_ms,
            throttled=self.state.current_delay_ms > threshold,
            consecutive_successes=self.state.consecutive_successes,
            rate_limit_events=self.state.total_rate_limit_events,
        )


# ── Response classification ───────────────────────────────────────────────────


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header into milliseconds.

    Accepts delta-seconds (``"3"``, ``"1.5"``) or an HTTP date.  Returns
    ``None`` for missing or unparseable values.
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value) * 1000.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(tz=timezone.utc)
    return max(0.0, (when - reference).total_seconds() * 1000.0)


def classify_response(
    status: int,
    headers: Mapping[str, str],
    now: Optional[datetime] = None,
) -> RateSignal:
    """Decide whether an upstream response is a rate-limit signal.

    Limited when the status is 403/429/503, a ``Retry-After`` header is
    present, or ``X-RateLimit-Remaining`` is ``0``.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    retry_after = lowered.get("retry-after")
    hint_ms = parse_retry_after(retry_after, now)

    if status in RATE_LIMIT_STATUSES:
        return RateSignal(limited=True, hint_ms=hint_ms, reason=f"status:{status}")
    if retry_after is not None:
        return RateSignal(limited=True, hint_ms=hint_ms, reason="retry-after")
    remaining = lowered.get("x-ratelimit-remaining")
    if remaining is not None and remaining.strip() == "0":
        return RateSignal(limited=True, hint_ms=None, reason="remaining:0")
    return RateSignal(limited=False)


# ── Registry ──────────────────────────────────────────────────────────────────


class RateControllerRegistry:
    """One ``RateController`` per target, optionally mirrored to a shared store.

    When a store is given, ``publish(target)`` writes the local delay under
    ``ratelimit:<target>`` and ``sync(target)`` adopts a larger delay written
    by another worker.  Shared entries expire after ``shared_ttl_seconds`` so
    a stale backoff fades out instead of pinning every worker.
    """

    def __init__(
        self,
        config: RateLimitsConfig | None = None,
        store: Optional["KeyValueStore"] = None,
        *,
        shared_ttl_seconds: int = 300,
        sync_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or RateLimitsConfig()
        self.store = store
        self.shared_ttl_seconds = shared_ttl_seconds
        self.sync_interval_seconds = sync_interval_seconds
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._controllers: dict[str, RateController] = {}
        self._last_sync: dict[str, float] = {}

    def get(self, target: str) -> RateController:
        controller = self._controllers.get(target)
        if controller is None:
            controller = RateController(
                target,
                self.config.policy_for(target),
                clock=self._clock,
                sleep=self._sleep,
                rng=self._rng,
            )
            self._controllers[target] = controller
        return controller

    def stats(self) -> list[RateStats]:
        return [c.stats() for _, c in sorted(self._controllers.items())]

    @staticmethod
    def _shared_key(target: str) -> str:
        return f"ratelimit:{target}"

    async def publish(self, target: str) -> None:
        """Write this process's delay for ``target`` to the shared store."""
        if self.store is None:
            return
        controller = self.get(target)
        await self.store.set(
            self._shared_key(target),
            json.dumps({"delay_ms": controller.current_delay_ms}),
            ttl_seconds=self.shared_ttl_seconds,
        )

    async def sync(self, target: str, *, force: bool = False) -> None:
        """Adopt a larger shared delay, at most once per sync interval."""
        if self.store is None:
            return
        now = self._clock()
        last = self._last_sync.get(target)
        if not force and last is not None and now - last < self.sync_interval_seconds:
            return
        self._last_sync[target] = now

        raw = await self.store.get(self._shared_key(target))
        if raw is None:
            return
        try:
            shared_delay = float(json.loads(raw)["delay_ms"])
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed shared rate state for %s: %r", target, raw)
            return
        if self.get(target).adopt(shared_delay):
            logger.info("Adopted shared delay %.1fms for %s", shared_delay, target)
