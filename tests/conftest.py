"""
Shared pytest fixtures for the wow-harvester test suite.

Provides:
  - ``in_memory_db`` / ``db``: a fresh in-memory SQLite connection with the
    full schema applied, and the ``Persistence`` facade over it.
  - ``upstream``: a ``ScriptedUpstreamClient`` that answers by path fragment
    and records every call.
  - ``store``, ``progress``, ``broker``, ``router``, ``limiters``,
    ``gateway``, ``ctx``: in-process components wired the way ``Runtime``
    wires them, with rate-controller sleeps recorded instead of awaited.
  - ``bodies``: builders for upstream JSON bodies.
  - ``key_pool``: two pooled API keys whose tokens are ``tok-<client_id>``.

Async code is driven with ``asyncio.run`` inside plain test functions; each
test runs its whole scenario inside a single event loop.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Generator, Optional, Union

import pytest

from wow_harvester.config import AppConfig, LadderConfig, RateLimitPolicy, RateLimitsConfig, RealmsConfig
from wow_harvester.db.connection import MEMORY_DB, connect
from wow_harvester.db.migrations import run_migrations
from wow_harvester.db.persistence import Persistence
from wow_harvester.db.schema import apply_schema
from wow_harvester.ingestion.progress import ProgressStore
from wow_harvester.messaging.broker import InMemoryBroker
from wow_harvester.messaging.router import Router
from wow_harvester.models.guild import Guild, RosterMember
from wow_harvester.ratelimit.controller import RateControllerRegistry
from wow_harvester.store.memory import MemoryKeyValueStore
from wow_harvester.upstream.client import UpstreamResponse
from wow_harvester.upstream.keys import KeyPool
from wow_harvester.worker.gateway import UpstreamGateway
from wow_harvester.worker.handlers import WorkerContext

FIXED_NOW = datetime(2026, 2, 24, 15, 0, 0, tzinfo=timezone.utc)


# ── Scripted upstream ─────────────────────────────────────────────────────────

Scripted = Union[UpstreamResponse, Exception]


class ScriptedUpstreamClient:
    """``UpstreamClient`` answering from a script keyed by path fragment.

    ``add(fragment, *responses)`` queues responses for any path containing
    ``fragment``; the longest matching fragment wins.  Responses are consumed
    in order and the last one repeats.  Exceptions are raised.  Unscripted
    paths answer 404.
    """

    def __init__(self) -> None:
        self.routes: dict[str, list[Scripted]] = {}
        self.calls: list[tuple[str, dict[str, str]]] = []

    def add(self, fragment: str, *responses: Scripted) -> "ScriptedUpstreamClient":
        self.routes.setdefault(fragment, []).extend(responses)
        return self

    def ok(self, fragment: str, body: Any, headers: Optional[Mapping[str, str]] = None) -> "ScriptedUpstreamClient":
        return self.add(fragment, UpstreamResponse(200, dict(headers or {}), body))

    async def get(
        self,
        path: str,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> UpstreamResponse:
        self.calls.append((path, dict(headers or {})))
        for fragment in sorted(self.routes, key=len, reverse=True):
            if fragment in path:
                queue = self.routes[fragment]
                item = queue.pop(0) if len(queue) > 1 else queue[0]
                if isinstance(item, Exception):
                    raise item
                return item
        return UpstreamResponse(404, {}, {"code": 404})

    def calls_to(self, fragment: str) -> int:
        return sum(1 for path, _ in self.calls if fragment in path)


# ── Upstream body builders ────────────────────────────────────────────────────


class Bodies:
    """Minimal Blizzard API bodies carrying the fields the normalizers read."""

    @staticmethod
    def profile(
        name: str = "Thrall",
        realm: str = "area-52",
        character_id: int = 1001,
        guild: Optional[str] = None,
        level: int = 80,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "id": character_id,
            "name": name,
            "realm": {"slug": realm, "name": realm},
            "level": level,
            "faction": {"type": "HORDE", "name": "Horde"},
            "race": {"name": "Orc"},
            "character_class": {"name": "Shaman"},
            "active_spec": {"name": "Enhancement"},
            "achievement_points": 12345,
            "average_item_level": 615,
            "last_login_timestamp": 1771945200000,
        }
        if guild:
            body["guild"] = {"id": 77, "name": guild, "realm": {"slug": realm}}
        return body

    @staticmethod
    def guild(name: str = "Rage Quit", realm: str = "area-52", guild_id: int = 77) -> dict[str, Any]:
        return {
            "id": guild_id,
            "name": name,
            "realm": {"slug": realm},
            "faction": {"type": "HORDE"},
            "member_count": 3,
            "achievement_points": 900,
            "created_timestamp": 1500000000000,
        }

    @staticmethod
    def roster(*members: tuple[int, str, int], realm: str = "area-52") -> dict[str, Any]:
        """``(member_id, name, rank)`` triples → roster body."""
        return {
            "members": [
                {
                    "character": {"id": mid, "name": name, "realm": {"slug": realm}, "level": 80},
                    "rank": rank,
                }
                for mid, name, rank in members
            ]
        }

    @staticmethod
    def leaderboard(*groups: list[tuple[int, str]], realm: str = "area-52") -> dict[str, Any]:
        """Each group is a list of ``(character_id, name)``."""
        return {
            "leading_groups": [
                {
                    "ranking": i + 1,
                    "keystone_level": 20 - i,
                    "duration": 1_800_000 + i,
                    "completed_timestamp": 1771945200000,
                    "members": [
                        {
                            "profile": {"id": cid, "name": name, "realm": {"slug": realm}},
                            "faction": {"type": "ALLIANCE"},
                            "specialization": {"id": 262},
                        }
                        for cid, name in group
                    ],
                }
                for i, group in enumerate(groups)
            ]
        }

    @staticmethod
    def auctions(*orders: tuple[int, int, int]) -> dict[str, Any]:
        """``(order_id, item_id, buyout)`` triples → auctions body."""
        return {
            "auctions": [
                {"id": oid, "item": {"id": item}, "buyout": buyout, "quantity": 1, "time_left": "LONG"}
                for oid, item, buyout in orders
            ]
        }

    @staticmethod
    def leaderboard_index(*dungeon_ids: int) -> dict[str, Any]:
        return {"current_leaderboards": [{"id": d, "name": f"Dungeon {d}"} for d in dungeon_ids]}


# ── Database fixtures ─────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Connection is closed after the test.
    """
    conn = connect(MEMORY_DB)
    apply_schema(conn)
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def db(in_memory_db: sqlite3.Connection) -> Persistence:
    return Persistence(in_memory_db)


# ── Component fixtures ────────────────────────────────────────────────────────

@pytest.fixture
def now() -> datetime:
    """The frozen clock every ``ctx`` handler sees."""
    return FIXED_NOW


@pytest.fixture
def config() -> AppConfig:
    """Defaults with no jitter, one realm and pinned ladder periods."""
    return AppConfig(
        rate_limits=RateLimitsConfig(default=RateLimitPolicy(jitter_ms=0.0)),
        realms=RealmsConfig(connected_realm_ids=[3676]),
        ladder=LadderConfig(periods=[940]),
    )


@pytest.fixture
def upstream() -> ScriptedUpstreamClient:
    return ScriptedUpstreamClient()


@pytest.fixture
def bodies() -> type[Bodies]:
    return Bodies


@pytest.fixture
def store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def progress(store: MemoryKeyValueStore) -> ProgressStore:
    return ProgressStore(store)


@pytest.fixture
def sleeps() -> list[float]:
    """Seconds every rate-controller ``wait()`` asked to sleep."""
    return []


@pytest.fixture
def limiters(config: AppConfig, store: MemoryKeyValueStore, sleeps: list[float]) -> RateControllerRegistry:
    async def _record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RateControllerRegistry(config.rate_limits, store, sleep=_record_sleep)


@pytest.fixture
def gateway(upstream: ScriptedUpstreamClient, limiters: RateControllerRegistry) -> UpstreamGateway:
    return UpstreamGateway(upstream, limiters, timeout=5.0)


@pytest.fixture
def key_pool(store: MemoryKeyValueStore) -> KeyPool:
    """Keys ``alpha`` and ``bravo``; locked after more than 2 tracked errors."""

    async def fetch_token(client_id: str, client_secret: str) -> tuple[str, float]:
        return f"tok-{client_id}", 86400.0

    return KeyPool([("alpha", "a-secret"), ("bravo", "b-secret")], store, fetch_token, lock_errors=2, lock_seconds=60)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def router(broker: InMemoryBroker) -> Router:
    return Router(broker, poll_timeout=0.01, request_timeout=1.0)


@pytest.fixture
def ctx(gateway: UpstreamGateway, progress: ProgressStore, db: Persistence, config: AppConfig) -> WorkerContext:
    return WorkerContext(gateway=gateway, progress=progress, db=db, config=config, clock=lambda: FIXED_NOW)


# ── Sample domain objects ─────────────────────────────────────────────────────

@pytest.fixture
def sample_guild() -> Guild:
    return Guild(
        guid="rage-quit@area-52",
        guild_id=77,
        name="Rage Quit",
        realm_slug="area-52",
        faction="horde",
        member_count=3,
        updated_at=FIXED_NOW,
    )


@pytest.fixture
def sample_roster() -> dict[int, RosterMember]:
    """Owner A (rank 0), officer B (rank 1), member C (rank 4)."""
    members = [
        RosterMember(member_id=1, rank=0, name="Alpha", realm_slug="area-52"),
        RosterMember(member_id=2, rank=1, name="Bravo", realm_slug="area-52"),
        RosterMember(member_id=3, rank=4, name="Charlie", realm_slug="area-52"),
    ]
    return {m.member_id: m for m in members}
