"""
Process wiring: build every component from ``AppConfig`` and tear it down.

``Runtime`` is an async context manager so the CLI, ``run-local`` and tests
get the same object graph::

    async with Runtime(config) as rt:
        rt.worker("characters").subscribe()
        await rt.router.run(stop)

Backends:
  ``store.backend = "memory" | "redis"``   progress markers, locks, rate state
  ``broker.backend = "memory" | "redis"``  job queues

The memory backends are process-local; they suit ``run-local`` and tests,
where the sweep and the workers share one process.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack
from functools import partial
from typing import Optional

import httpx

from wow_harvester.config import AppConfig
from wow_harvester.db.persistence import Persistence, open_persistence
from wow_harvester.ingestion.progress import ProgressStore
from wow_harvester.messaging.broker import Broker, InMemoryBroker
from wow_harvester.messaging.redis_broker import RedisBroker
from wow_harvester.messaging.router import Router
from wow_harvester.producers import SWEEPS, SweepProducer
from wow_harvester.ratelimit.controller import RateControllerRegistry
from wow_harvester.services.lookup import CharacterLookupService
from wow_harvester.store.base import KeyValueStore
from wow_harvester.store.memory import MemoryKeyValueStore
from wow_harvester.store.redis_store import RedisKeyValueStore, build_redis_client
from wow_harvester.upstream.client import BlizzardApiClient, UpstreamClient, request_access_token
from wow_harvester.upstream.keys import KeyPool
from wow_harvester.worker.gateway import UpstreamGateway
from wow_harvester.worker.handlers import WorkerContext
from wow_harvester.worker.metrics import MetricsSink
from wow_harvester.worker.worker import IngestionWorker

logger = logging.getLogger(__name__)


def build_store(config: AppConfig) -> KeyValueStore:
    if config.store.backend == "redis":
        return RedisKeyValueStore.from_config(config.redis)
    return MemoryKeyValueStore()


def build_broker(config: AppConfig) -> Broker:
    if config.broker.backend == "redis":
        return RedisBroker(build_redis_client(config.redis), key_prefix=config.redis.key_prefix)
    return InMemoryBroker()


class Runtime:
    """Owns the store, broker, router, database, upstream client and key pool.

    Args:
        config: Application configuration.
        client: Upstream client; a ``BlizzardApiClient`` over a fresh
                ``httpx.AsyncClient`` when omitted.
        store:  Overrides ``build_store(config)``.
        broker: Overrides ``build_broker(config)``.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        client: Optional[UpstreamClient] = None,
        store: Optional[KeyValueStore] = None,
        broker: Optional[Broker] = None,
    ) -> None:
        self.config = config
        self._client = client
        self._store = store
        self._broker = broker
        self._http: Optional[httpx.AsyncClient] = None
        self._stack = ExitStack()

    async def __aenter__(self) -> "Runtime":
        cfg = self.config
        self.db: Persistence = self._stack.enter_context(
            open_persistence(cfg.database.db_path, wal_mode=cfg.database.wal_mode)
        )
        self.store = self._store or build_store(cfg)
        self.broker = self._broker or build_broker(cfg)

        self._http = httpx.AsyncClient()
        if self._client is None:
            self._client = BlizzardApiClient(
                self._http,
                region=cfg.upstream.region,
                default_timeout=cfg.upstream.timeout_seconds,
                **cfg.upstream.credentials(),
            )
        self.client = self._client

        self.keys = KeyPool(
            cfg.upstream.api_keys(),
            self.store,
            fetch_token=partial(request_access_token, self._http, cfg.upstream.region),
            lock_errors=cfg.upstream.key_lock_errors,
            lock_seconds=cfg.upstream.key_lock_seconds,
        )
        if self.keys:
            logger.info("API key pool: %d key(s)", len(self.keys))

        self.progress = ProgressStore(self.store)
        self.limiters = RateControllerRegistry(cfg.rate_limits, self.store)
        self.gateway = UpstreamGateway(
            self.client, self.limiters, timeout=cfg.upstream.timeout_seconds, keys=self.keys
        )
        self.router = Router(
            self.broker,
            max_attempts=cfg.broker.max_attempts,
            max_transient_attempts=cfg.broker.max_transient_attempts,
            request_timeout=cfg.broker.request_timeout_seconds,
            poll_timeout=cfg.broker.poll_timeout_seconds,
        )
        await self.router.start()
        self.context = WorkerContext(
            gateway=self.gateway, progress=self.progress, db=self.db, config=cfg
        )
        logger.info(
            "Runtime ready | store=%s broker=%s db=%s",
            cfg.store.backend, cfg.broker.backend, cfg.database.db_path,
        )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            await self.broker.close()
            await self.store.close()
            if self._http is not None:
                await self._http.aclose()
        finally:
            self._stack.close()

    def worker(self, role: str = "all", metrics: Optional[MetricsSink] = None) -> IngestionWorker:
        return IngestionWorker(self.context, self.router, role=role, metrics=metrics)

    def sweep(self, name: str) -> SweepProducer:
        try:
            sweep_cls = SWEEPS[name]
        except KeyError:
            raise ValueError(f"Unknown sweep '{name}'. Must be one of {sorted(SWEEPS)}.") from None
        return sweep_cls(self.config, self.router, self.progress, self.db, self.gateway, keys=self.keys)

    def lookup(self) -> CharacterLookupService:
        return CharacterLookupService(self.db, self.router, self.config.broker.request_timeout_seconds)
