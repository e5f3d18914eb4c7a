"""
Abstract base class for recurring sweeps.

Every sweep follows the same contract:
  1. Receive ``AppConfig``, the ``Router``, the ``ProgressStore`` and the
     ``Persistence`` facade at construction.
  2. ``run(**kwargs)`` is the sole public API.
  3. ``run()`` takes the sweep's run lock, creates a ``RunMetadata`` record,
     calls ``_enumerate()`` and publishes the envelopes it returns.
  4. ``_enumerate()`` is the sweep-specific part (overridden by subclasses).
  5. With a ``KeyPool``, every envelope is stamped with the next pooled
     token before publishing.

Status transitions::

    started → success   envelopes published (rows_processed = published)
    started → failed    _enumerate() or publishing raised; re-raised
    skipped             another process holds the run lock

Usage::

    class MySweep(SweepProducer):
        stage_name = "sweep_auctions"

        async def _enumerate(self, run, **kwargs) -> list[JobEnvelope]:
            return [auctions_job(3676)]

    run = await MySweep(config, router, progress, db).run()
"""

from __future__ import annotations

import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Optional
from uuid import uuid4

from wow_harvester.config import AppConfig
from wow_harvester.db.persistence import Persistence
from wow_harvester.errors import RunLockHeldError
from wow_harvester.ingestion.progress import ProgressStore
from wow_harvester.messaging.envelope import JobEnvelope
from wow_harvester.messaging.router import Router
from wow_harvester.models.meta import RunMetadata
from wow_harvester.upstream.keys import KeyPool
from wow_harvester.utils.logging import log_event
from wow_harvester.utils.time_utils import utcnow
from wow_harvester.worker.gateway import UpstreamGateway

logger = logging.getLogger(__name__)


class SweepProducer(ABC):
    """Abstract base for all sweeps.

    Attributes:
        stage_name: Identifier matching a valid ``RunMetadata.pipeline_stage``.
        config:     Application configuration.
        router:     Where envelopes are published.
        progress:   Run locks and identity markers.
        db:         Run records (and, for some sweeps, the work source).
        gateway:    Rate-controlled upstream access for sweeps that enumerate
                    from index endpoints.
        keys:       Optional API key pool; each published envelope carries
                    the next pooled token.
    """

    stage_name: str

    def __init__(
        self,
        config: AppConfig,
        router: Router,
        progress: ProgressStore,
        db: Persistence,
        gateway: Optional[UpstreamGateway] = None,
        keys: Optional[KeyPool] = None,
    ) -> None:
        self.config = config
        self.router = router
        self.progress = progress
        self.db = db
        self.gateway = gateway
        self.keys = keys

    @property
    def lock_name(self) -> str:
        return f"sweep:{self.stage_name}"

    async def run(self, *, strict: bool = False, **kwargs: Any) -> RunMetadata:
        """Execute this sweep once.

        Args:
            strict: Raise ``RunLockHeldError`` instead of recording ``skipped``
                    when another process holds the run lock.
            **kwargs: Sweep-specific keyword arguments for ``_enumerate()``.

        Returns:
            ``RunMetadata`` with final ``status``, ``rows_processed`` and
            ``finished_at`` set.

        Raises:
            Exception: Re-raises any exception from ``_enumerate()`` or
                publishing after recording ``status='failed'``.
        """
        run = RunMetadata(
            run_slug=str(uuid4()),
            pipeline_stage=self.stage_name,
            config_snapshot=self.config.model_dump(mode="json"),
            started_at=utcnow(),
        )

        lock = await self.progress.acquire_run_lock(
            self.lock_name, self.config.progress.run_lock_ttl_seconds
        )
        if lock is None:
            run.status = "skipped"
            run.error_message = f"Run lock '{self.lock_name}' is held by another process."
            run.finished_at = utcnow()
            log_event(
                logger,
                logging.INFO,
                "sweep.skipped",
                f"Sweep [{self.stage_name}] skipped: lock held",
                stage=self.stage_name,
                run_slug=run.run_slug,
            )
            self._persist_run(run)
            if strict:
                raise RunLockHeldError(self.lock_name)
            return run

        logger.info("Sweep [%s] starting | run_slug=%s", self.stage_name, run.run_slug)
        try:
            envelopes = await self._stamp_keys(await self._enumerate(run, **kwargs))
            report = await self.router.publish_bulk(envelopes)
            run.status = "success"
            run.rows_processed = report.published
            run.finished_at = utcnow()
            log_event(
                logger,
                logging.INFO,
                "sweep.completed",
                f"Sweep [{self.stage_name}] completed | published={report.published} "
                f"collapsed={report.collapsed} failed={report.failed}",
                stage=self.stage_name,
                run_slug=run.run_slug,
                requested=report.requested,
                published=report.published,
                collapsed=report.collapsed,
                failed=report.failed,
            )
        except Exception as exc:
            run.status = "failed"
            run.error_message = str(exc)
            run.finished_at = utcnow()
            logger.error("Sweep [%s] FAILED: %s | run_slug=%s", self.stage_name, exc, run.run_slug)
            self._persist_run(run)
            raise
        finally:
            await lock.release()

        self._persist_run(run)
        return run

    @abstractmethod
    async def _enumerate(self, run: RunMetadata, **kwargs: Any) -> list[JobEnvelope]:
        """Return the envelopes this sweep should publish."""
        ...

    async def _stamp_keys(self, envelopes: list[JobEnvelope]) -> list[JobEnvelope]:
        if not self.keys:
            return envelopes
        stamped: list[JobEnvelope] = []
        for env in envelopes:
            token = await self.keys.next_token()
            stamped.append(env.with_access_token(token) if token else env)
        return stamped

    def _require_gateway(self) -> UpstreamGateway:
        if self.gateway is None:
            raise ValueError(f"Sweep [{self.stage_name}] needs an UpstreamGateway.")
        return self.gateway

    def _persist_run(self, run: RunMetadata) -> None:
        """Write the run record.

        Errors are logged rather than raised so a database problem does not
        mask the sweep's own outcome.
        """
        try:
            with self.db.transaction():
                if run.run_id is None:
                    run.run_id = self.db.runs.insert_run(run)
                else:
                    self.db.runs.update_run_status(
                        run.run_id, run.status, run.rows_processed, run.error_message, run.finished_at
                    )
        except sqlite3.Error as exc:
            logger.error("Failed to persist RunMetadata for run_slug=%s: %s", run.run_slug, exc)
