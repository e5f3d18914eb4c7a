"""
IngestionWorker: the handler the router calls for every delivered envelope.

Per envelope::

    resolve handler by kind          (unknown kind → EnvelopeValidationError)
    identity marker live?            → reply "skipped", no upstream call
    handler.handle()                 rate wait → fetch → normalize → write
    UpstreamPermanentError           → log, mark done, reply "not-found"
    publish follow-ups               (partial publish failures are logged)
    mark done                        (handlers with an identity key)
    reply body                       → request/reply callers

Transient upstream errors and infrastructure errors propagate so the router
can redeliver or dead-letter; a ``sqlite3.Error`` is re-raised as
``InfrastructureError``.  One job never takes the process down.

Usage::

    worker = IngestionWorker(ctx, router, role="characters")
    worker.subscribe()
    await router.run(stop)
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from wow_harvester.errors import (
    EnvelopeValidationError,
    InfrastructureError,
    UpstreamNotFoundError,
    UpstreamPermanentError,
    UpstreamTransientError,
)
from wow_harvester.messaging.envelope import KIND_FAMILY, JobEnvelope, JobKind
from wow_harvester.messaging.router import Router
from wow_harvester.utils.logging import log_event
from wow_harvester.worker.handlers import (
    HandlerOutcome,
    JobHandler,
    JobStatus,
    WorkerContext,
    default_handlers,
)
from wow_harvester.worker.metrics import LoggingMetricsSink, MetricsSink, WorkerCounters

logger = logging.getLogger(__name__)

# role → the job kinds it consumes
ROLE_KINDS: dict[str, tuple[JobKind, ...]] = {
    "characters": (JobKind.CHARACTER,),
    "guilds": (JobKind.GUILD,),
    "ladder": (JobKind.LEADERBOARD,),
    "auctions": (JobKind.AUCTIONS,),
    "all": tuple(JobKind),
}


def subscription_pattern(kind: JobKind) -> str:
    domain, resource = KIND_FAMILY[kind]
    return f"{domain}.{resource}.#"


class IngestionWorker:
    """Consume envelopes of one role.

    Args:
        ctx:      Shared handler context.
        router:   Router used for follow-up publishing and subscription.
        role:     Key of ``ROLE_KINDS``.
        handlers: Override the handler set (tests).
        metrics:  Counter sink; defaults to ``LoggingMetricsSink``.
    """

    def __init__(
        self,
        ctx: WorkerContext,
        router: Router,
        role: str = "all",
        handlers: Optional[dict[JobKind, JobHandler]] = None,
        metrics: Optional[MetricsSink] = None,
    ) -> None:
        if role not in ROLE_KINDS:
            raise ValueError(f"Unknown worker role '{role}'. Must be one of {sorted(ROLE_KINDS)}.")
        self.ctx = ctx
        self.router = router
        self.role = role
        self.handlers = handlers if handlers is not None else default_handlers(ctx)
        self.metrics = metrics or LoggingMetricsSink(ctx.config.workers.report_every)
        self.counters = WorkerCounters()

    def subscribe(self, concurrency: Optional[int] = None) -> None:
        """Register this worker with the router for every kind of its role."""
        for kind in ROLE_KINDS[self.role]:
            size = concurrency or self.ctx.config.workers.concurrency_for(KIND_FAMILY[kind][1])
            self.router.subscribe(subscription_pattern(kind), self.handle, concurrency=size)

    async def handle(self, envelope: JobEnvelope) -> Optional[dict[str, Any]]:
        handler = self.handlers.get(envelope.kind)
        if handler is None or envelope.kind not in ROLE_KINDS[self.role]:
            raise EnvelopeValidationError(f"No '{self.role}' handler for kind '{envelope.kind}'.")

        self.counters.received += 1
        try:
            return await self._handle(handler, envelope)
        finally:
            self.metrics.record(self.role, self.counters)

    async def _handle(self, handler: JobHandler, envelope: JobEnvelope) -> dict[str, Any]:
        key = handler.progress_key(envelope)
        if key is not None and not handler.bypasses_marker(envelope):
            if await self.ctx.progress.is_done(key):
                self.counters.skipped_done += 1
                logger.debug("Skipping %s: marker %s is live", envelope.id, key)
                return HandlerOutcome(status=JobStatus.SKIPPED, body={"key": key}).reply()

        try:
            outcome = await handler.handle(envelope)
        except UpstreamPermanentError as exc:
            self.counters.not_found += 1
            log_event(
                logger,
                logging.INFO if isinstance(exc, UpstreamNotFoundError) else logging.WARNING,
                "worker.permanent",
                f"{envelope.id}: {exc}",
                envelope_id=envelope.id,
                status=exc.status,
                path=exc.path,
            )
            if key is not None:
                await self.ctx.progress.mark_done(key, handler.marker_ttl)
            return HandlerOutcome(status=JobStatus.NOT_FOUND, body={"error": str(exc)}).reply()
        except UpstreamTransientError:
            self.counters.transient += 1
            raise
        except sqlite3.Error as exc:
            self.counters.failed += 1
            raise InfrastructureError(f"Database error handling {envelope.id}: {exc}") from exc
        except Exception:
            self.counters.failed += 1
            raise

        if outcome.follow_ups:
            report = await self.router.publish_bulk(outcome.follow_ups)
            self.counters.follow_ups += report.published
            outcome.body["follow_ups"] = report.published

        # Marked only after follow-ups are out, so a redelivery re-emits them.
        if key is not None:
            await self.ctx.progress.mark_done(key, handler.marker_ttl)

        if outcome.status == JobStatus.DUPLICATE:
            self.counters.skipped_duplicate += 1
        elif outcome.status == JobStatus.NOT_MODIFIED:
            self.counters.not_modified += 1
        else:
            self.counters.processed += 1
        return outcome.reply()
