"""
Worker counters and the sink they are reported through.

``WorkerCounters`` is owned by one ``IngestionWorker``; nothing else mutates
it.  After every envelope the worker hands it to its ``MetricsSink``; the
default ``LoggingMetricsSink`` writes a ``worker.progress`` record every
``every`` envelopes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Protocol

from wow_harvester.utils.logging import log_event

logger = logging.getLogger(__name__)


@dataclass
class WorkerCounters:
    """Per-worker job tallies.

    Attributes:
        received:          Envelopes handed to the worker.
        processed:         Fetched, normalized and written.
        skipped_done:      Skipped on a live identity marker.
        skipped_duplicate: Fetched but the payload hash was already seen.
        not_modified:      Upstream answered 304.
        not_found:         Permanent upstream errors (marked done, no write).
        transient:         Transient upstream errors (left to the router).
        failed:            Any other handler failure.
        follow_ups:        Follow-on envelopes published.
    """

    received: int = 0
    processed: int = 0
    skipped_done: int = 0
    skipped_duplicate: int = 0
    not_modified: int = 0
    not_found: int = 0
    transient: int = 0
    failed: int = 0
    follow_ups: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class MetricsSink(Protocol):
    def record(self, role: str, counters: WorkerCounters) -> None:
        ...


class LoggingMetricsSink:
    """Log a progress line every ``every`` received envelopes."""

    def __init__(self, every: int = 100) -> None:
        self.every = max(1, every)

    def record(self, role: str, counters: WorkerCounters) -> None:
        if counters.received % self.every:
            return
        log_event(
            logger,
            logging.INFO,
            "worker.progress",
            f"[{role}] {counters.received} received, {counters.processed} processed, "
            f"{counters.skipped_done + counters.skipped_duplicate} skipped",
            role=role,
            **counters.as_dict(),
        )
