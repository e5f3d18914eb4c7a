from wow_harvester.worker.gateway import UpstreamGateway
from wow_harvester.worker.handlers import HandlerOutcome, JobHandler, JobStatus, WorkerContext
from wow_harvester.worker.metrics import LoggingMetricsSink, MetricsSink, WorkerCounters
from wow_harvester.worker.worker import ROLE_KINDS, IngestionWorker

__all__ = [
    "ROLE_KINDS",
    "HandlerOutcome",
    "IngestionWorker",
    "JobHandler",
    "JobStatus",
    "LoggingMetricsSink",
    "MetricsSink",
    "UpstreamGateway",
    "WorkerContext",
    "WorkerCounters",
]
