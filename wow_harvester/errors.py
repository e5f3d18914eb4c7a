"""
Exception taxonomy for the harvester.

Every failure a handler can raise falls into one of four buckets, and the
router decides what to do with the message based on the bucket alone:

  ``UpstreamTransientError``   429/403/503, timeouts, transport failures.
                               Rate controller backs off; message is
                               redelivered from the larger transient budget.
  ``UpstreamPermanentError``   404 or a body that cannot be normalized.
                               Logged, unit of work marked done, no write.
  ``InfrastructureError``      Store / broker / database unavailable.
                               Redelivered, then dead-lettered.
  ``EnvelopeValidationError``  Malformed envelope.  Dead-lettered at once.
"""

from __future__ import annotations

from typing import Optional


class HarvesterError(Exception):
    """Base class for all harvester errors."""


# ── Upstream ──────────────────────────────────────────────────────────────────


class UpstreamError(HarvesterError):
    """An upstream call did not produce usable data.

    Attributes:
        target: Rate-limit target the call was made against.
        path:   Request path (without host).
        status: HTTP status, or ``None`` when no response was received.
    """

    def __init__(
        self,
        message: str,
        *,
        target: str = "",
        path: str = "",
        status: Optional[int] = None,
    ) -> None:
        self.target = target
        self.path = path
        self.status = status
        super().__init__(message)


class UpstreamTransientError(UpstreamError):
    """Rate limited, unavailable, or no response; safe to retry later."""


class UpstreamTimeoutError(UpstreamTransientError):
    """The upstream call exceeded its timeout."""


class UpstreamPermanentError(UpstreamError):
    """Retrying will not help; the unit of work should be marked done."""


class UpstreamNotFoundError(UpstreamPermanentError):
    """HTTP 404 (resource removed, renamed, or never existed)."""


class UpstreamSchemaError(UpstreamPermanentError):
    """The response body is missing fields normalization requires."""


# ── Infrastructure ────────────────────────────────────────────────────────────


class InfrastructureError(HarvesterError):
    """Shared store or broker is unreachable or returned an error."""


class RunLockHeldError(HarvesterError):
    """A sweep's run lock is held by another process.

    Attributes:
        name: Lock name.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Run lock '{name}' is held by another process.")


# ── Messages ──────────────────────────────────────────────────────────────────


class EnvelopeValidationError(HarvesterError):
    """A message body is not a valid ``JobEnvelope`` or has no handler."""
