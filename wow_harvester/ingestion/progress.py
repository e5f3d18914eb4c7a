"""
Progress markers, content-hash dedup and run locks.

Three kinds of record live in the shared ``KeyValueStore``:

  Identity markers   ``osint:ladder:<realm>:<dungeon>:<period> = "done"``
                     A unit of enumerable work completed (even if the upstream
                     answered 404 or empty).  Multi-day TTL so permanently
                     absent units are not retried every cycle.
  Payload digests    ``dma:auctions:us:commodities:digest = <sha256>``
                     Digest of the last payload written for one resource.
                     Recorded after the write commits.  Shorter TTL; only a
                     change from the last written content triggers a write.
  Run locks          ``lock:sweep:<name> = <token>``
                     Best-effort "this recurring sweep is already running".

Presence of a non-expired marker is always a correctness-preserving reason
to skip the upstream call: upserts are idempotent, so losing a marker only
costs a re-fetch, never a wrong write.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Optional
from uuid import uuid4

from wow_harvester.store.base import KeyValueStore
from wow_harvester.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

DONE = "done"


class MarkerState(StrEnum):
    DONE = "done"
    PAYLOAD_HASH = "payloadHash"


@dataclass(frozen=True)
class ProgressMarker:
    """A marker as written; ``expires_at`` is informational."""

    key: str
    state: MarkerState
    expires_at: Optional[datetime]


# ── Keys and hashes ───────────────────────────────────────────────────────────


def progress_key(domain: str, resource: str, *parts: Any) -> str:
    """Build a namespaced ``<domain>:<resource>:<composite-id>`` key.

    Example::

        progress_key("osint", "ladder", 3676, 375, 940)
        # → "osint:ladder:3676:375:940"
    """
    if not domain or not resource:
        raise ValueError("progress_key requires a domain and a resource.")
    segments = [domain, resource, *(str(p).lower() for p in parts)]
    return ":".join(segments)


def content_hash(payload: Any) -> str:
    """Compute a SHA-256 hash of any JSON-serializable payload.

    Serialization uses ``sort_keys=True`` so identical data always produces
    the same digest regardless of dict key ordering.

    Returns:
        Hex-encoded SHA-256 digest string (64 chars).
    """
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


# ── Run lock ──────────────────────────────────────────────────────────────────


class RunLock:
    """Handle for an acquired run lock.  Release deletes only our own token."""

    def __init__(self, store: KeyValueStore, name: str, key: str, token: str) -> None:
        self._store = store
        self.name = name
        self.key = key
        self.token = token
        self.released = False

    async def release(self) -> bool:
        if self.released:
            return False
        self.released = True
        removed = await self._store.delete_if_equals(self.key, self.token)
        if not removed:
            logger.warning("Run lock '%s' expired or was taken over before release.", self.name)
        return removed


# ── Store facade ──────────────────────────────────────────────────────────────


class ProgressStore:
    """Identity markers, payload-hash dedup and named run locks.

    Args:
        store:     Shared TTL key/value store.
        clock:     Returns the current aware datetime (for ``ProgressMarker``).
    """

    def __init__(self, store: KeyValueStore, clock=utcnow) -> None:
        self.store = store
        self._clock = clock

    # Identity markers

    async def is_done(self, key: str) -> bool:
        return await self.store.exists(key)

    async def mark_done(self, key: str, ttl_seconds: int) -> ProgressMarker:
        await self.store.set(key, DONE, ttl_seconds=ttl_seconds)
        return ProgressMarker(
            key=key,
            state=MarkerState.DONE,
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
        )

    async def pending(self, keys: list[str]) -> list[str]:
        """Return the subset of ``keys`` with no live marker, order preserved."""
        return [key for key in keys if not await self.store.exists(key)]

    # Content-hash dedup

    @staticmethod
    def _digest_key(namespace: str) -> str:
        return f"{namespace}:digest"

    async def last_digest(self, namespace: str) -> Optional[str]:
        """Digest of the last payload written under ``namespace``, if still live."""
        return await self.store.get(self._digest_key(namespace))

    async def is_duplicate(self, namespace: str, digest: str) -> bool:
        """True when ``digest`` is the last payload written under ``namespace``.

        Only the latest digest counts, so a resource that changes and then
        changes back is written again.
        """
        return await self.last_digest(namespace) == digest

    async def mark_seen(self, namespace: str, digest: str, ttl_seconds: int) -> ProgressMarker:
        """Record ``digest`` as written.  Call only after the write committed."""
        key = self._digest_key(namespace)
        await self.store.set(key, digest, ttl_seconds=ttl_seconds)
        return ProgressMarker(
            key=key,
            state=MarkerState.PAYLOAD_HASH,
            expires_at=self._clock() + timedelta(seconds=ttl_seconds),
        )

    async def payload_unchanged(self, namespace: str, payload: Any) -> tuple[bool, str]:
        """Hash ``payload`` and compare it with the last written digest.

        Returns:
            ``(unchanged, digest)``.  Nothing is recorded; pass ``digest`` to
            ``mark_seen()`` once the write succeeds.
        """
        digest = content_hash(payload)
        return (await self.is_duplicate(namespace, digest), digest)

    # Run locks

    @staticmethod
    def _lock_key(name: str) -> str:
        return f"lock:{name}"

    async def acquire_run_lock(self, name: str, ttl_seconds: int) -> Optional[RunLock]:
        """Try to become the single active run of ``name``.

        Returns:
            A ``RunLock`` on success, ``None`` if another run holds it.
        """
        key = self._lock_key(name)
        token = uuid4().hex
        acquired = await self.store.set(key, token, ttl_seconds=ttl_seconds, only_if_absent=True)
        if not acquired:
            logger.info("Run lock '%s' is held; skipping.", name)
            return None
        logger.debug("Acquired run lock '%s' (ttl=%ds).", name, ttl_seconds)
        return RunLock(self.store, name, key, token)

    async def is_locked(self, name: str) -> bool:
        return await self.store.exists(self._lock_key(name))

    @asynccontextmanager
    async def run_lock(self, name: str, ttl_seconds: int) -> AsyncIterator[Optional[RunLock]]:
        """``async with`` form of ``acquire_run_lock``; yields ``None`` when held."""
        lock = await self.acquire_run_lock(name, ttl_seconds)
        try:
            yield lock
        finally:
            if lock is not None:
                await lock.release()
