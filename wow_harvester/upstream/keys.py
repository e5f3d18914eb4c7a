"""
Pool of Blizzard API keys shared by producers and workers.

Each pooled key is a client-credentials pair with its own access token.
Producers stamp ``next_token()`` into job payloads so consecutive jobs
spread over the pool.  The gateway swaps a locked token for a live one with
``resolve()`` and counts every 403/429 with ``report()``.

Error counts and locks live in the shared ``KeyValueStore`` so every
process skips the same keys::

    keys:<client_id>:errors   403/429 answers in the current window
    keys:<client_id>:locked   present while the key is rested
    keys:token:<digest>       client id behind an issued token

A key whose count passes ``lock_errors`` is locked for ``lock_seconds``;
the counter shares that window, so an unlocked key starts from zero.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Optional

from wow_harvester.errors import UpstreamError
from wow_harvester.store.base import KeyValueStore
from wow_harvester.utils.logging import log_event

logger = logging.getLogger(__name__)

TRACKED_ERROR_STATUSES = frozenset({403, 429})
TOKEN_REFRESH_MARGIN_SECONDS = 300.0

TokenFetcher = Callable[[str, str], Awaitable[tuple[str, float]]]


@dataclass
class PooledKey:
    client_id: str
    client_secret: str
    access_token: Optional[str] = None
    expires_at: Optional[float] = None


class KeyPool:
    """Round-robin over API keys, skipping locked ones.

    Args:
        keys:         ``(client_id, client_secret)`` pairs.
        store:        Shared TTL store for error counters and locks.
        fetch_token:  ``(client_id, client_secret) -> (token, expires_in)``.
        lock_errors:  Tracked errors tolerated before a key is locked.
        lock_seconds: How long a locked key rests.
        clock:        Monotonic seconds, for token expiry.
    """

    def __init__(
        self,
        keys: Iterable[tuple[str, str]],
        store: KeyValueStore,
        fetch_token: TokenFetcher,
        lock_errors: int = 200,
        lock_seconds: int = 7200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._keys = [PooledKey(client_id, secret) for client_id, secret in keys]
        self._store = store
        self._fetch_token = fetch_token
        self.lock_errors = lock_errors
        self.lock_seconds = lock_seconds
        self._clock = clock
        self._cursor = 0

    def __len__(self) -> int:
        return len(self._keys)

    # ── Keys ──────────────────────────────────────────────────────────────────

    @staticmethod
    def _errors_key(client_id: str) -> str:
        return f"keys:{client_id}:errors"

    @staticmethod
    def _lock_key(client_id: str) -> str:
        return f"keys:{client_id}:locked"

    @staticmethod
    def _token_key(token: str) -> str:
        return f"keys:token:{hashlib.sha256(token.encode()).hexdigest()[:24]}"

    async def _key_for(self, token: str) -> Optional[PooledKey]:
        """The pooled key that issued ``token``, in this process or another."""
        key = next((k for k in self._keys if k.access_token == token), None)
        if key is not None:
            return key
        client_id = await self._store.get(self._token_key(token))
        return next((k for k in self._keys if k.client_id == client_id), None)

    # ── Tokens ────────────────────────────────────────────────────────────────

    async def _token_for(self, key: PooledKey) -> Optional[str]:
        fresh = key.access_token is not None and (
            key.expires_at is None or self._clock() < key.expires_at - TOKEN_REFRESH_MARGIN_SECONDS
        )
        if fresh:
            return key.access_token
        try:
            token, expires_in = await self._fetch_token(key.client_id, key.client_secret)
        except UpstreamError as exc:
            logger.warning("Token refresh failed for key %s: %s", key.client_id, exc)
            return None
        key.access_token = token
        key.expires_at = self._clock() + expires_in
        await self._store.set(self._token_key(token), key.client_id, ttl_seconds=max(int(expires_in), 1))
        logger.info("Refreshed token for key %s.", key.client_id)
        return token

    async def is_locked(self, client_id: str) -> bool:
        return await self._store.exists(self._lock_key(client_id))

    async def next_token(self) -> Optional[str]:
        """Token of the next unlocked key, or ``None`` when every key is out."""
        for _ in range(len(self._keys)):
            key = self._keys[self._cursor]
            self._cursor = (self._cursor + 1) % len(self._keys)
            if await self.is_locked(key.client_id):
                continue
            token = await self._token_for(key)
            if token:
                return token
        if self._keys:
            logger.warning("No usable API key in a pool of %d.", len(self._keys))
        return None

    async def resolve(self, token: Optional[str]) -> Optional[str]:
        """Keep ``token`` unless it belongs to a locked pooled key.

        Tokens the pool does not know (a client's own credential) pass
        through unchanged; a missing token is filled from the pool.
        """
        if token is None:
            return await self.next_token()
        key = await self._key_for(token)
        if key is not None and await self.is_locked(key.client_id):
            return await self.next_token() or token
        return token

    # ── Errors ────────────────────────────────────────────────────────────────

    async def report(self, token: Optional[str], status: int) -> bool:
        """Count a 403/429 against the key behind ``token``.

        Returns:
            True if this answer locked the key.
        """
        if token is None or status not in TRACKED_ERROR_STATUSES:
            return False
        key = await self._key_for(token)
        if key is None:
            return False
        errors = await self._store.incr(self._errors_key(key.client_id), ttl_seconds=self.lock_seconds)
        if errors <= self.lock_errors:
            return False
        locked = await self._store.set(
            self._lock_key(key.client_id), str(errors), ttl_seconds=self.lock_seconds, only_if_absent=True
        )
        if locked:
            await self._store.delete(self._errors_key(key.client_id))
            log_event(
                logger,
                logging.WARNING,
                "keys.locked",
                f"API key {key.client_id} locked for {self.lock_seconds}s after {errors} errors",
                client_id=key.client_id,
                errors=errors,
                lock_seconds=self.lock_seconds,
            )
        return locked

    async def snapshot(self) -> list[dict[str, object]]:
        """Per-key error count and lock state, for the CLI."""
        rows: list[dict[str, object]] = []
        for key in self._keys:
            errors = await self._store.get(self._errors_key(key.client_id))
            rows.append(
                {
                    "client_id": key.client_id,
                    "errors": int(errors or 0),
                    "locked": await self.is_locked(key.client_id),
                }
            )
        return rows
