"""
TTL key/value store contract shared by progress markers, run locks and
rate-limit state.

Two implementations:

  ``MemoryKeyValueStore``  process-local dict with lazy expiry (run-local, tests)
  ``RedisKeyValueStore``   ``redis.asyncio`` client shared by all workers

Keys are namespaced strings (``<domain>:<resource>:<composite-id>``); values
are short strings (a ``"done"`` sentinel, a hex digest, a lock token, a JSON
blob).  All operations are atomic per key; nothing here spans keys.
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class KeyValueStore(Protocol):
    """Async TTL key/value store."""

    async def get(self, key: str) -> Optional[str]:
        """Return the value for ``key`` or ``None`` if absent/expired."""
        ...

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool:
        """Store ``value``; with ``only_if_absent`` behave like ``SET NX``.

        Returns:
            True if the value was written.
        """
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Delete ``key`` only while it still holds ``value``."""
        ...

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        """Increment a counter; the TTL is applied only when the key is created."""
        ...

    async def close(self) -> None:
        ...
