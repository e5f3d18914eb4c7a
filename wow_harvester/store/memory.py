"""Process-local ``KeyValueStore`` with lazy TTL expiry."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Optional


class MemoryKeyValueStore:
    """Dict-backed store; expired keys are dropped when next touched.

    Args:
        clock: Wall clock in seconds (injectable so tests can advance time).
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, Optional[float]]] = {}

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        return None if ttl_seconds is None else self._clock() + ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        return self._live(key)

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._data[key] = (value, self._expiry(ttl_seconds))
        return True

    async def exists(self, key: str) -> bool:
        return self._live(key) is not None

    async def delete(self, key: str) -> bool:
        present = self._live(key) is not None
        self._data.pop(key, None)
        return present

    async def delete_if_equals(self, key: str, value: str) -> bool:
        if self._live(key) != value:
            return False
        del self._data[key]
        return True

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        current = self._live(key)
        if current is None:
            self._data[key] = ("1", self._expiry(ttl_seconds))
            return 1
        count = int(current) + 1
        self._data[key] = (str(count), self._data[key][1])
        return count

    async def ttl(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires; ``None`` if absent or persistent."""
        if self._live(key) is None:
            return None
        expires_at = self._data[key][1]
        return None if expires_at is None else expires_at - self._clock()

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key) is not None)
