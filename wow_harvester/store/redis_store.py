"""
Redis-backed ``KeyValueStore`` shared by every worker process.

Uses ``redis.asyncio`` with ``decode_responses=True``.  Multi-step
operations run as Lua scripts so they are atomic on the server:

  - ``incr``: INCR, then EXPIRE only when the key was just created, so a
    counter never outlives its window and never becomes a zombie key.
  - ``delete_if_equals``: compare-and-delete used to release run locks
    without deleting a lock another process has since acquired.

Every ``redis.exceptions.RedisError`` is re-raised as
``InfrastructureError`` so callers only see the harvester taxonomy.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

import redis.asyncio as aioredis
import redis.exceptions

from wow_harvester.errors import InfrastructureError

if TYPE_CHECKING:
    from wow_harvester.config import RedisConfig

logger = logging.getLogger(__name__)

INCR_WITH_TTL_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 and tonumber(ARGV[1]) > 0 then
    redis.call('EXPIRE', KEYS[1], ARGV[1])
end
return count
"""

DELETE_IF_EQUALS_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def build_redis_client(config: "RedisConfig") -> aioredis.Redis:
    """Create a ``redis.asyncio`` client from ``RedisConfig``."""
    return aioredis.from_url(
        config.resolved_url(),
        decode_responses=True,
        socket_connect_timeout=config.socket_connect_timeout,
        health_check_interval=config.health_check_interval,
    )


class RedisKeyValueStore:
    """``KeyValueStore`` over a shared Redis instance.

    Args:
        client:     Async Redis client (``decode_responses=True``).
        key_prefix: Namespace prepended to every key (``"<prefix>:<key>"``).
    """

    def __init__(self, client: aioredis.Redis, key_prefix: str = "harvester") -> None:
        self._redis = client
        self._prefix = key_prefix

    @classmethod
    def from_config(cls, config: "RedisConfig") -> "RedisKeyValueStore":
        return cls(build_redis_client(config), key_prefix=config.key_prefix)

    def _k(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    async def _call(self, op: str, coro: Any) -> Any:
        try:
            return await coro
        except redis.exceptions.RedisError as exc:
            logger.error("Redis %s failed: %s", op, exc)
            raise InfrastructureError(f"Redis {op} failed: {exc}") from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("GET", self._redis.get(self._k(key)))

    async def set(
        self,
        key: str,
        value: str,
        ttl_seconds: Optional[int] = None,
        only_if_absent: bool = False,
    ) -> bool:
        result = await self._call(
            "SET",
            self._redis.set(self._k(key), value, ex=ttl_seconds, nx=only_if_absent),
        )
        return bool(result)

    async def exists(self, key: str) -> bool:
        return int(await self._call("EXISTS", self._redis.exists(self._k(key)))) > 0

    async def delete(self, key: str) -> bool:
        return int(await self._call("DEL", self._redis.delete(self._k(key)))) > 0

    async def delete_if_equals(self, key: str, value: str) -> bool:
        result = await self._call(
            "EVAL",
            self._redis.eval(DELETE_IF_EQUALS_SCRIPT, 1, self._k(key), value),
        )
        return int(result) > 0

    async def incr(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self._call(
            "EVAL",
            self._redis.eval(INCR_WITH_TTL_SCRIPT, 1, self._k(key), str(ttl_seconds or 0)),
        )
        return int(result)

    async def close(self) -> None:
        await self._redis.aclose()
