"""TTL key/value stores backing progress markers, run locks and shared rate state."""

from wow_harvester.store.base import KeyValueStore
from wow_harvester.store.memory import MemoryKeyValueStore
from wow_harvester.store.redis_store import RedisKeyValueStore

__all__ = ["KeyValueStore", "MemoryKeyValueStore", "RedisKeyValueStore"]
