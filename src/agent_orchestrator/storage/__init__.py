"""
Storage backends for process, workflow and context state.
"""

from ..config.logging import StorageConfig
from .base import InMemoryKeyValueStore, KeyValueStore
from .redis import REDIS_AVAILABLE, RedisKeyValueStore


def create_store(config: StorageConfig | None = None) -> KeyValueStore:
    """Build the keyed store selected by ``config.backend``."""
    config = config or StorageConfig()
    if config.backend == "redis":
        return RedisKeyValueStore.from_url(config.redis_url, key_prefix=config.key_prefix)
    return InMemoryKeyValueStore()


__all__ = [
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "REDIS_AVAILABLE",
    "create_store",
]
