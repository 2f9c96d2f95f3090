"""
Redis-backed keyed store.

Requires redis (async): pip install redis

Redis gives horizontal read scaling for process, workflow and context
state: a second instance pointed at the same Redis can answer status
queries. It is not a recovery log; in-flight work owned by a crashed
instance stays ``running`` until reaped.
"""

from __future__ import annotations

import json
import math
from typing import Any

try:
    import redis.asyncio as redis

    REDIS_AVAILABLE = True
except ImportError:
    redis = None  # type: ignore
    REDIS_AVAILABLE = False

from ..errors import StorageError
from .base import KeyValueStore


def _require_redis() -> None:
    """Raise ImportError if redis is not available."""
    if not REDIS_AVAILABLE:
        raise ImportError("Redis storage requires redis. Install with: pip install redis")


class RedisKeyValueStore(KeyValueStore):
    """Keyed store on top of a ``redis.asyncio`` client.

    Example:
        ```python
        store = RedisKeyValueStore.from_url("redis://localhost:6379/0")
        await store.set("process:abc", {"status": "running"}, ttl=3600)
        ```
    """

    def __init__(self, client: Any, key_prefix: str = "orchestrator") -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "orchestrator") -> RedisKeyValueStore:
        _require_redis()
        return cls(redis.from_url(url, decode_responses=True), key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}" if self._prefix else key

    def _strip(self, key: str | bytes) -> str:
        if isinstance(key, bytes):
            key = key.decode()
        if self._prefix and key.startswith(f"{self._prefix}:"):
            return key[len(self._prefix) + 1 :]
        return key

    async def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = await self._client.get(self._key(key))
        except Exception as exc:
            raise StorageError(f"Redis GET failed for '{key}'", cause=exc) from exc
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        payload = json.dumps(value, default=str)
        try:
            if ttl is not None:
                await self._client.set(self._key(key), payload, ex=max(1, math.ceil(ttl)))
            else:
                await self._client.set(self._key(key), payload)
        except Exception as exc:
            raise StorageError(f"Redis SET failed for '{key}'", cause=exc) from exc

    async def expire(self, key: str, ttl: float) -> bool:
        try:
            return bool(await self._client.expire(self._key(key), max(1, math.ceil(ttl))))
        except Exception as exc:
            raise StorageError(f"Redis EXPIRE failed for '{key}'", cause=exc) from exc

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(self._key(key)))
        except Exception as exc:
            raise StorageError(f"Redis DEL failed for '{key}'", cause=exc) from exc

    async def scan(self, prefix: str) -> list[str]:
        keys: list[str] = []
        try:
            async for key in self._client.scan_iter(match=f"{self._key(prefix)}*"):
                keys.append(self._strip(key))
        except Exception as exc:
            raise StorageError(f"Redis SCAN failed for '{prefix}'", cause=exc) from exc
        return sorted(keys)

    async def close(self) -> None:
        await self._client.aclose()


__all__ = ["RedisKeyValueStore", "REDIS_AVAILABLE"]
