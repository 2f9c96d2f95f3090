"""
Durable keyed store interface and the in-memory implementation.

Processes, workflows and contexts are persisted as JSON-compatible dicts
under prefixed keys. Visibility across instances is last-write-wins.
"""

from __future__ import annotations

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any


class KeyValueStore(ABC):
    """Abstract keyed store with per-key expiry."""

    @abstractmethod
    async def get(self, key: str) -> dict[str, Any] | None:
        """Get a value, or None if missing or expired."""
        ...

    @abstractmethod
    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        """Store a value, replacing any previous one. ``ttl`` in seconds."""
        ...

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> bool:
        """Reset the expiry of an existing key. Returns False if missing."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def scan(self, prefix: str) -> list[str]:
        """List live keys starting with ``prefix``."""
        ...

    async def close(self) -> None:
        """Release connections. Default is a no-op."""
        return None


class InMemoryKeyValueStore(KeyValueStore):
    """In-memory store for development, testing and single-instance use.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, tuple[dict[str, Any], float | None]] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> dict[str, Any] | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            value = self._live(key)
            return copy.deepcopy(value) if value is not None else None

    async def set(self, key: str, value: dict[str, Any], ttl: float | None = None) -> None:
        async with self._lock:
            expires_at = self._clock() + ttl if ttl is not None else None
            self._data[key] = (copy.deepcopy(value), expires_at)

    async def expire(self, key: str, ttl: float) -> bool:
        async with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def scan(self, prefix: str) -> list[str]:
        async with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k) is not None)

    def clear(self) -> None:
        self._data.clear()


__all__ = ["KeyValueStore", "InMemoryKeyValueStore"]
