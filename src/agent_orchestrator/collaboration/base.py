"""
Shared session bookkeeping for the collaboration engines.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any, Generic, TypeVar

from ..agents.invoker import AgentInvoker
from ..agents.registry import AgentRegistry
from ..errors import NotFoundError, OrchestrationTimeoutError, StorageError
from ..events.bus import EventEmitter, EventSink
from ..retry import RetryPolicy
from ..storage.base import KeyValueStore
from ..telemetry import MetricRegistry
from .types import DiscussionSession, SelfCritiqueSession

logger = logging.getLogger(__name__)

S = TypeVar("S", SelfCritiqueSession, DiscussionSession)

# Finished sessions stay readable in the keyed store for a day
SESSION_RETENTION = 86400.0


class CollaborationEngine(Generic[S]):
    """Session tracking, background execution and persistence."""

    kind = "session"
    key_prefix = "session:"

    def __init__(
        self,
        agents: AgentRegistry,
        invoker: AgentInvoker,
        *,
        events: EventSink | None = None,
        metrics: MetricRegistry | None = None,
        store: KeyValueStore | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self.agents = agents
        self.invoker = invoker
        self.retry = retry
        self._emitter = EventEmitter(events)
        self._metrics = metrics or MetricRegistry()
        self._store = store
        self._sessions: dict[str, S] = {}
        self._tasks: dict[str, asyncio.Task[S]] = {}

    def get(self, session_id: str) -> S:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(self.kind, session_id)
        return session

    async def load(self, session_id: str) -> dict[str, Any]:
        """Session as a dict, from this instance or the shared store."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session.to_dict()
        stored = await self._store.get(f"{self.key_prefix}{session_id}") if self._store else None
        if stored is None:
            raise NotFoundError(self.kind, session_id)
        return stored

    def list(self) -> list[S]:
        return list(self._sessions.values())

    def _spawn(self, session_id: str, coro: Coroutine[Any, Any, S]) -> asyncio.Task[S]:
        task = asyncio.create_task(coro, name=f"{self.kind}-{session_id}")
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))
        return task

    async def wait(self, session_id: str, timeout: float | None = None) -> S:
        """Wait for a background session to stop and return it."""
        session = self.get(session_id)
        task = self._tasks.get(session_id)
        if task is not None:
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                raise OrchestrationTimeoutError(
                    f"Timed out waiting for {self.kind} {session_id}", timeout=timeout
                )
        return session

    async def cancel(self, session_id: str) -> bool:
        """Cancel a running session. Returns False if it already stopped."""
        session = self.get(session_id)
        task = self._tasks.get(session_id)
        if task is None or session.status.is_terminal:
            return False
        task.cancel()
        await asyncio.wait({task})
        return True

    async def _persist(self, session: S) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(f"{self.key_prefix}{session.session_id}", session.to_dict(), ttl=SESSION_RETENTION)
        except StorageError as exc:
            logger.warning(f"Could not persist {self.kind} {session.session_id}: {exc}")

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


__all__ = ["CollaborationEngine", "SESSION_RETENTION"]
