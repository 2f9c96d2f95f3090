"""
Event sinks for orchestration events.

This module provides the EventSink contract consumed by the core, an
in-memory EventBus with filtered subscriptions, and the EventEmitter the
components publish through.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from .types import OrchestrationEvent, OrchestrationEventType

logger = logging.getLogger(__name__)


class EventSink(ABC):
    """Anything that accepts orchestration events (transport layer, tracer, test recorder)."""

    @abstractmethod
    async def publish(self, event: OrchestrationEvent) -> None:
        ...

    async def close(self) -> None:
        return None


@dataclass
class EventSubscription:
    """Subscription to events from the event bus."""

    subscription_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    source_id: str | None = None
    event_types: set[OrchestrationEventType] | None = None  # None = all types
    categories: set[str] | None = None  # e.g. {"workflow", "process"}

    def matches(self, event: OrchestrationEvent) -> bool:
        if self.source_id and event.source_id != self.source_id:
            return False
        if self.event_types and event.type not in self.event_types:
            return False
        if self.categories and event.category not in self.categories:
            return False
        return True


class InMemoryEventBus(EventSink):
    """In-memory event bus.

    Uses an asyncio.Queue per subscription and keeps a bounded history of
    published events for inspection. Suitable for single-process deployments
    and testing.
    """

    def __init__(
        self,
        max_queue_size: int = 1000,
        drop_policy: str = "oldest",  # "oldest" or "newest"
        history_size: int = 10000,
    ) -> None:
        if drop_policy not in ("oldest", "newest"):
            raise ValueError("drop_policy must be 'oldest' or 'newest'")
        self._queues: dict[str, asyncio.Queue[OrchestrationEvent | None]] = {}
        self._subscriptions: dict[str, EventSubscription] = {}
        self._max_queue_size = max_queue_size
        self._drop_policy = drop_policy
        self._history: deque[OrchestrationEvent] = deque(maxlen=history_size)
        self._closed = False

    @property
    def history(self) -> list[OrchestrationEvent]:
        return list(self._history)

    def events_of(
        self,
        event_type: OrchestrationEventType,
        source_id: str | None = None,
    ) -> list[OrchestrationEvent]:
        return [
            e for e in self._history if e.type == event_type and (source_id is None or e.source_id == source_id)
        ]

    async def publish(self, event: OrchestrationEvent) -> None:
        if self._closed:
            return
        self._history.append(event)
        for sub_id, subscription in list(self._subscriptions.items()):
            if not subscription.matches(event):
                continue
            queue = self._queues.get(sub_id)
            if queue is None:
                continue
            if queue.full():
                if self._drop_policy == "newest":
                    continue
                queue.get_nowait()
            queue.put_nowait(event)

    def subscribe(
        self,
        source_id: str | None = None,
        event_types: set[OrchestrationEventType] | None = None,
        categories: set[str] | None = None,
    ) -> EventSubscription:
        subscription = EventSubscription(source_id=source_id, event_types=event_types, categories=categories)
        self._subscriptions[subscription.subscription_id] = subscription
        self._queues[subscription.subscription_id] = asyncio.Queue(maxsize=self._max_queue_size)
        return subscription

    async def events(self, subscription: EventSubscription) -> AsyncIterator[OrchestrationEvent]:
        """Yield events until the subscription is removed or the bus closes."""
        queue = self._queues.get(subscription.subscription_id)
        if queue is None:
            return
        while True:
            event = await queue.get()
            if event is None:  # close sentinel
                break
            yield event

    async def wait_for_event(
        self,
        subscription: EventSubscription,
        timeout: float | None = None,
    ) -> OrchestrationEvent | None:
        """Wait for a single event with optional timeout."""
        queue = self._queues.get(subscription.subscription_id)
        if queue is None:
            return None
        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    def unsubscribe(self, subscription: EventSubscription) -> None:
        sub_id = subscription.subscription_id
        self._subscriptions.pop(sub_id, None)
        queue = self._queues.pop(sub_id, None)
        if queue is not None:
            self._put_sentinel(queue)

    def _put_sentinel(self, queue: asyncio.Queue[OrchestrationEvent | None]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(None)

    async def close(self) -> None:
        self._closed = True
        for queue in self._queues.values():
            self._put_sentinel(queue)
        self._queues.clear()
        self._subscriptions.clear()


class EventEmitter:
    """Publishes events to an optional sink on behalf of one component.

    A failing sink is logged and never breaks the caller.
    """

    def __init__(self, sink: EventSink | None = None) -> None:
        self.sink = sink

    async def emit(
        self,
        event_type: OrchestrationEventType,
        source_id: str,
        *,
        step_id: str | None = None,
        **data: Any,
    ) -> OrchestrationEvent | None:
        if self.sink is None:
            return None
        event = OrchestrationEvent(type=event_type, source_id=source_id, step_id=step_id, data=data)
        try:
            await self.sink.publish(event)
        except Exception:
            logger.exception(f"Event sink failed to publish {event_type.value} for {source_id}")
        return event


__all__ = [
    "EventSink",
    "EventSubscription",
    "InMemoryEventBus",
    "EventEmitter",
]
