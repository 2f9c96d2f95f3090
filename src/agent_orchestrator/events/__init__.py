"""
Typed lifecycle events and sinks.
"""

from .bus import EventEmitter, EventSink, EventSubscription, InMemoryEventBus
from .types import OrchestrationEvent, OrchestrationEventType

__all__ = [
    "OrchestrationEvent",
    "OrchestrationEventType",
    "EventSink",
    "EventSubscription",
    "InMemoryEventBus",
    "EventEmitter",
]
