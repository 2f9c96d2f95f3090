"""
Orchestration event types.

Every lifecycle change in the core is published as an ``OrchestrationEvent``
to an external sink. Event names are dotted by category:
- process.*: bounded execution queue lifecycle
- workflow.*: workflow and step lifecycle (``workflow.step_ready`` ...)
- critique.*: self-critique iterations
- discussion.*: discussion rounds and consensus
- circuit.*: breaker state transitions
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OrchestrationEventType(str, Enum):
    """Typed lifecycle events emitted by the orchestration core."""

    # Process events
    PROCESS_QUEUED = "process.queued"
    PROCESS_STARTED = "process.started"
    PROCESS_COMPLETED = "process.completed"
    PROCESS_FAILED = "process.failed"
    PROCESS_TIMEOUT = "process.timeout"
    PROCESS_CANCELLED = "process.cancelled"

    # Workflow events
    WORKFLOW_SUBMITTED = "workflow.submitted"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_PAUSED = "workflow.paused"
    WORKFLOW_RESUMED = "workflow.resumed"
    WORKFLOW_COMPLETED = "workflow.completed"
    WORKFLOW_FAILED = "workflow.failed"
    WORKFLOW_CANCELLED = "workflow.cancelled"

    # Step events
    STEP_READY = "workflow.step_ready"
    STEP_STARTED = "workflow.step_started"
    STEP_RETRYING = "workflow.step_retrying"
    STEP_COMPLETED = "workflow.step_completed"
    STEP_FAILED = "workflow.step_failed"
    STEP_SKIPPED = "workflow.step_skipped"
    STEP_CANCELLED = "workflow.step_cancelled"

    # Self-critique events
    CRITIQUE_STARTED = "critique.started"
    CRITIQUE_ITERATION = "critique.iteration"
    CRITIQUE_COMPLETED = "critique.completed"
    CRITIQUE_FAILED = "critique.failed"

    # Discussion events
    DISCUSSION_STARTED = "discussion.started"
    DISCUSSION_ROUND_STARTED = "discussion.round_started"
    DISCUSSION_CONTRIBUTION = "discussion.contribution"
    DISCUSSION_ROUND_COMPLETED = "discussion.round_completed"
    DISCUSSION_CONVERGED = "discussion.converged"
    DISCUSSION_CONSENSUS_NOT_REACHED = "discussion.consensus_not_reached"
    DISCUSSION_COMPLETED = "discussion.completed"
    DISCUSSION_FAILED = "discussion.failed"

    # Circuit breaker events
    CIRCUIT_OPENED = "circuit.opened"
    CIRCUIT_HALF_OPENED = "circuit.half_opened"
    CIRCUIT_CLOSED = "circuit.closed"

    @property
    def category(self) -> str:
        return self.value.split(".", 1)[0]


@dataclass
class OrchestrationEvent:
    """One lifecycle event.

    ``source_id`` is the id of the process, workflow or session the event
    belongs to; ``step_id`` is set for step events only.
    """

    type: OrchestrationEventType
    source_id: str
    step_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    schema_version: int = 1

    @property
    def category(self) -> str:
        return self.type.category

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "source_id": self.source_id,
            "step_id": self.step_id,
            "data": self.data,
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrchestrationEvent:
        """Deserialize from dictionary."""
        return cls(
            type=OrchestrationEventType(data["type"]),
            source_id=data["source_id"],
            step_id=data.get("step_id"),
            data=dict(data.get("data", {})),
            event_id=data.get("event_id", str(uuid.uuid4())),
            timestamp=data.get("timestamp", time.time()),
            schema_version=data.get("schema_version", 1),
        )


__all__ = ["OrchestrationEventType", "OrchestrationEvent"]
