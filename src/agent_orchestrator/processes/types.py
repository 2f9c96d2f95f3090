"""
Process types for the bounded execution queue.

A process is one bounded, tracked, possibly-timed-out unit of work. It is
created on submission, mutated only by the ``ProcessManager`` and evicted
after the retention TTL.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from ..templating import to_jsonable

ProcessUnit = Callable[[], Awaitable[Any]]


class ProcessStatus(str, Enum):
    """Process lifecycle states.

    State transitions:
    - PENDING -> QUEUED (no free slot, held in the priority queue)
    - PENDING/QUEUED -> RUNNING (slot acquired)
    - RUNNING -> COMPLETED | FAILED | TIMEOUT
    - PENDING/QUEUED/RUNNING -> CANCELLED
    """

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {
            ProcessStatus.COMPLETED,
            ProcessStatus.FAILED,
            ProcessStatus.TIMEOUT,
            ProcessStatus.CANCELLED,
        }

    @property
    def is_active(self) -> bool:
        return not self.is_terminal


VALID_TRANSITIONS: dict[ProcessStatus, set[ProcessStatus]] = {
    ProcessStatus.PENDING: {ProcessStatus.QUEUED, ProcessStatus.RUNNING, ProcessStatus.CANCELLED},
    ProcessStatus.QUEUED: {ProcessStatus.RUNNING, ProcessStatus.CANCELLED},
    ProcessStatus.RUNNING: {
        ProcessStatus.COMPLETED,
        ProcessStatus.FAILED,
        ProcessStatus.TIMEOUT,
        ProcessStatus.CANCELLED,
    },
    ProcessStatus.COMPLETED: set(),
    ProcessStatus.FAILED: set(),
    ProcessStatus.TIMEOUT: set(),
    ProcessStatus.CANCELLED: set(),
}


@dataclass
class ProcessRecord:
    """Tracked state of one process."""

    process_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str | None = None
    priority: int = 50
    status: ProcessStatus = ProcessStatus.PENDING

    # Timestamps
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None

    timeout: float | None = None

    # Outcome
    result: Any = None
    error: str | None = None
    error_code: str | None = None

    # Instance that owns the running unit (used by reapers)
    owner_id: str | None = None

    metadata: dict[str, Any] = field(default_factory=dict)
    schema_version: int = 1

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def can_transition_to(self, new_status: ProcessStatus) -> bool:
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: ProcessStatus, **updates: Any) -> ProcessRecord:
        """Create a new ProcessRecord with updated status.

        Raises:
            ValueError: If the transition is invalid
        """
        if not self.can_transition_to(new_status):
            raise ValueError(f"Invalid transition: {self.status.value} -> {new_status.value}")

        now = time.time()
        updates.update(status=new_status, updated_at=now)
        if new_status == ProcessStatus.RUNNING and self.started_at is None:
            updates["started_at"] = now
        if new_status.is_terminal:
            updates["completed_at"] = now
        return replace(self, metadata=dict(self.metadata), **updates)

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process_id,
            "name": self.name,
            "priority": self.priority,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "timeout": self.timeout,
            "result": to_jsonable(self.result),
            "error": self.error,
            "error_code": self.error_code,
            "owner_id": self.owner_id,
            "metadata": dict(self.metadata),
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessRecord:
        return cls(
            process_id=data.get("process_id", str(uuid.uuid4())),
            name=data.get("name"),
            priority=data.get("priority", 50),
            status=ProcessStatus(data.get("status", "pending")),
            created_at=data.get("created_at", time.time()),
            updated_at=data.get("updated_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            timeout=data.get("timeout"),
            result=data.get("result"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            owner_id=data.get("owner_id"),
            metadata=dict(data.get("metadata", {})),
            schema_version=data.get("schema_version", 1),
        )


__all__ = ["ProcessUnit", "ProcessStatus", "ProcessRecord", "VALID_TRANSITIONS"]
