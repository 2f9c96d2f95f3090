"""
Execution configuration: queue, workflow engine and context store.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import FailurePolicy


@dataclass(frozen=True)
class QueueConfig:
    """Configuration for the bounded execution queue."""

    max_concurrent: int = 10
    max_queue_size: int = 100
    enable_queue: bool = True
    default_timeout: float | None = 300.0
    default_priority: int = 50

    # Terminal process records are evicted after this many seconds
    retention: float = 86400.0

    key_prefix: str = "process:"

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.max_queue_size < 0:
            raise ValueError("max_queue_size must be non-negative")
        if self.default_timeout is not None and self.default_timeout <= 0:
            raise ValueError("default_timeout must be positive")
        if not 0 <= self.default_priority <= 100:
            raise ValueError("default_priority must be between 0 and 100")
        if self.retention <= 0:
            raise ValueError("retention must be positive")


@dataclass(frozen=True)
class WorkflowConfig:
    """Configuration for the workflow engine."""

    max_parallel_steps: int = 5
    max_steps: int = 50
    max_active_workflows: int = 10
    failure_policy: FailurePolicy = FailurePolicy.STRICT
    default_step_timeout: float | None = 300.0
    workflow_timeout: float | None = None
    max_map_reduce_items: int = 100
    retention: float = 86400.0
    key_prefix: str = "workflow:"

    def __post_init__(self) -> None:
        if self.max_parallel_steps < 1:
            raise ValueError("max_parallel_steps must be at least 1")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if self.max_active_workflows < 1:
            raise ValueError("max_active_workflows must be at least 1")
        if self.max_map_reduce_items < 1:
            raise ValueError("max_map_reduce_items must be at least 1")
        if not isinstance(self.failure_policy, FailurePolicy):
            object.__setattr__(self, "failure_policy", FailurePolicy(self.failure_policy))


@dataclass(frozen=True)
class ContextConfig:
    """Configuration for the workflow context store."""

    default_ttl: float = 3600.0
    max_snapshots: int = 10
    max_nesting_depth: int = 10
    key_prefix: str = "context:"

    def __post_init__(self) -> None:
        if self.default_ttl <= 0:
            raise ValueError("default_ttl must be positive")
        if self.max_snapshots < 1:
            raise ValueError("max_snapshots must be at least 1")
        if self.max_nesting_depth < 1:
            raise ValueError("max_nesting_depth must be at least 1")


__all__ = ["QueueConfig", "WorkflowConfig", "ContextConfig"]
