"""
Workflow model: step definitions, workflow definitions and runtime state.

A workflow is a directed acyclic graph of steps. Each step names the agent
capability (or agent id) that runs it, the steps it depends on, its retry
policy and the context paths it writes.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config.base import FailurePolicy
from ..errors import PartialWorkflowFailureError
from ..retry import RetryPolicy
from ..templating import to_jsonable

Condition = str | Callable[[dict[str, Any]], bool]


class StepStatus(str, Enum):
    """Step lifecycle: pending -> ready -> running -> {completed, failed, skipped, cancelled}."""

    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {
            StepStatus.COMPLETED,
            StepStatus.FAILED,
            StepStatus.SKIPPED,
            StepStatus.CANCELLED,
        }


class WorkflowStatus(str, Enum):
    """Workflow lifecycle: pending -> running (<-> paused) -> {completed, failed, cancelled}."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}


class InputSource(str, Enum):
    CONTEXT = "context"  # a workflow context path
    STEP = "step"  # another step's output: "<step_id>[.<field>...]"
    LITERAL = "literal"


@dataclass(frozen=True)
class StepInput:
    """A named value handed to the agent in ``options["variables"]``."""

    name: str
    source: InputSource = InputSource.CONTEXT
    path: str | None = None
    value: Any = None


@dataclass(frozen=True)
class StepOutput:
    """Write the step result (or one field of it) to a context path the step owns."""

    context_path: str
    field: str | None = None


@dataclass
class WorkflowStep:
    """One unit of agent work within a workflow.

    Attributes:
        step_id: Unique id within the workflow
        capability: Agent capability resolved through the registry
        agent_id: Explicit agent id (overrides capability defaults)
        input: Agent input; strings are rendered as ``{{ path }}`` templates
        inputs: Named values collected from context, other steps or literals
        outputs: Extra context paths written from the result
        depends_on: Steps that must complete first
        condition: Expression or callable over the context; false skips the step
        required: A failed optional step never fails the workflow
        skip_tolerant: Run once dependencies are terminal, even if they failed
        service: Circuit breaker name (defaults to the agent's service)
    """

    step_id: str
    capability: str | None = None
    agent_id: str | None = None
    input: Any = None
    inputs: list[StepInput] = field(default_factory=list)
    outputs: list[StepOutput] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)
    condition: Condition | None = None
    retry: RetryPolicy | None = None
    timeout: float | None = None
    priority: int = 50
    required: bool = True
    skip_tolerant: bool = False
    service: str | None = None
    options: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.step_id

    @property
    def output_path(self) -> str:
        """Context path that always receives this step's output."""
        return f"{self.step_id}.output"


@dataclass
class WorkflowDefinition:
    """A graph of steps plus workflow-level policy.

    Example:
        ```python
        definition = WorkflowDefinition(name="review")
        definition.add_step(WorkflowStep("draft", capability="text-generation", input="{{ topic }}"))
        definition.add_step(WorkflowStep("check", capability="pattern-validation",
                                         input="{{ draft.output }}", depends_on=["draft"]))
        ```
    """

    name: str = ""
    steps: list[WorkflowStep] = field(default_factory=list)
    failure_policy: FailurePolicy | None = None
    max_parallel_steps: int | None = None
    timeout: float | None = None
    default_retry: RetryPolicy | None = None
    initial_context: dict[str, Any] = field(default_factory=dict)
    definition_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_step(self, step: WorkflowStep) -> WorkflowDefinition:
        self.steps.append(step)
        return self

    def step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    @property
    def step_ids(self) -> list[str]:
        return [s.step_id for s in self.steps]

    def dependents(self, step_id: str) -> list[str]:
        return [s.step_id for s in self.steps if step_id in s.depends_on]


@dataclass
class StepState:
    """Runtime state of one step."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    result: Any = None
    output: Any = None
    error: str | None = None
    error_code: str | None = None
    skip_reason: str | None = None
    process_ids: list[str] = field(default_factory=list)
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "output": to_jsonable(self.output),
            "error": self.error,
            "error_code": self.error_code,
            "skip_reason": self.skip_reason,
            "process_ids": list(self.process_ids),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepState:
        return cls(
            step_id=data["step_id"],
            status=StepStatus(data.get("status", "pending")),
            attempts=data.get("attempts", 0),
            output=data.get("output"),
            result=data.get("output"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            skip_reason=data.get("skip_reason"),
            process_ids=list(data.get("process_ids", [])),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
        )


@dataclass
class WorkflowState:
    """Runtime state of one workflow execution."""

    workflow_id: str
    name: str = ""
    definition_id: str | None = None
    status: WorkflowStatus = WorkflowStatus.PENDING
    steps: dict[str, StepState] = field(default_factory=dict)
    failure_policy: FailurePolicy = FailurePolicy.STRICT
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None
    error_code: str | None = None
    partial: bool = False

    @property
    def progress(self) -> float:
        """Fraction of steps finished; a running step counts as half."""
        if not self.steps:
            return 0.0
        done = sum(1.0 for s in self.steps.values() if s.status.is_terminal)
        running = sum(0.5 for s in self.steps.values() if s.status == StepStatus.RUNNING)
        return (done + running) / len(self.steps)

    @property
    def failed_steps(self) -> list[str]:
        return [s.step_id for s in self.steps.values() if s.status == StepStatus.FAILED]

    def steps_in(self, *statuses: StepStatus) -> list[str]:
        return [s.step_id for s in self.steps.values() if s.status in statuses]

    def output(self, step_id: str) -> Any:
        return self.steps[step_id].output

    def failure(self) -> PartialWorkflowFailureError | None:
        """The partial-failure outcome of a lenient workflow, if any step failed."""
        if self.status == WorkflowStatus.COMPLETED and self.partial:
            return PartialWorkflowFailureError(self.failed_steps)
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "name": self.name,
            "definition_id": self.definition_id,
            "status": self.status.value,
            "steps": {k: v.to_dict() for k, v in self.steps.items()},
            "failure_policy": self.failure_policy.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "error_code": self.error_code,
            "partial": self.partial,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        return cls(
            workflow_id=data["workflow_id"],
            name=data.get("name", ""),
            definition_id=data.get("definition_id"),
            status=WorkflowStatus(data.get("status", "pending")),
            steps={k: StepState.from_dict(v) for k, v in data.get("steps", {}).items()},
            failure_policy=FailurePolicy(data.get("failure_policy", "strict")),
            created_at=data.get("created_at", time.time()),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            error_code=data.get("error_code"),
            partial=data.get("partial", False),
        )


__all__ = [
    "Condition",
    "StepStatus",
    "WorkflowStatus",
    "InputSource",
    "StepInput",
    "StepOutput",
    "WorkflowStep",
    "WorkflowDefinition",
    "StepState",
    "WorkflowState",
]
