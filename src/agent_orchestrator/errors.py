"""
Error taxonomy for agent-orchestrator.

Every failure the orchestration core reports is an ``OrchestratorError``:
- Error codes for metrics and programmatic handling
- Retryable vs non-retryable classification (drives ``with_retry``)
- Structured context (workflow, step, process, service) for debugging

Validation errors are raised synchronously at submission time. Execution-time
errors are recorded on the owning process/step/iteration/round and only
escalate according to the configured policy.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standardized error codes for the orchestration core."""

    # Validation errors (1xxx)
    VALIDATION_ERROR = "ERR_1000"
    CYCLE_DETECTED = "ERR_1001"
    AGENT_NOT_FOUND = "ERR_1002"
    CONTEXT_OWNERSHIP = "ERR_1003"

    # Capacity and time errors (2xxx)
    CONCURRENCY_LIMIT = "ERR_2000"
    TIMEOUT = "ERR_2001"
    CALL_TIMEOUT = "ERR_2002"

    # Fault tolerance (3xxx)
    CIRCUIT_OPEN = "ERR_3000"

    # Agent errors (4xxx)
    AGENT_EXECUTION = "ERR_4000"

    # Outcome errors (5xxx)
    CONSENSUS_NOT_REACHED = "ERR_5000"
    PARTIAL_WORKFLOW_FAILURE = "ERR_5001"

    # Lifecycle errors (6xxx)
    NOT_FOUND = "ERR_6000"
    INVALID_STATE = "ERR_6001"
    CANCELLED = "ERR_6002"
    REAPED = "ERR_6003"

    # Infrastructure errors (7xxx)
    CONFIG_ERROR = "ERR_7000"
    STORAGE_ERROR = "ERR_7001"

    # Internal errors (9xxx)
    INTERNAL_ERROR = "ERR_9000"
    UNKNOWN_ERROR = "ERR_9999"


@dataclass
class ErrorContext:
    """Structured context for error debugging."""

    workflow_id: str | None = None
    step_id: str | None = None
    process_id: str | None = None
    session_id: str | None = None
    service: str | None = None
    attempt: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "process_id": self.process_id,
            "session_id": self.session_id,
            "service": self.service,
            "attempt": self.attempt,
            **self.extra,
        }


class OrchestratorError(Exception):
    """
    Base exception for all orchestration errors.

    Attributes:
        code: Standardized error code for programmatic handling
        message: Human-readable error message
        retryable: Whether the failed operation may be attempted again
        context: Structured debugging context
        cause: Original exception that caused this error
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.context = context or ErrorContext()
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context.to_dict(),
            "cause": str(self.cause) if self.cause else None,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(OrchestratorError):
    """Malformed graph, request or configuration. Raised before execution."""

    code = ErrorCode.VALIDATION_ERROR
    retryable = False

    def __init__(self, message: str, *, errors: list[str] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = list(errors) if errors else [message]


class CycleDetectedError(ValidationError):
    """The workflow graph contains a dependency cycle."""

    code = ErrorCode.CYCLE_DETECTED

    def __init__(self, cycle: list[str], **kwargs):
        path = " -> ".join(cycle)
        super().__init__(f"Circular dependency detected: {path}", **kwargs)
        self.cycle = list(cycle)


class AgentNotFoundError(ValidationError):
    """No agent is registered for the requested capability or id."""

    code = ErrorCode.AGENT_NOT_FOUND

    def __init__(self, capability: str | None = None, agent_id: str | None = None, **kwargs):
        target = f"id '{agent_id}'" if agent_id else f"capability '{capability}'"
        super().__init__(f"No agent registered for {target}", **kwargs)
        self.capability = capability
        self.agent_id = agent_id


class ContextOwnershipError(ValidationError):
    """A write targeted a context path owned by another step."""

    code = ErrorCode.CONTEXT_OWNERSHIP

    def __init__(self, path: str, owner: str | None, writer: str | None, **kwargs):
        super().__init__(
            f"Context path '{path}' is owned by '{owner}', write by '{writer}' rejected",
            **kwargs,
        )
        self.path = path
        self.owner = owner
        self.writer = writer


# =============================================================================
# Capacity and Time Errors
# =============================================================================


class ConcurrencyLimitError(OrchestratorError):
    """The execution queue cannot accept more work."""

    code = ErrorCode.CONCURRENCY_LIMIT
    retryable = True

    def __init__(self, message: str = "Execution queue is at capacity", *, limit: int | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.limit = limit


class OrchestrationTimeoutError(OrchestratorError):
    """A process, step or workflow exceeded its allotted time."""

    code = ErrorCode.TIMEOUT
    retryable = True

    def __init__(self, message: str = "Operation timed out", *, timeout: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.timeout = timeout


class CallTimeoutError(OrchestrationTimeoutError):
    """A single guarded call exceeded its per-call timeout."""

    code = ErrorCode.CALL_TIMEOUT


# =============================================================================
# Fault Tolerance
# =============================================================================


class CircuitBreakerOpenError(OrchestratorError):
    """The call was short-circuited by an open breaker. Never retried."""

    code = ErrorCode.CIRCUIT_OPEN
    retryable = False

    def __init__(self, service: str, *, retry_after: float | None = None, **kwargs):
        message = f"Circuit breaker for '{service}' is open"
        if retry_after is not None:
            message += f" (retry after {retry_after:.1f}s)"
        kwargs.setdefault("context", ErrorContext(service=service))
        super().__init__(message, **kwargs)
        self.service = service
        self.retry_after = retry_after


# =============================================================================
# Agent Errors
# =============================================================================


class AgentExecutionError(OrchestratorError):
    """Wraps an underlying agent failure."""

    code = ErrorCode.AGENT_EXECUTION
    retryable = True

    def __init__(self, message: str, *, agent_id: str | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.agent_id = agent_id


# =============================================================================
# Outcome Errors
# =============================================================================


class ConsensusNotReachedError(OrchestratorError):
    """A discussion exhausted its rounds. Non-fatal: the session still has a result."""

    code = ErrorCode.CONSENSUS_NOT_REACHED
    retryable = False

    def __init__(
        self,
        message: str = "Consensus not reached",
        *,
        rounds: int = 0,
        consensus_score: float = 0.0,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.rounds = rounds
        self.consensus_score = consensus_score


class PartialWorkflowFailureError(OrchestratorError):
    """Some steps failed while the lenient policy let other branches finish."""

    code = ErrorCode.PARTIAL_WORKFLOW_FAILURE
    retryable = False

    def __init__(self, failed_steps: list[str], **kwargs):
        super().__init__(f"Workflow completed with failed steps: {', '.join(failed_steps)}", **kwargs)
        self.failed_steps = list(failed_steps)


# =============================================================================
# Lifecycle Errors
# =============================================================================


class NotFoundError(OrchestratorError):
    """Unknown process, workflow, session or an expired context."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, identifier: str, **kwargs):
        super().__init__(f"{kind} '{identifier}' not found", **kwargs)
        self.kind = kind
        self.identifier = identifier


class InvalidStateError(OrchestratorError):
    """The requested lifecycle operation is illegal in the current state."""

    code = ErrorCode.INVALID_STATE


class ProcessCancelledError(OrchestratorError):
    """The process was cancelled before it produced a result."""

    code = ErrorCode.CANCELLED


# =============================================================================
# Infrastructure Errors
# =============================================================================


class ConfigurationError(OrchestratorError):
    """Invalid configuration file, mapping or environment."""

    code = ErrorCode.CONFIG_ERROR


class StorageError(OrchestratorError):
    """The durable keyed store failed."""

    code = ErrorCode.STORAGE_ERROR
    retryable = True


def is_retryable(error: BaseException) -> bool:
    """
    Check if a failed attempt may be retried.

    Open breakers are never retried. Orchestrator errors carry their own
    classification; any other exception is retryable, while cancellation and
    other non-``Exception`` signals are not.
    """
    if isinstance(error, CircuitBreakerOpenError):
        return False
    if isinstance(error, OrchestratorError):
        return error.retryable
    return isinstance(error, Exception)


def error_code_of(error: BaseException) -> ErrorCode:
    """Categorize any exception for metrics."""
    if isinstance(error, OrchestratorError):
        return error.code
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ErrorCode.TIMEOUT
    if isinstance(error, asyncio.CancelledError):
        return ErrorCode.CANCELLED
    return ErrorCode.UNKNOWN_ERROR


__all__ = [
    # Base
    "ErrorCode",
    "ErrorContext",
    "OrchestratorError",
    # Validation
    "ValidationError",
    "CycleDetectedError",
    "AgentNotFoundError",
    "ContextOwnershipError",
    # Capacity and time
    "ConcurrencyLimitError",
    "OrchestrationTimeoutError",
    "CallTimeoutError",
    # Fault tolerance
    "CircuitBreakerOpenError",
    # Agents
    "AgentExecutionError",
    # Outcomes
    "ConsensusNotReachedError",
    "PartialWorkflowFailureError",
    # Lifecycle
    "NotFoundError",
    "InvalidStateError",
    "ProcessCancelledError",
    # Infrastructure
    "ConfigurationError",
    "StorageError",
    # Utilities
    "is_retryable",
    "error_code_of",
]
