"""
Agent orchestration core.

Coordinates AI agents as multi-step workflows: a bounded execution queue,
per-service circuit breakers, a per-workflow context store, a dependency
graph workflow engine with pattern builders, and self-critique and
discussion collaboration protocols.

Example:
    ```python
    from agent_orchestrator import (
        AgentRegistry, FunctionAgent, OrchestrationRuntime, Settings, WorkflowStep,
    )

    agents = AgentRegistry()
    agents.register(FunctionAgent(draft), "text-generation")

    async with OrchestrationRuntime(Settings.from_env(), agents) as runtime:
        wid = await runtime.orchestrate_sequential([
            WorkflowStep("outline", capability="text-generation", input="{{ topic }}"),
            WorkflowStep("draft", capability="text-generation", input="{{ outline.output }}"),
        ], initial_context={"topic": "circuit breakers"})
        state = await runtime.wait_workflow(wid)
    ```
"""

from .agents import (
    Agent,
    AgentBinding,
    AgentCapability,
    AgentInvoker,
    AgentRegistry,
    AgentResult,
    AggregateAgent,
    FunctionAgent,
)
from .collaboration import (
    DiscussionEngine,
    DiscussionSession,
    Participant,
    QualityCriterion,
    SelfCritiqueEngine,
    SelfCritiqueSession,
    SessionStatus,
    TerminationReason,
)
from .config import (
    ConsensusStrategy,
    FailurePolicy,
    Settings,
    load_env,
)
from .errors import (
    AgentExecutionError,
    AgentNotFoundError,
    CallTimeoutError,
    CircuitBreakerOpenError,
    ConcurrencyLimitError,
    ConfigurationError,
    ConsensusNotReachedError,
    ContextOwnershipError,
    CycleDetectedError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    OrchestrationTimeoutError,
    OrchestratorError,
    PartialWorkflowFailureError,
    StorageError,
    ValidationError,
)
from .events import EventSink, InMemoryEventBus, OrchestrationEvent, OrchestrationEventType
from .logging import configure_logging
from .processes import ProcessManager, ProcessRecord, ProcessStatus
from .resilience import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from .retry import RetryPolicy, with_retry
from .runtime import OrchestrationRuntime
from .workflow import (
    InputSource,
    StepInput,
    StepOutput,
    StepStatus,
    WorkflowContextStore,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
    conditional,
    map_reduce,
    parallel,
    sequential,
)

__version__ = "0.1.0"

__all__ = [
    # Runtime
    "OrchestrationRuntime",
    "Settings",
    "load_env",
    "configure_logging",
    # Agents
    "Agent",
    "AgentBinding",
    "AgentCapability",
    "AgentInvoker",
    "AgentRegistry",
    "AgentResult",
    "AggregateAgent",
    "FunctionAgent",
    # Queue and resilience
    "ProcessManager",
    "ProcessRecord",
    "ProcessStatus",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryPolicy",
    "with_retry",
    # Workflows
    "FailurePolicy",
    "InputSource",
    "StepInput",
    "StepOutput",
    "StepStatus",
    "WorkflowContextStore",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowStep",
    "sequential",
    "parallel",
    "conditional",
    "map_reduce",
    # Collaboration
    "ConsensusStrategy",
    "DiscussionEngine",
    "DiscussionSession",
    "Participant",
    "QualityCriterion",
    "SelfCritiqueEngine",
    "SelfCritiqueSession",
    "SessionStatus",
    "TerminationReason",
    # Events
    "EventSink",
    "InMemoryEventBus",
    "OrchestrationEvent",
    "OrchestrationEventType",
    # Errors
    "ErrorCode",
    "OrchestratorError",
    "ValidationError",
    "CycleDetectedError",
    "AgentNotFoundError",
    "ContextOwnershipError",
    "ConcurrencyLimitError",
    "OrchestrationTimeoutError",
    "CallTimeoutError",
    "CircuitBreakerOpenError",
    "AgentExecutionError",
    "ConsensusNotReachedError",
    "PartialWorkflowFailureError",
    "NotFoundError",
    "InvalidStateError",
    "ConfigurationError",
    "StorageError",
    "__version__",
]
