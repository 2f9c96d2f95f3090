"""
Shared test helpers for agent-orchestrator tests.

This module provides:
- A controllable clock for breaker and context expiry tests
- Registry, invoker and engine factories wired with in-memory backends
- Scripted agents (echo, failing, gated, concurrency probe)
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping, Sequence
from typing import Any

import pytest

from agent_orchestrator.agents import AgentInvoker, AgentRegistry, FunctionAgent
from agent_orchestrator.config import QueueConfig, WorkflowConfig
from agent_orchestrator.events import InMemoryEventBus
from agent_orchestrator.processes import ProcessManager
from agent_orchestrator.resilience import CircuitBreakerConfig, CircuitBreakerRegistry
from agent_orchestrator.retry import RetryPolicy
from agent_orchestrator.storage import InMemoryKeyValueStore
from agent_orchestrator.telemetry import MetricRegistry
from agent_orchestrator.workflow import WorkflowContextStore, WorkflowEngine

# =============================================================================
# Clock
# =============================================================================


class FakeClock:
    """Monotonic stand-in advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# Scripted Agents
# =============================================================================


async def echo(input: Any, options: dict[str, Any]) -> Any:
    return input


def upper(input: Any, options: dict[str, Any]) -> str:
    return str(input).upper()


def failing(message: str = "agent exploded", exc_type: type[Exception] = RuntimeError) -> Callable[..., Any]:
    """Agent function that always raises."""

    async def fn(input: Any, options: dict[str, Any]) -> Any:
        raise exc_type(message)

    return fn


def flaky(failures: int, result: Any = "recovered") -> Callable[..., Any]:
    """Agent function that fails ``failures`` times, then returns ``result``."""
    calls = {"count": 0}

    async def fn(input: Any, options: dict[str, Any]) -> Any:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise ConnectionError(f"transient failure {calls['count']}")
        return result

    fn.calls = calls  # type: ignore[attr-defined]
    return fn


def gated(gate: asyncio.Event, result: Any = "done") -> Callable[..., Any]:
    """Agent function that blocks until ``gate`` is set."""

    async def fn(input: Any, options: dict[str, Any]) -> Any:
        await gate.wait()
        return result

    return fn


class ConcurrencyProbe:
    """Agent function recording call order and peak concurrency."""

    def __init__(self, delay: float = 0.05) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.started: list[str] = []

    async def __call__(self, input: Any, options: dict[str, Any]) -> Any:
        self.started.append(options.get("step_id") or str(input))
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            return input
        finally:
            self.active -= 1


def evaluation(scores: Mapping[str, float], feedback: str = "", suggestions: Sequence[str] = ()) -> str:
    """An evaluator answer in the JSON shape the critique loop expects."""
    return json.dumps({"scores": dict(scores), "feedback": feedback, "suggestions": list(suggestions)})


# =============================================================================
# Factories
# =============================================================================


def make_registry(agents: Mapping[str, Callable[..., Any]] | None = None) -> AgentRegistry:
    """Register each function under its capability; the agent id equals the capability."""
    registry = AgentRegistry()
    for capability, fn in (agents or {}).items():
        registry.register(FunctionAgent(fn), capability, agent_id=capability)
    return registry


def make_invoker(
    *,
    queue: QueueConfig | None = None,
    breaker: CircuitBreakerConfig | None = None,
    retry: RetryPolicy | None = None,
    events: InMemoryEventBus | None = None,
    metrics: MetricRegistry | None = None,
) -> AgentInvoker:
    """Invoker over a fresh queue and breaker registry. Retries are off unless given."""
    processes = ProcessManager(queue or QueueConfig(), events=events, metrics=metrics)
    breakers = CircuitBreakerRegistry(breaker or CircuitBreakerConfig())
    return AgentInvoker(processes, breakers, retry=retry or RetryPolicy.no_retry())


def make_engine(
    agents: AgentRegistry,
    *,
    config: WorkflowConfig | None = None,
    queue: QueueConfig | None = None,
    breaker: CircuitBreakerConfig | None = None,
    retry: RetryPolicy | None = None,
    events: InMemoryEventBus | None = None,
    store: InMemoryKeyValueStore | None = None,
) -> WorkflowEngine:
    store = store or InMemoryKeyValueStore()
    invoker = make_invoker(queue=queue, breaker=breaker, retry=retry, events=events)
    return WorkflowEngine(
        agents,
        invoker,
        WorkflowContextStore(store=store),
        config=config,
        store=store,
        events=events,
    )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()
