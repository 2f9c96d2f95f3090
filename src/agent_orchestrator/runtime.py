"""
Orchestration runtime - the entry point that wires every component together.

``OrchestrationRuntime`` owns one keyed store, one metric registry, one
circuit breaker registry and one execution queue, and shares them between
the workflow engine and the collaboration engines. It exposes the whole
public API: processes, workflows, pattern builders, self-critique,
discussion and a metrics snapshot.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .agents.invoker import AgentInvoker
from .agents.registry import AgentRegistry
from .collaboration.discussion import DiscussionEngine
from .collaboration.self_critique import SelfCritiqueEngine
from .collaboration.types import DiscussionSession, Participant, QualityCriterion, SelfCritiqueSession
from .config.settings import Settings
from .events.bus import EventEmitter, EventSink
from .events.types import OrchestrationEventType
from .logging import configure_logging
from .processes.manager import ProcessManager
from .processes.types import ProcessRecord, ProcessUnit
from .resilience import CircuitBreakerRegistry, CircuitState
from .storage import create_store
from .storage.base import KeyValueStore
from .telemetry import MetricRegistry, TelemetryConfig
from .workflow import patterns
from .workflow.context import WorkflowContextStore
from .workflow.engine import WorkflowEngine
from .workflow.types import WorkflowDefinition, WorkflowState, WorkflowStep

logger = logging.getLogger(__name__)

_CIRCUIT_EVENTS = {
    CircuitState.OPEN: OrchestrationEventType.CIRCUIT_OPENED,
    CircuitState.HALF_OPEN: OrchestrationEventType.CIRCUIT_HALF_OPENED,
    CircuitState.CLOSED: OrchestrationEventType.CIRCUIT_CLOSED,
}


class OrchestrationRuntime:
    """
    Facade over the orchestration core.

    Example:
        ```python
        agents = AgentRegistry()
        agents.register(FunctionAgent(summarize), "text-generation", agent_id="summarizer")

        async with OrchestrationRuntime(Settings.from_env(), agents) as runtime:
            wid = await runtime.orchestrate_parallel([
                WorkflowStep("a", capability="text-generation", input="{{ doc_a }}"),
                WorkflowStep("b", capability="text-generation", input="{{ doc_b }}"),
            ], initial_context={"doc_a": "...", "doc_b": "..."})
            state = await runtime.wait_workflow(wid)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        agents: AgentRegistry | None = None,
        *,
        store: KeyValueStore | None = None,
        event_sink: EventSink | None = None,
        configure_logs: bool = False,
    ) -> None:
        self.settings = settings or Settings()
        if configure_logs:
            configure_logging(self.settings.logging)

        self.agents = agents or AgentRegistry()
        self.store = store or create_store(self.settings.storage)
        self.events = self._build_sink(event_sink)
        self.metrics = MetricRegistry(
            TelemetryConfig(
                enabled=self.settings.metrics.enabled,
                reservoir_size=self.settings.metrics.reservoir_size,
            )
        )

        self.breakers = CircuitBreakerRegistry(self.settings.circuit_breaker)
        self._circuit_emitter = EventEmitter(self.events)
        self.breakers.add_listener(self._on_circuit_change)

        self.processes = ProcessManager(
            self.settings.queue,
            store=self.store,
            events=self.events,
            metrics=self.metrics,
        )
        self.invoker = AgentInvoker(self.processes, self.breakers, retry=self.settings.retry)
        self.contexts = WorkflowContextStore(self.settings.context, self.store)
        self.workflows = WorkflowEngine(
            self.agents,
            self.invoker,
            self.contexts,
            config=self.settings.workflow,
            store=self.store,
            events=self.events,
            metrics=self.metrics,
        )
        self.critique = SelfCritiqueEngine(
            self.agents,
            self.invoker,
            config=self.settings.critique,
            events=self.events,
            metrics=self.metrics,
            store=self.store,
            retry=self.settings.retry,
        )
        self.discussion = DiscussionEngine(
            self.agents,
            self.invoker,
            config=self.settings.discussion,
            events=self.events,
            metrics=self.metrics,
            store=self.store,
            retry=self.settings.retry,
        )
        self._closed = False

    def _build_sink(self, sink: EventSink | None) -> EventSink | None:
        if not self.settings.metrics.otel_enabled:
            return sink
        from .observability.otel import FanOutSink, OpenTelemetrySink, OTelConfig

        tracer = OpenTelemetrySink(OTelConfig(service_name=self.settings.metrics.otel_service_name))
        return FanOutSink([sink, tracer]) if sink is not None else tracer

    async def _on_circuit_change(self, service: str, old: CircuitState, new: CircuitState) -> None:
        self.metrics.inc(f"circuit.{new.value}")
        await self._circuit_emitter.emit(
            _CIRCUIT_EVENTS[new],
            service,
            from_state=old.value,
            to_state=new.value,
        )

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    async def submit_process(
        self,
        unit: ProcessUnit,
        priority: int | None = None,
        *,
        timeout: float | None = None,
        name: str | None = None,
    ) -> str:
        return await self.processes.submit(unit, priority=priority, timeout=timeout, name=name)

    async def process_status(self, process_id: str) -> ProcessRecord | None:
        return await self.processes.status(process_id)

    async def wait_process(self, process_id: str, timeout: float | None = None) -> ProcessRecord:
        return await self.processes.wait(process_id, timeout=timeout)

    async def cancel_process(self, process_id: str) -> bool:
        return await self.processes.cancel(process_id)

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def submit_workflow(
        self,
        definition: WorkflowDefinition,
        initial_context: Mapping[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
    ) -> str:
        return await self.workflows.submit(definition, initial_context, workflow_id=workflow_id)

    async def workflow_status(self, workflow_id: str) -> WorkflowState:
        return await self.workflows.status(workflow_id)

    async def wait_workflow(self, workflow_id: str, timeout: float | None = None) -> WorkflowState:
        return await self.workflows.wait(workflow_id, timeout=timeout)

    async def cancel_workflow(self, workflow_id: str) -> bool:
        return await self.workflows.cancel(workflow_id)

    async def pause_workflow(self, workflow_id: str) -> None:
        await self.workflows.pause(workflow_id)

    async def resume_workflow(self, workflow_id: str) -> None:
        await self.workflows.resume(workflow_id)

    # Pattern sugar: build the graph and submit it in one call

    async def orchestrate_sequential(
        self,
        steps: Sequence[WorkflowStep],
        initial_context: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        return await self.submit_workflow(patterns.sequential(steps, **options), initial_context)

    async def orchestrate_parallel(
        self,
        steps: Sequence[WorkflowStep],
        initial_context: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        return await self.submit_workflow(patterns.parallel(steps, **options), initial_context)

    async def orchestrate_conditional(
        self,
        source: WorkflowStep,
        predicate: Any,
        if_true: Sequence[WorkflowStep],
        if_false: Sequence[WorkflowStep] = (),
        initial_context: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        definition = patterns.conditional(source, predicate, if_true, if_false, **options)
        return await self.submit_workflow(definition, initial_context)

    async def orchestrate_map_reduce(
        self,
        items: Sequence[Any],
        initial_context: Mapping[str, Any] | None = None,
        **options: Any,
    ) -> str:
        options.setdefault("max_items", self.settings.workflow.max_map_reduce_items)
        return await self.submit_workflow(patterns.map_reduce(items, **options), initial_context)

    # ------------------------------------------------------------------
    # Collaboration
    # ------------------------------------------------------------------

    async def run_self_critique(
        self,
        input: Any,
        criteria: Sequence[QualityCriterion],
        *,
        agent_id: str | None = None,
        max_iterations: int | None = None,
        threshold: float | None = None,
        **options: Any,
    ) -> str:
        """Start a self-critique session in the background and return its id."""
        return await self.critique.start(
            input,
            criteria,
            agent_id=agent_id,
            max_iterations=max_iterations,
            threshold=threshold,
            **options,
        )

    def get_critique_session(self, session_id: str) -> SelfCritiqueSession:
        return self.critique.get(session_id)

    async def wait_critique(self, session_id: str, timeout: float | None = None) -> SelfCritiqueSession:
        return await self.critique.wait(session_id, timeout=timeout)

    async def run_discussion(
        self,
        participants: Sequence[Participant],
        topic: str,
        **options: Any,
    ) -> str:
        """Start a discussion in the background and return its id."""
        return await self.discussion.start(participants, topic, **options)

    def get_discussion_session(self, session_id: str) -> DiscussionSession:
        return self.discussion.get(session_id)

    async def wait_discussion(self, session_id: str, timeout: float | None = None) -> DiscussionSession:
        return await self.discussion.wait(session_id, timeout=timeout)

    # ------------------------------------------------------------------
    # Introspection and lifecycle
    # ------------------------------------------------------------------

    def metrics_snapshot(self) -> dict[str, Any]:
        return {
            "processes": self.processes.stats(),
            "workflows": self.workflows.stats(),
            "critique": self.critique.stats(),
            "discussion": self.discussion.stats(),
            "circuit_breakers": self.breakers.snapshot(),
            "metrics": self.metrics.snapshot(),
        }

    async def close(self) -> None:
        """Stop everything: sessions, workflows, the queue, breakers, sink and store."""
        if self._closed:
            return
        self._closed = True
        await self.critique.shutdown()
        await self.discussion.shutdown()
        await self.workflows.shutdown()
        await self.processes.shutdown()
        await self.breakers.close()
        if self.events is not None:
            await self.events.close()
        await self.store.close()
        logger.info("Orchestration runtime closed")

    async def __aenter__(self) -> OrchestrationRuntime:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


__all__ = ["OrchestrationRuntime"]
