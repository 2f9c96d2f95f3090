"""
OpenTelemetry integration for the orchestration core.

Provides a span hierarchy built from lifecycle events:
- orchestrator.workflow (parent): full workflow run
- orchestrator.step (child): one workflow step, attempts recorded as span events
- orchestrator.process: one queued unit of work
- orchestrator.critique / orchestrator.discussion: collaboration sessions,
  iterations and rounds recorded as span events

Circuit breaker transitions become short ``orchestrator.circuit`` spans.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

try:
    from opentelemetry import trace
    from opentelemetry.trace import Span, SpanKind, Status, StatusCode
    OTEL_AVAILABLE = True
except ImportError:
    OTEL_AVAILABLE = False
    trace = None  # type: ignore
    SpanKind = None  # type: ignore
    Status = None  # type: ignore
    StatusCode = None  # type: ignore
    Span = Any  # type: ignore

from ..events.bus import EventSink
from ..events.types import OrchestrationEvent, OrchestrationEventType as E

logger = logging.getLogger(__name__)


def _require_otel() -> None:
    """Raise ImportError if opentelemetry is not available."""
    if not OTEL_AVAILABLE:
        raise ImportError(
            "OpenTelemetry integration requires opentelemetry-api. "
            "Install with: pip install agent-orchestrator[otel]"
        )


@dataclass
class OTelConfig:
    """Configuration for the OpenTelemetry sink.

    Attributes:
        tracer_name: Name of the tracer
        service_name: Service name for spans
        record_exceptions: Whether to record failures as span exceptions
    """

    tracer_name: str = "agent_orchestrator"
    service_name: str = "agent-orchestrator"
    record_exceptions: bool = True


_Handler = Callable[["OpenTelemetrySink", OrchestrationEvent], Awaitable[None]]


class OpenTelemetrySink(EventSink):
    """EventSink that maps orchestration events onto OpenTelemetry spans.

    Example:
        ```python
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider

        trace.set_tracer_provider(TracerProvider())
        runtime = OrchestrationRuntime(event_sink=OpenTelemetrySink())
        ```
    """

    def __init__(self, config: OTelConfig | None = None) -> None:
        _require_otel()
        self._config = config or OTelConfig()
        self._tracer = trace.get_tracer(self._config.tracer_name)

        # Open spans keyed by source id (and "workflow:step" for steps)
        self._workflow_spans: dict[str, Span] = {}
        self._step_spans: dict[str, Span] = {}
        self._process_spans: dict[str, Span] = {}
        self._session_spans: dict[str, Span] = {}

    async def publish(self, event: OrchestrationEvent) -> None:
        handler = self._event_handlers.get(event.type)
        if handler is None:
            return
        try:
            await handler(self, event)
        except Exception:
            # Telemetry problems never reach the engine
            logger.debug(f"Could not record span for {event.type.value}", exc_info=True)

    async def close(self) -> None:
        """End any spans still open."""
        for spans in (self._step_spans, self._process_spans, self._session_spans, self._workflow_spans):
            for span in list(spans.values()):
                span.set_status(Status(StatusCode.ERROR, "Sink closed"))
                span.end()
            spans.clear()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _start(
        self,
        name: str,
        attributes: dict[str, Any],
        *,
        parent: Span | None = None,
        kind: Any = None,
    ) -> Span:
        context = trace.set_span_in_context(parent) if parent is not None else None
        return self._tracer.start_span(
            name,
            kind=kind or SpanKind.INTERNAL,
            context=context,
            attributes={"service.name": self._config.service_name, **attributes},
        )

    def _end(self, span: Span | None, event: OrchestrationEvent, *, ok: bool) -> None:
        if span is None:
            return
        error = event.data.get("error")
        if ok:
            span.set_status(Status(StatusCode.OK))
        else:
            description = str(error) if error else event.type.value
            span.set_status(Status(StatusCode.ERROR, description))
            if error and self._config.record_exceptions:
                span.record_exception(Exception(str(error)))
        for key in ("status", "error_code", "duration", "partial", "termination_reason", "consensus_score"):
            value = event.data.get(key)
            if isinstance(value, (str, bool, int, float)):
                span.set_attribute(f"orchestrator.{key}", value)
        span.end()

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def _on_workflow_started(self, event: OrchestrationEvent) -> None:
        self._workflow_spans[event.source_id] = self._start(
            "orchestrator.workflow",
            {"orchestrator.workflow.id": event.source_id, "orchestrator.workflow.name": event.data.get("name", "")},
            kind=SpanKind.SERVER,
        )

    async def _on_workflow_finished(self, event: OrchestrationEvent) -> None:
        prefix = f"{event.source_id}:"
        for key in [k for k in self._step_spans if k.startswith(prefix)]:
            self._end(self._step_spans.pop(key), event, ok=False)
        self._end(
            self._workflow_spans.pop(event.source_id, None),
            event,
            ok=event.type == E.WORKFLOW_COMPLETED and not event.data.get("partial"),
        )

    async def _on_workflow_marker(self, event: OrchestrationEvent) -> None:
        span = self._workflow_spans.get(event.source_id)
        if span is not None:
            span.add_event(event.type.value)

    async def _on_step_started(self, event: OrchestrationEvent) -> None:
        key = f"{event.source_id}:{event.step_id}"
        self._step_spans[key] = self._start(
            "orchestrator.step",
            {
                "orchestrator.workflow.id": event.source_id,
                "orchestrator.step.id": event.step_id or "",
                "orchestrator.agent.id": event.data.get("agent_id") or "",
            },
            parent=self._workflow_spans.get(event.source_id),
        )

    async def _on_step_retrying(self, event: OrchestrationEvent) -> None:
        span = self._step_spans.get(f"{event.source_id}:{event.step_id}")
        if span is not None:
            span.add_event(
                "retry",
                attributes={"attempt": event.data.get("attempt", 0), "error": str(event.data.get("error", ""))},
            )

    async def _on_step_finished(self, event: OrchestrationEvent) -> None:
        span = self._step_spans.pop(f"{event.source_id}:{event.step_id}", None)
        self._end(span, event, ok=event.type == E.STEP_COMPLETED)

    # ------------------------------------------------------------------
    # Processes
    # ------------------------------------------------------------------

    async def _on_process_started(self, event: OrchestrationEvent) -> None:
        self._process_spans[event.source_id] = self._start(
            "orchestrator.process",
            {"orchestrator.process.id": event.source_id, "orchestrator.process.name": event.data.get("name") or ""},
            kind=SpanKind.CLIENT,
        )

    async def _on_process_finished(self, event: OrchestrationEvent) -> None:
        span = self._process_spans.pop(event.source_id, None)
        self._end(span, event, ok=event.type == E.PROCESS_COMPLETED)

    # ------------------------------------------------------------------
    # Collaboration sessions
    # ------------------------------------------------------------------

    async def _on_session_started(self, event: OrchestrationEvent) -> None:
        self._session_spans[event.source_id] = self._start(
            f"orchestrator.{event.category}",
            {"orchestrator.session.id": event.source_id},
        )

    async def _on_session_progress(self, event: OrchestrationEvent) -> None:
        span = self._session_spans.get(event.source_id)
        if span is None:
            return
        attributes = {
            key: value
            for key, value in event.data.items()
            if isinstance(value, (str, bool, int, float))
        }
        span.add_event(event.type.value, attributes=attributes)

    async def _on_session_finished(self, event: OrchestrationEvent) -> None:
        span = self._session_spans.pop(event.source_id, None)
        self._end(span, event, ok=event.type in (E.CRITIQUE_COMPLETED, E.DISCUSSION_COMPLETED))

    # ------------------------------------------------------------------
    # Circuit breakers
    # ------------------------------------------------------------------

    async def _on_circuit(self, event: OrchestrationEvent) -> None:
        span = self._start(
            "orchestrator.circuit",
            {
                "orchestrator.circuit.service": event.source_id,
                "orchestrator.circuit.from": event.data.get("from_state", ""),
                "orchestrator.circuit.to": event.data.get("to_state", ""),
            },
        )
        span.end()

    _event_handlers: dict[E, _Handler] = {
        E.WORKFLOW_STARTED: _on_workflow_started,
        E.WORKFLOW_PAUSED: _on_workflow_marker,
        E.WORKFLOW_RESUMED: _on_workflow_marker,
        E.WORKFLOW_COMPLETED: _on_workflow_finished,
        E.WORKFLOW_FAILED: _on_workflow_finished,
        E.WORKFLOW_CANCELLED: _on_workflow_finished,
        E.STEP_STARTED: _on_step_started,
        E.STEP_RETRYING: _on_step_retrying,
        E.STEP_COMPLETED: _on_step_finished,
        E.STEP_FAILED: _on_step_finished,
        E.STEP_CANCELLED: _on_step_finished,
        E.PROCESS_STARTED: _on_process_started,
        E.PROCESS_COMPLETED: _on_process_finished,
        E.PROCESS_FAILED: _on_process_finished,
        E.PROCESS_TIMEOUT: _on_process_finished,
        E.PROCESS_CANCELLED: _on_process_finished,
        E.CRITIQUE_STARTED: _on_session_started,
        E.CRITIQUE_ITERATION: _on_session_progress,
        E.CRITIQUE_COMPLETED: _on_session_finished,
        E.CRITIQUE_FAILED: _on_session_finished,
        E.DISCUSSION_STARTED: _on_session_started,
        E.DISCUSSION_ROUND_COMPLETED: _on_session_progress,
        E.DISCUSSION_CONVERGED: _on_session_progress,
        E.DISCUSSION_CONSENSUS_NOT_REACHED: _on_session_progress,
        E.DISCUSSION_COMPLETED: _on_session_finished,
        E.DISCUSSION_FAILED: _on_session_finished,
        E.CIRCUIT_OPENED: _on_circuit,
        E.CIRCUIT_HALF_OPENED: _on_circuit,
        E.CIRCUIT_CLOSED: _on_circuit,
    }


class FanOutSink(EventSink):
    """Publishes every event to each of several sinks."""

    def __init__(self, sinks: Sequence[EventSink]) -> None:
        self.sinks = list(sinks)

    async def publish(self, event: OrchestrationEvent) -> None:
        results = await asyncio.gather(*(sink.publish(event) for sink in self.sinks), return_exceptions=True)
        for sink, result in zip(self.sinks, results):
            if isinstance(result, Exception):
                logger.error(f"{type(sink).__name__} failed to publish {event.type.value}: {result}")

    async def close(self) -> None:
        await asyncio.gather(*(sink.close() for sink in self.sinks), return_exceptions=True)


__all__ = [
    "OpenTelemetrySink",
    "OTelConfig",
    "FanOutSink",
    "OTEL_AVAILABLE",
]
