"""
Workflow engine.

The engine validates a step graph, then drives it to completion:
- Steps whose dependencies are all ``completed`` become ``ready``
- Up to ``max_parallel_steps`` ready steps run at once, each through the
  agent invoker (retry, execution queue and circuit breaker)
- Results are written into the workflow context under the step's own paths
- Failures are resolved by the workflow's failure policy

Strict policy: the first failed required step fails the workflow, running
siblings are cancelled and steps that never started are skipped.
Lenient policy: dependents of a failed step are skipped while independent
branches carry on; the workflow completes with ``partial=True``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from ..agents.invoker import AgentInvoker
from ..agents.registry import AgentBinding, AgentRegistry, AgentResult
from ..config.base import FailurePolicy
from ..config.runtime import WorkflowConfig
from ..errors import (
    ConcurrencyLimitError,
    ErrorCode,
    ErrorContext,
    InvalidStateError,
    NotFoundError,
    OrchestrationTimeoutError,
    OrchestratorError,
    StorageError,
    error_code_of,
)
from ..events.bus import EventEmitter, EventSink
from ..events.types import OrchestrationEventType
from ..retry import RetryPolicy
from ..storage.base import InMemoryKeyValueStore, KeyValueStore
from ..telemetry import MetricRegistry
from ..templating import get_path, render_template
from .conditions import evaluate_condition
from .context import WorkflowContextStore
from .graph import execution_order, validate_definition
from .types import (
    InputSource,
    StepState,
    StepStatus,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """In-memory bookkeeping for one executing workflow."""

    definition: WorkflowDefinition
    state: WorkflowState
    bindings: dict[str, AgentBinding]
    order: list[str]
    max_parallel: int
    timeout: float | None
    tasks: dict[str, asyncio.Task[None]] = field(default_factory=dict)
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)
    driver: asyncio.Task[None] | None = None

    @property
    def workflow_id(self) -> str:
        return self.state.workflow_id


class WorkflowEngine:
    """Validates and executes workflow graphs.

    Example:
        ```python
        engine = WorkflowEngine(agents, invoker)
        workflow_id = await engine.submit(definition, {"topic": "rate limiting"})
        state = await engine.wait(workflow_id)
        print(state.status, state.output("review"))
        ```
    """

    def __init__(
        self,
        agents: AgentRegistry,
        invoker: AgentInvoker,
        contexts: WorkflowContextStore | None = None,
        *,
        config: WorkflowConfig | None = None,
        store: KeyValueStore | None = None,
        events: EventSink | None = None,
        metrics: MetricRegistry | None = None,
    ) -> None:
        self.agents = agents
        self.invoker = invoker
        self.contexts = contexts or WorkflowContextStore()
        self.config = config or WorkflowConfig()
        self._store = store or InMemoryKeyValueStore()
        self._emitter = EventEmitter(events)
        self._metrics = metrics or MetricRegistry()
        self._runs: dict[str, _Run] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        definition: WorkflowDefinition,
        initial_context: Mapping[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
    ) -> str:
        """Validate a workflow and start executing it. Returns the workflow id.

        Validation happens before anything is created, so a rejected
        workflow leaves no state behind.

        Raises:
            ValidationError: malformed graph or unknown agents
            CycleDetectedError: the dependency graph has a cycle
            ConcurrencyLimitError: too many active workflows
        """
        self._evict_expired()
        active = sum(1 for run in self._runs.values() if not run.state.status.is_terminal)
        if active >= self.config.max_active_workflows:
            raise ConcurrencyLimitError(
                f"Maximum active workflows ({self.config.max_active_workflows}) reached",
                limit=self.config.max_active_workflows,
            )

        validate_definition(definition, max_steps=self.config.max_steps, agents=self.agents)
        bindings: dict[str, AgentBinding] = {}
        for step in definition.steps:
            binding = self.agents.resolve(step.capability, agent_id=step.agent_id)
            bindings[step.step_id] = replace(binding, service=step.service) if step.service else binding

        workflow_id = workflow_id or str(uuid.uuid4())
        if workflow_id in self._runs:
            raise InvalidStateError(f"Workflow {workflow_id} already exists")
        policy = definition.failure_policy or self.config.failure_policy
        state = WorkflowState(
            workflow_id=workflow_id,
            name=definition.name,
            definition_id=definition.definition_id,
            steps={step.step_id: StepState(step_id=step.step_id) for step in definition.steps},
            failure_policy=FailurePolicy(policy),
        )

        initial = {**definition.initial_context, **(initial_context or {})}
        await self.contexts.create(workflow_id, initial, hold=True)
        try:
            for step in definition.steps:
                await self.contexts.claim(workflow_id, step.step_id, owner=step.step_id)
                for output in step.outputs:
                    await self.contexts.claim(workflow_id, output.context_path, owner=step.step_id)
        except OrchestratorError:
            await self.contexts.delete(workflow_id)
            raise

        run = _Run(
            definition=definition,
            state=state,
            bindings=bindings,
            order=execution_order(definition.steps),
            max_parallel=definition.max_parallel_steps or self.config.max_parallel_steps,
            timeout=definition.timeout or self.config.workflow_timeout,
        )
        self._runs[workflow_id] = run
        self._metrics.inc("workflow.submitted")
        await self._persist(run)
        await self._emitter.emit(
            OrchestrationEventType.WORKFLOW_SUBMITTED,
            workflow_id,
            name=definition.name,
            steps=definition.step_ids,
        )
        logger.info(f"Submitted workflow {workflow_id} ({definition.name or 'unnamed'}, {len(definition.steps)} steps)")

        run.driver = asyncio.create_task(self._drive(run), name=f"workflow-{workflow_id}")
        return workflow_id

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def _drive(self, run: _Run) -> None:
        state = run.state
        if state.status.is_terminal:
            run.done.set()
            return
        state.status = WorkflowStatus.RUNNING
        state.started_at = time.time()
        await self._persist(run)
        await self._emitter.emit(OrchestrationEventType.WORKFLOW_STARTED, run.workflow_id, name=state.name)
        try:
            if run.timeout is not None:
                await asyncio.wait_for(self._schedule(run), timeout=run.timeout)
            else:
                await self._schedule(run)
        except asyncio.TimeoutError:
            error = OrchestrationTimeoutError(
                f"Workflow {run.workflow_id} exceeded {run.timeout}s",
                timeout=run.timeout,
                context=ErrorContext(workflow_id=run.workflow_id),
            )
            await self._abort(run, error, unstarted=StepStatus.CANCELLED)
        except Exception as exc:
            logger.exception(f"Workflow {run.workflow_id} driver crashed")
            await self._abort(run, exc, unstarted=StepStatus.SKIPPED)
        finally:
            run.done.set()

    async def _schedule(self, run: _Run) -> None:
        state = run.state
        while not state.status.is_terminal:
            run.wakeup.clear()
            await self._settle(run)
            if state.status.is_terminal:
                return

            if state.status == WorkflowStatus.RUNNING:
                self._launch_ready(run)
                if not run.tasks and not state.steps_in(StepStatus.PENDING, StepStatus.READY):
                    await self._finish(run)
                    return

            await run.wakeup.wait()

    async def _settle(self, run: _Run) -> None:
        """Move pending steps to ready or skipped, in dependency order."""
        state = run.state
        for sid in run.order:
            step_state = state.steps[sid]
            if step_state.status != StepStatus.PENDING:
                continue
            step = run.definition.step(sid)
            deps = [state.steps[d] for d in step.depends_on]

            if step.skip_tolerant:
                runnable = all(d.status.is_terminal for d in deps)
            else:
                blocked = next(
                    (d for d in deps if d.status in (StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED)),
                    None,
                )
                if blocked is not None:
                    await self._skip(run, sid, f"dependency '{blocked.step_id}' {blocked.status.value}")
                    continue
                runnable = all(d.status == StepStatus.COMPLETED for d in deps)
            if not runnable:
                continue

            if step.condition is not None:
                holds = await self._condition_holds(run, step)
                if state.status.is_terminal or step_state.status != StepStatus.PENDING:
                    return
                if not holds:
                    await self._skip(run, sid, "condition not met")
                    continue

            step_state.status = StepStatus.READY
            await self._emitter.emit(OrchestrationEventType.STEP_READY, run.workflow_id, step_id=sid)

    async def _condition_holds(self, run: _Run, step: WorkflowStep) -> bool:
        data = await self.contexts.data(run.workflow_id)
        if isinstance(step.condition, str):
            return evaluate_condition(step.condition, data)
        try:
            return bool(step.condition(data))
        except Exception as exc:
            logger.warning(f"Condition of step {step.step_id} raised {type(exc).__name__}: {exc}; treating as false")
            return False

    def _launch_ready(self, run: _Run) -> None:
        state = run.state
        ready = [sid for sid in run.order if state.steps[sid].status == StepStatus.READY]
        ready.sort(key=lambda sid: -run.definition.step(sid).priority)
        for sid in ready:
            if len(run.tasks) >= run.max_parallel:
                break
            step_state = state.steps[sid]
            step_state.status = StepStatus.RUNNING
            step_state.started_at = time.time()
            run.tasks[sid] = asyncio.create_task(
                self._run_step(run, run.definition.step(sid)),
                name=f"workflow-{run.workflow_id}-{sid}",
            )

    async def _skip(self, run: _Run, step_id: str, reason: str) -> None:
        step_state = run.state.steps[step_id]
        step_state.status = StepStatus.SKIPPED
        step_state.skip_reason = reason
        step_state.completed_at = time.time()
        self._metrics.inc("step.skipped")
        logger.debug(f"Workflow {run.workflow_id}: skipped step {step_id} ({reason})")
        await self._emitter.emit(OrchestrationEventType.STEP_SKIPPED, run.workflow_id, step_id=step_id, reason=reason)

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _run_step(self, run: _Run, step: WorkflowStep) -> None:
        sid = step.step_id
        step_state = run.state.steps[sid]
        binding = run.bindings[sid]
        try:
            await self._emitter.emit(
                OrchestrationEventType.STEP_STARTED,
                run.workflow_id,
                step_id=sid,
                agent_id=binding.agent_id,
                capability=binding.capability,
            )
            agent_input, options = await self._prepare(run, step)

            def on_submit(process_id: str, attempt: int) -> None:
                step_state.process_ids.append(process_id)
                step_state.attempts = attempt

            async def on_retry(attempt: int, exc: BaseException, delay: float) -> None:
                self._metrics.inc("step.retries")
                await self._emitter.emit(
                    OrchestrationEventType.STEP_RETRYING,
                    run.workflow_id,
                    step_id=sid,
                    attempt=attempt,
                    delay=delay,
                    error=str(exc),
                )

            result = await self.invoker.invoke(
                binding,
                agent_input,
                options,
                timeout=step.timeout or self.config.default_step_timeout,
                retry=self._retry_policy(run, step),
                priority=step.priority,
                name=f"{run.workflow_id}:{sid}",
                on_submit=on_submit,
                on_retry=on_retry,
            )
            await self._step_completed(run, step, result)
        except asyncio.CancelledError:
            if not step_state.status.is_terminal:
                step_state.status = StepStatus.CANCELLED
                step_state.completed_at = time.time()
            raise
        except Exception as exc:
            await self._step_failed(run, step, exc)
        finally:
            run.tasks.pop(sid, None)
            run.wakeup.set()

    def _retry_policy(self, run: _Run, step: WorkflowStep) -> RetryPolicy | None:
        return step.retry or run.definition.default_retry

    async def _prepare(self, run: _Run, step: WorkflowStep) -> tuple[Any, dict[str, Any]]:
        """Build the agent input and options from the context and dependencies."""
        data = await self.contexts.data(run.workflow_id)
        variables: dict[str, Any] = {}
        for spec in step.inputs:
            if spec.source == InputSource.LITERAL:
                variables[spec.name] = spec.value
            elif spec.source == InputSource.STEP:
                head, _, rest = (spec.path or "").partition(".")
                path = f"{head}.output" + (f".{rest}" if rest else "")
                variables[spec.name] = get_path(data, path)
            else:
                variables[spec.name] = get_path(data, spec.path) if spec.path else None

        scope = {**data, **variables}
        if step.input is None:
            agent_input: Any = variables
        else:
            agent_input = _render(step.input, scope)

        options = {
            **step.options,
            "workflow_id": run.workflow_id,
            "step_id": step.step_id,
            "variables": variables,
            "context": data,
            "dependency_results": {dep: run.state.steps[dep].output for dep in step.depends_on},
        }
        return agent_input, options

    async def _step_completed(self, run: _Run, step: WorkflowStep, result: Any) -> None:
        sid = step.step_id
        step_state = run.state.steps[sid]
        if step_state.status.is_terminal:
            return
        output = result.output if isinstance(result, AgentResult) else result
        try:
            await self.contexts.set(run.workflow_id, step.output_path, output, writer=sid)
            for spec in step.outputs:
                value = get_path(output, spec.field) if spec.field else output
                await self.contexts.set(run.workflow_id, spec.context_path, value, writer=sid)
        except OrchestratorError as exc:
            await self._step_failed(run, step, exc)
            return
        if step_state.status.is_terminal:
            return

        step_state.result = result
        step_state.output = output
        step_state.status = StepStatus.COMPLETED
        step_state.completed_at = time.time()
        self._metrics.inc("step.completed")
        if step_state.duration is not None:
            self._metrics.observe("step.duration", step_state.duration)
        logger.debug(f"Workflow {run.workflow_id}: step {sid} completed")
        await self._emitter.emit(
            OrchestrationEventType.STEP_COMPLETED,
            run.workflow_id,
            step_id=sid,
            attempts=step_state.attempts,
            duration=step_state.duration,
        )
        await self._persist(run)

    async def _step_failed(self, run: _Run, step: WorkflowStep, exc: BaseException) -> None:
        sid = step.step_id
        step_state = run.state.steps[sid]
        if step_state.status.is_terminal:
            return
        code = error_code_of(exc)
        step_state.status = StepStatus.FAILED
        step_state.error = str(exc)
        step_state.error_code = code.value
        step_state.completed_at = time.time()
        self._metrics.inc("step.failed")
        self._metrics.inc(f"errors.{code.value}")
        logger.warning(f"Workflow {run.workflow_id}: step {sid} failed after {step_state.attempts} attempt(s): {exc}")
        await self._emitter.emit(
            OrchestrationEventType.STEP_FAILED,
            run.workflow_id,
            step_id=sid,
            error=str(exc),
            error_code=code.value,
            attempts=step_state.attempts,
            required=step.required,
        )
        if step.required and run.state.failure_policy == FailurePolicy.STRICT:
            await self._abort(run, exc, unstarted=StepStatus.SKIPPED, failed_step=sid)
        else:
            await self._persist(run)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _finish(self, run: _Run) -> None:
        state = run.state
        failed = state.failed_steps
        completed = state.steps_in(StepStatus.COMPLETED)
        if failed and not completed and state.failure_policy == FailurePolicy.LENIENT:
            await self._terminate(run, WorkflowStatus.FAILED, error=f"All executed steps failed: {', '.join(failed)}")
            return
        state.partial = bool(failed)
        await self._terminate(run, WorkflowStatus.COMPLETED)

    async def _abort(
        self,
        run: _Run,
        error: BaseException,
        *,
        unstarted: StepStatus,
        failed_step: str | None = None,
    ) -> None:
        """Fail the workflow, cancelling running steps and closing out the rest."""
        state = run.state
        if state.status.is_terminal:
            return
        cancelled = self._close_steps(run, unstarted)
        message = f"Step '{failed_step}' failed: {error}" if failed_step else str(error)
        await self._terminate(run, WorkflowStatus.FAILED, error=message, error_code=error_code_of(error).value)
        await self._emit_closed_steps(run, cancelled, unstarted)

    def _close_steps(self, run: _Run, unstarted: StepStatus) -> list[str]:
        """Synchronously end every non-terminal step and cancel running tasks."""
        now = time.time()
        closed: list[str] = []
        for sid, step_state in run.state.steps.items():
            if step_state.status.is_terminal:
                continue
            if step_state.status == StepStatus.RUNNING:
                step_state.status = StepStatus.CANCELLED
            else:
                step_state.status = unstarted
                if unstarted == StepStatus.SKIPPED:
                    step_state.skip_reason = "workflow stopped"
            step_state.completed_at = now
            closed.append(sid)
        current = asyncio.current_task()
        for task in list(run.tasks.values()):
            if task is not current:
                task.cancel()
        run.wakeup.set()
        return closed

    async def _emit_closed_steps(self, run: _Run, step_ids: list[str], unstarted: StepStatus) -> None:
        for sid in step_ids:
            status = run.state.steps[sid].status
            event = (
                OrchestrationEventType.STEP_SKIPPED
                if status == StepStatus.SKIPPED
                else OrchestrationEventType.STEP_CANCELLED
            )
            self._metrics.inc(f"step.{status.value}")
            await self._emitter.emit(event, run.workflow_id, step_id=sid, reason="workflow stopped")

    async def _terminate(
        self,
        run: _Run,
        status: WorkflowStatus,
        *,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        state = run.state
        state.status = status
        state.completed_at = time.time()
        state.error = error
        state.error_code = error_code
        if status == WorkflowStatus.FAILED and error_code is None:
            state.error_code = ErrorCode.AGENT_EXECUTION.value
        run.wakeup.set()
        # The context outlives the run by its own TTL
        await self.contexts.release(run.workflow_id)

        self._metrics.inc(f"workflow.{status.value}")
        if state.started_at is not None:
            self._metrics.observe("workflow.duration", state.completed_at - state.started_at)
        await self._persist(run)

        if status == WorkflowStatus.COMPLETED:
            if state.partial:
                logger.warning(f"Workflow {run.workflow_id} completed with failed steps: {state.failed_steps}")
            else:
                logger.info(f"Workflow {run.workflow_id} completed")
            await self._emitter.emit(
                OrchestrationEventType.WORKFLOW_COMPLETED,
                run.workflow_id,
                partial=state.partial,
                failed_steps=state.failed_steps,
                duration=state.completed_at - (state.started_at or state.created_at),
            )
        elif status == WorkflowStatus.FAILED:
            logger.warning(f"Workflow {run.workflow_id} failed: {error}")
            await self._emitter.emit(
                OrchestrationEventType.WORKFLOW_FAILED,
                run.workflow_id,
                error=error,
                error_code=state.error_code,
                failed_steps=state.failed_steps,
            )
        else:
            logger.info(f"Workflow {run.workflow_id} cancelled")
            await self._emitter.emit(OrchestrationEventType.WORKFLOW_CANCELLED, run.workflow_id)

    async def _persist(self, run: _Run) -> None:
        try:
            await self._store.set(
                f"{self.config.key_prefix}{run.workflow_id}",
                run.state.to_dict(),
                ttl=self.config.retention,
            )
        except StorageError as exc:
            logger.warning(f"Could not persist workflow {run.workflow_id}: {exc}")

    def _evict_expired(self) -> None:
        cutoff = time.time() - self.config.retention
        expired = [
            wid
            for wid, run in self._runs.items()
            if run.state.status.is_terminal and (run.state.completed_at or 0.0) < cutoff
        ]
        for wid in expired:
            del self._runs[wid]
        self.contexts.cleanup_expired()

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _run(self, workflow_id: str) -> _Run:
        run = self._runs.get(workflow_id)
        if run is None:
            raise NotFoundError("Workflow", workflow_id)
        return run

    async def status(self, workflow_id: str) -> WorkflowState:
        """Current state from this instance or the shared store."""
        run = self._runs.get(workflow_id)
        if run is not None:
            return run.state
        stored = await self._store.get(f"{self.config.key_prefix}{workflow_id}")
        if stored is None:
            raise NotFoundError("Workflow", workflow_id)
        return WorkflowState.from_dict(stored)

    async def wait(self, workflow_id: str, timeout: float | None = None) -> WorkflowState:
        """Wait for the workflow to finish and return its final state."""
        run = self._runs.get(workflow_id)
        if run is None:
            state = await self.status(workflow_id)
            if state.status.is_terminal:
                return state
            raise InvalidStateError(f"Workflow {workflow_id} is executing on another instance")
        try:
            await asyncio.wait_for(run.done.wait(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise OrchestrationTimeoutError(
                f"Timed out waiting for workflow {workflow_id}", timeout=timeout, cause=exc
            ) from exc
        return run.state

    async def pause(self, workflow_id: str) -> None:
        """Stop launching new steps. Running steps finish normally."""
        run = self._run(workflow_id)
        if run.state.status != WorkflowStatus.RUNNING:
            raise InvalidStateError(f"Cannot pause workflow {workflow_id} in state {run.state.status.value}")
        run.state.status = WorkflowStatus.PAUSED
        run.wakeup.set()
        await self._persist(run)
        logger.info(f"Paused workflow {workflow_id}")
        await self._emitter.emit(OrchestrationEventType.WORKFLOW_PAUSED, workflow_id, progress=run.state.progress)

    async def resume(self, workflow_id: str) -> None:
        run = self._run(workflow_id)
        if run.state.status != WorkflowStatus.PAUSED:
            raise InvalidStateError(f"Cannot resume workflow {workflow_id} in state {run.state.status.value}")
        run.state.status = WorkflowStatus.RUNNING
        run.wakeup.set()
        await self._persist(run)
        logger.info(f"Resumed workflow {workflow_id}")
        await self._emitter.emit(OrchestrationEventType.WORKFLOW_RESUMED, workflow_id, progress=run.state.progress)

    async def cancel(self, workflow_id: str) -> bool:
        """Cancel a workflow. Every non-terminal step becomes ``cancelled``.

        Returns False if the workflow had already finished.
        """
        run = self._run(workflow_id)
        if run.state.status.is_terminal:
            return False
        closed = self._close_steps(run, StepStatus.CANCELLED)
        await self._terminate(run, WorkflowStatus.CANCELLED, error="Workflow cancelled", error_code=ErrorCode.CANCELLED.value)
        await self._emit_closed_steps(run, closed, StepStatus.CANCELLED)
        return True

    def list_active(self) -> list[WorkflowState]:
        return [run.state for run in self._runs.values() if not run.state.status.is_terminal]

    def stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        for run in self._runs.values():
            counts[run.state.status.value] = counts.get(run.state.status.value, 0) + 1
        duration = self._metrics.histogram("workflow.duration")
        return {
            "active": len(self.list_active()),
            "tracked": len(self._runs),
            "max_active_workflows": self.config.max_active_workflows,
            "by_status": counts,
            "duration": {"mean": duration.mean, **duration.percentiles()},
        }

    async def shutdown(self) -> None:
        """Cancel every active workflow and wait for the drivers to stop."""
        for state in self.list_active():
            await self.cancel(state.workflow_id)
        drivers = [run.driver for run in self._runs.values() if run.driver is not None]
        tasks = [task for run in self._runs.values() for task in run.tasks.values()]
        if drivers or tasks:
            await asyncio.gather(*drivers, *tasks, return_exceptions=True)


def _render(value: Any, scope: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return render_template(value, scope)
    if isinstance(value, Mapping):
        return {k: _render(v, scope) for k, v in value.items()}
    if isinstance(value, list):
        return [_render(v, scope) for v in value]
    return value


__all__ = ["WorkflowEngine"]
