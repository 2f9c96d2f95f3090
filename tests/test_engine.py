"""
Tests for the workflow engine.
"""

import asyncio

import pytest

from agent_orchestrator.config import ContextConfig, FailurePolicy, QueueConfig, WorkflowConfig
from agent_orchestrator.errors import (
    ConcurrencyLimitError,
    CycleDetectedError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    PartialWorkflowFailureError,
)
from agent_orchestrator.events import OrchestrationEventType
from agent_orchestrator.retry import RetryPolicy
from agent_orchestrator.storage import InMemoryKeyValueStore
from agent_orchestrator.workflow import (
    InputSource,
    StepInput,
    StepOutput,
    StepStatus,
    WorkflowContextStore,
    WorkflowDefinition,
    WorkflowEngine,
    WorkflowStatus,
    WorkflowStep,
)

from conftest import ConcurrencyProbe, echo, failing, flaky, gated, make_engine, make_invoker, make_registry, upper


def _workflow(*steps, **kwargs):
    return WorkflowDefinition(name=kwargs.pop("name", "test"), steps=list(steps), **kwargs)


async def _run(engine, definition, initial=None, timeout=2):
    workflow_id = await engine.submit(definition, initial)
    return await engine.wait(workflow_id, timeout=timeout)


class TestExecution:
    """Test dependency ordering, data flow and concurrency."""

    @pytest.mark.asyncio
    async def test_sequential_data_flow(self):
        engine = make_engine(make_registry({"echo": echo, "upper": upper}))
        definition = _workflow(
            WorkflowStep("draft", capability="echo", input="Notes on {{ topic }}"),
            WorkflowStep("shout", capability="upper", input="{{ draft.output }}!", depends_on=["draft"]),
        )

        state = await _run(engine, definition, {"topic": "caching"})

        assert state.status == WorkflowStatus.COMPLETED
        assert state.partial is False
        assert state.output("draft") == "Notes on caching"
        assert state.output("shout") == "NOTES ON CACHING!"
        assert state.progress == 1.0
        assert await engine.contexts.get(state.workflow_id, "shout.output") == "NOTES ON CACHING!"

    @pytest.mark.asyncio
    async def test_parallel_cap_and_join_order(self):
        probe = ConcurrencyProbe(delay=0.05)
        engine = make_engine(make_registry({"probe": probe}))
        definition = _workflow(
            WorkflowStep("a", capability="probe"),
            WorkflowStep("b", capability="probe"),
            WorkflowStep("x", capability="probe"),
            WorkflowStep("c", capability="probe", depends_on=["a", "b"]),
            max_parallel_steps=2,
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert probe.peak == 2
        assert probe.started.index("c") > probe.started.index("a")
        assert probe.started.index("c") > probe.started.index("b")

    @pytest.mark.asyncio
    async def test_independent_steps_run_concurrently(self):
        probe = ConcurrencyProbe(delay=0.05)
        engine = make_engine(make_registry({"probe": probe}))
        definition = _workflow(*(WorkflowStep(f"s{n}", capability="probe") for n in range(3)))

        await _run(engine, definition)

        assert probe.peak == 3

    @pytest.mark.asyncio
    async def test_higher_priority_ready_step_launches_first(self):
        probe = ConcurrencyProbe(delay=0.01)
        engine = make_engine(make_registry({"probe": probe}))
        definition = _workflow(
            WorkflowStep("low", capability="probe", priority=10),
            WorkflowStep("high", capability="probe", priority=90),
            max_parallel_steps=1,
        )

        await _run(engine, definition)

        assert probe.started == ["high", "low"]

    @pytest.mark.asyncio
    async def test_agent_options(self):
        seen = {}

        async def spy(input, options):
            seen.update(options)
            return "ok"

        engine = make_engine(make_registry({"echo": echo, "spy": spy}))
        definition = _workflow(
            WorkflowStep("first", capability="echo", input={"n": 1}),
            WorkflowStep(
                "second",
                capability="spy",
                depends_on=["first"],
                options={"tone": "dry"},
                inputs=[
                    StepInput("previous", InputSource.STEP, path="first.n"),
                    StepInput("topic", InputSource.CONTEXT, path="topic"),
                    StepInput("limit", InputSource.LITERAL, value=3),
                ],
            ),
        )

        state = await _run(engine, definition, {"topic": "queues"})

        assert seen["workflow_id"] == state.workflow_id
        assert seen["step_id"] == "second"
        assert seen["tone"] == "dry"
        assert seen["variables"] == {"previous": 1, "topic": "queues", "limit": 3}
        assert seen["dependency_results"] == {"first": {"n": 1}}
        assert seen["context"]["topic"] == "queues"

    @pytest.mark.asyncio
    async def test_step_without_input_receives_variables(self):
        engine = make_engine(make_registry({"echo": echo}))
        definition = _workflow(
            WorkflowStep("only", capability="echo", inputs=[StepInput("x", InputSource.LITERAL, value=7)])
        )

        state = await _run(engine, definition)

        assert state.output("only") == {"x": 7}

    @pytest.mark.asyncio
    async def test_declared_outputs_written_to_context(self):
        async def titled(input, options):
            return {"title": "Caching", "body": "..."}

        engine = make_engine(make_registry({"titled": titled}))
        definition = _workflow(
            WorkflowStep(
                "write",
                capability="titled",
                outputs=[StepOutput("summary.title", field="title"), StepOutput("article")],
            )
        )

        state = await _run(engine, definition)

        assert await engine.contexts.get(state.workflow_id, "summary.title") == "Caching"
        assert await engine.contexts.get(state.workflow_id, "article.body") == "..."

    @pytest.mark.asyncio
    async def test_aggregate_step(self):
        engine = make_engine(make_registry({"upper": upper}))
        definition = _workflow(
            WorkflowStep("a", capability="upper", input="one"),
            WorkflowStep("b", capability="upper", input="two"),
            WorkflowStep("join", capability="aggregate", depends_on=["a", "b"]),
        )

        state = await _run(engine, definition)

        assert state.output("join") == {"a": "ONE", "b": "TWO"}

    @pytest.mark.asyncio
    async def test_initial_context_merges_with_definition(self):
        engine = make_engine(make_registry({"echo": echo}))
        definition = _workflow(
            WorkflowStep("s", capability="echo", input="{{ greeting }} {{ name }}"),
            initial_context={"greeting": "hello", "name": "default"},
        )

        state = await _run(engine, definition, {"name": "world"})

        assert state.output("s") == "hello world"


class TestConditions:
    """Test condition-based skipping."""

    @pytest.mark.asyncio
    async def test_false_condition_skips_step_and_dependents(self):
        async def check(input, options):
            return {"ok": False}

        engine = make_engine(make_registry({"check": check, "echo": echo}))
        definition = _workflow(
            WorkflowStep("check", capability="check"),
            WorkflowStep("publish", capability="echo", depends_on=["check"], condition="context.check.output.ok"),
            WorkflowStep("notify", capability="echo", depends_on=["publish"]),
            WorkflowStep("fix", capability="echo", depends_on=["check"], condition="!context.check.output.ok"),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.partial is False
        assert state.steps["publish"].status == StepStatus.SKIPPED
        assert state.steps["publish"].skip_reason == "condition not met"
        assert state.steps["notify"].status == StepStatus.SKIPPED
        assert state.steps["notify"].skip_reason == "dependency 'publish' skipped"
        assert state.steps["fix"].status == StepStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_callable_condition(self):
        engine = make_engine(make_registry({"echo": echo}))
        definition = _workflow(
            WorkflowStep("yes", capability="echo", condition=lambda ctx: ctx.get("flag") is True),
            WorkflowStep("boom", capability="echo", condition=lambda ctx: ctx["missing"]),
        )

        state = await _run(engine, definition, {"flag": True})

        assert state.steps["yes"].status == StepStatus.COMPLETED
        assert state.steps["boom"].status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_skip_tolerant_step_runs_after_failure(self):
        engine = make_engine(make_registry({"bad": failing(), "echo": echo}))
        definition = _workflow(
            WorkflowStep("risky", capability="bad", required=False),
            WorkflowStep("cleanup", capability="echo", input="done", depends_on=["risky"], skip_tolerant=True),
        )

        state = await _run(engine, definition)

        assert state.steps["risky"].status == StepStatus.FAILED
        assert state.steps["cleanup"].status == StepStatus.COMPLETED
        assert state.status == WorkflowStatus.COMPLETED
        assert state.partial is True


class TestFailurePolicies:
    """Test strict and lenient failure handling."""

    @pytest.mark.asyncio
    async def test_strict_failure_stops_workflow(self):
        gate = asyncio.Event()
        engine = make_engine(make_registry({"bad": failing("boom"), "slow": gated(gate), "echo": echo}))
        definition = _workflow(
            WorkflowStep("slow", capability="slow"),
            WorkflowStep("broken", capability="bad"),
            WorkflowStep("after", capability="echo", depends_on=["broken"]),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.FAILED
        assert state.error_code == ErrorCode.AGENT_EXECUTION.value
        assert "broken" in state.error
        assert state.steps["broken"].status == StepStatus.FAILED
        assert state.steps["slow"].status == StepStatus.CANCELLED
        assert state.steps["after"].status == StepStatus.SKIPPED
        assert state.steps["after"].skip_reason == "workflow stopped"
        assert state.failure() is None

    @pytest.mark.asyncio
    async def test_lenient_failure_skips_dependents_only(self):
        engine = make_engine(make_registry({"bad": failing(), "echo": echo}))
        definition = _workflow(
            WorkflowStep("a", capability="bad"),
            WorkflowStep("b", capability="echo", input="fine"),
            WorkflowStep("c", capability="echo", depends_on=["a"]),
            failure_policy=FailurePolicy.LENIENT,
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.partial is True
        assert state.steps["b"].status == StepStatus.COMPLETED
        assert state.steps["c"].status == StepStatus.SKIPPED
        assert state.steps["c"].skip_reason == "dependency 'a' failed"
        failure = state.failure()
        assert isinstance(failure, PartialWorkflowFailureError)
        assert failure.failed_steps == ["a"]

    @pytest.mark.asyncio
    async def test_lenient_with_nothing_completed_fails(self):
        engine = make_engine(
            make_registry({"bad": failing()}),
            config=WorkflowConfig(failure_policy=FailurePolicy.LENIENT),
        )

        state = await _run(engine, _workflow(WorkflowStep("a", capability="bad")))

        assert state.status == WorkflowStatus.FAILED

    @pytest.mark.asyncio
    async def test_optional_failure_does_not_stop_strict_workflow(self):
        engine = make_engine(make_registry({"bad": failing(), "echo": echo}))
        definition = _workflow(
            WorkflowStep("extra", capability="bad", required=False),
            WorkflowStep("main", capability="echo", input="x"),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.partial is True
        assert state.failed_steps == ["extra"]

    @pytest.mark.asyncio
    async def test_step_retries(self, event_bus):
        fn = flaky(2, result="third time")
        engine = make_engine(make_registry({"flaky": fn}), events=event_bus)
        definition = _workflow(
            WorkflowStep("s", capability="flaky", retry=RetryPolicy(max_attempts=3, base_delay=0)),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.output("s") == "third time"
        assert state.steps["s"].attempts == 3
        assert len(state.steps["s"].process_ids) == 3
        assert len(event_bus.events_of(OrchestrationEventType.STEP_RETRYING, state.workflow_id)) == 2

    @pytest.mark.asyncio
    async def test_default_retry_from_definition(self):
        fn = flaky(1)
        engine = make_engine(make_registry({"flaky": fn}))
        definition = _workflow(
            WorkflowStep("s", capability="flaky"),
            default_retry=RetryPolicy(max_attempts=2, base_delay=0),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert fn.calls["count"] == 2

    @pytest.mark.asyncio
    async def test_step_timeout(self):
        async def slow(input, options):
            await asyncio.sleep(10)

        engine = make_engine(make_registry({"slow": slow}))
        state = await _run(engine, _workflow(WorkflowStep("s", capability="slow", timeout=0.02)))

        assert state.status == WorkflowStatus.FAILED
        assert state.steps["s"].error_code == ErrorCode.CALL_TIMEOUT.value

    @pytest.mark.asyncio
    async def test_workflow_timeout(self):
        gate = asyncio.Event()
        engine = make_engine(make_registry({"slow": gated(gate), "echo": echo}))
        definition = _workflow(
            WorkflowStep("wait", capability="slow"),
            WorkflowStep("next", capability="echo", depends_on=["wait"]),
            timeout=0.05,
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.FAILED
        assert state.error_code == ErrorCode.TIMEOUT.value
        assert state.steps["wait"].status == StepStatus.CANCELLED
        assert state.steps["next"].status == StepStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_step_service_selects_breaker(self):
        engine = make_engine(make_registry({"echo": echo}))
        await _run(engine, _workflow(WorkflowStep("s", capability="echo", service="shared-api")))

        assert "shared-api" in engine.invoker.breakers.names()
        assert "echo" not in engine.invoker.breakers.names()


class TestControl:
    """Test submission limits, cancel, pause and resume."""

    @pytest.mark.asyncio
    async def test_cancel_running_workflow(self, event_bus):
        gate = asyncio.Event()
        engine = make_engine(make_registry({"slow": gated(gate), "echo": echo}), events=event_bus)
        workflow_id = await engine.submit(
            _workflow(
                WorkflowStep("wait", capability="slow"),
                WorkflowStep("next", capability="echo", depends_on=["wait"]),
            )
        )
        await asyncio.sleep(0.02)

        assert await engine.cancel(workflow_id) is True
        state = await engine.wait(workflow_id, timeout=1)

        assert state.status == WorkflowStatus.CANCELLED
        assert state.error_code == ErrorCode.CANCELLED.value
        assert state.steps["wait"].status == StepStatus.CANCELLED
        assert state.steps["next"].status == StepStatus.CANCELLED
        assert await engine.cancel(workflow_id) is False
        assert event_bus.events_of(OrchestrationEventType.WORKFLOW_CANCELLED, workflow_id)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        gate = asyncio.Event()
        engine = make_engine(make_registry({"slow": gated(gate), "echo": echo}))
        workflow_id = await engine.submit(
            _workflow(
                WorkflowStep("first", capability="slow"),
                WorkflowStep("second", capability="echo", input="x", depends_on=["first"]),
            )
        )
        await asyncio.sleep(0.02)

        await engine.pause(workflow_id)
        with pytest.raises(InvalidStateError):
            await engine.pause(workflow_id)
        gate.set()
        await asyncio.sleep(0.05)

        state = await engine.status(workflow_id)
        assert state.status == WorkflowStatus.PAUSED
        assert state.steps["first"].status == StepStatus.COMPLETED
        assert state.steps["second"].status in (StepStatus.PENDING, StepStatus.READY)

        await engine.resume(workflow_id)
        with pytest.raises(InvalidStateError):
            await engine.resume(workflow_id)
        state = await engine.wait(workflow_id, timeout=1)
        assert state.status == WorkflowStatus.COMPLETED
        assert state.output("second") == "x"

    @pytest.mark.asyncio
    async def test_active_workflow_limit(self):
        gate = asyncio.Event()
        engine = make_engine(
            make_registry({"slow": gated(gate)}),
            config=WorkflowConfig(max_active_workflows=1),
        )
        first = await engine.submit(_workflow(WorkflowStep("s", capability="slow")))

        with pytest.raises(ConcurrencyLimitError):
            await engine.submit(_workflow(WorkflowStep("s", capability="slow")))

        gate.set()
        await engine.wait(first, timeout=1)
        second = await engine.submit(_workflow(WorkflowStep("s", capability="slow")))
        assert (await engine.wait(second, timeout=1)).status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_invalid_workflow_leaves_no_state(self):
        engine = make_engine(make_registry({"echo": echo}))
        definition = _workflow(
            WorkflowStep("a", capability="echo", depends_on=["b"]),
            WorkflowStep("b", capability="echo", depends_on=["a"]),
        )

        with pytest.raises(CycleDetectedError):
            await engine.submit(definition)

        assert engine.stats()["tracked"] == 0

    @pytest.mark.asyncio
    async def test_duplicate_workflow_id(self):
        engine = make_engine(make_registry({"echo": echo}))
        definition = _workflow(WorkflowStep("s", capability="echo"))
        await engine.submit(definition, workflow_id="wf-1")
        await engine.wait("wf-1", timeout=1)

        with pytest.raises(InvalidStateError):
            await engine.submit(definition, workflow_id="wf-1")

    @pytest.mark.asyncio
    async def test_unknown_workflow(self):
        engine = make_engine(make_registry())
        with pytest.raises(NotFoundError):
            await engine.status("ghost")
        with pytest.raises(NotFoundError):
            await engine.cancel("ghost")

    @pytest.mark.asyncio
    async def test_state_visible_through_shared_store(self):
        store = InMemoryKeyValueStore()
        registry = make_registry({"echo": echo})
        engine = make_engine(registry, store=store)
        other = make_engine(registry, store=store)

        state = await _run(engine, _workflow(WorkflowStep("s", capability="echo", input="hi")))
        remote = await other.status(state.workflow_id)

        assert remote.status == WorkflowStatus.COMPLETED
        assert remote.steps["s"].output == "hi"
        assert (await other.wait(state.workflow_id)).status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lifecycle_events_and_stats(self, event_bus):
        engine = make_engine(make_registry({"echo": echo}), events=event_bus, queue=QueueConfig(max_concurrent=2))
        state = await _run(engine, _workflow(WorkflowStep("a", capability="echo"), WorkflowStep("b", capability="echo")))
        wid = state.workflow_id

        assert event_bus.events_of(OrchestrationEventType.WORKFLOW_SUBMITTED, wid)
        assert event_bus.events_of(OrchestrationEventType.WORKFLOW_STARTED, wid)
        assert len(event_bus.events_of(OrchestrationEventType.STEP_COMPLETED, wid)) == 2
        assert event_bus.events_of(OrchestrationEventType.WORKFLOW_COMPLETED, wid)[0].data["partial"] is False

        stats = engine.stats()
        assert stats["active"] == 0
        assert stats["by_status"] == {"completed": 1}

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active(self):
        gate = asyncio.Event()
        engine = make_engine(make_registry({"slow": gated(gate)}))
        workflow_id = await engine.submit(_workflow(WorkflowStep("s", capability="slow")))
        await asyncio.sleep(0.01)

        await engine.shutdown()

        assert (await engine.status(workflow_id)).status == WorkflowStatus.CANCELLED


class TestContextLifetime:
    """Test that a context lives as long as its workflow."""

    @staticmethod
    def _engine(default_ttl, agents):
        store = InMemoryKeyValueStore()
        contexts = WorkflowContextStore(ContextConfig(default_ttl=default_ttl), store)
        return WorkflowEngine(make_registry(agents), make_invoker(), contexts, store=store)

    @pytest.mark.asyncio
    async def test_workflow_outlives_context_ttl(self):
        async def slow(input, options):
            await asyncio.sleep(0.3)
            return f"slow {input}"

        engine = self._engine(0.1, {"slow": slow, "upper": upper})
        definition = _workflow(
            WorkflowStep("a", capability="slow", input="draft"),
            WorkflowStep("b", capability="upper", input="{{ a.output }}", depends_on=["a"]),
        )

        state = await _run(engine, definition)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.output("b") == "SLOW DRAFT"
        context = await engine.contexts.get_context(state.workflow_id)
        assert context.expires_at is not None
        assert await engine.contexts.get(state.workflow_id, "a.output") == "slow draft"

    @pytest.mark.asyncio
    async def test_expired_contexts_are_dropped(self):
        engine = self._engine(0.05, {"upper": upper})
        definition = _workflow(WorkflowStep("a", capability="upper", input="x"))

        first = await _run(engine, definition)
        await asyncio.sleep(0.1)
        second = await _run(engine, definition)

        assert first.workflow_id not in engine.contexts._contexts
        assert second.workflow_id in engine.contexts._contexts
