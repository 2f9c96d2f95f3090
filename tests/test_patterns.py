"""
Tests for the workflow graph builders.
"""

import pytest

from agent_orchestrator.errors import ValidationError
from agent_orchestrator.workflow import (
    StepStatus,
    WorkflowStatus,
    WorkflowStep,
    conditional,
    map_reduce,
    parallel,
    sequential,
)

from conftest import echo, make_engine, make_registry, upper


class TestBuilders:
    """Test the shape of generated graphs."""

    def test_sequential_chains_steps(self):
        steps = [WorkflowStep(s, capability="echo", depends_on=["ignored"]) for s in ("a", "b", "c")]
        definition = sequential(steps, name="chain")

        assert definition.name == "chain"
        assert [s.depends_on for s in definition.steps] == [[], ["a"], ["b"]]
        assert steps[1].depends_on == ["ignored"]

    def test_parallel_adds_join(self):
        definition = parallel([WorkflowStep("a", capability="echo"), WorkflowStep("b", capability="echo")])

        join = definition.step("join")
        assert join.capability == "aggregate"
        assert join.depends_on == ["a", "b"]

    def test_parallel_custom_join(self):
        definition = parallel(
            [WorkflowStep("a", capability="echo")],
            join=WorkflowStep("merge", capability="upper"),
        )
        assert definition.step_ids == ["a", "merge"]
        assert definition.step("merge").depends_on == ["a"]

    def test_map_reduce_shape(self):
        definition = map_reduce(["x", "y"], capability="upper", max_items=5)

        assert definition.step_ids == ["map_0", "map_1", "reduce"]
        assert definition.step("map_1").input == "y"
        assert definition.step("reduce").depends_on == ["map_0", "map_1"]

    def test_conditional_string_predicate(self):
        definition = conditional(
            WorkflowStep("check", capability="echo"),
            "context.check.output.ok",
            [WorkflowStep("yes", capability="echo"), WorkflowStep("yes2", capability="echo")],
            [WorkflowStep("no", capability="echo")],
        )

        assert definition.step("yes").condition == "context.check.output.ok"
        assert definition.step("yes2").depends_on == ["yes"]
        assert definition.step("yes2").condition is None
        assert definition.step("no").condition == "!(context.check.output.ok)"

    @pytest.mark.parametrize(
        "build",
        [
            lambda: sequential([]),
            lambda: parallel([]),
            lambda: conditional(WorkflowStep("c", capability="echo"), "context.x", []),
            lambda: map_reduce([], capability="echo"),
            lambda: map_reduce([1, 2, 3], capability="echo", max_items=2),
            lambda: map_reduce([1]),
        ],
    )
    def test_invalid_shapes(self, build):
        with pytest.raises(ValidationError):
            build()


class TestPatternExecution:
    """Test generated graphs end to end."""

    @pytest.mark.asyncio
    async def test_parallel_join_collects_branches(self):
        engine = make_engine(make_registry({"upper": upper}))
        definition = parallel(
            [WorkflowStep("a", capability="upper", input="left"), WorkflowStep("b", capability="upper", input="right")]
        )

        state = await engine.wait(await engine.submit(definition), timeout=2)

        assert state.output("join") == {"a": "LEFT", "b": "RIGHT"}

    @pytest.mark.asyncio
    async def test_map_reduce_with_template(self):
        engine = make_engine(make_registry({"upper": upper}))
        definition = map_reduce(["red", "blue"], capability="upper", input_template="{{ index }}:{{ item }}")

        state = await engine.wait(await engine.submit(definition), timeout=2)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.output("reduce") == {"map_0": "0:RED", "map_1": "1:BLUE"}

    @pytest.mark.asyncio
    async def test_conditional_callable_takes_one_branch(self):
        async def check(input, options):
            return {"score": 4}

        engine = make_engine(make_registry({"check": check, "echo": echo}))
        definition = conditional(
            WorkflowStep("check", capability="check"),
            lambda output: output["score"] >= 7,
            [WorkflowStep("publish", capability="echo", input="ship it")],
            [WorkflowStep("revise", capability="echo", input="try again"), WorkflowStep("recheck", capability="echo")],
        )

        state = await engine.wait(await engine.submit(definition), timeout=2)

        assert state.status == WorkflowStatus.COMPLETED
        assert state.steps["publish"].status == StepStatus.SKIPPED
        assert state.output("revise") == "try again"
        assert state.steps["recheck"].status == StepStatus.COMPLETED
