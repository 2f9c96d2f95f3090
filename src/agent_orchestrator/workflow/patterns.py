"""
Graph builders for common orchestration shapes.

Each builder returns a plain ``WorkflowDefinition``; nothing here executes.
Steps passed in are copied, never mutated.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Any

from ..agents.registry import AgentCapability
from ..errors import ValidationError
from ..templating import get_path
from .types import InputSource, StepInput, WorkflowDefinition, WorkflowStep

Predicate = Callable[[Any], bool]


def sequential(steps: Sequence[WorkflowStep], *, name: str = "sequential", **options: Any) -> WorkflowDefinition:
    """Chain steps so step *i* depends only on step *i-1*."""
    if not steps:
        raise ValidationError("A sequential workflow needs at least one step")
    chained: list[WorkflowStep] = []
    for index, step in enumerate(steps):
        depends_on = [chained[index - 1].step_id] if index else []
        chained.append(replace(step, depends_on=depends_on))
    return WorkflowDefinition(name=name, steps=chained, **options)


def parallel(
    steps: Sequence[WorkflowStep],
    *,
    join: WorkflowStep | None = None,
    join_id: str = "join",
    name: str = "parallel",
    **options: Any,
) -> WorkflowDefinition:
    """Run independent steps side by side and feed them all into one join step.

    Without an explicit ``join`` the join step uses the built-in ``aggregate``
    capability, whose output maps each branch id to its output.
    """
    if not steps:
        raise ValidationError("A parallel workflow needs at least one step")
    branches = [replace(step, depends_on=[]) for step in steps]
    join_step = join or WorkflowStep(join_id, capability=AgentCapability.AGGREGATE.value)
    join_step = replace(join_step, depends_on=[b.step_id for b in branches])
    return WorkflowDefinition(name=name, steps=[*branches, join_step], **options)


def _chain(steps: Sequence[WorkflowStep], head_dependency: str, condition: Any) -> list[WorkflowStep]:
    chained: list[WorkflowStep] = []
    for index, step in enumerate(steps):
        if index == 0:
            chained.append(replace(step, depends_on=[head_dependency], condition=condition))
        else:
            chained.append(replace(step, depends_on=[chained[index - 1].step_id]))
    return chained


def conditional(
    source: WorkflowStep,
    predicate: Predicate | str,
    if_true: Sequence[WorkflowStep],
    if_false: Sequence[WorkflowStep] = (),
    *,
    name: str = "conditional",
    **options: Any,
) -> WorkflowDefinition:
    """Branch on a predicate over ``source``'s output.

    ``predicate`` is either a callable receiving the source output or a
    condition expression over the context (``context.check.output.ok``).
    Each branch runs as a chain; the branch that is not selected is skipped
    at its head, and the rest of it follows as skipped dependents.
    """
    if not if_true and not if_false:
        raise ValidationError("A conditional workflow needs at least one branch")
    source_step = replace(source, depends_on=list(source.depends_on))

    if isinstance(predicate, str):
        when_true: Any = predicate
        when_false: Any = f"!({predicate})"
    else:
        output_path = source_step.output_path

        def when_true(data: dict[str, Any]) -> bool:
            return bool(predicate(get_path(data, output_path)))

        def when_false(data: dict[str, Any]) -> bool:
            return not predicate(get_path(data, output_path))

    steps = [source_step]
    steps.extend(_chain(if_true, source_step.step_id, when_true))
    steps.extend(_chain(if_false, source_step.step_id, when_false))
    return WorkflowDefinition(name=name, steps=steps, **options)


def map_reduce(
    items: Sequence[Any],
    *,
    capability: str | None = None,
    agent_id: str | None = None,
    input_template: Any = None,
    reduce: WorkflowStep | None = None,
    prefix: str = "map",
    reduce_id: str = "reduce",
    max_items: int = 100,
    name: str = "map_reduce",
    **options: Any,
) -> WorkflowDefinition:
    """One independent map step per item, then a reduce step over all of them.

    Each map step receives the item as its input, or ``input_template``
    rendered with ``{{ item }}`` and ``{{ index }}``. The reduce step
    defaults to the ``aggregate`` capability.
    """
    if not items:
        raise ValidationError("Map-reduce needs at least one item")
    if len(items) > max_items:
        raise ValidationError(f"Map-reduce over {len(items)} items exceeds the limit of {max_items}")
    if capability is None and agent_id is None:
        raise ValidationError("Map-reduce needs a capability or agent_id for the map steps")

    mapped = [
        WorkflowStep(
            f"{prefix}_{index}",
            capability=capability,
            agent_id=agent_id,
            input=item if input_template is None else input_template,
            inputs=[
                StepInput("item", InputSource.LITERAL, value=item),
                StepInput("index", InputSource.LITERAL, value=index),
            ],
        )
        for index, item in enumerate(items)
    ]
    reducer = reduce or WorkflowStep(reduce_id, capability=AgentCapability.AGGREGATE.value)
    reducer = replace(reducer, depends_on=[m.step_id for m in mapped])
    return WorkflowDefinition(name=name, steps=[*mapped, reducer], **options)


__all__ = ["sequential", "parallel", "conditional", "map_reduce"]
