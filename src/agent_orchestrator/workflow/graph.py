"""
Workflow graph validation and ordering.
"""

from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

from ..errors import AgentNotFoundError, CycleDetectedError, ValidationError
from ..templating import paths_overlap, split_path
from .types import WorkflowDefinition, WorkflowStep

if TYPE_CHECKING:
    from ..agents.registry import AgentRegistry


def find_cycle(steps: list[WorkflowStep]) -> list[str] | None:
    """Return one dependency cycle as ``[a, b, ..., a]``, or None if acyclic."""
    graph = {s.step_id: [d for d in s.depends_on] for s in steps}
    visiting: set[str] = set()
    visited: set[str] = set()
    stack: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if dep in visiting:
                return stack[stack.index(dep) :] + [dep]
            if dep not in visited:
                found = visit(dep)
                if found:
                    return found
        visiting.discard(node)
        visited.add(node)
        stack.pop()
        return None

    for step in steps:
        if step.step_id not in visited:
            cycle = visit(step.step_id)
            if cycle:
                return cycle
    return None


def topological_levels(steps: list[WorkflowStep]) -> list[list[str]]:
    """Group steps into levels; every step's dependencies lie in earlier levels.

    Raises:
        CycleDetectedError: the graph has a cycle
    """
    in_degree = {s.step_id: 0 for s in steps}
    dependents: dict[str, list[str]] = {s.step_id: [] for s in steps}
    for step in steps:
        for dep in step.depends_on:
            if dep in in_degree:
                in_degree[step.step_id] += 1
                dependents[dep].append(step.step_id)

    levels: list[list[str]] = []
    current = deque(sid for sid, degree in in_degree.items() if degree == 0)
    seen = 0
    while current:
        level = list(current)
        levels.append(level)
        seen += len(level)
        current = deque()
        for sid in level:
            for child in dependents[sid]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    current.append(child)

    if seen != len(in_degree):
        raise CycleDetectedError(find_cycle(steps) or sorted(s for s, d in in_degree.items() if d > 0))
    return levels


def execution_order(steps: list[WorkflowStep]) -> list[str]:
    return [sid for level in topological_levels(steps) for sid in level]


def validate_definition(
    definition: WorkflowDefinition,
    *,
    max_steps: int | None = None,
    agents: AgentRegistry | None = None,
) -> None:
    """Check a workflow definition before anything runs.

    Structural problems are collected and raised together; cycles are
    checked once the structure is sound.

    Raises:
        ValidationError: one or more structural problems (``.errors`` lists them)
        CycleDetectedError: the dependency graph has a cycle
    """
    errors: list[str] = []
    steps = definition.steps

    if not steps:
        raise ValidationError("Workflow has no steps", errors=["Workflow has no steps"])
    if max_steps is not None and len(steps) > max_steps:
        errors.append(f"Workflow has {len(steps)} steps; the limit is {max_steps}")

    ids: set[str] = set()
    for step in steps:
        if not step.step_id or not step.step_id.replace("_", "").replace("-", "").isalnum():
            errors.append(f"Invalid step id '{step.step_id}'")
        if step.step_id in ids:
            errors.append(f"Duplicate step id '{step.step_id}'")
        ids.add(step.step_id)

    # Every step owns its own id namespace plus its declared outputs
    owned: list[tuple[str, str]] = [(s.step_id, s.step_id) for s in steps]
    for step in steps:
        if step.step_id in step.depends_on:
            errors.append(f"Step '{step.step_id}' depends on itself")
        for dep in step.depends_on:
            if dep not in ids:
                errors.append(f"Step '{step.step_id}' depends on unknown step '{dep}'")
        if step.capability is None and step.agent_id is None:
            errors.append(f"Step '{step.step_id}' names neither a capability nor an agent")
        elif agents is not None:
            try:
                agents.resolve(step.capability, agent_id=step.agent_id)
            except AgentNotFoundError as exc:
                errors.append(f"Step '{step.step_id}': {exc.message}")
        if step.timeout is not None and step.timeout <= 0:
            errors.append(f"Step '{step.step_id}' timeout must be positive")
        if not 0 <= step.priority <= 100:
            errors.append(f"Step '{step.step_id}' priority must be between 0 and 100")

        for output in step.outputs:
            try:
                split_path(output.context_path)
            except ValueError as exc:
                errors.append(f"Step '{step.step_id}': {exc}")
                continue
            for owner, path in owned:
                if owner != step.step_id and paths_overlap(path, output.context_path):
                    errors.append(
                        f"Step '{step.step_id}' output '{output.context_path}' overlaps "
                        f"'{path}' owned by step '{owner}'"
                    )
            owned.append((step.step_id, output.context_path))

    if errors:
        raise ValidationError(f"Invalid workflow '{definition.name}': {errors[0]}", errors=errors)

    cycle = find_cycle(steps)
    if cycle:
        raise CycleDetectedError(cycle)


__all__ = ["find_cycle", "topological_levels", "execution_order", "validate_definition"]
