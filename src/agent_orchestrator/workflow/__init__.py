"""
Workflow engine, context store and graph builders.
"""

from .conditions import ConditionSyntaxError, evaluate_condition, parse_condition
from .context import ContextSnapshot, WorkflowContext, WorkflowContextStore
from .engine import WorkflowEngine
from .graph import execution_order, find_cycle, topological_levels, validate_definition
from .patterns import conditional, map_reduce, parallel, sequential
from .types import (
    InputSource,
    StepInput,
    StepOutput,
    StepState,
    StepStatus,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowStep,
)

__all__ = [
    # Model
    "InputSource",
    "StepInput",
    "StepOutput",
    "StepState",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowStep",
    # Graph
    "execution_order",
    "find_cycle",
    "topological_levels",
    "validate_definition",
    # Conditions
    "ConditionSyntaxError",
    "evaluate_condition",
    "parse_condition",
    # Context
    "ContextSnapshot",
    "WorkflowContext",
    "WorkflowContextStore",
    # Engine
    "WorkflowEngine",
    # Patterns
    "sequential",
    "parallel",
    "conditional",
    "map_reduce",
]
