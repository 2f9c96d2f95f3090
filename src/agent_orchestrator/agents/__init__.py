"""
Agent contract, capability registry and the shared invocation path.
"""

from .invoker import AgentInvoker
from .registry import (
    Agent,
    AgentBinding,
    AgentCapability,
    AgentRegistry,
    AgentResult,
    AggregateAgent,
    FunctionAgent,
)

__all__ = [
    "Agent",
    "AgentBinding",
    "AgentCapability",
    "AgentRegistry",
    "AgentResult",
    "AggregateAgent",
    "FunctionAgent",
    "AgentInvoker",
]
