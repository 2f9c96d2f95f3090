"""
Agent contract and capability registry.

Agents are resolved by capability lookup, never by inheritance: anything
with an async ``execute(input, options)`` method can be registered under a
capability name. Workflows resolve every step's binding once, at submission.
"""

from __future__ import annotations

import inspect
import itertools
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from ..errors import AgentNotFoundError


class AgentCapability(str, Enum):
    """Well-known capability names. Any string works as a capability."""

    TEXT_GENERATION = "text-generation"
    CODE_GENERATION = "code-generation"
    PATTERN_VALIDATION = "pattern-validation"
    CUSTOM = "custom"

    # Built in: returns the results of a step's dependencies
    AGGREGATE = "aggregate"


@runtime_checkable
class Agent(Protocol):
    """Asynchronous agent contract."""

    async def execute(self, input: Any, options: dict[str, Any]) -> Any:
        ...


@dataclass
class AgentResult:
    """Optional structured result an agent may return.

    ``success=False`` is treated as a failure of the call.
    """

    content: str | None = None
    data: Any = None
    success: bool = True
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def output(self) -> Any:
        return self.data if self.data is not None else self.content

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "data": self.data,
            "success": self.success,
            "error": self.error,
            "metadata": dict(self.metadata),
        }


class FunctionAgent:
    """Adapts a plain (sync or async) function ``fn(input, options)`` into an Agent."""

    def __init__(self, fn: Callable[[Any, dict[str, Any]], Any], name: str | None = None) -> None:
        self._fn = fn
        self.name = name or getattr(fn, "__name__", "function_agent")

    async def execute(self, input: Any, options: dict[str, Any]) -> Any:
        result = self._fn(input, options)
        if inspect.isawaitable(result):
            result = await result
        return result

    def __repr__(self) -> str:
        return f"FunctionAgent({self.name})"


class AggregateAgent:
    """Returns the results of the calling step's dependencies, keyed by step id."""

    async def execute(self, input: Any, options: dict[str, Any]) -> Any:
        return dict(options.get("dependency_results", {}))


def _capability_name(capability: str | AgentCapability) -> str:
    return capability.value if isinstance(capability, AgentCapability) else str(capability)


@dataclass(frozen=True)
class AgentBinding:
    """A resolved agent: its id, capability, instance and breaker service name."""

    agent_id: str
    capability: str
    agent: Agent
    service: str


class AgentRegistry:
    """Capability table mapping capability names and agent ids to agents."""

    def __init__(self, *, builtins: bool = True) -> None:
        self._bindings: dict[str, AgentBinding] = {}
        self._defaults: dict[str, str] = {}
        self._ids = itertools.count(1)
        if builtins:
            self.register(AggregateAgent(), AgentCapability.AGGREGATE, agent_id="aggregate")

    def register(
        self,
        agent: Agent,
        capability: str | AgentCapability,
        *,
        agent_id: str | None = None,
        service: str | None = None,
        default: bool = False,
    ) -> AgentBinding:
        """Register an agent under a capability.

        The first agent registered for a capability becomes its default;
        ``default=True`` takes over. ``service`` names the circuit breaker
        guarding the agent (defaults to the capability name).
        """
        if not callable(getattr(agent, "execute", None)):
            raise TypeError(f"{agent!r} does not implement execute(input, options)")
        name = _capability_name(capability)
        agent_id = agent_id or f"{name}-{next(self._ids)}"
        if agent_id in self._bindings:
            raise ValueError(f"Agent id '{agent_id}' is already registered")
        binding = AgentBinding(agent_id=agent_id, capability=name, agent=agent, service=service or name)
        self._bindings[agent_id] = binding
        if default or name not in self._defaults:
            self._defaults[name] = agent_id
        return binding

    def unregister(self, agent_id: str) -> None:
        binding = self._bindings.pop(agent_id, None)
        if binding is None:
            raise AgentNotFoundError(agent_id=agent_id)
        if self._defaults.get(binding.capability) == agent_id:
            del self._defaults[binding.capability]
            for other in self._bindings.values():
                if other.capability == binding.capability:
                    self._defaults[binding.capability] = other.agent_id
                    break

    def get(self, agent_id: str) -> AgentBinding:
        try:
            return self._bindings[agent_id]
        except KeyError:
            raise AgentNotFoundError(agent_id=agent_id) from None

    def resolve(
        self,
        capability: str | AgentCapability | None = None,
        agent_id: str | None = None,
    ) -> AgentBinding:
        """Resolve an explicit agent id, or the default agent of a capability."""
        if agent_id is not None:
            binding = self.get(agent_id)
            if capability is not None and binding.capability != _capability_name(capability):
                raise AgentNotFoundError(capability=_capability_name(capability), agent_id=agent_id)
            return binding
        if capability is None:
            raise AgentNotFoundError(capability=None)
        name = _capability_name(capability)
        default_id = self._defaults.get(name)
        if default_id is None:
            raise AgentNotFoundError(capability=name)
        return self._bindings[default_id]

    def list(self, capability: str | AgentCapability | None = None) -> list[AgentBinding]:
        if capability is None:
            return list(self._bindings.values())
        name = _capability_name(capability)
        return [b for b in self._bindings.values() if b.capability == name]

    def capabilities(self) -> list[str]:
        return sorted(self._defaults)

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._bindings

    def __len__(self) -> int:
        return len(self._bindings)


__all__ = [
    "AgentCapability",
    "Agent",
    "AgentResult",
    "FunctionAgent",
    "AggregateAgent",
    "AgentBinding",
    "AgentRegistry",
]
