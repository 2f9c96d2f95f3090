"""
Collaboration configuration: self-critique and discussion sessions.
"""

from __future__ import annotations

from dataclasses import dataclass

from .base import ConsensusStrategy

# Upper bound on self-critique iterations, whatever a caller configures.
MAX_CRITIQUE_ITERATIONS = 10


@dataclass(frozen=True)
class CritiqueConfig:
    """Defaults for self-critique sessions."""

    max_iterations: int = 5
    quality_threshold: float = 0.8
    require_criterion_thresholds: bool = False
    call_timeout: float | None = 120.0
    session_timeout: float | None = None
    priority: int = 50

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValueError("quality_threshold must be between 0.0 and 1.0")

    @property
    def effective_max_iterations(self) -> int:
        return min(self.max_iterations, MAX_CRITIQUE_ITERATIONS)


@dataclass(frozen=True)
class DiscussionConfig:
    """Defaults for discussion sessions."""

    max_rounds: int = 5
    max_participants: int = 10
    convergence_threshold: float = 0.85
    strategy: ConsensusStrategy = ConsensusStrategy.MAJORITY
    weighted_threshold: float = 0.5

    # Strategy used for a round in which the facilitator gives no judgment;
    # None means the round simply does not converge.
    facilitator_fallback: ConsensusStrategy | None = ConsensusStrategy.MAJORITY

    max_parallel_participants: int = 5
    call_timeout: float | None = 120.0
    session_timeout: float | None = None
    priority: int = 50

    def __post_init__(self) -> None:
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be at least 1")
        if self.max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        if not 0.0 <= self.convergence_threshold <= 1.0:
            raise ValueError("convergence_threshold must be between 0.0 and 1.0")
        if not 0.0 <= self.weighted_threshold <= 1.0:
            raise ValueError("weighted_threshold must be between 0.0 and 1.0")
        if self.max_parallel_participants < 1:
            raise ValueError("max_parallel_participants must be at least 1")
        if not isinstance(self.strategy, ConsensusStrategy):
            object.__setattr__(self, "strategy", ConsensusStrategy(self.strategy))
        if self.facilitator_fallback is not None and not isinstance(self.facilitator_fallback, ConsensusStrategy):
            object.__setattr__(self, "facilitator_fallback", ConsensusStrategy(self.facilitator_fallback))
        if self.facilitator_fallback == ConsensusStrategy.FACILITATOR:
            raise ValueError("facilitator_fallback cannot be 'facilitator'")


__all__ = ["CritiqueConfig", "DiscussionConfig", "MAX_CRITIQUE_ITERATIONS"]
