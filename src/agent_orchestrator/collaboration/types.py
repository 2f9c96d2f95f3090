"""
Collaboration session model: self-critique iterations and discussion rounds.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..config.base import ConsensusStrategy
from ..errors import ConsensusNotReachedError
from ..templating import to_jsonable


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self != SessionStatus.RUNNING


class TerminationReason(str, Enum):
    """Why a collaboration session stopped."""

    # Self-critique
    THRESHOLD_MET = "threshold_met"
    MAX_ITERATIONS = "max_iterations"

    # Discussion
    CONVERGED = "converged"
    MAX_ROUNDS = "max_rounds"

    # Both
    TIMEOUT = "timeout"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =============================================================================
# Self-critique
# =============================================================================


@dataclass(frozen=True)
class QualityCriterion:
    """One dimension the evaluator scores in [0, 1].

    ``threshold`` is an optional per-criterion minimum, enforced when the
    critique config sets ``require_criterion_thresholds``.
    """

    name: str
    description: str = ""
    weight: float = 1.0
    threshold: float | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("criterion name is required")
        if self.weight <= 0:
            raise ValueError(f"criterion '{self.name}' weight must be positive")
        if self.threshold is not None and not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"criterion '{self.name}' threshold must be between 0.0 and 1.0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "weight": self.weight,
            "threshold": self.threshold,
        }


@dataclass
class CritiqueIteration:
    iteration: int
    candidate: Any
    scores: dict[str, float]
    weighted_score: float
    critique: str = ""
    suggestions: list[str] = field(default_factory=list)
    meets_threshold: bool = False
    parsed: bool = True
    duration: float = 0.0
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "candidate": to_jsonable(self.candidate),
            "scores": dict(self.scores),
            "weighted_score": self.weighted_score,
            "critique": self.critique,
            "suggestions": list(self.suggestions),
            "meets_threshold": self.meets_threshold,
            "parsed": self.parsed,
            "duration": self.duration,
            "timestamp": self.timestamp,
        }


@dataclass
class SelfCritiqueSession:
    """A generate-evaluate-improve loop and its full history."""

    session_id: str
    input: Any
    criteria: list[QualityCriterion]
    max_iterations: int
    threshold: float
    status: SessionStatus = SessionStatus.RUNNING
    iterations: list[CritiqueIteration] = field(default_factory=list)
    termination_reason: TerminationReason | None = None
    error: str | None = None
    error_code: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def final_output(self) -> Any:
        return self.iterations[-1].candidate if self.iterations else None

    @property
    def final_score(self) -> float:
        return self.iterations[-1].weighted_score if self.iterations else 0.0

    @property
    def converged(self) -> bool:
        return self.termination_reason == TerminationReason.THRESHOLD_MET

    @property
    def quality_improvement(self) -> float:
        """Final weighted score minus the first one (0.0 with fewer than two iterations)."""
        if len(self.iterations) < 2:
            return 0.0
        return self.iterations[-1].weighted_score - self.iterations[0].weighted_score

    @property
    def duration(self) -> float | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "input": to_jsonable(self.input),
            "criteria": [c.to_dict() for c in self.criteria],
            "max_iterations": self.max_iterations,
            "threshold": self.threshold,
            "status": self.status.value,
            "iterations": [i.to_dict() for i in self.iterations],
            "termination_reason": self.termination_reason.value if self.termination_reason else None,
            "final_score": self.final_score,
            "quality_improvement": self.quality_improvement,
            "converged": self.converged,
            "error": self.error,
            "error_code": self.error_code,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


# =============================================================================
# Discussion
# =============================================================================


@dataclass(frozen=True)
class Participant:
    """A discussion member: its id, role, influence weight and the agent behind it."""

    participant_id: str
    role: str
    weight: float = 1.0
    perspective: str = ""
    capability: str | None = "text-generation"
    agent_id: str | None = None

    def __post_init__(self) -> None:
        if not self.participant_id:
            raise ValueError("participant_id is required")
        if self.weight <= 0:
            raise ValueError(f"participant '{self.participant_id}' weight must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "role": self.role,
            "weight": self.weight,
            "perspective": self.perspective,
            "capability": self.capability,
            "agent_id": self.agent_id,
        }


@dataclass
class Contribution:
    participant_id: str
    role: str
    content: str = ""
    agreement: float | None = None
    agrees: bool = False
    error: str | None = None
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "participant_id": self.participant_id,
            "role": self.role,
            "content": self.content,
            "agreement": self.agreement,
            "agrees": self.agrees,
            "error": self.error,
            "duration": self.duration,
        }


@dataclass
class DiscussionRound:
    round_number: int
    contributions: list[Contribution] = field(default_factory=list)
    synthesis: str = ""
    consensus_score: float = 0.0
    converged: bool = False
    strategy_used: ConsensusStrategy | None = None
    facilitator_error: str | None = None
    duration: float = 0.0

    @property
    def agreeing(self) -> list[str]:
        return [c.participant_id for c in self.contributions if c.agrees]

    def to_dict(self) -> dict[str, Any]:
        return {
            "round_number": self.round_number,
            "contributions": [c.to_dict() for c in self.contributions],
            "synthesis": self.synthesis,
            "consensus_score": self.consensus_score,
            "converged": self.converged,
            "strategy_used": self.strategy_used.value if self.strategy_used else None,
            "facilitator_error": self.facilitator_error,
            "duration": self.duration,
        }


@dataclass
class DiscussionSession:
    """Rounds of participant contributions moving toward consensus."""

    session_id: str
    topic: str
    participants: list[Participant]
    strategy: ConsensusStrategy
    max_rounds: int
    convergence_threshold: float
    facilitator_id: str | None = None
    status: SessionStatus = SessionStatus.RUNNING
    rounds: list[DiscussionRound] = field(default_factory=list)
    termination_reason: TerminationReason | None = None
    error: str | None = None
    error_code: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None

    @property
    def final_synthesis(self) -> str:
        return self.rounds[-1].synthesis if self.rounds else ""

    @property
    def consensus_score(self) -> float:
        return self.rounds[-1].consensus_score if self.rounds else 0.0

    @property
    def converged(self) -> bool:
        return self.termination_reason == TerminationReason.CONVERGED

    @property
    def duration(self) -> float | None:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def failure(self) -> ConsensusNotReachedError | None:
        """The non-fatal outcome of a discussion that ran out of rounds."""
        if self.termination_reason != TerminationReason.MAX_ROUNDS:
            return None
        return ConsensusNotReachedError(
            f"No consensus on '{self.topic}' after {len(self.rounds)} round(s)",
            rounds=len(self.rounds),
            consensus_score=self.consensus_score,
        )

    def participant_summaries(self) -> dict[str, dict[str, Any]]:
        """Per participant: contributions, failures, mean agreement and agreement rate."""
        summaries: dict[str, dict[str, Any]] = {}
        for participant in self.participants:
            contributions = [
                c
                for r in self.rounds
                for c in r.contributions
                if c.participant_id == participant.participant_id
            ]
            succeeded = [c for c in contributions if c.succeeded]
            scores = [c.agreement for c in succeeded if c.agreement is not None]
            summaries[participant.participant_id] = {
                "role": participant.role,
                "contributions": len(succeeded),
                "failures": len(contributions) - len(succeeded),
                "mean_agreement": sum(scores) / len(scores) if scores else 0.0,
                "agreement_rate": (
                    sum(1 for c in contributions if c.agrees) / len(contributions) if contributions else 0.0
                ),
            }
        return summaries

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "topic": self.topic,
            "participants": [p.to_dict() for p in self.participants],
            "strategy": self.strategy.value,
            "max_rounds": self.max_rounds,
            "convergence_threshold": self.convergence_threshold,
            "facilitator_id": self.facilitator_id,
            "status": self.status.value,
            "rounds": [r.to_dict() for r in self.rounds],
            "termination_reason": self.termination_reason.value if self.termination_reason else None,
            "final_synthesis": self.final_synthesis,
            "consensus_score": self.consensus_score,
            "converged": self.converged,
            "participant_summaries": self.participant_summaries(),
            "error": self.error,
            "error_code": self.error_code,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


__all__ = [
    "SessionStatus",
    "TerminationReason",
    "QualityCriterion",
    "CritiqueIteration",
    "SelfCritiqueSession",
    "Participant",
    "Contribution",
    "DiscussionRound",
    "DiscussionSession",
]
