"""
Multi-agent collaboration: self-critique loops and consensus discussions.
"""

from .base import SESSION_RETENTION, CollaborationEngine
from .discussion import DiscussionEngine, evaluate_consensus
from .parsing import clamp_score, parse_agreement, parse_evaluation, parse_synthesis, weighted_score
from .self_critique import SelfCritiqueEngine, format_criteria
from .types import (
    Contribution,
    CritiqueIteration,
    DiscussionRound,
    DiscussionSession,
    Participant,
    QualityCriterion,
    SelfCritiqueSession,
    SessionStatus,
    TerminationReason,
)

__all__ = [
    # Model
    "SessionStatus",
    "TerminationReason",
    "QualityCriterion",
    "CritiqueIteration",
    "SelfCritiqueSession",
    "Participant",
    "Contribution",
    "DiscussionRound",
    "DiscussionSession",
    # Engines
    "CollaborationEngine",
    "SelfCritiqueEngine",
    "DiscussionEngine",
    "SESSION_RETENTION",
    "evaluate_consensus",
    "format_criteria",
    # Parsing
    "clamp_score",
    "parse_agreement",
    "parse_evaluation",
    "parse_synthesis",
    "weighted_score",
]
