"""
Parsing of free-form agent output into scores and agreement signals.

Agents answer evaluation, contribution and synthesis prompts with text that
usually (but not always) contains JSON. Everything here is tolerant: when
nothing can be parsed, a neutral value is returned.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping, Sequence
from typing import Any

from ..agents.registry import AgentResult
from .types import QualityCriterion

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.5

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

_AGREEMENT_PATTERNS = [
    re.compile(r"agreement\s*(?:level|score)?\s*[:=]?\s*(\d+(?:\.\d+)?)\s*(/\s*10)?", re.IGNORECASE),
    re.compile(r"(\d+(?:\.\d+)?)\s*(/\s*10)?\s*agreement", re.IGNORECASE),
    re.compile(r"agree\s*(?:at|with)?\s*(?:a\s*)?\(?\s*(\d+(?:\.\d+)?)\s*(/\s*10)?", re.IGNORECASE),
]

_AGREE_KEYS = ("agrees", "agree", "converged")
_AGREEMENT_KEYS = ("agreement", "agreement_score", "agreementScore")
_CONSENSUS_KEYS = ("consensus", "consensus_score", "consensusScore")
_SCORE_KEYS = ("scores", "criteria_scores", "criteriaScores")


def clamp_score(value: Any, *, out_of_ten: bool = False) -> float:
    """Coerce to a float in [0, 1].

    With ``out_of_ten`` the value is always on a 0-10 scale; otherwise only
    values above 1 are read that way.
    """
    score = float(value)
    if out_of_ten or score > 1.0:
        score = score / 10.0
    return min(max(score, 0.0), 1.0)


def output_text(output: Any) -> str:
    if isinstance(output, AgentResult):
        output = output.output
    if isinstance(output, str):
        return output
    if output is None:
        return ""
    try:
        return json.dumps(output, default=str)
    except (TypeError, ValueError):
        return str(output)


def extract_json(output: Any) -> dict[str, Any] | None:
    """Return the JSON object in an agent output, or None."""
    if isinstance(output, AgentResult):
        output = output.output
    if isinstance(output, Mapping):
        return dict(output)
    if not isinstance(output, str):
        return None
    match = _JSON_OBJECT.search(output)
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _first(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def parse_agreement(output: Any) -> tuple[float, bool | None]:
    """Extract ``(agreement score, explicit agree flag)`` from a contribution.

    Understands JSON (``{"agreement": 0.8, "agrees": true}``) and phrases such
    as ``agreement: 8/10`` or ``I agree (0.8)``. The score defaults to 0.5
    and the flag to None when the output says nothing.
    """
    data = extract_json(output)
    if data is not None:
        flag = _first(data, _AGREE_KEYS)
        raw = _first(data, _AGREEMENT_KEYS)
        try:
            score = clamp_score(raw) if raw is not None else None
        except (TypeError, ValueError):
            score = None
        if score is not None or isinstance(flag, bool):
            return (score if score is not None else NEUTRAL_SCORE), (flag if isinstance(flag, bool) else None)

    text = output_text(output)
    for pattern in _AGREEMENT_PATTERNS:
        match = pattern.search(text)
        if match:
            return clamp_score(match.group(1), out_of_ten=match.group(2) is not None), None
    return NEUTRAL_SCORE, None


def contribution_content(output: Any) -> str:
    """The human-readable part of a contribution."""
    data = extract_json(output)
    if data is not None:
        for key in ("content", "contribution", "text", "response"):
            if isinstance(data.get(key), str):
                return data[key]
    return output_text(output)


def parse_evaluation(
    output: Any,
    criteria: Sequence[QualityCriterion],
) -> tuple[dict[str, float], str, list[str], bool]:
    """Read an evaluator answer into ``(scores, feedback, suggestions, parsed)``.

    A criterion the evaluator did not score gets 0.0. When no scores can be
    found at all, every criterion gets the neutral 0.5 and ``parsed`` is False.
    """
    data = extract_json(output)
    raw_scores = _first(data, _SCORE_KEYS) if data is not None else None
    if not isinstance(raw_scores, Mapping):
        logger.warning("Could not parse evaluation scores; using neutral scores")
        return (
            {c.name: NEUTRAL_SCORE for c in criteria},
            "Unable to parse evaluation. Please review the output manually.",
            [],
            False,
        )

    scores: dict[str, float] = {}
    for criterion in criteria:
        try:
            scores[criterion.name] = clamp_score(raw_scores.get(criterion.name, 0.0))
        except (TypeError, ValueError):
            scores[criterion.name] = 0.0
    feedback = data.get("feedback") or data.get("critique") or ""
    suggestions = data.get("suggestions") or []
    if isinstance(suggestions, str):
        suggestions = [suggestions]
    return scores, str(feedback), [str(s) for s in suggestions], True


def weighted_score(scores: Mapping[str, float], criteria: Sequence[QualityCriterion]) -> float:
    total = sum(c.weight for c in criteria)
    if total <= 0:
        return 0.0
    return sum(scores.get(c.name, 0.0) * c.weight for c in criteria) / total


def parse_synthesis(output: Any) -> tuple[str, float | None, bool | None]:
    """Read a facilitator answer into ``(synthesis, consensus score, explicit agree flag)``."""
    data = extract_json(output)
    if data is None:
        return output_text(output), None, None
    synthesis = data.get("synthesis")
    raw = _first(data, _CONSENSUS_KEYS)
    try:
        consensus = clamp_score(raw) if raw is not None else None
    except (TypeError, ValueError):
        consensus = None
    flag = _first(data, _AGREE_KEYS)
    return (
        synthesis if isinstance(synthesis, str) else output_text(output),
        consensus,
        flag if isinstance(flag, bool) else None,
    )


__all__ = [
    "NEUTRAL_SCORE",
    "clamp_score",
    "output_text",
    "extract_json",
    "parse_agreement",
    "contribution_content",
    "parse_evaluation",
    "weighted_score",
    "parse_synthesis",
]
