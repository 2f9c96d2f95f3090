"""
Self-critique: an iterative generate -> evaluate -> improve loop.

Each iteration asks the generator for a candidate, asks the evaluator to
score it against weighted quality criteria, and stops once the weighted
score reaches the threshold or the iteration cap is hit. Otherwise the
next candidate is generated from an improvement prompt built from the
previous candidate and its critique.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from typing import Any

from ..agents.invoker import AgentInvoker
from ..agents.registry import AgentBinding, AgentCapability, AgentRegistry, AgentResult
from ..config.collaboration import MAX_CRITIQUE_ITERATIONS, CritiqueConfig
from ..errors import ValidationError, error_code_of
from ..events.bus import EventSink
from ..events.types import OrchestrationEventType
from ..retry import RetryPolicy
from ..storage.base import KeyValueStore
from ..telemetry import MetricRegistry
from ..templating import render_template
from .base import CollaborationEngine
from .parsing import output_text, parse_evaluation, weighted_score
from .types import (
    CritiqueIteration,
    QualityCriterion,
    SelfCritiqueSession,
    SessionStatus,
    TerminationReason,
)

logger = logging.getLogger(__name__)

DEFAULT_EVALUATION_TEMPLATE = """You are evaluating the quality of an output against specific criteria.

Output to evaluate:
{{ output }}

Criteria:
{{ criteria }}

Score every criterion from 0 to 1 (0 is poor, 1 is excellent), explain the
scores and suggest concrete improvements.

Respond with a JSON object in exactly this format:
{
  "scores": {"criterion_name": 0.85},
  "feedback": "Overall assessment...",
  "suggestions": ["suggestion 1", "suggestion 2"]
}"""

DEFAULT_IMPROVEMENT_TEMPLATE = """You are improving content based on critique feedback.

Original output:
{{ output }}

Critique feedback:
{{ feedback }}

Suggestions:
{{ suggestions }}

Scores from the previous evaluation:
{{ scores }}

Produce an improved version that addresses the feedback, focusing on the
lowest-scoring criteria while keeping what already works. Reply with the
improved content only."""


def format_criteria(criteria: Sequence[QualityCriterion]) -> str:
    lines = []
    for index, criterion in enumerate(criteria, start=1):
        line = f"{index}. {criterion.name} (weight {criterion.weight:g})"
        if criterion.description:
            line += f": {criterion.description}"
        lines.append(line)
    return "\n".join(lines)


def _criteria_met(
    scores: dict[str, float],
    criteria: Sequence[QualityCriterion],
) -> bool:
    return all(c.threshold is None or scores.get(c.name, 0.0) >= c.threshold for c in criteria)


class SelfCritiqueEngine(CollaborationEngine[SelfCritiqueSession]):
    """Runs self-critique sessions through the agent invoker.

    Example:
        ```python
        engine = SelfCritiqueEngine(agents, invoker)
        session = await engine.run(
            "Write a haiku about queues",
            [QualityCriterion("imagery", weight=2.0), QualityCriterion("form")],
            threshold=0.8,
        )
        print(session.termination_reason, session.final_output)
        ```
    """

    kind = "Critique session"
    key_prefix = "critique:"

    def __init__(
        self,
        agents: AgentRegistry,
        invoker: AgentInvoker,
        *,
        config: CritiqueConfig | None = None,
        events: EventSink | None = None,
        metrics: MetricRegistry | None = None,
        store: KeyValueStore | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(agents, invoker, events=events, metrics=metrics, store=store, retry=retry)
        self.config = config or CritiqueConfig()

    def _prepare(
        self,
        input: Any,
        criteria: Sequence[QualityCriterion],
        *,
        capability: str | None,
        agent_id: str | None,
        evaluator_capability: str | None,
        evaluator_agent_id: str | None,
        max_iterations: int | None,
        threshold: float | None,
        session_id: str | None,
    ) -> tuple[SelfCritiqueSession, AgentBinding, AgentBinding]:
        if not criteria:
            raise ValidationError("Self-critique needs at least one quality criterion")
        names = [c.name for c in criteria]
        if len(set(names)) != len(names):
            raise ValidationError("Quality criterion names must be unique")
        if max_iterations is not None and max_iterations < 1:
            raise ValidationError("max_iterations must be at least 1")
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            raise ValidationError("threshold must be between 0.0 and 1.0")

        capability = capability or (None if agent_id else AgentCapability.TEXT_GENERATION.value)
        generator = self.agents.resolve(capability, agent_id=agent_id)
        if evaluator_capability or evaluator_agent_id:
            evaluator = self.agents.resolve(evaluator_capability, agent_id=evaluator_agent_id)
        else:
            evaluator = generator

        session_id = session_id or f"critique-{uuid.uuid4().hex[:12]}"
        if session_id in self._sessions:
            raise ValidationError(f"Critique session '{session_id}' already exists")
        session = SelfCritiqueSession(
            session_id=session_id,
            input=input,
            criteria=list(criteria),
            max_iterations=min(max_iterations or self.config.max_iterations, MAX_CRITIQUE_ITERATIONS),
            threshold=self.config.quality_threshold if threshold is None else threshold,
        )
        self._sessions[session_id] = session
        return session, generator, evaluator

    async def run(
        self,
        input: Any,
        criteria: Sequence[QualityCriterion],
        *,
        capability: str | None = None,
        agent_id: str | None = None,
        evaluator_capability: str | None = None,
        evaluator_agent_id: str | None = None,
        max_iterations: int | None = None,
        threshold: float | None = None,
        evaluation_template: str | None = None,
        improvement_template: str | None = None,
        session_id: str | None = None,
    ) -> SelfCritiqueSession:
        """Run a session to completion and return it.

        ``max_iterations`` is capped at ``MAX_CRITIQUE_ITERATIONS`` whatever
        the caller asks for. Agent failures end the session with reason
        ``failed`` rather than raising.

        Raises:
            ValidationError: bad criteria or limits
            AgentNotFoundError: the generator or evaluator cannot be resolved
        """
        session, generator, evaluator = self._prepare(
            input,
            criteria,
            capability=capability,
            agent_id=agent_id,
            evaluator_capability=evaluator_capability,
            evaluator_agent_id=evaluator_agent_id,
            max_iterations=max_iterations,
            threshold=threshold,
            session_id=session_id,
        )
        return await self._execute(session, generator, evaluator, evaluation_template, improvement_template)

    async def start(self, input: Any, criteria: Sequence[QualityCriterion], **kwargs: Any) -> str:
        """Validate and run a session in the background. Returns its id."""
        evaluation_template = kwargs.pop("evaluation_template", None)
        improvement_template = kwargs.pop("improvement_template", None)
        session, generator, evaluator = self._prepare(
            input,
            criteria,
            capability=kwargs.pop("capability", None),
            agent_id=kwargs.pop("agent_id", None),
            evaluator_capability=kwargs.pop("evaluator_capability", None),
            evaluator_agent_id=kwargs.pop("evaluator_agent_id", None),
            max_iterations=kwargs.pop("max_iterations", None),
            threshold=kwargs.pop("threshold", None),
            session_id=kwargs.pop("session_id", None),
        )
        if kwargs:
            raise TypeError(f"Unexpected arguments: {', '.join(kwargs)}")
        self._spawn(
            session.session_id,
            self._execute(session, generator, evaluator, evaluation_template, improvement_template),
        )
        return session.session_id

    async def _execute(
        self,
        session: SelfCritiqueSession,
        generator: AgentBinding,
        evaluator: AgentBinding,
        evaluation_template: str | None,
        improvement_template: str | None,
    ) -> SelfCritiqueSession:
        sid = session.session_id
        deadline = time.monotonic() + self.config.session_timeout if self.config.session_timeout else None
        self._metrics.inc("critique.sessions")
        logger.info(f"Starting self-critique {sid} (max {session.max_iterations} iterations, threshold {session.threshold})")
        await self._emitter.emit(
            OrchestrationEventType.CRITIQUE_STARTED,
            sid,
            max_iterations=session.max_iterations,
            threshold=session.threshold,
            criteria=[c.name for c in session.criteria],
        )
        await self._persist(session)

        try:
            for number in range(1, session.max_iterations + 1):
                started = time.monotonic()
                if number == 1:
                    prompt = session.input
                else:
                    prompt = self._improvement_prompt(session.iterations[-1], improvement_template)

                candidate = await self._call(generator, prompt, sid, number, "generate")
                if isinstance(candidate, AgentResult):
                    candidate = candidate.output

                evaluation_prompt = render_template(
                    evaluation_template or DEFAULT_EVALUATION_TEMPLATE,
                    {"output": output_text(candidate), "criteria": format_criteria(session.criteria)},
                )
                verdict = await self._call(
                    evaluator,
                    evaluation_prompt,
                    sid,
                    number,
                    "evaluate",
                    candidate=candidate,
                    criteria=[c.to_dict() for c in session.criteria],
                )
                scores, feedback, suggestions, parsed = parse_evaluation(verdict, session.criteria)
                score = weighted_score(scores, session.criteria)
                meets = score >= session.threshold
                if meets and self.config.require_criterion_thresholds:
                    meets = _criteria_met(scores, session.criteria)

                iteration = CritiqueIteration(
                    iteration=number,
                    candidate=candidate,
                    scores=scores,
                    weighted_score=score,
                    critique=feedback,
                    suggestions=suggestions,
                    meets_threshold=meets,
                    parsed=parsed,
                    duration=time.monotonic() - started,
                )
                session.iterations.append(iteration)
                logger.debug(f"Self-critique {sid} iteration {number}: score {score:.3f}")
                await self._emitter.emit(
                    OrchestrationEventType.CRITIQUE_ITERATION,
                    sid,
                    iteration=number,
                    weighted_score=score,
                    scores=scores,
                    meets_threshold=meets,
                )
                await self._persist(session)

                if meets:
                    session.termination_reason = TerminationReason.THRESHOLD_MET
                    break
                if number >= session.max_iterations:
                    session.termination_reason = TerminationReason.MAX_ITERATIONS
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    session.termination_reason = TerminationReason.TIMEOUT
                    break
        except asyncio.CancelledError:
            self._close(session, SessionStatus.CANCELLED, TerminationReason.CANCELLED, error="Session cancelled")
            await self._persist(session)
            raise
        except Exception as exc:
            self._close(
                session,
                SessionStatus.FAILED,
                TerminationReason.FAILED,
                error=str(exc),
                error_code=error_code_of(exc).value,
            )
            logger.warning(f"Self-critique {sid} failed after {len(session.iterations)} iteration(s): {exc}")
            await self._emitter.emit(
                OrchestrationEventType.CRITIQUE_FAILED,
                sid,
                error=str(exc),
                error_code=session.error_code,
                iterations=len(session.iterations),
            )
            await self._persist(session)
            return session

        self._close(session, SessionStatus.COMPLETED, session.termination_reason)
        logger.info(
            f"Self-critique {sid} finished: {session.termination_reason.value} after "
            f"{len(session.iterations)} iteration(s), score {session.final_score:.3f}"
        )
        await self._emitter.emit(
            OrchestrationEventType.CRITIQUE_COMPLETED,
            sid,
            termination_reason=session.termination_reason.value,
            iterations=len(session.iterations),
            final_score=session.final_score,
            quality_improvement=session.quality_improvement,
        )
        await self._persist(session)
        return session

    async def _call(
        self,
        binding: AgentBinding,
        input: Any,
        session_id: str,
        iteration: int,
        phase: str,
        **extra: Any,
    ) -> Any:
        return await self.invoker.invoke(
            binding,
            input,
            {"session_id": session_id, "iteration": iteration, "phase": phase, **extra},
            timeout=self.config.call_timeout,
            retry=self.retry,
            priority=self.config.priority,
            name=f"{session_id}:{phase}:{iteration}",
        )

    @staticmethod
    def _improvement_prompt(previous: CritiqueIteration, template: str | None) -> str:
        scores = "\n".join(f"- {name}: {score * 100:.1f}%" for name, score in previous.scores.items())
        suggestions = "\n".join(f"- {s}" for s in previous.suggestions) or previous.critique
        return render_template(
            template or DEFAULT_IMPROVEMENT_TEMPLATE,
            {
                "output": output_text(previous.candidate),
                "feedback": previous.critique,
                "suggestions": suggestions,
                "scores": scores,
            },
        )

    def _close(
        self,
        session: SelfCritiqueSession,
        status: SessionStatus,
        reason: TerminationReason | None,
        *,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        session.status = status
        session.termination_reason = reason
        session.error = error
        session.error_code = error_code
        session.completed_at = time.time()
        self._metrics.inc(f"critique.{reason.value if reason else status.value}")
        self._metrics.observe("critique.iterations", len(session.iterations))
        if session.duration is not None:
            self._metrics.observe("critique.duration", session.duration)
        if len(session.iterations) > 1:
            self._metrics.observe("critique.quality_improvement", session.quality_improvement)

    def stats(self) -> dict[str, Any]:
        by_reason: dict[str, int] = {}
        for session in self._sessions.values():
            key = session.termination_reason.value if session.termination_reason else session.status.value
            by_reason[key] = by_reason.get(key, 0) + 1
        iterations = self._metrics.histogram("critique.iterations")
        return {
            "sessions": len(self._sessions),
            "running": len(self._tasks),
            "by_reason": by_reason,
            "mean_iterations": iterations.mean,
            "mean_quality_improvement": self._metrics.histogram("critique.quality_improvement").mean,
        }


__all__ = [
    "SelfCritiqueEngine",
    "DEFAULT_EVALUATION_TEMPLATE",
    "DEFAULT_IMPROVEMENT_TEMPLATE",
    "format_criteria",
]
