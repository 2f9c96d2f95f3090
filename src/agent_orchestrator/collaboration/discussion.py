"""
Discussion: rounds of participant contributions moving toward consensus.

Per round every participant contributes (concurrently, bounded by
``max_parallel_participants`` and by the execution queue), a synthesis
combines the contributions, and the consensus strategy decides whether
the round converged:

- unanimous: every participant agrees; a failed participant counts as dissent
- majority: strictly more than half of all participants agree
- weighted: the weight of agreeing participants over the total weight
  reaches ``weighted_threshold``
- facilitator: the facilitator's judgment alone decides; when it gives
  none, ``facilitator_fallback`` decides that round

A participant agrees when its agreement score reaches
``convergence_threshold``, unless its answer carries an explicit
``agrees`` flag.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from typing import Any

from ..agents.invoker import AgentInvoker
from ..agents.registry import AgentBinding, AgentRegistry
from ..config.base import ConsensusStrategy
from ..config.collaboration import DiscussionConfig
from ..errors import ErrorCode, ValidationError, error_code_of
from ..events.bus import EventSink
from ..events.types import OrchestrationEventType
from ..retry import RetryPolicy
from ..storage.base import KeyValueStore
from ..telemetry import MetricRegistry
from ..templating import render_template
from .base import CollaborationEngine
from .parsing import contribution_content, parse_agreement, parse_synthesis
from .types import (
    Contribution,
    DiscussionRound,
    DiscussionSession,
    Participant,
    SessionStatus,
    TerminationReason,
)

logger = logging.getLogger(__name__)

DEFAULT_PARTICIPANT_TEMPLATE = """You are participating in a discussion as {{ role }}.
Your perspective: {{ perspective }}

Topic: {{ topic }}

Round {{ round }}.
{{ previous }}

Contribute considering:
1. The topic and overall goal
2. The other participants' points, if any
3. Your own perspective as {{ role }}
4. Areas of agreement and disagreement

Be constructive and specific, and aim to move the discussion toward consensus.
End with your agreement level with the current direction, e.g. "agreement: 7/10"."""

DEFAULT_SYNTHESIS_TEMPLATE = """You are the facilitator synthesizing contributions from several participants.

Topic: {{ topic }}

Round {{ round }} contributions:
{{ contributions }}

Identify common ground and key disagreements, synthesize one coherent
position, and assess the overall level of consensus.

Respond with JSON:
{
  "synthesis": "The synthesized position...",
  "consensus": 0.75,
  "agrees": true,
  "disagreements": ["point 1"]
}"""


def _format_contributions(contributions: Sequence[Contribution]) -> str:
    return "\n\n".join(f"{c.role} ({c.participant_id}): {c.content}" for c in contributions if c.succeeded)


def evaluate_consensus(
    strategy: ConsensusStrategy,
    participants: Sequence[Participant],
    contributions: Sequence[Contribution],
    *,
    weighted_threshold: float = 0.5,
) -> tuple[bool, float]:
    """Apply a participant-signal strategy. Returns ``(converged, consensus score)``.

    Participants without a successful contribution count as not agreeing.
    """
    if strategy == ConsensusStrategy.FACILITATOR:
        raise ValueError("facilitator consensus is decided by the facilitator's judgment")
    if not participants:
        return False, 0.0
    agreeing = {c.participant_id for c in contributions if c.succeeded and c.agrees}
    count = sum(1 for p in participants if p.participant_id in agreeing)
    total = len(participants)

    if strategy == ConsensusStrategy.UNANIMOUS:
        scores = {c.participant_id: c.agreement or 0.0 for c in contributions if c.succeeded}
        lowest = min((scores.get(p.participant_id, 0.0) for p in participants), default=0.0)
        return count == total, lowest
    if strategy == ConsensusStrategy.MAJORITY:
        return count * 2 > total, count / total

    total_weight = sum(p.weight for p in participants)
    agreed_weight = sum(p.weight for p in participants if p.participant_id in agreeing)
    fraction = agreed_weight / total_weight if total_weight else 0.0
    return fraction >= weighted_threshold, fraction


class DiscussionEngine(CollaborationEngine[DiscussionSession]):
    """Runs discussion sessions through the agent invoker.

    Example:
        ```python
        engine = DiscussionEngine(agents, invoker)
        session = await engine.run(
            [Participant("arch", "architect"), Participant("sec", "security reviewer")],
            "Should the cache be write-through?",
            strategy="majority",
        )
        if (error := session.failure()) is not None:
            print(error)
        ```
    """

    kind = "Discussion session"
    key_prefix = "discussion:"

    def __init__(
        self,
        agents: AgentRegistry,
        invoker: AgentInvoker,
        *,
        config: DiscussionConfig | None = None,
        events: EventSink | None = None,
        metrics: MetricRegistry | None = None,
        store: KeyValueStore | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        super().__init__(agents, invoker, events=events, metrics=metrics, store=store, retry=retry)
        self.config = config or DiscussionConfig()

    def _prepare(
        self,
        participants: Sequence[Participant],
        topic: str,
        *,
        facilitator: Participant | None,
        strategy: ConsensusStrategy | str | None,
        max_rounds: int | None,
        convergence_threshold: float | None,
        session_id: str | None,
    ) -> tuple[DiscussionSession, dict[str, AgentBinding], AgentBinding | None]:
        if not topic or not topic.strip():
            raise ValidationError("Discussion topic is required")
        if not participants:
            raise ValidationError("Discussion needs at least one participant")
        if len(participants) > self.config.max_participants:
            raise ValidationError(
                f"Discussion has {len(participants)} participants; the limit is {self.config.max_participants}"
            )
        ids = [p.participant_id for p in participants]
        if len(set(ids)) != len(ids):
            raise ValidationError("Participant ids must be unique")
        strategy = ConsensusStrategy(strategy or self.config.strategy)
        if strategy == ConsensusStrategy.FACILITATOR and facilitator is None:
            raise ValidationError("The facilitator strategy requires a facilitator")
        if max_rounds is not None and max_rounds < 1:
            raise ValidationError("max_rounds must be at least 1")
        if convergence_threshold is not None and not 0.0 <= convergence_threshold <= 1.0:
            raise ValidationError("convergence_threshold must be between 0.0 and 1.0")

        bindings = {p.participant_id: self.agents.resolve(p.capability, agent_id=p.agent_id) for p in participants}
        facilitator_binding = (
            self.agents.resolve(facilitator.capability, agent_id=facilitator.agent_id) if facilitator else None
        )

        session_id = session_id or f"discussion-{uuid.uuid4().hex[:12]}"
        if session_id in self._sessions:
            raise ValidationError(f"Discussion session '{session_id}' already exists")
        session = DiscussionSession(
            session_id=session_id,
            topic=topic,
            participants=list(participants),
            strategy=strategy,
            max_rounds=max_rounds or self.config.max_rounds,
            convergence_threshold=(
                self.config.convergence_threshold if convergence_threshold is None else convergence_threshold
            ),
            facilitator_id=facilitator.participant_id if facilitator else None,
        )
        self._sessions[session_id] = session
        return session, bindings, facilitator_binding

    async def run(
        self,
        participants: Sequence[Participant],
        topic: str,
        *,
        facilitator: Participant | None = None,
        strategy: ConsensusStrategy | str | None = None,
        max_rounds: int | None = None,
        convergence_threshold: float | None = None,
        participant_template: str | None = None,
        synthesis_template: str | None = None,
        session_id: str | None = None,
    ) -> DiscussionSession:
        """Run a discussion to completion and return it.

        Running out of rounds is not an error: the session completes with
        reason ``max_rounds`` and ``session.failure()`` reports the
        ``ConsensusNotReachedError``.

        Raises:
            ValidationError: bad participants, topic or limits
            AgentNotFoundError: a participant's agent cannot be resolved
        """
        session, bindings, facilitator_binding = self._prepare(
            participants,
            topic,
            facilitator=facilitator,
            strategy=strategy,
            max_rounds=max_rounds,
            convergence_threshold=convergence_threshold,
            session_id=session_id,
        )
        return await self._execute(session, bindings, facilitator_binding, participant_template, synthesis_template)

    async def start(self, participants: Sequence[Participant], topic: str, **kwargs: Any) -> str:
        """Validate and run a discussion in the background. Returns its id."""
        participant_template = kwargs.pop("participant_template", None)
        synthesis_template = kwargs.pop("synthesis_template", None)
        session, bindings, facilitator_binding = self._prepare(
            participants,
            topic,
            facilitator=kwargs.pop("facilitator", None),
            strategy=kwargs.pop("strategy", None),
            max_rounds=kwargs.pop("max_rounds", None),
            convergence_threshold=kwargs.pop("convergence_threshold", None),
            session_id=kwargs.pop("session_id", None),
        )
        if kwargs:
            raise TypeError(f"Unexpected arguments: {', '.join(kwargs)}")
        self._spawn(
            session.session_id,
            self._execute(session, bindings, facilitator_binding, participant_template, synthesis_template),
        )
        return session.session_id

    async def _execute(
        self,
        session: DiscussionSession,
        bindings: dict[str, AgentBinding],
        facilitator: AgentBinding | None,
        participant_template: str | None,
        synthesis_template: str | None,
    ) -> DiscussionSession:
        sid = session.session_id
        deadline = time.monotonic() + self.config.session_timeout if self.config.session_timeout else None
        self._metrics.inc("discussion.sessions")
        logger.info(
            f"Starting discussion {sid} with {len(session.participants)} participants "
            f"({session.strategy.value}, max {session.max_rounds} rounds)"
        )
        await self._emitter.emit(
            OrchestrationEventType.DISCUSSION_STARTED,
            sid,
            topic=session.topic,
            participants=[p.participant_id for p in session.participants],
            strategy=session.strategy.value,
            max_rounds=session.max_rounds,
        )
        await self._persist(session)

        try:
            for number in range(1, session.max_rounds + 1):
                discussion_round = await self._round(
                    session, number, bindings, facilitator, participant_template, synthesis_template
                )
                session.rounds.append(discussion_round)
                await self._persist(session)

                if not any(c.succeeded for c in discussion_round.contributions):
                    error = f"Every participant failed in round {number}"
                    self._close(session, SessionStatus.FAILED, TerminationReason.FAILED, error=error)
                    logger.warning(f"Discussion {sid} failed: {error}")
                    await self._emitter.emit(
                        OrchestrationEventType.DISCUSSION_FAILED,
                        sid,
                        error=error,
                        error_code=ErrorCode.AGENT_EXECUTION.value,
                        rounds=number,
                    )
                    await self._persist(session)
                    return session

                if discussion_round.converged:
                    session.termination_reason = TerminationReason.CONVERGED
                    await self._emitter.emit(
                        OrchestrationEventType.DISCUSSION_CONVERGED,
                        sid,
                        round=number,
                        consensus_score=discussion_round.consensus_score,
                    )
                    break
                if deadline is not None and time.monotonic() >= deadline:
                    session.termination_reason = TerminationReason.TIMEOUT
                    break
            else:
                session.termination_reason = TerminationReason.MAX_ROUNDS
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
            logger.exception(f"Discussion {sid} failed")
            await self._emitter.emit(
                OrchestrationEventType.DISCUSSION_FAILED,
                sid,
                error=str(exc),
                error_code=session.error_code,
                rounds=len(session.rounds),
            )
            await self._persist(session)
            return session

        failure = session.failure()
        self._close(
            session,
            SessionStatus.COMPLETED,
            session.termination_reason,
            error=failure.message if failure else None,
            error_code=failure.code.value if failure else None,
        )
        if failure is not None:
            logger.warning(f"Discussion {sid}: {failure.message}")
            await self._emitter.emit(
                OrchestrationEventType.DISCUSSION_CONSENSUS_NOT_REACHED,
                sid,
                rounds=len(session.rounds),
                consensus_score=session.consensus_score,
            )
        else:
            logger.info(f"Discussion {sid} finished: {session.termination_reason.value} after {len(session.rounds)} round(s)")
        await self._emitter.emit(
            OrchestrationEventType.DISCUSSION_COMPLETED,
            sid,
            termination_reason=session.termination_reason.value,
            rounds=len(session.rounds),
            consensus_score=session.consensus_score,
            converged=session.converged,
            duration=session.duration,
        )
        await self._persist(session)
        return session

    async def _round(
        self,
        session: DiscussionSession,
        number: int,
        bindings: dict[str, AgentBinding],
        facilitator: AgentBinding | None,
        participant_template: str | None,
        synthesis_template: str | None,
    ) -> DiscussionRound:
        sid = session.session_id
        started = time.monotonic()
        await self._emitter.emit(OrchestrationEventType.DISCUSSION_ROUND_STARTED, sid, round=number)

        previous = session.rounds[-1] if session.rounds else None
        limit = asyncio.Semaphore(self.config.max_parallel_participants)

        async def contribute(participant: Participant) -> Contribution:
            async with limit:
                return await self._contribute(
                    session, participant, bindings[participant.participant_id], number, previous, participant_template
                )

        contributions = list(await asyncio.gather(*(contribute(p) for p in session.participants)))
        for contribution in contributions:
            await self._emitter.emit(
                OrchestrationEventType.DISCUSSION_CONTRIBUTION,
                sid,
                round=number,
                participant_id=contribution.participant_id,
                agreement=contribution.agreement,
                agrees=contribution.agrees,
                error=contribution.error,
            )

        discussion_round = DiscussionRound(round_number=number, contributions=contributions)
        judgment: tuple[float | None, bool | None] = (None, None)
        if facilitator is not None and any(c.succeeded for c in contributions):
            try:
                output = await self.invoker.invoke(
                    facilitator,
                    render_template(
                        synthesis_template or DEFAULT_SYNTHESIS_TEMPLATE,
                        {"topic": session.topic, "round": number, "contributions": _format_contributions(contributions)},
                    ),
                    {"session_id": sid, "round": number, "phase": "synthesize"},
                    timeout=self.config.call_timeout,
                    retry=self.retry,
                    priority=self.config.priority,
                    name=f"{sid}:synthesize:{number}",
                )
            except Exception as exc:
                discussion_round.facilitator_error = str(exc)
                logger.warning(f"Discussion {sid} round {number}: facilitator failed: {exc}")
            else:
                discussion_round.synthesis, score, flag = parse_synthesis(output)
                judgment = (score, flag)
        if not discussion_round.synthesis:
            discussion_round.synthesis = _format_contributions(contributions)

        self._decide(session, discussion_round, judgment)
        discussion_round.duration = time.monotonic() - started
        self._metrics.inc("discussion.rounds")
        await self._emitter.emit(
            OrchestrationEventType.DISCUSSION_ROUND_COMPLETED,
            sid,
            round=number,
            consensus_score=discussion_round.consensus_score,
            converged=discussion_round.converged,
            strategy=discussion_round.strategy_used.value if discussion_round.strategy_used else None,
        )
        return discussion_round

    async def _contribute(
        self,
        session: DiscussionSession,
        participant: Participant,
        binding: AgentBinding,
        number: int,
        previous: DiscussionRound | None,
        template: str | None,
    ) -> Contribution:
        if previous is None:
            context = "This is the first round of discussion."
        else:
            others = _format_contributions(
                [c for c in previous.contributions if c.participant_id != participant.participant_id]
            )
            context = f"Previous round synthesis:\n{previous.synthesis}\n\nPrevious contributions:\n{others}"
        prompt = render_template(
            template or DEFAULT_PARTICIPANT_TEMPLATE,
            {
                "role": participant.role,
                "perspective": participant.perspective or "General perspective",
                "topic": session.topic,
                "round": number,
                "previous": context,
            },
        )
        started = time.monotonic()
        try:
            output = await self.invoker.invoke(
                binding,
                prompt,
                {
                    "session_id": session.session_id,
                    "participant_id": participant.participant_id,
                    "role": participant.role,
                    "round": number,
                    "phase": "contribute",
                },
                timeout=self.config.call_timeout,
                retry=self.retry,
                priority=self.config.priority,
                name=f"{session.session_id}:{participant.participant_id}:{number}",
            )
        except Exception as exc:
            logger.warning(f"Discussion {session.session_id}: participant {participant.participant_id} failed: {exc}")
            return Contribution(
                participant_id=participant.participant_id,
                role=participant.role,
                error=str(exc),
                duration=time.monotonic() - started,
            )
        score, flag = parse_agreement(output)
        return Contribution(
            participant_id=participant.participant_id,
            role=participant.role,
            content=contribution_content(output),
            agreement=score,
            agrees=flag if flag is not None else score >= session.convergence_threshold,
            duration=time.monotonic() - started,
        )

    def _decide(
        self,
        session: DiscussionSession,
        discussion_round: DiscussionRound,
        judgment: tuple[float | None, bool | None],
    ) -> None:
        strategy = session.strategy
        if strategy == ConsensusStrategy.FACILITATOR:
            score, flag = judgment
            if score is not None or flag is not None:
                discussion_round.strategy_used = strategy
                discussion_round.consensus_score = score if score is not None else (1.0 if flag else 0.0)
                discussion_round.converged = (
                    flag if flag is not None else discussion_round.consensus_score >= session.convergence_threshold
                )
                return
            fallback = self.config.facilitator_fallback
            if fallback is None:
                discussion_round.strategy_used = strategy
                discussion_round.consensus_score = 0.0
                discussion_round.converged = False
                return
            logger.info(
                f"Discussion {session.session_id} round {discussion_round.round_number}: "
                f"no facilitator judgment, deciding by {fallback.value}"
            )
            strategy = fallback

        converged, score = evaluate_consensus(
            strategy,
            session.participants,
            discussion_round.contributions,
            weighted_threshold=self.config.weighted_threshold,
        )
        discussion_round.strategy_used = strategy
        discussion_round.converged = converged
        discussion_round.consensus_score = score

    def _close(
        self,
        session: DiscussionSession,
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
        self._metrics.inc(f"discussion.{reason.value if reason else status.value}")
        self._metrics.observe("discussion.rounds_per_session", len(session.rounds))
        if session.duration is not None:
            self._metrics.observe("discussion.duration", session.duration)

    def stats(self) -> dict[str, Any]:
        by_reason: dict[str, int] = {}
        for session in self._sessions.values():
            key = session.termination_reason.value if session.termination_reason else session.status.value
            by_reason[key] = by_reason.get(key, 0) + 1
        return {
            "sessions": len(self._sessions),
            "running": len(self._tasks),
            "by_reason": by_reason,
            "mean_rounds": self._metrics.histogram("discussion.rounds_per_session").mean,
        }


__all__ = [
    "DiscussionEngine",
    "evaluate_consensus",
    "DEFAULT_PARTICIPANT_TEMPLATE",
    "DEFAULT_SYNTHESIS_TEMPLATE",
]
