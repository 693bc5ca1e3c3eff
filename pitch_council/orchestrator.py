"""Evaluation orchestration: clarify, critic/defender rounds or iterations, final decision.

One orchestrator owns one EvaluationSession. Turns run strictly in sequence;
the only suspension points are provider calls and the optional pacing delay.
Stopping is cooperative and checked between turns, never mid-call.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from config.config_loader import OrchestratorConfig
from pitch_council.costing import BudgetExceededError, CostEstimator
from pitch_council.extraction import extract_final_pitch, extract_pitch, extract_readiness, extract_verdict
from pitch_council.models import (
    AgentRole,
    Completion,
    ConversationTurn,
    Decision,
    EvaluationResult,
    EvaluationSession,
    HaltReason,
    InvestmentVerdict,
    PartialResult,
    SessionSnapshot,
    SessionStatus,
)
from pitch_council.providers.base import AIProvider
from pitch_council.roles import RoleRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, ConversationTurn, float], None]
PartialCallback = Callable[[PartialResult], None]
CompleteCallback = Callable[[EvaluationResult], None]
HaltCallback = Callable[[HaltReason], None]

PENDING_REASONING = "Evaluation in progress... Agents are refining the concept and addressing concerns."

MODES = ("debate", "iterative")


class EvaluationStateError(Exception):
    """Raised when an operation is not valid in the session's current state."""


def pending_verdict(round_number: int) -> InvestmentVerdict:
    """Placeholder verdict for partial results; confidence grows with the round, capped at 85."""
    return InvestmentVerdict(
        decision=Decision.PENDING,
        confidence=min(50 + 10 * (round_number - 1), 85),
        reasoning=PENDING_REASONING,
    )


def format_history(turns: Sequence[ConversationTurn]) -> str:
    """Render turns as the 'conversation so far' block of a prompt ("" when empty)."""
    spoken = [t for t in turns if t.role is not AgentRole.SYSTEM]
    if not spoken:
        return ""
    lines = ["Conversation so far:"]
    lines += [f"{t.role.value} (round {t.round_number}): {t.content}" for t in spoken]
    return "\n\n".join(lines) + "\n\n"


class EvaluationOrchestrator:
    """Drives one idea through the agent conversation under a budget ceiling."""

    def __init__(
        self,
        provider: AIProvider,
        roles: RoleRegistry,
        estimator: CostEstimator,
        settings: OrchestratorConfig,
        mode: str | None = None,
    ) -> None:
        self._provider = provider
        self._roles = roles
        self._estimator = estimator
        self._settings = settings
        self._mode = mode or settings.mode
        if self._mode not in MODES:
            raise ValueError(f"Unknown evaluation mode: {self._mode}")
        self._session: EvaluationSession | None = None
        self._running = False
        self._turns_this_run = 0
        self._halt_notified = False
        self._on_progress: ProgressCallback | None = None
        self._on_partial: PartialCallback | None = None
        self._on_complete: CompleteCallback | None = None
        self._on_halt: HaltCallback | None = None

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def has_session(self) -> bool:
        return self._session is not None

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------ public API

    async def start(
        self,
        idea: str,
        budget: float,
        on_progress: ProgressCallback | None = None,
        on_partial: PartialCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_halt: HaltCallback | None = None,
    ) -> None:
        """Evaluate ``idea`` from scratch, resetting cost, transcript and counters.

        Raises:
            ValueError: Empty idea or non-positive budget.
            EvaluationStateError: A run is already in progress.
            BudgetExceededError: The very first call of the run is unaffordable.
            ProviderError: The completion gateway failed.
        """
        if not idea or not idea.strip():
            raise ValueError("Idea is required")
        if budget <= 0:
            raise ValueError("Budget must be positive")
        if self._running:
            raise EvaluationStateError("An evaluation is already running")

        ceiling = self._settings.max_rounds if self._mode == "debate" else self._settings.max_iterations
        self._session = EvaluationSession(
            idea=idea.strip(),
            working_idea=idea.strip(),
            budget=float(budget),
            max_rounds=ceiling,
            started_at=datetime.now(timezone.utc),
        )
        logger.info("Starting %s evaluation with budget $%.2f", self._mode, budget)
        await self._run(on_progress, on_partial, on_complete, on_halt)

    async def continue_evaluation(
        self,
        on_progress: ProgressCallback | None = None,
        on_partial: PartialCallback | None = None,
        on_complete: CompleteCallback | None = None,
        on_halt: HaltCallback | None = None,
    ) -> None:
        """Resume a stopped or completed evaluation with an extended round ceiling.

        Keeps cost, transcript, round counter and working idea. Same callback
        contract and exceptions as ``start``.
        """
        session = self._session
        if session is None:
            raise EvaluationStateError("No evaluation to continue")
        if self._running:
            raise EvaluationStateError("The previous run is still in progress")
        if session.status not in (SessionStatus.COMPLETED, SessionStatus.STOPPED):
            raise EvaluationStateError(f"Cannot continue an evaluation with status '{session.status.value}'")

        session.stop_requested = False
        session.halt_reason = None
        session.max_rounds += self._settings.continue_extension
        logger.info(
            "Continuing evaluation at round %d of %d ($%.2f spent)",
            session.current_round,
            session.max_rounds,
            session.accumulated_cost,
        )
        await self._run(on_progress, on_partial, on_complete, on_halt)

    def stop(self) -> None:
        """Request a cooperative stop. Idempotent; an in-flight call still completes.

        An active or completed session is marked ``stopped``; the final result is kept.
        """
        session = self._session
        if session is None or session.stop_requested:
            return
        session.stop_requested = True
        if session.status in (SessionStatus.ACTIVE, SessionStatus.COMPLETED):
            session.status = SessionStatus.STOPPED
            session.halt_reason = HaltReason.USER_STOP
            self._touch()
            logger.info("Stop requested at round %d", session.current_round)

    def snapshot(self) -> SessionSnapshot:
        """Read-only projection of the session for pollers."""
        session = self._session
        if session is None:
            raise EvaluationStateError("No evaluation has been started")
        return SessionSnapshot(
            status=session.status,
            idea=session.idea,
            working_idea=session.working_idea,
            budget=session.budget,
            accumulated_cost=session.accumulated_cost,
            current_round=session.current_round,
            max_rounds=session.max_rounds,
            transcript=tuple(session.transcript),
            partial_result=session.partial_result,
            final_result=session.final_result,
            error=session.error,
            halt_reason=session.halt_reason,
            started_at=session.started_at,
            updated_at=session.updated_at,
        )

    # ------------------------------------------------------------------ run loop

    async def _run(
        self,
        on_progress: ProgressCallback | None,
        on_partial: PartialCallback | None,
        on_complete: CompleteCallback | None,
        on_halt: HaltCallback | None,
    ) -> None:
        session = self._session
        self._on_progress = on_progress
        self._on_partial = on_partial
        self._on_complete = on_complete
        self._on_halt = on_halt
        self._turns_this_run = 0
        self._halt_notified = False
        self._running = True
        session.status = SessionStatus.ACTIVE
        session.error = None
        self._touch()

        try:
            if self._mode == "debate":
                completed = await self._run_debate()
            else:
                completed = await self._run_iterations()
        except BudgetExceededError as exc:
            if self._turns_this_run == 0:
                self._fail(exc)
                raise
            self._halt_for_budget(exc)
            completed = False
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self._running = False

        if not completed:
            if session.status is SessionStatus.ACTIVE:
                session.status = SessionStatus.STOPPED
                session.halt_reason = HaltReason.USER_STOP
            self._notify_halt()

    async def _run_debate(self) -> bool:
        """Clarify (first run only), critic/defender rounds, investor decision.

        Returns True when the completion callback fired.
        """
        session = self._session
        if self._should_clarify():
            await self._clarify()

        try:
            while session.current_round <= session.max_rounds:
                if session.stop_requested:
                    return False
                round_number = session.current_round

                # Announcements and a previous decision do not close a round
                last = next(
                    (t for t in reversed(session.transcript) if t.role not in (AgentRole.SYSTEM, AgentRole.INVESTOR)),
                    None,
                )
                critic_done = (
                    last is not None and last.role is AgentRole.CRITIC and last.round_number == round_number
                )
                if not critic_done:
                    await self._call_agent(AgentRole.CRITIC, self._context(AgentRole.CRITIC))
                    if session.stop_requested:
                        return False
                    if self._soft_budget_reached():
                        self._announce_budget_break()
                        break

                defender = await self._call_agent(AgentRole.DEFENDER, self._context(AgentRole.DEFENDER))
                session.working_idea = defender.content

                self._emit_partial(
                    PartialResult(pitch=extract_pitch(defender.content), verdict=pending_verdict(round_number))
                )
                session.current_round += 1
                logger.info("Round %d complete ($%.2f of $%.2f)", round_number, session.accumulated_cost, session.budget)

                if self._soft_budget_reached() and session.current_round <= session.max_rounds:
                    self._announce_budget_break()
                    break
        except BudgetExceededError as exc:
            logger.warning("Debate cut short: %s", exc)
            if self._turns_this_run == 0:
                raise
            self._announce_budget_break()

        if session.stop_requested:
            return False
        await self._decide()
        return True

    async def _run_iterations(self) -> bool:
        """Iterations of proposer/critic debate plus a readiness check, then the decision.

        Iterating ends on a ``ready`` assessment, a stop request or the soft
        budget threshold; the investor decision runs unless stopped.
        """
        session = self._session
        if self._should_clarify():
            await self._clarify()

        try:
            while session.current_round <= session.max_rounds:
                if session.stop_requested:
                    return False
                iteration = session.current_round
                self._announce(f"Iteration {iteration}/{session.max_rounds}: starting idea evaluation")

                debate_turns = await self._inner_debate(iteration)
                if session.stop_requested:
                    return False
                if self._soft_budget_reached():
                    self._announce_budget_break()
                    break

                assessor = await self._call_agent(
                    AgentRole.ASSESSOR,
                    self._context(AgentRole.ASSESSOR, history=debate_turns),
                )
                assessment = extract_readiness(assessor.content)
                session.current_round += 1

                if assessment.ready:
                    self._announce("Assessor considers the idea ready for implementation.")
                    break
                if assessment.reformulated_idea:
                    session.working_idea = assessment.reformulated_idea
                    self._announce(
                        f"Assessor reformulated the idea for the next iteration: {assessment.reformulated_idea[:100]}"
                    )
                if session.stop_requested:
                    return False
                if self._soft_budget_reached():
                    self._announce_budget_break()
                    break
        except BudgetExceededError as exc:
            logger.warning("Iterations cut short: %s", exc)
            if self._turns_this_run == 0:
                raise
            self._announce_budget_break()

        if session.stop_requested:
            return False
        await self._decide()
        return True

    async def _inner_debate(self, iteration: int) -> list[ConversationTurn]:
        """Strictly alternating proposer/critic turns, capped per participant.

        Turns already recorded for this iteration (e.g. before a stop) count
        towards the caps. Returns this iteration's debate turns.
        """
        session = self._session
        limit = self._settings.max_turns_per_agent
        turns = [
            t for t in session.transcript
            if t.round_number == iteration and t.role in (AgentRole.PROPOSER, AgentRole.CRITIC)
        ]
        proposer_turns = sum(1 for t in turns if t.role is AgentRole.PROPOSER)
        critic_turns = len(turns) - proposer_turns

        while critic_turns < limit:
            if session.stop_requested or self._soft_budget_reached():
                break
            role = AgentRole.PROPOSER if proposer_turns == critic_turns else AgentRole.CRITIC
            window = turns[-self._settings.history_window:] if self._settings.history_window else turns
            turn = await self._call_agent(role, self._context(role, history=window))
            turns.append(turn)
            if role is AgentRole.PROPOSER:
                proposer_turns += 1
                continue
            critic_turns += 1
            last_proposal = next(t for t in reversed(turns) if t.role is AgentRole.PROPOSER)
            self._emit_partial(
                PartialResult(pitch=extract_pitch(last_proposal.content), verdict=pending_verdict(iteration))
            )
        return turns

    async def _clarify(self) -> None:
        session = self._session
        if session.stop_requested:
            return
        turn = await self._call_agent(AgentRole.CLARIFIER, self._context(AgentRole.CLARIFIER, history=()))
        session.working_idea = turn.content
        session.has_clarified = True
        self._emit_partial(PartialResult(pitch=extract_pitch(turn.content)))

    async def _decide(self) -> None:
        session = self._session
        last_round = session.transcript[-1].round_number if session.transcript else session.current_round
        turn = await self._call_agent(
            AgentRole.INVESTOR,
            self._context(AgentRole.INVESTOR, history=session.transcript),
            round_number=last_round,
        )
        result = EvaluationResult(
            pitch=extract_final_pitch(turn.content, session.working_idea),
            verdict=extract_verdict(turn.content),
            transcript=tuple(session.transcript),
            total_cost=session.accumulated_cost,
            rounds=max(session.current_round - 1, 0),
        )
        session.final_result = result
        session.status = SessionStatus.COMPLETED
        self._touch()
        logger.info(
            "Evaluation complete: %s (confidence %d), $%.2f spent",
            result.verdict.decision.value,
            result.verdict.confidence,
            result.total_cost,
        )
        if self._on_complete:
            self._on_complete(result)

    # ------------------------------------------------------------------ turns

    def _should_clarify(self) -> bool:
        session = self._session
        if not session.has_clarified:
            return True
        return self._settings.clarify_on_continue and self._turns_this_run == 0

    def _context(self, role: AgentRole, history: Sequence[ConversationTurn] | None = None) -> str:
        session = self._session
        if history is None:
            window = self._settings.history_window
            history = session.transcript[-window:] if window else session.transcript
        return self._roles.get(role).instruction.format(
            idea=session.working_idea,
            history=format_history(history),
            round=session.current_round,
            iteration=session.current_round,
            max_iterations=session.max_rounds,
        )

    async def _call_agent(
        self,
        role: AgentRole,
        user_prompt: str,
        round_number: int | None = None,
    ) -> ConversationTurn:
        """Gate on budget, call the provider, record and report the turn.

        Raises:
            BudgetExceededError: The estimated cost would exceed the ceiling; nothing was sent.
        """
        session = self._session
        profile = self._roles.get(role)
        prompt_text = f"{profile.system_prompt}\n\n{user_prompt}"

        estimated = self._estimator.estimate_cost(prompt_text)
        if session.accumulated_cost + estimated > session.budget:
            raise BudgetExceededError(session.accumulated_cost, estimated, session.budget)

        logger.debug("Calling %s (round %d, estimated $%.4f)", role.value, session.current_round, estimated)
        completion = await self._provider.complete(profile.system_prompt, user_prompt, profile.temperature)

        cost = self._completion_cost(completion, prompt_text)
        turn = self._record(role, completion.content, cost, round_number)
        self._turns_this_run += 1
        logger.info(
            "%s turn in round %d: $%.4f (total $%.2f of $%.2f)",
            role.value,
            turn.round_number,
            cost,
            session.accumulated_cost,
            session.budget,
        )

        if self._settings.pacing_delay_sec > 0:
            await asyncio.sleep(self._settings.pacing_delay_sec)
        return turn

    def _completion_cost(self, completion: Completion, prompt_text: str) -> float:
        if completion.input_tokens is not None and completion.output_tokens is not None:
            return self._estimator.actual_cost(completion.input_tokens, completion.output_tokens)
        return self._estimator.actual_cost(
            self._estimator.count_tokens(prompt_text),
            self._estimator.count_tokens(completion.content),
        )

    def _record(
        self,
        role: AgentRole,
        content: str,
        cost: float | None,
        round_number: int | None = None,
    ) -> ConversationTurn:
        session = self._session
        number = round_number if round_number is not None else session.current_round
        turn = ConversationTurn(
            id=f"{role.value}-{number}-{uuid.uuid4().hex[:8]}",
            role=role,
            content=content,
            timestamp=datetime.now(timezone.utc),
            round_number=number,
            cost=cost,
        )
        session.transcript.append(turn)
        if cost:
            session.accumulated_cost += max(cost, 0.0)
        self._touch()
        if self._on_progress:
            self._on_progress(len(session.transcript) - 1, turn, cost or 0.0)
        return turn

    def _announce(self, message: str) -> None:
        logger.info(message)
        self._record(AgentRole.SYSTEM, message, None)

    # ------------------------------------------------------------------ budget / status

    def _soft_budget_reached(self) -> bool:
        session = self._session
        return session.accumulated_cost >= session.budget * self._settings.soft_budget_ratio

    def _announce_budget_break(self) -> None:
        session = self._session
        self._announce(
            f"Budget almost exhausted (${session.accumulated_cost:.2f}/${session.budget:.2f}). "
            "Moving to the final decision."
        )

    def _halt_for_budget(self, exc: BudgetExceededError) -> None:
        session = self._session
        logger.warning("Evaluation halted on budget: %s", exc)
        session.status = SessionStatus.STOPPED
        session.halt_reason = HaltReason.BUDGET
        self._announce(f"Evaluation halted: {exc}")

    def _fail(self, exc: Exception) -> None:
        session = self._session
        session.status = SessionStatus.ERROR
        session.error = str(exc)
        self._touch()
        logger.error("Evaluation failed: %s", exc)

    def _notify_halt(self) -> None:
        if self._halt_notified:
            return
        self._halt_notified = True
        if self._on_halt and self._session.halt_reason is not None:
            self._on_halt(self._session.halt_reason)

    def _emit_partial(self, partial: PartialResult) -> None:
        self._session.partial_result = partial
        self._touch()
        if self._on_partial:
            self._on_partial(partial)

    def _touch(self) -> None:
        self._session.updated_at = datetime.now(timezone.utc)
