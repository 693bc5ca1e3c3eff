"""Tests for pitch_council/orchestrator.py."""

from unittest.mock import AsyncMock

import pytest

from pitch_council.costing import BudgetExceededError
from pitch_council.models import AgentRole, Decision, HaltReason, SessionStatus
from pitch_council.orchestrator import (
    EvaluationStateError,
    format_history,
    pending_verdict,
)
from pitch_council.providers.base import ProviderError
from tests.conftest import MockProvider, word_count

IDEA = "A subscription box for artisanal coffee"


class Recorder:
    """Collects every callback the orchestrator fires."""

    def __init__(self, orchestrator=None) -> None:
        self.orchestrator = orchestrator
        self.steps: list[int] = []
        self.turns = []
        self.costs_seen: list[float] = []
        self.partials = []
        self.results = []
        self.halts = []

    def on_progress(self, step, turn, cost):
        self.steps.append(step)
        self.turns.append(turn)
        if self.orchestrator is not None:
            self.costs_seen.append(self.orchestrator.snapshot().accumulated_cost)

    def on_partial(self, partial):
        self.partials.append(partial)

    def on_complete(self, result):
        self.results.append(result)

    def on_halt(self, reason):
        self.halts.append(reason)

    def callbacks(self) -> dict:
        return {
            "on_progress": self.on_progress,
            "on_partial": self.on_partial,
            "on_complete": self.on_complete,
            "on_halt": self.on_halt,
        }


# ---------------------------------------------------------------- helpers


def test_pending_verdict_confidence_grows_and_caps():
    assert pending_verdict(1).confidence == 50
    assert pending_verdict(2).confidence == 60
    assert pending_verdict(4).confidence == 80
    assert pending_verdict(10).confidence == 85
    assert pending_verdict(1).decision is Decision.PENDING


def test_format_history_empty_is_blank():
    assert format_history([]) == ""


# ---------------------------------------------------------------- debate variant


async def test_debate_full_run(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    rec = Recorder(orch)
    await orch.start(IDEA, 10.0, **rec.callbacks())

    snap = orch.snapshot()
    assert snap.status is SessionStatus.COMPLETED
    assert mock_provider.roles_called() == [
        "clarifier",
        "critic", "defender",
        "critic", "defender",
        "critic", "defender",
        "investor",
    ]
    assert snap.accumulated_cost == pytest.approx(8.0)
    assert len(rec.results) == 1
    result = rec.results[0]
    assert result.verdict.decision is Decision.INVEST
    assert result.verdict.confidence == 72
    assert result.pitch.name == "BeanBox"
    assert result.pitch.problem == "Discovery of small roasters is hard"
    assert result.rounds == 3
    assert result.total_cost == pytest.approx(8.0)
    assert result.transcript == snap.transcript
    assert rec.halts == []


async def test_debate_partials_report_pending_with_growing_confidence(make_orchestrator):
    orch = make_orchestrator()
    rec = Recorder(orch)
    await orch.start(IDEA, 10.0, **rec.callbacks())

    # clarify partial has a pitch only, then one per completed round
    assert rec.partials[0].verdict is None
    assert rec.partials[0].pitch.name == "BeanBox"
    confidences = [p.verdict.confidence for p in rec.partials[1:]]
    assert confidences == [50, 60, 70]
    assert all(p.verdict.decision is Decision.PENDING for p in rec.partials[1:])


async def test_defender_output_becomes_working_idea(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    await orch.start(IDEA, 10.0)
    investor_prompt = mock_provider.calls[-1][1]
    assert "Curated monthly box" in investor_prompt
    assert orch.snapshot().working_idea.startswith("We tighten the focus.")


async def test_progress_steps_are_transcript_positions(make_orchestrator):
    orch = make_orchestrator()
    rec = Recorder(orch)
    await orch.start(IDEA, 10.0, **rec.callbacks())
    snap = orch.snapshot()
    assert rec.steps == list(range(len(snap.transcript)))
    assert [t.id for t in rec.turns] == [t.id for t in snap.transcript]


async def test_cost_is_monotonic(make_orchestrator):
    orch = make_orchestrator()
    rec = Recorder(orch)
    await orch.start(IDEA, 10.0, **rec.callbacks())
    assert rec.costs_seen == sorted(rec.costs_seen)
    assert all(t.cost is None or t.cost >= 0 for t in orch.snapshot().transcript)


async def test_history_window_limits_context(make_orchestrator, mock_provider):
    orch = make_orchestrator(history_window=2)
    await orch.start(IDEA, 10.0)
    critic_prompts = [prompt for role, prompt in mock_provider.calls if role == "critic"]
    assert "Finding great small-batch coffee" in critic_prompts[0]
    assert "Finding great small-batch coffee" not in critic_prompts[1]
    # investor always sees the whole conversation
    assert "Finding great small-batch coffee" in mock_provider.calls[-1][1]


async def test_clarifier_prompt_has_no_history(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    await orch.start(IDEA, 10.0)
    assert "Conversation so far" not in mock_provider.calls[0][1]
    assert IDEA in mock_provider.calls[0][1]


async def test_cost_falls_back_to_token_counts_without_usage(make_orchestrator):
    provider = MockProvider(input_tokens=None, output_tokens=None)
    orch = make_orchestrator(provider=provider)
    await orch.start(IDEA, 10.0)
    first = orch.snapshot().transcript[0]
    assert first.cost == pytest.approx(word_count(first.content) / 1000)


# ---------------------------------------------------------------- budget


async def test_budget_halt_is_clean_stop(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    rec = Recorder(orch)
    await orch.start(IDEA, 5.0, **rec.callbacks())

    snap = orch.snapshot()
    assert snap.status is SessionStatus.STOPPED
    assert snap.halt_reason is HaltReason.BUDGET
    assert snap.final_result is None
    assert snap.accumulated_cost == pytest.approx(5.0)
    assert "investor" not in mock_provider.roles_called()
    assert snap.transcript[-1].role is AgentRole.SYSTEM
    assert "Budget exceeded" in snap.transcript[-1].content
    assert rec.results == []
    assert rec.halts == [HaltReason.BUDGET]


@pytest.mark.parametrize("budget", [1.0, 2.5, 3.0, 4.0, 6.0, 7.5, 9.0])
async def test_budget_never_exceeded(make_orchestrator, budget):
    orch = make_orchestrator()
    try:
        await orch.start(IDEA, budget)
    except BudgetExceededError:
        pass
    assert orch.snapshot().accumulated_cost <= budget


async def test_unaffordable_first_call_is_an_error(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    with pytest.raises(BudgetExceededError) as exc_info:
        await orch.start(IDEA, 0.5)

    assert exc_info.value.ceiling == 0.5
    snap = orch.snapshot()
    assert snap.status is SessionStatus.ERROR
    assert "Budget exceeded" in snap.error
    assert snap.transcript == ()
    mock_provider.generate.assert_not_called()


async def test_soft_threshold_moves_to_decision(make_orchestrator, mock_provider):
    orch = make_orchestrator(max_rounds=10)
    rec = Recorder(orch)
    await orch.start(IDEA, 10.0, **rec.callbacks())

    snap = orch.snapshot()
    assert snap.status is SessionStatus.COMPLETED
    assert mock_provider.roles_called()[-1] == "investor"
    announcements = [t.content for t in snap.transcript if t.role is AgentRole.SYSTEM]
    assert any("Budget almost exhausted" in a for a in announcements)
    assert snap.accumulated_cost <= 10.0


# ---------------------------------------------------------------- stop / resume


async def test_stop_during_call_keeps_paid_turn(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    rec = Recorder(orch)

    def stop_on_first_critic(role: str) -> None:
        if role == "critic":
            orch.stop()

    mock_provider.before_reply = stop_on_first_critic
    await orch.start(IDEA, 20.0, **rec.callbacks())

    snap = orch.snapshot()
    assert snap.status is SessionStatus.STOPPED
    assert snap.halt_reason is HaltReason.USER_STOP
    assert [t.role for t in snap.transcript] == [AgentRole.CLARIFIER, AgentRole.CRITIC]
    assert snap.accumulated_cost == pytest.approx(2.0)
    assert rec.results == []
    assert rec.halts == [HaltReason.USER_STOP]


async def test_stop_is_idempotent(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    rec = Recorder(orch)

    def stop_twice(role: str) -> None:
        if role == "critic":
            orch.stop()
            orch.stop()

    mock_provider.before_reply = stop_twice
    await orch.start(IDEA, 20.0, **rec.callbacks())
    orch.stop()

    assert orch.snapshot().status is SessionStatus.STOPPED
    assert rec.halts == [HaltReason.USER_STOP]


async def test_stop_without_session_is_noop(make_orchestrator):
    orch = make_orchestrator()
    orch.stop()
    assert not orch.has_session


async def test_stop_after_completion_marks_stopped(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    await orch.start(IDEA, 20.0)
    assert orch.snapshot().status is SessionStatus.COMPLETED

    orch.stop()
    snap = orch.snapshot()
    assert snap.status is SessionStatus.STOPPED
    assert snap.halt_reason is HaltReason.USER_STOP
    assert snap.final_result is not None

    await orch.continue_evaluation()
    assert orch.snapshot().status is SessionStatus.COMPLETED


async def test_continue_after_soft_break_does_not_repeat_critic(make_orchestrator, mock_provider):
    # Threshold $8: the fourth critic turn reaches it, so the round breaks after the critic
    orch = make_orchestrator(max_rounds=10, soft_budget_ratio=0.8)
    await orch.start(IDEA, 10.0)
    before = orch.snapshot()
    assert before.status is SessionStatus.COMPLETED
    assert [t.role for t in before.transcript[-3:]] == [AgentRole.CRITIC, AgentRole.SYSTEM, AgentRole.INVESTOR]
    critic_round = before.transcript[-3].round_number

    calls_before = len(mock_provider.calls)
    await orch.continue_evaluation()
    resumed = mock_provider.roles_called()[calls_before:]

    assert resumed[0] == "defender"
    critic_rounds = [t.round_number for t in orch.snapshot().transcript if t.role is AgentRole.CRITIC]
    assert critic_rounds.count(critic_round) == 1


async def test_resume_continues_where_it_stopped(make_orchestrator, mock_provider):
    orch = make_orchestrator()

    def stop_on_first_critic(role: str) -> None:
        if role == "critic":
            mock_provider.before_reply = None
            orch.stop()

    mock_provider.before_reply = stop_on_first_critic
    await orch.start(IDEA, 20.0)
    before = orch.snapshot()

    rec = Recorder(orch)
    await orch.continue_evaluation(**rec.callbacks())
    after = orch.snapshot()

    assert after.status is SessionStatus.COMPLETED
    assert after.transcript[:len(before.transcript)] == before.transcript
    assert after.max_rounds == before.max_rounds + 2
    assert after.accumulated_cost > before.accumulated_cost
    # no second clarify, and the interrupted round resumes at the defender
    assert mock_provider.roles_called().count("clarifier") == 1
    assert mock_provider.roles_called()[2] == "defender"
    assert rec.steps[0] == len(before.transcript)
    assert len(rec.results) == 1
    assert rec.results[0].rounds == 5


async def test_continue_after_completion_adds_rounds(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    await orch.start(IDEA, 20.0)
    assert orch.snapshot().current_round == 4

    await orch.continue_evaluation()
    snap = orch.snapshot()
    assert snap.status is SessionStatus.COMPLETED
    assert snap.current_round == 6
    assert mock_provider.roles_called().count("investor") == 2
    assert mock_provider.roles_called().count("clarifier") == 1


async def test_clarify_on_continue_when_configured(make_orchestrator, mock_provider):
    orch = make_orchestrator(clarify_on_continue=True)
    await orch.start(IDEA, 30.0)
    await orch.continue_evaluation()
    assert mock_provider.roles_called().count("clarifier") == 2


async def test_continue_without_session_fails_fast(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(EvaluationStateError):
        await orch.continue_evaluation()


async def test_continue_after_error_is_rejected(make_orchestrator):
    orch = make_orchestrator()
    with pytest.raises(BudgetExceededError):
        await orch.start(IDEA, 0.5)
    with pytest.raises(EvaluationStateError):
        await orch.continue_evaluation()


async def test_continue_after_budget_halt_fails_on_first_call(make_orchestrator):
    orch = make_orchestrator()
    await orch.start(IDEA, 5.0)
    cost_before = orch.snapshot().accumulated_cost

    with pytest.raises(BudgetExceededError):
        await orch.continue_evaluation()
    snap = orch.snapshot()
    assert snap.status is SessionStatus.ERROR
    assert snap.accumulated_cost == cost_before


# ---------------------------------------------------------------- errors and validation


async def test_provider_fault_sets_error_and_keeps_transcript(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    original = mock_provider.generate.side_effect

    def fail_on_critic(system_prompt, user_prompt, temperature):
        if system_prompt == "ROLE:critic":
            raise ProviderError("mock", "API call failed: boom")
        return original(system_prompt, user_prompt, temperature)

    mock_provider.generate = AsyncMock(side_effect=fail_on_critic)

    with pytest.raises(ProviderError):
        await orch.start(IDEA, 10.0)
    snap = orch.snapshot()
    assert snap.status is SessionStatus.ERROR
    assert "boom" in snap.error
    assert [t.role for t in snap.transcript] == [AgentRole.CLARIFIER]


async def test_unexpected_gateway_exception_is_wrapped(make_orchestrator, mock_provider):
    orch = make_orchestrator()
    mock_provider.generate = AsyncMock(side_effect=RuntimeError("socket closed"))
    with pytest.raises(ProviderError, match="socket closed"):
        await orch.start(IDEA, 10.0)
    assert orch.snapshot().status is SessionStatus.ERROR


async def test_malformed_investor_output_still_completes(make_orchestrator):
    provider = MockProvider({"investor": "Honestly not sure, it is complicated."})
    orch = make_orchestrator(provider=provider)
    await orch.start(IDEA, 10.0)
    result = orch.snapshot().final_result
    assert result.verdict.decision is Decision.PASS
    assert result.verdict.strengths == ["Concept has potential"]
    # no pitch in the decision, so the refined working idea supplies it
    assert result.pitch.solution == "Curated monthly box"


@pytest.mark.parametrize("idea,budget", [("", 10.0), ("   ", 10.0), (IDEA, 0.0), (IDEA, -1.0)])
async def test_start_rejects_invalid_input(make_orchestrator, idea, budget):
    orch = make_orchestrator()
    with pytest.raises(ValueError):
        await orch.start(idea, budget)
    assert not orch.has_session


def test_snapshot_without_session_raises(make_orchestrator):
    with pytest.raises(EvaluationStateError):
        make_orchestrator().snapshot()


def test_unknown_mode_rejected(make_orchestrator):
    with pytest.raises(ValueError, match="Unknown evaluation mode"):
        make_orchestrator(mode="tournament")


async def test_turn_ids_are_unique(make_orchestrator):
    orch = make_orchestrator()
    await orch.start(IDEA, 10.0)
    ids = [t.id for t in orch.snapshot().transcript]
    assert len(ids) == len(set(ids))
    assert ids[0].startswith("clarifier-1-")


# ---------------------------------------------------------------- iterative variant


async def test_iterative_runs_until_iteration_ceiling(make_orchestrator, mock_provider):
    orch = make_orchestrator(mode="iterative")
    rec = Recorder(orch)
    await orch.start(IDEA, 50.0, **rec.callbacks())

    assert mock_provider.roles_called() == [
        "clarifier",
        "proposer", "critic", "proposer", "critic", "assessor",
        "proposer", "critic", "proposer", "critic", "assessor",
        "investor",
    ]
    snap = orch.snapshot()
    assert snap.status is SessionStatus.COMPLETED
    assert snap.final_result.rounds == 2
    # the assessor's reformulation seeds the next iteration and the decision
    assert "BeanBox for offices" in mock_provider.calls[6][1]
    assert "BeanBox for offices" in mock_provider.calls[-1][1]
    announcements = [t.content for t in snap.transcript if t.role is AgentRole.SYSTEM]
    assert announcements[0].startswith("Iteration 1/2")


async def test_iterative_stops_iterating_when_ready(make_orchestrator):
    provider = MockProvider({"assessor": '{"verdict": "ready"}'})
    orch = make_orchestrator(mode="iterative", provider=provider)
    await orch.start(IDEA, 50.0)
    assert provider.roles_called() == [
        "clarifier", "proposer", "critic", "proposer", "critic", "assessor", "investor",
    ]
    assert orch.snapshot().status is SessionStatus.COMPLETED


async def test_iterative_partial_after_every_pair(make_orchestrator):
    orch = make_orchestrator(mode="iterative", max_iterations=1)
    rec = Recorder(orch)
    await orch.start(IDEA, 50.0, **rec.callbacks())
    pending = [p for p in rec.partials if p.verdict is not None]
    assert len(pending) == 2
    assert pending[0].pitch.solution == "Curated box with roaster stories"


async def test_iterative_turns_carry_iteration_number(make_orchestrator):
    orch = make_orchestrator(mode="iterative")
    await orch.start(IDEA, 50.0)
    assessor_rounds = [t.round_number for t in orch.snapshot().transcript if t.role is AgentRole.ASSESSOR]
    assert assessor_rounds == [1, 2]


async def test_iterative_soft_budget_skips_to_decision(make_orchestrator, mock_provider):
    orch = make_orchestrator(mode="iterative", max_turns_per_agent=10)
    await orch.start(IDEA, 10.0)
    snap = orch.snapshot()
    assert snap.status is SessionStatus.COMPLETED
    assert mock_provider.roles_called()[-1] == "investor"
    assert "assessor" not in mock_provider.roles_called()
    assert snap.accumulated_cost <= 10.0
