"""Tests for orchestration/phases.py -- the six phase executors.

Each phase is run directly as a node function against a hand-built state,
so these tests never compile the graph.
"""

from typing import Any

from agents.schemas import (
    InitialAnswerOutput,
    MetaSynthesis,
    SynthesisCritiqueOutput,
    SynthesisWeakness,
)
from events.types import EventType
from orchestration.phases import (
    CHALLENGE_BRANCHES,
    CRITIQUE_INCOMPLETE,
    EVIDENCE_BRANCHES,
    BranchOutcome,
    PhaseExecutors,
    branch_key,
    refine_synthesis,
)
from orchestration.state import (
    ErrorInfo,
    RecoveryStrategy,
    create_initial_session_state,
    merge_state,
)
from tests.conftest import (
    INITIAL_ANSWER,
    META_SYNTHESIS,
    StubAgent,
    collect_events,
    failing_agent,
    make_agent_suite,
)

SESSION = "sess_phase_test"
QUERY = "Is remote work more productive than office work?"


def _state(**fields: Any) -> dict[str, Any]:
    state = dict(create_initial_session_state(QUERY, SESSION))
    state.update(fields)
    return state


def _executors(coordinator, event_bus=None, metrics=None, **agents) -> PhaseExecutors:
    return PhaseExecutors(
        coordinator,
        make_agent_suite(**agents),
        event_bus=event_bus,
        metrics=metrics,
    )


async def _run_fan_out(executors: PhaseExecutors, phase: str, state: dict[str, Any]) -> dict:
    """Run every branch of a phase and fold their outcomes into the state."""
    if phase == "evidence":
        sends, run = executors.evidence_branches(state), executors.run_evidence_branch
    else:
        sends, run = executors.challenge_branches(state), executors.run_challenge_branch
    # Reverse the order to show the join does not depend on arrival order.
    for send in reversed(sends):
        state = merge_state(state, await run(send.arg))
    return state


async def _through_challenge(executors: PhaseExecutors) -> dict[str, Any]:
    state = merge_state(_state(), await executors.intake(_state()))
    state = merge_state(state, await executors.route_evidence(state))
    state = await _run_fan_out(executors, "evidence", state)
    state = merge_state(state, await executors.join_evidence(state))
    state = merge_state(state, await executors.start_challenge(state))
    state = await _run_fan_out(executors, "challenge", state)
    return merge_state(state, await executors.join_challenge(state))


# =============================================================================
# Phase 1: intake
# =============================================================================


class TestIntake:
    """Query refinement and the critical initial answer."""

    async def test_success_sets_refined_query_and_answer(self, coordinator) -> None:
        patch = await _executors(coordinator).intake(_state())

        assert patch["refined_query"] == f"{QUERY} (refined)"
        assert patch["initial_answer_text"] == INITIAL_ANSWER
        assert patch["errors_encountered"] == []
        assert set(patch["artifacts"]) == {"query_refinement", "initial_answer_loop"}
        assert "status" not in patch

    async def test_refinement_failure_falls_back_to_original_query(self, coordinator) -> None:
        executors = _executors(coordinator, query_refinement=failing_agent())
        patch = await executors.intake(_state())

        assert patch["refined_query"] == QUERY
        assert patch["initial_answer_text"] == INITIAL_ANSWER
        assert [e.agent for e in patch["errors_encountered"]] == ["query_refinement"]
        assert patch["errors_encountered"][0].is_critical_failure is False

    async def test_initial_answer_failure_aborts(self, coordinator, event_bus) -> None:
        executors = _executors(coordinator, event_bus, initial_answer=failing_agent())
        patch = await executors.intake(_state())

        assert patch["status"] == "aborted"
        assert "initial_answer" in patch["abort_reason"]
        assert "initial_answer_text" not in patch
        assert len(patch["errors_encountered"]) == 1
        error = patch["errors_encountered"][0]
        assert error.agent == "initial_answer"
        assert error.is_critical_failure is True
        assert error.recovery_strategy is RecoveryStrategy.NONE

        events = await collect_events(event_bus, SESSION)
        types = [e.type for e in events]
        assert EventType.AGENT_FAILED in types
        assert types[-1] == EventType.PHASE_ABORTED

    async def test_blank_answer_is_retried(self, coordinator) -> None:
        answers = iter(
            [
                InitialAnswerOutput(final_answer="  ", iterations=1),
                InitialAnswerOutput(final_answer=INITIAL_ANSWER, iterations=1),
            ]
        )
        agent = StubAgent(lambda _: next(answers))
        patch = await _executors(coordinator, initial_answer=agent).intake(_state())

        assert patch["initial_answer_text"] == INITIAL_ANSWER
        assert agent.call_count == 2
        assert patch["errors_encountered"][0].recovery_strategy is RecoveryStrategy.RETRY

    def test_route_after_intake(self) -> None:
        assert PhaseExecutors.route_after_intake({"status": "aborted"}) == "end"
        assert PhaseExecutors.route_after_intake({"status": "running"}) == "continue"


# =============================================================================
# Phase 2: evidence
# =============================================================================


class TestEvidence:
    """Routing, five-way fan-out and the order-independent join."""

    async def test_fan_out_sends_one_branch_per_slot(self, coordinator) -> None:
        sends = _executors(coordinator).evidence_branches(_state(branch_outcomes={"x": 1}))

        assert [s.node for s in sends] == ["evidence_branch"] * len(EVIDENCE_BRANCHES)
        assert [s.arg["slot"] for s in sends] == [b.slot for b in EVIDENCE_BRANCHES]
        assert "branch_outcomes" not in sends[0].arg["state"]

    async def test_branch_reports_under_slot_key(self, coordinator) -> None:
        executors = _executors(coordinator)
        patch = await executors.run_evidence_branch(
            {"phase": "evidence", "slot": "premortem", "state": _state(initial_answer_text="a")}
        )

        outcome = patch["branch_outcomes"][branch_key("evidence", "premortem")]
        assert isinstance(outcome, BranchOutcome)
        assert outcome.agent == "premortem"
        assert outcome.error is None

    async def test_join_populates_all_fields(self, coordinator) -> None:
        executors = _executors(coordinator)
        state = _state(initial_answer_text=INITIAL_ANSWER)
        state = merge_state(state, await executors.route_evidence(state))
        state = await _run_fan_out(executors, "evidence", state)
        patch = await executors.join_evidence(state)

        assert state["routing_decision"].analysis_strategy.approach
        assert patch["assumptions"][0].assumption == "Workers have quiet home offices"
        assert patch["aggregated_supporting_research"][0].source == "Bloom et al. 2015"
        assert patch["aggregated_counter_research"][0].source == "Yang et al. 2022"
        assert len(patch["failure_modes"]) == 1
        assert len(patch["information_gaps"]) == 1
        assert patch["errors_encountered"] == []

    async def test_failed_branch_degrades_without_affecting_siblings(self, coordinator) -> None:
        executors = _executors(coordinator, counter_research=failing_agent())
        state = _state(initial_answer_text=INITIAL_ANSWER)
        state = await _run_fan_out(executors, "evidence", state)
        patch = await executors.join_evidence(state)

        assert patch["aggregated_counter_research"] == []
        assert len(patch["aggregated_supporting_research"]) == 1
        assert len(patch["assumptions"]) == 1
        assert [e.agent for e in patch["errors_encountered"]] == ["counter_research"]
        assert patch["errors_encountered"][0].recovery_strategy is RecoveryStrategy.DEFAULT

    async def test_errors_follow_declaration_order(self, coordinator) -> None:
        executors = _executors(
            coordinator,
            information_gaps=failing_agent(),
            assumptions=failing_agent(),
        )
        state = await _run_fan_out(executors, "evidence", _state(initial_answer_text="a"))
        patch = await executors.join_evidence(state)

        assert [e.agent for e in patch["errors_encountered"]] == [
            "assumptions",
            "information_gaps",
        ]

    async def test_missing_branch_uses_default(self, coordinator) -> None:
        patch = await _executors(coordinator).join_evidence(_state())

        assert patch["assumptions"] == []
        assert patch["aggregated_supporting_research"] == []


# =============================================================================
# Phase 3: challenge
# =============================================================================


class TestChallenge:
    async def test_populates_challenge_fields(self, coordinator) -> None:
        state = await _through_challenge(_executors(coordinator))

        assert state["critique"] == "The answer ignores task heterogeneity."
        assert state["challenges"] == ["Offices enable serendipity"]
        assert state["potential_biases"] == []
        assert len(state["premortem_review"]) == 1
        assert state["stress_tested_argument"] == INITIAL_ANSWER
        assert state["cross_referenced_bias_report"] is not None
        assert state["conflict_resolution_analysis"] is not None

    async def test_challenge_branches_cover_slots(self, coordinator) -> None:
        sends = _executors(coordinator).challenge_branches(_state())
        assert [s.arg["slot"] for s in sends] == [b.slot for b in CHALLENGE_BRANCHES]

    async def test_premortem_second_pass_sees_first_pass_modes(self, coordinator) -> None:
        premortem = StubAgent(
            lambda _: {"items": [{"failure": "f", "probability": "Low (10-30%)", "mitigation": "m"}]}
        )
        await _through_challenge(_executors(coordinator, premortem=premortem))

        assert premortem.call_count == 2
        assert premortem.calls[0].known_failure_modes == []
        assert premortem.calls[1].known_failure_modes[0].failure == "f"

    async def test_red_team_failure_keeps_original_argument(self, coordinator) -> None:
        state = await _through_challenge(_executors(coordinator, red_team=failing_agent()))

        assert state["stress_tested_argument"] == INITIAL_ANSWER
        assert "red_team" in [e.agent for e in state["errors_encountered"]]


# =============================================================================
# Phases 4 and 5
# =============================================================================


class TestStructuringAndSynthesis:
    async def test_structuring_sets_every_field(self, coordinator) -> None:
        executors = _executors(coordinator)
        state = await _through_challenge(executors)
        patch = await executors.structuring(state)

        for field_name in (
            "balanced_brief",
            "pressure_tested_brief",
            "impact_assessments",
            "quality_scores",
            "overall_confidence",
            "sensitivity_analysis_report",
        ):
            assert field_name in patch
        assert patch["errors_encountered"] == []

    async def test_synthesis_refines_meta_with_critique_gaps(self, coordinator) -> None:
        executors = _executors(coordinator)
        state = await _through_challenge(executors)
        state = merge_state(state, await executors.structuring(state))
        patch = await executors.synthesis(state)

        draft = patch["draft_synthesis_output"]
        assert len(draft.individual_perspectives) == 5
        assert draft.meta_synthesis.summary == META_SYNTHESIS.summary
        final = patch["final_refined_synthesis_output"]
        assert final.remaining_uncertainties == [
            "Long-term cultural effects",
            "No longitudinal data",
        ]
        assert patch["errors_encountered"] == []

    async def test_synthesis_critique_failure_marks_incomplete(self, coordinator) -> None:
        executors = _executors(coordinator, synthesis_critique=failing_agent())
        state = await _through_challenge(executors)
        state = merge_state(state, await executors.structuring(state))
        patch = await executors.synthesis(state)

        assert CRITIQUE_INCOMPLETE in patch["final_refined_synthesis_output"].remaining_uncertainties
        assert [e.agent for e in patch["errors_encountered"]] == ["synthesis_critique"]


class TestRefineSynthesis:
    def test_appends_weaknesses_and_gaps(self) -> None:
        critique = SynthesisCritiqueOutput(
            overall_assessment="ok",
            weaknesses=[
                SynthesisWeakness(
                    category="logical_gaps",
                    description="Causality assumed",
                    severity="medium",
                    suggested_fix="Qualify",
                )
            ],
        )
        refined = refine_synthesis(META_SYNTHESIS, critique)

        assert refined.remaining_uncertainties[-1] == "Causality assumed"
        assert META_SYNTHESIS.remaining_uncertainties == ["Long-term cultural effects"]

    def test_missing_critique_marks_incomplete(self) -> None:
        refined = refine_synthesis(META_SYNTHESIS, None)
        assert refined.remaining_uncertainties[-1] == CRITIQUE_INCOMPLETE


# =============================================================================
# Phase 6: review
# =============================================================================


def _review_state(confidence: str = "Low", errors: list[ErrorInfo] | None = None) -> dict:
    final = MetaSynthesis(**{**META_SYNTHESIS.model_dump(), "confidence": confidence})
    return _state(
        final_refined_synthesis_output=final,
        errors_encountered=errors or [],
    )


class TestReview:
    async def test_disabled_review_completes(self, coordinator) -> None:
        patch = await _executors(coordinator).review(_review_state())

        assert patch["status"] == "complete"
        assert patch["human_review_required"] is False
        assert patch["human_review_reason"] is None

    async def test_low_confidence_requests_review(self, coordinator, event_bus) -> None:
        human_review = StubAgent(
            lambda _: {
                "review_completed": False,
                "review_id": "review_abc",
                "timestamp": "2026-01-01T00:00:00+00:00",
            }
        )
        executors = PhaseExecutors(
            coordinator,
            make_agent_suite(human_review=human_review),
            enable_human_review=True,
            review_threshold="Low",
            event_bus=event_bus,
        )
        patch = await executors.review(_review_state("Low"))

        assert patch["human_review_required"] is True
        assert patch["human_review_reason"] == (
            "Confidence level (Low) is at or below threshold (Low)"
        )
        assert patch["human_review"].review_id == "review_abc"
        request = human_review.calls[0]
        assert request.review_type == "low_confidence"

        events = await collect_events(event_bus, SESSION)
        requested = [e for e in events if e.type == EventType.HUMAN_REVIEW_REQUESTED]
        assert requested[0].data["review_id"] == "review_abc"

    async def test_high_confidence_skips_review(self, coordinator) -> None:
        human_review = StubAgent()
        executors = PhaseExecutors(
            coordinator,
            make_agent_suite(human_review=human_review),
            enable_human_review=True,
            review_threshold="Medium",
        )
        patch = await executors.review(_review_state("High"))

        assert patch["human_review_required"] is False
        assert human_review.call_count == 0

    async def test_critical_error_forces_review(self, coordinator) -> None:
        errors = [ErrorInfo(agent="meta_synthesis", error="x", is_critical_failure=True)]
        executors = PhaseExecutors(
            coordinator, make_agent_suite(), enable_human_review=True
        )
        patch = await executors.review(_review_state("High", errors))

        assert patch["human_review_required"] is True
        assert patch["human_review_reason"] == "Critical errors encountered: meta_synthesis"


# =============================================================================
# Metrics and events
# =============================================================================


class TestInstrumentation:
    async def test_phase_and_agent_metrics_recorded(self, coordinator, metrics) -> None:
        metrics.start(SESSION, QUERY)
        executors = _executors(coordinator, metrics=metrics, query_refinement=StubAgent(
            lambda inp: {"original_query": inp.query, "refined_query": "r", "refinement_reason": "x"},
            fail_times=1,
        ))
        await executors.intake(_state())

        phase = metrics.get(SESSION).phases["intake"]
        assert phase.status == "completed"
        assert phase.agents_involved == ["query_refinement", "initial_answer"]
        assert phase.retry_count == 1
        assert phase.error_count == 1

    async def test_phase_events_bracket_agent_events(self, coordinator, event_bus) -> None:
        await _executors(coordinator, event_bus).intake(_state())
        events = await collect_events(event_bus, SESSION)

        assert [e.type for e in events] == [
            EventType.PHASE_STARTED,
            EventType.AGENT_COMPLETE,
            EventType.AGENT_COMPLETE,
            EventType.PHASE_COMPLETE,
        ]
        assert events[1].agent_id == "query_refinement"
        assert events[0].data["phase"] == "intake"
