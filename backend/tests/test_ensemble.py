"""Tests for orchestration/ensemble.py -- the five-perspective synthesis."""

import pytest

from agents.schemas import (
    PERSPECTIVE_TYPES,
    ErrorDigest,
    Perspective,
    SynthesisEnsembleInput,
)
from orchestration.ensemble import (
    META_FALLBACK_DIVERGENCE,
    SynthesisEnsemble,
    perspective_agent_name,
    select_best_perspective,
)
from orchestration.state import RecoveryStrategy
from tests.conftest import INITIAL_ANSWER, META_SYNTHESIS, StubAgent, failing_agent, make_agent_suite


def _perspective(ptype: str, confidence: str) -> Perspective:
    return Perspective(perspective_type=ptype, confidence=confidence, summary=f"{ptype} view")


def _input(**kwargs) -> SynthesisEnsembleInput:
    return SynthesisEnsembleInput(initial_answer_text=INITIAL_ANSWER, **kwargs)


# =============================================================================
# select_best_perspective
# =============================================================================


class TestSelectBestPerspective:
    def test_highest_confidence_wins(self) -> None:
        perspectives = [
            _perspective("most_likely", "Low"),
            _perspective("worst_case", "High"),
            _perspective("best_case", "Medium"),
        ]
        best = select_best_perspective(perspectives, ["High", "Medium", "Low"])
        assert best.perspective_type == "worst_case"

    def test_tie_break_first_and_last(self) -> None:
        perspectives = [
            _perspective("most_likely", "Medium"),
            _perspective("worst_case", "Medium"),
        ]
        ranking = ["High", "Medium", "Low"]

        assert select_best_perspective(perspectives, ranking, "first").perspective_type == "most_likely"
        assert select_best_perspective(perspectives, ranking, "last").perspective_type == "worst_case"

    def test_unranked_confidence_falls_back_to_order(self) -> None:
        perspectives = [_perspective("most_likely", "Low")]
        assert select_best_perspective(perspectives, ["High"]).perspective_type == "most_likely"

    def test_empty_raises(self) -> None:
        with pytest.raises(ValueError):
            select_best_perspective([], ["High"])


# =============================================================================
# SynthesisEnsemble
# =============================================================================


class TestSynthesisEnsemble:
    async def test_all_perspectives_and_meta(self, coordinator) -> None:
        ensemble = SynthesisEnsemble(coordinator, make_agent_suite())
        output = await ensemble(_input())

        assert [p.perspective_type for p in output.individual_perspectives] == list(
            PERSPECTIVE_TYPES
        )
        assert output.meta_synthesis == META_SYNTHESIS
        assert output.error_handling.critical_failures_detected is False
        assert ensemble.errors == []

    async def test_meta_receives_all_five_perspectives(self, coordinator) -> None:
        meta = StubAgent(META_SYNTHESIS)
        await SynthesisEnsemble(coordinator, make_agent_suite(meta_synthesis=meta))(_input())

        assert len(meta.calls[0].perspectives) == len(PERSPECTIVE_TYPES)
        assert meta.calls[0].original_input.initial_answer_text == INITIAL_ANSWER

    async def test_failed_perspective_replaced_by_placeholder(self, coordinator) -> None:
        ensemble = SynthesisEnsemble(
            coordinator,
            make_agent_suite(perspective=failing_agent()),
            perspective_attempts=2,
        )
        output = await ensemble(_input())

        assert len(output.individual_perspectives) == len(PERSPECTIVE_TYPES)
        assert all(p.confidence == "Low" for p in output.individual_perspectives)
        assert sorted(e.agent for e in ensemble.errors) == sorted(
            perspective_agent_name(t) for t in PERSPECTIVE_TYPES
        )
        assert all(e.attempt == 2 for e in ensemble.errors)

    async def test_meta_failure_promotes_best_perspective(self, coordinator) -> None:
        confidences = {"worst_case": "High"}

        def perspective(agent_input):
            ptype = agent_input.perspective_type
            return _perspective(ptype, confidences.get(ptype, "Medium"))

        ensemble = SynthesisEnsemble(
            coordinator,
            make_agent_suite(
                perspective=StubAgent(perspective), meta_synthesis=failing_agent()
            ),
        )
        output = await ensemble(_input())

        assert output.meta_synthesis.summary == "worst_case view"
        assert output.meta_synthesis.confidence == "High"
        assert output.meta_synthesis.perspective_divergence == META_FALLBACK_DIVERGENCE
        assert output.error_handling.critical_failures_detected is True
        assert [e.agent for e in ensemble.errors] == ["meta_synthesis"]
        assert ensemble.errors[0].recovery_strategy is RecoveryStrategy.DEFAULT

    async def test_critical_upstream_errors_are_flagged(self, coordinator) -> None:
        output = await SynthesisEnsemble(coordinator, make_agent_suite())(
            _input(
                errors_encountered=[
                    ErrorDigest(agent="critique", error="x", is_critical_failure=True)
                ]
            )
        )

        assert output.error_handling.critical_failures_detected is True
        assert output.error_handling.failure_impact_description == "Critical errors in: critique"

    async def test_errors_reset_between_runs(self, coordinator) -> None:
        meta = StubAgent(META_SYNTHESIS, fail_times=3)
        ensemble = SynthesisEnsemble(coordinator, make_agent_suite(meta_synthesis=meta))

        await ensemble(_input())
        assert len(ensemble.errors) == 1

        await ensemble(_input())
        assert ensemble.errors == []
