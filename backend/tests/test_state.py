"""Tests for orchestration/state.py -- session state aggregation."""

import pytest

from orchestration.errors import StateOwnershipError
from orchestration.state import (
    INPUT_SUMMARY_LIMIT,
    ErrorInfo,
    PhaseScope,
    RecoveryStrategy,
    create_initial_session_state,
    merge_artifacts,
    merge_state,
    public_state,
    summarize_input,
    write_artifact,
)


def _error(agent: str = "critique") -> ErrorInfo:
    return ErrorInfo(agent=agent, error="boom", recovery_strategy=RecoveryStrategy.DEFAULT)


# =============================================================================
# Initial state
# =============================================================================


class TestInitialState:
    def test_only_seed_fields_present(self) -> None:
        state = create_initial_session_state("Is remote work better?", "sess_1")

        assert state["original_query"] == "Is remote work better?"
        assert state["session_id"] == "sess_1"
        assert state["status"] == "running"
        assert state["errors_encountered"] == []
        assert state["artifacts"] == {}
        assert "initial_answer_text" not in state
        assert "final_refined_synthesis_output" not in state


# =============================================================================
# ErrorInfo
# =============================================================================


class TestErrorInfo:
    def test_is_immutable(self) -> None:
        error = _error()
        with pytest.raises(Exception):
            error.agent = "other"  # type: ignore[misc]

    def test_summarize_input_truncates(self) -> None:
        summary = summarize_input("x" * 500)
        assert len(summary) == INPUT_SUMMARY_LIMIT
        assert summary.endswith("...")

    def test_summarize_input_short_passthrough(self) -> None:
        assert summarize_input({"query": "q"}) == "{'query': 'q'}"


# =============================================================================
# Reducers and merge_state
# =============================================================================


class TestMerge:
    """Append-only errors, unioned artifacts and write-once fields."""

    def test_errors_concatenate_in_order(self) -> None:
        state = {"errors_encountered": [_error("a")]}
        merged = merge_state(state, {"errors_encountered": [_error("b"), _error("c")]})

        assert [e.agent for e in merged["errors_encountered"]] == ["a", "b", "c"]
        assert [e.agent for e in state["errors_encountered"]] == ["a"]

    def test_artifacts_last_write_wins(self) -> None:
        merged = merge_state(
            {"artifacts": {"x": 1, "y": 2}}, {"artifacts": {"y": 3, "z": 4}}
        )
        assert merged["artifacts"] == {"x": 1, "y": 3, "z": 4}

    def test_merge_artifacts_handles_none(self) -> None:
        assert merge_artifacts(None, {"a": 1}) == {"a": 1}
        assert merge_artifacts({"a": 1}, None) == {"a": 1}

    def test_write_artifact_returns_new_map(self) -> None:
        original = {"a": 1}
        updated = write_artifact(original, "b", 2)
        assert updated == {"a": 1, "b": 2}
        assert original == {"a": 1}

    def test_write_once_field_rejects_overwrite(self) -> None:
        state = {"critique": "first"}
        with pytest.raises(StateOwnershipError) as exc_info:
            merge_state(state, {"critique": "second"})
        assert exc_info.value.field_name == "critique"

    def test_write_once_field_accepts_first_write(self) -> None:
        merged = merge_state({}, {"critique": "first"})
        assert merged["critique"] == "first"

    def test_control_fields_replace(self) -> None:
        merged = merge_state({"status": "running"}, {"status": "aborted"})
        assert merged["status"] == "aborted"

    def test_public_state_drops_branch_outcomes(self) -> None:
        state = {"original_query": "q", "branch_outcomes": {"evidence.premortem": {}}}
        assert public_state(state) == {"original_query": "q"}


# =============================================================================
# PhaseScope
# =============================================================================


class TestPhaseScope:
    def test_finish_releases_single_patch(self) -> None:
        scope = PhaseScope("challenge", create_initial_session_state("q", "sess_1"))
        scope.set("critique", "weak evidence")
        scope.add_error(_error())
        scope.add_error(None)
        scope.save_artifact("critique_notes", {"n": 1})

        patch = scope.finish(status="running")

        assert patch["critique"] == "weak evidence"
        assert patch["status"] == "running"
        assert len(patch["errors_encountered"]) == 1
        assert patch["artifacts"] == {"critique_notes": {"n": 1}}

    def test_view_layers_local_writes(self) -> None:
        scope = PhaseScope("intake", create_initial_session_state("q"))
        scope.set("refined_query", "better q")

        assert scope.view["refined_query"] == "better q"
        assert scope.view["original_query"] == "q"

    def test_set_twice_rejected(self) -> None:
        scope = PhaseScope("challenge", {})
        scope.set("critique", "a")
        with pytest.raises(StateOwnershipError):
            scope.set("critique", "b")

    def test_set_field_from_earlier_phase_rejected(self) -> None:
        scope = PhaseScope("challenge", {"initial_answer_text": "answer"})
        with pytest.raises(StateOwnershipError):
            scope.set("initial_answer_text", "other")

    def test_session_id_defaults_to_empty(self) -> None:
        assert PhaseScope("intake", {}).session_id == ""
