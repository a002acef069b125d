"""Session state aggregation for the analysis pipeline.

The session state is a LangGraph ``TypedDict`` threaded through every phase.
Phases never mutate it; they return patches that are layered on top:

- Per-phase result fields are written once, by the phase that owns them.
- ``errors_encountered`` is append-only (``operator.add`` reducer).
- ``artifacts`` is a union with last-write-wins per name.
- ``branch_outcomes`` collects fan-out results keyed by slot name, so the
  join never depends on the order in which branches finished.
"""

import operator
import time
from collections.abc import Mapping
from enum import StrEnum
from typing import Annotated, Any, Literal, TypedDict

from pydantic import BaseModel, ConfigDict, Field

from agents.schemas import (
    AssumptionItem,
    BalancedBrief,
    BiasCrossReferenceOutput,
    BiasItem,
    ConflictResolutionOutput,
    EvidenceItem,
    FactVerificationOutput,
    FailureMode,
    HumanReviewOutput,
    ImpactAssessments,
    InformationGap,
    MetaSynthesis,
    NuancePreservationOutput,
    OverallConfidence,
    PressureTestedBrief,
    RoutingDecision,
    SensitivityAnalysisOutput,
    SynthesisEnsembleOutput,
)
from orchestration.errors import StateOwnershipError

INPUT_SUMMARY_LIMIT = 200


class RecoveryStrategy(StrEnum):
    """How a failed agent call was resolved."""

    RETRY = "retry"
    BACKUP_AGENT = "backup_agent"
    DEFAULT = "default"
    NONE = "none"


class ErrorInfo(BaseModel):
    """One failed agent call. Immutable once appended to the error log.

    Attributes:
        agent: Agent name (circuit key) that failed.
        error: Message of the last underlying error.
        timestamp: Unix timestamp of when the failure was resolved.
        recovery_attempted: Whether retries, a backup or a default were tried.
        recovery_strategy: What finally resolved the call.
        phase: Phase the call belonged to.
        input_summary: Truncated rendering of the agent input.
        attempt: Attempts made against the primary agent.
        is_critical_failure: True when a critical agent could not be recovered.
    """

    model_config = ConfigDict(frozen=True)

    agent: str
    error: str
    timestamp: float = Field(default_factory=time.time)
    recovery_attempted: bool = False
    recovery_strategy: RecoveryStrategy | None = None
    phase: str | None = None
    input_summary: str | None = None
    attempt: int | None = None
    is_critical_failure: bool = False


def summarize_input(value: Any, limit: int = INPUT_SUMMARY_LIMIT) -> str:
    """Render an agent input for the error log, truncated to ``limit`` chars."""
    if isinstance(value, BaseModel):
        text = value.model_dump_json()
    else:
        text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


# -----------------------------------------------------------------------------
# Reducers
# -----------------------------------------------------------------------------


def merge_artifacts(
    left: Mapping[str, Any] | None, right: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Union two artifact maps; names in ``right`` win."""
    return {**(left or {}), **(right or {})}


def merge_branch_outcomes(
    left: Mapping[str, Any] | None, right: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Fold fan-out results into one map keyed by slot name."""
    return {**(left or {}), **(right or {})}


def write_artifact(artifacts: Mapping[str, Any], name: str, data: Any) -> dict[str, Any]:
    """Return a new artifact map with ``name`` set to ``data``."""
    return merge_artifacts(artifacts, {name: data})


# -----------------------------------------------------------------------------
# State Schema
# -----------------------------------------------------------------------------


RunStatus = Literal["running", "aborted", "complete"]


class SessionState(TypedDict, total=False):
    """State threaded through the six-phase pipeline.

    Only ``original_query``, ``errors_encountered`` and ``artifacts`` exist
    from the start; every other result field appears when its producing
    phase runs.
    """

    session_id: str
    status: RunStatus
    abort_reason: str | None

    original_query: str
    refined_query: str

    # Phase 1
    initial_answer_text: str

    # Phase 2
    routing_decision: RoutingDecision
    assumptions: list[AssumptionItem]
    aggregated_supporting_research: list[EvidenceItem]
    aggregated_counter_research: list[EvidenceItem]
    failure_modes: list[FailureMode]
    information_gaps: list[InformationGap]

    # Phase 3
    potential_biases: list[BiasItem]
    critique: str
    challenges: list[str]
    premortem_review: list[FailureMode]
    cross_referenced_bias_report: BiasCrossReferenceOutput
    conflict_resolution_analysis: ConflictResolutionOutput
    stress_tested_argument: str

    # Phase 4
    balanced_brief: BalancedBrief
    pressure_tested_brief: PressureTestedBrief
    impact_assessments: ImpactAssessments
    quality_scores: dict[str, float]
    overall_confidence: OverallConfidence
    sensitivity_analysis_report: SensitivityAnalysisOutput

    # Phase 5
    draft_synthesis_output: SynthesisEnsembleOutput
    fact_checked_synthesis_output: FactVerificationOutput
    nuance_preservation_report: NuancePreservationOutput
    final_refined_synthesis_output: MetaSynthesis

    # Phase 6
    human_review_required: bool
    human_review_reason: str | None
    human_review: HumanReviewOutput

    errors_encountered: Annotated[list[ErrorInfo], operator.add]
    artifacts: Annotated[dict[str, Any], merge_artifacts]
    branch_outcomes: Annotated[dict[str, Any], merge_branch_outcomes]


PHASE_FIELDS: dict[str, tuple[str, ...]] = {
    "intake": ("refined_query", "initial_answer_text"),
    "evidence": (
        "routing_decision",
        "assumptions",
        "aggregated_supporting_research",
        "aggregated_counter_research",
        "failure_modes",
        "information_gaps",
    ),
    "challenge": (
        "potential_biases",
        "critique",
        "challenges",
        "premortem_review",
        "cross_referenced_bias_report",
        "conflict_resolution_analysis",
        "stress_tested_argument",
    ),
    "structuring": (
        "balanced_brief",
        "pressure_tested_brief",
        "impact_assessments",
        "quality_scores",
        "overall_confidence",
        "sensitivity_analysis_report",
    ),
    "synthesis": (
        "draft_synthesis_output",
        "fact_checked_synthesis_output",
        "nuance_preservation_report",
        "final_refined_synthesis_output",
    ),
    "review": ("human_review_required", "human_review_reason", "human_review"),
}

WRITE_ONCE_FIELDS = frozenset(
    field for fields in PHASE_FIELDS.values() for field in fields
)

INTERNAL_FIELDS = frozenset({"branch_outcomes"})


def create_initial_session_state(query: str, session_id: str = "") -> SessionState:
    """Create the state a run starts from.

    Args:
        query: The user's original query.
        session_id: Session ID used for event emission.

    Returns:
        Initial SessionState dict
    """
    return SessionState(
        session_id=session_id,
        status="running",
        abort_reason=None,
        original_query=query,
        errors_encountered=[],
        artifacts={},
        branch_outcomes={},
    )


def merge_state(state: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """Layer ``patch`` over ``state``.

    ``errors_encountered`` is concatenated and ``artifacts`` is unioned;
    every other key is replaced. Write-once result fields that are already
    populated cannot be replaced.

    Raises:
        StateOwnershipError: If the patch overwrites a populated result field.
    """
    merged = dict(state)
    for key, value in patch.items():
        if key == "errors_encountered":
            merged[key] = [*state.get(key, []), *value]
        elif key == "artifacts":
            merged[key] = merge_artifacts(state.get(key), value)
        elif key == "branch_outcomes":
            merged[key] = merge_branch_outcomes(state.get(key), value)
        elif key in WRITE_ONCE_FIELDS and state.get(key) is not None:
            raise StateOwnershipError(key)
        else:
            merged[key] = value
    return merged


def public_state(state: Mapping[str, Any]) -> dict[str, Any]:
    """Drop internal channels before handing the state to callers."""
    return {k: v for k, v in state.items() if k not in INTERNAL_FIELDS}


class PhaseScope:
    """Local accumulator for one phase.

    Result fields, errors and artifacts are collected here and released as a
    single patch by ``finish``, so a phase can be run and inspected in
    isolation.
    """

    def __init__(self, phase: str, state: Mapping[str, Any]) -> None:
        self.phase = phase
        self._state = state
        self._fields: dict[str, Any] = {}
        self.errors: list[ErrorInfo] = []
        self.artifacts: dict[str, Any] = {}

    @property
    def session_id(self) -> str:
        return self._state.get("session_id") or ""

    @property
    def view(self) -> dict[str, Any]:
        """The input state with this phase's writes so far layered on top."""
        return merge_state(self._state, self._fields)

    def set(self, field: str, value: Any) -> None:
        if field in self._fields or (
            field in WRITE_ONCE_FIELDS and self._state.get(field) is not None
        ):
            raise StateOwnershipError(field)
        self._fields[field] = value

    def add_error(self, error: ErrorInfo | None) -> None:
        if error is not None:
            self.errors.append(error)

    def save_artifact(self, name: str, data: Any) -> None:
        self.artifacts = write_artifact(self.artifacts, name, data)

    def finish(self, **control: Any) -> dict[str, Any]:
        """Build the phase patch; errors are merged exactly once, here."""
        return {
            **self._fields,
            **control,
            "errors_encountered": list(self.errors),
            "artifacts": dict(self.artifacts),
        }
