"""Phase executors for the six-phase analysis pipeline.

Each public method is a LangGraph node: it reads the session state and
returns a patch. Agent calls go through the RecoveryCoordinator and their
outcomes are folded into a ``PhaseScope``, so a phase contributes its errors
and artifacts exactly once, when it finishes.

Phases 2 and 3 fan out with ``Send``. Every branch writes its outcome into
``branch_outcomes`` under its slot name; the join node reads the slots in
declaration order, which keeps the merged state independent of the order in
which branches completed.
"""

import json
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Literal

import structlog
from langgraph.types import Send
from pydantic import BaseModel

from agents.schemas import (
    AnswerInput,
    ArgumentReconstructionInput,
    ArgumentReconstructionOutput,
    AssumptionList,
    BiasCrossReferenceInput,
    BiasCrossReferenceOutput,
    BiasDetectionInput,
    BiasList,
    ChallengeInput,
    ChallengeOutput,
    ClaimInput,
    ClaimToVerify,
    ConfidenceScoringInput,
    ConfidenceScoringOutput,
    ConflictResolutionInput,
    ConflictResolutionOutput,
    CounterArgumentIntegrationInput,
    CounterArgumentIntegrationOutput,
    CritiqueInput,
    CritiqueOutput,
    ErrorDigest,
    EvidenceList,
    FactVerificationInput,
    FactVerificationOutput,
    FailureModeList,
    HumanReviewOutput,
    ImpactAssessmentInput,
    ImpactAssessmentOutput,
    InformationGapList,
    InitialAnswerInput,
    InitialAnswerOutput,
    MetaSynthesis,
    NuancePreservationInput,
    NuancePreservationOutput,
    PremortemInput,
    QualityCheckInput,
    QualityCheckOutput,
    QueryRefinementInput,
    QueryRefinementOutput,
    RedTeamInput,
    RedTeamOutput,
    RoutingDecision,
    RoutingInput,
    SensitivityAnalysisInput,
    SensitivityAnalysisOutput,
    SynthesisCritiqueInput,
    SynthesisCritiqueOutput,
    SynthesisEnsembleInput,
    SynthesisEnsembleOutput,
    default_argument_reconstruction,
    default_assumptions,
    default_bias_cross_reference,
    default_biases,
    default_challenges,
    default_confidence_scoring,
    default_conflict_resolution,
    default_counter_argument_integration,
    default_critique,
    default_evidence,
    default_fact_verification,
    default_failure_modes,
    default_human_review,
    default_impact_assessment,
    default_information_gaps,
    default_initial_answer,
    default_nuance_preservation,
    default_quality_check,
    default_query_refinement,
    default_red_team,
    default_routing_decision,
    default_sensitivity_analysis,
    default_synthesis_critique,
    default_synthesis_ensemble,
    key_assumption_from,
)
from config import settings
from events.bus import EventBus
from events.types import EventType
from metrics import WorkflowMetricsCollector
from orchestration.coordinator import (
    AgentFn,
    AgentOutcome,
    Degraded,
    Fatal,
    RecoveryCoordinator,
    Validator,
)
from orchestration.ensemble import SynthesisEnsemble
from orchestration.review import build_review_request, decide_human_review
from orchestration.state import ErrorInfo, PhaseScope, public_state

if TYPE_CHECKING:
    from agents.catalog import AgentSuite

logger = structlog.get_logger(__name__)

PHASE_ROLES: dict[str, str] = {
    "intake": "Query Intake",
    "evidence": "Evidence Gathering",
    "challenge": "Analysis & Challenge",
    "structuring": "Pre-Synthesis Structuring",
    "synthesis": "Synthesis & Verification",
    "review": "Human Review",
}

CRITIQUE_INCOMPLETE = "Synthesis critique process incomplete"


# -----------------------------------------------------------------------------
# Fan-out branch specs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class BranchSpec:
    """One fan-out branch.

    Attributes:
        slot: Key of the branch outcome within its phase.
        agent: AgentSuite attribute and circuit key.
        build_input: Builds the agent input from the state snapshot.
        default: Factory for the static default output.
        output_type: Model the agent output is validated against.
        result_attr: Attribute of the output stored in the state.
        field: Session field the result is written to.
        artifact: Artifact name the full output is saved under.
    """

    slot: str
    agent: str
    build_input: Callable[[Mapping[str, Any]], BaseModel]
    default: Callable[[], BaseModel]
    output_type: type[BaseModel]
    result_attr: str
    field: str
    artifact: str


@dataclass(frozen=True)
class BranchOutcome:
    """What a branch leaves in ``branch_outcomes`` for its join."""

    slot: str
    agent: str
    value: Any
    error: ErrorInfo | None = None
    attempts: int = 1


def _answer(state: Mapping[str, Any]) -> str:
    return state.get("initial_answer_text") or ""


EVIDENCE_BRANCHES: tuple[BranchSpec, ...] = (
    BranchSpec(
        slot="assumptions",
        agent="assumptions",
        build_input=lambda s: AnswerInput(answer=_answer(s)),
        default=default_assumptions,
        output_type=AssumptionList,
        result_attr="items",
        field="assumptions",
        artifact="assumptions",
    ),
    BranchSpec(
        slot="supporting_research",
        agent="supporting_research",
        build_input=lambda s: ClaimInput(claim=_answer(s)),
        default=default_evidence,
        output_type=EvidenceList,
        result_attr="items",
        field="aggregated_supporting_research",
        artifact="supporting_research",
    ),
    BranchSpec(
        slot="counter_research",
        agent="counter_research",
        build_input=lambda s: ClaimInput(claim=_answer(s)),
        default=default_evidence,
        output_type=EvidenceList,
        result_attr="items",
        field="aggregated_counter_research",
        artifact="counter_research",
    ),
    BranchSpec(
        slot="premortem",
        agent="premortem",
        build_input=lambda s: PremortemInput(answer=_answer(s)),
        default=default_failure_modes,
        output_type=FailureModeList,
        result_attr="items",
        field="failure_modes",
        artifact="failure_modes",
    ),
    BranchSpec(
        slot="information_gaps",
        agent="information_gaps",
        build_input=lambda s: AnswerInput(answer=_answer(s)),
        default=default_information_gaps,
        output_type=InformationGapList,
        result_attr="items",
        field="information_gaps",
        artifact="information_gaps",
    ),
)

CHALLENGE_BRANCHES: tuple[BranchSpec, ...] = (
    BranchSpec(
        slot="bias_detection",
        agent="bias_detection",
        build_input=lambda s: BiasDetectionInput(
            initial_answer_text=_answer(s),
            aggregated_supporting_research=s.get("aggregated_supporting_research") or [],
            aggregated_counter_research=s.get("aggregated_counter_research") or [],
        ),
        default=default_biases,
        output_type=BiasList,
        result_attr="items",
        field="potential_biases",
        artifact="bias_detection",
    ),
    BranchSpec(
        slot="critique",
        agent="critique",
        build_input=lambda s: CritiqueInput(
            answer=_answer(s),
            evidence=s.get("aggregated_supporting_research") or [],
        ),
        default=default_critique,
        output_type=CritiqueOutput,
        result_attr="critique",
        field="critique",
        artifact="critique",
    ),
    BranchSpec(
        slot="devils_advocate",
        agent="devils_advocate",
        build_input=lambda s: ChallengeInput(answer=_answer(s)),
        default=default_challenges,
        output_type=ChallengeOutput,
        result_attr="challenges",
        field="challenges",
        artifact="challenge",
    ),
    BranchSpec(
        slot="premortem",
        agent="premortem",
        build_input=lambda s: PremortemInput(
            answer=_answer(s),
            known_failure_modes=s.get("failure_modes") or [],
        ),
        default=default_failure_modes,
        output_type=FailureModeList,
        result_attr="items",
        field="premortem_review",
        artifact="premortem",
    ),
)

BRANCHES: dict[str, tuple[BranchSpec, ...]] = {
    "evidence": EVIDENCE_BRANCHES,
    "challenge": CHALLENGE_BRANCHES,
}


def branch_key(phase: str, slot: str) -> str:
    return f"{phase}.{slot}"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _has_final_answer(output: Any) -> bool:
    return bool(InitialAnswerOutput.model_validate(output).final_answer.strip())


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_dump(v) for v in value]
    return value


def refine_synthesis(
    meta: MetaSynthesis, critique: SynthesisCritiqueOutput | None
) -> MetaSynthesis:
    """Fold a synthesis critique back into the meta-synthesis.

    Weakness descriptions and gaps are appended to the remaining
    uncertainties. Without a critique the synthesis is marked incomplete.
    """
    if critique is None:
        extra = [CRITIQUE_INCOMPLETE]
    else:
        gaps = critique.gap_analysis
        extra = [
            *(w.description for w in critique.weaknesses),
            *gaps.evidence_gaps,
            *gaps.logical_gaps,
            *gaps.perspective_gaps,
        ]
    return meta.model_copy(
        update={"remaining_uncertainties": [*meta.remaining_uncertainties, *extra]}
    )


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


# -----------------------------------------------------------------------------
# Executors
# -----------------------------------------------------------------------------


class PhaseExecutors:
    """The six phases of one analysis run, as LangGraph nodes.

    Instances are run-scoped: phase timing is tracked on the instance.

    Attributes:
        coordinator: Recovery policy every agent call goes through.
        agents: The agent suite.
        enable_human_review: Whether phase 6 may escalate to a reviewer.
        review_threshold: Highest synthesis confidence that triggers review.
        event_bus: Optional bus for progress events.
        metrics: Optional workflow metrics collector.
    """

    def __init__(
        self,
        coordinator: RecoveryCoordinator,
        agents: "AgentSuite",
        *,
        enable_human_review: bool = False,
        review_threshold: str = "Low",
        event_bus: EventBus | None = None,
        metrics: WorkflowMetricsCollector | None = None,
        ensemble_ranking: list[str] | None = None,
        ensemble_tie_break: Literal["first", "last"] | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.agents = agents
        self.enable_human_review = enable_human_review
        self.review_threshold = review_threshold
        self.event_bus = event_bus
        self.metrics = metrics
        self.ensemble_ranking = ensemble_ranking
        self.ensemble_tie_break = ensemble_tie_break
        self._phase_started: dict[str, float] = {}

    # -------------------------------------------------------------------------
    # Phase 1: query intake & initial answer
    # -------------------------------------------------------------------------

    async def intake(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = await self._begin("intake", state)
        query = state["original_query"]

        refinement = await self._call(
            scope,
            "query_refinement",
            self.agents.query_refinement,
            QueryRefinementInput(query=query),
            default_query_refinement(query),
            artifact="query_refinement",
        )
        refined = QueryRefinementOutput.model_validate(refinement.value).refined_query.strip()
        scope.set("refined_query", refined or query)

        answer = await self._call(
            scope,
            "initial_answer",
            self.agents.initial_answer,
            InitialAnswerInput(
                refined_query=refined or query,
                max_iterations=settings.initial_answer_max_iterations,
            ),
            default_initial_answer(),
            critical=True,
            validate=_has_final_answer,
            artifact="initial_answer_loop",
        )
        if isinstance(answer, Fatal):
            return await self._abort(scope, answer)

        scope.set(
            "initial_answer_text", InitialAnswerOutput.model_validate(answer.value).final_answer
        )
        return await self._end(scope)

    # -------------------------------------------------------------------------
    # Phase 2: evidence gathering
    # -------------------------------------------------------------------------

    async def route_evidence(self, state: Mapping[str, Any]) -> dict[str, Any]:
        """Plan the evidence phase; the five branches always run."""
        scope = await self._begin("evidence", state)

        outcome = await self._call(
            scope,
            "routing",
            self.agents.routing,
            RoutingInput(
                refined_query=state.get("refined_query") or state["original_query"],
                initial_answer_text=_answer(state),
            ),
            default_routing_decision(),
            artifact="routing_decision",
        )
        routing = RoutingDecision.model_validate(outcome.value)
        scope.set("routing_decision", routing)

        logger.info(
            "routing_strategy",
            session_id=state.get("session_id"),
            approach=routing.analysis_strategy.approach,
            complexity=routing.analysis_strategy.estimated_complexity,
            agents=len(routing.recommended_agents),
        )
        # The evidence phase completes in join_evidence
        return scope.finish()

    def evidence_branches(self, state: Mapping[str, Any]) -> list[Send]:
        return self._fan_out("evidence", "evidence_branch", state)

    async def run_evidence_branch(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._run_branch("evidence", payload)

    async def join_evidence(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = PhaseScope("evidence", state)
        self._fold_branches(scope, state)
        return await self._end(scope)

    # -------------------------------------------------------------------------
    # Phase 3: in-depth analysis & challenge
    # -------------------------------------------------------------------------

    async def start_challenge(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = await self._begin("challenge", state)
        return scope.finish()

    def challenge_branches(self, state: Mapping[str, Any]) -> list[Send]:
        return self._fan_out("challenge", "challenge_branch", state)

    async def run_challenge_branch(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._run_branch("challenge", payload)

    async def join_challenge(self, state: Mapping[str, Any]) -> dict[str, Any]:
        """Fold the stage-1 branches, then run the sequential stage 2."""
        scope = PhaseScope("challenge", state)
        self._fold_branches(scope, state)
        view = scope.view
        answer = _answer(view)
        counter = view.get("aggregated_counter_research") or []

        cross_ref = await self._call(
            scope,
            "bias_cross_reference",
            self.agents.bias_cross_reference,
            BiasCrossReferenceInput(
                potential_biases=view.get("potential_biases") or [],
                initial_answer_text=answer,
                critique_output=view.get("critique") or "",
                aggregated_counter_research=counter,
            ),
            default_bias_cross_reference(),
            artifact="bias_cross_reference",
        )
        scope.set(
            "cross_referenced_bias_report",
            BiasCrossReferenceOutput.model_validate(cross_ref.value),
        )

        conflicts = await self._call(
            scope,
            "conflict_resolution",
            self.agents.conflict_resolution,
            ConflictResolutionInput(
                aggregated_supporting_research=view.get("aggregated_supporting_research") or [],
                aggregated_counter_research=counter,
            ),
            default_conflict_resolution(),
            artifact="conflict_resolution",
        )
        scope.set(
            "conflict_resolution_analysis",
            ConflictResolutionOutput.model_validate(conflicts.value),
        )

        red_team = await self._call(
            scope,
            "red_team",
            self.agents.red_team,
            RedTeamInput(
                initial_argument=answer,
                max_iterations=settings.red_team_max_iterations,
            ),
            default_red_team(answer),
            artifact="red_teaming",
        )
        scope.set(
            "stress_tested_argument",
            RedTeamOutput.model_validate(red_team.value).stress_tested_argument,
        )
        return await self._end(scope)

    # -------------------------------------------------------------------------
    # Phase 4: pre-synthesis structuring & QA
    # -------------------------------------------------------------------------

    async def structuring(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = await self._begin("structuring", state)
        answer = _answer(state)
        supporting = state.get("aggregated_supporting_research") or []
        counter = state.get("aggregated_counter_research") or []
        challenges = state.get("challenges") or []
        critique = state.get("critique") or ""

        reconstruction = await self._call(
            scope,
            "argument_reconstruction",
            self.agents.argument_reconstruction,
            ArgumentReconstructionInput(
                initial_answer_text=answer,
                stress_tested_argument=state.get("stress_tested_argument"),
                critique_output=critique,
                challenge_output=challenges,
                aggregated_counter_research=counter,
            ),
            default_argument_reconstruction(),
            artifact="argument_reconstruction",
        )
        balanced_brief = ArgumentReconstructionOutput.model_validate(
            reconstruction.value
        ).balanced_brief
        scope.set("balanced_brief", balanced_brief)

        integration = await self._call(
            scope,
            "counter_argument_integration",
            self.agents.counter_argument_integration,
            CounterArgumentIntegrationInput(
                balanced_brief=balanced_brief,
                aggregated_counter_research=counter,
                challenge_output=challenges,
            ),
            default_counter_argument_integration(),
            artifact="counter_argument_integration",
        )
        pressure_tested = CounterArgumentIntegrationOutput.model_validate(
            integration.value
        ).pressure_tested_brief
        scope.set("pressure_tested_brief", pressure_tested)

        impact = await self._call(
            scope,
            "impact_assessment",
            self.agents.impact_assessment,
            ImpactAssessmentInput(
                information_gaps=state.get("information_gaps") or [],
                assumptions=state.get("assumptions") or [],
            ),
            default_impact_assessment(),
            artifact="impact_assessment",
        )
        impact_assessments = ImpactAssessmentOutput.model_validate(
            impact.value
        ).impact_assessments
        scope.set("impact_assessments", impact_assessments)

        quality = await self._call(
            scope,
            "quality_check",
            self.agents.quality_check,
            QualityCheckInput(
                critique_output=critique,
                bias_detection_output=_dump(state.get("cross_referenced_bias_report")),
                research_output=_dump(supporting),
                counter_research_output=_dump(counter),
                assumptions_output=_dump(state.get("assumptions") or []),
            ),
            default_quality_check(),
            artifact="quality_check",
        )
        quality_scores = QualityCheckOutput.model_validate(quality.value).component_scores()
        scope.set("quality_scores", quality_scores)

        confidence = await self._call(
            scope,
            "confidence_scoring",
            self.agents.confidence_scoring,
            ConfidenceScoringInput(
                pressure_tested_brief=pressure_tested,
                aggregated_supporting_research=supporting,
                aggregated_counter_research=counter,
                critique_output=critique,
                bias_report=state.get("cross_referenced_bias_report"),
                conflict_resolution_analysis=state.get("conflict_resolution_analysis"),
                impact_assessments=impact_assessments,
                quality_scores=quality_scores,
            ),
            default_confidence_scoring(),
            artifact="confidence_scoring",
        )
        scope.set(
            "overall_confidence",
            ConfidenceScoringOutput.model_validate(confidence.value).overall_confidence,
        )

        sensitivity = await self._call(
            scope,
            "sensitivity_analysis",
            self.agents.sensitivity_analysis,
            SensitivityAnalysisInput(
                original_conclusions=[answer],
                key_assumptions=[
                    key_assumption_from(item) for item in state.get("assumptions") or []
                ],
                synthesis_evidence=supporting,
            ),
            default_sensitivity_analysis(),
            artifact="sensitivity_analysis",
        )
        scope.set(
            "sensitivity_analysis_report",
            SensitivityAnalysisOutput.model_validate(sensitivity.value),
        )
        return await self._end(scope)

    # -------------------------------------------------------------------------
    # Phase 5: synthesis, verification & refinement
    # -------------------------------------------------------------------------

    async def synthesis(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = await self._begin("synthesis", state)
        answer = _answer(state)
        supporting = state.get("aggregated_supporting_research") or []
        counter = state.get("aggregated_counter_research") or []

        ensemble = SynthesisEnsemble(
            self.coordinator,
            self.agents,
            ranking=self.ensemble_ranking,
            tie_break=self.ensemble_tie_break,
            phase="synthesis",
        )
        ensemble_outcome = await self._call(
            scope,
            "synthesis_ensemble",
            ensemble,
            SynthesisEnsembleInput(
                initial_answer_text=answer,
                balanced_brief=state.get("balanced_brief"),
                pressure_tested_brief=state.get("pressure_tested_brief"),
                impact_assessments=state.get("impact_assessments"),
                overall_confidence=state.get("overall_confidence"),
                aggregated_supporting_research=supporting,
                aggregated_counter_research=counter,
                conflict_resolution_analysis=state.get("conflict_resolution_analysis"),
                sensitivity_analysis_report=state.get("sensitivity_analysis_report"),
                errors_encountered=[
                    ErrorDigest(
                        agent=e.agent,
                        error=e.error,
                        is_critical_failure=e.is_critical_failure,
                    )
                    for e in state.get("errors_encountered") or []
                ],
            ),
            default_synthesis_ensemble(),
            max_attempts=1,
            artifact="synthesis_ensemble",
        )
        for error in ensemble.errors:
            scope.add_error(error)
        draft = SynthesisEnsembleOutput.model_validate(ensemble_outcome.value)
        scope.set("draft_synthesis_output", draft)
        meta = draft.meta_synthesis

        verification = await self._call(
            scope,
            "fact_verification",
            self.agents.fact_verification,
            FactVerificationInput(
                claims=[
                    ClaimToVerify(
                        claim=meta.summary,
                        source="synthesis",
                        importance="high",
                        claim_type="factual",
                    )
                ],
                available_evidence=[*supporting, *counter],
                verification_depth="standard",
            ),
            default_fact_verification(),
            artifact="fact_verification",
        )
        fact_checked = FactVerificationOutput.model_validate(verification.value)
        scope.set("fact_checked_synthesis_output", fact_checked)

        nuance = await self._call(
            scope,
            "nuance_preservation",
            self.agents.nuance_preservation,
            NuancePreservationInput(
                original_content=answer,
                synthesized_content=meta.summary,
                analysis_depth="moderate",
            ),
            default_nuance_preservation(),
            artifact="nuance_preservation",
        )
        nuance_report = NuancePreservationOutput.model_validate(nuance.value)
        scope.set("nuance_preservation_report", nuance_report)

        critique = await self._call(
            scope,
            "synthesis_critique",
            self.agents.synthesis_critique,
            SynthesisCritiqueInput(
                synthesis=meta.summary,
                original_data=[answer],
                analysis_context=json.dumps(
                    {
                        "quality_scores": state.get("quality_scores") or {},
                        "fact_verification": fact_checked.verification_summary.model_dump(),
                        "nuance_preservation": nuance_report.preservation_summary.model_dump(),
                    }
                ),
            ),
            default_synthesis_critique(),
            artifact="synthesis_critique",
        )
        scope.set(
            "final_refined_synthesis_output",
            refine_synthesis(
                meta,
                None
                if isinstance(critique, Degraded)
                else SynthesisCritiqueOutput.model_validate(critique.value),
            ),
        )
        return await self._end(scope)

    # -------------------------------------------------------------------------
    # Phase 6: human review & finalization
    # -------------------------------------------------------------------------

    async def review(self, state: Mapping[str, Any]) -> dict[str, Any]:
        scope = await self._begin("review", state)

        if not self.enable_human_review:
            scope.set("human_review_required", False)
            scope.set("human_review_reason", None)
            return await self._end(scope, status="complete")

        final = state.get("final_refined_synthesis_output")
        if final is None:
            final = SynthesisEnsembleOutput.model_validate(
                state["draft_synthesis_output"]
            ).meta_synthesis
        final = MetaSynthesis.model_validate(final)
        errors = state.get("errors_encountered") or []

        decision = decide_human_review(final.confidence, self.review_threshold, errors)
        scope.set("human_review_required", decision.required)
        scope.set("human_review_reason", decision.reason)

        if decision.required:
            logger.info(
                "human_review_triggered",
                session_id=scope.session_id,
                reason=decision.reason,
            )
            request = build_review_request(
                state["original_query"],
                final.model_dump(mode="json"),
                final.confidence,
                final.summary,
                decision.reason or "",
                errors,
            )
            outcome = await self._call(
                scope,
                "human_review",
                self.agents.human_review,
                request,
                default_human_review(_utc_now()),
                artifact="human_review",
            )
            review = HumanReviewOutput.model_validate(outcome.value)
            scope.set("human_review", review)
            await self._emit(
                EventType.HUMAN_REVIEW_REQUESTED,
                scope,
                agent_id="human_review",
                review_id=review.review_id,
                review_type=request.review_type,
                urgency=request.review_request.urgency,
                reason=decision.reason,
            )

        return await self._end(scope, status="complete")

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    @staticmethod
    def route_after_intake(state: Mapping[str, Any]) -> str:
        return "end" if state.get("status") == "aborted" else "continue"

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _invoke(
        self,
        session_id: str,
        phase: str,
        agent_name: str,
        agent_fn: AgentFn,
        agent_input: Any,
        default_output: Any,
        *,
        critical: bool = False,
        validate: Validator | None = None,
        max_attempts: int | None = None,
    ) -> AgentOutcome:
        outcome = await self.coordinator.invoke(
            agent_name,
            agent_fn,
            agent_input,
            default_output,
            critical=critical,
            validate=validate,
            output_type=type(default_output) if isinstance(default_output, BaseModel) else None,
            phase=phase,
            max_attempts=max_attempts,
        )

        if self.metrics is not None and session_id:
            self.metrics.record_agent(
                session_id,
                phase,
                agent_name,
                attempts=outcome.attempts,
                failed=outcome.error is not None,
            )

        if isinstance(outcome, Fatal):
            event_type = EventType.AGENT_FAILED
        elif isinstance(outcome, Degraded):
            event_type = EventType.AGENT_DEGRADED
        elif outcome.error is not None:
            event_type = EventType.AGENT_RECOVERED
        else:
            event_type = EventType.AGENT_COMPLETE

        if self.event_bus is not None and session_id:
            await self.event_bus.emit(
                event_type,
                session_id,
                agent_id=agent_name,
                agent_role=PHASE_ROLES.get(phase),
                phase=phase,
                attempts=outcome.attempts,
                duration_ms=outcome.duration_ms,
                error=outcome.error.error if outcome.error else None,
                recovery_strategy=(
                    outcome.error.recovery_strategy if outcome.error else None
                ),
            )
        return outcome

    async def _call(
        self,
        scope: PhaseScope,
        agent_name: str,
        agent_fn: AgentFn,
        agent_input: Any,
        default_output: Any,
        *,
        critical: bool = False,
        validate: Validator | None = None,
        max_attempts: int | None = None,
        artifact: str | None = None,
    ) -> AgentOutcome:
        """Invoke an agent within a phase and record the outcome on the scope."""
        outcome = await self._invoke(
            scope.session_id,
            scope.phase,
            agent_name,
            agent_fn,
            agent_input,
            default_output,
            critical=critical,
            validate=validate,
            max_attempts=max_attempts,
        )
        scope.add_error(outcome.error)
        if artifact is not None and not isinstance(outcome, Fatal):
            scope.save_artifact(artifact, outcome.value)
        return outcome

    def _fan_out(self, phase: str, node: str, state: Mapping[str, Any]) -> list[Send]:
        snapshot = public_state(state)
        sends = [
            Send(node, {"phase": phase, "slot": spec.slot, "state": snapshot})
            for spec in BRANCHES[phase]
        ]
        logger.debug(
            "phase_fan_out",
            session_id=state.get("session_id"),
            phase=phase,
            branch_count=len(sends),
        )
        return sends

    async def _run_branch(self, phase: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        spec = _spec(phase, payload["slot"])
        snapshot = payload["state"]
        outcome = await self._invoke(
            snapshot.get("session_id") or "",
            phase,
            spec.agent,
            getattr(self.agents, spec.agent),
            spec.build_input(snapshot),
            spec.default(),
        )
        return {
            "branch_outcomes": {
                branch_key(phase, spec.slot): BranchOutcome(
                    slot=spec.slot,
                    agent=spec.agent,
                    value=outcome.value,
                    error=outcome.error,
                    attempts=outcome.attempts,
                )
            }
        }

    def _fold_branches(self, scope: PhaseScope, state: Mapping[str, Any]) -> None:
        """Merge branch outcomes in declaration order, never arrival order."""
        outcomes = state.get("branch_outcomes") or {}
        for spec in BRANCHES[scope.phase]:
            outcome: BranchOutcome | None = outcomes.get(branch_key(scope.phase, spec.slot))
            if outcome is None:
                # A branch that never reported is treated as degraded
                value = spec.default()
                logger.warning("branch_outcome_missing", phase=scope.phase, slot=spec.slot)
            else:
                scope.add_error(outcome.error)
                value = spec.output_type.model_validate(outcome.value)
            scope.set(spec.field, getattr(value, spec.result_attr))
            scope.save_artifact(spec.artifact, value)

    async def _begin(self, phase: str, state: Mapping[str, Any]) -> PhaseScope:
        scope = PhaseScope(phase, state)
        self._phase_started[phase] = time.monotonic()
        session_id = scope.session_id
        if self.metrics is not None and session_id:
            self.metrics.start_phase(session_id, phase)
        logger.info("phase_started", session_id=session_id, phase=phase)
        await self._emit(EventType.PHASE_STARTED, scope)
        return scope

    async def _end(self, scope: PhaseScope, **control: Any) -> dict[str, Any]:
        """Close a phase and release its patch; ``control`` sets run fields."""
        session_id = scope.session_id
        duration_ms = self._phase_duration_ms(scope.phase)
        if self.metrics is not None and session_id:
            self.metrics.complete_phase(session_id, scope.phase)
        logger.info(
            "phase_complete",
            session_id=session_id,
            phase=scope.phase,
            duration_ms=duration_ms,
            error_count=len(scope.errors),
        )
        await self._emit(
            EventType.PHASE_COMPLETE,
            scope,
            duration_ms=duration_ms,
            error_count=len(scope.errors),
        )
        return scope.finish(**control)

    async def _abort(self, scope: PhaseScope, outcome: Fatal) -> dict[str, Any]:
        session_id = scope.session_id
        reason = str(outcome.exception)
        if self.metrics is not None and session_id:
            self.metrics.complete_phase(session_id, scope.phase, "aborted")
        logger.error(
            "phase_aborted",
            session_id=session_id,
            phase=scope.phase,
            agent=outcome.error.agent,
            reason=reason,
        )
        await self._emit(EventType.PHASE_ABORTED, scope, reason=reason)
        return scope.finish(status="aborted", abort_reason=reason)

    async def _emit(
        self,
        event_type: EventType,
        scope: PhaseScope,
        *,
        agent_id: str | None = None,
        **data: Any,
    ) -> None:
        session_id = scope.session_id
        if self.event_bus is None or not session_id:
            return
        await self.event_bus.emit(
            event_type,
            session_id,
            agent_id=agent_id,
            agent_role=PHASE_ROLES.get(scope.phase),
            phase=scope.phase,
            **data,
        )

    def _phase_duration_ms(self, phase: str) -> int:
        started = self._phase_started.get(phase)
        if started is None:
            return 0
        return int((time.monotonic() - started) * 1000)


def _spec(phase: str, slot: str) -> BranchSpec:
    for spec in BRANCHES[phase]:
        if spec.slot == slot:
            return spec
    raise KeyError(f"Unknown {phase} branch: {slot}")


