"""Pydantic contracts for every analysis agent.

Each agent takes one input model and returns one output model. Agents whose
natural result is a list or a bare string return a small wrapper (``items``,
``critique``, ``challenges``) so every output is a JSON object the LLM can
emit and pydantic can validate.

The ``default_*`` factories build the static value substituted when an agent
cannot be recovered. They return fresh objects on every call so a degraded
result never aliases another run's state.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Confidence = Literal["High", "Medium", "Low"]
Risk = Literal["High", "Medium", "Low"]
EvidenceQuality = Literal["high", "moderate", "low"]
Severity = Literal["high", "medium", "low"]

PerspectiveType = Literal[
    "most_likely",
    "worst_case",
    "best_case",
    "high_agreement_focus",
    "high_disagreement_focus",
]

PERSPECTIVE_TYPES: tuple[PerspectiveType, ...] = (
    "most_likely",
    "worst_case",
    "best_case",
    "high_agreement_focus",
    "high_disagreement_focus",
)


class AgentModel(BaseModel):
    """Base for agent contracts; tolerant of extra keys emitted by models."""

    model_config = ConfigDict(extra="ignore")


# -----------------------------------------------------------------------------
# Shared items
# -----------------------------------------------------------------------------


class EvidenceItem(AgentModel):
    claim: str = Field(description="Specific aspect of the claim being supported or challenged")
    support: str = Field(description="Evidence with statistics, studies or expert consensus")
    quality: EvidenceQuality
    source: str = Field(description="Credible source citation")


class AssumptionItem(AgentModel):
    assumption: str = Field(description="Hidden assumption being made")
    risk: Risk
    alternative: str = Field(description="Alternative perspective that challenges it")


class FailureMode(AgentModel):
    failure: str = Field(description="Specific way the answer could fail")
    probability: str = Field(description="High (60-80%) | Moderate (30-60%) | Low (10-30%)")
    mitigation: str = Field(description="Concrete steps to prevent or handle the failure")


class InformationGap(AgentModel):
    gap: str = Field(description="Missing information critical to evaluating the answer")
    impact: Risk


BiasType = Literal[
    "confirmation_bias",
    "anchoring_bias",
    "availability_heuristic",
    "recency_bias",
    "selection_bias",
    "framing_effect",
    "overconfidence_bias",
    "authority_bias",
    "groupthink",
    "status_quo_bias",
    "sunk_cost_fallacy",
    "optimism_bias",
    "pessimism_bias",
    "hindsight_bias",
    "correlation_causation_fallacy",
]


class BiasItem(AgentModel):
    bias_type: BiasType
    location: Literal[
        "initial_answer", "supporting_research", "counter_research", "overall_framing"
    ]
    description: str
    evidence: str = Field(description="Text or pattern that indicates the bias")
    severity: Severity
    mitigation_suggestion: str


# -----------------------------------------------------------------------------
# Phase 1: query intake & initial answer
# -----------------------------------------------------------------------------


class QueryRefinementInput(AgentModel):
    query: str


class QueryIssue(AgentModel):
    issue_type: Literal[
        "ambiguity",
        "vagueness",
        "embedded_assumption",
        "scope_too_broad",
        "scope_too_narrow",
        "loaded_question",
    ]
    description: str


class QueryRefinementOutput(AgentModel):
    original_query: str
    refined_query: str = Field(description="The clarified, unbiased, well-defined question")
    refinement_reason: str
    identified_issues: list[QueryIssue] = Field(default_factory=list)
    clarification_questions: list[str] = Field(default_factory=list)


def default_query_refinement(query: str) -> QueryRefinementOutput:
    return QueryRefinementOutput(
        original_query=query,
        refined_query=query,
        refinement_reason="Query refinement failed",
    )


class InitialAnswerInput(AgentModel):
    refined_query: str
    max_iterations: int = 3


class QuickCritique(AgentModel):
    """Critique of one draft inside the initial-answer loop."""

    overall_quality: Literal["excellent", "good", "needs_improvement", "poor"]
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[str] = Field(default_factory=list)
    specific_improvements: list[str] = Field(default_factory=list)
    is_satisfactory: bool


class DraftRequest(AgentModel):
    """One drafting step; the previous draft and critique are set when improving."""

    question: str
    previous_answer: str | None = None
    critique: QuickCritique | None = None


class DraftReview(AgentModel):
    question: str
    answer: str


class DraftAnswer(AgentModel):
    answer: str


class AnswerIteration(AgentModel):
    iteration: int
    answer: str
    critique: str
    improvements: list[str] = Field(default_factory=list)


class InitialAnswerOutput(AgentModel):
    final_answer: str
    iterations: int
    improvement_history: list[AnswerIteration] = Field(default_factory=list)


def default_initial_answer() -> InitialAnswerOutput:
    return InitialAnswerOutput(
        final_answer="Initial answer generation failed", iterations=0
    )


# -----------------------------------------------------------------------------
# Phase 2: evidence gathering
# -----------------------------------------------------------------------------


EVIDENCE_AGENTS = [
    "assumptions",
    "supporting_research",
    "counter_research",
    "premortem",
    "information_gaps",
    "bias_detection",
    "critique",
    "conflict_resolution",
]


class RoutingInput(AgentModel):
    refined_query: str
    initial_answer_text: str
    available_agents: list[str] = Field(default_factory=lambda: list(EVIDENCE_AGENTS))


class AgentRecommendation(AgentModel):
    agent_name: str
    priority: Literal["high", "medium", "low"]
    reasoning: str
    execution_order: int = Field(ge=1, le=10)


class SequentialDependency(AgentModel):
    dependent: str
    depends_on: str
    reason: str


class AnalysisStrategy(AgentModel):
    approach: Literal["comprehensive", "focused", "minimal", "exploratory"]
    reasoning: str
    estimated_complexity: Literal["low", "medium", "high", "very_high"]
    risk_level: Literal["low", "medium", "high", "critical"]


class RoutingOptimizations(AgentModel):
    can_skip_agents: list[str] = Field(default_factory=list)
    prioritize_agents: list[str] = Field(default_factory=list)
    resource_allocation: Literal["light", "standard", "intensive"] = "standard"


class RoutingDecision(AgentModel):
    recommended_agents: list[AgentRecommendation]
    parallel_execution_groups: list[list[str]] = Field(default_factory=list)
    sequential_dependencies: list[SequentialDependency] = Field(default_factory=list)
    analysis_strategy: AnalysisStrategy
    optimizations: RoutingOptimizations = Field(default_factory=RoutingOptimizations)


def default_routing_decision() -> RoutingDecision:
    return RoutingDecision(
        recommended_agents=[
            AgentRecommendation(
                agent_name="assumptions",
                priority="high",
                reasoning="Default routing - assumptions analysis is critical for most queries",
                execution_order=1,
            ),
            AgentRecommendation(
                agent_name="supporting_research",
                priority="high",
                reasoning="Default routing - evidence gathering is essential",
                execution_order=2,
            ),
        ],
        parallel_execution_groups=[
            ["assumptions", "supporting_research", "counter_research"]
        ],
        analysis_strategy=AnalysisStrategy(
            approach="comprehensive",
            reasoning="Default comprehensive analysis due to routing failure",
            estimated_complexity="medium",
            risk_level="medium",
        ),
        optimizations=RoutingOptimizations(
            prioritize_agents=["assumptions", "supporting_research"],
        ),
    )


class AnswerInput(AgentModel):
    """Input for agents that analyze the initial answer text."""

    answer: str


class ClaimInput(AgentModel):
    """Input for the research agents."""

    claim: str


class PremortemInput(AgentModel):
    answer: str
    known_failure_modes: list[FailureMode] = Field(
        default_factory=list,
        description="Failure modes from an earlier pass, to deepen rather than repeat",
    )


class AssumptionList(AgentModel):
    items: list[AssumptionItem]


class EvidenceList(AgentModel):
    items: list[EvidenceItem]


class FailureModeList(AgentModel):
    items: list[FailureMode]


class InformationGapList(AgentModel):
    items: list[InformationGap]


def default_assumptions() -> AssumptionList:
    return AssumptionList(items=[])


def default_evidence() -> EvidenceList:
    return EvidenceList(items=[])


def default_failure_modes() -> FailureModeList:
    return FailureModeList(items=[])


def default_information_gaps() -> InformationGapList:
    return InformationGapList(items=[])


# -----------------------------------------------------------------------------
# Phase 3: in-depth analysis & challenge
# -----------------------------------------------------------------------------


class BiasDetectionInput(AgentModel):
    initial_answer_text: str
    aggregated_supporting_research: list[EvidenceItem]
    aggregated_counter_research: list[EvidenceItem]


class BiasList(AgentModel):
    items: list[BiasItem]


def default_biases() -> BiasList:
    return BiasList(items=[])


class CritiqueInput(AgentModel):
    answer: str
    evidence: list[EvidenceItem]


class CritiqueOutput(AgentModel):
    critique: str


def default_critique() -> CritiqueOutput:
    return CritiqueOutput(critique="Critique generation failed.")


class ChallengeInput(AgentModel):
    answer: str
    critique: str = ""


class ChallengeOutput(AgentModel):
    challenges: list[str]


def default_challenges() -> ChallengeOutput:
    return ChallengeOutput(challenges=[])


class BiasCrossReferenceInput(AgentModel):
    potential_biases: list[BiasItem]
    initial_answer_text: str
    critique_output: str
    aggregated_counter_research: list[EvidenceItem]


class OriginalBias(AgentModel):
    bias_type: str
    description: str
    severity: Severity


class CrossReferencedBias(AgentModel):
    original_bias: OriginalBias
    addressed_in_critique: bool
    addressed_by_counter_evidence: bool
    conflicting_points: list[str] = Field(default_factory=list)
    unaddressed_concerns: list[str] = Field(default_factory=list)
    recommended_actions: list[str] = Field(default_factory=list)
    overall_risk: Literal["critical", "high", "medium", "low"]


class BiasCrossReferenceOutput(AgentModel):
    cross_referenced_biases: list[CrossReferencedBias] = Field(default_factory=list)
    unaddressed_bias_count: int = 0
    critical_biases_requiring_attention: list[str] = Field(default_factory=list)
    overall_bias_assessment: str


def default_bias_cross_reference() -> BiasCrossReferenceOutput:
    return BiasCrossReferenceOutput(
        overall_bias_assessment="Bias cross-referencing failed - bias status unknown",
    )


class ConflictResolutionInput(AgentModel):
    aggregated_supporting_research: list[EvidenceItem]
    aggregated_counter_research: list[EvidenceItem]


class EvidenceConflict(AgentModel):
    conflict_type: Literal[
        "direct_contradiction",
        "partial_disagreement",
        "different_interpretation",
        "scope_mismatch",
        "temporal_difference",
    ]
    supporting_claim: str
    counter_claim: str
    conflict_description: str
    possible_explanations: list[str] = Field(default_factory=list)
    more_reliable: Literal["supporting", "counter", "equal"]
    reliability_reasoning: str
    impact_on_analysis: Literal["critical", "significant", "moderate", "minor"]
    resolution_suggestion: str


class ConflictResolutionOutput(AgentModel):
    identified_conflicts: list[EvidenceConflict] = Field(default_factory=list)
    total_conflicts_found: int = 0
    critical_conflicts: list[str] = Field(default_factory=list)
    overall_reliability_assessment: str
    synthesis_guidance: str


def default_conflict_resolution() -> ConflictResolutionOutput:
    return ConflictResolutionOutput(
        overall_reliability_assessment="Conflict resolution failed",
        synthesis_guidance="Treat supporting and counter evidence as unreconciled",
    )


class RedTeamInput(AgentModel):
    initial_argument: str
    max_iterations: int = 3


class RedTeamChallengeInput(AgentModel):
    argument: str
    previous_challenges: list[str] = Field(default_factory=list)


class RedTeamRefineInput(AgentModel):
    argument: str
    challenges: list[str]


class RedTeamChallenges(AgentModel):
    """One round of adversarial challenges against the current argument."""

    challenges: list[str]
    challenge_strength: Literal["strong", "moderate", "weak"]
    continue_iterating: bool


class RedTeamRefinement(AgentModel):
    refined_argument: str
    refinements: list[str] = Field(default_factory=list)
    strength_score: int = Field(ge=0, le=100)


class RedTeamIteration(AgentModel):
    iteration: int
    argument: str
    challenges: list[str] = Field(default_factory=list)
    refinements: list[str] = Field(default_factory=list)
    strength_score: int = Field(ge=0, le=100)


class StrengthAssessment(AgentModel):
    overall_strength: Literal["very_strong", "strong", "moderate", "weak"]
    surviving_challenges: list[str] = Field(default_factory=list)
    addressed_challenges: list[str] = Field(default_factory=list)
    robustness_score: int = Field(ge=0, le=100)


class RedTeamOutput(AgentModel):
    stress_tested_argument: str
    iterations: int
    improvement_history: list[RedTeamIteration] = Field(default_factory=list)
    final_strength_assessment: StrengthAssessment


def default_red_team(initial_argument: str) -> RedTeamOutput:
    return RedTeamOutput(
        stress_tested_argument=initial_argument,
        iterations=0,
        final_strength_assessment=StrengthAssessment(
            overall_strength="weak", robustness_score=0
        ),
    )


# -----------------------------------------------------------------------------
# Phase 4: pre-synthesis structuring & QA
# -----------------------------------------------------------------------------


class ArgumentReconstructionInput(AgentModel):
    initial_answer_text: str
    stress_tested_argument: str | None = None
    critique_output: str
    challenge_output: list[str]
    aggregated_counter_research: list[EvidenceItem]


class KeyPosition(AgentModel):
    position: str
    support_level: Literal["strong", "moderate", "weak"]
    evidence: list[str] = Field(default_factory=list)


class MajorCritique(AgentModel):
    critique: str
    severity: Severity
    addressed: bool


class CounterPosition(AgentModel):
    position: str
    evidence: str
    strength: Literal["strong", "moderate", "weak"]


class BalancedBrief(AgentModel):
    neutral_summary: str
    key_positions: list[KeyPosition] = Field(default_factory=list)
    major_critiques: list[MajorCritique] = Field(default_factory=list)
    counter_positions: list[CounterPosition] = Field(default_factory=list)
    unresolved: list[str] = Field(default_factory=list)


class BiasCheckResults(AgentModel):
    anchoring_bias_risk: Severity
    mitigation_applied: list[str] = Field(default_factory=list)


class ArgumentReconstructionOutput(AgentModel):
    balanced_brief: BalancedBrief
    reconstruction_approach: str
    bias_check_results: BiasCheckResults


def default_argument_reconstruction() -> ArgumentReconstructionOutput:
    return ArgumentReconstructionOutput(
        balanced_brief=BalancedBrief(neutral_summary="Unable to reconstruct argument"),
        reconstruction_approach="Reconstruction failed",
        bias_check_results=BiasCheckResults(anchoring_bias_risk="high"),
    )


class CounterArgumentIntegrationInput(AgentModel):
    balanced_brief: BalancedBrief
    aggregated_counter_research: list[EvidenceItem]
    challenge_output: list[str]


class ClaimAndCounterclaim(AgentModel):
    original_claim: str
    counter_claim: str
    resolution: Literal[
        "counter_stronger", "original_stronger", "both_valid", "requires_more_evidence"
    ]
    integrated_position: str
    confidence_impact: Literal["increases", "decreases", "neutral"]


class RevisedPosition(AgentModel):
    original_position: str
    revised_position: str
    revision_reason: str


class PressureTestedBrief(AgentModel):
    integrated_summary: str
    claims_and_counterclaims: list[ClaimAndCounterclaim] = Field(default_factory=list)
    revised_positions: list[RevisedPosition] = Field(default_factory=list)
    strengthened_points: list[str] = Field(default_factory=list)
    invalidated_points: list[str] = Field(default_factory=list)


class IntegrationMetrics(AgentModel):
    counter_evidence_addressed: float = 0
    challenges_integrated: float = 0
    positions_revised: int = 0


class CounterArgumentIntegrationOutput(AgentModel):
    pressure_tested_brief: PressureTestedBrief
    integration_metrics: IntegrationMetrics = Field(default_factory=IntegrationMetrics)
    integration_quality: Literal["comprehensive", "substantial", "partial", "minimal"]


def default_counter_argument_integration() -> CounterArgumentIntegrationOutput:
    return CounterArgumentIntegrationOutput(
        pressure_tested_brief=PressureTestedBrief(
            integrated_summary="Unable to integrate counter-arguments"
        ),
        integration_quality="minimal",
    )


class ImpactAssessmentInput(AgentModel):
    information_gaps: list[InformationGap]
    assumptions: list[AssumptionItem]


class GapImpact(AgentModel):
    gap: str
    original_impact_rating: Risk
    detailed_impact: str
    consequences_if_unfilled: list[str] = Field(default_factory=list)
    confidence_effect: Literal["severe_reduction", "moderate_reduction", "minor_reduction"]
    mitigation_strategies: list[str] = Field(default_factory=list)


class AssumptionImpact(AgentModel):
    assumption: str
    original_risk_rating: Risk
    detailed_impact: str
    consequences_if_false: list[str] = Field(default_factory=list)
    probability_of_being_false: Severity
    cascading_effects: list[str] = Field(default_factory=list)


class CompoundedRisk(AgentModel):
    description: str
    risk_level: Literal["critical", "high", "medium", "low"]
    scenario: str


class ImpactAssessments(AgentModel):
    overall_impact_summary: str
    critical_gap_impacts: list[GapImpact] = Field(default_factory=list)
    critical_assumption_impacts: list[AssumptionImpact] = Field(default_factory=list)
    compounded_risks: list[CompoundedRisk] = Field(default_factory=list)


class RecommendedAction(AgentModel):
    action: str
    priority: Literal["immediate", "high", "medium", "low"]
    addresses_gaps: list[str] = Field(default_factory=list)
    addresses_assumptions: list[str] = Field(default_factory=list)


class ConfidenceCeiling(AgentModel):
    max_confidence_given_gaps: Confidence
    reasoning: str


class ImpactAssessmentOutput(AgentModel):
    impact_assessments: ImpactAssessments
    recommended_actions: list[RecommendedAction] = Field(default_factory=list)
    confidence_ceiling: ConfidenceCeiling


def default_impact_assessment() -> ImpactAssessmentOutput:
    return ImpactAssessmentOutput(
        impact_assessments=ImpactAssessments(overall_impact_summary="Unable to assess impact"),
        confidence_ceiling=ConfidenceCeiling(
            max_confidence_given_gaps="Low", reasoning="Impact assessment failed"
        ),
    )


class QualityCheckInput(AgentModel):
    critique_output: Any
    bias_detection_output: Any
    research_output: Any
    counter_research_output: Any
    assumptions_output: Any


QualityCategory = Literal["excellent", "good", "fair", "poor"]


class QualityScore(AgentModel):
    score: float = Field(ge=0, le=100)
    category: QualityCategory
    reasoning: str
    specific_issues: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class ComponentQuality(AgentModel):
    critique_quality: QualityScore
    bias_detection_quality: QualityScore
    research_quality: QualityScore
    counter_research_quality: QualityScore
    assumptions_quality: QualityScore


class OverallQuality(AgentModel):
    average_score: float = Field(ge=0, le=100)
    category: QualityCategory
    summary: str


class QualityFactors(AgentModel):
    strength_factors: list[str] = Field(default_factory=list)
    weakness_factors: list[str] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list)


class QualityRecommendations(AgentModel):
    immediate_actions: list[str] = Field(default_factory=list)
    synthesis_guidance: list[str] = Field(default_factory=list)
    confidence_adjustments: list[str] = Field(default_factory=list)


class QualityCheckOutput(AgentModel):
    overall_quality: OverallQuality
    component_quality: ComponentQuality
    quality_factors: QualityFactors = Field(default_factory=QualityFactors)
    recommendations: QualityRecommendations = Field(default_factory=QualityRecommendations)

    def component_scores(self) -> dict[str, float]:
        """Flatten component quality into ``{component: score}``."""
        return {
            name: getattr(self.component_quality, name).score
            for name in ComponentQuality.model_fields
        }


def _failed_quality_score() -> QualityScore:
    return QualityScore(
        score=0,
        category="poor",
        reasoning="Assessment failed",
        specific_issues=["Assessment failed"],
        recommendations=["Manual review required"],
    )


def default_quality_check() -> QualityCheckOutput:
    return QualityCheckOutput(
        overall_quality=OverallQuality(
            average_score=0, category="poor", summary="Quality check failed"
        ),
        component_quality=ComponentQuality(
            critique_quality=_failed_quality_score(),
            bias_detection_quality=_failed_quality_score(),
            research_quality=_failed_quality_score(),
            counter_research_quality=_failed_quality_score(),
            assumptions_quality=_failed_quality_score(),
        ),
        quality_factors=QualityFactors(weakness_factors=["Quality assessment failed"]),
    )


class ConfidenceScoringInput(AgentModel):
    pressure_tested_brief: PressureTestedBrief | None = None
    aggregated_supporting_research: list[EvidenceItem]
    aggregated_counter_research: list[EvidenceItem]
    critique_output: str
    bias_report: BiasCrossReferenceOutput | None = None
    conflict_resolution_analysis: ConflictResolutionOutput | None = None
    impact_assessments: ImpactAssessments | None = None
    quality_scores: dict[str, float] | None = None


class OverallConfidence(AgentModel):
    score: Confidence
    numeric_score: float = Field(ge=0, le=100)
    rationale: str


class ComponentScore(AgentModel):
    score: float = Field(ge=0, le=100)
    reasoning: str


class ConfidenceComponents(AgentModel):
    evidence_quality: ComponentScore
    evidence_balance: ComponentScore
    bias_management: ComponentScore
    uncertainty_handling: ComponentScore
    analytical_rigor: ComponentScore


class ConfidenceFactors(AgentModel):
    strength_factors: list[str] = Field(default_factory=list)
    weakness_factors: list[str] = Field(default_factory=list)
    critical_limitations: list[str] = Field(default_factory=list)


class ConfidenceScoringOutput(AgentModel):
    overall_confidence: OverallConfidence
    component_scores: ConfidenceComponents
    confidence_factors: ConfidenceFactors = Field(default_factory=ConfidenceFactors)
    to_increase_confidence: list[str] = Field(default_factory=list)
    minimum_requirements_for_high_confidence: list[str] = Field(default_factory=list)


def default_confidence_scoring() -> ConfidenceScoringOutput:
    unknown = {"score": 0, "reasoning": "Unable to assess"}
    return ConfidenceScoringOutput(
        overall_confidence=OverallConfidence(
            score="Low", numeric_score=0, rationale="Confidence scoring failed"
        ),
        component_scores=ConfidenceComponents(
            evidence_quality=ComponentScore(**unknown),
            evidence_balance=ComponentScore(**unknown),
            bias_management=ComponentScore(**unknown),
            uncertainty_handling=ComponentScore(**unknown),
            analytical_rigor=ComponentScore(**unknown),
        ),
        confidence_factors=ConfidenceFactors(
            weakness_factors=["Confidence assessment failed"],
            critical_limitations=["Unable to complete scoring"],
        ),
    )


class KeyAssumption(AgentModel):
    assumption: str
    confidence: Confidence
    impact: Risk
    risk_level: Risk


RISK_TO_CONFIDENCE: dict[str, Confidence] = {
    "High": "Low",
    "Medium": "Medium",
    "Low": "High",
}


def key_assumption_from(item: AssumptionItem) -> KeyAssumption:
    """Riskier assumptions are held with less confidence."""
    return KeyAssumption(
        assumption=item.assumption,
        confidence=RISK_TO_CONFIDENCE[item.risk],
        impact=item.risk,
        risk_level=item.risk,
    )


class SensitivityAnalysisInput(AgentModel):
    original_conclusions: list[str]
    key_assumptions: list[KeyAssumption]
    synthesis_evidence: list[EvidenceItem] = Field(default_factory=list)


class AssumptionChange(AgentModel):
    original_assumption: str
    modified_assumption: str
    change_type: Literal["weakened", "strengthened", "reversed", "replaced"]


class ScenarioTest(AgentModel):
    scenario_id: str
    scenario_name: str
    changed_assumptions: list[AssumptionChange] = Field(default_factory=list)
    impact_on_conclusions: str
    change_level: Literal["none", "minor", "moderate", "major", "complete_reversal"]
    plausibility: Literal["very_low", "low", "moderate", "high", "very_high"]


class OverallRobustness(AgentModel):
    score: float = Field(ge=0, le=100)
    category: Literal[
        "very_robust", "robust", "moderately_robust", "fragile", "very_fragile"
    ]
    summary: str


class AssumptionSensitivity(AgentModel):
    assumption: str
    sensitivity_level: Literal["very_high", "high", "moderate", "low", "very_low"]
    criticality_rating: Literal["critical", "important", "moderate", "minor"]
    reasoning: str


class RiskAssessment(AgentModel):
    high_risk_scenarios: list[str] = Field(default_factory=list)
    low_risk_scenarios: list[str] = Field(default_factory=list)
    critical_assumptions: list[str] = Field(default_factory=list)
    robustness_concerns: list[str] = Field(default_factory=list)


class SensitivityRecommendations(AgentModel):
    strengthen_assumptions: list[str] = Field(default_factory=list)
    additional_research: list[str] = Field(default_factory=list)
    confidence_adjustments: list[str] = Field(default_factory=list)
    contingency_planning: list[str] = Field(default_factory=list)


class SensitivityAnalysisOutput(AgentModel):
    overall_robustness: OverallRobustness
    scenario_tests: list[ScenarioTest] = Field(default_factory=list)
    assumption_sensitivity: list[AssumptionSensitivity] = Field(default_factory=list)
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    recommendations: SensitivityRecommendations = Field(
        default_factory=SensitivityRecommendations
    )


def default_sensitivity_analysis() -> SensitivityAnalysisOutput:
    return SensitivityAnalysisOutput(
        overall_robustness=OverallRobustness(
            score=0,
            category="very_fragile",
            summary="Sensitivity analysis failed - robustness unknown",
        ),
        risk_assessment=RiskAssessment(
            high_risk_scenarios=["Unable to assess scenarios"],
            critical_assumptions=["Analysis failed"],
            robustness_concerns=["Sensitivity analysis could not be completed"],
        ),
        recommendations=SensitivityRecommendations(
            strengthen_assumptions=["Manual sensitivity analysis required"],
            additional_research=["Reassess key assumptions manually"],
            confidence_adjustments=[
                "Lower confidence due to incomplete robustness assessment"
            ],
            contingency_planning=["Develop manual scenario testing"],
        ),
    )


# -----------------------------------------------------------------------------
# Phase 5: synthesis, verification & refinement
# -----------------------------------------------------------------------------


class ErrorDigest(AgentModel):
    agent: str
    error: str
    is_critical_failure: bool = False


class SynthesisEnsembleInput(AgentModel):
    initial_answer_text: str
    balanced_brief: BalancedBrief | None = None
    pressure_tested_brief: PressureTestedBrief | None = None
    impact_assessments: ImpactAssessments | None = None
    overall_confidence: OverallConfidence | None = None
    aggregated_supporting_research: list[EvidenceItem] = Field(default_factory=list)
    aggregated_counter_research: list[EvidenceItem] = Field(default_factory=list)
    conflict_resolution_analysis: ConflictResolutionOutput | None = None
    sensitivity_analysis_report: SensitivityAnalysisOutput | None = None
    errors_encountered: list[ErrorDigest] = Field(default_factory=list)


class SynthesisRecord(AgentModel):
    """Fields shared by a single perspective and the meta-synthesis."""

    confidence: Confidence
    summary: str
    key_strengths: list[str] = Field(default_factory=list)
    key_weaknesses: list[str] = Field(default_factory=list)
    how_counter_evidence_was_addressed: list[str] = Field(default_factory=list)
    actionable_recommendations: list[str] = Field(default_factory=list)
    remaining_uncertainties: list[str] = Field(default_factory=list)


class Perspective(SynthesisRecord):
    perspective_type: PerspectiveType
    critical_assumptions: list[str] = Field(default_factory=list)


class PerspectiveInput(AgentModel):
    perspective_type: PerspectiveType
    instructions: str
    synthesis_input: SynthesisEnsembleInput


def failed_perspective(perspective_type: PerspectiveType) -> Perspective:
    return Perspective(
        perspective_type=perspective_type,
        confidence="Low",
        summary=f"Failed to generate {perspective_type} perspective",
        key_weaknesses=["Perspective generation failed"],
        remaining_uncertainties=["Perspective could not be generated"],
    )


class MetaSynthesis(SynthesisRecord):
    perspective_divergence: str = Field(description="Where the perspectives differed")
    synthesis_approach: str = Field(description="How the perspectives were integrated")


class MetaSynthesisInput(AgentModel):
    perspectives: list[Perspective]
    original_input: SynthesisEnsembleInput


class EnsembleErrorHandling(AgentModel):
    critical_failures_detected: bool
    failure_impact_description: str | None = None
    confidence_adjustment_reason: str | None = None


class SynthesisEnsembleOutput(AgentModel):
    individual_perspectives: list[Perspective] = Field(default_factory=list)
    meta_synthesis: MetaSynthesis
    error_handling: EnsembleErrorHandling


def default_synthesis_ensemble() -> SynthesisEnsembleOutput:
    return SynthesisEnsembleOutput(
        meta_synthesis=MetaSynthesis(
            confidence="Low",
            summary="Synthesis ensemble failed",
            key_weaknesses=["Synthesis failed"],
            remaining_uncertainties=["Synthesis could not be completed"],
            perspective_divergence="Unable to analyze",
            synthesis_approach="Failed",
        ),
        error_handling=EnsembleErrorHandling(
            critical_failures_detected=True,
            failure_impact_description="Synthesis ensemble failed",
        ),
    )


ClaimImportance = Literal["critical", "high", "medium", "low"]


class ClaimToVerify(AgentModel):
    claim: str
    source: str | None = None
    importance: ClaimImportance
    claim_type: Literal["statistic", "factual", "causal", "predictive", "historical"]


class FactVerificationInput(AgentModel):
    claims: list[ClaimToVerify]
    available_evidence: list[EvidenceItem] = Field(default_factory=list)
    verification_depth: Literal["basic", "standard", "thorough"] = "standard"


class ClaimVerification(AgentModel):
    original_claim: str
    final_verification_status: Literal[
        "verified", "contradicted", "partially_verified", "unverified", "disputed"
    ]
    overall_confidence: float = Field(ge=0, le=100)
    supporting_evidence: list[str] = Field(default_factory=list)
    contradicting_evidence: list[str] = Field(default_factory=list)
    verification_summary: str
    recommended_action: Literal[
        "accept", "reject", "modify", "flag_uncertainty", "request_more_evidence"
    ]
    modified_claim: str | None = None


class VerificationSummary(AgentModel):
    total_claims: int = 0
    verified_claims: int = 0
    contradicted_claims: int = 0
    unverified_claims: int = 0
    overall_reliability: Literal["very_high", "high", "moderate", "low", "very_low"]
    average_confidence: float = 0


class VerificationConcerns(AgentModel):
    critical_issues: list[str] = Field(default_factory=list)
    moderate_issues: list[str] = Field(default_factory=list)
    methodology_limitations: list[str] = Field(default_factory=list)
    data_quality_issues: list[str] = Field(default_factory=list)


class FactVerificationOutput(AgentModel):
    verification_summary: VerificationSummary
    claim_verifications: list[ClaimVerification] = Field(default_factory=list)
    verification_concerns: VerificationConcerns = Field(default_factory=VerificationConcerns)
    recommendations: list[str] = Field(default_factory=list)


def default_fact_verification() -> FactVerificationOutput:
    return FactVerificationOutput(
        verification_summary=VerificationSummary(overall_reliability="very_low"),
        verification_concerns=VerificationConcerns(
            critical_issues=["Fact verification failed"],
            moderate_issues=["Unable to process claims"],
            methodology_limitations=["Verification system error"],
            data_quality_issues=["No data available for verification"],
        ),
        recommendations=["Manual fact verification required"],
    )


class ContextualFactor(AgentModel):
    factor: str
    importance: ClaimImportance
    description: str


class NuancePreservationInput(AgentModel):
    original_content: str
    synthesized_content: str
    contextual_factors: list[ContextualFactor] = Field(default_factory=list)
    analysis_depth: Literal["surface", "moderate", "deep"] = "moderate"


class NuanceElement(AgentModel):
    nuance_type: str
    original_text: str
    importance: ClaimImportance
    description: str
    preservation_status: Literal[
        "fully_preserved", "partially_preserved", "lost", "distorted"
    ]
    synthesized_equivalent: str | None = None


class PreservationSummary(AgentModel):
    total_nuances: int = 0
    preserved_nuances: int = 0
    partially_preserved_nuances: int = 0
    lost_nuances: int = 0
    distorted_nuances: int = 0
    overall_preservation_score: float = Field(default=0, ge=0, le=100)
    preservation_category: Literal["excellent", "good", "fair", "poor", "very_poor"]


class PreservationConcerns(AgentModel):
    critical_losses: list[str] = Field(default_factory=list)
    significant_distortions: list[str] = Field(default_factory=list)
    contextual_shifts: list[str] = Field(default_factory=list)
    oversimplifications: list[str] = Field(default_factory=list)


class NuancePreservationOutput(AgentModel):
    preservation_summary: PreservationSummary
    nuance_analysis: list[NuanceElement] = Field(default_factory=list)
    preservation_concerns: PreservationConcerns = Field(default_factory=PreservationConcerns)
    recommendations: list[str] = Field(default_factory=list)


def default_nuance_preservation() -> NuancePreservationOutput:
    return NuancePreservationOutput(
        preservation_summary=PreservationSummary(preservation_category="very_poor"),
        preservation_concerns=PreservationConcerns(
            critical_losses=["Nuance analysis failed"],
            significant_distortions=["Unable to assess nuance preservation"],
            contextual_shifts=["Analysis system error"],
            oversimplifications=["Cannot evaluate synthesis quality"],
        ),
        recommendations=["Manual nuance review required"],
    )


class SynthesisCritiqueInput(AgentModel):
    synthesis: str
    original_data: list[str]
    analysis_context: str


class SynthesisWeakness(AgentModel):
    category: Literal[
        "logical_gaps",
        "evidence_gaps",
        "clarity_issues",
        "completeness",
        "bias",
        "methodology",
    ]
    description: str
    severity: Literal["low", "medium", "high", "critical"]
    suggested_fix: str


class GapAnalysis(AgentModel):
    evidence_gaps: list[str] = Field(default_factory=list)
    logical_gaps: list[str] = Field(default_factory=list)
    perspective_gaps: list[str] = Field(default_factory=list)


class SynthesisCritiqueOutput(AgentModel):
    overall_assessment: str
    strengths: list[str] = Field(default_factory=list)
    weaknesses: list[SynthesisWeakness] = Field(default_factory=list)
    gap_analysis: GapAnalysis = Field(default_factory=GapAnalysis)
    overall_quality_score: float = Field(default=0, ge=0, le=100)
    requires_revision: bool = False


def default_synthesis_critique() -> SynthesisCritiqueOutput:
    return SynthesisCritiqueOutput(
        overall_assessment="Synthesis critique failed",
        requires_revision=True,
    )


# -----------------------------------------------------------------------------
# Phase 6: human review
# -----------------------------------------------------------------------------


ReviewType = Literal["critical_decision", "low_confidence", "high_risk", "user_requested"]
Urgency = Literal["immediate", "high", "medium", "low"]
ReviewDecisionKind = Literal["approve", "reject", "modify", "request_more_analysis"]


class ReviewConfidence(AgentModel):
    score: Confidence
    numeric_score: float | None = None
    rationale: str


class ReviewContext(AgentModel):
    query: str
    current_analysis: Any = None
    confidence: ReviewConfidence
    critical_issues: list[str] = Field(default_factory=list)


class ReviewRequestDetails(AgentModel):
    specific_questions: list[str]
    areas_needing_expertise: list[str] = Field(default_factory=list)
    suggested_actions: list[str] = Field(default_factory=list)
    urgency: Urgency


class HumanReviewInput(AgentModel):
    review_type: ReviewType
    context: ReviewContext
    review_request: ReviewRequestDetails


class HumanInput(AgentModel):
    """What a reviewer sends back."""

    decision: ReviewDecisionKind | None = None
    feedback: str | None = None
    modifications: dict[str, Any] | None = None
    additional_guidance: list[str] | None = None
    confidence_adjustment: Literal["increase", "decrease", "maintain"] | None = None


class HumanReviewOutput(AgentModel):
    review_completed: bool
    review_id: str
    human_input: HumanInput | None = None
    next_steps: list[str] = Field(default_factory=list)
    timestamp: str


PENDING_REVIEW_NEXT_STEPS = [
    "Continue with automated analysis at lower confidence",
    "Flag results as pending human review",
    "Provide conservative recommendations",
]


def default_human_review(timestamp: str, review_id: str = "pending") -> HumanReviewOutput:
    return HumanReviewOutput(
        review_completed=False,
        review_id=review_id,
        next_steps=list(PENDING_REVIEW_NEXT_STEPS),
        timestamp=timestamp,
    )
