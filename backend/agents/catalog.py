"""LLM-backed agent implementations and the agent registry.

Every agent is an async callable ``(input model) -> output model``. Most are
a single structured LLM call (``StructuredAgent``); the initial answer and
the red team are short iterative loops built from structured steps.

``AgentSuite`` is the registry the phase executors call into. Tests build
suites from plain async functions; production builds one per session with
``build_agent_suite``.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, fields
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from agents.prompts import get_agent_system_prompt, get_perspective_prompt
from agents.schemas import (
    AnswerInput,
    AnswerIteration,
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
    ConfidenceScoringInput,
    ConfidenceScoringOutput,
    ConflictResolutionInput,
    ConflictResolutionOutput,
    CounterArgumentIntegrationInput,
    CounterArgumentIntegrationOutput,
    CritiqueInput,
    CritiqueOutput,
    DraftAnswer,
    DraftRequest,
    DraftReview,
    EvidenceList,
    FactVerificationInput,
    FactVerificationOutput,
    FailureModeList,
    HumanReviewInput,
    HumanReviewOutput,
    ImpactAssessmentInput,
    ImpactAssessmentOutput,
    InformationGapList,
    InitialAnswerInput,
    InitialAnswerOutput,
    MetaSynthesis,
    MetaSynthesisInput,
    NuancePreservationInput,
    NuancePreservationOutput,
    Perspective,
    PerspectiveInput,
    PremortemInput,
    QualityCheckInput,
    QualityCheckOutput,
    QueryRefinementInput,
    QueryRefinementOutput,
    QuickCritique,
    RedTeamChallengeInput,
    RedTeamChallenges,
    RedTeamInput,
    RedTeamIteration,
    RedTeamOutput,
    RedTeamRefineInput,
    RedTeamRefinement,
    RoutingDecision,
    RoutingInput,
    SensitivityAnalysisInput,
    SensitivityAnalysisOutput,
    StrengthAssessment,
    SynthesisCritiqueInput,
    SynthesisCritiqueOutput,
)
from agents.utils import LLMClient, extract_json_from_response
from audit import ToolAuditSystem, audited
from config import settings
from orchestration.errors import OutputValidationError
from orchestration.review import HumanReviewSystem

logger = structlog.get_logger(__name__)

InT = TypeVar("InT", bound=BaseModel)
OutT = TypeVar("OutT", bound=BaseModel)

AgentCallable = Callable[[Any], Awaitable[Any]]


# -----------------------------------------------------------------------------
# Structured single-call agents
# -----------------------------------------------------------------------------


class StructuredAgent(Generic[InT, OutT]):
    """One LLM call whose reply must validate against ``output_type``.

    The input model is sent as JSON in the user message; the system prompt
    carries the role instructions and the output JSON schema. A reply
    without a JSON object, or one that fails validation, raises
    ``OutputValidationError`` so the coordinator counts a failed attempt.
    """

    def __init__(
        self,
        name: str,
        role: str,
        input_type: type[InT],
        output_type: type[OutT],
        llm_client: LLMClient,
        *,
        session_id: str | None = None,
    ) -> None:
        self.name = name
        self.role = role
        self.input_type = input_type
        self.output_type = output_type
        self.llm_client = llm_client
        self.session_id = session_id

    def system_prompt(self, payload: InT) -> str:
        return get_agent_system_prompt(self.role, self.output_type.model_json_schema())

    async def __call__(self, agent_input: InT | dict[str, Any]) -> OutT:
        payload = self.input_type.model_validate(agent_input)
        messages = [
            {"role": "system", "content": self.system_prompt(payload)},
            {"role": "user", "content": payload.model_dump_json(indent=2)},
        ]
        response = await self.llm_client.call(
            messages,
            session_id=self.session_id,
            agent_id=self.name,
        )
        return self.parse(response.content)

    def parse(self, content: str) -> OutT:
        data = extract_json_from_response(content)
        if data is None:
            raise OutputValidationError(self.name, "no JSON object in response")
        try:
            return self.output_type.model_validate(data)
        except ValidationError as e:
            logger.debug(
                "agent_output_invalid",
                agent=self.name,
                error_count=e.error_count(),
            )
            raise OutputValidationError(self.name, str(e)[:300]) from e


class PerspectiveAgent(StructuredAgent[PerspectiveInput, Perspective]):
    """Synthesis perspective; the system prompt depends on the perspective type."""

    def __init__(self, llm_client: LLMClient, *, session_id: str | None = None) -> None:
        super().__init__(
            "synthesis_perspective",
            "perspective",
            PerspectiveInput,
            Perspective,
            llm_client,
            session_id=session_id,
        )

    def system_prompt(self, payload: PerspectiveInput) -> str:
        return get_perspective_prompt(
            payload.perspective_type, self.output_type.model_json_schema()
        )

    async def __call__(self, agent_input: PerspectiveInput | dict[str, Any]) -> Perspective:
        payload = PerspectiveInput.model_validate(agent_input)
        perspective = await super().__call__(payload)
        # The model sometimes relabels itself; the requested type is authoritative.
        return perspective.model_copy(update={"perspective_type": payload.perspective_type})


# -----------------------------------------------------------------------------
# Iterative agents
# -----------------------------------------------------------------------------


class InitialAnswerLoop:
    """Draft, critique and improve an answer for up to ``max_iterations`` rounds."""

    name = "initial_answer"

    def __init__(
        self,
        draft: Callable[[DraftRequest], Awaitable[DraftAnswer]],
        critique: Callable[[DraftReview], Awaitable[QuickCritique]],
    ) -> None:
        self.draft = draft
        self.critique = critique

    async def __call__(self, agent_input: InitialAnswerInput) -> InitialAnswerOutput:
        request = InitialAnswerInput.model_validate(agent_input)
        question = request.refined_query
        answer = (await self.draft(DraftRequest(question=question))).answer
        history: list[AnswerIteration] = []

        for iteration in range(1, request.max_iterations + 1):
            review = await self.critique(DraftReview(question=question, answer=answer))
            history.append(
                AnswerIteration(
                    iteration=iteration,
                    answer=answer,
                    critique=f"{review.overall_quality}: " + "; ".join(review.weaknesses),
                    improvements=review.specific_improvements,
                )
            )
            if review.is_satisfactory or iteration == request.max_iterations:
                break
            answer = (
                await self.draft(
                    DraftRequest(question=question, previous_answer=answer, critique=review)
                )
            ).answer

        logger.debug("initial_answer_loop_finished", iterations=len(history))
        return InitialAnswerOutput(
            final_answer=answer,
            iterations=len(history),
            improvement_history=history,
        )


# Refinement stops once the argument scores at least this much
RED_TEAM_TARGET_STRENGTH = 85


def _strength_label(score: int) -> str:
    if score >= 80:
        return "very_strong"
    if score >= 60:
        return "strong"
    if score >= 40:
        return "moderate"
    return "weak"


class RedTeamLoop:
    """Challenge and refine an argument for up to ``max_iterations`` rounds.

    From the second round on, a round whose challenges are judged weak or
    repetitive (``continue_iterating`` false) ends the loop before refining.
    The loop also ends once the refined argument is strong enough.
    """

    name = "red_team"

    def __init__(
        self,
        challenge: Callable[[RedTeamChallengeInput], Awaitable[RedTeamChallenges]],
        refine: Callable[[RedTeamRefineInput], Awaitable[RedTeamRefinement]],
    ) -> None:
        self.challenge = challenge
        self.refine = refine

    async def __call__(self, agent_input: RedTeamInput) -> RedTeamOutput:
        request = RedTeamInput.model_validate(agent_input)
        argument = request.initial_argument
        history: list[RedTeamIteration] = []
        seen_challenges: list[str] = []

        for iteration in range(1, request.max_iterations + 1):
            round_ = await self.challenge(
                RedTeamChallengeInput(argument=argument, previous_challenges=seen_challenges)
            )
            if not round_.challenges:
                break
            if iteration > 1 and not round_.continue_iterating:
                logger.debug("red_team_challenges_exhausted", iteration=iteration)
                break

            refined = await self.refine(
                RedTeamRefineInput(argument=argument, challenges=round_.challenges)
            )
            history.append(
                RedTeamIteration(
                    iteration=iteration,
                    argument=argument,
                    challenges=round_.challenges,
                    refinements=refined.refinements,
                    strength_score=refined.strength_score,
                )
            )
            argument = refined.refined_argument
            seen_challenges.extend(round_.challenges)
            if refined.strength_score >= RED_TEAM_TARGET_STRENGTH:
                break

        score = history[-1].strength_score if history else 50
        unique_challenges = list(dict.fromkeys(seen_challenges))
        return RedTeamOutput(
            stress_tested_argument=argument,
            iterations=len(history),
            improvement_history=history,
            final_strength_assessment=StrengthAssessment(
                overall_strength=_strength_label(score),
                surviving_challenges=unique_challenges[-3:],
                addressed_challenges=[r for h in history for r in h.refinements][:5],
                robustness_score=score,
            ),
        )


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


@dataclass
class AgentSuite:
    """Every agent the pipeline can call, keyed by its circuit name."""

    # Phase 1
    query_refinement: AgentCallable
    initial_answer: AgentCallable
    # Phase 2
    routing: AgentCallable
    assumptions: AgentCallable
    supporting_research: AgentCallable
    counter_research: AgentCallable
    premortem: AgentCallable
    information_gaps: AgentCallable
    # Phase 3
    bias_detection: AgentCallable
    critique: AgentCallable
    devils_advocate: AgentCallable
    bias_cross_reference: AgentCallable
    conflict_resolution: AgentCallable
    red_team: AgentCallable
    # Phase 4
    argument_reconstruction: AgentCallable
    counter_argument_integration: AgentCallable
    impact_assessment: AgentCallable
    quality_check: AgentCallable
    confidence_scoring: AgentCallable
    sensitivity_analysis: AgentCallable
    # Phase 5
    perspective: AgentCallable
    meta_synthesis: AgentCallable
    fact_verification: AgentCallable
    nuance_preservation: AgentCallable
    synthesis_critique: AgentCallable
    # Phase 6
    human_review: AgentCallable

    @classmethod
    def names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def with_audit(
        self, audit: ToolAuditSystem, *, session_id: str | None = None
    ) -> "AgentSuite":
        """Return a suite whose agents are wrapped by the audit hooks.

        Human review is left unwrapped; it is not a tool call. Agent inputs
        carry the user's query and prose derived from it, so they are
        recorded and cached but not screened for code patterns.
        """
        wrapped = {
            name: (
                fn
                if name == "human_review"
                else audited(audit, name, fn, session_id=session_id, screen_input=False)
            )
            for name, fn in ((n, getattr(self, n)) for n in self.names())
        }
        return AgentSuite(**wrapped)


# (agent name, prompt role, input model, output model)
_STRUCTURED_AGENTS: list[tuple[str, str, type[BaseModel], type[BaseModel]]] = [
    ("query_refinement", "query_refinement", QueryRefinementInput, QueryRefinementOutput),
    ("routing", "routing", RoutingInput, RoutingDecision),
    ("assumptions", "assumptions", AnswerInput, AssumptionList),
    ("supporting_research", "supporting_research", ClaimInput, EvidenceList),
    ("counter_research", "counter_research", ClaimInput, EvidenceList),
    ("premortem", "premortem", PremortemInput, FailureModeList),
    ("information_gaps", "information_gaps", AnswerInput, InformationGapList),
    ("bias_detection", "bias_detection", BiasDetectionInput, BiasList),
    ("critique", "critique", CritiqueInput, CritiqueOutput),
    ("devils_advocate", "devils_advocate", ChallengeInput, ChallengeOutput),
    (
        "bias_cross_reference",
        "bias_cross_reference",
        BiasCrossReferenceInput,
        BiasCrossReferenceOutput,
    ),
    (
        "conflict_resolution",
        "conflict_resolution",
        ConflictResolutionInput,
        ConflictResolutionOutput,
    ),
    (
        "argument_reconstruction",
        "argument_reconstruction",
        ArgumentReconstructionInput,
        ArgumentReconstructionOutput,
    ),
    (
        "counter_argument_integration",
        "counter_argument_integration",
        CounterArgumentIntegrationInput,
        CounterArgumentIntegrationOutput,
    ),
    ("impact_assessment", "impact_assessment", ImpactAssessmentInput, ImpactAssessmentOutput),
    ("quality_check", "quality_check", QualityCheckInput, QualityCheckOutput),
    ("confidence_scoring", "confidence_scoring", ConfidenceScoringInput, ConfidenceScoringOutput),
    (
        "sensitivity_analysis",
        "sensitivity_analysis",
        SensitivityAnalysisInput,
        SensitivityAnalysisOutput,
    ),
    ("meta_synthesis", "meta_synthesis", MetaSynthesisInput, MetaSynthesis),
    ("fact_verification", "fact_verification", FactVerificationInput, FactVerificationOutput),
    (
        "nuance_preservation",
        "nuance_preservation",
        NuancePreservationInput,
        NuancePreservationOutput,
    ),
    (
        "synthesis_critique",
        "synthesis_critique",
        SynthesisCritiqueInput,
        SynthesisCritiqueOutput,
    ),
]


def build_agent_suite(
    llm_client: LLMClient,
    *,
    review_system: HumanReviewSystem | None = None,
    audit: ToolAuditSystem | None = None,
    session_id: str | None = None,
) -> AgentSuite:
    """Build the production agent suite for one session.

    Args:
        llm_client: Client shared by every LLM-backed agent.
        review_system: Collaborator for human review requests.
        audit: Optional audit system wrapped around every agent call.
        session_id: Session used for LLM events and audit records.
    """
    agents: dict[str, AgentCallable] = {
        name: StructuredAgent(name, role, in_type, out_type, llm_client, session_id=session_id)
        for name, role, in_type, out_type in _STRUCTURED_AGENTS
    }

    def step(name: str, role: str, in_type: type[BaseModel], out_type: type[BaseModel]):
        return StructuredAgent(name, role, in_type, out_type, llm_client, session_id=session_id)

    agents["initial_answer"] = InitialAnswerLoop(
        draft=step("initial_answer", "initial_answer_draft", DraftRequest, DraftAnswer),
        critique=step("initial_answer", "initial_answer_critique", DraftReview, QuickCritique),
    )
    agents["red_team"] = RedTeamLoop(
        challenge=step("red_team", "red_team_challenge", RedTeamChallengeInput, RedTeamChallenges),
        refine=step("red_team", "red_team_refine", RedTeamRefineInput, RedTeamRefinement),
    )
    agents["perspective"] = PerspectiveAgent(llm_client, session_id=session_id)

    reviews = review_system or HumanReviewSystem()

    async def human_review(review_input: HumanReviewInput) -> HumanReviewOutput:
        return await reviews.request_review(
            HumanReviewInput.model_validate(review_input),
            session_id=session_id,
            wait_seconds=settings.human_review_wait_seconds,
        )

    agents["human_review"] = human_review

    suite = AgentSuite(**agents)
    if audit is not None:
        suite = suite.with_audit(audit, session_id=session_id)

    logger.debug("agent_suite_built", session_id=session_id, audited=audit is not None)
    return suite
