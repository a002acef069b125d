"""LangGraph pipeline wiring the six analysis phases.

Graph structure:
    START -> intake -> [aborted? END]
          -> route_evidence -> Send x5 evidence_branch -> join_evidence
          -> start_challenge -> Send x4 challenge_branch -> join_challenge
          -> structuring -> synthesis -> review -> END

``orchestrate`` is the entry point. It validates the request, builds a
run-scoped coordinator (unless one is passed in), streams the graph and turns
the last state snapshot into an ``OrchestrationResult``.
"""

import asyncio
import uuid
from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any

import structlog
from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field, ValidationError, field_validator

from agents.schemas import Confidence, MetaSynthesis, SynthesisEnsembleOutput
from events.bus import EventBus
from events.types import EventType
from metrics import WorkflowMetricsCollector
from orchestration.coordinator import RecoveryCoordinator
from orchestration.errors import OrchestrationFatalError
from orchestration.phases import PhaseExecutors
from orchestration.state import (
    ErrorInfo,
    RecoveryStrategy,
    SessionState,
    create_initial_session_state,
    merge_state,
    public_state,
)

if TYPE_CHECKING:
    from agents.catalog import AgentSuite

logger = structlog.get_logger(__name__)

CRITICAL_FAILURE_REASON = "Critical orchestration failure"


# -----------------------------------------------------------------------------
# Request / Result
# -----------------------------------------------------------------------------


class OrchestrationRequest(BaseModel):
    """Input to a full analysis run."""

    query: str = Field(..., min_length=1, description="The question to analyze")
    enable_human_review: bool = Field(
        default=False, description="Allow escalation to a human reviewer"
    )
    confidence_threshold_for_human_review: Confidence = Field(
        default="Low",
        description="Highest synthesis confidence that still triggers review",
    )
    max_retries: int = Field(default=3, ge=1, description="Attempts per agent call")

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("query must not be blank")
        return v


class OrchestrationResult(BaseModel):
    """Outcome of an analysis run."""

    success: bool
    final_synthesis: MetaSynthesis | None = None
    session_state: dict[str, Any]
    human_review_required: bool = False
    human_review_reason: str | None = None


# -----------------------------------------------------------------------------
# Graph
# -----------------------------------------------------------------------------


class AnalysisPipeline:
    """Compiled six-phase graph for one run.

    Usage:
        >>> pipeline = AnalysisPipeline(executors)
        >>> async for snapshot in pipeline.stream(initial_state):
        ...     print(snapshot.get("status"))
    """

    def __init__(self, executors: PhaseExecutors) -> None:
        self.executors = executors
        self._compiled_graph = self._build_graph()

    def _build_graph(self):
        """Build and compile the LangGraph StateGraph."""
        ex = self.executors
        graph = StateGraph(SessionState)

        graph.add_node("intake", ex.intake)
        graph.add_node("route_evidence", ex.route_evidence)
        graph.add_node("evidence_branch", ex.run_evidence_branch)
        graph.add_node("join_evidence", ex.join_evidence)
        graph.add_node("start_challenge", ex.start_challenge)
        graph.add_node("challenge_branch", ex.run_challenge_branch)
        graph.add_node("join_challenge", ex.join_challenge)
        graph.add_node("structuring", ex.structuring)
        graph.add_node("synthesis", ex.synthesis)
        graph.add_node("review", ex.review)

        graph.add_edge(START, "intake")

        # A critical intake failure ends the run
        graph.add_conditional_edges(
            "intake",
            ex.route_after_intake,
            {"continue": "route_evidence", "end": END},
        )

        graph.add_conditional_edges("route_evidence", ex.evidence_branches, ["evidence_branch"])
        graph.add_edge("evidence_branch", "join_evidence")
        graph.add_edge("join_evidence", "start_challenge")

        graph.add_conditional_edges(
            "start_challenge", ex.challenge_branches, ["challenge_branch"]
        )
        graph.add_edge("challenge_branch", "join_challenge")

        graph.add_edge("join_challenge", "structuring")
        graph.add_edge("structuring", "synthesis")
        graph.add_edge("synthesis", "review")
        graph.add_edge("review", END)

        return graph.compile()

    async def stream(self, initial_state: SessionState) -> AsyncIterator[dict[str, Any]]:
        """Yield the full state after every step."""
        async for snapshot in self._compiled_graph.astream(
            initial_state, stream_mode="values"
        ):
            yield snapshot


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------


def _final_synthesis(state: Mapping[str, Any]) -> MetaSynthesis | None:
    final = state.get("final_refined_synthesis_output")
    if final is not None:
        return MetaSynthesis.model_validate(final)
    draft = state.get("draft_synthesis_output")
    if draft is not None:
        return SynthesisEnsembleOutput.model_validate(draft).meta_synthesis
    return None


def _failure_result(
    request: OrchestrationRequest, state: Mapping[str, Any]
) -> OrchestrationResult:
    return OrchestrationResult(
        success=False,
        final_synthesis=None,
        session_state=public_state(state),
        human_review_required=request.enable_human_review,
        human_review_reason=CRITICAL_FAILURE_REASON,
    )


def _invalid_request_result(
    raw: Any, error: ValidationError, session_id: str
) -> OrchestrationResult:
    query = raw.get("query") if isinstance(raw, Mapping) else None
    state = create_initial_session_state(query if isinstance(query, str) else "", session_id)
    state = merge_state(
        state,
        {
            "status": "aborted",
            "abort_reason": "Invalid orchestration request",
            "errors_encountered": [
                ErrorInfo(
                    agent="orchestrator",
                    error=f"Invalid input: {error}",
                    recovery_strategy=RecoveryStrategy.NONE,
                    is_critical_failure=True,
                )
            ],
        },
    )
    return OrchestrationResult(
        success=False,
        session_state=public_state(state),
        human_review_required=False,
    )


async def orchestrate(
    request: OrchestrationRequest | Mapping[str, Any],
    *,
    agents: "AgentSuite",
    coordinator: RecoveryCoordinator | None = None,
    event_bus: EventBus | None = None,
    metrics: WorkflowMetricsCollector | None = None,
    session_id: str | None = None,
) -> OrchestrationResult:
    """Run the full six-phase analysis for one query.

    Args:
        request: The request, or a raw mapping to validate.
        agents: The agent suite to run.
        coordinator: Recovery coordinator. A fresh one (with its own circuit
            table and ``request.max_retries``) is built per run when omitted;
            pass one explicitly to share circuit state across runs. A passed
            coordinator keeps its own ``max_retries``; the request value is
            then ignored.
        event_bus: Optional bus for progress events.
        metrics: Optional workflow metrics collector.
        session_id: Session ID for events and metrics.

    Returns:
        OrchestrationResult. Malformed input and uncaught failures return
        ``success=False`` instead of raising.
    """
    session_id = session_id or f"sess_{uuid.uuid4().hex[:12]}"

    try:
        request = OrchestrationRequest.model_validate(request)
    except ValidationError as e:
        logger.warning(
            "orchestration_invalid_request",
            session_id=session_id,
            error_count=e.error_count(),
        )
        return _invalid_request_result(request, e, session_id)

    if coordinator is None:
        coordinator = RecoveryCoordinator(max_retries=request.max_retries)
    elif coordinator.max_retries != request.max_retries:
        logger.warning(
            "coordinator_retry_override",
            session_id=session_id,
            requested_max_retries=request.max_retries,
            coordinator_max_retries=coordinator.max_retries,
        )
    executors = PhaseExecutors(
        coordinator,
        agents,
        enable_human_review=request.enable_human_review,
        review_threshold=request.confidence_threshold_for_human_review,
        event_bus=event_bus,
        metrics=metrics,
    )
    initial_state = create_initial_session_state(request.query, session_id)
    last_state: dict[str, Any] = dict(initial_state)

    if metrics is not None:
        metrics.start(session_id, query=request.query)
    if event_bus is not None:
        await event_bus.emit(
            EventType.SESSION_STARTED,
            session_id,
            query=request.query,
            enable_human_review=request.enable_human_review,
        )
    logger.info(
        "orchestration_started",
        session_id=session_id,
        enable_human_review=request.enable_human_review,
        max_retries=request.max_retries,
    )

    try:
        async for snapshot in AnalysisPipeline(executors).stream(initial_state):
            last_state = snapshot
    except asyncio.CancelledError:
        if metrics is not None:
            metrics.finish(session_id, status="cancelled")
        raise
    except Exception as e:
        fatal = OrchestrationFatalError(e)
        logger.exception("orchestration_failed", session_id=session_id, error=str(fatal))
        last_state = merge_state(
            last_state,
            {
                "status": "aborted",
                "abort_reason": str(fatal),
                "errors_encountered": [
                    ErrorInfo(
                        agent="orchestrator",
                        error=str(fatal),
                        recovery_strategy=RecoveryStrategy.NONE,
                        is_critical_failure=True,
                    )
                ],
            },
        )
        if metrics is not None:
            metrics.finish(session_id, status="failed")
        if event_bus is not None:
            await event_bus.emit(
                EventType.SESSION_ERROR,
                session_id,
                error=str(fatal),
                error_type=type(e).__name__,
            )
        return _failure_result(request, last_state)

    if last_state.get("status") == "aborted":
        result = _failure_result(request, last_state)
    else:
        result = OrchestrationResult(
            success=True,
            final_synthesis=_final_synthesis(last_state),
            session_state=public_state(last_state),
            human_review_required=bool(last_state.get("human_review_required")),
            human_review_reason=last_state.get("human_review_reason"),
        )

    if metrics is not None:
        metrics.finish(session_id, status="completed" if result.success else "aborted")
    if event_bus is not None:
        await event_bus.emit(
            EventType.SESSION_COMPLETE,
            session_id,
            success=result.success,
            human_review_required=result.human_review_required,
            error_count=len(last_state.get("errors_encountered") or []),
        )
    logger.info(
        "orchestration_complete",
        session_id=session_id,
        success=result.success,
        error_count=len(last_state.get("errors_encountered") or []),
        human_review_required=result.human_review_required,
    )
    return result
