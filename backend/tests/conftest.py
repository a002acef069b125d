"""Shared test fixtures for backend tests.

Provides stub agents with valid canned outputs, a zero-delay recovery
coordinator, a fake clock and event bus helpers, so tests never touch real
LLM APIs or sleep.
"""

import sys
from collections import defaultdict
from collections.abc import Callable
from typing import Any

import pytest

# Ensure the backend package root is on sys.path so that absolute imports
# like ``from orchestration.state import ...`` resolve correctly when running
# pytest from the repository root.
_backend_root = str(
    __import__("pathlib").Path(__file__).resolve().parent.parent
)
if _backend_root not in sys.path:
    sys.path.insert(0, _backend_root)

from agents.catalog import AgentSuite  # noqa: E402
from agents.schemas import (  # noqa: E402
    AssumptionItem,
    AssumptionList,
    ChallengeOutput,
    CritiqueOutput,
    EvidenceItem,
    EvidenceList,
    FailureMode,
    FailureModeList,
    GapAnalysis,
    InformationGap,
    InformationGapList,
    InitialAnswerOutput,
    MetaSynthesis,
    Perspective,
    PerspectiveInput,
    QueryRefinementInput,
    QueryRefinementOutput,
    SynthesisCritiqueOutput,
    default_argument_reconstruction,
    default_bias_cross_reference,
    default_biases,
    default_confidence_scoring,
    default_conflict_resolution,
    default_counter_argument_integration,
    default_fact_verification,
    default_human_review,
    default_impact_assessment,
    default_nuance_preservation,
    default_quality_check,
    default_red_team,
    default_routing_decision,
    default_sensitivity_analysis,
)
from agents.utils import LLMResponse, MockLLMClient  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentEvent  # noqa: E402
from metrics import WorkflowMetricsCollector  # noqa: E402
from orchestration.coordinator import RecoveryCoordinator  # noqa: E402
from orchestration.review import reset_review_system  # noqa: E402

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    return EventBus()


async def collect_events(event_bus: EventBus, session_id: str) -> list[AgentEvent]:
    """Subscribe to a session and drain all buffered events after a run."""
    queue = event_bus.subscribe(session_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


@pytest.fixture()
def metrics() -> WorkflowMetricsCollector:
    return WorkflowMetricsCollector()


@pytest.fixture(autouse=True)
def _reset_review_system() -> None:
    reset_review_system()


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Manually advanced clock for circuit and review expiry tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


@pytest.fixture()
def coordinator() -> RecoveryCoordinator:
    """Coordinator with the default retry budget and no backoff delay."""
    return RecoveryCoordinator(max_retries=3, base_delay=0)


# ---------------------------------------------------------------------------
# Stub agents
# ---------------------------------------------------------------------------


class StubAgent:
    """Async agent double that returns a canned output or raises.

    Args:
        output: Value returned on success; a callable is called with the
            agent input instead.
        fail_times: Number of initial calls that raise. ``None`` fails forever.
        error: Exception raised on failing calls.
    """

    def __init__(
        self,
        output: Any = None,
        *,
        fail_times: int | None = 0,
        error: Exception | None = None,
    ) -> None:
        self.output = output
        self.fail_times = fail_times
        self.error = error or RuntimeError("stub agent failure")
        self.calls: list[Any] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def __call__(self, agent_input: Any) -> Any:
        self.calls.append(agent_input)
        if self.fail_times is None or len(self.calls) <= self.fail_times:
            raise self.error
        if callable(self.output):
            return self.output(agent_input)
        return self.output


def failing_agent(error: Exception | None = None) -> StubAgent:
    return StubAgent(fail_times=None, error=error)


INITIAL_ANSWER = "Remote work raises productivity for focused, independent tasks."

META_SYNTHESIS = MetaSynthesis(
    confidence="High",
    summary="Remote work helps focused work but hurts onboarding.",
    key_strengths=["Consistent productivity studies"],
    remaining_uncertainties=["Long-term cultural effects"],
    perspective_divergence="Best and worst cases differ on collaboration costs",
    synthesis_approach="Weighted integration of all perspectives",
)


def _refine(agent_input: Any) -> QueryRefinementOutput:
    query = QueryRefinementInput.model_validate(agent_input).query
    return QueryRefinementOutput(
        original_query=query,
        refined_query=f"{query} (refined)",
        refinement_reason="Clarified scope",
    )


def _perspective(agent_input: Any) -> Perspective:
    perspective_type = PerspectiveInput.model_validate(agent_input).perspective_type
    return Perspective(
        perspective_type=perspective_type,
        confidence="Medium",
        summary=f"{perspective_type} view of remote work",
    )


def canned_outputs() -> dict[str, Any]:
    """A valid output (or output factory) for every agent in the suite."""
    return {
        "query_refinement": _refine,
        "initial_answer": InitialAnswerOutput(final_answer=INITIAL_ANSWER, iterations=1),
        "routing": default_routing_decision(),
        "assumptions": AssumptionList(
            items=[
                AssumptionItem(
                    assumption="Workers have quiet home offices",
                    risk="Medium",
                    alternative="Many share living space",
                )
            ]
        ),
        "supporting_research": EvidenceList(
            items=[
                EvidenceItem(
                    claim="Productivity rises",
                    support="13% gain in a call-center RCT",
                    quality="high",
                    source="Bloom et al. 2015",
                )
            ]
        ),
        "counter_research": EvidenceList(
            items=[
                EvidenceItem(
                    claim="Innovation suffers",
                    support="Fewer cross-team ties",
                    quality="moderate",
                    source="Yang et al. 2022",
                )
            ]
        ),
        "premortem": FailureModeList(
            items=[
                FailureMode(
                    failure="Junior staff stall without mentoring",
                    probability="Moderate (30-60%)",
                    mitigation="Structured onboarding",
                )
            ]
        ),
        "information_gaps": InformationGapList(
            items=[InformationGap(gap="No data beyond three years", impact="Medium")]
        ),
        "bias_detection": default_biases(),
        "critique": CritiqueOutput(critique="The answer ignores task heterogeneity."),
        "devils_advocate": ChallengeOutput(challenges=["Offices enable serendipity"]),
        "bias_cross_reference": default_bias_cross_reference(),
        "conflict_resolution": default_conflict_resolution(),
        "red_team": default_red_team(INITIAL_ANSWER),
        "argument_reconstruction": default_argument_reconstruction(),
        "counter_argument_integration": default_counter_argument_integration(),
        "impact_assessment": default_impact_assessment(),
        "quality_check": default_quality_check(),
        "confidence_scoring": default_confidence_scoring(),
        "sensitivity_analysis": default_sensitivity_analysis(),
        "perspective": _perspective,
        "meta_synthesis": META_SYNTHESIS,
        "fact_verification": default_fact_verification(),
        "nuance_preservation": default_nuance_preservation(),
        "synthesis_critique": SynthesisCritiqueOutput(
            overall_assessment="Well supported",
            gap_analysis=GapAnalysis(evidence_gaps=["No longitudinal data"]),
            overall_quality_score=82,
        ),
        "human_review": lambda _: default_human_review(
            "2026-01-01T00:00:00+00:00", review_id="review_stub"
        ),
    }


def make_agent_suite(**overrides: Callable[[Any], Any]) -> AgentSuite:
    """Build an AgentSuite of StubAgents; keyword overrides replace agents."""
    agents: dict[str, Any] = {
        name: StubAgent(output) for name, output in canned_outputs().items()
    }
    agents.update(overrides)
    return AgentSuite(**agents)


@pytest.fixture()
def agent_suite() -> AgentSuite:
    return make_agent_suite()


# ---------------------------------------------------------------------------
# Mock LLM
# ---------------------------------------------------------------------------


class RoutingMockLLMClient(MockLLMClient):
    """Mock LLM that routes responses by agent_id.

    Concurrent agents share one client, so responses are keyed by
    ``agent_id`` instead of call order.

    Args:
        response_map: Dict mapping agent_id -> list of LLMResponses.
                      Use ``"default"`` for calls without a matching agent_id.
    """

    def __init__(
        self,
        response_map: dict[str, list[LLMResponse]],
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._response_map: dict[str, list[LLMResponse]] = {
            k: list(v) for k, v in response_map.items()
        }
        self._indexes: dict[str, int] = defaultdict(int)

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        self.call_history.append({"agent_id": agent_id, "messages": messages})
        key = agent_id if agent_id in self._response_map else "default"
        idx = self._indexes[key]
        self._indexes[key] = idx + 1
        return self._response_map[key][idx]
