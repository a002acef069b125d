"""Tests for session_manager.py -- background analysis session lifecycle.

The pipeline runs for real against stub agents; only the agent suite is
swapped out through ``suite_factory``.
"""

import asyncio

import pytest

from agents.schemas import HumanInput
from events.types import EventType
from metrics import WorkflowMetricsCollector
from models.schemas import SessionStatus
from orchestration.pipeline import OrchestrationRequest
from orchestration.review import HumanReviewSystem, ReviewStatus
from session_manager import AnalysisSessionManager
from tests.conftest import StubAgent, collect_events, failing_agent, make_agent_suite
from tests.test_review import _request

QUERY = "Should our team move to a four-day work week?"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _manager(event_bus, **overrides) -> AnalysisSessionManager:
    """Session manager whose sessions all use the same stub suite."""
    suite = make_agent_suite(**overrides)
    manager = AnalysisSessionManager(
        event_bus,
        review_system=HumanReviewSystem(),
        metrics_collector=WorkflowMetricsCollector(),
        suite_factory=lambda session_id: suite,
        session_ttl_minutes=1,
    )
    manager.suite = suite  # type: ignore[attr-defined]
    return manager


class _BlockingAgent:
    """Agent that waits until released, for exercising cancellation."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, payload):
        self.started.set()
        await self.release.wait()
        raise RuntimeError("released")


# =========================================================================
# Session creation and completion
# =========================================================================


class TestAnalyze:
    """analyze() creates a session and waits for the pipeline."""

    async def test_successful_run(self, event_bus) -> None:
        manager = _manager(event_bus)
        session = await manager.analyze(OrchestrationRequest(query=QUERY))

        assert session.session_id.startswith("sess_")
        assert len(session.session_id) == len("sess_") + 12
        assert session.status == SessionStatus.COMPLETE
        assert session.result.success is True
        assert session.started_at is not None
        assert session.completed_at >= session.started_at
        assert manager.active_session_count() == 0

        events = await collect_events(event_bus, session.session_id)
        assert events[-1].type == EventType.SESSION_COMPLETE

    async def test_critical_failure_marks_error(self, event_bus) -> None:
        manager = _manager(event_bus, initial_answer=failing_agent())
        session = await manager.analyze(OrchestrationRequest(query=QUERY, max_retries=1))

        assert session.status == SessionStatus.ERROR
        assert session.result.success is False
        assert session.error_message

    async def test_suite_built_per_session(self, event_bus) -> None:
        built: list[str] = []

        def factory(session_id: str):
            built.append(session_id)
            return make_agent_suite()

        manager = AnalysisSessionManager(event_bus, suite_factory=factory)
        session = await manager.analyze(OrchestrationRequest(query=QUERY))

        assert built == [session.session_id]

    async def test_suite_factory_error_propagates(self, event_bus) -> None:
        def factory(session_id: str):
            raise RuntimeError("no model configured")

        manager = AnalysisSessionManager(event_bus, suite_factory=factory)
        with pytest.raises(RuntimeError):
            await manager.create_session(OrchestrationRequest(query=QUERY))

        (session,) = manager.get_all_sessions()
        assert session.status == SessionStatus.ERROR
        assert session.error_message == "no model configured"
        events = await collect_events(event_bus, session.session_id)
        assert events[-1].type == EventType.SESSION_ERROR


# =========================================================================
# Metrics
# =========================================================================


class TestSessionMetrics:
    async def test_metrics_include_retries(self, event_bus) -> None:
        manager = _manager(
            event_bus, critique=StubAgent({"critique": "ok"}, fail_times=1)
        )
        session = await manager.analyze(OrchestrationRequest(query=QUERY))
        metrics = manager.get_session_metrics(session.session_id)

        assert metrics.total_retries >= 1
        assert metrics.execution_time_seconds >= 0.0

    def test_unknown_session(self, event_bus) -> None:
        manager = _manager(event_bus)
        assert manager.get_session_metrics("sess_missing") is None
        assert manager.get_session("sess_missing") is None


# =========================================================================
# Cancellation
# =========================================================================


class TestCancelSession:
    async def test_cancel_running_session(self, event_bus) -> None:
        blocker = _BlockingAgent()
        manager = _manager(event_bus, query_refinement=blocker)
        session_id = await manager.create_session(OrchestrationRequest(query=QUERY))
        await asyncio.wait_for(blocker.started.wait(), timeout=2.0)
        queue = event_bus.subscribe(session_id)

        await manager.cancel_session(session_id)

        session = manager.get_session(session_id)
        assert session.status == SessionStatus.CANCELLED
        assert session.completed_at is not None
        received = []
        while not queue.empty():
            received.append(queue.get_nowait().type)
        assert EventType.SESSION_CANCELLED in received
        assert received[-1] == EventType.SESSION_CLOSED

    async def test_cancel_finished_session_is_noop(self, event_bus) -> None:
        manager = _manager(event_bus)
        session = await manager.analyze(OrchestrationRequest(query=QUERY))

        await manager.cancel_session(session.session_id)
        assert session.status == SessionStatus.COMPLETE

    async def test_cancel_unknown_session(self, event_bus) -> None:
        manager = _manager(event_bus)
        with pytest.raises(KeyError):
            await manager.cancel_session("sess_missing")


# =========================================================================
# Human review
# =========================================================================


class TestSubmitReview:
    async def test_submit_publishes_event(self, event_bus) -> None:
        manager = _manager(event_bus)
        review_id = manager.review_system.submit(_request(), session_id="sess_review")

        accepted = await manager.submit_review(
            review_id, HumanInput(decision="approve", feedback="Looks right")
        )

        assert accepted is True
        assert manager.review_system.get_status(review_id) is ReviewStatus.COMPLETED
        events = await collect_events(event_bus, "sess_review")
        assert events[-1].type == EventType.HUMAN_REVIEW_SUBMITTED
        assert events[-1].data["next_steps"] == [
            "Proceed with current analysis",
            "Incorporate expert feedback into final output",
        ]

    async def test_second_submission_rejected(self, event_bus) -> None:
        manager = _manager(event_bus)
        review_id = manager.review_system.submit(_request())
        await manager.submit_review(review_id, HumanInput(decision="approve"))

        assert await manager.submit_review(review_id, HumanInput(decision="reject")) is False

    async def test_unknown_review(self, event_bus) -> None:
        manager = _manager(event_bus)
        assert await manager.submit_review("review_missing", HumanInput()) is False


# =========================================================================
# Cleanup
# =========================================================================


class TestCleanup:
    async def test_cleanup_expired_drops_old_sessions(self, event_bus) -> None:
        manager = _manager(event_bus)
        session = await manager.analyze(OrchestrationRequest(query=QUERY))

        assert await manager.cleanup_expired(now=session.completed_at + 30) == []
        removed = await manager.cleanup_expired(now=session.completed_at + 61)

        assert removed == [session.session_id]
        assert manager.get_session(session.session_id) is None
        assert event_bus.get_event_history(session.session_id) == []

    async def test_cleanup_purges_finished_reviews(self, event_bus, clock) -> None:
        reviews = HumanReviewSystem(timeout_minutes=1, retention_minutes=5, clock=clock)
        manager = AnalysisSessionManager(
            event_bus, review_system=reviews, suite_factory=lambda session_id: make_agent_suite()
        )
        answered = reviews.submit(_request())
        reviews.submit_result(answered, HumanInput(decision="approve"))
        abandoned = reviews.submit(_request())

        clock.advance(61)
        await manager.cleanup_expired()
        assert reviews.get_status(abandoned) is ReviewStatus.EXPIRED
        # Still in the store, so completed results stay readable
        assert reviews.get_result(answered).decision == "approve"
        recent = reviews.submit(_request())

        clock.advance(300)
        await manager.cleanup_expired()

        assert reviews.get(answered) is None
        assert reviews.get(abandoned) is None
        assert reviews.get(recent) is not None

    async def test_cleanup_all(self, event_bus) -> None:
        blocker = _BlockingAgent()
        manager = _manager(event_bus, query_refinement=blocker)
        await manager.create_session(OrchestrationRequest(query=QUERY))
        await asyncio.wait_for(blocker.started.wait(), timeout=2.0)

        await manager.cleanup_all()

        assert manager.get_all_sessions() == []
