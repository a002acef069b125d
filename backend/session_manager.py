"""Background execution and bookkeeping for analysis sessions.

Each POST to the API becomes a session: a record in the registry plus an
asyncio task running ``orchestrate``. The manager owns that registry and
answers status, result and metrics queries. It also handles cancellation,
relays reviewer answers, and forgets finished sessions once their TTL lapses.

Usage:
    >>> manager = AnalysisSessionManager(get_event_bus())
    >>> session_id = await manager.create_session(
    ...     OrchestrationRequest(query="Should we adopt a four-day week?")
    ... )
    >>> manager.get_session(session_id).status
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any

import structlog

from agents.catalog import AgentSuite, build_agent_suite
from agents.schemas import HumanInput
from agents.utils import LLMClient
from audit import ToolAuditSystem
from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from metrics import WorkflowMetricsCollector
from models.schemas import SessionMetrics, SessionStatus
from orchestration.pipeline import OrchestrationRequest, OrchestrationResult, orchestrate
from orchestration.review import (
    HumanReviewSystem,
    determine_next_steps,
    get_review_system,
)

logger = structlog.get_logger()

# Builds the agent suite for one session
SuiteFactory = Callable[[str], AgentSuite]

FINISHED_STATUSES = frozenset(
    {SessionStatus.COMPLETE, SessionStatus.ERROR, SessionStatus.CANCELLED}
)


@dataclass
class SessionInfo:
    """Registry entry for one analysis run.

    Timestamps are Unix seconds. ``started_at`` and ``completed_at`` stay
    None until the run reaches that point; ``result`` is set once
    ``orchestrate`` returns.
    """

    session_id: str
    request: OrchestrationRequest
    status: SessionStatus
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    error_message: str | None = None
    result: OrchestrationResult | None = None

    @property
    def query(self) -> str:
        return self.request.query

    @property
    def finished(self) -> bool:
        return self.status in FINISHED_STATUSES


class AnalysisSessionManager:
    """Registry and task owner for analysis sessions.

    The registry is guarded by an asyncio.Lock. Tasks are always cancelled
    outside the lock because a cancelled run takes the lock itself to
    record its final status.

    Args:
        event_bus: Receives session lifecycle events
        review_system: Review store (defaults to the process-wide one)
        metrics_collector: Token, retry and error accounting per session
        audit: Wrapped around every agent call when given
        suite_factory: Builds the agents for a session ID; defaults to the
            LLM-backed catalog
        session_ttl_minutes: How long finished sessions stay queryable
    """

    def __init__(
        self,
        event_bus: EventBus,
        *,
        review_system: HumanReviewSystem | None = None,
        metrics_collector: WorkflowMetricsCollector | None = None,
        audit: ToolAuditSystem | None = None,
        suite_factory: SuiteFactory | None = None,
        session_ttl_minutes: int | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.review_system = review_system or get_review_system()
        self.metrics_collector = metrics_collector
        self.audit = audit
        self.suite_factory = suite_factory or self._llm_suite
        ttl_minutes = (
            settings.session_ttl_minutes if session_ttl_minutes is None else session_ttl_minutes
        )
        self.session_ttl_seconds = ttl_minutes * 60
        self._sessions: dict[str, SessionInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

    def _llm_suite(self, session_id: str) -> AgentSuite:
        client = LLMClient(event_bus=self.event_bus, metrics_collector=self.metrics_collector)
        return build_agent_suite(
            client,
            review_system=self.review_system,
            audit=self.audit,
            session_id=session_id,
        )

    # -------------------------------------------------------------------------
    # Starting runs
    # -------------------------------------------------------------------------

    async def create_session(self, request: OrchestrationRequest) -> str:
        """Register a session and start its run in the background.

        Raises:
            Exception: Whatever the suite factory raised. The session is
                kept with status ERROR and a SESSION_ERROR event is published.
        """
        session = SessionInfo(
            session_id=f"sess_{uuid.uuid4().hex[:12]}",
            request=request,
            status=SessionStatus.STARTED,
            created_at=time.time(),
        )
        session_id = session.session_id
        async with self._lock:
            self._sessions[session_id] = session
        logger.info(
            "session_created",
            session_id=session_id,
            query_length=len(request.query),
            enable_human_review=request.enable_human_review,
        )

        try:
            agents = self.suite_factory(session_id)
            await self._start_task(session_id, self._run_session(session, agents))
        except Exception as e:
            logger.error("session_start_failed", session_id=session_id, error=str(e))
            async with self._lock:
                self._mark_finished(session, SessionStatus.ERROR, str(e))
            await self._publish_error(session_id, error=str(e), phase="initialization")
            raise
        return session_id

    async def analyze(self, request: OrchestrationRequest) -> SessionInfo:
        """Run a session to completion and return its final record."""
        session_id = await self.create_session(request)
        task = self._tasks.get(session_id)
        if task is not None:
            await task
        return self._sessions[session_id]

    async def _start_task(self, session_id: str, run: Coroutine[Any, Any, None]) -> None:
        async with self._lock:
            task = asyncio.create_task(run, name=f"analysis_{session_id}")
            self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))

    async def _run_session(self, session: SessionInfo, agents: AgentSuite) -> None:
        # orchestrate() reports pipeline failures through its result; only
        # cancellation and unexpected errors surface as exceptions.
        session_id = session.session_id
        try:
            async with self._lock:
                session.status = SessionStatus.RUNNING
                session.started_at = time.time()

            result = await orchestrate(
                session.request,
                agents=agents,
                event_bus=self.event_bus,
                metrics=self.metrics_collector,
                session_id=session_id,
            )
            async with self._lock:
                session.result = result
                if result.success:
                    self._mark_finished(session, SessionStatus.COMPLETE)
                else:
                    reason = (
                        result.session_state.get("abort_reason")
                        or result.human_review_reason
                        or "Analysis failed"
                    )
                    self._mark_finished(session, SessionStatus.ERROR, reason)
            logger.info(
                "session_run_finished",
                session_id=session_id,
                success=result.success,
                human_review_required=result.human_review_required,
            )
        except asyncio.CancelledError:
            async with self._lock:
                self._mark_finished(session, SessionStatus.CANCELLED)
            logger.info("session_run_cancelled", session_id=session_id)
            raise
        except Exception as e:
            logger.exception("session_run_crashed", session_id=session_id, error=str(e))
            async with self._lock:
                self._mark_finished(session, SessionStatus.ERROR, str(e))
            await self._publish_error(session_id, error=str(e), error_type=type(e).__name__)

    @staticmethod
    def _mark_finished(
        session: SessionInfo, status: SessionStatus, error: str | None = None
    ) -> None:
        session.status = status
        session.completed_at = time.time()
        if error is not None:
            session.error_message = error

    async def _publish_error(self, session_id: str, **data: Any) -> None:
        await self.event_bus.publish(
            AgentEvent(type=EventType.SESSION_ERROR, session_id=session_id, data=data)
        )

    # -------------------------------------------------------------------------
    # Client actions
    # -------------------------------------------------------------------------

    async def cancel_session(self, session_id: str) -> None:
        """Stop a running session. Finished sessions are left untouched.

        Raises:
            KeyError: Unknown session ID.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(f"Session '{session_id}' not found")
            if session.finished:
                logger.info(
                    "cancel_ignored_finished_session",
                    session_id=session_id,
                    status=session.status.value,
                )
                return
            task = self._tasks.pop(session_id, None)

        logger.info("session_cancelling", session_id=session_id, status=session.status.value)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            if session.status != SessionStatus.CANCELLED:
                self._mark_finished(session, SessionStatus.CANCELLED)

        await self.event_bus.publish(
            AgentEvent(
                type=EventType.SESSION_CANCELLED,
                session_id=session_id,
                data={"reason": "user_cancelled", "status": SessionStatus.CANCELLED.value},
            )
        )
        await self.event_bus.close_session(session_id)

    async def submit_review(self, review_id: str, human_input: HumanInput) -> bool:
        """Complete a pending review and tell the owning session about it.

        Returns:
            False if the review was unknown or no longer pending.
        """
        if not self.review_system.submit_result(review_id, human_input):
            return False

        submission = self.review_system.get(review_id)
        if submission is not None and submission.session_id:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.HUMAN_REVIEW_SUBMITTED,
                    session_id=submission.session_id,
                    agent_id="human_review",
                    agent_role="Human Review",
                    data={
                        "review_id": review_id,
                        "decision": human_input.decision,
                        "next_steps": determine_next_steps(human_input),
                    },
                )
            )
        return True

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_session(self, session_id: str) -> SessionInfo | None:
        return self._sessions.get(session_id)

    def get_all_sessions(self) -> list[SessionInfo]:
        return list(self._sessions.values())

    def active_session_count(self) -> int:
        return sum(1 for s in self._sessions.values() if not s.finished)

    def get_session_metrics(self, session_id: str) -> SessionMetrics | None:
        """Wall-clock time from the registry plus counters from the collector."""
        session = self._sessions.get(session_id)
        if session is None:
            return None

        elapsed = 0.0
        if session.started_at is not None:
            elapsed = max(0.0, (session.completed_at or time.time()) - session.started_at)
        metrics = SessionMetrics(execution_time_seconds=elapsed)

        counters = self.metrics_collector.get(session_id) if self.metrics_collector else None
        if counters is not None:
            metrics.total_input_tokens = counters.prompt_tokens
            metrics.total_output_tokens = counters.completion_tokens
            metrics.total_llm_calls = counters.llm_calls
            metrics.total_agent_errors = counters.total_errors
            metrics.total_retries = counters.total_retries
        return metrics

    # -------------------------------------------------------------------------
    # Cleanup
    # -------------------------------------------------------------------------

    async def _release_streams(self, session_ids: list[str]) -> None:
        for session_id in session_ids:
            await self.event_bus.close_session(session_id)
            self.event_bus.clear_event_history(session_id)

    async def cleanup_expired(self, now: float | None = None) -> list[str]:
        """Forget sessions finished longer than the TTL ago and tidy reviews.

        Stale reviews are expired; finished reviews past their retention are
        purged from the review store.

        Returns:
            The removed session IDs.
        """
        now = time.time() if now is None else now
        async with self._lock:
            expired = [
                s.session_id
                for s in self._sessions.values()
                if s.completed_at is not None and now - s.completed_at > self.session_ttl_seconds
            ]
            for session_id in expired:
                del self._sessions[session_id]

        await self._release_streams(expired)
        stale_reviews = self.review_system.expire_stale()
        purged_reviews = self.review_system.purge_finished()
        if expired or stale_reviews or purged_reviews:
            logger.info(
                "session_cleanup",
                sessions_removed=len(expired),
                reviews_expired=stale_reviews,
                reviews_purged=purged_reviews,
            )
        return expired

    async def start_cleanup_loop(self, interval_seconds: float = 60.0) -> asyncio.Task[None]:
        """Run ``cleanup_expired`` every ``interval_seconds`` until cancelled."""

        async def _loop() -> None:
            while True:
                try:
                    await asyncio.sleep(interval_seconds)
                    await self.cleanup_expired()
                except asyncio.CancelledError:
                    logger.info("cleanup_loop_stopped")
                    return
                except Exception as e:
                    logger.error("cleanup_loop_error", error=str(e))

        logger.info("cleanup_loop_started", interval_seconds=interval_seconds)
        return asyncio.create_task(_loop(), name="session_cleanup")

    async def cleanup_all(self) -> None:
        """Cancel every run and drop all sessions. Called at shutdown."""
        async with self._lock:
            running = list(self._tasks.items())
            self._tasks.clear()
            session_ids = list(self._sessions)

        for session_id, task in running:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                continue
            except Exception as e:
                logger.error("shutdown_cancel_failed", session_id=session_id, error=str(e))

        await self._release_streams(session_ids)
        async with self._lock:
            self._sessions.clear()
        logger.info("sessions_shut_down", session_count=len(session_ids))
