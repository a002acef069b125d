"""In-memory workflow metrics for analysis sessions.

This module provides the WorkflowMetricsCollector that tracks, per session,
the status and timing of each pipeline phase, the agents involved, error
and retry counts, and LLM token totals.

Finished sessions are kept (up to ``max_session_history``) so the API can
report on them after the run.

Usage:
    >>> from metrics import WorkflowMetricsCollector
    >>> collector = WorkflowMetricsCollector()
    >>> collector.start("sess_abc123", query="Is remote work more productive?")
    >>> collector.start_phase("sess_abc123", "evidence")
    >>> collector.record_agent("sess_abc123", "evidence", "assumptions", attempts=2)
    >>> collector.complete_phase("sess_abc123", "evidence")
    >>> final = collector.finish("sess_abc123", status="completed")
"""

import time
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

import structlog

logger = structlog.get_logger(__name__)

PhaseStatus = Literal["running", "completed", "aborted", "failed"]
SessionStatus = Literal["running", "completed", "aborted", "failed", "cancelled"]


@dataclass
class PhaseMetricsData:
    """Metrics for one phase of one session.

    Attributes:
        phase: Phase name (intake, evidence, challenge, ...).
        status: Current phase status.
        agents_involved: Agent names invoked in this phase, in call order.
        error_count: Failed agent calls recorded in this phase.
        retry_count: Extra attempts made beyond the first, summed over agents.
        started_at: Unix timestamp when the phase started.
        duration_ms: Phase duration, set when the phase completes.
    """

    phase: str
    status: PhaseStatus = "running"
    agents_involved: list[str] = field(default_factory=list)
    error_count: int = 0
    retry_count: int = 0
    started_at: float = field(default_factory=time.time)
    duration_ms: int = 0


@dataclass
class WorkflowMetricsData:
    """Accumulated metrics for a single analysis session.

    Attributes:
        query: The original query.
        status: Overall session status.
        phases: Per-phase metrics in execution order.
        prompt_tokens: Total input tokens across all LLM calls.
        completion_tokens: Total output tokens across all LLM calls.
        llm_calls: Number of LLM invocations.
        started_at: Unix timestamp when tracking began.
        duration_ms: Total execution time (set by finish()).
    """

    query: str = ""
    status: SessionStatus = "running"
    phases: dict[str, PhaseMetricsData] = field(default_factory=dict)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    llm_calls: int = 0
    started_at: float = field(default_factory=time.time)
    duration_ms: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def total_errors(self) -> int:
        return sum(p.error_count for p in self.phases.values())

    @property
    def total_retries(self) -> int:
        return sum(p.retry_count for p in self.phases.values())

    @property
    def agents_used(self) -> list[str]:
        seen: dict[str, None] = {}
        for phase in self.phases.values():
            seen.update(dict.fromkeys(phase.agents_involved))
        return list(seen)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain dict for API responses."""
        return {
            "query": self.query,
            "status": self.status,
            "phases": [asdict(p) for p in self.phases.values()],
            "total_tokens": self.total_tokens,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "llm_calls": self.llm_calls,
            "total_agents_used": len(self.agents_used),
            "total_errors": self.total_errors,
            "total_retries": self.total_retries,
            "duration_ms": self.duration_ms,
        }


class WorkflowMetricsCollector:
    """In-memory collector that tracks per-session workflow metrics.

    All methods are synchronous; they run on the event loop between awaits
    and never block.

    Attributes:
        max_session_history: Sessions retained before the oldest is dropped.
    """

    def __init__(self, max_session_history: int = 100) -> None:
        self.max_session_history = max_session_history
        self._sessions: OrderedDict[str, WorkflowMetricsData] = OrderedDict()
        logger.info("metrics_collector_initialized")

    def start(self, session_id: str, query: str = "") -> None:
        """Begin tracking a session; a no-op if it is already tracked."""
        if session_id in self._sessions:
            logger.debug("metrics_already_tracking", session_id=session_id)
            return

        self._sessions[session_id] = WorkflowMetricsData(query=query)
        while len(self._sessions) > self.max_session_history:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("metrics_session_evicted", session_id=evicted)

        logger.debug("metrics_tracking_started", session_id=session_id)

    def start_phase(self, session_id: str, phase: str) -> None:
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_phase_no_session", session_id=session_id, phase=phase)
            return
        data.phases[phase] = PhaseMetricsData(phase=phase)

    def record_agent(
        self,
        session_id: str,
        phase: str,
        agent_name: str,
        *,
        attempts: int = 1,
        failed: bool = False,
    ) -> None:
        """Record one agent call within a phase.

        Args:
            session_id: The session the call belongs to.
            phase: Phase the call ran in.
            agent_name: The agent invoked.
            attempts: Attempts made against the primary agent.
            failed: Whether the call produced an error entry.
        """
        phase_data = self._phase(session_id, phase)
        if phase_data is None:
            return
        phase_data.agents_involved.append(agent_name)
        phase_data.retry_count += max(attempts - 1, 0)
        if failed:
            phase_data.error_count += 1

    def complete_phase(
        self, session_id: str, phase: str, status: PhaseStatus = "completed"
    ) -> None:
        phase_data = self._phase(session_id, phase)
        if phase_data is None:
            return
        phase_data.status = status
        phase_data.duration_ms = int((time.time() - phase_data.started_at) * 1000)

        logger.debug(
            "metrics_phase_completed",
            session_id=session_id,
            phase=phase,
            status=status,
            duration_ms=phase_data.duration_ms,
            error_count=phase_data.error_count,
        )

    def record_llm_call(
        self,
        session_id: str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> None:
        """Record token usage from a single LLM call."""
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_record_no_session", session_id=session_id)
            return

        data.prompt_tokens += prompt_tokens
        data.completion_tokens += completion_tokens
        data.llm_calls += 1

    def finish(
        self, session_id: str, status: SessionStatus = "completed"
    ) -> WorkflowMetricsData | None:
        """Finalize a session, calculating its duration.

        The data stays in the collector so it can still be reported.

        Returns:
            The final WorkflowMetricsData, or None if not tracked.
        """
        data = self._sessions.get(session_id)
        if data is None:
            logger.warning("metrics_finish_no_session", session_id=session_id)
            return None

        data.status = status
        data.duration_ms = int((time.time() - data.started_at) * 1000)

        logger.info(
            "metrics_session_finished",
            session_id=session_id,
            status=status,
            total_tokens=data.total_tokens,
            llm_calls=data.llm_calls,
            total_errors=data.total_errors,
            total_retries=data.total_retries,
            duration_ms=data.duration_ms,
        )
        return data

    def get(self, session_id: str) -> WorkflowMetricsData | None:
        """Get current metrics for a session without finalizing it."""
        return self._sessions.get(session_id)

    def summary(self) -> dict[str, Any]:
        """Aggregate statistics over all retained sessions."""
        sessions = list(self._sessions.values())
        finished = [s for s in sessions if s.status != "running"]
        return {
            "total_sessions": len(sessions),
            "completed_sessions": sum(1 for s in sessions if s.status == "completed"),
            "failed_sessions": sum(
                1 for s in sessions if s.status in ("aborted", "failed")
            ),
            "average_duration_ms": (
                int(sum(s.duration_ms for s in finished) / len(finished))
                if finished
                else 0
            ),
            "total_tokens": sum(s.total_tokens for s in sessions),
        }

    def _phase(self, session_id: str, phase: str) -> PhaseMetricsData | None:
        data = self._sessions.get(session_id)
        if data is None or phase not in data.phases:
            logger.warning("metrics_phase_not_found", session_id=session_id, phase=phase)
            return None
        return data.phases[phase]


# Global collector shared by the API and background sessions
_metrics_collector: WorkflowMetricsCollector | None = None


def get_metrics_collector() -> WorkflowMetricsCollector:
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = WorkflowMetricsCollector()
    return _metrics_collector


def reset_metrics_collector() -> None:
    global _metrics_collector
    _metrics_collector = None
