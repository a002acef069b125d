"""HTTP API routes for the analysis backend.

This module defines the HTTP endpoints for running analyses, session
management, human review and health checks. Real-time events are handled
via WebSocket in websocket.py.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status
from pydantic import ValidationError

from agents.schemas import HumanInput
from events import get_event_bus
from models.schemas import (
    AnalysisRequest,
    AnalysisResultResponse,
    HealthResponse,
    ReviewResponse,
    ReviewSubmissionResponse,
    SessionDetailResponse,
    SessionMetrics,
    SessionResponse,
    SessionStatus,
    SessionSummaryResponse,
)
from orchestration.pipeline import OrchestrationRequest
from orchestration.review import ReviewSubmission, determine_next_steps

if TYPE_CHECKING:
    from session_manager import AnalysisSessionManager, SessionInfo

logger = structlog.get_logger(__name__)

router = APIRouter()

_TERMINAL_SESSION_STATUSES = {
    SessionStatus.COMPLETE,
    SessionStatus.ERROR,
    SessionStatus.CANCELLED,
}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_orchestration_request(request: AnalysisRequest) -> OrchestrationRequest:
    """Validate an API request against the pipeline's request contract."""
    try:
        return OrchestrationRequest.model_validate(request.model_dump())
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False),
        ) from e


def _session_or_404(session_id: str) -> SessionInfo:
    session = get_session_manager().get_session(session_id)
    if session is None:
        logger.warning("session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return session


def _review_or_404(review_id: str) -> ReviewSubmission:
    submission = get_session_manager().review_system.get(review_id)
    if submission is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Review {review_id} not found",
        )
    return submission


def _to_result_response(session: SessionInfo) -> AnalysisResultResponse:
    result = session.result
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session {session.session_id} has no result (status: {session.status})",
        )
    return AnalysisResultResponse(
        session_id=session.session_id,
        success=result.success,
        final_synthesis=result.final_synthesis,
        session_state=result.session_state,
        human_review_required=result.human_review_required,
        human_review_reason=result.human_review_reason,
    )


def _to_review_response(submission: ReviewSubmission) -> ReviewResponse:
    return ReviewResponse(
        review_id=submission.review_id,
        session_id=submission.session_id,
        status=submission.status.value,
        request=submission.request,
        submitted_at=submission.submitted_at,
        expires_at=submission.expires_at,
        result=submission.result,
    )


# Session manager dependency (set during application startup)
_session_manager: AnalysisSessionManager | None = None


def set_session_manager(manager: AnalysisSessionManager) -> None:
    """Set the session manager instance for the routes.

    This should be called during application startup to inject the session
    manager dependency.
    """
    global _session_manager
    _session_manager = manager
    logger.info("session_manager_configured")


def get_session_manager() -> AnalysisSessionManager:
    """Get the session manager instance.

    Raises:
        RuntimeError: If the session manager has not been configured.
    """
    if _session_manager is None:
        logger.error("session_manager_not_configured")
        raise RuntimeError(
            "AnalysisSessionManager not configured. Call set_session_manager() during startup."
        )
    return _session_manager


# -----------------------------------------------------------------------------
# Analysis
# -----------------------------------------------------------------------------


@router.post(
    "/api/analyze",
    response_model=AnalysisResultResponse,
    summary="Run an analysis",
    description="Run the full six-phase analysis and wait for the result.",
)
async def analyze(request: AnalysisRequest) -> AnalysisResultResponse:
    """Run an analysis to completion.

    Failures inside the pipeline are reported through ``success=False`` in
    the response body, not as HTTP errors.
    """
    orchestration_request = _to_orchestration_request(request)
    session = await get_session_manager().analyze(orchestration_request)

    logger.info(
        "analysis_complete",
        session_id=session.session_id,
        status=session.status.value,
    )
    return _to_result_response(session)


@router.post(
    "/api/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start an analysis session",
    description="Start an analysis in the background and stream its events.",
)
async def create_session(request: AnalysisRequest) -> SessionResponse:
    """Create a new session and start the pipeline in the background.

    Returns:
        SessionResponse with session_id, websocket_url, and initial status.

    Raises:
        HTTPException: If session creation fails.
    """
    orchestration_request = _to_orchestration_request(request)
    session_manager = get_session_manager()

    try:
        session_id = await session_manager.create_session(orchestration_request)
    except Exception as e:
        logger.error("session_creation_failed", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create session: {e}",
        ) from e

    session = session_manager.get_session(session_id)
    session_status = session.status if session else SessionStatus.STARTED

    logger.info(
        "session_created",
        session_id=session_id,
        query_length=len(request.query),
    )
    return SessionResponse(
        session_id=session_id,
        websocket_url=f"/ws/{session_id}",
        status=session_status,
    )


# -----------------------------------------------------------------------------
# Sessions
# -----------------------------------------------------------------------------


@router.get(
    "/api/sessions",
    response_model=list[SessionSummaryResponse],
    summary="List sessions",
    description="List recent sessions with lifecycle metadata and metrics.",
)
async def list_sessions(
    limit: Annotated[int, Query(description="Maximum sessions to return", ge=1, le=200)] = 25,
) -> list[SessionSummaryResponse]:
    session_manager = get_session_manager()
    sessions = sorted(
        session_manager.get_all_sessions(),
        key=lambda s: s.created_at,
        reverse=True,
    )[:limit]

    return [
        SessionSummaryResponse(
            session_id=session.session_id,
            query=session.query,
            status=session.status,
            created_at=session.created_at,
            started_at=session.started_at,
            completed_at=session.completed_at,
            error_message=session.error_message,
            metrics=session_manager.get_session_metrics(session.session_id)
            or SessionMetrics(),
        )
        for session in sessions
    ]


@router.get(
    "/api/sessions/{session_id}",
    response_model=SessionDetailResponse,
    summary="Get session details",
    description="Get current session state including status and review flags.",
)
async def get_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> SessionDetailResponse:
    session = _session_or_404(session_id)
    session_manager = get_session_manager()
    result = session.result

    return SessionDetailResponse(
        session_id=session.session_id,
        query=session.query,
        status=session.status,
        created_at=session.created_at,
        started_at=session.started_at,
        completed_at=session.completed_at,
        error_message=session.error_message,
        metrics=session_manager.get_session_metrics(session_id) or SessionMetrics(),
        success=result.success if result else None,
        human_review_required=result.human_review_required if result else False,
        human_review_reason=result.human_review_reason if result else None,
        pending_reviews=[
            s.review_id for s in session_manager.review_system.list_pending(session_id)
        ],
    )


@router.get(
    "/api/sessions/{session_id}/result",
    response_model=AnalysisResultResponse,
    summary="Get analysis result",
    description="Get the result of a finished analysis session.",
)
async def get_session_result(
    session_id: Annotated[str, Path(description="The session ID")]
) -> AnalysisResultResponse:
    """Raises 409 while the session is still running or was cancelled."""
    return _to_result_response(_session_or_404(session_id))


@router.get(
    "/api/sessions/{session_id}/events",
    summary="Get session events",
    description="Get the stored event history of a session.",
)
async def get_session_events(
    session_id: Annotated[str, Path(description="The session ID")],
    since: Annotated[
        float | None, Query(description="Only events strictly after this timestamp")
    ] = None,
) -> list[dict[str, Any]]:
    _session_or_404(session_id)
    return [
        event.model_dump(mode="json")
        for event in get_event_bus().get_event_history(session_id, since=since)
    ]


@router.get(
    "/api/sessions/{session_id}/metrics",
    response_model=SessionMetrics,
    summary="Get session metrics",
    description="Get token usage, retry and execution metrics for a session.",
)
async def get_session_metrics(
    session_id: Annotated[str, Path(description="The session ID")]
) -> SessionMetrics:
    metrics = get_session_manager().get_session_metrics(session_id)
    if metrics is None:
        logger.warning("get_metrics_session_not_found", session_id=session_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found",
        )
    return metrics


@router.post(
    "/api/sessions/{session_id}/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel a running session",
    description="Cancel a running analysis session.",
)
async def cancel_session(
    session_id: Annotated[str, Path(description="The session ID")]
) -> dict[str, str]:
    """Cancel a running session.

    Raises:
        HTTPException: If session is not found or is already finished.
    """
    session = _session_or_404(session_id)

    if session.status in _TERMINAL_SESSION_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Session {session_id} is already {session.status}",
        )

    await get_session_manager().cancel_session(session_id)
    logger.info("session_cancelled", session_id=session_id)

    return {"message": f"Session {session_id} cancelled"}


# -----------------------------------------------------------------------------
# Human review
# -----------------------------------------------------------------------------


@router.get(
    "/api/reviews",
    response_model=list[ReviewResponse],
    summary="List pending reviews",
    description="List review requests still awaiting a human answer.",
)
async def list_reviews(
    session_id: Annotated[
        str | None, Query(description="Only reviews raised by this session")
    ] = None,
) -> list[ReviewResponse]:
    pending = get_session_manager().review_system.list_pending(session_id)
    return [_to_review_response(s) for s in pending]


@router.get(
    "/api/reviews/{review_id}",
    response_model=ReviewResponse,
    summary="Get a review request",
)
async def get_review(
    review_id: Annotated[str, Path(description="The review ID")]
) -> ReviewResponse:
    return _to_review_response(_review_or_404(review_id))


@router.post(
    "/api/reviews/{review_id}",
    response_model=ReviewSubmissionResponse,
    summary="Submit a review",
    description="Record a reviewer's decision for a pending review request.",
)
async def submit_review(
    review_id: Annotated[str, Path(description="The review ID")],
    human_input: HumanInput,
) -> ReviewSubmissionResponse:
    """Submit reviewer input.

    Raises:
        HTTPException: 404 for unknown reviews, 409 if the review is no
            longer pending (already answered or expired).
    """
    session_manager = get_session_manager()
    _review_or_404(review_id)

    accepted = await session_manager.submit_review(review_id, human_input)
    review_status = session_manager.review_system.get_status(review_id)
    if not accepted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Review {review_id} is {review_status.value}",
        )

    logger.info("review_submitted", review_id=review_id, decision=human_input.decision)
    return ReviewSubmissionResponse(
        review_id=review_id,
        accepted=True,
        status=review_status.value,
        next_steps=determine_next_steps(human_input),
    )


@router.get(
    "/api/audit",
    summary="Agent call audit statistics",
    description="Cache, block and slow-call counters of the agent audit trail.",
)
async def get_audit_stats() -> dict[str, Any]:
    audit = get_session_manager().audit
    if audit is None:
        return {"enabled": False}
    return {"enabled": True, **audit.get_audit_stats()}


# -----------------------------------------------------------------------------
# Health
# -----------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with session and review counts.",
)
async def health_check() -> HealthResponse:
    active_sessions = 0
    pending_reviews = 0
    overall_status = "healthy"

    try:
        session_manager = get_session_manager()
        active_sessions = session_manager.active_session_count()
        pending_reviews = len(session_manager.review_system.list_pending())
    except RuntimeError:
        # AnalysisSessionManager not configured yet (e.g., during startup)
        overall_status = "unhealthy"

    return HealthResponse(
        status=overall_status,
        timestamp=time.time(),
        active_sessions=active_sessions,
        pending_reviews=pending_reviews,
    )
