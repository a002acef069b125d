"""Pydantic schemas for API request/response models.

This module defines the data models used by the HTTP API and WebSocket
handlers. Pipeline contracts (syntheses, review payloads) are reused from
``agents.schemas`` rather than redeclared here.
"""

from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field

from agents.schemas import Confidence, HumanInput, HumanReviewInput, MetaSynthesis


class SessionStatus(StrEnum):
    """Session lifecycle status."""

    STARTED = "started"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


class AnalysisRequest(BaseModel):
    """Request body for starting an analysis."""

    query: str = Field(
        min_length=1,
        max_length=10000,
        description="The question to analyze",
        examples=["Should we migrate our monolith to microservices this year?"],
    )
    enable_human_review: bool = Field(
        default=False,
        description="Allow escalation to a human reviewer",
    )
    confidence_threshold_for_human_review: Confidence = Field(
        default="Low",
        description="Highest synthesis confidence that still triggers review",
        examples=["Low", "Medium"],
    )
    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per agent call before recovery falls back",
    )


class SessionResponse(BaseModel):
    """Response for session creation."""

    session_id: str = Field(
        description="Unique session identifier",
        examples=["sess_abc123def456"],
    )
    websocket_url: str = Field(
        description="WebSocket URL for real-time event streaming",
        examples=["/ws/sess_abc123def456"],
    )
    status: SessionStatus = Field(
        description="Current session status",
    )


class SessionMetrics(BaseModel):
    """Aggregate metrics for an entire session."""

    total_input_tokens: int = Field(
        default=0,
        ge=0,
        description="Total input tokens across all LLM calls",
    )
    total_output_tokens: int = Field(
        default=0,
        ge=0,
        description="Total output tokens across all LLM calls",
    )
    total_llm_calls: int = Field(
        default=0,
        ge=0,
        description="Total number of LLM invocations",
    )
    total_agent_errors: int = Field(
        default=0,
        ge=0,
        description="Agent calls that needed recovery",
    )
    total_retries: int = Field(
        default=0,
        ge=0,
        description="Extra attempts made beyond the first",
    )
    execution_time_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Total execution time in seconds",
    )


class SessionSummaryResponse(BaseModel):
    """Summary information for listing sessions."""

    session_id: str = Field(description="Unique session identifier")
    query: str = Field(description="The analyzed query")
    status: SessionStatus = Field(description="Current session status")
    created_at: float = Field(description="Unix timestamp of session creation")
    started_at: float | None = Field(
        default=None,
        description="Unix timestamp when execution started",
    )
    completed_at: float | None = Field(
        default=None,
        description="Unix timestamp when execution completed",
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if the session failed",
    )
    metrics: SessionMetrics = Field(
        default_factory=SessionMetrics,
        description="Aggregated metrics for this session",
    )


class SessionDetailResponse(SessionSummaryResponse):
    """Detailed session information."""

    success: bool | None = Field(
        default=None,
        description="Whether the analysis succeeded (None while running)",
    )
    human_review_required: bool = Field(
        default=False,
        description="Whether the run escalated to a human reviewer",
    )
    human_review_reason: str | None = Field(
        default=None,
        description="Why review was requested",
    )
    pending_reviews: list[str] = Field(
        default_factory=list,
        description="IDs of review requests still awaiting an answer",
    )


class AnalysisResultResponse(BaseModel):
    """Result of a finished analysis."""

    session_id: str = Field(description="Unique session identifier")
    success: bool = Field(description="Whether the analysis succeeded")
    final_synthesis: MetaSynthesis | None = Field(
        default=None,
        description="Refined final synthesis",
    )
    session_state: dict[str, Any] = Field(
        default_factory=dict,
        description="Accumulated per-phase state, errors and artifacts",
    )
    human_review_required: bool = Field(default=False)
    human_review_reason: str | None = Field(default=None)


class ReviewResponse(BaseModel):
    """A human review request and its current state."""

    review_id: str = Field(
        description="Unique review identifier",
        examples=["review_0123456789ab"],
    )
    session_id: str | None = Field(
        default=None,
        description="Session that requested the review",
    )
    status: Literal["pending", "completed", "expired"] = Field(
        description="Review status",
    )
    request: HumanReviewInput = Field(description="What the reviewer is asked")
    submitted_at: float = Field(description="Unix timestamp of the request")
    expires_at: float = Field(description="Unix timestamp after which it expires")
    result: HumanInput | None = Field(
        default=None,
        description="Reviewer input, once submitted",
    )


class ReviewSubmissionResponse(BaseModel):
    """Acknowledgement of a reviewer's submission."""

    review_id: str = Field(description="Unique review identifier")
    accepted: bool = Field(description="Whether the submission was recorded")
    status: Literal["pending", "completed", "expired"] = Field(
        description="Review status after the submission",
    )
    next_steps: list[str] = Field(
        default_factory=list,
        description="Follow-up actions derived from the reviewer's decision",
    )


class HealthResponse(BaseModel):
    """Health check response."""

    status: Literal["healthy", "unhealthy"] = Field(
        description="Overall health status",
    )
    timestamp: float = Field(
        description="Current server timestamp",
    )
    version: str = Field(
        default="0.1.0",
        description="API version",
    )
    active_sessions: int = Field(
        default=0,
        description="Number of currently running analyses",
    )
    pending_reviews: int = Field(
        default=0,
        description="Human review requests awaiting an answer",
    )
