"""Models module for Pydantic schemas.

This module exposes all request/response models used by the API.
"""

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

__all__ = [
    "AnalysisRequest",
    "AnalysisResultResponse",
    "HealthResponse",
    "ReviewResponse",
    "ReviewSubmissionResponse",
    "SessionDetailResponse",
    "SessionMetrics",
    "SessionResponse",
    "SessionSummaryResponse",
    "SessionStatus",
]
