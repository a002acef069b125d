"""Human review gate and review request tracking.

Two halves live here:

- The gate: pure functions that decide whether a finished analysis needs a
  human reviewer and build the request that goes out.
- ``HumanReviewSystem``: the in-memory collaborator that holds submitted
  requests until a reviewer answers or they expire.

Usage:
    >>> decision = decide_human_review("Low", "Low", errors)
    >>> if decision.required:
    ...     request = build_review_request(query, synthesis, "Low", summary, decision.reason, errors)
    ...     output = await review_system.request_review(request)
"""

import asyncio
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from agents.schemas import (
    PENDING_REVIEW_NEXT_STEPS,
    Confidence,
    HumanInput,
    HumanReviewInput,
    HumanReviewOutput,
    ReviewConfidence,
    ReviewContext,
    ReviewRequestDetails,
    ReviewType,
)
from config import settings
from orchestration.state import ErrorInfo

logger = structlog.get_logger(__name__)

CONFIDENCE_LEVELS: dict[str, int] = {"High": 3, "Medium": 2, "Low": 1}

BASE_REVIEW_QUESTIONS = [
    "Should the analysis proceed despite the identified issues?",
    "Are there alternative approaches to address the gaps?",
    "What additional data sources should be considered?",
]
LOW_CONFIDENCE_QUESTION = "What specific actions would increase confidence?"

# Keyword groups scanned in the critical issues, in report order
EXPERTISE_KEYWORDS: list[tuple[tuple[str, ...], str]] = [
    (("bias", "fairness"), "Ethics and bias assessment"),
    (("conflict", "contradiction"), "Conflict resolution and evidence evaluation"),
    (("risk", "failure"), "Risk assessment and mitigation"),
    (("assumption", "uncertainty"), "Uncertainty quantification"),
    (("technical", "complex"), "Domain-specific technical expertise"),
]
GENERAL_EXPERTISE = "General analytical expertise"

SUGGESTED_ACTIONS: dict[str, list[str]] = {
    "critical_decision": [
        "Validate critical decision points",
        "Confirm risk assessment accuracy",
        "Approve or modify recommendations",
    ],
    "low_confidence": [
        "Identify missing information sources",
        "Validate analytical approach",
        "Provide domain expertise to resolve uncertainties",
    ],
    "high_risk": [
        "Assess potential negative outcomes",
        "Validate mitigation strategies",
        "Approve risk tolerance levels",
    ],
    "user_requested": [
        "Review analysis completeness",
        "Validate conclusions against expertise",
        "Provide additional insights",
    ],
}
LOW_CONFIDENCE_ACTIONS = [
    "Identify root causes of low confidence",
    "Suggest additional analysis paths",
]


# -----------------------------------------------------------------------------
# Gate
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ReviewDecision:
    required: bool
    reason: str | None = None


def decide_human_review(
    confidence: str,
    threshold: str,
    errors: Sequence[ErrorInfo],
) -> ReviewDecision:
    """Decide whether the analysis must be escalated to a reviewer.

    Review is required when the synthesis confidence is at or below the
    threshold, or when any critical failure was recorded. A critical failure
    takes precedence for the reason.

    Args:
        confidence: Synthesis confidence (High, Medium or Low).
        threshold: Highest confidence that still triggers review.
        errors: The run's error log.
    """
    required = False
    reason: str | None = None

    if CONFIDENCE_LEVELS.get(confidence, 1) <= CONFIDENCE_LEVELS.get(threshold, 1):
        required = True
        reason = f"Confidence level ({confidence}) is at or below threshold ({threshold})"

    critical = [e for e in errors if e.is_critical_failure]
    if critical:
        required = True
        reason = "Critical errors encountered: " + ", ".join(e.agent for e in critical)

    return ReviewDecision(required=required, reason=reason)


def identify_expertise_areas(critical_issues: Sequence[str]) -> list[str]:
    text = " ".join(critical_issues).lower()
    areas = [
        area
        for keywords, area in EXPERTISE_KEYWORDS
        if any(keyword in text for keyword in keywords)
    ]
    return areas or [GENERAL_EXPERTISE]


def suggested_actions(review_type: ReviewType, confidence: str) -> list[str]:
    actions = list(SUGGESTED_ACTIONS.get(review_type, []))
    if confidence == "Low":
        actions.extend(LOW_CONFIDENCE_ACTIONS)
    return actions


def build_review_request(
    query: str,
    synthesis: Any,
    confidence: Confidence,
    summary: str,
    reason: str,
    errors: Sequence[ErrorInfo],
) -> HumanReviewInput:
    """Assemble the review request sent to the reviewer.

    Args:
        query: The user's original query.
        synthesis: The refined synthesis shown to the reviewer.
        confidence: Synthesis confidence.
        summary: Synthesis summary used in the confidence rationale.
        reason: Why the gate escalated.
        errors: The run's error log; critical entries become issues.
    """
    critical = [e for e in errors if e.is_critical_failure]
    critical_issues = [reason, *(f"{e.agent}: {e.error}" for e in critical)]

    questions = list(BASE_REVIEW_QUESTIONS)
    if confidence == "Low":
        questions.append(LOW_CONFIDENCE_QUESTION)

    review_type: ReviewType = "low_confidence" if confidence == "Low" else "critical_decision"

    return HumanReviewInput(
        review_type=review_type,
        context=ReviewContext(
            query=query,
            current_analysis=synthesis,
            confidence=ReviewConfidence(
                score=confidence,
                rationale=f"Synthesis confidence: {confidence}. Summary: {summary}",
            ),
            critical_issues=critical_issues,
        ),
        review_request=ReviewRequestDetails(
            specific_questions=questions,
            areas_needing_expertise=identify_expertise_areas(critical_issues),
            suggested_actions=suggested_actions(review_type, confidence),
            urgency="high" if critical else "medium",
        ),
    )


def determine_next_steps(human_input: HumanInput) -> list[str]:
    """Translate a reviewer's answer into follow-up steps."""
    steps: list[str] = []

    decision = human_input.decision
    if decision == "approve":
        steps.append("Proceed with current analysis")
        if human_input.confidence_adjustment == "increase":
            steps.append("Increase confidence level based on expert validation")
    elif decision == "reject":
        steps.append("Halt current analysis path")
        steps.append("Document rejection reason")
        if human_input.additional_guidance:
            steps.append("Follow expert guidance for alternative approach")
    elif decision == "modify":
        steps.append("Apply expert modifications to analysis")
        if human_input.modifications:
            steps.append("Update relevant components with expert input")
        steps.append("Re-run affected analysis steps")
    elif decision == "request_more_analysis":
        steps.append("Conduct additional analysis as requested")
        for guidance in human_input.additional_guidance or []:
            steps.append(f"Additional analysis: {guidance}")

    if human_input.feedback:
        steps.append("Incorporate expert feedback into final output")

    return steps


def _utc_now() -> str:
    return datetime.now(UTC).isoformat()


# -----------------------------------------------------------------------------
# Review tracking
# -----------------------------------------------------------------------------


class ReviewStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass
class ReviewSubmission:
    """A review request waiting for (or holding) a reviewer's answer."""

    review_id: str
    request: HumanReviewInput
    submitted_at: float
    expires_at: float
    session_id: str | None = None
    status: ReviewStatus = ReviewStatus.PENDING
    result: HumanInput | None = None
    completed_at: str | None = None
    finished_at: float | None = None
    answered: asyncio.Event = field(default_factory=asyncio.Event)


class HumanReviewSystem:
    """In-memory store of review requests.

    A request is pending until ``submit_result`` answers it or its timeout
    passes. Expiry is applied lazily on read and in bulk by
    ``expire_stale``. Completed and expired requests are kept for
    ``retention_minutes`` so late readers still get a status, then
    ``purge_finished`` drops them.

    Attributes:
        timeout_minutes: Lifetime of a pending request.
        retention_minutes: How long a finished request stays readable.
    """

    def __init__(
        self,
        timeout_minutes: float | None = None,
        *,
        retention_minutes: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.timeout_minutes = (
            timeout_minutes
            if timeout_minutes is not None
            else settings.human_review_timeout_minutes
        )
        self.retention_minutes = (
            retention_minutes
            if retention_minutes is not None
            else settings.session_ttl_minutes
        )
        self._clock = clock
        self._reviews: dict[str, ReviewSubmission] = {}

    def submit(self, request: HumanReviewInput, *, session_id: str | None = None) -> str:
        """Register a review request and return its ID."""
        review_id = f"review_{uuid.uuid4().hex[:12]}"
        now = self._clock()
        self._reviews[review_id] = ReviewSubmission(
            review_id=review_id,
            request=request,
            submitted_at=now,
            expires_at=now + self.timeout_minutes * 60,
            session_id=session_id,
        )
        logger.info(
            "human_review_submitted",
            review_id=review_id,
            session_id=session_id,
            review_type=request.review_type,
            urgency=request.review_request.urgency,
        )
        return review_id

    def get(self, review_id: str) -> ReviewSubmission | None:
        submission = self._reviews.get(review_id)
        if submission is not None:
            self._expire_if_due(submission)
        return submission

    def get_status(self, review_id: str) -> ReviewStatus:
        """Status of a review; unknown IDs count as expired."""
        submission = self.get(review_id)
        if submission is None:
            return ReviewStatus.EXPIRED
        return submission.status

    def get_result(self, review_id: str) -> HumanInput | None:
        submission = self.get(review_id)
        if submission is None or submission.status is not ReviewStatus.COMPLETED:
            return None
        return submission.result

    def submit_result(self, review_id: str, human_input: HumanInput) -> bool:
        """Record a reviewer's answer.

        Returns:
            True if the review was pending and is now completed.
        """
        submission = self.get(review_id)
        if submission is None or submission.status is not ReviewStatus.PENDING:
            logger.warning(
                "human_review_result_rejected",
                review_id=review_id,
                status=submission.status if submission else None,
            )
            return False

        submission.result = human_input
        submission.status = ReviewStatus.COMPLETED
        submission.completed_at = _utc_now()
        submission.finished_at = self._clock()
        submission.answered.set()
        logger.info(
            "human_review_completed",
            review_id=review_id,
            decision=human_input.decision,
        )
        return True

    def expire_stale(self) -> int:
        """Expire every pending review past its deadline; returns the count."""
        expired = 0
        for submission in self._reviews.values():
            if self._expire_if_due(submission):
                expired += 1
        if expired:
            logger.info("human_reviews_expired", count=expired)
        return expired

    def purge_finished(self) -> int:
        """Drop finished reviews older than the retention window; returns the count."""
        cutoff = self._clock() - self.retention_minutes * 60
        purged = [
            review_id
            for review_id, s in self._reviews.items()
            if s.finished_at is not None and s.finished_at < cutoff
        ]
        for review_id in purged:
            del self._reviews[review_id]
        if purged:
            logger.info("human_reviews_purged", count=len(purged))
        return len(purged)

    def list_pending(self, session_id: str | None = None) -> list[ReviewSubmission]:
        self.expire_stale()
        return [
            s
            for s in self._reviews.values()
            if s.status is ReviewStatus.PENDING
            and (session_id is None or s.session_id == session_id)
        ]

    def build_output(self, review_id: str) -> HumanReviewOutput:
        """Render the current state of a review as the collaborator output."""
        submission = self.get(review_id)
        if submission is None or submission.result is None:
            return HumanReviewOutput(
                review_completed=False,
                review_id=review_id,
                next_steps=list(PENDING_REVIEW_NEXT_STEPS),
                timestamp=_utc_now(),
            )
        return HumanReviewOutput(
            review_completed=True,
            review_id=review_id,
            human_input=submission.result,
            next_steps=determine_next_steps(submission.result),
            timestamp=submission.completed_at or _utc_now(),
        )

    async def request_review(
        self,
        request: HumanReviewInput,
        *,
        session_id: str | None = None,
        wait_seconds: float = 0.0,
    ) -> HumanReviewOutput:
        """Submit a request and wait up to ``wait_seconds`` for an answer.

        With no wait (the default) the pending output is returned at once
        and the answer can be collected later through the review ID.
        """
        review_id = self.submit(request, session_id=session_id)
        if wait_seconds > 0:
            submission = self._reviews[review_id]
            try:
                await asyncio.wait_for(submission.answered.wait(), timeout=wait_seconds)
            except TimeoutError:
                logger.info(
                    "human_review_wait_timeout",
                    review_id=review_id,
                    wait_seconds=wait_seconds,
                )
        return self.build_output(review_id)

    def _expire_if_due(self, submission: ReviewSubmission) -> bool:
        if (
            submission.status is ReviewStatus.PENDING
            and self._clock() > submission.expires_at
        ):
            submission.status = ReviewStatus.EXPIRED
            submission.finished_at = submission.expires_at
            logger.debug("human_review_expired", review_id=submission.review_id)
            return True
        return False


# -----------------------------------------------------------------------------
# Singleton
# -----------------------------------------------------------------------------

_review_system: HumanReviewSystem | None = None


def get_review_system() -> HumanReviewSystem:
    """Get the global HumanReviewSystem shared by the pipeline and the API."""
    global _review_system
    if _review_system is None:
        _review_system = HumanReviewSystem()
    return _review_system


def reset_review_system() -> None:
    """Reset the global HumanReviewSystem singleton (used by tests)."""
    global _review_system
    _review_system = None
