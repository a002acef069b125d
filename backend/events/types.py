"""Event type definitions for the analysis event system.

Every meaningful state change of an analysis run produces an event. Events
flow from the pipeline to WebSocket subscribers and are kept in per-session
history for replay.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the analysis system.

    Events are categorized by:
    - Session lifecycle: Start, completion, and error states
    - Phase lifecycle: Each of the six pipeline phases
    - Agent outcomes: How each agent call was resolved
    - Review: Escalation to a human reviewer
    - Observability: LLM call metrics
    """

    # Session lifecycle
    SESSION_STARTED = "session_started"
    SESSION_COMPLETE = "session_complete"
    SESSION_ERROR = "session_error"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_CLOSED = "session_closed"

    # Phase lifecycle
    PHASE_STARTED = "phase_started"
    PHASE_COMPLETE = "phase_complete"
    PHASE_ABORTED = "phase_aborted"

    # Agent outcomes
    AGENT_COMPLETE = "agent_complete"
    AGENT_RECOVERED = "agent_recovered"
    AGENT_DEGRADED = "agent_degraded"
    AGENT_FAILED = "agent_failed"
    AGENT_ERROR = "agent_error"

    # Review
    HUMAN_REVIEW_REQUESTED = "human_review_requested"
    HUMAN_REVIEW_SUBMITTED = "human_review_submitted"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class AgentEvent(BaseModel):
    """An event emitted during an analysis run.

    Each event includes:
    - type: The category of event (from EventType enum)
    - timestamp: Unix timestamp when the event occurred
    - session_id: Which session this event belongs to
    - agent_id: Which agent produced this event (if applicable)
    - agent_role: Human-readable role name (e.g., "Evidence Gathering")
    - data: Event-specific payload

    Payload schemas by event type:

    SESSION_STARTED:
        - query: str - The original query
        - enable_human_review: bool

    SESSION_COMPLETE:
        - success: bool
        - human_review_required: bool
        - error_count: int

    PHASE_STARTED:
        - phase: str - Phase name (intake, evidence, ...)

    PHASE_COMPLETE:
        - phase: str
        - duration_ms: int
        - error_count: int - Errors recorded by this phase

    PHASE_ABORTED:
        - phase: str
        - reason: str - Message of the critical failure

    AGENT_COMPLETE / AGENT_RECOVERED / AGENT_DEGRADED / AGENT_FAILED:
        - phase: str
        - attempts: int
        - duration_ms: int
        - error: Optional[str] - Last underlying error
        - recovery_strategy: Optional[str]

    AGENT_ERROR:
        - error: str
        - error_type: str
        - model: str
        - retry_count: int
        - used_fallback: bool

    HUMAN_REVIEW_REQUESTED:
        - review_id: str
        - review_type: str
        - urgency: str
        - reason: str

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - input_tokens: int - Input token count
        - output_tokens: int - Output token count
        - latency_ms: int - Latency in milliseconds
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    session_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "type": "agent_degraded",
                    "timestamp": 1699876543.123,
                    "session_id": "sess_abc123",
                    "agent_id": "counter_research",
                    "agent_role": "Evidence Gathering",
                    "data": {
                        "phase": "evidence",
                        "attempts": 3,
                        "duration_ms": 7021,
                        "error": "Service unavailable",
                        "recovery_strategy": "default",
                    },
                }
            ]
        }
    }


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "gemini/gemini-2.0-flash")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
