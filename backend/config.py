"""Runtime configuration for the analysis backend (pydantic-settings).

Every field can be overridden through an environment variable of the same
name (case-insensitive) or a .env file.
"""

import contextlib
import json
import logging
from typing import Any, Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings.

    Attributes:
        default_model: Model used by every LLM-backed agent (LiteLLM naming).
        llm_fallback_model: Model tried once when the primary fails after retries.
        llm_max_retries: Transport-level retries for transient provider errors.
        llm_request_timeout_seconds: Timeout for a single provider request.
        llm_temperature: Sampling temperature for agent calls.
        llm_rate_limit_rpm: Requests-per-minute budget shared by all agents.
        llm_rate_limit_tpm: Tokens-per-minute budget shared by all agents.
        orchestrator_max_retries: Attempts per agent call before the
            resolution policy (backup, escalate, default) applies.
        retry_base_delay_seconds: Base of the exponential backoff between attempts.
        circuit_failure_threshold: Consecutive failed calls that open a circuit.
        circuit_reset_timeout_seconds: Cooldown before an open circuit admits a trial call.
        agent_timeout_seconds: Optional wall-clock bound on a single agent attempt.
            None disables the bound.
        initial_answer_max_iterations: Draft/critique/improve rounds for the initial answer.
        red_team_max_iterations: Challenge/refine rounds for the red-teaming loop.
        ensemble_perspective_retries: Attempts per synthesis perspective.
        ensemble_confidence_ranking: Preference order used when meta-synthesis
            fails and a single perspective has to be picked.
        ensemble_tie_break: Which perspective wins a confidence tie
            ("first" or "last" generated).
        human_review_timeout_minutes: Lifetime of a pending review request.
        human_review_wait_seconds: How long the pipeline waits for a reviewer
            before returning a pending review.
        audit_cache_size: Maximum cached tool results in the audit system.
        audit_cache_ttl_seconds: Lifetime of a cached tool result.
        audit_slow_call_ms: Duration above which a tool call is flagged as slow.
        session_ttl_minutes: Session expiry for cleanup.
        backend_port: Port for the FastAPI server.
        cors_origins: Allowed origins for CORS.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # LLM Configuration
    # Model names must include provider prefix for LiteLLM (e.g., gemini/, xai/, lm_studio/)
    default_model: str = "gemini/gemini-2.0-flash"
    llm_fallback_model: str | None = None
    llm_max_retries: int = 2
    llm_request_timeout_seconds: int = 120
    llm_temperature: float = 0.4

    # LLM Rate Limiting
    llm_rate_limit_rpm: int = 60  # Requests per minute
    llm_rate_limit_tpm: int = 200000  # Tokens per minute

    # Recovery Coordinator
    orchestrator_max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    circuit_failure_threshold: int = 3
    circuit_reset_timeout_seconds: float = 30.0
    agent_timeout_seconds: float | None = None

    # Agent Loops
    initial_answer_max_iterations: int = 3
    red_team_max_iterations: int = 3

    # Synthesis Ensemble
    ensemble_perspective_retries: int = 2
    ensemble_confidence_ranking: list[str] = ["High", "Medium", "Low"]
    ensemble_tie_break: Literal["first", "last"] = "first"

    # Human Review
    human_review_timeout_minutes: int = 30
    human_review_wait_seconds: float = 0.0

    # Tool Audit
    audit_cache_size: int = 500
    audit_cache_ttl_seconds: int = 300
    audit_slow_call_ms: int = 5000

    # Session Configuration
    session_ttl_minutes: int = 60

    # Server Configuration
    backend_port: int = 8000
    cors_origins: str | list[str] = ["http://localhost:3000"]
    log_level: str = "INFO"
    log_format: str = "json"

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Any) -> list[str]:
        """Accept a list, a JSON array string or a comma-separated string."""
        if isinstance(v, list):
            return v
        if not isinstance(v, str):
            return ["http://localhost:3000"]
        text = v.strip()
        if text.startswith("["):
            with contextlib.suppress(json.JSONDecodeError):
                return json.loads(text)
        return [part.strip() for part in text.split(",") if part.strip()]

    @field_validator("ensemble_confidence_ranking")
    @classmethod
    def check_confidence_ranking(cls, v: list[str]) -> list[str]:
        if sorted(v) != ["High", "Low", "Medium"]:
            raise ValueError("ensemble_confidence_ranking must order exactly High, Medium and Low")
        return v

    model_config = SettingsConfigDict(
        # Works whether the server starts from the repo root or from backend/
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
    )


def configure_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Set up structlog for the process.

    ``log_format="json"`` renders one JSON object per line; anything else
    uses the coloured console renderer.
    """
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


settings = Settings()
configure_logging(settings.log_level, settings.log_format)
