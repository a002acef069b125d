"""LLM transport and reply parsing shared by every LLM-backed agent.

This module provides:
- LLMClient: LiteLLM wrapper that absorbs provider hiccups (transient errors,
  rate limits) and reports token usage to the limiter, metrics and event bus
- extract_json_from_response: Pull the first JSON object out of a model reply
- MockLLMClient: Scripted client for tests

Transport retries here are deliberately shallow. A reply that arrives but
does not parse is not retried at this level; the agent raises and the
RecoveryCoordinator counts it as a failed attempt.
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import EventType, LLMMetrics
from rate_limiter import RateLimiter, RateLimitExceededError, get_rate_limiter

if TYPE_CHECKING:
    from metrics import WorkflowMetricsCollector

logger = structlog.get_logger()

# Provider errors worth another attempt, and those that never get better.
TRANSIENT_ERRORS = (RateLimitError, ServiceUnavailableError, Timeout)
PERMANENT_ERRORS = (AuthenticationError, BadRequestError)

MAX_BACKOFF_SECONDS = 4.0
MIN_TOKEN_ESTIMATE = 500


@dataclass
class LLMResponse:
    """One completed model reply.

    Attributes:
        content: Reply text (empty string when the provider sent none)
        finish_reason: Provider stop reason (stop, length, ...)
        metrics: Model, token counts and latency of the call
        raw_response: The LiteLLM ModelResponse, when there was one
    """

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


def text_response(content: str, model: str = "mock") -> LLMResponse:
    """Wrap plain text as a zero-cost LLMResponse (used by mocks and tests)."""
    return LLMResponse(
        content=content,
        finish_reason="stop",
        metrics=LLMMetrics(model=model, input_tokens=0, output_tokens=0, latency_ms=0),
    )


def estimate_tokens(messages: list[dict[str, Any]]) -> int:
    """Rough prompt size for rate limiting: four characters per token."""
    chars = sum(len(str(message.get("content", ""))) for message in messages)
    return max(chars // 4, MIN_TOKEN_ESTIMATE)


class LLMClient:
    """LiteLLM wrapper used by every LLM-backed agent.

    A call reserves rate-limit capacity, then tries the primary model up to
    ``retry_attempts + 1`` times on transient provider errors with capped
    exponential backoff. If the primary never answers and a different
    fallback model is configured, the fallback gets one try. Authentication
    and bad-request errors are raised immediately.

    Attributes:
        event_bus: Receives LLM_CALL_COMPLETE and AGENT_ERROR events
        default_model: Model used when a call names none
        fallback_model: Model tried once after the primary gives up
        retry_attempts: Extra attempts on transient errors
        retry_delay: Base of the backoff between attempts, in seconds
        rate_limiter: Shared RPM/TPM limiter
        metrics_collector: Session token accounting, if any
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        rate_limiter: RateLimiter | None = None,
        metrics_collector: Optional["WorkflowMetricsCollector"] = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            settings.llm_max_retries if retry_attempts is None else retry_attempts
        )
        self.retry_delay = retry_delay
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.metrics_collector = metrics_collector

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Complete ``messages`` and return the reply.

        Raises:
            RateLimitExceededError: No rate-limit capacity freed up in time.
            AuthenticationError, BadRequestError: Not retried.
            RateLimitError, ServiceUnavailableError, Timeout: The last
                transient error once the primary and fallback are exhausted.
        """
        model = model or self.default_model
        temperature = settings.llm_temperature if temperature is None else temperature
        started = time.time()
        reserved_tokens = estimate_tokens(messages)

        try:
            await self.rate_limiter.acquire(estimated_tokens=reserved_tokens)
        except RateLimitExceededError as e:
            logger.error("llm_rate_limit_exhausted", model=model, agent_id=agent_id, error=str(e))
            await self._report_failure(session_id, agent_id, e, model, 0, False)
            raise

        try:
            response, last_error, tries = await self._try_model(
                model, messages, temperature, max_tokens, started, agent_id
            )
        except PERMANENT_ERRORS as e:
            logger.error(
                "llm_call_rejected",
                model=model,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._report_failure(session_id, agent_id, e, model, 0, False)
            raise

        used_fallback = False
        if response is None and self.fallback_model and self.fallback_model != model:
            used_fallback = True
            response = await self._try_fallback(
                messages, temperature, max_tokens, started, reserved_tokens, agent_id
            )

        if response is None:
            await self._report_failure(
                session_id, agent_id, last_error, model, tries, used_fallback
            )
            raise last_error

        await self._record_success(response, session_id, agent_id)
        return response

    async def _try_model(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None,
        started: float,
        agent_id: str | None,
    ) -> tuple[LLMResponse | None, Exception | None, int]:
        """Attempt one model until it answers or its retries run out.

        Returns:
            (response, last transient error, attempts made). The response is
            None when every attempt hit a transient error.
        """
        last_error: Exception | None = None
        total = self.retry_attempts + 1
        for attempt in range(total):
            try:
                raw = await self._make_request(messages, model, temperature, max_tokens)
            except TRANSIENT_ERRORS as e:
                last_error = e
                if attempt == total - 1:
                    logger.error(
                        "llm_call_gave_up",
                        model=model,
                        agent_id=agent_id,
                        attempts=total,
                        error_type=type(e).__name__,
                    )
                    break
                delay = min(self.retry_delay * 2**attempt, MAX_BACKOFF_SECONDS)
                logger.warning(
                    "llm_call_retry",
                    model=model,
                    agent_id=agent_id,
                    attempt=attempt + 1,
                    error_type=type(e).__name__,
                    retry_delay=delay,
                )
                await self._async_sleep(delay)
                continue

            response = self._parse_response(raw, model, int((time.time() - started) * 1000))
            logger.info(
                "llm_call_complete",
                model=model,
                agent_id=agent_id,
                attempt=attempt + 1,
                input_tokens=response.metrics.input_tokens,
                output_tokens=response.metrics.output_tokens,
                latency_ms=response.metrics.latency_ms,
            )
            return response, None, attempt + 1
        return None, last_error, total

    async def _try_fallback(
        self,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None,
        started: float,
        reserved_tokens: int,
        agent_id: str | None,
    ) -> LLMResponse | None:
        """Single attempt against the fallback model; None if it fails too."""
        fallback = self.fallback_model
        logger.warning("llm_fallback_attempt", fallback_model=fallback, agent_id=agent_id)
        try:
            await self.rate_limiter.acquire(estimated_tokens=reserved_tokens)
            raw = await self._make_request(messages, fallback, temperature, max_tokens)
        except Exception as e:
            logger.error(
                "llm_fallback_failed",
                fallback_model=fallback,
                agent_id=agent_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
        return self._parse_response(raw, fallback, int((time.time() - started) * 1000))

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        return await acompletion(**kwargs)

    def _parse_response(self, response: ModelResponse, model: str, latency_ms: int) -> LLMResponse:
        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=LLMMetrics(
                model=model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                latency_ms=latency_ms,
            ),
            raw_response=response,
        )

    async def _record_success(
        self,
        response: LLMResponse,
        session_id: str | None,
        agent_id: str | None,
    ) -> None:
        """Replace the token estimate with real usage and publish it."""
        usage = response.metrics
        self.rate_limiter.record_usage(usage.total_tokens)
        if not session_id:
            return
        if self.metrics_collector is not None:
            self.metrics_collector.record_llm_call(
                session_id,
                prompt_tokens=usage.input_tokens,
                completion_tokens=usage.output_tokens,
            )
        if self.event_bus is not None:
            await self.event_bus.emit(
                EventType.LLM_CALL_COMPLETE,
                session_id,
                agent_id=agent_id,
                model=usage.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                latency_ms=usage.latency_ms,
            )

    async def _report_failure(
        self,
        session_id: str | None,
        agent_id: str | None,
        error: Exception,
        model: str,
        retry_count: int,
        used_fallback: bool,
    ) -> None:
        if self.event_bus is None or not session_id:
            return
        await self.event_bus.emit(
            EventType.AGENT_ERROR,
            session_id,
            agent_id=agent_id,
            error=str(error),
            error_type=type(error).__name__,
            model=model,
            retry_count=retry_count,
            used_fallback=used_fallback,
            fallback_model=self.fallback_model,
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Backoff sleep; tests replace it."""
        await asyncio.sleep(seconds)


# -----------------------------------------------------------------------------
# Reply parsing
# -----------------------------------------------------------------------------

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_decoder = json.JSONDecoder()


def _first_object_in(text: str) -> dict[str, Any] | None:
    """Decode the first JSON object that starts at any ``{`` in ``text``."""
    start = text.find("{")
    while start != -1:
        try:
            value, _ = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract the JSON object from a model reply that may contain prose.

    Tried in order: the whole reply, each fenced code block, then the first
    decodable object anywhere in the reply. Top-level arrays are ignored.

    Returns:
        The parsed object, or None if the reply contains none.
    """
    try:
        whole = json.loads(response.strip())
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        return whole

    for block in _FENCED_BLOCK.finditer(response):
        found = _first_object_in(block.group(1))
        if found is not None:
            return found

    return _first_object_in(response)


class MockLLMClient(LLMClient):
    """Scripted LLM client for tests.

    Returns ``responses`` in order and records every call.

    Usage:
        >>> client = MockLLMClient([text_response('{"items": []}')])
        >>> response = await client.call(messages=[...])
    """

    def __init__(self, responses: list[LLMResponse] | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses or [])
        self.call_history: list[dict[str, Any]] = []
        self._next = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted response.

        Raises:
            IndexError: When the script is exhausted.
        """
        self.call_history.append(
            {
                "messages": messages,
                "model": model or self.default_model,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "agent_id": agent_id,
            }
        )
        if self._next >= len(self.responses):
            raise IndexError("No more mock responses available")
        response = self.responses[self._next]
        self._next += 1
        logger.debug("mock_llm_call", agent_id=agent_id, response_index=self._next - 1)
        return response

    def reset(self) -> None:
        self._next = 0
        self.call_history.clear()
