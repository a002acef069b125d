"""Retry and recovery coordinator for agent calls.

Every agent invocation in the pipeline goes through ``RecoveryCoordinator``.
A call is attempted up to ``max_retries`` times with exponential backoff,
guarded by a per-agent circuit breaker, and resolved into one of three
tagged outcomes:

- ``Recovered``: the agent (or its backup) produced a value. ``error`` is
  set when earlier attempts failed.
- ``Degraded``: nothing worked and the caller's default was substituted.
- ``Fatal``: a critical agent could not be recovered.

Phases branch on the tag instead of catching and re-classifying exceptions.
Each failed call yields exactly one ``ErrorInfo``; the coordinator does not
write to the session state itself.

When an ``output_type`` is given, the raw agent result is coerced into that
pydantic model inside the attempt, so a malformed output is retried and
resolved exactly like a raised error. Errors carrying ``retryable = False``
end the attempt loop early.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from config import settings
from orchestration.circuit import CircuitBreaker, CircuitPolicy, CircuitState
from orchestration.errors import (
    AgentExecutionError,
    CircuitOpenError,
    OutputValidationError,
)
from orchestration.state import ErrorInfo, RecoveryStrategy, summarize_input

logger = structlog.get_logger(__name__)

T = TypeVar("T")

AgentFn = Callable[[Any], Awaitable[Any]]
Validator = Callable[[Any], bool]


# -----------------------------------------------------------------------------
# Outcomes
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Recovered(Generic[T]):
    """The call produced a value, possibly after retries or via a backup."""

    value: T
    error: ErrorInfo | None = None
    attempts: int = 1
    duration_ms: int = 0

    @property
    def retried(self) -> bool:
        return self.error is not None


@dataclass(frozen=True)
class Degraded(Generic[T]):
    """The call failed and the supplied default was returned."""

    value: T
    error: ErrorInfo
    attempts: int = 0
    duration_ms: int = 0


@dataclass(frozen=True)
class Fatal:
    """A critical call failed; the enclosing phase must abort."""

    error: ErrorInfo
    exception: AgentExecutionError
    attempts: int = 0
    duration_ms: int = 0


AgentOutcome = Recovered[Any] | Degraded[Any] | Fatal


@dataclass
class _CallTrace:
    """Mutable bookkeeping for one ``invoke`` call."""

    attempts: int = 0
    last_error: BaseException | None = None
    started: float = field(default_factory=time.monotonic)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


# -----------------------------------------------------------------------------
# Coordinator
# -----------------------------------------------------------------------------


class RecoveryCoordinator:
    """Bounded retries, circuit breaking and fallback for agent calls.

    A coordinator is normally created per pipeline run, which keeps circuit
    state run-scoped. Sharing one breaker between coordinators (or one
    coordinator between runs) makes trip state shared across those runs.

    Usage:
        >>> coordinator = RecoveryCoordinator(max_retries=3)
        >>> outcome = await coordinator.invoke(
        ...     "supporting_research", research_fn, research_input, default,
        ...     phase="evidence",
        ... )
        >>> if isinstance(outcome, Fatal):
        ...     ...

    Attributes:
        max_retries: Attempts per call while the circuit is closed.
        base_delay: Backoff base in seconds; attempt ``i`` waits ``base_delay * 2**i``.
        agent_timeout: Optional per-attempt wall-clock bound in seconds.
        breaker: The circuit breaker holding per-agent state.
    """

    def __init__(
        self,
        max_retries: int | None = None,
        *,
        base_delay: float | None = None,
        agent_timeout: float | None = None,
        breaker: CircuitBreaker | None = None,
        failure_threshold: int | None = None,
        reset_timeout: float | None = None,
    ) -> None:
        self.max_retries = (
            max_retries if max_retries is not None else settings.orchestrator_max_retries
        )
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.base_delay = (
            base_delay if base_delay is not None else settings.retry_base_delay_seconds
        )
        self.agent_timeout = (
            agent_timeout if agent_timeout is not None else settings.agent_timeout_seconds
        )
        self.breaker = breaker or CircuitBreaker(
            CircuitPolicy(
                failure_threshold=(
                    failure_threshold
                    if failure_threshold is not None
                    else settings.circuit_failure_threshold
                ),
                reset_timeout=(
                    reset_timeout
                    if reset_timeout is not None
                    else settings.circuit_reset_timeout_seconds
                ),
            )
        )

    async def invoke(
        self,
        agent_name: str,
        agent_fn: AgentFn,
        agent_input: Any,
        default_output: Any,
        *,
        critical: bool = False,
        backup_fn: AgentFn | None = None,
        validate: Validator | None = None,
        output_type: type[BaseModel] | None = None,
        phase: str | None = None,
        max_attempts: int | None = None,
    ) -> AgentOutcome:
        """Run one agent call through the recovery policy.

        Args:
            agent_name: Circuit key and error-log name of the agent.
            agent_fn: The agent callable.
            agent_input: Input passed to ``agent_fn`` (and the backup).
            default_output: Value returned for non-critical failures.
            critical: Escalate instead of degrading when recovery fails.
            backup_fn: Alternative callable tried once after the primary.
            validate: Predicate; a False result counts as a failed attempt.
            output_type: Model the result (primary or backup) is coerced to;
                a validation failure counts as a failed attempt.
            phase: Phase name recorded on errors.
            max_attempts: Per-call override of ``max_retries``.

        Returns:
            Recovered, Degraded or Fatal.
        """
        trace = _CallTrace()
        budget = max_attempts if max_attempts is not None else self.max_retries

        try:
            record = self.breaker.acquire(agent_name, phase=phase)
        except CircuitOpenError as exc:
            trace.last_error = exc
        else:
            trial = record.state is CircuitState.HALF_OPEN
            if trial:
                budget = 1
            try:
                value = await self._attempt_primary(
                    agent_name,
                    agent_fn,
                    agent_input,
                    budget,
                    validate,
                    output_type,
                    phase,
                    trace,
                )
            except asyncio.CancelledError:
                if trial:
                    self.breaker.abandon_trial(agent_name)
                raise
            if value is not _FAILED:
                self.breaker.record_success(agent_name)
                error = None
                if trace.attempts > 1:
                    error = self._error_info(
                        agent_name, agent_input, phase, trace, RecoveryStrategy.RETRY
                    )
                return Recovered(
                    value=value,
                    error=error,
                    attempts=trace.attempts,
                    duration_ms=trace.duration_ms,
                )
            self.breaker.record_failure(agent_name)

        return await self._resolve_failure(
            agent_name,
            agent_input,
            default_output,
            critical=critical,
            backup_fn=backup_fn,
            output_type=output_type,
            phase=phase,
            trace=trace,
        )

    async def call_agent_with_recovery(
        self,
        agent_name: str,
        agent_fn: AgentFn,
        agent_input: Any,
        default_output: Any,
        *,
        critical: bool = False,
        backup_fn: AgentFn | None = None,
        validate: Validator | None = None,
        output_type: type[BaseModel] | None = None,
        phase: str | None = None,
    ) -> Any:
        """Value-returning form of ``invoke``.

        Returns the recovered or default value.

        Raises:
            AgentExecutionError: When a critical agent cannot be recovered.
        """
        outcome = await self.invoke(
            agent_name,
            agent_fn,
            agent_input,
            default_output,
            critical=critical,
            backup_fn=backup_fn,
            validate=validate,
            output_type=output_type,
            phase=phase,
        )
        if isinstance(outcome, Fatal):
            raise outcome.exception
        return outcome.value

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _attempt_primary(
        self,
        agent_name: str,
        agent_fn: AgentFn,
        agent_input: Any,
        budget: int,
        validate: Validator | None,
        output_type: type[BaseModel] | None,
        phase: str | None,
        trace: _CallTrace,
    ) -> Any:
        for attempt in range(budget):
            trace.attempts = attempt + 1
            try:
                logger.debug(
                    "agent_call_attempt",
                    agent=agent_name,
                    phase=phase,
                    attempt=attempt + 1,
                    max_attempts=budget,
                )
                result = self._coerce(
                    agent_name, await self._call_once(agent_fn, agent_input), output_type
                )
                if validate is not None and not validate(result):
                    raise OutputValidationError(agent_name)
                trace.last_error = None
                return result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                trace.last_error = e
                if not getattr(e, "retryable", True):
                    logger.error(
                        "agent_call_not_retryable",
                        agent=agent_name,
                        phase=phase,
                        attempt=attempt + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    break
                if attempt < budget - 1:
                    delay = self.base_delay * (2 ** attempt)
                    logger.warning(
                        "agent_call_retry",
                        agent=agent_name,
                        phase=phase,
                        attempt=attempt + 1,
                        max_attempts=budget,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "agent_call_failed_all_retries",
                        agent=agent_name,
                        phase=phase,
                        attempts=budget,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
        return _FAILED

    @staticmethod
    def _coerce(agent_name: str, result: Any, output_type: type[BaseModel] | None) -> Any:
        if output_type is None:
            return result
        try:
            return output_type.model_validate(result)
        except ValidationError as e:
            raise OutputValidationError(
                agent_name, f"{e.error_count()} schema error(s) for {output_type.__name__}"
            ) from e

    async def _call_once(self, agent_fn: AgentFn, agent_input: Any) -> Any:
        if self.agent_timeout is None:
            return await agent_fn(agent_input)
        return await asyncio.wait_for(agent_fn(agent_input), timeout=self.agent_timeout)

    async def _resolve_failure(
        self,
        agent_name: str,
        agent_input: Any,
        default_output: Any,
        *,
        critical: bool,
        backup_fn: AgentFn | None,
        output_type: type[BaseModel] | None,
        phase: str | None,
        trace: _CallTrace,
    ) -> AgentOutcome:
        if backup_fn is not None:
            try:
                logger.info("agent_backup_attempt", agent=agent_name, phase=phase)
                value = self._coerce(
                    agent_name, await self._call_once(backup_fn, agent_input), output_type
                )
                return Recovered(
                    value=value,
                    error=self._error_info(
                        agent_name,
                        agent_input,
                        phase,
                        trace,
                        RecoveryStrategy.BACKUP_AGENT,
                    ),
                    attempts=trace.attempts,
                    duration_ms=trace.duration_ms,
                )
            except asyncio.CancelledError:
                raise
            except Exception as backup_error:
                logger.error(
                    "agent_backup_failed",
                    agent=agent_name,
                    phase=phase,
                    error_type=type(backup_error).__name__,
                    error=str(backup_error),
                )

        if critical:
            error = self._error_info(
                agent_name,
                agent_input,
                phase,
                trace,
                RecoveryStrategy.NONE,
                is_critical_failure=True,
            )
            exception = AgentExecutionError(
                agent_name,
                f"Critical agent {agent_name} failed after all recovery attempts: "
                f"{trace.last_error}",
                original_error=trace.last_error,
                attempt=trace.attempts,
                phase=phase,
                is_critical=True,
                is_circuit_open=isinstance(trace.last_error, CircuitOpenError),
            )
            logger.error(
                "critical_agent_failed",
                agent=agent_name,
                phase=phase,
                attempts=trace.attempts,
                error=str(trace.last_error),
            )
            return Fatal(
                error=error,
                exception=exception,
                attempts=trace.attempts,
                duration_ms=trace.duration_ms,
            )

        logger.warning(
            "agent_default_returned",
            agent=agent_name,
            phase=phase,
            attempts=trace.attempts,
            circuit_open=isinstance(trace.last_error, CircuitOpenError),
        )
        return Degraded(
            value=default_output,
            error=self._error_info(
                agent_name, agent_input, phase, trace, RecoveryStrategy.DEFAULT
            ),
            attempts=trace.attempts,
            duration_ms=trace.duration_ms,
        )

    @staticmethod
    def _error_info(
        agent_name: str,
        agent_input: Any,
        phase: str | None,
        trace: _CallTrace,
        strategy: RecoveryStrategy,
        *,
        is_critical_failure: bool = False,
    ) -> ErrorInfo:
        return ErrorInfo(
            agent=agent_name,
            error=str(trace.last_error) if trace.last_error else "unknown error",
            recovery_attempted=strategy is not RecoveryStrategy.NONE
            or trace.attempts > 1,
            recovery_strategy=strategy,
            phase=phase,
            input_summary=summarize_input(agent_input),
            attempt=trace.attempts,
            is_critical_failure=is_critical_failure,
        )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.

        Args:
            seconds: Number of seconds to sleep
        """
        await asyncio.sleep(seconds)


class _FailedSentinel:
    def __repr__(self) -> str:
        return "<failed>"


_FAILED: Any = _FailedSentinel()
