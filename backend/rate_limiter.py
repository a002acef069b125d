"""Sliding-window rate limiter shared by all LLM-backed agents.

A single analysis run issues a few dozen LLM calls, many of them in
concurrent fan-out branches. This limiter keeps the whole process under the
provider's requests-per-minute (RPM) and tokens-per-minute (TPM) quotas.

Usage:
    >>> from rate_limiter import get_rate_limiter
    >>> limiter = get_rate_limiter()
    >>> await limiter.acquire(estimated_tokens=1500)
    >>> # ... make LLM call ...
    >>> limiter.record_usage(1234)
"""

import asyncio
import time
from collections import deque
from collections.abc import Callable

import structlog

from config import settings

logger = structlog.get_logger(__name__)


class RateLimitExceededError(Exception):
    """Raised when the rate limiter wait deadline is exceeded."""


class RateLimiter:
    """Sliding-window limiter for LLM API calls.

    Enforces two independent limits over a window (60s by default):
    - Requests per window: number of calls admitted.
    - Tokens per window: estimated (later actual) tokens consumed.

    When a limit would be exceeded, ``acquire()`` waits until the oldest
    entry leaves the window.

    Attributes:
        max_calls_per_minute: Maximum API calls allowed per window.
        max_tokens_per_minute: Maximum tokens allowed per window.
        window_seconds: Length of the sliding window.
    """

    def __init__(
        self,
        max_calls_per_minute: int | None = None,
        max_tokens_per_minute: int | None = None,
        *,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_calls_per_minute = (
            max_calls_per_minute
            if max_calls_per_minute is not None
            else settings.llm_rate_limit_rpm
        )
        self.max_tokens_per_minute = (
            max_tokens_per_minute
            if max_tokens_per_minute is not None
            else settings.llm_rate_limit_tpm
        )
        self.window_seconds = window_seconds
        self._clock = clock

        # Sliding window entries: (timestamp, token_count)
        self._call_log: deque[tuple[float, int]] = deque()
        self._lock = asyncio.Lock()

        logger.info(
            "rate_limiter_initialized",
            max_rpm=self.max_calls_per_minute,
            max_tpm=self.max_tokens_per_minute,
        )

    def _prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self._call_log and self._call_log[0][0] < cutoff:
            self._call_log.popleft()

    @property
    def current_calls(self) -> int:
        return len(self._call_log)

    @property
    def current_tokens(self) -> int:
        return sum(tokens for _, tokens in self._call_log)

    def _has_capacity(self, estimated_tokens: int) -> bool:
        return (
            self.current_calls < self.max_calls_per_minute
            and self.current_tokens + estimated_tokens <= self.max_tokens_per_minute
        )

    async def acquire(
        self,
        estimated_tokens: int = 1000,
        max_wait_seconds: float = 120.0,
    ) -> None:
        """Wait until both limits allow a new request, then reserve it.

        Args:
            estimated_tokens: Tokens reserved for the upcoming request until
                ``record_usage`` replaces the estimate.
            max_wait_seconds: Maximum time to wait before giving up.

        Raises:
            RateLimitExceededError: If the deadline is exceeded.
        """
        deadline = self._clock() + max_wait_seconds

        while True:
            async with self._lock:
                now = self._clock()
                self._prune(now)

                if self._has_capacity(estimated_tokens):
                    self._call_log.append((now, estimated_tokens))
                    logger.debug(
                        "rate_limiter_acquired",
                        current_rpm=self.current_calls,
                        current_tpm=self.current_tokens,
                        estimated_tokens=estimated_tokens,
                    )
                    return

                if now >= deadline:
                    raise RateLimitExceededError(
                        f"Rate limiter wait exceeded {max_wait_seconds}s deadline"
                    )

                wait_seconds = min(self._calculate_wait(now), deadline - now)

            logger.info(
                "rate_limiter_waiting",
                wait_seconds=round(wait_seconds, 2),
                current_rpm=self.current_calls,
                current_tpm=self.current_tokens,
            )
            await self._async_sleep(wait_seconds)

    def _calculate_wait(self, now: float) -> float:
        """Seconds until the oldest entry expires (at least 0.1s)."""
        if not self._call_log:
            return 0.1
        return max(self._call_log[0][0] + self.window_seconds - now, 0.1)

    def record_usage(self, tokens_used: int) -> None:
        """Replace the latest reservation's estimate with actual usage."""
        if not self._call_log:
            return
        timestamp, _estimated = self._call_log[-1]
        self._call_log[-1] = (timestamp, tokens_used)

        logger.debug(
            "rate_limiter_usage_recorded",
            tokens_used=tokens_used,
            current_tpm=self.current_tokens,
        )

    def get_status(self) -> dict[str, int]:
        """Return current usage and limits for diagnostics."""
        self._prune(self._clock())
        return {
            "current_rpm": self.current_calls,
            "current_tpm": self.current_tokens,
            "max_rpm": self.max_calls_per_minute,
            "max_tpm": self.max_tokens_per_minute,
        }

    async def _async_sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get the global RateLimiter, created from ``config.settings`` on first use."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter() -> None:
    """Reset the global RateLimiter singleton (used by tests)."""
    global _rate_limiter
    _rate_limiter = None
