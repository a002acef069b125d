"""Tests for rate_limiter.py -- sliding-window RPM/TPM limiter."""

import pytest

from rate_limiter import (
    RateLimiter,
    RateLimitExceededError,
    get_rate_limiter,
    reset_rate_limiter,
)


def _limiter(clock, rpm: int = 2, tpm: int = 10_000) -> RateLimiter:
    limiter = RateLimiter(rpm, tpm, window_seconds=60.0, clock=clock)

    async def fake_sleep(seconds: float) -> None:
        limiter.slept.append(seconds)  # type: ignore[attr-defined]
        clock.advance(seconds)

    limiter.slept = []  # type: ignore[attr-defined]
    limiter._async_sleep = fake_sleep  # type: ignore[method-assign]
    return limiter


class TestRateLimiter:
    async def test_acquire_within_limits(self, clock) -> None:
        limiter = _limiter(clock)
        await limiter.acquire(estimated_tokens=100)

        assert limiter.get_status() == {
            "current_rpm": 1,
            "current_tpm": 100,
            "max_rpm": 2,
            "max_tpm": 10_000,
        }
        assert limiter.slept == []

    async def test_waits_for_oldest_entry_when_rpm_exhausted(self, clock) -> None:
        limiter = _limiter(clock)
        await limiter.acquire()
        clock.advance(10)
        await limiter.acquire()

        await limiter.acquire()

        assert limiter.slept[0] == pytest.approx(50.0)
        assert limiter.current_calls == 2

    async def test_token_limit_blocks(self, clock) -> None:
        limiter = _limiter(clock, rpm=100, tpm=1000)
        await limiter.acquire(estimated_tokens=900)

        await limiter.acquire(estimated_tokens=200)

        assert sum(limiter.slept) >= 60.0

    async def test_record_usage_replaces_estimate(self, clock) -> None:
        limiter = _limiter(clock)
        await limiter.acquire(estimated_tokens=1000)
        limiter.record_usage(250)

        assert limiter.current_tokens == 250

    async def test_deadline_exceeded(self, clock) -> None:
        limiter = _limiter(clock, rpm=1)
        await limiter.acquire()

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire(max_wait_seconds=5)

    def test_record_usage_without_calls_is_noop(self, clock) -> None:
        limiter = _limiter(clock)
        limiter.record_usage(10)
        assert limiter.current_calls == 0


class TestSingleton:
    def test_reset_creates_new_instance(self) -> None:
        reset_rate_limiter()
        first = get_rate_limiter()
        assert get_rate_limiter() is first
        reset_rate_limiter()
        assert get_rate_limiter() is not first
        reset_rate_limiter()
