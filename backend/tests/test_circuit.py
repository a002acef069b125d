"""Tests for the per-agent circuit breaker.

Covers the pure ``advance`` transition function and the ``CircuitBreaker``
wrapper driven by a fake clock.
"""

import pytest

from orchestration.circuit import (
    CircuitBreaker,
    CircuitPolicy,
    CircuitRecord,
    CircuitSignal,
    CircuitState,
    advance,
)
from orchestration.errors import CircuitOpenError

POLICY = CircuitPolicy(failure_threshold=3, reset_timeout=30.0)


# =============================================================================
# advance()
# =============================================================================


class TestAdvance:
    """Tests for the pure transition function."""

    def test_failures_below_threshold_stay_closed(self) -> None:
        record = CircuitRecord()
        for t in range(2):
            record = advance(record, CircuitSignal.FAILURE, float(t), POLICY)

        assert record.state is CircuitState.CLOSED
        assert record.consecutive_failures == 2
        assert record.failures == 2
        assert record.last_failure_time == 1.0

    def test_threshold_failure_opens(self) -> None:
        record = CircuitRecord(failures=2, consecutive_failures=2)
        record = advance(record, CircuitSignal.FAILURE, 5.0, POLICY)

        assert record.state is CircuitState.OPEN
        assert record.last_failure_time == 5.0

    def test_success_resets_consecutive_but_keeps_total(self) -> None:
        record = CircuitRecord(failures=2, consecutive_failures=2)
        record = advance(record, CircuitSignal.SUCCESS, 1.0, POLICY)

        assert record.consecutive_failures == 0
        assert record.failures == 2
        assert record.state is CircuitState.CLOSED

    def test_request_on_closed_is_noop(self) -> None:
        record = CircuitRecord()
        assert advance(record, CircuitSignal.REQUEST, 100.0, POLICY) == record

    def test_request_before_timeout_keeps_open(self) -> None:
        record = CircuitRecord(
            failures=3, consecutive_failures=3, last_failure_time=10.0,
            state=CircuitState.OPEN,
        )
        assert advance(record, CircuitSignal.REQUEST, 39.9, POLICY).state is CircuitState.OPEN

    def test_request_after_timeout_half_opens(self) -> None:
        record = CircuitRecord(
            failures=3, consecutive_failures=3, last_failure_time=10.0,
            state=CircuitState.OPEN,
        )
        assert advance(record, CircuitSignal.REQUEST, 40.0, POLICY).state is CircuitState.HALF_OPEN

    def test_half_open_failure_reopens_immediately(self) -> None:
        record = CircuitRecord(
            failures=3, consecutive_failures=0, state=CircuitState.HALF_OPEN
        )
        record = advance(record, CircuitSignal.FAILURE, 50.0, POLICY)

        assert record.state is CircuitState.OPEN
        assert record.last_failure_time == 50.0

    def test_half_open_success_closes(self) -> None:
        record = CircuitRecord(failures=3, consecutive_failures=3, state=CircuitState.HALF_OPEN)
        record = advance(record, CircuitSignal.SUCCESS, 50.0, POLICY)

        assert record.state is CircuitState.CLOSED
        assert record.consecutive_failures == 0

    def test_abandoned_trial_reopens_without_new_timeout(self) -> None:
        record = CircuitRecord(
            failures=3,
            consecutive_failures=3,
            last_failure_time=10.0,
            state=CircuitState.HALF_OPEN,
        )
        record = advance(record, CircuitSignal.ABANDON, 50.0, POLICY)

        assert record.state is CircuitState.OPEN
        assert record.failures == 3
        assert record.last_failure_time == 10.0
        assert advance(record, CircuitSignal.REQUEST, 50.0, POLICY).state is CircuitState.HALF_OPEN

    @pytest.mark.parametrize("state", [CircuitState.CLOSED, CircuitState.OPEN])
    def test_abandon_outside_trial_is_noop(self, state) -> None:
        record = CircuitRecord(failures=3, consecutive_failures=3, state=state)
        assert advance(record, CircuitSignal.ABANDON, 50.0, POLICY) == record


# =============================================================================
# CircuitBreaker
# =============================================================================


class TestCircuitBreaker:
    """Tests for the breaker that applies ``advance`` to a table."""

    def test_unknown_agent_gets_closed_record(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        assert breaker.get("critique") == CircuitRecord()
        assert "critique" in breaker.table

    def test_opens_after_threshold_and_rejects(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")

        assert breaker.get("critique").state is CircuitState.OPEN
        clock.advance(10)
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.acquire("critique", phase="challenge")

        assert exc_info.value.agent_name == "critique"
        assert exc_info.value.retry_after_seconds == pytest.approx(20.0)

    def test_timeout_admits_single_trial(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")
        clock.advance(30)

        record = breaker.acquire("critique")
        assert record.state is CircuitState.HALF_OPEN

        # A second caller while the trial is outstanding is rejected.
        with pytest.raises(CircuitOpenError):
            breaker.acquire("critique")

    def test_trial_success_closes(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")
        clock.advance(31)
        breaker.acquire("critique")

        record = breaker.record_success("critique")

        assert record.state is CircuitState.CLOSED
        assert breaker.acquire("critique").state is CircuitState.CLOSED

    def test_trial_failure_reopens_with_fresh_timeout(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")
        clock.advance(31)
        breaker.acquire("critique")

        breaker.record_failure("critique")
        clock.advance(29)

        with pytest.raises(CircuitOpenError):
            breaker.acquire("critique")

    def test_abandoned_trial_frees_the_slot(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")
        clock.advance(31)
        breaker.acquire("critique")

        assert breaker.abandon_trial("critique").state is CircuitState.OPEN
        assert breaker.acquire("critique").state is CircuitState.HALF_OPEN

    def test_circuits_are_independent(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        for _ in range(3):
            breaker.record_failure("critique")

        assert breaker.acquire("premortem").state is CircuitState.CLOSED

    def test_shared_table_shares_state(self, clock) -> None:
        table: dict[str, CircuitRecord] = {}
        first = CircuitBreaker(POLICY, table, clock=clock)
        second = CircuitBreaker(POLICY, table, clock=clock)
        for _ in range(3):
            first.record_failure("critique")

        with pytest.raises(CircuitOpenError):
            second.acquire("critique")

    def test_snapshot_is_a_copy(self, clock) -> None:
        breaker = CircuitBreaker(POLICY, clock=clock)
        breaker.record_failure("critique")
        snapshot = breaker.snapshot()
        snapshot.clear()

        assert breaker.get("critique").failures == 1
