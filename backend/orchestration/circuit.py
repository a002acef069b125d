"""Per-agent circuit breaker.

Circuit state lives in a plain table (agent name -> CircuitRecord) that is
injected into the breaker, and every state change goes through the pure
``advance`` function. Tests drive transitions with a fake clock and no timers.

State machine:
    CLOSED --(threshold consecutive failures)--> OPEN
    OPEN --(request after reset timeout)--> HALF_OPEN (the request is the trial)
    HALF_OPEN --success--> CLOSED
    HALF_OPEN --failure--> OPEN
    HALF_OPEN --abandon--> OPEN (trial cancelled; the next request is a new trial)
"""

import time
from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, replace
from enum import StrEnum

import structlog

from orchestration.errors import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(StrEnum):
    """Lifecycle states of a single agent circuit."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitSignal(StrEnum):
    """Inputs to the transition function."""

    REQUEST = "request"
    SUCCESS = "success"
    FAILURE = "failure"
    ABANDON = "abandon"


@dataclass(frozen=True)
class CircuitPolicy:
    """Thresholds shared by every circuit in a table.

    Attributes:
        failure_threshold: Consecutive failed calls that open a closed circuit.
        reset_timeout: Seconds an open circuit rejects calls before a trial.
    """

    failure_threshold: int = 3
    reset_timeout: float = 30.0


@dataclass(frozen=True)
class CircuitRecord:
    """Failure bookkeeping for one agent name.

    Attributes:
        failures: Total failed calls observed.
        consecutive_failures: Failed calls since the last success.
        last_failure_time: Clock reading of the most recent failure.
        state: Current circuit state.
    """

    failures: int = 0
    consecutive_failures: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED


def advance(
    record: CircuitRecord,
    signal: CircuitSignal,
    now: float,
    policy: CircuitPolicy,
) -> CircuitRecord:
    """Return the record that results from applying ``signal`` at time ``now``.

    A REQUEST only changes an OPEN record whose cooldown has elapsed (it
    becomes HALF_OPEN). Whether the request is admitted is decided by
    ``admits`` on the resulting record.
    """
    if signal is CircuitSignal.REQUEST:
        if (
            record.state is CircuitState.OPEN
            and now - record.last_failure_time >= policy.reset_timeout
        ):
            return replace(record, state=CircuitState.HALF_OPEN)
        return record

    if signal is CircuitSignal.SUCCESS:
        return replace(record, consecutive_failures=0, state=CircuitState.CLOSED)

    if signal is CircuitSignal.ABANDON:
        # Not a failure: the cooldown is not restarted
        if record.state is CircuitState.HALF_OPEN:
            return replace(record, state=CircuitState.OPEN)
        return record

    # FAILURE
    consecutive = record.consecutive_failures + 1
    failed = replace(
        record,
        failures=record.failures + 1,
        consecutive_failures=consecutive,
        last_failure_time=now,
    )
    if record.state is CircuitState.HALF_OPEN:
        return replace(failed, state=CircuitState.OPEN)
    if consecutive >= policy.failure_threshold:
        return replace(failed, state=CircuitState.OPEN)
    return failed


class CircuitBreaker:
    """Applies ``advance`` to an injectable table of circuit records.

    The table is the only shared mutable resource of the coordinator. Pass
    the same table (or the same breaker) to several coordinators to share
    trip state between runs; leave it out to get a private table.

    Attributes:
        policy: Thresholds applied to every record.
        table: Mapping of agent name to its current record.
    """

    def __init__(
        self,
        policy: CircuitPolicy | None = None,
        table: MutableMapping[str, CircuitRecord] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or CircuitPolicy()
        self.table: MutableMapping[str, CircuitRecord] = (
            table if table is not None else {}
        )
        self._clock = clock

    def get(self, agent_name: str) -> CircuitRecord:
        """Return the record for an agent, creating a closed one lazily."""
        record = self.table.get(agent_name)
        if record is None:
            record = CircuitRecord()
            self.table[agent_name] = record
        return record

    def acquire(self, agent_name: str, *, phase: str | None = None) -> CircuitRecord:
        """Admit a call or raise ``CircuitOpenError``.

        Returns the record after the request transition. A HALF_OPEN result
        means the caller holds the single trial slot.

        Raises:
            CircuitOpenError: While the circuit is open, or while another
                caller holds the half-open trial.
        """
        now = self._clock()
        current = self.get(agent_name)
        updated = advance(current, CircuitSignal.REQUEST, now, self.policy)

        if current.state is CircuitState.CLOSED:
            return current

        if current.state is CircuitState.OPEN and updated.state is CircuitState.HALF_OPEN:
            self.table[agent_name] = updated
            logger.info("circuit_half_open", agent=agent_name)
            return updated

        retry_after = max(
            0.0, self.policy.reset_timeout - (now - current.last_failure_time)
        )
        logger.warning(
            "circuit_rejected_call",
            agent=agent_name,
            state=current.state.value,
            retry_after_seconds=round(retry_after, 2),
        )
        raise CircuitOpenError(agent_name, retry_after, phase=phase)

    def record_success(self, agent_name: str) -> CircuitRecord:
        """Close the circuit and reset its consecutive failure count."""
        previous = self.get(agent_name)
        updated = advance(previous, CircuitSignal.SUCCESS, self._clock(), self.policy)
        self.table[agent_name] = updated
        if previous.state is not CircuitState.CLOSED:
            logger.info("circuit_closed", agent=agent_name)
        return updated

    def record_failure(self, agent_name: str) -> CircuitRecord:
        """Count one failed call, opening the circuit when required."""
        previous = self.get(agent_name)
        updated = advance(previous, CircuitSignal.FAILURE, self._clock(), self.policy)
        self.table[agent_name] = updated
        if updated.state is CircuitState.OPEN and previous.state is not CircuitState.OPEN:
            logger.warning(
                "circuit_opened",
                agent=agent_name,
                consecutive_failures=updated.consecutive_failures,
                from_state=previous.state.value,
            )
        return updated

    def abandon_trial(self, agent_name: str) -> CircuitRecord:
        """Give back a half-open trial slot whose call never finished."""
        previous = self.get(agent_name)
        updated = advance(previous, CircuitSignal.ABANDON, self._clock(), self.policy)
        self.table[agent_name] = updated
        if updated is not previous:
            logger.info("circuit_trial_abandoned", agent=agent_name)
        return updated

    def snapshot(self) -> dict[str, CircuitRecord]:
        """Return a copy of the table for reporting."""
        return dict(self.table)
