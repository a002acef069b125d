"""Error taxonomy for the orchestration core.

Every failure that crosses a component boundary is one of these types, so
phase executors can tell a recoverable agent failure from a fatal one
without inspecting messages.
"""


class OrchestrationError(Exception):
    """Base class for all orchestration errors."""


class AgentExecutionError(OrchestrationError):
    """An agent call failed after the coordinator exhausted its options.

    Attributes:
        agent_name: Circuit key of the agent that failed.
        original_error: The last exception raised by the agent (if any).
        attempt: Number of attempts made before giving up.
        phase: Phase the call belonged to.
        is_critical: Whether the agent is flagged critical.
        is_circuit_open: True when the call was rejected by an open circuit.
    """

    def __init__(
        self,
        agent_name: str,
        message: str,
        *,
        original_error: BaseException | None = None,
        attempt: int = 0,
        phase: str | None = None,
        is_critical: bool = False,
        is_circuit_open: bool = False,
    ) -> None:
        super().__init__(message)
        self.agent_name = agent_name
        self.original_error = original_error
        self.attempt = attempt
        self.phase = phase
        self.is_critical = is_critical
        self.is_circuit_open = is_circuit_open


class CircuitOpenError(AgentExecutionError):
    """Raised without invoking the agent while its circuit is open."""

    def __init__(
        self,
        agent_name: str,
        retry_after_seconds: float,
        *,
        phase: str | None = None,
    ) -> None:
        super().__init__(
            agent_name,
            f"Circuit open for {agent_name}; retry after {retry_after_seconds:.1f}s",
            phase=phase,
            is_circuit_open=True,
        )
        self.retry_after_seconds = retry_after_seconds


class OutputValidationError(OrchestrationError):
    """An agent returned a value its validator rejected."""

    def __init__(self, agent_name: str, detail: str = "") -> None:
        message = f"Output validation failed for {agent_name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.agent_name = agent_name


class StateOwnershipError(OrchestrationError):
    """A patch tried to overwrite a field produced by an earlier phase."""

    def __init__(self, field_name: str) -> None:
        super().__init__(f"Session field '{field_name}' is already populated")
        self.field_name = field_name


class OrchestrationFatalError(OrchestrationError):
    """An uncaught exception reached the top-level run."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}")
        self.cause = cause
