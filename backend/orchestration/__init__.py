"""Orchestration core: recovery policy, session state, phases and pipeline.

Submodules are imported directly (``orchestration.pipeline``,
``orchestration.coordinator`` ...); this package only re-exports the error
taxonomy so callers can catch orchestration failures without pulling in the
graph.
"""

from orchestration.errors import (
    AgentExecutionError,
    CircuitOpenError,
    OrchestrationError,
    OrchestrationFatalError,
    OutputValidationError,
    StateOwnershipError,
)

__all__ = [
    "AgentExecutionError",
    "CircuitOpenError",
    "OrchestrationError",
    "OrchestrationFatalError",
    "OutputValidationError",
    "StateOwnershipError",
]
