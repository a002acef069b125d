"""Event system for analysis progress streaming.

This package provides the event infrastructure between the analysis
pipeline and its consumers (WebSocket clients, the events polling route).
It is based on an async pub/sub pattern using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - AgentEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation with per-session history
    - LLMMetrics: Token and latency metrics for individual LLM calls

Event Flow:
    1. Phase executors emit phase and agent-outcome events via EventBus
    2. The WebSocket handler subscribes to session events
    3. Events are forwarded to the client; history is replayed on reconnect
"""

from events.bus import (
    EventBus,
    get_event_bus,
    reset_event_bus,
)
from events.types import (
    AgentEvent,
    EventType,
    LLMMetrics,
)

__all__ = [
    # Event types
    "EventType",
    "AgentEvent",
    "LLMMetrics",
    # Event bus
    "EventBus",
    "get_event_bus",
    "reset_event_bus",
]
