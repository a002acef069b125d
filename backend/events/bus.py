"""In-process pub/sub for analysis progress.

Phase executors and agents publish AgentEvents here; WebSocket handlers and
the polling route read them back. Every session keeps a bounded history so a
late or reconnecting client can catch up, and events published while nobody
is listening are held until the first subscriber arrives.
"""

import asyncio
import threading
from collections import defaultdict, deque
from typing import Any

import structlog

from events.types import AgentEvent, EventType

logger = structlog.get_logger()


class EventBus:
    """Session-scoped event fan-out with replay history.

    Registry mutations happen under a threading.Lock; queues are only used
    from the event loop.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("sess_1")
        >>> await bus.emit(EventType.PHASE_STARTED, "sess_1", phase="evidence")
        >>> event = await queue.get()
        >>> await bus.close_session("sess_1")
    """

    # Oldest events are dropped past this many per session.
    MAX_HISTORY_PER_SESSION = 5000

    # How long one stalled subscriber may hold up delivery of one event.
    DELIVERY_TIMEOUT_SECONDS = 5.0

    def __init__(self) -> None:
        self._subscribers: dict[str, list[asyncio.Queue[AgentEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[AgentEvent]] = defaultdict(list)
        self._event_history: dict[str, deque[AgentEvent]] = defaultdict(self._new_history)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def _new_history(self) -> deque[AgentEvent]:
        return deque(maxlen=self.MAX_HISTORY_PER_SESSION)

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, session_id: str) -> asyncio.Queue[AgentEvent]:
        """Register a new queue for ``session_id``.

        Events held while the session had no subscribers are put on the
        new queue straight away.
        """
        queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        with self._lock:
            self._subscribers[session_id].append(queue)
            held = self._event_buffer.pop(session_id, [])
            count = len(self._subscribers[session_id])

        for event in held:
            queue.put_nowait(event)
        logger.info(
            "subscriber_added",
            session_id=session_id,
            subscriber_count=count,
            held_events=len(held),
        )
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue[AgentEvent]) -> None:
        with self._lock:
            queues = self._subscribers.get(session_id, [])
            if queue not in queues:
                logger.warning("unsubscribe_unknown_queue", session_id=session_id)
                return
            queues.remove(queue)
            if not queues:
                self._subscribers.pop(session_id, None)
        logger.info("subscriber_removed", session_id=session_id, subscriber_count=len(queues))

    def get_subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def get_active_sessions(self) -> list[str]:
        """Sessions that currently have at least one subscriber."""
        with self._lock:
            return list(self._subscribers)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    async def publish(self, event: AgentEvent) -> None:
        """Record ``event`` and hand it to every subscriber of its session.

        With no subscribers the event is held for the first one. A subscriber
        whose queue stays full for DELIVERY_TIMEOUT_SECONDS misses the event.
        """
        session_id = event.session_id
        with self._lock:
            if event.type != EventType.SESSION_CLOSED:
                self._event_history[session_id].append(event)
            targets = list(self._subscribers.get(session_id, []))
            if not targets:
                self._event_buffer[session_id].append(event)
                return

        for queue in targets:
            await self._deliver(queue, event)
        logger.debug(
            "event_published",
            session_id=session_id,
            event_type=event.type.value,
            agent_id=event.agent_id,
            subscriber_count=len(targets),
        )

    async def _deliver(self, queue: asyncio.Queue[AgentEvent], event: AgentEvent) -> None:
        try:
            await asyncio.wait_for(queue.put(event), timeout=self.DELIVERY_TIMEOUT_SECONDS)
        except TimeoutError:
            logger.warning(
                "event_delivery_timeout",
                session_id=event.session_id,
                event_type=event.type.value,
            )

    async def emit(
        self,
        event_type: EventType,
        session_id: str,
        *,
        agent_id: str | None = None,
        agent_role: str | None = None,
        **data: Any,
    ) -> None:
        """Publish an event whose payload is the keyword arguments."""
        event = AgentEvent(
            type=event_type,
            session_id=session_id,
            agent_id=agent_id,
            agent_role=agent_role,
            data=data,
        )
        await self.publish(event)

    # -------------------------------------------------------------------------
    # History and lifecycle
    # -------------------------------------------------------------------------

    def get_event_history(self, session_id: str, since: float | None = None) -> list[AgentEvent]:
        """Recorded events for a session, oldest first.

        Args:
            session_id: Session to read.
            since: If given, only events with a later timestamp are returned.
        """
        with self._lock:
            recorded = list(self._event_history.get(session_id, ()))
        if since is not None:
            recorded = [event for event in recorded if event.timestamp > since]
        return recorded

    def clear_event_history(self, session_id: str) -> None:
        with self._lock:
            self._event_history.pop(session_id, None)

    async def close_session(self, session_id: str) -> None:
        """End the live stream for a session.

        Every subscriber gets a SESSION_CLOSED event and is removed. Held
        events are discarded; history stays until clear_event_history().
        """
        with self._lock:
            queues = self._subscribers.pop(session_id, [])
            dropped = self._event_buffer.pop(session_id, [])

        closed = AgentEvent(
            type=EventType.SESSION_CLOSED,
            session_id=session_id,
            data={"reason": "session_closed"},
        )
        for queue in queues:
            queue.put_nowait(closed)
        logger.info(
            "session_stream_closed",
            session_id=session_id,
            subscribers_removed=len(queues),
            held_events_dropped=len(dropped),
        )


# -----------------------------------------------------------------------------
# Process-wide instance
# -----------------------------------------------------------------------------

_event_bus: EventBus | None = None
_bus_lock = threading.Lock()


def get_event_bus() -> EventBus:
    global _event_bus
    with _bus_lock:
        if _event_bus is None:
            _event_bus = EventBus()
        return _event_bus


def reset_event_bus() -> None:
    """Drop the shared bus so the next get_event_bus() builds a fresh one."""
    global _event_bus
    with _bus_lock:
        _event_bus = None
