"""Tests for events/bus.py -- session event fan-out and replay history."""

import asyncio

import pytest

from events.bus import EventBus, get_event_bus, reset_event_bus
from events.types import AgentEvent, EventType

SID = "sess_bus000000001"


def _phase_event(
    event_type: EventType = EventType.PHASE_STARTED, phase: str = "evidence"
) -> AgentEvent:
    return AgentEvent(type=event_type, session_id=SID, data={"phase": phase})


async def _drain(queue: asyncio.Queue[AgentEvent]) -> list[EventType]:
    types = []
    while not queue.empty():
        types.append((await queue.get()).type)
    return types


# =========================================================================
# Live delivery
# =========================================================================


class TestLiveDelivery:
    async def test_every_subscriber_sees_the_event(self, event_bus: EventBus) -> None:
        dashboard = event_bus.subscribe(SID)
        poller = event_bus.subscribe(SID)

        await event_bus.publish(_phase_event())

        for queue in (dashboard, poller):
            event = await asyncio.wait_for(queue.get(), timeout=1.0)
            assert event.data == {"phase": "evidence"}

    async def test_other_sessions_are_isolated(self, event_bus: EventBus) -> None:
        mine = event_bus.subscribe(SID)
        theirs = event_bus.subscribe("sess_other")

        await event_bus.publish(_phase_event())

        assert mine.qsize() == 1
        assert theirs.empty()

    async def test_emit_puts_kwargs_in_data(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe(SID)
        await event_bus.emit(
            EventType.AGENT_DEGRADED,
            SID,
            agent_id="counter_research",
            phase="evidence",
            resolution="default",
        )

        event = queue.get_nowait()
        assert event.type == EventType.AGENT_DEGRADED
        assert event.agent_id == "counter_research"
        assert event.data == {"phase": "evidence", "resolution": "default"}

    async def test_unsubscribed_queue_gets_nothing(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe(SID)
        event_bus.unsubscribe(SID, queue)

        await event_bus.publish(_phase_event())

        assert queue.empty()
        assert event_bus.get_subscriber_count(SID) == 0

    async def test_unsubscribing_unknown_queue_is_harmless(self, event_bus: EventBus) -> None:
        event_bus.subscribe(SID)
        event_bus.unsubscribe(SID, asyncio.Queue())
        event_bus.unsubscribe("sess_missing", asyncio.Queue())
        assert event_bus.get_subscriber_count(SID) == 1

    async def test_stalled_subscriber_does_not_block_others(
        self, event_bus: EventBus, monkeypatch
    ) -> None:
        monkeypatch.setattr(EventBus, "DELIVERY_TIMEOUT_SECONDS", 0.01)
        stalled: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=1)
        stalled.put_nowait(_phase_event())
        event_bus._subscribers[SID].append(stalled)
        healthy = event_bus.subscribe(SID)

        await event_bus.publish(_phase_event(EventType.PHASE_COMPLETE))

        assert healthy.get_nowait().type == EventType.PHASE_COMPLETE
        assert stalled.qsize() == 1


# =========================================================================
# Events published before anyone listens
# =========================================================================


class TestHeldEvents:
    async def test_first_subscriber_receives_held_events(self, event_bus: EventBus) -> None:
        await event_bus.emit(EventType.SESSION_STARTED, SID, query="q")
        await event_bus.publish(_phase_event(phase="intake"))

        queue = event_bus.subscribe(SID)

        assert await _drain(queue) == [EventType.SESSION_STARTED, EventType.PHASE_STARTED]

    async def test_held_events_go_to_one_subscriber_only(self, event_bus: EventBus) -> None:
        await event_bus.publish(_phase_event())
        first = event_bus.subscribe(SID)
        second = event_bus.subscribe(SID)
        assert first.qsize() == 1
        assert second.empty()


# =========================================================================
# Closing a session stream
# =========================================================================


class TestCloseSession:
    async def test_subscribers_get_closed_event_and_are_removed(
        self, event_bus: EventBus
    ) -> None:
        queues = [event_bus.subscribe(SID), event_bus.subscribe(SID)]

        await event_bus.close_session(SID)

        for queue in queues:
            closed = queue.get_nowait()
            assert closed.type == EventType.SESSION_CLOSED
            assert closed.session_id == SID
        assert event_bus.get_subscriber_count(SID) == 0
        assert event_bus.get_active_sessions() == []

    async def test_held_events_dropped_history_kept(self, event_bus: EventBus) -> None:
        await event_bus.publish(_phase_event())
        await event_bus.close_session(SID)

        assert event_bus.subscribe(SID).empty()
        assert len(event_bus.get_event_history(SID)) == 1

    async def test_closing_unknown_session_is_harmless(self, event_bus: EventBus) -> None:
        await event_bus.close_session("sess_missing")
        assert event_bus.get_event_history("sess_missing") == []

    async def test_closed_event_not_recorded(self, event_bus: EventBus) -> None:
        event_bus.subscribe(SID)
        await event_bus.close_session(SID)
        assert event_bus.get_event_history(SID) == []


# =========================================================================
# History
# =========================================================================


class TestEventHistory:
    async def test_records_a_whole_run_in_order(self, event_bus: EventBus) -> None:
        await event_bus.emit(EventType.SESSION_STARTED, SID)
        event_bus.subscribe(SID)
        for phase in ("intake", "evidence"):
            await event_bus.publish(_phase_event(EventType.PHASE_STARTED, phase))
            await event_bus.publish(_phase_event(EventType.PHASE_COMPLETE, phase))

        history = event_bus.get_event_history(SID)
        assert [e.type for e in history] == [
            EventType.SESSION_STARTED,
            EventType.PHASE_STARTED,
            EventType.PHASE_COMPLETE,
            EventType.PHASE_STARTED,
            EventType.PHASE_COMPLETE,
        ]
        assert [e.data.get("phase") for e in history[1:]] == [
            "intake",
            "intake",
            "evidence",
            "evidence",
        ]

    async def test_since_is_exclusive(self, event_bus: EventBus) -> None:
        first = _phase_event(phase="intake")
        second = _phase_event(phase="evidence")
        second.timestamp = first.timestamp + 1.0
        await event_bus.publish(first)
        await event_bus.publish(second)

        later = event_bus.get_event_history(SID, since=first.timestamp)
        assert [e.data["phase"] for e in later] == ["evidence"]

    async def test_oldest_events_dropped_past_limit(
        self, event_bus: EventBus, monkeypatch
    ) -> None:
        monkeypatch.setattr(EventBus, "MAX_HISTORY_PER_SESSION", 3)
        for phase in ("intake", "evidence", "challenge", "structuring", "synthesis"):
            await event_bus.publish(_phase_event(phase=phase))

        history = event_bus.get_event_history(SID)
        assert [e.data["phase"] for e in history] == ["challenge", "structuring", "synthesis"]

    async def test_clear(self, event_bus: EventBus) -> None:
        await event_bus.publish(_phase_event())
        event_bus.clear_event_history(SID)
        assert event_bus.get_event_history(SID) == []


# =========================================================================
# Process-wide instance
# =========================================================================


class TestSharedBus:
    def test_same_instance_until_reset(self) -> None:
        reset_event_bus()
        bus = get_event_bus()
        assert get_event_bus() is bus
        reset_event_bus()
        assert get_event_bus() is not bus

    @pytest.mark.parametrize("sessions", [[], [SID], [SID, "sess_other"]])
    async def test_active_sessions(self, event_bus: EventBus, sessions) -> None:
        for session_id in sessions:
            event_bus.subscribe(session_id)
        assert sorted(event_bus.get_active_sessions()) == sorted(sessions)
