"""Tests for api/websocket.py -- event streaming and client commands."""

from collections.abc import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.websocket import (
    dispatch_command,
    handle_cancel_command,
    handle_review_command,
    set_session_manager,
    websocket_router,
)
from events.bus import get_event_bus, reset_event_bus
from events.types import AgentEvent, EventType
from orchestration.review import HumanReviewSystem
from tests.test_review import _request

SESSION_ID = "sess_ws0000000001"


@pytest.fixture()
def reviews() -> HumanReviewSystem:
    return HumanReviewSystem()


@pytest.fixture()
def manager(reviews: HumanReviewSystem) -> Generator[MagicMock, None, None]:
    reset_event_bus()
    mgr = MagicMock()
    mgr.get_session = MagicMock(return_value=MagicMock())
    mgr.cancel_session = AsyncMock()
    mgr.review_system = reviews
    mgr.submit_review = AsyncMock(
        side_effect=lambda review_id, human_input: reviews.submit_result(
            review_id, human_input
        )
    )
    set_session_manager(mgr)  # type: ignore[arg-type]
    yield mgr
    reset_event_bus()


# =========================================================================
# Command handlers
# =========================================================================


class TestReviewCommand:
    async def test_accepts_review_for_own_session(self, manager, reviews) -> None:
        review_id = reviews.submit(_request(), session_id=SESSION_ID)
        reply = await handle_review_command(
            SESSION_ID,
            {"type": "submit_review", "review_id": review_id, "input": {"decision": "approve"}},
        )
        assert reply == {
            "type": "review_ack",
            "review_id": review_id,
            "accepted": True,
            "status": "completed",
        }

    async def test_rejects_review_of_other_session(self, manager, reviews) -> None:
        review_id = reviews.submit(_request(), session_id="sess_other")
        reply = await handle_review_command(SESSION_ID, {"review_id": review_id})

        assert reply["accepted"] is False
        assert reply["error"] == "Review not found"
        manager.submit_review.assert_not_awaited()

    async def test_invalid_input(self, manager, reviews) -> None:
        review_id = reviews.submit(_request(), session_id=SESSION_ID)
        reply = await handle_review_command(
            SESSION_ID, {"review_id": review_id, "input": {"decision": "maybe"}}
        )
        assert reply["error"] == "Invalid review input"


class TestCancelCommand:
    async def test_cancels_session(self, manager) -> None:
        await handle_cancel_command(SESSION_ID)
        manager.cancel_session.assert_awaited_once_with(SESSION_ID)

    async def test_unknown_session_publishes_error(self, manager) -> None:
        manager.get_session.return_value = None
        await handle_cancel_command(SESSION_ID)

        (event,) = get_event_bus().get_event_history(SESSION_ID)
        assert event.type == EventType.SESSION_ERROR
        assert event.data["phase"] == "cancellation"
        manager.cancel_session.assert_not_awaited()


# =========================================================================
# Streaming
# =========================================================================


class TestWebSocketEndpoint:
    def test_replays_history_and_answers_ping(self, manager) -> None:
        bus = get_event_bus()
        bus._event_history[SESSION_ID].append(
            AgentEvent(
                type=EventType.PHASE_STARTED,
                session_id=SESSION_ID,
                data={"phase": "intake"},
            )
        )
        app = FastAPI()
        app.include_router(websocket_router)

        with TestClient(app) as client, client.websocket_connect(f"/ws/{SESSION_ID}") as ws:
            replayed = ws.receive_json()
            assert replayed["type"] == "phase_started"
            assert replayed["data"] == {"phase": "intake"}

            ws.send_json({"type": "ping", "timestamp": 123})
            assert ws.receive_json() == {"type": "pong", "timestamp": 123}


class TestDispatchCommand:
    async def test_ping(self, manager) -> None:
        reply = await dispatch_command(SESSION_ID, {"type": "ping", "timestamp": 7})
        assert reply == {"type": "pong", "timestamp": 7}

    async def test_cancel_has_no_reply(self, manager) -> None:
        assert await dispatch_command(SESSION_ID, {"type": "cancel"}) is None
        manager.cancel_session.assert_awaited_once_with(SESSION_ID)

    async def test_unknown_command_ignored(self, manager) -> None:
        assert await dispatch_command(SESSION_ID, {"type": "shutdown"}) is None
        manager.cancel_session.assert_not_awaited()
