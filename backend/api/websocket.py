"""Live event stream for one analysis session.

A client connected to ``/ws/{session_id}`` first receives the session's
recorded history, then every new event until the session closes. The same
socket accepts three commands: ``ping``, ``cancel`` and ``submit_review``
(answer a pending human review request raised by this session).
"""

import asyncio
import contextlib
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from agents.schemas import HumanInput
from events import AgentEvent, EventBus, EventType, get_event_bus

if TYPE_CHECKING:
    from session_manager import AnalysisSessionManager

logger = structlog.get_logger(__name__)

websocket_router = APIRouter()

_session_manager: "AnalysisSessionManager | None" = None


def set_session_manager(manager: "AnalysisSessionManager") -> None:
    global _session_manager
    _session_manager = manager
    logger.info("websocket_session_manager_configured")


def get_session_manager() -> "AnalysisSessionManager":
    if _session_manager is None:
        raise RuntimeError("WebSocket handlers used before set_session_manager() was called")
    return _session_manager


# -----------------------------------------------------------------------------
# Endpoint
# -----------------------------------------------------------------------------


@websocket_router.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str) -> None:
    await websocket.accept()
    logger.info("websocket_connected", session_id=session_id)

    event_bus = get_event_bus()
    # Subscribing before the replay means nothing published in between is lost;
    # the replay cutoff below drops the overlap.
    queue = event_bus.subscribe(session_id)
    try:
        cutoff = await _replay_history(websocket, event_bus, session_id)
        if cutoff is None:
            return

        tasks = [
            asyncio.create_task(_forward_events(websocket, queue, session_id, cutoff)),
            asyncio.create_task(_receive_commands(websocket, session_id)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            error = task.exception()
            if error is not None:
                logger.error("websocket_task_failed", session_id=session_id, error=str(error))
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", session_id=session_id)
    finally:
        event_bus.unsubscribe(session_id, queue)
        logger.info("websocket_closed", session_id=session_id)


async def _replay_history(
    websocket: WebSocket, event_bus: EventBus, session_id: str
) -> float | None:
    """Send recorded events; return the last replayed timestamp (None on disconnect)."""
    history = event_bus.get_event_history(session_id)
    cutoff = 0.0
    if history:
        logger.info("websocket_replay", session_id=session_id, event_count=len(history))
    for event in history:
        try:
            await websocket.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.info("websocket_disconnect_during_replay", session_id=session_id)
            return None
        cutoff = event.timestamp
    return cutoff


async def _forward_events(
    websocket: WebSocket,
    queue: "asyncio.Queue[AgentEvent]",
    session_id: str,
    cutoff: float,
) -> None:
    try:
        while True:
            event = await queue.get()
            if event.type == EventType.SESSION_CLOSED:
                logger.info("websocket_stream_finished", session_id=session_id)
                return
            if event.timestamp <= cutoff:
                continue
            await websocket.send_json(event.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info("websocket_disconnect_during_send", session_id=session_id)


async def _receive_commands(websocket: WebSocket, session_id: str) -> None:
    try:
        while True:
            message = await websocket.receive_json()
            if not isinstance(message, dict):
                logger.warning("websocket_message_not_object", session_id=session_id)
                continue
            reply = await dispatch_command(session_id, message)
            if reply is not None:
                await websocket.send_json(reply)
    except WebSocketDisconnect:
        logger.info("websocket_disconnect_during_receive", session_id=session_id)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------


async def dispatch_command(session_id: str, message: dict[str, Any]) -> dict[str, Any] | None:
    """Run one client command and return the reply to send, if any."""
    command = message.get("type")
    logger.info("websocket_command", session_id=session_id, command=command)

    if command == "ping":
        return {"type": "pong", "timestamp": message.get("timestamp")}
    if command == "cancel":
        await handle_cancel_command(session_id)
        return None
    if command == "submit_review":
        return await handle_review_command(session_id, message)

    logger.warning("websocket_unknown_command", session_id=session_id, command=command)
    return None


async def _publish_cancel_error(session_id: str, error: str) -> None:
    await get_event_bus().publish(
        AgentEvent(
            type=EventType.SESSION_ERROR,
            session_id=session_id,
            data={"error": error, "phase": "cancellation"},
        )
    )


async def handle_cancel_command(session_id: str) -> None:
    """Cancel the session; failures are reported as SESSION_ERROR events."""
    manager = get_session_manager()
    if manager.get_session(session_id) is None:
        logger.warning("cancel_unknown_session", session_id=session_id)
        await _publish_cancel_error(session_id, f"Session {session_id} not found")
        return
    try:
        await manager.cancel_session(session_id)
    except KeyError as e:
        logger.error("cancel_failed", session_id=session_id, error=str(e))
        await _publish_cancel_error(session_id, str(e))


async def handle_review_command(session_id: str, data: dict[str, Any]) -> dict[str, Any]:
    """Answer a pending review from this session.

    Expected payload: ``{"type": "submit_review", "review_id": "...",
    "input": {"decision": "approve", ...}}``.

    Returns:
        A ``review_ack`` message. ``accepted`` is False, with an ``error``,
        when the review belongs to another session or the input is invalid.
    """
    review_id = data.get("review_id")
    ack: dict[str, Any] = {"type": "review_ack", "review_id": review_id, "accepted": False}

    manager = get_session_manager()
    reviews = manager.review_system
    submission = reviews.get(review_id) if isinstance(review_id, str) else None
    if submission is None or submission.session_id != session_id:
        logger.warning("review_not_in_session", session_id=session_id, review_id=review_id)
        ack["error"] = "Review not found"
        return ack

    try:
        human_input = HumanInput.model_validate(data.get("input") or {})
    except ValidationError as e:
        logger.warning("review_input_invalid", session_id=session_id, error=str(e))
        ack["error"] = "Invalid review input"
        return ack

    ack["accepted"] = await manager.submit_review(review_id, human_input)
    ack["status"] = reviews.get_status(review_id).value
    return ack
