"""WebSocket endpoints for live agent terminals."""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from clickup_orchestrator.errors import NotRunningError, OrchestratorError
from clickup_orchestrator.factory import (
    get_gateway,
    get_refinement_sessions,
    get_scheduler,
    get_supervisor,
    get_task_repository,
)
from clickup_orchestrator.gateway.stream_gateway import pump, send_json
from clickup_orchestrator.process.supervisor import session_key, task_key
from clickup_orchestrator.storage.models import TASK_IN_PROGRESS

logger = logging.getLogger(__name__)

router = APIRouter()

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]

INVALID_MESSAGE = {"type": "error", "message": "Invalid message"}


def _parse(text: str) -> dict[str, Any] | None:
    try:
        message = json.loads(text)
    except ValueError:
        return None
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        return None
    return message


@router.websocket("/ws/tasks/{task_id}/terminal")
async def task_terminal(websocket: WebSocket, task_id: int) -> None:
    """Terminal of one task: replayed and live output, input and kill.

    Disconnecting never affects the process; reconnecting replays the
    current run's buffered output before live lines.

    Args:
        websocket: WebSocket connection
        task_id: Orchestrator task id
    """
    await websocket.accept()
    if get_task_repository().find(task_id) is None:
        await send_json(websocket, {"type": "error", "message": f"Task {task_id} not found"})
        await websocket.close(code=1008)
        return

    key = task_key(task_id)
    connected = {"type": "connected", "task_id": task_id, "is_running": get_supervisor().is_running(key)}
    if not await send_json(websocket, connected):
        return

    async def handle(message: dict[str, Any]) -> None:
        if message["type"] == "input":
            await _write_input(websocket, key, message, f"No process running for task {task_id}")
        elif message["type"] == "kill":
            await _kill_task(task_id)
        else:
            logger.debug(f"[WebSocket] Ignoring '{message['type']}' for task {task_id}")

    await _serve(websocket, key, handle)


@router.websocket("/ws/ui-refinements/{session_id}")
async def refinement_terminal(websocket: WebSocket, session_id: str) -> None:
    """Terminal of a UI-refinement session, with spawn and queue cancel.

    Args:
        websocket: WebSocket connection
        session_id: Refinement session id
    """
    await websocket.accept()
    sessions = get_refinement_sessions()
    if not sessions.exists(session_id):
        await send_json(websocket, {"type": "error", "message": f"Session {session_id} not found"})
        await websocket.close(code=1008)
        return

    key = session_key(session_id)
    connected = {
        "type": "connected",
        "session_id": session_id,
        "is_running": get_supervisor().is_running(key),
    }
    if not await send_json(websocket, connected):
        return

    async def handle(message: dict[str, Any]) -> None:
        message_type = message["type"]
        if message_type == "spawn":
            try:
                pid = await sessions.spawn_direct(
                    session_id,
                    str(message.get("prompt", "")),
                    str(message.get("agent", "claude")),
                    message.get("worktree_path"),
                )
            except OrchestratorError as e:
                await send_json(websocket, {"type": "error", "message": e.message})
                return
            await send_json(websocket, {"type": "spawned", "pid": pid})
        elif message_type == "input":
            await _write_input(websocket, key, message, f"No process running for session {session_id}")
        elif message_type == "kill":
            await get_supervisor().kill(key)
        elif message_type == "cancel":
            message_id = str(message.get("message_id", ""))
            cancelled = sessions.cancel(session_id, message_id)
            await send_json(
                websocket, {"type": "cancelled", "message_id": message_id, "success": cancelled}
            )
        else:
            logger.debug(f"[WebSocket] Ignoring '{message_type}' for session {session_id}")

    await _serve(websocket, key, handle)


async def _serve(websocket: WebSocket, key: str, handle: MessageHandler) -> None:
    """Pump output to the client while dispatching its messages."""
    gateway = get_gateway()
    subscription = gateway.subscribe(key)
    pump_task = asyncio.create_task(pump(websocket, subscription), name=f"pump-{key}")
    try:
        while True:
            text = await websocket.receive_text()
            message = _parse(text)
            if message is None:
                await send_json(websocket, INVALID_MESSAGE)
                continue
            await handle(message)
    except WebSocketDisconnect:
        logger.info(f"[WebSocket] Client disconnected from {key}")
    except Exception as e:
        logger.error(f"[WebSocket] Error on {key}: {e}", exc_info=True)
    finally:
        pump_task.cancel()
        gateway.unsubscribe(subscription)


async def _write_input(websocket: WebSocket, key: str, message: dict[str, Any], not_running: str) -> None:
    try:
        await get_supervisor().write_input(key, str(message.get("data", "")))
    except NotRunningError:
        await send_json(websocket, {"type": "error", "message": not_running})


async def _kill_task(task_id: int) -> None:
    """Stop the task if it is running; a kill for an idle task is a no-op."""
    task = get_task_repository().find(task_id)
    if task is None or task.status != TASK_IN_PROGRESS:
        await get_supervisor().kill(task_key(task_id))
        return
    try:
        await get_scheduler().stop(task_id)
    except OrchestratorError as e:
        logger.debug(f"[WebSocket] Kill for task {task_id} ignored: {e.message}")
