"""Tests for the terminal WebSocket endpoints."""

import sys
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import httpx
import pytest
from conftest import SLEEP_FOREVER, python_agent
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketTestSession

from clickup_orchestrator import factory
from clickup_orchestrator.config import Config
from clickup_orchestrator.factory import (
    create_app,
    get_gateway,
    get_refinement_sessions,
    get_supervisor,
    get_task_repository,
)
from clickup_orchestrator.process.supervisor import OutputLine, task_key
from clickup_orchestrator.storage.models import TASK_COMPLETED, OrchestratorTask

ECHO_SCRIPT = "print('ready', flush=True); print('echo:' + input(), flush=True)"


@pytest.fixture
def test_client(test_config: Config, monkeypatch: pytest.MonkeyPatch) -> Iterator[TestClient]:
    monkeypatch.setattr("clickup_orchestrator.factory._config", test_config)
    monkeypatch.setattr(
        "clickup_orchestrator.factory._task_command_builder", python_agent(SLEEP_FOREVER)
    )
    monkeypatch.setattr(
        "clickup_orchestrator.factory._session_command_builder",
        lambda prompt, agent: [sys.executable, "-c", f"print({prompt!r})"],
    )
    monkeypatch.setattr(
        "clickup_orchestrator.factory._clickup_transport",
        httpx.MockTransport(lambda request: httpx.Response(200, json={})),
    )
    with TestClient(create_app()) as client:
        yield client
    factory.reset_components()


def _finished_task() -> int:
    task = get_task_repository().create(
        OrchestratorTask(clickup_task_id="CU-1", name="Fix login", status=TASK_COMPLETED)
    )
    assert task.id is not None
    return task.id


def _receive_until_exit(ws: WebSocketTestSession) -> list[dict[str, Any]]:
    """Collect messages up to and including the process exit line."""
    messages = []
    while True:
        message = ws.receive_json()
        messages.append(message)
        if message.get("type") == "output" and message["line"].startswith("\n[Process exited"):
            return messages


def _output_lines(messages: list[dict[str, Any]]) -> list[str]:
    return [m["line"] for m in messages if m["type"] == "output"]


def test_unknown_task_is_rejected(test_client: TestClient) -> None:
    with test_client.websocket_connect("/ws/tasks/404/terminal") as ws:
        assert ws.receive_json() == {"type": "error", "message": "Task 404 not found"}


def test_replay_then_connected_state(test_client: TestClient) -> None:
    task_id = _finished_task()
    gateway = get_gateway()
    gateway(OutputLine(task_key(task_id), "earlier line", False))
    gateway(OutputLine(task_key(task_id), "earlier error", True))

    with test_client.websocket_connect(f"/ws/tasks/{task_id}/terminal") as ws:
        assert ws.receive_json() == {"type": "connected", "task_id": task_id, "is_running": False}
        assert ws.receive_json() == {"type": "output", "line": "earlier line", "is_stderr": False}
        assert ws.receive_json() == {"type": "output", "line": "earlier error", "is_stderr": True}


def test_input_without_process(test_client: TestClient) -> None:
    task_id = _finished_task()

    with test_client.websocket_connect(f"/ws/tasks/{task_id}/terminal") as ws:
        ws.receive_json()
        ws.send_json({"type": "input", "data": "y\n"})

        assert ws.receive_json() == {
            "type": "error",
            "message": f"No process running for task {task_id}",
        }


def test_invalid_message(test_client: TestClient) -> None:
    task_id = _finished_task()

    with test_client.websocket_connect(f"/ws/tasks/{task_id}/terminal") as ws:
        ws.receive_json()
        ws.send_text("not json")

        assert ws.receive_json() == {"type": "error", "message": "Invalid message"}


def test_input_reaches_running_process(test_client: TestClient, tmp_path: Path) -> None:
    task_id = _finished_task()
    key = task_key(task_id)
    test_client.portal.call(
        get_supervisor().spawn, key, [sys.executable, "-c", ECHO_SCRIPT], str(tmp_path)
    )

    with test_client.websocket_connect(f"/ws/tasks/{task_id}/terminal") as ws:
        assert ws.receive_json()["is_running"] is True
        ws.send_json({"type": "input", "data": "hello\n"})

        lines = _output_lines(_receive_until_exit(ws))

    assert lines == ["ready", "echo:hello", "\n[Process exited with code 0]"]


def test_kill_ends_idle_task_process(test_client: TestClient, tmp_path: Path) -> None:
    task_id = _finished_task()
    key = task_key(task_id)
    test_client.portal.call(
        get_supervisor().spawn, key, [sys.executable, "-c", SLEEP_FOREVER], str(tmp_path)
    )

    with test_client.websocket_connect(f"/ws/tasks/{task_id}/terminal") as ws:
        ws.receive_json()
        ws.send_json({"type": "kill"})

        lines = _output_lines(_receive_until_exit(ws))

    assert len(lines) == 1
    assert not get_supervisor().is_running(key)


def test_session_terminal_spawn_and_cancel(test_client: TestClient, tmp_path: Path) -> None:
    session_id = get_refinement_sessions().create("feature/ui").id

    with test_client.websocket_connect(f"/ws/ui-refinements/{session_id}") as ws:
        assert ws.receive_json() == {"type": "connected", "session_id": session_id, "is_running": False}

        ws.send_json({"type": "cancel", "message_id": "unknown"})
        assert ws.receive_json() == {"type": "cancelled", "message_id": "unknown", "success": False}

        ws.send_json({"type": "spawn", "prompt": "Center the logo", "worktree_path": str(tmp_path)})
        messages = _receive_until_exit(ws)
        if not any(m["type"] == "spawned" for m in messages):
            messages.append(ws.receive_json())

    spawned = [m for m in messages if m["type"] == "spawned"]
    assert len(spawned) == 1
    assert isinstance(spawned[0]["pid"], int)
    assert _output_lines(messages) == ["Center the logo", "\n[Process exited with code 0]"]


def test_session_spawn_error(test_client: TestClient) -> None:
    session_id = get_refinement_sessions().create("feature/ui").id

    with test_client.websocket_connect(f"/ws/ui-refinements/{session_id}") as ws:
        ws.receive_json()
        ws.send_json({"type": "spawn", "prompt": "Anything"})

        message = ws.receive_json()

    assert message["type"] == "error"
    assert message["message"].startswith("No working directory")


def test_unknown_session_is_rejected(test_client: TestClient) -> None:
    with test_client.websocket_connect("/ws/ui-refinements/nope") as ws:
        assert ws.receive_json() == {"type": "error", "message": "Session nope not found"}
