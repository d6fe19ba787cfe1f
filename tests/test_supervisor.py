"""Tests for the ProcessSupervisor."""

import sys
from pathlib import Path

import pytest
from conftest import SLEEP_FOREVER, wait_for

from clickup_orchestrator.errors import AlreadyRunningError, NotRunningError, ProcessError
from clickup_orchestrator.process.supervisor import (
    OutputLine,
    ProcessExited,
    ProcessStarted,
    ProcessSupervisor,
    SupervisorEvent,
    exit_line,
    parse_session_key,
    parse_task_key,
    session_key,
    task_key,
)


class Recorder:
    def __init__(self) -> None:
        self.events: list[SupervisorEvent] = []

    def __call__(self, event: SupervisorEvent) -> None:
        self.events.append(event)

    def lines(self, key: str) -> list[str]:
        return [e.line for e in self.events if isinstance(e, OutputLine) and e.key == key]


def _python(script: str) -> list[str]:
    return [sys.executable, "-c", script]


def test_keys_round_trip() -> None:
    assert parse_task_key(task_key(42)) == 42
    assert parse_task_key(session_key("abc")) is None
    assert parse_task_key("task:nope") is None
    assert parse_session_key(session_key("abc")) == "abc"
    assert parse_session_key(task_key(1)) is None


@pytest.mark.asyncio
async def test_output_then_single_exit_line(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    recorder = Recorder()
    supervisor.add_listener(recorder)
    exits: list[ProcessExited] = []

    async def on_exit(event: ProcessExited) -> None:
        exits.append(event)

    supervisor.add_exit_handler(on_exit)
    key = task_key(1)

    handle = await supervisor.spawn(key, _python("print('one'); print('two')"), str(tmp_path))
    exit_code = await handle.wait_finished()

    assert exit_code == 0
    assert recorder.lines(key) == ["one", "two", exit_line(0)]
    assert isinstance(recorder.events[0], ProcessStarted)
    assert isinstance(recorder.events[-1], ProcessExited)
    assert exits == [ProcessExited(key, 0)]
    assert not supervisor.is_running(key)


@pytest.mark.asyncio
async def test_stderr_lines_are_flagged(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    recorder = Recorder()
    supervisor.add_listener(recorder)

    handle = await supervisor.spawn(
        task_key(1), _python("import sys; print('oops', file=sys.stderr); sys.exit(2)"), str(tmp_path)
    )
    await handle.wait_finished()

    output = [e for e in recorder.events if isinstance(e, OutputLine)]
    assert output[0] == OutputLine(task_key(1), "oops", True)
    assert output[-1] == OutputLine(task_key(1), exit_line(2), False)


@pytest.mark.asyncio
async def test_spawn_rejects_duplicate_key(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(kill_grace_seconds=1.0)
    key = task_key(1)
    await supervisor.spawn(key, _python(SLEEP_FOREVER), str(tmp_path))
    try:
        with pytest.raises(AlreadyRunningError):
            await supervisor.spawn(key, _python(SLEEP_FOREVER), str(tmp_path))
        assert supervisor.running_keys() == [key]
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_spawn_errors(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()

    with pytest.raises(ProcessError, match="Working directory does not exist"):
        await supervisor.spawn(task_key(1), _python("pass"), str(tmp_path / "missing"))
    with pytest.raises(ProcessError, match="Failed to spawn"):
        await supervisor.spawn(task_key(1), ["/nonexistent/agent-binary"], str(tmp_path))
    assert not supervisor.is_running(task_key(1))


@pytest.mark.asyncio
async def test_write_input_reaches_process(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    recorder = Recorder()
    supervisor.add_listener(recorder)
    key = session_key("s1")

    handle = await supervisor.spawn(key, _python("print('echo:' + input())"), str(tmp_path))
    await supervisor.write_input(key, "hello\n")
    await handle.wait_finished()

    assert "echo:hello" in recorder.lines(key)


@pytest.mark.asyncio
async def test_write_input_without_process() -> None:
    supervisor = ProcessSupervisor()

    with pytest.raises(NotRunningError, match="No process running for task 7"):
        await supervisor.write_input(task_key(7), "x")


@pytest.mark.asyncio
async def test_kill_terminates_and_waits_for_exit_handling(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(kill_grace_seconds=2.0)
    recorder = Recorder()
    supervisor.add_listener(recorder)
    handled: list[int] = []

    async def on_exit(event: ProcessExited) -> None:
        handled.append(event.exit_code)

    supervisor.add_exit_handler(on_exit)
    key = task_key(1)
    await supervisor.spawn(key, _python(SLEEP_FOREVER), str(tmp_path))

    await supervisor.kill(key)

    assert not supervisor.is_running(key)
    assert len(handled) == 1
    assert handled[0] != 0
    exit_lines = [line for line in recorder.lines(key) if line.startswith("\n[Process exited")]
    assert len(exit_lines) == 1


@pytest.mark.asyncio
async def test_kill_escalates_when_sigterm_is_ignored(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(kill_grace_seconds=0.5)
    recorder = Recorder()
    supervisor.add_listener(recorder)
    key = task_key(1)
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    handle = await supervisor.spawn(key, _python(script), str(tmp_path))
    await wait_for(lambda: "ready" in recorder.lines(key))

    await supervisor.kill(key)

    assert handle.exit_code == -9
    assert not supervisor.is_running(key)


@pytest.mark.asyncio
async def test_kill_without_process_is_noop() -> None:
    supervisor = ProcessSupervisor()

    await supervisor.kill(task_key(99))


@pytest.mark.asyncio
async def test_kill_after_exit_keeps_single_exit_line(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    recorder = Recorder()
    supervisor.add_listener(recorder)
    key = task_key(1)

    handle = await supervisor.spawn(key, _python("print('done')"), str(tmp_path))
    await handle.process.wait()
    # The exit may still be in flight here.
    await supervisor.kill(key)
    await supervisor.kill(key)

    assert handle.exit_code == 0
    assert recorder.lines(key) == ["done", exit_line(0)]
    assert not supervisor.is_running(key)


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_delivery(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()

    def broken(event: SupervisorEvent) -> None:
        raise RuntimeError("boom")

    recorder = Recorder()
    supervisor.add_listener(broken)
    supervisor.add_listener(recorder)

    handle = await supervisor.spawn(task_key(1), _python("print('still here')"), str(tmp_path))
    await handle.wait_finished()

    assert "still here" in recorder.lines(task_key(1))


@pytest.mark.asyncio
async def test_shutdown_kills_everything(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(kill_grace_seconds=1.0)
    await supervisor.spawn(task_key(1), _python(SLEEP_FOREVER), str(tmp_path))
    await supervisor.spawn(session_key("s1"), _python(SLEEP_FOREVER), str(tmp_path))

    await supervisor.shutdown()

    assert supervisor.running_keys() == []
