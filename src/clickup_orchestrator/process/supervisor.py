"""Supervisor for external agent processes.

One OS process per key (a task, a UI-refinement session or a voice analyst
run). Output lines are published to listeners in the order they are read; the
end of every process is announced by exactly one synthetic
"Process exited with code N" line.
"""

import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from clickup_orchestrator.errors import AlreadyRunningError, NotRunningError, ProcessError
from clickup_orchestrator.storage.models import utc_now

logger = logging.getLogger(__name__)

TASK_PREFIX = "task:"
SESSION_PREFIX = "session:"
VOICE_PREFIX = "voice:"

# Upper bound for a single output line; longer lines are dropped with a warning.
STREAM_LIMIT = 1024 * 1024

# How long to wait for pipes to close after the process itself has exited.
DRAIN_TIMEOUT_SECONDS = 5.0


def task_key(task_id: int) -> str:
    return f"{TASK_PREFIX}{task_id}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def voice_key(run_id: str) -> str:
    return f"{VOICE_PREFIX}{run_id}"


def parse_task_key(key: str) -> int | None:
    if not key.startswith(TASK_PREFIX):
        return None
    try:
        return int(key[len(TASK_PREFIX) :])
    except ValueError:
        return None


def parse_session_key(key: str) -> str | None:
    if not key.startswith(SESSION_PREFIX):
        return None
    return key[len(SESSION_PREFIX) :]


def parse_voice_key(key: str) -> str | None:
    if not key.startswith(VOICE_PREFIX):
        return None
    return key[len(VOICE_PREFIX) :]


def exit_line(exit_code: int) -> str:
    """Final output line; the terminal UI matches on this text."""
    return f"\n[Process exited with code {exit_code}]"


@dataclass(frozen=True)
class ProcessStarted:
    key: str
    pid: int


@dataclass(frozen=True)
class OutputLine:
    key: str
    line: str
    is_stderr: bool


@dataclass(frozen=True)
class ProcessExited:
    key: str
    exit_code: int


SupervisorEvent = ProcessStarted | OutputLine | ProcessExited
EventListener = Callable[[SupervisorEvent], None]
ExitHandler = Callable[[ProcessExited], Awaitable[None]]


@dataclass
class ProcessHandle:
    """A live process owned by the supervisor."""

    key: str
    process: asyncio.subprocess.Process
    cwd: str
    started_at: datetime = field(default_factory=utc_now)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    exit_code: int | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait_finished(self) -> int | None:
        await self.finished.wait()
        return self.exit_code


class ProcessSupervisor:
    """Registry of live agent processes, keyed by task or session key."""

    def __init__(self, kill_grace_seconds: float = 5.0) -> None:
        self._kill_grace_seconds = kill_grace_seconds
        self._handles: dict[str, ProcessHandle] = {}
        self._spawning: set[str] = set()
        self._listeners: list[EventListener] = []
        self._exit_handlers: list[ExitHandler] = []
        self._watchers: set[asyncio.Task[None]] = set()

    def add_listener(self, listener: EventListener) -> None:
        """Register a synchronous listener for start, output and exit events."""
        self._listeners.append(listener)

    def add_exit_handler(self, handler: ExitHandler) -> None:
        """Register an async handler awaited after a process has exited."""
        self._exit_handlers.append(handler)

    def is_running(self, key: str) -> bool:
        return key in self._handles

    def get_pid(self, key: str) -> int | None:
        handle = self._handles.get(key)
        return handle.pid if handle else None

    def get_handle(self, key: str) -> ProcessHandle | None:
        return self._handles.get(key)

    def running_keys(self, prefix: str | None = None) -> list[str]:
        return [k for k in self._handles if prefix is None or k.startswith(prefix)]

    async def spawn(
        self,
        key: str,
        argv: list[str],
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        """Start a process for the key.

        Raises:
            AlreadyRunningError: If the key already has a live process
            ProcessError: If the working directory is missing or the program cannot start
        """
        if key in self._handles or key in self._spawning:
            raise AlreadyRunningError(f"{_describe(key)} already has a running process")
        if not Path(cwd).is_dir():
            raise ProcessError(f"Working directory does not exist: {cwd}")

        self._spawning.add(key)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise ProcessError(f"Failed to spawn {argv[0]}: {e} (working dir: {cwd})") from e
        finally:
            self._spawning.discard(key)

        handle = ProcessHandle(key=key, process=process, cwd=cwd)
        self._handles[key] = handle
        logger.info(f"[Supervisor] Spawned {argv[0]} for {key} (PID {process.pid}) in {cwd}")
        self._publish(ProcessStarted(key, process.pid))

        watcher = asyncio.create_task(self._watch(handle), name=f"watch-{key}")
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        return handle

    async def write_input(self, key: str, data: str) -> None:
        """Write raw text to the process stdin.

        Raises:
            NotRunningError: If there is no live process for the key
        """
        handle = self._handles.get(key)
        if handle is None or handle.process.stdin is None:
            raise NotRunningError(f"No process running for {_describe(key)}")
        try:
            handle.process.stdin.write(data.encode("utf-8"))
            await handle.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise NotRunningError(f"Process for {_describe(key)} is no longer accepting input") from e

    async def kill(self, key: str, grace: float | None = None) -> None:
        """Terminate the process and wait until its exit has been fully handled.

        SIGTERM first; SIGKILL if it is still alive after the grace period.
        A missing or already-exited process is a no-op.
        """
        handle = self._handles.get(key)
        if handle is None:
            logger.debug(f"[Supervisor] Kill for {key}: nothing running")
            return

        grace = self._kill_grace_seconds if grace is None else grace
        process = handle.process
        if process.returncode is None:
            logger.info(f"[Supervisor] Terminating {key} (PID {process.pid})")
            _signal_group(process, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except TimeoutError:
                logger.warning(
                    f"[Supervisor] {key} ignored SIGTERM for {grace:.1f}s, sending SIGKILL"
                )
                _signal_group(process, signal.SIGKILL)

        await handle.wait_finished()

    async def shutdown(self) -> None:
        """Kill every live process."""
        keys = list(self._handles)
        if keys:
            logger.info(f"[Supervisor] Shutting down {len(keys)} process(es)")
        await asyncio.gather(*(self.kill(k) for k in keys), return_exceptions=True)

    async def _watch(self, handle: ProcessHandle) -> None:
        process = handle.process
        readers = [
            asyncio.create_task(self._read_stream(handle.key, process.stdout, is_stderr=False)),
            asyncio.create_task(self._read_stream(handle.key, process.stderr, is_stderr=True)),
        ]
        exit_code = await process.wait()

        # Children that inherited the pipes can keep them open after the leader exits.
        _, pending = await asyncio.wait(readers, timeout=DRAIN_TIMEOUT_SECONDS)
        for reader in pending:
            reader.cancel()

        handle.exit_code = exit_code
        self._publish(OutputLine(handle.key, exit_line(exit_code), False))
        self._handles.pop(handle.key, None)
        logger.info(f"[Supervisor] {handle.key} exited with code {exit_code}")

        event = ProcessExited(handle.key, exit_code)
        self._publish(event)
        try:
            for handler in self._exit_handlers:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(
                        f"[Supervisor] Exit handler failed for {handle.key}: {e}", exc_info=True
                    )
        finally:
            handle.finished.set()

    async def _read_stream(
        self, key: str, stream: asyncio.StreamReader | None, is_stderr: bool
    ) -> None:
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                logger.warning(f"[Supervisor] Dropped an over-long output line from {key}")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self._publish(OutputLine(key, line, is_stderr))

    def _publish(self, event: SupervisorEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[Supervisor] Listener failed on {event}: {e}", exc_info=True)


def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass


def _describe(key: str) -> str:
    task_id = parse_task_key(key)
    if task_id is not None:
        return f"task {task_id}"
    session_id = parse_session_key(key)
    if session_id is not None:
        return f"session {session_id}"
    return key
