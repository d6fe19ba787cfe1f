"""Append-only per-task event log."""

import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from clickup_orchestrator.process.supervisor import OutputLine, SupervisorEvent, parse_task_key
from clickup_orchestrator.storage.models import (
    EVENT_OUTPUT,
    EVENT_STATUS,
    OrchestratorTask,
    TaskLog,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StructuredLogs:
    """Structured entries, in write order (possibly empty)."""

    entries: list[TaskLog] = field(default_factory=list)


@dataclass(frozen=True)
class LegacyLog:
    """Task predates structured logging; only the raw output blob exists."""

    blob: str


LogReadResult = StructuredLogs | LegacyLog


class LogStore:
    """Durable task log backed by the orchestrator_task_logs table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def append(
        self,
        task_id: int,
        event_type: str,
        message: str,
        is_stderr: bool | None = None,
    ) -> TaskLog:
        with Session(self._engine) as session:
            entry = TaskLog(
                task_id=task_id, event_type=event_type, message=message, is_stderr=is_stderr
            )
            session.add(entry)
            session.commit()
            session.refresh(entry)
            return entry

    def append_many(self, entries: list[TaskLog]) -> None:
        """Write a batch in one transaction, keeping list order as id order."""
        if not entries:
            return
        with Session(self._engine) as session:
            session.add_all(entries)
            session.commit()

    def log_status_change(
        self, task_id: int, from_status: str, to_status: str, note: str | None = None
    ) -> TaskLog:
        message = f"Status changed: {from_status} -> {to_status}"
        if note:
            message = f"{message} ({note})"
        return self.append(task_id, EVENT_STATUS, message)

    def read(self, task_id: int) -> LogReadResult:
        """Return structured entries, or the legacy blob when no entries exist."""
        with Session(self._engine) as session:
            entries = list(
                session.exec(
                    select(TaskLog).where(TaskLog.task_id == task_id).order_by(col(TaskLog.id))
                ).all()
            )
            if entries:
                return StructuredLogs(entries)

            task = session.get(OrchestratorTask, task_id)
            if task is not None and task.output_log:
                return LegacyLog(task.output_log)
        return StructuredLogs([])

    def delete_for_task(self, task_id: int) -> None:
        with Session(self._engine) as session:
            for entry in session.exec(select(TaskLog).where(TaskLog.task_id == task_id)).all():
                session.delete(entry)
            session.commit()


class OutputLogWriter:
    """Persists task output lines off the supervisor's hot path.

    Registered as a supervisor listener; lines are queued in emission order
    and written by a single consumer, so stored order matches output order.
    """

    def __init__(self, store: LogStore, batch_size: int = 200) -> None:
        self._store = store
        self._queue: asyncio.Queue[OutputLine] = asyncio.Queue()
        self._batch_size = batch_size
        self._task: asyncio.Task[None] | None = None

    def __call__(self, event: SupervisorEvent) -> None:
        if isinstance(event, OutputLine) and parse_task_key(event.key) is not None:
            self._queue.put_nowait(event)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name="output-log-writer")

    async def stop(self) -> None:
        await self.flush()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def flush(self) -> None:
        """Wait until every queued line has been written."""
        if self._task is None:
            self._drain_now()
            return
        await self._queue.join()

    def _drain_now(self) -> None:
        batch = []
        while not self._queue.empty():
            batch.append(self._queue.get_nowait())
        self._write(batch)
        for _ in batch:
            self._queue.task_done()

    async def _run(self) -> None:
        while True:
            first = await self._queue.get()
            batch = [first]
            while len(batch) < self._batch_size and not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                self._write(batch)
            except Exception as e:
                logger.error(f"[LogStore] Failed to persist {len(batch)} output lines: {e}", exc_info=True)
            finally:
                for _ in batch:
                    self._queue.task_done()

    def _write(self, batch: list[OutputLine]) -> None:
        entries = []
        for line in batch:
            task_id = parse_task_key(line.key)
            if task_id is None:
                continue
            entries.append(
                TaskLog(
                    task_id=task_id,
                    event_type=EVENT_OUTPUT,
                    message=line.line,
                    is_stderr=line.is_stderr,
                )
            )
        self._store.append_many(entries)
