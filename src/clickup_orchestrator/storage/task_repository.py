"""Task rows and process-run history."""

import logging
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from clickup_orchestrator.errors import NotFoundError
from clickup_orchestrator.storage.models import (
    TASK_IN_PROGRESS,
    TASK_QUEUED,
    TASK_STATUSES,
    OrchestratorTask,
    ProcessRun,
    as_utc,
    utc_now,
)

logger = logging.getLogger(__name__)

# Tasks without a tracker priority are admitted after all prioritised ones.
NO_PRIORITY_RANK = 99


class TaskRepository:
    """Persistence facade for orchestrator tasks."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, task_id: int) -> OrchestratorTask:
        """Return the task.

        Raises:
            NotFoundError: If no task has the id
        """
        with Session(self._engine) as session:
            task = session.get(OrchestratorTask, task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found")
            return task

    def find(self, task_id: int) -> OrchestratorTask | None:
        with Session(self._engine) as session:
            return session.get(OrchestratorTask, task_id)

    def find_by_clickup_id(self, clickup_task_id: str) -> OrchestratorTask | None:
        with Session(self._engine) as session:
            return session.exec(
                select(OrchestratorTask).where(OrchestratorTask.clickup_task_id == clickup_task_id)
            ).one_or_none()

    def list_tasks(self, status: str | None = None) -> list[OrchestratorTask]:
        """List tasks, newest first."""
        with Session(self._engine) as session:
            query = select(OrchestratorTask).order_by(
                col(OrchestratorTask.created_at).desc(), col(OrchestratorTask.id).desc()
            )
            if status:
                query = query.where(OrchestratorTask.status == status)
            return list(session.exec(query).all())

    def next_queued(self) -> OrchestratorTask | None:
        """Most urgent queued task; ties go to the earliest arrival."""
        with Session(self._engine) as session:
            rank = func.coalesce(OrchestratorTask.priority, NO_PRIORITY_RANK)
            return session.exec(
                select(OrchestratorTask)
                .where(OrchestratorTask.status == TASK_QUEUED)
                .order_by(rank.asc(), col(OrchestratorTask.id).asc())
                .limit(1)
            ).first()

    def count_by_status(self) -> dict[str, int]:
        with Session(self._engine) as session:
            rows = session.exec(
                select(OrchestratorTask.status, func.count()).group_by(OrchestratorTask.status)
            ).all()
        counts = {status: 0 for status in TASK_STATUSES}
        for status, count in rows:
            counts[status] = count
        return counts

    def count_in_progress(self) -> int:
        return self.count_by_status()[TASK_IN_PROGRESS]

    def create(self, task: OrchestratorTask) -> OrchestratorTask:
        with Session(self._engine) as session:
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def update(self, task_id: int, **changes: object) -> OrchestratorTask:
        """Apply field changes to a task and return the stored row."""
        with Session(self._engine) as session:
            task = session.get(OrchestratorTask, task_id)
            if task is None:
                raise NotFoundError(f"Task {task_id} not found")
            for name, value in changes.items():
                setattr(task, name, value)
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    def delete(self, task_id: int) -> None:
        with Session(self._engine) as session:
            for run in session.exec(select(ProcessRun).where(ProcessRun.task_id == task_id)).all():
                session.delete(run)
            task = session.get(OrchestratorTask, task_id)
            if task is not None:
                session.delete(task)
            session.commit()

    def open_run(self, task_id: int, pid: int | None) -> ProcessRun:
        with Session(self._engine) as session:
            run = ProcessRun(task_id=task_id, pid=pid)
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def close_runs(self, task_id: int, exit_code: int | None, ended_at: datetime | None = None) -> None:
        """Close every open run of the task."""
        ended_at = ended_at or utc_now()
        with Session(self._engine) as session:
            runs = session.exec(
                select(ProcessRun).where(
                    ProcessRun.task_id == task_id, col(ProcessRun.ended_at).is_(None)
                )
            ).all()
            for run in runs:
                run.ended_at = ended_at
                run.exit_code = exit_code
                session.add(run)
            session.commit()

    def list_runs(self, task_id: int) -> list[ProcessRun]:
        with Session(self._engine) as session:
            return list(
                session.exec(
                    select(ProcessRun)
                    .where(ProcessRun.task_id == task_id)
                    .order_by(col(ProcessRun.id))
                ).all()
            )


def elapsed_ms(task: OrchestratorTask, now: datetime | None = None) -> int:
    """Time spent including the current run, if one is in progress."""
    if task.status != TASK_IN_PROGRESS or task.started_at is None:
        return task.time_spent_ms
    now = now or utc_now()
    delta = int((now - as_utc(task.started_at)).total_seconds() * 1000)
    return task.time_spent_ms + max(delta, 0)
