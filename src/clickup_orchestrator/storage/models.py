"""SQLModel tables for tasks, task logs, settings and process runs."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel

TASK_QUEUED = "queued"
TASK_IN_PROGRESS = "in_progress"
TASK_STOPPED = "stopped"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

TASK_STATUSES = (TASK_QUEUED, TASK_IN_PROGRESS, TASK_STOPPED, TASK_COMPLETED, TASK_FAILED)
DELETABLE_STATUSES = (TASK_STOPPED, TASK_FAILED, TASK_COMPLETED)
RESTARTABLE_STATUSES = (TASK_STOPPED, TASK_FAILED)

EVENT_STATUS = "status"
EVENT_CLICKUP = "clickup"
EVENT_SYSTEM = "system"
EVENT_OUTPUT = "output"


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """SQLite drops tzinfo on read; treat naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class OrchestratorTask(SQLModel, table=True):
    __tablename__ = "orchestrator_tasks"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    clickup_task_id: str = Field(unique=True, index=True)
    clickup_list_id: str = ""
    name: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: int | None = None
    status: str = Field(default=TASK_QUEUED, index=True)
    worktree_path: str | None = None
    branch_name: str | None = None
    time_spent_ms: int = 0
    started_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    completed_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    # Unstructured output of tasks that predate the structured log table.
    output_log: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class TaskLog(SQLModel, table=True):
    __tablename__ = "orchestrator_task_logs"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(index=True)
    event_type: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    is_stderr: bool | None = None
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class Setting(SQLModel, table=True):
    __tablename__ = "settings"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    key: str = Field(unique=True, index=True)
    value: str = Field(default="", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )


class ProcessRun(SQLModel, table=True):
    __tablename__ = "process_runs"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    task_id: int = Field(index=True)
    pid: int | None = None
    started_at: datetime = Field(
        default_factory=utc_now, sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    ended_at: datetime | None = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )
    exit_code: int | None = None
