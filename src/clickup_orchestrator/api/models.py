"""API request and response models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from clickup_orchestrator.storage.models import OrchestratorTask, ProcessRun, TaskLog, as_utc


def _utc(value: datetime | None) -> datetime | None:
    return as_utc(value) if value is not None else None


class TaskResponse(BaseModel):
    """API response model for orchestrator tasks."""

    id: int
    clickup_task_id: str
    name: str
    description: str | None
    priority: int | None
    status: str
    worktree_path: str | None
    branch_name: str | None
    time_spent_ms: int
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    is_running: bool

    @classmethod
    def from_task(cls, task: OrchestratorTask, is_running: bool, time_spent_ms: int) -> "TaskResponse":
        assert task.id is not None
        return cls(
            id=task.id,
            clickup_task_id=task.clickup_task_id,
            name=task.name,
            description=task.description,
            priority=task.priority,
            status=task.status,
            worktree_path=task.worktree_path,
            branch_name=task.branch_name,
            time_spent_ms=time_spent_ms,
            started_at=_utc(task.started_at),
            completed_at=_utc(task.completed_at),
            created_at=as_utc(task.created_at),
            is_running=is_running,
        )


class TaskStatsResponse(BaseModel):
    queued: int
    in_progress: int
    stopped: int
    completed: int
    failed: int
    running_processes: int


class LogEntryResponse(BaseModel):
    id: int
    task_id: int
    event_type: str
    message: str
    is_stderr: bool | None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: TaskLog) -> "LogEntryResponse":
        assert entry.id is not None
        return cls(
            id=entry.id,
            task_id=entry.task_id,
            event_type=entry.event_type,
            message=entry.message,
            is_stderr=entry.is_stderr,
            created_at=as_utc(entry.created_at),
        )


class TaskLogsResponse(BaseModel):
    """Structured entries; legacy_output_log is only set for pre-structured tasks."""

    task_id: int
    logs: list[LogEntryResponse]
    legacy_output_log: str | None = None


class ProcessRunResponse(BaseModel):
    id: int
    task_id: int
    pid: int | None
    started_at: datetime
    ended_at: datetime | None
    exit_code: int | None

    @classmethod
    def from_run(cls, run: ProcessRun) -> "ProcessRunResponse":
        assert run.id is not None
        return cls(
            id=run.id,
            task_id=run.task_id,
            pid=run.pid,
            started_at=as_utc(run.started_at),
            ended_at=_utc(run.ended_at),
            exit_code=run.exit_code,
        )


class DeleteTaskResponse(BaseModel):
    success: bool
    message: str


class SettingsPayload(BaseModel):
    settings: dict[str, str]


class SettingValueResponse(BaseModel):
    key: str
    value: str


class PathRequest(BaseModel):
    path: str


class DetectPathRequest(BaseModel):
    marker_filename: str


class CreateBranchRequest(BaseModel):
    path: str
    name: str
    start_point: str | None = None


class CheckoutRequest(BaseModel):
    path: str
    name: str


class FileNode(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    path: str
    is_directory: bool = Field(alias="isDirectory")
    children: list["FileNode"] | None = None


class SaveContentRequest(BaseModel):
    path: str
    content: str


class CreateFileRequest(BaseModel):
    path: str
    is_directory: bool = False


class RenameRequest(BaseModel):
    old_path: str
    new_path: str


class ApiKeyRequest(BaseModel):
    api_key: str


class CreateSessionRequest(BaseModel):
    branch_name: str


class SessionResponse(BaseModel):
    session_id: str
    branch_name: str


class ChatRequest(BaseModel):
    session_id: str
    message: str
    agent: str = "claude"
    element_context: dict[str, Any] | None = None


class ChatResponse(BaseModel):
    success: bool
    queued: bool
    queue_position: int | None = None
    message_id: str | None = None


class QueueStatusResponse(BaseModel):
    pending_messages: int
    current_task: str | None = None


class SaveScreenshotRequest(BaseModel):
    image_data: str
    filename: str | None = None


class SaveScreenshotResponse(BaseModel):
    filepath: str
    filename: str


class GenerateTasksRequest(BaseModel):
    transcript: str
    screenshots: list[str] = Field(default_factory=list)
    agent: str = "claude"


class GenerateTasksResponse(BaseModel):
    success: bool
    message: str
    session_id: str | None = None
