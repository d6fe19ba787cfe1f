"""Task API endpoints."""

import logging

from fastapi import APIRouter

from clickup_orchestrator.api.models import (
    DeleteTaskResponse,
    LogEntryResponse,
    ProcessRunResponse,
    TaskLogsResponse,
    TaskResponse,
    TaskStatsResponse,
)
from clickup_orchestrator.factory import (
    get_log_store,
    get_scheduler,
    get_supervisor,
    get_task_repository,
)
from clickup_orchestrator.process.supervisor import TASK_PREFIX, task_key
from clickup_orchestrator.storage.log_store import LegacyLog
from clickup_orchestrator.storage.models import OrchestratorTask
from clickup_orchestrator.storage.task_repository import elapsed_ms

logger = logging.getLogger(__name__)

router = APIRouter()


def _to_response(task: OrchestratorTask) -> TaskResponse:
    assert task.id is not None
    return TaskResponse.from_task(
        task,
        is_running=get_supervisor().is_running(task_key(task.id)),
        time_spent_ms=elapsed_ms(task),
    )


@router.get("/tasks", response_model=list[TaskResponse])
async def list_tasks(status: str | None = None) -> list[TaskResponse]:
    """List orchestrator tasks, newest first.

    Args:
        status: Only return tasks in this status

    Returns:
        List of tasks
    """
    return [_to_response(task) for task in get_task_repository().list_tasks(status)]


@router.get("/tasks/stats", response_model=TaskStatsResponse)
async def task_stats() -> TaskStatsResponse:
    counts = get_task_repository().count_by_status()
    return TaskStatsResponse(
        **counts,
        running_processes=len(get_supervisor().running_keys(TASK_PREFIX)),
    )


@router.get("/tasks/{task_id}", response_model=TaskResponse)
async def get_task(task_id: int) -> TaskResponse:
    return _to_response(get_task_repository().get(task_id))


@router.post("/tasks/{task_id}/stop", response_model=TaskResponse)
async def stop_task(task_id: int) -> TaskResponse:
    """Kill the agent of an in-progress task.

    Raises:
        NotFoundError: Unknown task (404)
        InvalidTransitionError: Task is not in progress (409)
    """
    return _to_response(await get_scheduler().stop(task_id))


@router.post("/tasks/{task_id}/restart", response_model=TaskResponse)
async def restart_task(task_id: int) -> TaskResponse:
    """Queue a stopped or failed task again; it starts as soon as a slot is free."""
    return _to_response(await get_scheduler().restart(task_id))


@router.post("/tasks/{task_id}/complete", response_model=TaskResponse)
async def complete_task(task_id: int) -> TaskResponse:
    return _to_response(await get_scheduler().complete(task_id))


@router.delete("/tasks/{task_id}", response_model=DeleteTaskResponse)
async def delete_task(task_id: int) -> DeleteTaskResponse:
    """Delete a finished task together with its worktree and logs.

    Raises:
        NotFoundError: Unknown task (404)
        InvalidTransitionError: Task is queued or in progress (409)
    """
    result = await get_scheduler().delete(task_id)
    return DeleteTaskResponse(**result)


@router.get(
    "/tasks/{task_id}/logs",
    response_model=TaskLogsResponse,
    response_model_exclude_unset=True,
)
async def get_task_logs(task_id: int) -> TaskLogsResponse:
    """Return the task's log in write order.

    Tasks created before structured logging only have a raw output blob,
    which is returned as legacy_output_log with an empty entry list.
    """
    get_task_repository().get(task_id)
    result = get_log_store().read(task_id)
    if isinstance(result, LegacyLog):
        return TaskLogsResponse(task_id=task_id, logs=[], legacy_output_log=result.blob)
    return TaskLogsResponse(
        task_id=task_id, logs=[LogEntryResponse.from_entry(e) for e in result.entries]
    )


@router.get("/tasks/{task_id}/runs", response_model=list[ProcessRunResponse])
async def get_task_runs(task_id: int) -> list[ProcessRunResponse]:
    """Process runs of the task, oldest first."""
    repository = get_task_repository()
    repository.get(task_id)
    return [ProcessRunResponse.from_run(run) for run in repository.list_runs(task_id)]
