"""Polls ClickUp for ready tasks and runs them under a concurrency limit."""

import asyncio
import logging
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any

from clickup_orchestrator.clickup.client import ClickUpClient, TrackerTask, priority_to_int
from clickup_orchestrator.config import Config
from clickup_orchestrator.errors import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ProcessError,
    ValidationError,
)
from clickup_orchestrator.gateway.stream_gateway import StreamGateway
from clickup_orchestrator.git.worktree_manager import WorktreeManager, slugify
from clickup_orchestrator.process.agents import build_agent_command, build_task_prompt
from clickup_orchestrator.process.supervisor import (
    TASK_PREFIX,
    ProcessExited,
    ProcessSupervisor,
    parse_task_key,
    task_key,
)
from clickup_orchestrator.scheduler.backoff import ExponentialBackoff
from clickup_orchestrator.storage.log_store import LogStore, OutputLogWriter
from clickup_orchestrator.storage.models import (
    DELETABLE_STATUSES,
    EVENT_CLICKUP,
    EVENT_SYSTEM,
    RESTARTABLE_STATUSES,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_IN_PROGRESS,
    TASK_QUEUED,
    TASK_STOPPED,
    OrchestratorTask,
    as_utc,
    utc_now,
)
from clickup_orchestrator.storage.settings_store import SettingsStore
from clickup_orchestrator.storage.task_repository import TaskRepository, elapsed_ms

logger = logging.getLogger(__name__)

# (task, prompt, agent type) -> argv
CommandBuilder = Callable[[OrchestratorTask, str, str], list[str]]


class Scheduler:
    """Owns the task lifecycle from ClickUp arrival to completion.

    Admission is the only critical section: it runs under one lock so the
    number of in_progress tasks never exceeds the configured parallel limit.
    Process exits re-run admission, so a freed slot is refilled immediately.
    """

    def __init__(
        self,
        config: Config,
        settings: SettingsStore,
        tasks: TaskRepository,
        logs: LogStore,
        log_writer: OutputLogWriter,
        supervisor: ProcessSupervisor,
        worktrees: WorktreeManager,
        clickup: ClickUpClient,
        gateway: StreamGateway,
        build_command: CommandBuilder | None = None,
    ) -> None:
        self._config = config
        self._settings = settings
        self._tasks = tasks
        self._logs = logs
        self._log_writer = log_writer
        self._supervisor = supervisor
        self._worktrees = worktrees
        self._clickup = clickup
        self._gateway = gateway
        self._build_command = build_command or self._agent_command
        self._admission_lock = asyncio.Lock()
        self._stop_requested: set[int] = set()
        self._loop_task: asyncio.Task[None] | None = None
        self._jobs: set[asyncio.Task[None]] = set()
        self._closed = False
        self._backoff = ExponentialBackoff(
            base=config.poll_interval_seconds, max_delay=config.poll_backoff_max_seconds
        )
        supervisor.add_exit_handler(self.handle_exit)

    def start(self) -> None:
        """Start the background poll loop."""
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self.run(), name="scheduler-poll")
            logger.info(
                f"[Scheduler] Poll loop started (every {self._config.poll_interval_seconds:.0f}s)"
            )

    async def shutdown(self) -> None:
        """Stop polling and admitting; running tasks end up stopped once killed."""
        self._closed = True
        for key in self._supervisor.running_keys(TASK_PREFIX):
            task_id = parse_task_key(key)
            if task_id is not None:
                self._stop_requested.add(task_id)

        if self._loop_task is None:
            return
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        logger.info("[Scheduler] Poll loop stopped")

    async def run(self) -> None:
        """Poll forever; tracker failures lengthen the delay until the next poll."""
        while True:
            try:
                delay = await self._poll_cycle()
            except Exception as e:
                logger.error(f"[Scheduler] Poll cycle failed: {e}", exc_info=True)
                delay = self._config.poll_interval_seconds
            await asyncio.sleep(delay)

    async def _poll_cycle(self) -> float:
        try:
            await self.poll_once()
        except ExternalServiceError as e:
            delay = self._backoff.next_delay()
            logger.warning(f"[Scheduler] ClickUp poll failed: {e.message}; retrying in {delay:.0f}s")
            await self._admit_safely()
            return delay
        self._backoff.reset()
        return self._config.poll_interval_seconds

    async def poll_once(self) -> list[OrchestratorTask]:
        """Import new tasks in the trigger status, then admit queued ones.

        Returns:
            The newly created tasks

        Raises:
            ExternalServiceError: If ClickUp cannot be reached
        """
        list_id = self._settings.get_value("clickup_list_id")
        repo_path = self._settings.get_value("target_repo_path")
        if not list_id or not repo_path:
            logger.debug("[Scheduler] No list or repository configured, skipping poll")
            return []

        trigger_status = self._settings.get_value("trigger_status") or "Ready for Dev"
        tracker_tasks = await self._clickup.get_tasks(list_id, trigger_status)
        logger.debug(f"[Scheduler] {len(tracker_tasks)} task(s) in '{trigger_status}'")

        created = []
        for tracker_task in tracker_tasks:
            if self._tasks.find_by_clickup_id(tracker_task.id) is not None:
                continue
            created.append(self._import(tracker_task, list_id))

        await self.admit()
        return created

    async def admit(self) -> list[int]:
        """Start queued tasks while there is a free slot.

        Returns:
            Ids of the tasks that were started (including ones that failed to start)
        """
        started: list[int] = []
        if self._closed:
            return started
        async with self._admission_lock:
            limit = self._settings.parallel_limit()
            while self._tasks.count_in_progress() < limit:
                task = self._tasks.next_queued()
                if task is None:
                    break
                assert task.id is not None
                started.append(task.id)
                await self._start_task(task)
        return started

    async def handle_exit(self, event: ProcessExited) -> None:
        """Record the outcome of a task process and refill the freed slot."""
        task_id = parse_task_key(event.key)
        if task_id is None:
            return

        await self._log_writer.flush()
        now = utc_now()
        self._tasks.close_runs(task_id, event.exit_code, now)

        task = self._tasks.find(task_id)
        if task is None:
            self._stop_requested.discard(task_id)
            return

        stop_requested = task_id in self._stop_requested
        self._stop_requested.discard(task_id)
        if task.status == TASK_IN_PROGRESS:
            final_status = TASK_STOPPED if stop_requested else (
                TASK_COMPLETED if event.exit_code == 0 else TASK_FAILED
            )
            changes: dict[str, Any] = {
                "status": final_status,
                "time_spent_ms": elapsed_ms(task, now),
            }
            if final_status != TASK_STOPPED:
                changes["completed_at"] = now
            task = self._tasks.update(task_id, **changes)
            self._logs.log_status_change(
                task_id, TASK_IN_PROGRESS, final_status, f"exit code {event.exit_code}"
            )
            logger.info(
                f"[Scheduler] Task {task_id} {final_status} "
                f"(exit code: {event.exit_code}, time: {task.time_spent_ms}ms)"
            )
            if final_status == TASK_COMPLETED:
                await self._post_time_entry(task)

        await self._admit_safely()

    async def stop(self, task_id: int) -> OrchestratorTask:
        """Kill a running task and mark it stopped.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not in progress
        """
        task = self._tasks.get(task_id)
        if task.status != TASK_IN_PROGRESS:
            raise InvalidTransitionError(f"Task {task_id} is {task.status}, only in_progress tasks can be stopped")

        key = task_key(task_id)
        if self._supervisor.is_running(key):
            self._stop_requested.add(task_id)
            await self._supervisor.kill(key)
        task = self._tasks.get(task_id)
        if task.status == TASK_IN_PROGRESS:
            # No live process (e.g. it exited between the check and the kill)
            task = self._tasks.update(
                task_id, status=TASK_STOPPED, time_spent_ms=elapsed_ms(task)
            )
            self._logs.log_status_change(task_id, TASK_IN_PROGRESS, TASK_STOPPED, "stopped by user")
            await self._admit_safely()
        logger.info(f"[Scheduler] Task {task_id} stopped")
        return task

    async def restart(self, task_id: int) -> OrchestratorTask:
        """Queue a stopped or failed task again.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not stopped or failed
        """
        task = self._tasks.get(task_id)
        if task.status not in RESTARTABLE_STATUSES:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status}, only stopped or failed tasks can be restarted"
            )
        self._tasks.update(task_id, status=TASK_QUEUED, completed_at=None)
        self._logs.log_status_change(task_id, task.status, TASK_QUEUED, "restarted by user")
        logger.info(f"[Scheduler] Task {task_id} re-queued")
        await self.admit()
        return self._tasks.get(task_id)

    async def complete(self, task_id: int) -> OrchestratorTask:
        """Mark a task completed by hand, killing its process if one is live.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is already completed
        """
        task = self._tasks.get(task_id)
        if task.status == TASK_COMPLETED:
            raise InvalidTransitionError(f"Task {task_id} is already completed")

        previous_status = task.status
        now = utc_now()
        task = self._tasks.update(
            task_id,
            status=TASK_COMPLETED,
            completed_at=now,
            time_spent_ms=elapsed_ms(task, now),
        )
        self._logs.log_status_change(task_id, previous_status, TASK_COMPLETED, "completed by user")
        await self._supervisor.kill(task_key(task_id))
        await self._post_time_entry(task)
        await self._admit_safely()
        logger.info(f"[Scheduler] Task {task_id} completed by user")
        return self._tasks.get(task_id)

    async def delete(self, task_id: int) -> dict[str, Any]:
        """Delete a finished task with its worktree, logs and run history.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the task is queued or in progress
        """
        task = self._tasks.get(task_id)
        if task.status not in DELETABLE_STATUSES:
            raise InvalidTransitionError(
                f"Task {task_id} is {task.status}; stop it before deleting"
            )
        if task.worktree_path:
            try:
                await self._worktrees.remove_worktree(task.worktree_path)
            except OSError as e:
                raise ProcessError(f"Failed to remove worktree {task.worktree_path}: {e}") from e

        self._logs.delete_for_task(task_id)
        self._tasks.delete(task_id)
        self._gateway.forget(task_key(task_id))
        logger.info(f"[Scheduler] Task {task_id} deleted")
        return {"success": True, "message": f"Task {task_id} deleted"}

    def reconcile_on_startup(self) -> list[int]:
        """Mark tasks that were running when the server died as stopped."""
        orphaned = []
        for task in self._tasks.list_tasks(TASK_IN_PROGRESS):
            assert task.id is not None
            self._tasks.update(task.id, status=TASK_STOPPED, time_spent_ms=elapsed_ms(task))
            self._tasks.close_runs(task.id, None)
            self._logs.log_status_change(
                task.id, TASK_IN_PROGRESS, TASK_STOPPED, "process lost on server restart"
            )
            orphaned.append(task.id)
        if orphaned:
            logger.warning(f"[Scheduler] Marked {len(orphaned)} orphaned task(s) as stopped: {orphaned}")
        return orphaned

    def _import(self, tracker_task: TrackerTask, list_id: str) -> OrchestratorTask:
        task = self._tasks.create(
            OrchestratorTask(
                clickup_task_id=tracker_task.id,
                clickup_list_id=tracker_task.list.id or list_id,
                name=tracker_task.name,
                description=tracker_task.description,
                priority=priority_to_int(tracker_task.priority),
                status=TASK_QUEUED,
            )
        )
        assert task.id is not None
        self._logs.append(task.id, EVENT_SYSTEM, "Task created from ClickUp")
        logger.info(f"[Scheduler] Queued {tracker_task.name} ({tracker_task.id}) as task {task.id}")
        return task

    async def _start_task(self, task: OrchestratorTask) -> None:
        assert task.id is not None
        task_id = task.id
        task = self._tasks.update(task_id, status=TASK_IN_PROGRESS, started_at=utc_now())
        self._logs.log_status_change(task_id, TASK_QUEUED, TASK_IN_PROGRESS)
        logger.info(f"[Scheduler] Starting task {task_id}: {task.name}")

        await self._move_in_clickup(task)
        if self._start_cancelled(task_id):
            return

        try:
            worktree_path = await self._ensure_worktree(task)
            if self._start_cancelled(task_id):
                return
            task = self._tasks.get(task_id)
            agent = self._settings.get_value("agent_type") or "claude"
            prompt = build_task_prompt(
                task.name, task.description, self._settings.get_value("agent_prompt")
            )
            argv = self._build_command(task, prompt, agent)
            handle = await self._supervisor.spawn(task_key(task_id), argv, worktree_path)
        except (ValidationError, ProcessError, ConflictError, NotFoundError) as e:
            if not self._start_cancelled(task_id):
                self._fail_start(task_id, e.message)
            return

        if self._start_cancelled(task_id):
            # Stopped during spawn; no run is opened so the exit leaves the status alone.
            self._background(self._supervisor.kill(task_key(task_id)), f"kill-{task_id}")
            return
        self._tasks.open_run(task_id, handle.pid)
        self._logs.append(task_id, EVENT_SYSTEM, f"Agent spawned (PID: {handle.pid})")

    def _start_cancelled(self, task_id: int) -> bool:
        task = self._tasks.find(task_id)
        if task is not None and task.status == TASK_IN_PROGRESS:
            return False
        status = task.status if task else "deleted"
        logger.info(f"[Scheduler] Task {task_id} became {status} while starting, not running it")
        return True

    def _background(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        # Not awaited: callers may hold the admission lock, which handle_exit takes.
        job = asyncio.create_task(coro, name=name)
        self._jobs.add(job)
        job.add_done_callback(self._jobs.discard)

    async def _ensure_worktree(self, task: OrchestratorTask) -> str:
        assert task.id is not None
        if task.worktree_path and Path(task.worktree_path).is_dir():
            return task.worktree_path

        repo_path = self._settings.get_value("target_repo_path")
        if not repo_path:
            raise ValidationError("No target repository configured")
        dev_branch = self._settings.get_value("dev_branch") or "dev"
        slug = slugify(task.name)
        branch = task.branch_name or f"task/{task.clickup_task_id}-{slug}"
        worktree_path = task.worktree_path or str(Path(repo_path) / "worktrees" / f"task-{task.id}-{slug}")

        try:
            await self._worktrees.fetch(repo_path)
        except ExternalServiceError as e:
            logger.warning(f"[Scheduler] Fetch before worktree failed for task {task.id}: {e.message}")

        path = await self._worktrees.create_worktree(repo_path, worktree_path, branch, dev_branch)
        self._tasks.update(task.id, worktree_path=path, branch_name=branch)
        self._logs.append(task.id, EVENT_SYSTEM, f"Worktree created at {path} (branch {branch})")
        return path

    async def _move_in_clickup(self, task: OrchestratorTask) -> None:
        assert task.id is not None
        target_status = self._settings.get_value("target_status") or "In Development"
        try:
            await self._clickup.update_task_status(task.clickup_task_id, target_status)
        except ExternalServiceError as e:
            logger.warning(f"[Scheduler] Could not move {task.clickup_task_id} to '{target_status}': {e.message}")
            self._logs.append(task.id, EVENT_SYSTEM, f"ClickUp status update failed: {e.message}")
            return
        self._logs.append(task.id, EVENT_CLICKUP, f"ClickUp status updated to {target_status}")

    async def _post_time_entry(self, task: OrchestratorTask) -> None:
        if task.started_at is None or task.id is None:
            return
        end = task.completed_at or utc_now()
        start_ms = int(as_utc(task.started_at).timestamp() * 1000)
        end_ms = int(as_utc(end).timestamp() * 1000)
        try:
            await self._clickup.add_time_entry(
                task.clickup_task_id, start_ms, end_ms, max(end_ms - start_ms, 0)
            )
        except ExternalServiceError as e:
            logger.warning(f"[Scheduler] Time entry for task {task.id} failed: {e.message}")
            return
        self._logs.append(task.id, EVENT_CLICKUP, f"Time entry added ({end_ms - start_ms}ms)")

    def _fail_start(self, task_id: int, reason: str) -> None:
        logger.error(f"[Scheduler] Task {task_id} failed to start: {reason}")
        self._tasks.update(task_id, status=TASK_FAILED, completed_at=utc_now())
        self._tasks.close_runs(task_id, None)
        self._logs.log_status_change(task_id, TASK_IN_PROGRESS, TASK_FAILED, reason)

    async def _admit_safely(self) -> None:
        try:
            await self.admit()
        except Exception as e:
            logger.error(f"[Scheduler] Admission failed: {e}", exc_info=True)

    def _agent_command(self, task: OrchestratorTask, prompt: str, agent: str) -> list[str]:
        return build_agent_command(agent, prompt, use_pty=self._config.use_pty)
