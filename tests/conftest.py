"""Test fixtures for the ClickUp orchestrator."""

import asyncio
import shutil
import subprocess
import sys
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy.engine import Engine

from clickup_orchestrator.clickup.client import TaskListRef, TaskPriority, TrackerStatus, TrackerTask
from clickup_orchestrator.config import Config
from clickup_orchestrator.errors import ExternalServiceError
from clickup_orchestrator.gateway.stream_gateway import StreamGateway
from clickup_orchestrator.git.worktree_manager import WorktreeManager
from clickup_orchestrator.process.supervisor import ProcessSupervisor
from clickup_orchestrator.scheduler.scheduler import CommandBuilder, Scheduler
from clickup_orchestrator.storage.database import create_db_engine, init_schema
from clickup_orchestrator.storage.log_store import LogStore, OutputLogWriter
from clickup_orchestrator.storage.models import OrchestratorTask
from clickup_orchestrator.storage.settings_store import SettingsStore
from clickup_orchestrator.storage.task_repository import TaskRepository

SLEEP_FOREVER = "import time; time.sleep(60)"


def python_agent(script: str) -> CommandBuilder:
    """Command builder that runs a Python snippet instead of a coding agent."""

    def build(task: OrchestratorTask, prompt: str, agent: str) -> list[str]:
        return [sys.executable, "-c", script]

    return build


def tracker_task(task_id: str, name: str, priority: str | None = None) -> TrackerTask:
    return TrackerTask(
        id=task_id,
        name=name,
        description=f"Implement {name}",
        status=TrackerStatus(status="ready for dev"),
        priority=TaskPriority(priority=priority) if priority else None,
        list=TaskListRef(id="L1"),
    )


@dataclass
class StubClickUp:
    """Records calls made by the scheduler; no network."""

    tasks: list[TrackerTask] = field(default_factory=list)
    fail_get_tasks: bool = False
    fail_update_status: bool = False
    get_tasks_calls: list[tuple[str, str | None]] = field(default_factory=list)
    status_updates: list[tuple[str, str]] = field(default_factory=list)
    time_entries: list[tuple[str, int, int, int]] = field(default_factory=list)

    async def get_tasks(self, list_id: str, status: str | None = None) -> list[TrackerTask]:
        self.get_tasks_calls.append((list_id, status))
        if self.fail_get_tasks:
            raise ExternalServiceError("503: Service Unavailable")
        return list(self.tasks)

    async def update_task_status(self, task_id: str, status: str) -> None:
        if self.fail_update_status:
            raise ExternalServiceError("401: Unauthorized")
        self.status_updates.append((task_id, status))

    async def add_time_entry(self, task_id: str, start_ms: int, end_ms: int, duration_ms: int) -> None:
        self.time_entries.append((task_id, start_ms, end_ms, duration_ms))


@dataclass
class Components:
    settings: SettingsStore
    tasks: TaskRepository
    logs: LogStore
    log_writer: OutputLogWriter
    supervisor: ProcessSupervisor
    gateway: StreamGateway
    worktrees: WorktreeManager
    clickup: StubClickUp
    scheduler: Scheduler

    async def close(self) -> None:
        await self.scheduler.shutdown()
        await self.supervisor.shutdown()


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    return Config(
        database_path=tmp_path / "orchestrator.db",
        env_file_path=tmp_path / ".env",
        scheduler_enabled=False,
        kill_grace_seconds=1.0,
        use_pty=False,
        clickup_api_key="test-key",
    )


@pytest.fixture
def engine(test_config: Config) -> Iterator[Engine]:
    engine = create_db_engine(test_config.database_path)
    init_schema(engine)
    yield engine
    engine.dispose()


def _git(repo: Path, *args: str) -> None:
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=Dev", *args],
        cwd=repo,
        check=True,
        capture_output=True,
    )


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """Repository with one commit on main and a dev branch."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = tmp_path / "repo"
    repo.mkdir()
    _git(repo, "init")
    _git(repo, "checkout", "-b", "main")
    (repo / "README.md").write_text("# Demo\n")
    _git(repo, "add", "README.md")
    _git(repo, "commit", "-m", "Initial commit")
    _git(repo, "branch", "dev")
    return repo


@pytest.fixture
def make_components(
    engine: Engine, test_config: Config
) -> Callable[..., Components]:
    """Build the scheduler stack on the test database with a stub ClickUp."""

    def make(build_command: CommandBuilder | None = None, **settings: Any) -> Components:
        settings_store = SettingsStore(engine)
        settings_store.seed_defaults()
        if settings:
            settings_store.update_all({k: str(v) for k, v in settings.items()})
        tasks = TaskRepository(engine)
        logs = LogStore(engine)
        log_writer = OutputLogWriter(logs)
        gateway = StreamGateway(test_config.replay_buffer_lines)
        supervisor = ProcessSupervisor(kill_grace_seconds=test_config.kill_grace_seconds)
        supervisor.add_listener(log_writer)
        supervisor.add_listener(gateway)
        worktrees = WorktreeManager()
        clickup = StubClickUp()
        scheduler = Scheduler(
            config=test_config,
            settings=settings_store,
            tasks=tasks,
            logs=logs,
            log_writer=log_writer,
            supervisor=supervisor,
            worktrees=worktrees,
            clickup=clickup,  # type: ignore[arg-type]
            gateway=gateway,
            build_command=build_command or python_agent(SLEEP_FOREVER),
        )
        return Components(
            settings=settings_store,
            tasks=tasks,
            logs=logs,
            log_writer=log_writer,
            supervisor=supervisor,
            gateway=gateway,
            worktrees=worktrees,
            clickup=clickup,
            scheduler=scheduler,
        )

    return make


async def wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    """Poll until predicate() is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)
