"""Tests for the SQLite-backed stores."""

from pathlib import Path

import pytest
from sqlalchemy.engine import Engine

from clickup_orchestrator.errors import NotFoundError, ValidationError
from clickup_orchestrator.process.supervisor import OutputLine, session_key, task_key
from clickup_orchestrator.storage.database import CorruptStateError, create_db_engine, init_schema
from clickup_orchestrator.storage.log_store import LegacyLog, LogStore, OutputLogWriter, StructuredLogs
from clickup_orchestrator.storage.models import (
    EVENT_OUTPUT,
    EVENT_STATUS,
    EVENT_SYSTEM,
    TASK_COMPLETED,
    TASK_IN_PROGRESS,
    TASK_QUEUED,
    OrchestratorTask,
)
from clickup_orchestrator.storage.settings_store import DEFAULT_SETTINGS, SettingsStore
from clickup_orchestrator.storage.task_repository import TaskRepository


def _task(repo: TaskRepository, clickup_id: str, priority: int | None = None, **fields: object) -> OrchestratorTask:
    return repo.create(
        OrchestratorTask(clickup_task_id=clickup_id, name=f"Task {clickup_id}", priority=priority, **fields)
    )


def _next_id(repo: TaskRepository) -> int | None:
    task = repo.next_queued()
    return task.id if task else None


class TestSettingsStore:
    def test_seed_defaults_keeps_existing_values(self, engine: Engine) -> None:
        store = SettingsStore(engine)
        store.update_all({"dev_branch": "develop"})

        store.seed_defaults()

        values = store.get_all()
        assert values["dev_branch"] == "develop"
        assert values["trigger_status"] == DEFAULT_SETTINGS["trigger_status"]
        assert set(DEFAULT_SETTINGS) <= set(values)

    def test_update_accepts_unknown_keys(self, engine: Engine) -> None:
        store = SettingsStore(engine)

        values = store.update_all({"theme": "dark"})

        assert values == {"theme": "dark"}
        assert store.get("theme") == "dark"
        assert store.get("missing") is None

    def test_invalid_values_write_nothing(self, engine: Engine) -> None:
        store = SettingsStore(engine)
        store.seed_defaults()

        with pytest.raises(ValidationError, match="parallel_limit"):
            store.update_all({"dev_branch": "main", "parallel_limit": "0"})
        with pytest.raises(ValidationError, match="agent_type"):
            store.update_all({"agent_type": "cobol"})

        assert store.get("dev_branch") == "dev"
        assert store.parallel_limit() == 1

    def test_blank_values_read_as_unset(self, engine: Engine) -> None:
        store = SettingsStore(engine)
        store.update_all({"target_repo_path": "   "})

        assert store.get_value("target_repo_path") is None


class TestTaskRepository:
    def test_next_queued_orders_by_priority_then_arrival(self, engine: Engine) -> None:
        repo = TaskRepository(engine)
        unranked = _task(repo, "CU-1")
        normal_first = _task(repo, "CU-2", priority=3)
        _task(repo, "CU-3", priority=3)
        _task(repo, "CU-4", priority=1, status=TASK_IN_PROGRESS)

        assert _next_id(repo) == normal_first.id
        repo.update(normal_first.id or 0, status=TASK_COMPLETED)
        later = repo.find_by_clickup_id("CU-3")
        assert later is not None and _next_id(repo) == later.id
        repo.update(later.id or 0, status=TASK_COMPLETED)

        assert _next_id(repo) == unranked.id

    def test_count_by_status_lists_every_status(self, engine: Engine) -> None:
        repo = TaskRepository(engine)
        _task(repo, "CU-1")
        _task(repo, "CU-2", status=TASK_IN_PROGRESS)

        counts = repo.count_by_status()

        assert counts[TASK_QUEUED] == 1
        assert counts[TASK_IN_PROGRESS] == 1
        assert counts[TASK_COMPLETED] == 0
        assert repo.count_in_progress() == 1

    def test_list_filters_by_status(self, engine: Engine) -> None:
        repo = TaskRepository(engine)
        _task(repo, "CU-1")
        _task(repo, "CU-2", status=TASK_COMPLETED)

        assert [t.clickup_task_id for t in repo.list_tasks(TASK_COMPLETED)] == ["CU-2"]
        assert len(repo.list_tasks()) == 2

    def test_get_unknown_task(self, engine: Engine) -> None:
        repo = TaskRepository(engine)

        with pytest.raises(NotFoundError, match="Task 404 not found"):
            repo.get(404)
        assert repo.find(404) is None

    def test_runs_are_closed_and_deleted_with_task(self, engine: Engine) -> None:
        repo = TaskRepository(engine)
        task = _task(repo, "CU-1")
        assert task.id is not None
        repo.open_run(task.id, 1234)

        repo.close_runs(task.id, 0)

        (run,) = repo.list_runs(task.id)
        assert run.pid == 1234
        assert run.exit_code == 0
        assert run.ended_at is not None

        repo.delete(task.id)

        assert repo.find(task.id) is None
        assert repo.list_runs(task.id) == []


class TestLogStore:
    def test_entries_keep_write_order(self, engine: Engine) -> None:
        store = LogStore(engine)
        store.append(1, EVENT_SYSTEM, "first")
        store.log_status_change(1, TASK_QUEUED, TASK_IN_PROGRESS)
        store.log_status_change(1, TASK_IN_PROGRESS, TASK_COMPLETED, "exit code 0")
        store.append(2, EVENT_SYSTEM, "other task")

        result = store.read(1)

        assert isinstance(result, StructuredLogs)
        assert [(e.event_type, e.message) for e in result.entries] == [
            (EVENT_SYSTEM, "first"),
            (EVENT_STATUS, "Status changed: queued -> in_progress"),
            (EVENT_STATUS, "Status changed: in_progress -> completed (exit code 0)"),
        ]

    def test_legacy_blob_when_no_entries(self, engine: Engine) -> None:
        repo = TaskRepository(engine)
        task = _task(repo, "CU-1", output_log="old output\n")
        assert task.id is not None

        assert LogStore(engine).read(task.id) == LegacyLog("old output\n")

    def test_empty_log(self, engine: Engine) -> None:
        assert LogStore(engine).read(5) == StructuredLogs([])

    def test_delete_for_task(self, engine: Engine) -> None:
        store = LogStore(engine)
        store.append(1, EVENT_SYSTEM, "gone")
        store.append(2, EVENT_SYSTEM, "kept")

        store.delete_for_task(1)

        assert store.read(1) == StructuredLogs([])
        assert isinstance(store.read(2), StructuredLogs)


class TestOutputLogWriter:
    @pytest.mark.asyncio
    async def test_persists_task_output_only(self, engine: Engine) -> None:
        store = LogStore(engine)
        writer = OutputLogWriter(store)
        writer.start()

        writer(OutputLine(task_key(1), "line 1", False))
        writer(OutputLine(session_key("s1"), "session line", False))
        writer(OutputLine(task_key(1), "line 2", True))
        await writer.stop()

        result = store.read(1)
        assert isinstance(result, StructuredLogs)
        assert [(e.event_type, e.message, e.is_stderr) for e in result.entries] == [
            (EVENT_OUTPUT, "line 1", False),
            (EVENT_OUTPUT, "line 2", True),
        ]

    @pytest.mark.asyncio
    async def test_flush_without_background_task(self, engine: Engine) -> None:
        store = LogStore(engine)
        writer = OutputLogWriter(store)
        writer(OutputLine(task_key(3), "queued line", False))

        await writer.flush()

        result = store.read(3)
        assert isinstance(result, StructuredLogs)
        assert [e.message for e in result.entries] == ["queued line"]


def test_corrupt_database_refuses_to_start(tmp_path: Path) -> None:
    db_path = tmp_path / "broken.db"
    db_path.write_bytes(b"this is not a sqlite database" * 100)
    engine = create_db_engine(db_path)

    with pytest.raises(CorruptStateError):
        init_schema(engine)
    engine.dispose()
