"""Dependency injection factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine

from clickup_orchestrator.clickup.client import ClickUpClient
from clickup_orchestrator.config import Config
from clickup_orchestrator.errors import register_error_handlers
from clickup_orchestrator.gateway.stream_gateway import StreamGateway
from clickup_orchestrator.git.worktree_manager import WorktreeManager
from clickup_orchestrator.process.supervisor import ProcessSupervisor
from clickup_orchestrator.scheduler.scheduler import CommandBuilder, Scheduler
from clickup_orchestrator.sessions.refinements import RefinementSessions, SessionCommandBuilder
from clickup_orchestrator.sessions.voice import VoiceAssistant
from clickup_orchestrator.storage.database import create_db_engine, init_schema
from clickup_orchestrator.storage.log_store import LogStore, OutputLogWriter
from clickup_orchestrator.storage.settings_store import SettingsStore
from clickup_orchestrator.storage.task_repository import TaskRepository

logger = logging.getLogger(__name__)

# Global config instance for dependency injection
_config: Config | None = None

# Overridable in tests: agent command lines and the ClickUp transport
_task_command_builder: CommandBuilder | None = None
_session_command_builder: SessionCommandBuilder | None = None
_voice_command_builder: SessionCommandBuilder | None = None
_clickup_transport: httpx.AsyncBaseTransport | None = None

# Application components, created on first use and dropped on shutdown
_engine: Engine | None = None
_supervisor: ProcessSupervisor | None = None
_gateway: StreamGateway | None = None
_log_store: LogStore | None = None
_log_writer: OutputLogWriter | None = None
_settings_store: SettingsStore | None = None
_task_repository: TaskRepository | None = None
_worktree_manager: WorktreeManager | None = None
_clickup_client: ClickUpClient | None = None
_scheduler: Scheduler | None = None
_refinement_sessions: RefinementSessions | None = None
_voice_assistant: VoiceAssistant | None = None


def get_config() -> Config:
    """Get or create Config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = create_db_engine(get_config().database_path)
    return _engine


def get_gateway() -> StreamGateway:
    """Get or create StreamGateway singleton."""
    global _gateway
    if _gateway is None:
        _gateway = StreamGateway(get_config().replay_buffer_lines)
    return _gateway


def get_log_store() -> LogStore:
    global _log_store
    if _log_store is None:
        _log_store = LogStore(get_engine())
    return _log_store


def get_log_writer() -> OutputLogWriter:
    global _log_writer
    if _log_writer is None:
        _log_writer = OutputLogWriter(get_log_store())
    return _log_writer


def get_supervisor() -> ProcessSupervisor:
    """Get or create the ProcessSupervisor, wired to the gateway and log writer."""
    global _supervisor
    if _supervisor is None:
        _supervisor = ProcessSupervisor(get_config().kill_grace_seconds)
        _supervisor.add_listener(get_log_writer())
        _supervisor.add_listener(get_gateway())
    return _supervisor


def get_settings_store() -> SettingsStore:
    global _settings_store
    if _settings_store is None:
        _settings_store = SettingsStore(get_engine())
    return _settings_store


def get_task_repository() -> TaskRepository:
    global _task_repository
    if _task_repository is None:
        _task_repository = TaskRepository(get_engine())
    return _task_repository


def get_worktree_manager() -> WorktreeManager:
    global _worktree_manager
    if _worktree_manager is None:
        _worktree_manager = WorktreeManager()
    return _worktree_manager


def get_clickup_client() -> ClickUpClient:
    global _clickup_client
    if _clickup_client is None:
        _clickup_client = ClickUpClient(get_config(), transport=_clickup_transport)
    return _clickup_client


def get_scheduler() -> Scheduler:
    """Get or create Scheduler singleton."""
    global _scheduler
    if _scheduler is None:
        _scheduler = Scheduler(
            config=get_config(),
            settings=get_settings_store(),
            tasks=get_task_repository(),
            logs=get_log_store(),
            log_writer=get_log_writer(),
            supervisor=get_supervisor(),
            worktrees=get_worktree_manager(),
            clickup=get_clickup_client(),
            gateway=get_gateway(),
            build_command=_task_command_builder,
        )
    return _scheduler


def get_refinement_sessions() -> RefinementSessions:
    """Get or create RefinementSessions singleton."""
    global _refinement_sessions
    if _refinement_sessions is None:
        _refinement_sessions = RefinementSessions(
            supervisor=get_supervisor(),
            settings=get_settings_store(),
            use_pty=get_config().use_pty,
            build_command=_session_command_builder,
        )
    return _refinement_sessions


def get_voice_assistant() -> VoiceAssistant:
    global _voice_assistant
    if _voice_assistant is None:
        _voice_assistant = VoiceAssistant(
            supervisor=get_supervisor(),
            settings=get_settings_store(),
            gateway=get_gateway(),
            use_pty=get_config().use_pty,
            build_command=_voice_command_builder,
        )
    return _voice_assistant


def reset_components() -> None:
    """Drop every component so the next app start rebuilds them on its own loop."""
    global _engine, _supervisor, _gateway, _log_store, _log_writer, _settings_store
    global _task_repository, _worktree_manager, _clickup_client, _scheduler, _refinement_sessions
    global _voice_assistant
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _supervisor = None
    _gateway = None
    _log_store = None
    _log_writer = None
    _settings_store = None
    _task_repository = None
    _worktree_manager = None
    _clickup_client = None
    _scheduler = None
    _refinement_sessions = None
    _voice_assistant = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle - startup and shutdown."""
    config = get_config()
    logger.info(f"[Lifespan] Opening database {config.database_path}")
    init_schema(get_engine())
    get_settings_store().seed_defaults()

    scheduler = get_scheduler()
    get_refinement_sessions()
    get_voice_assistant()
    scheduler.reconcile_on_startup()

    log_writer = get_log_writer()
    log_writer.start()
    if config.scheduler_enabled:
        scheduler.start()
    else:
        logger.info("[Lifespan] Scheduler disabled, not polling ClickUp")
    try:
        yield
    finally:
        logger.info("[Lifespan] Shutting down...")
        await scheduler.shutdown()
        await get_supervisor().shutdown()
        await log_writer.stop()
        await get_clickup_client().aclose()
        reset_components()


def create_app() -> FastAPI:
    """Create FastAPI application (composition root)."""
    from clickup_orchestrator.api.clickup import router as clickup_router
    from clickup_orchestrator.api.files import router as files_router
    from clickup_orchestrator.api.git import router as git_router
    from clickup_orchestrator.api.settings import router as settings_router
    from clickup_orchestrator.api.setup import router as setup_router
    from clickup_orchestrator.api.tasks import router as tasks_router
    from clickup_orchestrator.api.ui_refinements import router as ui_refinements_router
    from clickup_orchestrator.api.voice import router as voice_router
    from clickup_orchestrator.api.websocket import router as ws_router

    app = FastAPI(
        title="ClickUp Orchestrator",
        description="Run coding agents on ClickUp tasks in isolated git worktrees",
        version="0.1.0",
        lifespan=lifespan,
    )
    register_error_handlers(app)
    # The dashboard is served from its own dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Mount API routes
    app.include_router(tasks_router, prefix="/api")
    app.include_router(settings_router, prefix="/api")
    app.include_router(git_router, prefix="/api")
    app.include_router(files_router, prefix="/api")
    app.include_router(clickup_router, prefix="/api")
    app.include_router(setup_router, prefix="/api")
    app.include_router(ui_refinements_router, prefix="/api")
    app.include_router(voice_router, prefix="/api")
    app.include_router(ws_router)  # WebSocket at /ws/...

    return app
