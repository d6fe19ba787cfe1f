"""UI-refinement chat sessions: one agent at a time, later messages queue."""

import logging
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from clickup_orchestrator.errors import (
    AlreadyRunningError,
    NotFoundError,
    OrchestratorError,
    ValidationError,
)
from clickup_orchestrator.process.agents import (
    AGENT_TYPES,
    build_agent_command,
    build_refinement_prompt,
)
from clickup_orchestrator.process.supervisor import (
    ProcessExited,
    ProcessSupervisor,
    parse_session_key,
    session_key,
)
from clickup_orchestrator.storage.models import utc_now
from clickup_orchestrator.storage.settings_store import SettingsStore

logger = logging.getLogger(__name__)

# (prompt, agent type) -> argv
SessionCommandBuilder = Callable[[str, str], list[str]]


@dataclass
class QueuedMessage:
    id: str
    message: str
    agent: str
    element_context: dict[str, Any] | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class RefinementSession:
    id: str
    branch_name: str
    created_at: datetime = field(default_factory=utc_now)
    worktree_path: str | None = None
    queue: deque[QueuedMessage] = field(default_factory=deque)
    current_message: QueuedMessage | None = None


class RefinementSessions:
    """In-memory registry of refinement sessions.

    A message sent to an idle session starts an agent right away; while an
    agent is attached, messages wait in the session's queue and the next one
    is started when the running agent exits.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        settings: SettingsStore,
        use_pty: bool = True,
        build_command: SessionCommandBuilder | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._settings = settings
        self._use_pty = use_pty
        self._build_command = build_command or self._agent_command
        self._sessions: dict[str, RefinementSession] = {}
        supervisor.add_exit_handler(self.handle_exit)

    def create(self, branch_name: str) -> RefinementSession:
        session = RefinementSession(id=str(uuid.uuid4()), branch_name=branch_name)
        self._sessions[session.id] = session
        logger.info(f"[Sessions] Created session {session.id} on branch {branch_name}")
        return session

    def get(self, session_id: str) -> RefinementSession:
        """Return the session.

        Raises:
            NotFoundError: If the session does not exist
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def is_busy(self, session_id: str) -> bool:
        session = self.get(session_id)
        return session.current_message is not None or self._supervisor.is_running(
            session_key(session_id)
        )

    async def chat(
        self,
        session_id: str,
        message: str,
        agent: str,
        element_context: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Run the message now, or queue it behind the running agent.

        Args:
            session_id: Target session
            message: User instruction for the agent
            agent: Agent type (claude, codex or gemini)
            element_context: Metadata of the element picked in the preview, if any

        Returns:
            {success, queued, queue_position?}; the position is 1-based

        Raises:
            NotFoundError: If the session does not exist
            ValidationError: If the agent is unknown or no working directory is configured
            ProcessError: If the agent cannot be started
        """
        session = self.get(session_id)
        if agent not in AGENT_TYPES:
            raise ValidationError(f"Unknown agent type: {agent}")

        queued = QueuedMessage(
            id=str(uuid.uuid4()), message=message, agent=agent, element_context=element_context
        )
        if self.is_busy(session_id):
            session.queue.append(queued)
            position = len(session.queue)
            logger.info(f"[Sessions] Queued message {queued.id} for {session_id} at position {position}")
            return {"success": True, "queued": True, "queue_position": position, "message_id": queued.id}

        await self._run(session, queued)
        return {"success": True, "queued": False, "queue_position": None, "message_id": queued.id}

    def queue_status(self, session_id: str) -> dict[str, Any]:
        session = self.get(session_id)
        current = session.current_message.message if session.current_message else None
        return {"pending_messages": len(session.queue), "current_task": current}

    def cancel(self, session_id: str, message_id: str) -> bool:
        """Drop a queued message that has not started yet."""
        session = self.get(session_id)
        for queued in session.queue:
            if queued.id == message_id:
                session.queue.remove(queued)
                logger.info(f"[Sessions] Cancelled message {message_id} in {session_id}")
                return True
        return False

    async def spawn_direct(
        self, session_id: str, prompt: str, agent: str, worktree_path: str | None = None
    ) -> int:
        """Start an agent for a websocket spawn request.

        Returns:
            PID of the agent process

        Raises:
            AlreadyRunningError: If the session already has an agent attached
        """
        session = self.get(session_id)
        if self.is_busy(session_id):
            raise AlreadyRunningError(f"Session {session_id} already has an agent running")
        if worktree_path:
            session.worktree_path = worktree_path
        queued = QueuedMessage(id=str(uuid.uuid4()), message=prompt, agent=agent)
        return await self._run(session, queued)

    async def handle_exit(self, event: ProcessExited) -> None:
        """Start the next queued message once the session's agent has exited."""
        session_id = parse_session_key(event.key)
        if session_id is None:
            return
        session = self._sessions.get(session_id)
        if session is None:
            return

        session.current_message = None
        while session.queue:
            queued = session.queue.popleft()
            try:
                await self._run(session, queued)
                return
            except OrchestratorError as e:
                logger.warning(f"[Sessions] Could not start queued message {queued.id} for {session_id}: {e.message}")

    async def _run(self, session: RefinementSession, queued: QueuedMessage) -> int:
        cwd = self._working_directory(session)
        prompt = build_refinement_prompt(queued.message, queued.element_context)
        argv = self._build_command(prompt, queued.agent)
        session.current_message = queued
        try:
            handle = await self._supervisor.spawn(session_key(session.id), argv, cwd)
        except OrchestratorError:
            session.current_message = None
            raise
        logger.info(f"[Sessions] Started {queued.agent} for {session.id} (PID {handle.pid})")
        return handle.pid

    def _working_directory(self, session: RefinementSession) -> str:
        path = session.worktree_path or self._settings.get_value("target_repo_path")
        if not path:
            raise ValidationError("No working directory: set a target repository in settings")
        if not Path(path).is_dir():
            raise ValidationError(f"Working directory does not exist: {path}")
        return path

    def _agent_command(self, prompt: str, agent: str) -> list[str]:
        return build_agent_command(agent, prompt, use_pty=self._use_pty)
