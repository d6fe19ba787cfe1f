"""Voice assistant: screenshots saved into the repository and a business-analyst agent run."""

import base64
import binascii
import logging
import uuid
from pathlib import Path

from clickup_orchestrator.errors import ValidationError
from clickup_orchestrator.gateway.stream_gateway import StreamGateway
from clickup_orchestrator.process.agents import AGENT_TYPES, build_agent_command, build_voice_prompt
from clickup_orchestrator.process.supervisor import (
    OutputLine,
    ProcessExited,
    ProcessSupervisor,
    SupervisorEvent,
    parse_voice_key,
    voice_key,
)
from clickup_orchestrator.sessions.refinements import SessionCommandBuilder
from clickup_orchestrator.storage.models import utc_now
from clickup_orchestrator.storage.settings_store import SettingsStore

logger = logging.getLogger(__name__)

SCREENSHOT_DIR = "temp_imgs"


class VoiceAssistant:
    """Turns a voice transcript plus screenshots into an analyst agent run.

    Screenshots live in ``<target repo>/temp_imgs`` so the agent can reference
    them relative to its working directory. Agent output is not persisted; it
    is logged and dropped from the gateway once the run exits.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        settings: SettingsStore,
        gateway: StreamGateway,
        use_pty: bool = True,
        build_command: SessionCommandBuilder | None = None,
    ) -> None:
        self._supervisor = supervisor
        self._settings = settings
        self._gateway = gateway
        self._use_pty = use_pty
        self._build_command = build_command or self._agent_command
        supervisor.add_listener(self._log_output)
        supervisor.add_exit_handler(self.handle_exit)

    def save_screenshot(self, image_data: str, filename: str | None = None) -> tuple[str, str]:
        """Decode a base64 image (raw or data URL) into the screenshot folder.

        Returns:
            Path relative to the repository root, and the file name

        Raises:
            ValidationError: If no repository is configured, the name is unsafe,
                the data is not base64 or the file cannot be written
        """
        folder = self._screenshot_dir()
        name = filename or f"screenshot_{int(utc_now().timestamp() * 1000)}.jpg"
        if Path(name).name != name or name in (".", ".."):
            raise ValidationError(f"Invalid screenshot filename: {name}")

        _, _, payload = image_data.rpartition(",")
        try:
            decoded = base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValidationError(f"Invalid base64 image data: {e}") from e

        try:
            folder.mkdir(parents=True, exist_ok=True)
            (folder / name).write_bytes(decoded)
        except OSError as e:
            raise ValidationError(f"Failed to write screenshot: {e}") from e

        logger.info(f"[Voice] Saved screenshot {folder / name} ({len(decoded)} bytes)")
        return f"{SCREENSHOT_DIR}/{name}", name

    async def generate_tasks(self, transcript: str, screenshots: list[str], agent: str) -> tuple[str, int]:
        """Start the analyst agent in the target repository.

        Returns:
            Run id and PID of the agent

        Raises:
            ValidationError: Unknown agent or no repository configured
            ProcessError: If the agent cannot be started
        """
        if agent not in AGENT_TYPES:
            raise ValidationError(f"Unknown agent type: {agent}")
        repo_path = self._repo_path()
        prompt = build_voice_prompt(transcript, screenshots, self._settings.get_value("ba_prompt"))
        argv = self._build_command(prompt, agent)

        run_id = uuid.uuid4().hex
        handle = await self._supervisor.spawn(voice_key(run_id), argv, repo_path)
        logger.info(f"[Voice] Spawned {agent} analyst (PID {handle.pid}) with {len(screenshots)} screenshot(s)")
        return run_id, handle.pid

    def clear_screenshots(self) -> int | None:
        """Delete every file in the screenshot folder.

        Returns:
            Number of files removed, or None if the folder does not exist
        """
        folder = self._screenshot_dir()
        if not folder.is_dir():
            return None
        count = 0
        for path in folder.iterdir():
            if path.is_file():
                try:
                    path.unlink()
                except OSError as e:
                    raise ValidationError(f"Failed to delete {path}: {e}") from e
                count += 1
        logger.info(f"[Voice] Cleared {count} screenshot(s)")
        return count

    async def handle_exit(self, event: ProcessExited) -> None:
        if parse_voice_key(event.key) is None:
            return
        self._gateway.forget(event.key)
        logger.info(f"[Voice] Analyst run {event.key} exited with code {event.exit_code}")

    def _log_output(self, event: SupervisorEvent) -> None:
        if isinstance(event, OutputLine) and parse_voice_key(event.key) is not None:
            log = logger.warning if event.is_stderr else logger.info
            log(f"[Voice] {event.line}")

    def _repo_path(self) -> str:
        repo_path = self._settings.get_value("target_repo_path")
        if not repo_path:
            raise ValidationError("Target repo path not configured")
        return repo_path

    def _screenshot_dir(self) -> Path:
        return Path(self._repo_path()) / SCREENSHOT_DIR

    def _agent_command(self, prompt: str, agent: str) -> list[str]:
        return build_agent_command(agent, prompt, use_pty=self._use_pty)
