"""Command lines and prompts for the supported coding agents."""

import shlex
import shutil
import sys
from typing import Any

from clickup_orchestrator.errors import ProcessError, ValidationError

AGENT_TYPES = ("claude", "codex", "gemini")


def build_agent_command(agent: str, prompt: str, use_pty: bool = True) -> list[str]:
    """Build the argv that runs the agent non-interactively on the prompt.

    Raises:
        ValidationError: If the agent type is unknown
        ProcessError: If the agent executable is not on PATH
    """
    if agent not in AGENT_TYPES:
        raise ValidationError(f"Unknown agent type: {agent}")
    if shutil.which(agent) is None:
        raise ProcessError(
            f"The '{agent}' command is not found in PATH. "
            f"Please install the {agent} CLI and ensure it's in your PATH."
        )

    if agent == "codex":
        return ["codex", "exec", prompt, "--full-auto"]
    if agent == "gemini":
        return ["gemini", prompt, "-y"]

    command = ["claude", "-p", prompt, "--dangerously-skip-permissions"]
    if use_pty and shutil.which("script") is not None:
        return wrap_in_pty(command)
    return command


def wrap_in_pty(command: list[str]) -> list[str]:
    """Run the command under script(1) so it sees a terminal."""
    if sys.platform == "darwin":
        return ["script", "-q", "/dev/null", *command]
    return ["script", "-q", "-e", "-c", shlex.join(command), "/dev/null"]


def build_task_prompt(name: str, description: str | None, agent_prompt: str | None) -> str:
    """Combine the task description with the global agent instructions."""
    task_description = description.strip() if description and description.strip() else ""
    if not task_description:
        task_description = f"Complete task: {name}"
    if agent_prompt and agent_prompt.strip():
        return f"## Task\n{task_description}\n\n## Instructions\n{agent_prompt.strip()}"
    return task_description


def build_refinement_prompt(message: str, element_context: dict[str, Any] | None) -> str:
    """Prompt for a UI-refinement chat message, with the picked element if any."""
    if not element_context:
        return message

    lines = [message, "", "## Selected element"]
    tag = element_context.get("tagName")
    if tag:
        lines.append(f"- Tag: <{tag}>")
    if element_context.get("id"):
        lines.append(f"- Id: {element_context['id']}")
    classes = element_context.get("classList") or []
    if classes:
        lines.append(f"- Classes: {' '.join(classes)}")
    if element_context.get("cssSelector"):
        lines.append(f"- CSS selector: {element_context['cssSelector']}")
    if element_context.get("xpath"):
        lines.append(f"- XPath: {element_context['xpath']}")
    text = element_context.get("textContent")
    if text:
        lines.append(f"- Text: {text}")
    return "\n".join(lines)


DEFAULT_BA_PROMPT = (
    "You are a Business Analyst. Analyze the user's requirements from their voice recording "
    "and any screenshots provided. Create clear, actionable task descriptions that a "
    "developer can understand and implement. Focus on breaking down the requirements into "
    "discrete, well-defined tasks."
)


def build_voice_prompt(transcript: str, screenshots: list[str], ba_prompt: str | None) -> str:
    """Analyst prompt: instructions, the transcript, then @-references to screenshots."""
    instructions = ba_prompt.strip() if ba_prompt and ba_prompt.strip() else DEFAULT_BA_PROMPT
    parts = [
        f"## Business Analyst Instructions\n{instructions}\n",
        f"## User's Voice Transcription\n{transcript}\n",
    ]
    if screenshots:
        references = "\n".join(f"@{path}" for path in screenshots)
        parts.append(
            "## Screenshots for Context\n"
            "The following screenshots were captured during the recording. "
            f"Review them for visual context:\n\n{references}\n"
        )
    parts.append(
        "## Your Task\n"
        "Based on the transcription and screenshots above, create a summary of what the user "
        "wants to accomplish and suggest how to break this down into implementable tasks."
    )
    return "\n".join(parts)
