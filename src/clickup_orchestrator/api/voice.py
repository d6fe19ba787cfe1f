"""Voice assistant endpoints: screenshot storage and the analyst agent."""

from typing import Any

from fastapi import APIRouter

from clickup_orchestrator.api.models import (
    GenerateTasksRequest,
    GenerateTasksResponse,
    SaveScreenshotRequest,
    SaveScreenshotResponse,
)
from clickup_orchestrator.factory import get_voice_assistant

router = APIRouter()


@router.post("/voice/screenshot", response_model=SaveScreenshotResponse)
async def save_screenshot(request: SaveScreenshotRequest) -> SaveScreenshotResponse:
    """Store a base64 screenshot under the repository's temp_imgs folder.

    Raises:
        ValidationError: No repository configured, bad filename or bad image data (400)
    """
    filepath, filename = get_voice_assistant().save_screenshot(request.image_data, request.filename)
    return SaveScreenshotResponse(filepath=filepath, filename=filename)


@router.post("/voice/generate-tasks", response_model=GenerateTasksResponse)
async def generate_tasks(request: GenerateTasksRequest) -> GenerateTasksResponse:
    """Spawn the analyst agent on the transcript and screenshots.

    Raises:
        ValidationError: Unknown agent or no repository configured (400)
        ProcessError: Agent missing from PATH or failed to start (500)
    """
    _, pid = await get_voice_assistant().generate_tasks(
        request.transcript, request.screenshots, request.agent
    )
    return GenerateTasksResponse(
        success=True,
        message=f"{request.agent} agent spawned successfully (PID: {pid})",
        session_id=str(pid),
    )


@router.delete("/voice/screenshots")
async def clear_screenshots() -> dict[str, Any]:
    count = get_voice_assistant().clear_screenshots()
    if count is None:
        return {"success": True, "message": "temp_imgs folder does not exist"}
    return {"success": True, "message": f"Cleared {count} screenshots"}
