"""First-run setup endpoints."""

import logging
from pathlib import Path
from typing import Any

from fastapi import APIRouter

from clickup_orchestrator.api.models import ApiKeyRequest
from clickup_orchestrator.errors import ExternalServiceError
from clickup_orchestrator.factory import get_clickup_client, get_config, get_settings_store

logger = logging.getLogger(__name__)

router = APIRouter()

API_KEY_VARIABLE = "CLICKUP_API_KEY"


def upsert_env_value(env_path: Path, name: str, value: str) -> None:
    """Set NAME=value in an env file, replacing an existing assignment."""
    lines = env_path.read_text(encoding="utf-8").splitlines() if env_path.exists() else []
    assignment = f"{name}={value}"
    replaced = False
    for i, line in enumerate(lines):
        if line.split("=", 1)[0].strip() == name:
            lines[i] = assignment
            replaced = True
    if not replaced:
        lines.append(assignment)
    env_path.parent.mkdir(parents=True, exist_ok=True)
    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


async def _api_key_valid() -> bool:
    try:
        await get_clickup_client().get_workspaces()
    except ExternalServiceError as e:
        logger.info(f"[Setup] Configured API key rejected: {e.message}")
        return False
    return True


@router.get("/setup/status")
async def setup_status() -> dict[str, Any]:
    settings = get_settings_store()
    has_api_key = bool(get_config().clickup_api_key)
    api_key_valid = has_api_key and await _api_key_valid()
    has_list_selected = settings.get_value("clickup_list_id") is not None
    has_repo_configured = settings.get_value("target_repo_path") is not None
    return {
        "is_complete": has_api_key and api_key_valid and has_list_selected,
        "has_api_key": has_api_key,
        "has_list_selected": has_list_selected,
        "has_repo_configured": has_repo_configured,
        "api_key_valid": api_key_valid,
    }


@router.post("/setup/api-key")
async def save_api_key(request: ApiKeyRequest) -> dict[str, Any]:
    """Validate the key against ClickUp, persist it and use it immediately."""
    api_key = request.api_key.strip()
    if not api_key:
        return {"success": False, "valid": False, "error": "API key cannot be empty"}

    try:
        teams = await get_clickup_client().get_workspaces(api_key=api_key)
    except ExternalServiceError as e:
        return {"success": False, "valid": False, "error": f"Invalid API key: {e.message}"}
    if not teams:
        return {"success": False, "valid": False, "error": "API key is valid but no workspaces found"}

    config = get_config()
    try:
        upsert_env_value(config.env_file_path, API_KEY_VARIABLE, api_key)
    except OSError as e:
        return {"success": False, "valid": True, "error": f"Failed to save .env file: {e}"}

    config.clickup_api_key = api_key
    logger.info(f"[Setup] Saved ClickUp API key to {config.env_file_path}")
    return {"success": True, "valid": True}


@router.post("/setup/complete")
async def complete_setup() -> dict[str, Any]:
    has_api_key = bool(get_config().clickup_api_key)
    has_list_selected = get_settings_store().get_value("clickup_list_id") is not None
    if not has_api_key or not has_list_selected:
        return {
            "success": False,
            "error": "Setup is not complete. Please configure API key and select a list.",
        }
    return {"success": True}
