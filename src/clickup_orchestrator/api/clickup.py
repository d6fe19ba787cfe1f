"""ClickUp hierarchy endpoints used by the settings screen.

Errors are returned as 200 with {"error": ...} in the body.
"""

import logging
from collections.abc import Awaitable, Sequence
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel

from clickup_orchestrator.errors import ExternalServiceError
from clickup_orchestrator.factory import get_clickup_client

logger = logging.getLogger(__name__)

router = APIRouter()


async def _listing(call: Awaitable[Sequence[BaseModel]]) -> list[dict[str, Any]] | dict[str, str]:
    try:
        items = await call
    except ExternalServiceError as e:
        logger.warning(f"[ClickUp] Hierarchy request failed: {e.message}")
        return {"error": e.message}
    return [item.model_dump(by_alias=True) for item in items]


@router.get("/clickup/workspaces", response_model=None)
async def list_workspaces() -> list[dict[str, Any]] | dict[str, str]:
    return await _listing(get_clickup_client().get_workspaces())


@router.get("/clickup/workspaces/{team_id}/spaces", response_model=None)
async def list_spaces(team_id: str) -> list[dict[str, Any]] | dict[str, str]:
    return await _listing(get_clickup_client().get_spaces(team_id))


@router.get("/clickup/spaces/{space_id}/folders", response_model=None)
async def list_folders(space_id: str) -> list[dict[str, Any]] | dict[str, str]:
    return await _listing(get_clickup_client().get_folders(space_id))


@router.get("/clickup/folders/{folder_id}/lists", response_model=None)
async def list_folder_lists(folder_id: str) -> list[dict[str, Any]] | dict[str, str]:
    return await _listing(get_clickup_client().get_lists_in_folder(folder_id))


@router.get("/clickup/spaces/{space_id}/lists", response_model=None)
async def list_folderless_lists(space_id: str) -> list[dict[str, Any]] | dict[str, str]:
    """Lists that sit directly in a space, outside any folder."""
    return await _listing(get_clickup_client().get_folderless_lists(space_id))


@router.get("/clickup/lists/{list_id}/statuses", response_model=None)
async def list_statuses(list_id: str) -> list[dict[str, Any]] | dict[str, str]:
    return await _listing(get_clickup_client().get_list_statuses(list_id))
