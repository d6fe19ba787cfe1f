"""Git API endpoints.

validate-path, branches and fetch answer 200 with the error in the body,
which is what the dashboard's settings screen expects.
"""

import asyncio
import logging
from typing import Any

from fastapi import APIRouter

from clickup_orchestrator.api.models import (
    CheckoutRequest,
    CreateBranchRequest,
    DetectPathRequest,
    PathRequest,
)
from clickup_orchestrator.errors import OrchestratorError
from clickup_orchestrator.factory import get_worktree_manager

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/git/validate-path")
async def validate_path(request: PathRequest) -> dict[str, Any]:
    result = await get_worktree_manager().validate(request.path)
    if result.valid:
        return {"valid": True}
    return {"valid": False, "error": result.error}


@router.get("/git/branches")
async def list_branches(path: str) -> dict[str, Any]:
    """List local branches of the repository at path.

    Returns:
        {branches, current} or {error}
    """
    try:
        result = await get_worktree_manager().branches(path)
    except OrchestratorError as e:
        return {"error": e.message}
    return {"branches": result.branches, "current": result.current}


@router.post("/git/fetch")
async def fetch(request: PathRequest) -> dict[str, Any]:
    try:
        await get_worktree_manager().fetch(request.path)
    except OrchestratorError as e:
        logger.warning(f"[Worktree] Fetch failed for {request.path}: {e.message}")
        return {"error": e.message}
    return {"success": True}


@router.post("/git/detect-path")
async def detect_path(request: DetectPathRequest) -> dict[str, Any]:
    """Locate the folder the user picked in the browser via its marker file."""
    path = await asyncio.to_thread(get_worktree_manager().detect_path, request.marker_filename)
    if path is None:
        return {"found": False}
    return {"found": True, "path": path}


@router.post("/git/create-branch")
async def create_branch(request: CreateBranchRequest) -> dict[str, Any]:
    """Create a branch without switching to it.

    Raises:
        ValidationError: Invalid path or branch name (400)
        ConflictError: Branch exists or git refused (409)
    """
    branch = await get_worktree_manager().create_branch(
        request.path, request.name, request.start_point
    )
    return {"success": True, "branch": branch}


@router.post("/git/checkout")
async def checkout(request: CheckoutRequest) -> dict[str, Any]:
    current = await get_worktree_manager().checkout(request.path, request.name)
    return {"success": True, "current": current}
