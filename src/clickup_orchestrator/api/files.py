"""File browser and editor endpoints.

All failures are reported as 200 with {"error": ...} in the body.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any

from fastapi import APIRouter

from clickup_orchestrator.api.models import (
    CreateFileRequest,
    FileNode,
    RenameRequest,
    SaveContentRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

TREE_MAX_DEPTH = 3
MAX_FILE_BYTES = 5 * 1024 * 1024
SKIP_DIRS = {
    "node_modules",
    ".git",
    "target",
    ".svelte-kit",
    "dist",
    "build",
    ".next",
    "__pycache__",
    ".venv",
    "venv",
}
LANGUAGES = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "svelte": "html",
    "html": "html",
    "htm": "html",
    "css": "css",
    "scss": "scss",
    "json": "json",
    "md": "markdown",
    "markdown": "markdown",
    "rs": "rust",
    "py": "python",
    "go": "go",
    "yaml": "yaml",
    "yml": "yaml",
    "toml": "toml",
    "sql": "sql",
    "sh": "shell",
    "bash": "shell",
    "xml": "xml",
}


def language_for(path: Path) -> str:
    return LANGUAGES.get(path.suffix.lstrip(".").lower(), "plaintext")


def build_tree(path: Path, depth: int = 0, max_depth: int = TREE_MAX_DEPTH) -> list[FileNode]:
    """Directory listing, directories first, hidden and bulky folders skipped."""
    entries = [
        entry
        for entry in path.iterdir()
        if not entry.name.startswith(".") and not (entry.is_dir() and entry.name in SKIP_DIRS)
    ]
    entries.sort(key=lambda e: (not e.is_dir(), e.name.lower()))

    nodes = []
    for entry in entries:
        is_dir = entry.is_dir()
        children: list[FileNode] | None = None
        # Directories at the depth limit are listed without children.
        if is_dir and depth < max_depth:
            try:
                children = build_tree(entry, depth + 1, max_depth)
            except OSError:
                children = []
        nodes.append(FileNode(name=entry.name, path=str(entry), is_directory=is_dir, children=children))
    return nodes


@router.get("/files/tree", response_model=None)
async def get_tree(path: str) -> list[dict[str, Any]] | dict[str, str]:
    root = Path(path)
    if not root.exists():
        return {"error": "Path does not exist"}
    if not root.is_dir():
        return {"error": "Path is not a directory"}
    try:
        nodes = await asyncio.to_thread(build_tree, root)
    except OSError as e:
        return {"error": f"Failed to read directory: {e}"}
    return [node.model_dump(by_alias=True, exclude_none=True) for node in nodes]


@router.get("/files/content")
async def get_content(path: str) -> dict[str, Any]:
    file_path = Path(path)
    if not file_path.exists():
        return {"error": "File does not exist"}
    if not file_path.is_file():
        return {"error": "Path is not a file"}
    if file_path.stat().st_size > MAX_FILE_BYTES:
        return {"error": "File is too large (max 5MB)"}
    try:
        content = file_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return {"error": f"Failed to read file: {e}"}
    return {"content": content, "language": language_for(file_path), "encoding": "utf-8"}


@router.put("/files/content")
async def save_content(request: SaveContentRequest) -> dict[str, Any]:
    file_path = Path(request.path)
    if not file_path.parent.exists():
        return {"error": "Parent directory does not exist"}
    try:
        file_path.write_text(request.content, encoding="utf-8")
    except OSError as e:
        return {"error": f"Failed to save file: {e}"}
    logger.debug(f"[Files] Saved {file_path}")
    return {"success": True}


@router.post("/files/create")
async def create_file(request: CreateFileRequest) -> dict[str, Any]:
    file_path = Path(request.path)
    if file_path.exists():
        return {"error": "Path already exists"}
    try:
        if request.is_directory:
            file_path.mkdir(parents=True)
        else:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.touch()
    except OSError as e:
        return {"error": f"Failed to create: {e}"}
    return {"success": True}


@router.post("/files/rename")
async def rename_file(request: RenameRequest) -> dict[str, Any]:
    old_path = Path(request.old_path)
    new_path = Path(request.new_path)
    if not old_path.exists():
        return {"error": "Source path does not exist"}
    if new_path.exists():
        return {"error": "Destination path already exists"}
    try:
        old_path.rename(new_path)
    except OSError as e:
        return {"error": f"Failed to rename: {e}"}
    return {"success": True}


@router.delete("/files")
async def delete_file(path: str) -> dict[str, Any]:
    file_path = Path(path)
    if not file_path.exists():
        return {"error": "Path does not exist"}
    try:
        if file_path.is_dir():
            await asyncio.to_thread(shutil.rmtree, file_path)
        else:
            file_path.unlink()
    except OSError as e:
        return {"error": f"Failed to delete: {e}"}
    logger.info(f"[Files] Deleted {file_path}")
    return {"success": True}
