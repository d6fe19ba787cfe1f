"""Git repository inspection and per-task worktrees."""

import asyncio
import logging
import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from clickup_orchestrator.errors import ConflictError, ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

MARKER_PREFIX = ".clickup-orchestrator-path-"
MARKER_MAX_DEPTH = 10
COMMON_DEV_FOLDERS = (
    "Projects",
    "projects",
    "Development",
    "development",
    "dev",
    "Dev",
    "code",
    "Code",
    "repos",
    "Repos",
    "src",
    "Documents/dev",
    "Documents/Development",
    "Documents/projects",
)
# Never descended into while searching for a marker file.
WALK_SKIP_DIRS = {".git", "node_modules", "target", ".venv", "venv", "__pycache__", "Library"}


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or f"git exited with code {self.returncode}"


@dataclass
class PathValidation:
    valid: bool
    error: str | None = None


@dataclass
class BranchList:
    branches: list[str]
    current: str | None


def slugify(name: str, max_length: int = 40) -> str:
    """Lowercase name safe for directory and branch components."""
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", name).strip("-").lower()
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-") or "task"


class WorktreeManager:
    """Runs git on behalf of the API and the scheduler.

    Branch-mutating commands against the same repository are serialised with
    one lock per repository; read-only commands run concurrently.
    """

    def __init__(self, git_binary: str = "git") -> None:
        self._git_binary = git_binary
        self._locks: dict[str, asyncio.Lock] = {}

    async def validate(self, path: str) -> PathValidation:
        target = Path(path)
        if not target.exists():
            return PathValidation(False, "Path does not exist")
        if not target.is_dir():
            return PathValidation(False, "Path is not a directory")
        try:
            result = await self._git("rev-parse", "--git-dir", cwd=target)
        except ValidationError as e:
            return PathValidation(False, f"Failed to check git repository: {e.message}")
        if not result.ok:
            return PathValidation(False, "Not a git repository")
        return PathValidation(True)

    async def branches(self, path: str) -> BranchList:
        """List local branches and the checked-out one.

        Raises:
            ValidationError: If the path is not a directory or git fails
        """
        target = self._require_dir(path)
        current_result = await self._git("rev-parse", "--abbrev-ref", "HEAD", cwd=target)
        current = current_result.stdout.strip() if current_result.ok else None

        result = await self._git("branch", "--format=%(refname:short)", cwd=target)
        if not result.ok:
            raise ValidationError(result.error)
        branches = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        return BranchList(branches=branches, current=current)

    async def create_branch(self, path: str, name: str, start_point: str | None = None) -> str:
        """Create a local branch without checking it out.

        Raises:
            ValidationError: If the path or branch name is invalid
            ConflictError: If the branch exists or git refuses
        """
        target = self._require_dir(path)
        await self._require_valid_branch_name(target, name)
        async with self._lock_for(target):
            if await self._branch_exists(target, name):
                raise ConflictError(f"Branch '{name}' already exists")
            args = ["branch", name]
            if start_point:
                args.append(start_point)
            result = await self._git(*args, cwd=target)
            if not result.ok:
                raise ConflictError(result.error)
        logger.info(f"[Worktree] Created branch {name} in {target}")
        return name

    async def checkout(self, path: str, name: str) -> str:
        """Switch the working tree to an existing branch.

        Raises:
            ValidationError: If the path is invalid or the branch does not exist
            ConflictError: If git refuses, e.g. local changes would be overwritten
        """
        target = self._require_dir(path)
        async with self._lock_for(target):
            if not await self._branch_exists(target, name):
                raise ValidationError(f"Branch '{name}' does not exist")
            result = await self._git("checkout", name, cwd=target)
            if not result.ok:
                raise ConflictError(result.error)
        logger.info(f"[Worktree] Checked out {name} in {target}")
        return name

    async def fetch(self, path: str) -> None:
        """Fetch all remotes.

        Raises:
            ValidationError: If the path is not a directory
            ExternalServiceError: If the fetch fails (network, auth)
        """
        target = self._require_dir(path)
        result = await self._git("fetch", "--all", "--prune", cwd=target)
        if not result.ok:
            raise ExternalServiceError(result.error)

    async def create_worktree(self, repo_path: str, worktree_path: str, branch: str, base: str) -> str:
        """Create (or re-attach) an isolated worktree on its own branch.

        Raises:
            ValidationError: If the repository, base branch or git command fails
        """
        repo = self._require_dir(repo_path)
        target = Path(worktree_path)
        async with self._lock_for(repo):
            await self._git("worktree", "prune", cwd=repo)
            if target.is_dir() and (target / ".git").exists():
                logger.info(f"[Worktree] Reusing existing worktree {target}")
                return str(target)

            target.parent.mkdir(parents=True, exist_ok=True)
            if await self._branch_exists(repo, branch):
                result = await self._git("worktree", "add", str(target), branch, cwd=repo)
            else:
                start_point = await self._resolve_start_point(repo, base)
                result = await self._git(
                    "worktree", "add", "-b", branch, str(target), start_point, cwd=repo
                )
            if not result.ok:
                raise ValidationError(f"git worktree failed: {result.error}")

        if not target.is_dir():
            raise ValidationError(f"Worktree directory missing after creation: {target}")
        logger.info(f"[Worktree] Created worktree {target} on branch {branch}")
        return str(target)

    async def remove_worktree(self, worktree_path: str) -> None:
        """Remove the worktree and its directory; missing paths are ignored."""
        target = Path(worktree_path)
        if not target.exists():
            return

        repo = await self._main_repository(target)
        if repo is not None:
            async with self._lock_for(repo):
                result = await self._git("worktree", "remove", "--force", str(target), cwd=repo)
                if not result.ok:
                    logger.warning(f"[Worktree] git worktree remove failed for {target}: {result.error}")
                if target.exists():
                    await asyncio.to_thread(shutil.rmtree, target)
                await self._git("worktree", "prune", cwd=repo)
        else:
            await asyncio.to_thread(shutil.rmtree, target)
        logger.info(f"[Worktree] Removed worktree {target}")

    def detect_path(self, marker_filename: str) -> str | None:
        """Find the directory containing a marker file dropped by the browser."""
        if not marker_filename.startswith(MARKER_PREFIX) or "/" in marker_filename:
            return None
        for root in _search_roots():
            found = _find_marker(root, marker_filename)
            if found is not None:
                return str(found.parent)
        return None

    async def _git(self, *args: str, cwd: Path) -> GitResult:
        try:
            process = await asyncio.create_subprocess_exec(
                self._git_binary,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ValidationError(f"Failed to run git: {e}") from e
        stdout, stderr = await process.communicate()
        result = GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        logger.debug(f"[Worktree] git {' '.join(args)} in {cwd} -> {result.returncode}")
        return result

    def _lock_for(self, repo: Path) -> asyncio.Lock:
        key = str(repo.resolve())
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _require_dir(self, path: str) -> Path:
        target = Path(path)
        if not path or not target.is_dir():
            raise ValidationError("Invalid path")
        return target

    async def _require_valid_branch_name(self, repo: Path, name: str) -> None:
        result = await self._git("check-ref-format", "--branch", name, cwd=repo)
        if not name or not result.ok:
            raise ValidationError(f"'{name}' is not a valid branch name")

    async def _branch_exists(self, repo: Path, name: str) -> bool:
        result = await self._git("rev-parse", "--verify", "--quiet", f"refs/heads/{name}", cwd=repo)
        return result.ok

    async def _resolve_start_point(self, repo: Path, base: str) -> str:
        for candidate in (base, f"origin/{base}"):
            result = await self._git("rev-parse", "--verify", "--quiet", candidate, cwd=repo)
            if result.ok:
                return candidate
        raise ValidationError(f"Base branch '{base}' not found in {repo}")

    async def _main_repository(self, worktree: Path) -> Path | None:
        result = await self._git("rev-parse", "--git-common-dir", cwd=worktree)
        if not result.ok:
            return None
        common_dir = Path(result.stdout.strip())
        if not common_dir.is_absolute():
            common_dir = (worktree / common_dir).resolve()
        return common_dir.parent


def _search_roots() -> list[Path]:
    home = Path.home()
    roots = [home, home / "Documents", home / "Desktop", Path("/tmp"), Path("/var/tmp")]
    roots.extend(home / folder for folder in COMMON_DEV_FOLDERS)
    return [root for root in roots if root.is_dir()]


def _find_marker(root: Path, marker_filename: str) -> Path | None:
    root_depth = len(root.parts)
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        if marker_filename in filenames:
            return Path(dirpath) / marker_filename
        if len(Path(dirpath).parts) - root_depth >= MARKER_MAX_DEPTH:
            dirnames.clear()
            continue
        dirnames[:] = [d for d in dirnames if d not in WALK_SKIP_DIRS]
    return None
