"""Tests for WorktreeManager against real temporary repositories."""

import subprocess
from pathlib import Path

import pytest

from clickup_orchestrator.errors import ConflictError, ValidationError
from clickup_orchestrator.git.worktree_manager import MARKER_PREFIX, WorktreeManager, slugify


def _current_branch(repo: Path) -> str:
    return subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo, capture_output=True, text=True, check=True
    ).stdout.strip()


def test_slugify() -> None:
    assert slugify("Fix Login: redirect loop!") == "fix-login-redirect-loop"
    assert slugify("???") == "task"
    assert len(slugify("x" * 100)) == 40


@pytest.mark.asyncio
async def test_validate(git_repo: Path, tmp_path: Path) -> None:
    manager = WorktreeManager()
    plain_dir = tmp_path / "plain"
    plain_dir.mkdir()
    a_file = tmp_path / "file.txt"
    a_file.write_text("x")

    assert (await manager.validate(str(git_repo))).valid
    assert (await manager.validate(str(tmp_path / "missing"))).error == "Path does not exist"
    assert (await manager.validate(str(a_file))).error == "Path is not a directory"
    assert (await manager.validate(str(plain_dir))).error == "Not a git repository"


@pytest.mark.asyncio
async def test_branches_lists_current(git_repo: Path) -> None:
    result = await WorktreeManager().branches(str(git_repo))

    assert sorted(result.branches) == ["dev", "main"]
    assert result.current == "main"


@pytest.mark.asyncio
async def test_branches_rejects_invalid_path(tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="Invalid path"):
        await WorktreeManager().branches(str(tmp_path / "missing"))


@pytest.mark.asyncio
async def test_create_branch_and_checkout(git_repo: Path) -> None:
    manager = WorktreeManager()

    await manager.create_branch(str(git_repo), "feature/login")
    with pytest.raises(ConflictError, match="Branch 'feature/login' already exists"):
        await manager.create_branch(str(git_repo), "feature/login")
    with pytest.raises(ValidationError):
        await manager.create_branch(str(git_repo), "bad..name")

    await manager.checkout(str(git_repo), "feature/login")
    assert _current_branch(git_repo) == "feature/login"

    with pytest.raises(ValidationError, match="does not exist"):
        await manager.checkout(str(git_repo), "nope")


@pytest.mark.asyncio
async def test_checkout_refuses_to_overwrite_local_changes(git_repo: Path) -> None:
    manager = WorktreeManager()
    subprocess.run(["git", "checkout", "-q", "dev"], cwd=git_repo, check=True)
    (git_repo / "README.md").write_text("# Changed on dev\n")
    subprocess.run(
        ["git", "-c", "user.email=dev@example.com", "-c", "user.name=Dev", "commit", "-qam", "dev change"],
        cwd=git_repo,
        check=True,
    )
    (git_repo / "README.md").write_text("# Uncommitted\n")

    with pytest.raises(ConflictError):
        await manager.checkout(str(git_repo), "main")
    assert _current_branch(git_repo) == "dev"


@pytest.mark.asyncio
async def test_create_worktree_from_base_and_reuse(git_repo: Path) -> None:
    manager = WorktreeManager()
    target = git_repo / "worktrees" / "task-1-fix-login"

    path = await manager.create_worktree(str(git_repo), str(target), "task/CU-1-fix-login", "dev")

    assert path == str(target)
    assert (target / "README.md").is_file()
    assert _current_branch(target) == "task/CU-1-fix-login"

    again = await manager.create_worktree(str(git_repo), str(target), "task/CU-1-fix-login", "dev")
    assert again == str(target)


@pytest.mark.asyncio
async def test_create_worktree_attaches_existing_branch(git_repo: Path) -> None:
    manager = WorktreeManager()
    await manager.create_branch(str(git_repo), "task/CU-2-retry")
    target = git_repo / "worktrees" / "task-2-retry"

    await manager.create_worktree(str(git_repo), str(target), "task/CU-2-retry", "dev")

    assert _current_branch(target) == "task/CU-2-retry"


@pytest.mark.asyncio
async def test_create_worktree_missing_base(git_repo: Path) -> None:
    manager = WorktreeManager()
    target = git_repo / "worktrees" / "task-3"

    with pytest.raises(ValidationError, match="Base branch 'release' not found"):
        await manager.create_worktree(str(git_repo), str(target), "task/CU-3", "release")
    assert not target.exists()


@pytest.mark.asyncio
async def test_remove_worktree(git_repo: Path) -> None:
    manager = WorktreeManager()
    target = git_repo / "worktrees" / "task-4"
    await manager.create_worktree(str(git_repo), str(target), "task/CU-4", "dev")

    await manager.remove_worktree(str(target))

    assert not target.exists()
    listing = subprocess.run(
        ["git", "worktree", "list"], cwd=git_repo, capture_output=True, text=True, check=True
    ).stdout
    assert str(target) not in listing

    await manager.remove_worktree(str(target))


def test_detect_path_finds_marker(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    project = home / "code" / "shop"
    project.mkdir(parents=True)
    marker = f"{MARKER_PREFIX}abc123"
    (project / marker).write_text("")
    monkeypatch.setenv("HOME", str(home))

    manager = WorktreeManager()

    assert manager.detect_path(marker) == str(project)
    assert manager.detect_path(f"{MARKER_PREFIX}unknown-{tmp_path.name}") is None
    assert manager.detect_path("../etc/passwd") is None
