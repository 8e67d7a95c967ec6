"""Integration tests for commit contract verification and enforcement on real worktrees."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.support.git_repo import commit_files, git_out, init_repo, write_files
from worktree_orchestrator.integration_plane.commit_contract import CommitContract
from worktree_orchestrator.integration_plane.git_backend import GitBackend
from worktree_orchestrator.integration_plane.workspace_manager import Workspace, WorkspaceManager

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolate_git_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    home = tmp_path / "home"
    xdg = tmp_path / "xdg"
    home.mkdir()
    xdg.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    return init_repo(tmp_path / "repo")


@pytest.fixture
def workspace(repo: Path, tmp_path: Path) -> Workspace:
    manager = WorkspaceManager(repo, workspace_root=tmp_path / "workspaces", vcs=GitBackend(repo))
    return manager.spawn("Backend", "main")


@pytest.mark.integration
def test_dirty_workspace_is_auto_committed_with_attribution(
    repo: Path, workspace: Workspace
) -> None:
    contract = CommitContract(GitBackend(repo))
    write_files(workspace.path, {"apps/api/a.ts": "export {};\n"})

    before = contract.verify(workspace.path, "Backend", "main")
    assert not before.valid
    assert before.errors == (
        "Workspace is dirty (1 uncommitted change(s)): ?? apps/api/a.ts",
        "Agent made no commits (HEAD == main)",
    )

    enforcement = contract.enforce(workspace.path, "Backend")
    assert enforcement.success
    assert enforcement.auto_committed
    assert enforcement.commit == git_out(workspace.path, "rev-parse", "HEAD")
    assert git_out(workspace.path, "log", "-1", "--format=%an") == "Backend"
    body = git_out(workspace.path, "log", "-1", "--format=%B")
    assert body.startswith("[Backend] Auto-commit: 1 files changed")
    assert "Agent: Backend" in body
    assert "Auto-Commit: true" in body

    after = contract.verify(workspace.path, "Backend", "main")
    assert after.valid, after.errors
    assert after.head_commit == enforcement.commit


@pytest.mark.integration
def test_agent_commits_satisfy_the_contract(repo: Path, workspace: Workspace) -> None:
    head = commit_files(workspace.path, {"apps/api/b.ts": "b\n"}, "[Backend] add b")

    result = CommitContract(GitBackend(repo)).verify(workspace.path, "Backend", "main")

    assert result.valid
    assert result.head_commit == head


@pytest.mark.integration
def test_untouched_workspace_has_no_commits(repo: Path, workspace: Workspace) -> None:
    contract = CommitContract(GitBackend(repo))

    result = contract.verify(workspace.path, "Backend", "main")
    enforcement = contract.enforce(workspace.path, "Backend")

    assert result.errors == ("Agent made no commits (HEAD == main)",)
    assert enforcement.success
    assert not enforcement.auto_committed
    assert enforcement.commit == git_out(repo, "rev-parse", "main")


@pytest.mark.integration
def test_unresolvable_base_ref_is_reported(repo: Path, workspace: Workspace) -> None:
    commit_files(workspace.path, {"apps/api/c.ts": "c\n"}, "[Backend] add c")

    result = CommitContract(GitBackend(repo)).verify(workspace.path, "Backend", "release")

    assert result.errors == ("Base ref does not resolve: release",)
