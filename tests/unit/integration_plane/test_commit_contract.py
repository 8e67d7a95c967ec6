"""Unit tests for commit contract verification and enforcement."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from tests.support.fake_vcs import FakeVersionControl
from worktree_orchestrator.integration_plane.commit_contract import CommitContract

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def vcs(tmp_path: Path) -> FakeVersionControl:
    return FakeVersionControl(tmp_path / "repo")


@pytest.fixture
def workspace(vcs: FakeVersionControl, tmp_path: Path) -> Path:
    path = tmp_path / "workspaces" / "Backend"
    vcs.create_worktree(path, "agent/Backend", "main")
    return path


def test_committed_clean_workspace_is_valid(vcs: FakeVersionControl, workspace: Path) -> None:
    vcs.write(workspace, "apps/api/a.ts", "export {}\n")
    head = vcs.commit_all(workspace, "add api")

    result = CommitContract(vcs).verify(workspace, "Backend", "main")

    assert result.valid
    assert result.errors == ()
    assert result.head_commit == head


def test_untouched_workspace_made_no_commits(vcs: FakeVersionControl, workspace: Path) -> None:
    result = CommitContract(vcs).verify(workspace, "Backend", "main")

    assert not result.valid
    assert result.errors == ("Agent made no commits (HEAD == main)",)
    assert result.head_commit is None


def test_dirty_workspace_reports_every_problem(vcs: FakeVersionControl, workspace: Path) -> None:
    vcs.write(workspace, "apps/api/a.ts", "export {}\n")

    result = CommitContract(vcs).verify(workspace, "Backend", "main")

    assert not result.valid
    assert result.errors == (
        "Workspace is dirty (1 uncommitted change(s)): ?? apps/api/a.ts",
        "Agent made no commits (HEAD == main)",
    )


def test_unresolvable_base_ref_is_an_error(vcs: FakeVersionControl, workspace: Path) -> None:
    result = CommitContract(vcs).verify(workspace, "Backend", "missing-branch")

    assert result.errors == ("Base ref does not resolve: missing-branch",)


def test_backend_failure_becomes_a_single_error(vcs: FakeVersionControl, workspace: Path) -> None:
    vcs.fail("status", "index is locked")

    result = CommitContract(vcs).verify(workspace, "Backend", "main")

    assert not result.valid
    assert result.errors == ("Failed to verify commit contract: index is locked",)


def test_enforce_commits_dirty_work_with_attribution(
    vcs: FakeVersionControl, workspace: Path
) -> None:
    vcs.write(workspace, "apps/api/a.ts", "export {}\n")
    vcs.write(workspace, "apps/api/b.ts", "export {}\n")
    contract = CommitContract(vcs)

    enforcement = contract.enforce(workspace, "Backend")
    verified = contract.verify(workspace, "Backend", "main")

    assert enforcement.success
    assert enforcement.auto_committed
    assert enforcement.commit == vcs.current_head(workspace)
    commit = vcs.commits[enforcement.commit]
    assert commit.message == "[Backend] Auto-commit: 2 files changed"
    assert commit.author == "Backend"
    assert commit.trailers == (("Agent", "Backend"), ("Auto-Commit", "true"))
    assert verified.valid
    assert verified.head_commit == enforcement.commit


def test_enforce_on_clean_workspace_returns_existing_head(
    vcs: FakeVersionControl, workspace: Path
) -> None:
    head = vcs.current_head(workspace)

    enforcement = CommitContract(vcs).enforce(workspace, "Backend", "custom message")

    assert enforcement.success
    assert not enforcement.auto_committed
    assert enforcement.commit == head


def test_enforce_failure_is_returned(vcs: FakeVersionControl, workspace: Path) -> None:
    vcs.write(workspace, "a.py", "x = 1\n")
    vcs.fail("commit_all", "disk full")

    enforcement = CommitContract(vcs).enforce(workspace, "Backend")

    assert not enforcement.success
    assert enforcement.error == "Failed to enforce commit: disk full"
