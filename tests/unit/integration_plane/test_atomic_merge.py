"""
Unit tests for the atomic merge against the in-memory version-control double.

Coverage:
- union of disjoint agent commits lands as one commit on the target
- department precedence and explicit ordering
- collisions and backend failures leave the target untouched
- rollback only when the target still sits on the merge's own commit
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from structlog.testing import capture_logs

from tests.support.fake_vcs import FakeVersionControl
from worktree_orchestrator.integration_plane.atomic_merge import (
    AcceptedCommit,
    AtomicMerger,
    department_priority,
    order_commits,
)
from worktree_orchestrator.integration_plane.git_backend import VersionControlError

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def vcs(tmp_path: Path) -> FakeVersionControl:
    return FakeVersionControl(
        tmp_path / "repo",
        files={"README.md": "seed\n", "C.txt": "base\n"},
    )


def _agent_commit(
    vcs: FakeVersionControl,
    tmp_path: Path,
    agent: str,
    changes: dict[str, str],
) -> AcceptedCommit:
    path = tmp_path / "workspaces" / agent
    base = vcs.resolve("main")
    assert base is not None
    vcs.create_worktree(path, f"agent/{agent}", "main")
    for name, content in changes.items():
        vcs.write(path, name, content)
    commit = vcs.commit_all(path, f"{agent} work", author=agent)
    return AcceptedCommit(agent=agent, commit=commit, base_commit=base, branch=f"agent/{agent}")


def test_disjoint_commits_land_as_one_commit(vcs: FakeVersionControl, tmp_path: Path) -> None:
    head_before = vcs.resolve("main")
    accepted = [
        _agent_commit(vcs, tmp_path, "QA", {"tests/test_a.py": "qa\n"}),
        _agent_commit(vcs, tmp_path, "Frontend", {"apps/web/a.tsx": "fe\n"}),
        _agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"}),
    ]

    result = AtomicMerger(vcs).merge(accepted, "main")

    assert result.success
    assert result.head_before == head_before
    assert result.final_commit == vcs.resolve("main")
    assert vcs.parent_of("main") == head_before
    assert result.merged == ("Backend", "Frontend", "QA")
    assert vcs.files_at("main") == {
        "README.md": "seed\n",
        "C.txt": "base\n",
        "tests/test_a.py": "qa\n",
        "apps/web/a.tsx": "fe\n",
        "apps/api/a.ts": "be\n",
    }
    final = vcs.commits[result.final_commit]
    assert final.message == "Atomic merge of 3 agent(s): Backend, Frontend, QA"
    assert [key for key, _ in final.trailers] == ["Merged-Agent"] * 3


def test_repository_working_copy_follows_the_merged_target(
    vcs: FakeVersionControl, tmp_path: Path
) -> None:
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]

    AtomicMerger(vcs).merge(accepted, "main")

    assert vcs.is_clean(vcs.repo_path)


def test_collision_aborts_and_leaves_target_unchanged(
    vcs: FakeVersionControl, tmp_path: Path
) -> None:
    head_before = vcs.resolve("main")
    accepted = [
        _agent_commit(vcs, tmp_path, "Backend", {"C.txt": "backend\n", "apps/api/a.ts": "be\n"}),
        _agent_commit(vcs, tmp_path, "Frontend", {"C.txt": "frontend\n"}),
    ]

    with capture_logs() as logs:
        result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.failed_agent == "Frontend"
    assert result.failed_commit == accepted[1].commit
    assert result.conflicts == ("C.txt",)
    assert result.error == (
        f"Merge conflict in Frontend ({accepted[1].commit[:8]}). Atomic merge aborted."
    )
    assert result.merged == ()
    assert result.rollback_performed is False
    assert vcs.resolve("main") == head_before
    assert vcs.files_at("main")["C.txt"] == "base\n"
    assert "abort_apply" in vcs.calls
    assert any(entry["event"] == "atomic_merge_failed" for entry in logs)


def test_empty_merge_is_a_successful_no_op(vcs: FakeVersionControl) -> None:
    head_before = vcs.resolve("main")

    result = AtomicMerger(vcs).merge([], "main")

    assert result.success
    assert result.final_commit == head_before
    assert vcs.resolve("main") == head_before


def test_unresolvable_target_fails_without_side_effects(vcs: FakeVersionControl) -> None:
    result = AtomicMerger(vcs).merge([], "release")

    assert not result.success
    assert result.error == "target does not resolve to a commit: release"


def test_target_moved_during_merge_is_rejected(
    vcs: FakeVersionControl, tmp_path: Path
) -> None:
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]
    vcs.fail("fast_forward", "target main moved during merge")
    head_before = vcs.resolve("main")

    result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.error == "Atomic merge failed: target main moved during merge"
    assert result.failed_agent is None
    assert vcs.resolve("main") == head_before


class _MovingTargetVcs(FakeVersionControl):
    """Advances the target, then fails, as a half-completed update would."""

    def fast_forward(self, target: str, revision: str, *, expected_head: str) -> None:
        self._move_branch(target, revision)
        raise VersionControlError("update-ref interrupted")


def test_target_is_restored_when_failure_follows_a_move(tmp_path: Path) -> None:
    vcs = _MovingTargetVcs(tmp_path / "repo")
    head_before = vcs.resolve("main")
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]

    result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.rollback_performed is True
    assert vcs.resolve("main") == head_before
    assert "restore_branch:main" in vcs.calls


class _ConcurrentWriterVcs(FakeVersionControl):
    """Lets another writer commit to the target just before the fast-forward."""

    concurrent_commit: str | None = None

    def fast_forward(self, target: str, revision: str, *, expected_head: str) -> None:
        self.write(self.repo_path, "other.txt", "someone else\n")
        self.concurrent_commit = self.commit_all(self.repo_path, "concurrent work")
        super().fast_forward(target, revision, expected_head=expected_head)


def test_concurrent_commit_on_target_is_kept(tmp_path: Path) -> None:
    vcs = _ConcurrentWriterVcs(tmp_path / "repo")
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]

    result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.error is not None
    assert "moved during merge" in result.error
    assert result.rollback_performed is False
    assert vcs.resolve("main") == vcs.concurrent_commit
    assert vcs.files_at("main")["other.txt"] == "someone else\n"
    assert not any(call.startswith("restore_branch") for call in vcs.calls)


class _MoveThenCommitVcs(FakeVersionControl):
    """Lands the merge, lets another writer build on it, then reports a failure."""

    concurrent_commit: str | None = None

    def fast_forward(self, target: str, revision: str, *, expected_head: str) -> None:
        super().fast_forward(target, revision, expected_head=expected_head)
        self.write(self.repo_path, "other.txt", "built on the merge\n")
        self.concurrent_commit = self.commit_all(self.repo_path, "follow-up work")
        raise VersionControlError("post-update hook failed")


def test_target_advanced_past_merge_is_not_rolled_back(tmp_path: Path) -> None:
    vcs = _MoveThenCommitVcs(tmp_path / "repo")
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]

    with capture_logs() as logs:
        result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.rollback_performed is False
    assert vcs.resolve("main") == vcs.concurrent_commit
    assert any(entry["event"] == "atomic_merge_target_moved" for entry in logs)


def test_failed_rollback_is_reported_in_the_error(tmp_path: Path) -> None:
    vcs = _MovingTargetVcs(tmp_path / "repo")
    accepted = [_agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"})]
    vcs.fail("restore_branch", "reset refused")

    result = AtomicMerger(vcs).merge(accepted, "main")

    assert not result.success
    assert result.rollback_performed is False
    assert result.error is not None
    assert "restoring main to" in result.error
    assert result.error.endswith("failed: reset refused")


def test_explicit_order_wins_and_unnamed_agents_follow_by_precedence(
    vcs: FakeVersionControl, tmp_path: Path
) -> None:
    accepted = [
        _agent_commit(vcs, tmp_path, "Docs", {"docs/a.md": "docs\n"}),
        _agent_commit(vcs, tmp_path, "Frontend", {"apps/web/a.tsx": "fe\n"}),
        _agent_commit(vcs, tmp_path, "Backend", {"apps/api/a.ts": "be\n"}),
    ]

    with capture_logs() as logs:
        result = AtomicMerger(vcs).merge(accepted, "main", order=["Docs"])

    assert result.success
    assert result.order == ("Docs", "Backend", "Frontend")
    warning = next(entry for entry in logs if entry["event"] == "atomic_merge_unordered_agents")
    assert warning["appended"] == ["Backend", "Frontend"]


def test_department_priority_defaults_unknown_agents_to_the_middle() -> None:
    assert department_priority("Backend") == 1
    assert department_priority("frontend") == 2
    assert department_priority("Research") == 2
    assert department_priority("QA") == 3
    assert department_priority("Docs") == 4


def test_order_commits_is_stable_within_a_priority() -> None:
    accepted = [
        AcceptedCommit("Research", "r" * 40),
        AcceptedCommit("Frontend", "f" * 40),
        AcceptedCommit("Backend", "b" * 40),
    ]

    ordered = order_commits(accepted)

    assert [item.agent for item in ordered] == ["Backend", "Research", "Frontend"]
