"""End-to-end runs of the orchestrator against a real repository."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest

from tests.support.git_repo import commit_files, git_out, init_repo, write_files
from worktree_orchestrator.control_plane import AgentAssignment, Orchestrator, RunPhase
from worktree_orchestrator.domain.models import AgentResult, AgentTask
from worktree_orchestrator.persistence import FileAuditStore
from worktree_orchestrator.planning.ownership import OwnershipConfig

if TYPE_CHECKING:
    from pathlib import Path

OWNERSHIP = OwnershipConfig(owners={"Backend": ("apps/api/",), "Frontend": ("apps/web/",)})


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


@dataclass(slots=True)
class FileWriter:
    files: dict[str, str]
    commit: bool = True
    fail_with: str | None = None

    def execute(self, task: AgentTask) -> AgentResult:
        if self.fail_with is not None:
            return AgentResult(success=False, error=self.fail_with)
        assert task.workspace is not None
        if self.commit:
            commit_files(task.workspace.path, self.files, f"[{task.id}] update")
        else:
            write_files(task.workspace.path, self.files)
        return AgentResult(
            success=True,
            data={"files_changed": sorted(self.files), "test_status": "pass"},
        )


def _assign(agent: str, capability: FileWriter, *, critical: bool = False) -> AgentAssignment:
    return AgentAssignment(
        agent=agent,
        capability=capability,
        task=AgentTask(id=f"task-{agent.lower()}", type="implement", description=f"{agent} work"),
        planned_files=tuple(capability.files),
        critical=critical,
    )


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    return init_repo(tmp_path / "repo", {"README.md": "seed\n", "apps/api/server.ts": "v1\n"})


@pytest.mark.integration
@pytest.mark.asyncio
async def test_run_merges_committed_and_auto_committed_work(repo: Path, tmp_path: Path) -> None:
    base = git_out(repo, "rev-parse", "main")
    orchestrator = Orchestrator(
        repo,
        ownership=OWNERSHIP,
        workspace_root=tmp_path / "workspaces",
        audit_store=FileAuditStore(tmp_path / "audit"),
        run_id_factory=lambda: "run-e2e",
    )

    report = await orchestrator.run(
        [
            _assign("Backend", FileWriter({"apps/api/server.ts": "v2\n"})),
            _assign("Frontend", FileWriter({"apps/web/app.tsx": "ui\n"}, commit=False)),
        ]
    )

    assert report.success, report.errors
    assert report.warnings == ("Frontend: uncommitted changes were auto-committed",)
    assert git_out(repo, "rev-parse", "main^") == base
    assert (repo / "apps" / "api" / "server.ts").read_text(encoding="utf-8") == "v2\n"
    assert (repo / "apps" / "web" / "app.tsx").read_text(encoding="utf-8") == "ui\n"
    assert git_out(repo, "status", "--porcelain") == ""

    assert git_out(repo, "branch", "--list", "agent/*") == ""
    assert list((tmp_path / "workspaces").iterdir()) == []

    stored = json.loads((tmp_path / "audit" / "run" / "run-e2e.json").read_text(encoding="utf-8"))
    assert stored["record"]["success"] is True
    assert stored["record"]["merge"]["final_commit"] == git_out(repo, "rev-parse", "main")
    assert (tmp_path / "audit" / "manifest" / "run-e2e-Frontend.json").is_file()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_failed_task_leaves_main_untouched_and_cleans_up(
    repo: Path, tmp_path: Path
) -> None:
    base = git_out(repo, "rev-parse", "main")
    orchestrator = Orchestrator(repo, ownership=OWNERSHIP, workspace_root=tmp_path / "workspaces")

    report = await orchestrator.run(
        [
            _assign("Backend", FileWriter({"apps/api/server.ts": "v2\n"})),
            _assign(
                "Frontend",
                FileWriter({"apps/web/app.tsx": "ui\n"}, fail_with="model refused"),
                critical=True,
            ),
        ]
    )

    assert not report.success
    assert report.failed_phase is RunPhase.EXECUTE
    assert report.errors == ("Frontend: Task failed: model refused",)
    assert git_out(repo, "rev-parse", "main") == base
    assert git_out(repo, "branch", "--list", "agent/*") == ""
    assert report.preserved_workspaces == ()
