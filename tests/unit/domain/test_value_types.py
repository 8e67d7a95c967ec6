"""Unit tests for shared domain value types and path helpers."""

from __future__ import annotations

import pytest

from worktree_orchestrator.domain.models import (
    AgentResult,
    PlannedChange,
    RiskLevel,
    is_safe_repo_path,
    looks_like_commit_id,
    normalize_repo_path,
    string_tuple,
)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("./src/app.ts", "src/app.ts"),
        ("././docs//guide.md", "docs/guide.md"),
        ("apps\\web\\index.tsx", "apps/web/index.tsx"),
        ("  README.md ", "README.md"),
    ],
)
def test_normalize_repo_path(raw: str, expected: str) -> None:
    assert normalize_repo_path(raw) == expected


@pytest.mark.parametrize(
    ("path", "safe"),
    [
        ("src/app.ts", True),
        ("./README.md", True),
        ("", False),
        (".", False),
        ("/etc/passwd", False),
        ("C:\\Windows\\system.ini", False),
        ("../outside.txt", False),
        ("src/../../outside.txt", False),
    ],
)
def test_is_safe_repo_path(path: str, safe: bool) -> None:
    assert is_safe_repo_path(path) is safe


def test_looks_like_commit_id() -> None:
    assert looks_like_commit_id("a" * 40)
    assert looks_like_commit_id("abc1234")
    assert not looks_like_commit_id("abc12")
    assert not looks_like_commit_id("HEAD")
    assert not looks_like_commit_id("ABCDEF1")


def test_string_tuple_keeps_only_strings() -> None:
    assert string_tuple(["a", 1, "b", None]) == ("a", "b")
    assert string_tuple("not-a-list") == ()
    assert string_tuple(None) == ()


def test_agent_result_declared_prefers_first_present_key() -> None:
    result = AgentResult(success=True, data={"filesChanged": ["a.ts"], "files_changed": ["b.ts"]})

    assert result.declared("files_changed", "filesChanged") == ["b.ts"]
    assert result.declared("riskFlags", default=()) == ()


def test_agent_result_copies_its_inputs() -> None:
    data = {"summary": "done"}
    result = AgentResult(success=True, data=data, logs=["line"])
    data["summary"] = "changed"

    assert result.data == {"summary": "done"}
    assert result.logs == ("line",)


def test_planned_change_freezes_file_list() -> None:
    assert PlannedChange(agent="QA", files=["tests/a.ts"]).files == ("tests/a.ts",)


def test_risk_levels_are_ranked() -> None:
    ordered = sorted(RiskLevel, key=lambda level: level.rank)

    assert ordered == [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]
