"""Unit tests for compiled repository path globs."""

from __future__ import annotations

import pytest

from worktree_orchestrator.planning.path_matcher import PathMatcher, PatternSet


@pytest.mark.parametrize(
    ("pattern", "path", "expected"),
    [
        ("dist/", "dist/app.js", True),
        ("dist/", "dist/nested/deep/app.js", True),
        ("dist/", "dist", False),
        ("dist/", "src/dist/app.js", False),
        ("README.md", "README.md", True),
        ("README.md", "docs/README.md", False),
        ("apps/web", "apps/web/login.tsx", True),
        ("apps/web", "apps/webapp/login.tsx", False),
        ("src/*.py", "src/main.py", True),
        ("src/*.py", "src/pkg/main.py", False),
        ("src/?.py", "src/a.py", True),
        ("src/?.py", "src/ab.py", False),
        ("**/yarn.lock", "yarn.lock", True),
        ("**/yarn.lock", "packages/ui/yarn.lock", True),
        ("**/*.lock", "nested/Cargo.lock", True),
        ("apps/**", "apps/web/src/index.ts", True),
        ("apps/**/index.ts", "apps/index.ts", True),
        ("apps/**/index.ts", "apps/web/src/index.ts", True),
    ],
)
def test_path_matcher_semantics(pattern: str, path: str, expected: bool) -> None:
    assert PathMatcher.compile(pattern).matches(path) is expected


def test_path_matcher_normalizes_candidate_paths() -> None:
    matcher = PathMatcher.compile("./docs/")

    assert matcher.matches("./docs/guide.md")
    assert matcher.matches("docs//guide.md")
    assert matcher.matches("docs\\guide.md")


def test_path_matcher_escapes_regex_metacharacters() -> None:
    matcher = PathMatcher.compile("config/app(1).json")

    assert matcher.matches("config/app(1).json")
    assert not matcher.matches("config/app1.json")


def test_path_matcher_compiles_once_per_pattern() -> None:
    assert PathMatcher.compile("packages/ui/") is PathMatcher.compile("packages/ui/")


def test_path_matcher_rejects_empty_patterns() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        PathMatcher.compile("./")


def test_pattern_set_reports_first_matching_pattern() -> None:
    patterns = PatternSet.of(["docs/", "**/*.md", "README.md"])

    assert patterns.first_match("docs/intro.md") == "docs/"
    assert patterns.first_match("guides/intro.md") == "**/*.md"
    assert patterns.first_match("src/main.py") is None
    assert patterns.patterns == ("docs/", "**/*.md", "README.md")
    assert len(patterns) == 3


def test_empty_pattern_set_matches_nothing() -> None:
    patterns = PatternSet.of([])

    assert not patterns
    assert not patterns.matches("anything.txt")
