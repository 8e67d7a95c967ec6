"""Helpers for building throwaway git repositories in integration tests."""

from __future__ import annotations

import os
import subprocess
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping
    from pathlib import Path

_IDENTITY = ("-c", "user.name=Integration Test", "-c", "user.email=integration@example.com")


def git(cwd: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        env=env,
        check=False,
        text=True,
        capture_output=True,
    )
    if check and result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip()
        raise RuntimeError(f"git command failed: git {' '.join(args)}: {detail}")
    return result


def git_out(cwd: Path, *args: str) -> str:
    return git(cwd, *args).stdout.strip()


def write_files(root: Path, files: Mapping[str, str]) -> None:
    for relative, content in files.items():
        target = root / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def commit_files(root: Path, files: Mapping[str, str], message: str) -> str:
    write_files(root, files)
    git(root, "add", "--all")
    git(root, *_IDENTITY, "commit", "--quiet", "--no-gpg-sign", "-m", message)
    return git_out(root, "rev-parse", "HEAD")


def init_repo(root: Path, files: Mapping[str, str] | None = None) -> Path:
    """Create a repository on ``main`` with one seed commit."""

    root.mkdir(parents=True, exist_ok=True)
    git(root, "init", "--initial-branch=main", "--quiet")
    commit_files(root, files or {"README.md": "seed\n"}, "initial")
    return root
