"""
Preflight gate run before any workspace is spawned.

Every check runs and every failure is collected so operators see all blockers
at once: repository validity, base ref resolution, clean working state and
writability. Package-manager detection only produces warnings.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

from worktree_orchestrator.integration_plane.git_backend import (
    GitBackend,
    VersionControl,
    VersionControlError,
)
from worktree_orchestrator.utils.fs import probe_writable

# Lockfile -> package manager, in detection order.
_LOCKFILES: Final[tuple[tuple[str, str], ...]] = (
    ("uv.lock", "uv"),
    ("poetry.lock", "poetry"),
    ("Pipfile.lock", "pipenv"),
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("bun.lockb", "bun"),
    ("Cargo.lock", "cargo"),
    ("go.sum", "go"),
)
_DEPENDENCY_MANIFESTS: Final[tuple[str, ...]] = (
    "pyproject.toml",
    "package.json",
    "Cargo.toml",
    "go.mod",
)


@dataclass(frozen=True, slots=True)
class PreflightResult:
    ok: bool
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    repo_path: str
    base_ref: str
    is_clean: bool | None = None
    base_commit: str | None = None
    package_manager: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "repo_path": self.repo_path,
            "base_ref": self.base_ref,
            "is_clean": self.is_clean,
            "base_commit": self.base_commit,
            "package_manager": self.package_manager,
        }


def run_preflight(
    repo_path: Path | str,
    base_ref: str,
    *,
    allow_dirty: bool = False,
    vcs: VersionControl | None = None,
    logger: Any | None = None,
) -> PreflightResult:
    """Run every preflight check against ``repo_path`` and collect all failures."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    root = Path(repo_path)
    backend = vcs if vcs is not None else GitBackend(root)
    errors: list[str] = []
    warnings: list[str] = []

    is_repo = root.is_dir() and backend.is_repository(root)
    if not is_repo:
        errors.append(f"not a git repository: {root}")

    base_commit: str | None = None
    if is_repo:
        base_commit = backend.resolve(base_ref, root)
        if base_commit is None:
            errors.append(f"base ref does not resolve to a commit: {base_ref}")

    is_clean: bool | None = None
    if is_repo:
        try:
            dirty_entries = backend.status(root)
        except VersionControlError as exc:
            warnings.append(f"unable to determine working state: {exc}")
        else:
            is_clean = not dirty_entries
            if not is_clean:
                if allow_dirty:
                    warnings.append(
                        f"working tree has {len(dirty_entries)} uncommitted change(s); "
                        "continuing because allow_dirty is set"
                    )
                else:
                    errors.append(
                        f"working tree is dirty ({len(dirty_entries)} uncommitted change(s)); "
                        "commit or stash them, or set allow_dirty"
                    )

    if root.is_dir():
        write_error = probe_writable(root)
        if write_error is not None:
            errors.append(f"repository location is not writable: {write_error}")

    package_manager = _detect_package_manager(root)
    if package_manager is None and root.is_dir():
        manifests = [name for name in _DEPENDENCY_MANIFESTS if (root / name).is_file()]
        if manifests:
            warnings.append(
                f"no lockfile found next to {', '.join(manifests)}; "
                "package manager could not be determined"
            )

    result = PreflightResult(
        ok=not errors,
        errors=tuple(errors),
        warnings=tuple(warnings),
        repo_path=root.as_posix(),
        base_ref=base_ref,
        is_clean=is_clean,
        base_commit=base_commit,
        package_manager=package_manager,
    )
    log.info(
        "preflight_completed",
        ok=result.ok,
        base_ref=base_ref,
        errors=list(result.errors),
        warnings=list(result.warnings),
    )
    return result


def _detect_package_manager(root: Path) -> str | None:
    for lockfile, manager in _LOCKFILES:
        if (root / lockfile).is_file():
            return manager
    return None


__all__ = ["PreflightResult", "run_preflight"]
