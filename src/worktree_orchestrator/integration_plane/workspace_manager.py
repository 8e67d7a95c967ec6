"""Git-worktree-backed workspace lifecycle with an explicit per-run registry."""

from __future__ import annotations

import re
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final

import structlog

from worktree_orchestrator.constants import DEFAULT_BASE_REF, DEFAULT_WORK_BRANCH_PREFIX
from worktree_orchestrator.integration_plane.git_backend import (
    GitBackend,
    VersionControl,
    VersionControlError,
)
from worktree_orchestrator.utils.fs import safe_delete

if TYPE_CHECKING:
    from collections.abc import Callable

_SAFE_NAME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9._-]+$")
_UNSAFE_NAME_CHARS: Final[re.Pattern[str]] = re.compile(r"[^A-Za-z0-9._-]+")


class WorkspaceError(RuntimeError):
    """Raised for invalid workspace names and failed spawns."""


class CleanupStatus(StrEnum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class Workspace:
    """One agent's isolated, branch-scoped working copy."""

    name: str
    branch: str
    base_ref: str
    path: Path
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "branch": self.branch,
            "base_ref": self.base_ref,
            "path": self.path.as_posix(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    name: str
    status: CleanupStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not CleanupStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "error": self.error}


class WorkspaceRegistry:
    """
    Authoritative set of workspaces active in one run.

    Owned by the orchestrator and handed to the manager, so independent runs
    never share state.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: dict[str, Workspace] = {}

    def add(self, workspace: Workspace) -> None:
        with self._lock:
            self._items[workspace.name] = workspace

    def remove(self, name: str) -> Workspace | None:
        with self._lock:
            return self._items.pop(name, None)

    def get(self, name: str) -> Workspace | None:
        with self._lock:
            return self._items.get(name)

    def names(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._items))

    def list(self) -> tuple[Workspace, ...]:
        with self._lock:
            return tuple(self._items[name] for name in sorted(self._items))

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class WorkspaceManager:
    """Spawn and tear down per-agent worktrees under ``workspace_root``."""

    def __init__(
        self,
        repo_path: str | Path,
        *,
        registry: WorkspaceRegistry | None = None,
        workspace_root: str | Path | None = None,
        vcs: VersionControl | None = None,
        branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        now_fn: Callable[[], datetime] | None = None,
        logger: Any | None = None,
    ) -> None:
        self.repo_path = Path(repo_path).expanduser().resolve()
        self.registry = registry if registry is not None else WorkspaceRegistry()
        self.workspace_root = (
            Path(workspace_root).expanduser().resolve(strict=False)
            if workspace_root is not None
            else default_workspace_root(self.repo_path)
        )
        self.branch_prefix = branch_prefix.strip("/") or DEFAULT_WORK_BRANCH_PREFIX
        self._vcs = vcs if vcs is not None else GitBackend(self.repo_path)
        self._now_fn: Callable[[], datetime] = now_fn if now_fn is not None else _utc_now
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = threading.RLock()

    def spawn(self, name: str, base_ref: str = DEFAULT_BASE_REF) -> Workspace:
        """Create a fresh workspace, tearing down any stale one with the same name first."""

        normalized = validate_workspace_name(name)
        path = self.workspace_path(normalized)
        branch = self.branch_for(normalized)

        with self._lock:
            if self._has_stale_state(normalized, path, branch):
                self._logger.info("workspace_stale_teardown", workspace=normalized, branch=branch)
                stale = self.cleanup(normalized)
                if stale.status is CleanupStatus.FAILED:
                    raise WorkspaceError(
                        f"unable to tear down stale workspace {normalized}: {stale.error}"
                    )

            self.workspace_root.mkdir(parents=True, exist_ok=True)
            try:
                self._vcs.create_worktree(path, branch, base_ref)
            except VersionControlError as exc:
                self._logger.error(
                    "workspace_spawn_failed",
                    workspace=normalized,
                    base_ref=base_ref,
                    error=str(exc),
                )
                raise WorkspaceError(f"unable to spawn workspace {normalized}: {exc}") from exc

            workspace = Workspace(
                name=normalized,
                branch=branch,
                base_ref=base_ref,
                path=path,
                created_at=self._now_fn(),
            )
            self.registry.add(workspace)

        self._logger.info(
            "workspace_spawned",
            workspace=normalized,
            branch=branch,
            base_ref=base_ref,
            path=path.as_posix(),
        )
        return workspace

    def cleanup(self, name: str) -> CleanupResult:
        """Remove one workspace and its branch; failures are returned, never raised."""

        with self._lock:
            workspace = self.registry.get(name)
            if workspace is not None:
                path, branch = workspace.path, workspace.branch
            else:
                try:
                    normalized = validate_workspace_name(name)
                except WorkspaceError as exc:
                    return CleanupResult(name=name, status=CleanupStatus.FAILED, error=str(exc))
                path, branch = self.workspace_path(normalized), self.branch_for(normalized)
                if not self._has_stale_state(normalized, path, branch):
                    return CleanupResult(name=name, status=CleanupStatus.NOT_FOUND)

            try:
                self._vcs.remove_worktree(path, branch)
                if path.exists() or path.is_symlink():
                    safe_delete(path, self.workspace_root)
            except (VersionControlError, OSError, ValueError) as exc:
                self._logger.warning(
                    "workspace_cleanup_failed",
                    workspace=name,
                    path=path.as_posix(),
                    error=str(exc),
                )
                return CleanupResult(name=name, status=CleanupStatus.FAILED, error=str(exc))

            self.registry.remove(name)

        self._logger.info("workspace_removed", workspace=name, branch=branch)
        return CleanupResult(name=name, status=CleanupStatus.REMOVED)

    def cleanup_all(self) -> tuple[CleanupResult, ...]:
        return tuple(self.cleanup(name) for name in self.registry.names())

    def list(self) -> tuple[Workspace, ...]:
        return self.registry.list()

    def get(self, name: str) -> Workspace | None:
        return self.registry.get(name)

    def exists(self, name: str) -> bool:
        return name in self.registry

    def workspace_path(self, name: str) -> Path:
        return self.workspace_root / name

    def branch_for(self, name: str) -> str:
        return f"{self.branch_prefix}/{name}"

    def _has_stale_state(self, name: str, path: Path, branch: str) -> bool:
        return (
            name in self.registry
            or path.exists()
            or path.is_symlink()
            or self._vcs.branch_exists(branch)
        )


def validate_workspace_name(name: str) -> str:
    if not isinstance(name, str):
        raise WorkspaceError(f"workspace name must be a string, got {type(name).__name__}")
    normalized = name.strip()
    if not normalized or normalized in {".", ".."} or not _SAFE_NAME_PATTERN.fullmatch(normalized):
        raise WorkspaceError(
            f"invalid workspace name {name!r}; allowed characters: A-Z a-z 0-9 . _ -"
        )
    return normalized


def workspace_slug(agent: str) -> str:
    """Workspace name for a free-form agent name: ``"Project Lead"`` becomes ``"Project-Lead"``."""
    slug = _UNSAFE_NAME_CHARS.sub("-", agent.strip()).strip("-.")
    return slug or "agent"


def default_workspace_root(repo_path: Path) -> Path:
    return Path(tempfile.gettempdir()) / "worktree-orchestrator" / repo_path.name


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


__all__ = [
    "CleanupResult",
    "CleanupStatus",
    "Workspace",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceRegistry",
    "default_workspace_root",
    "validate_workspace_name",
    "workspace_slug",
]
