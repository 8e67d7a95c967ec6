"""
Commit contract: an agent's work must end as commits on its workspace branch.

``verify`` is read-only and runs first; ``enforce`` is the remediation path
that auto-commits a dirty workspace with attribution trailers.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog

from worktree_orchestrator.integration_plane.git_backend import (
    VersionControl,
    VersionControlError,
)


@dataclass(frozen=True, slots=True)
class CommitContractResult:
    valid: bool
    errors: tuple[str, ...] = ()
    head_commit: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors), "head_commit": self.head_commit}


@dataclass(frozen=True, slots=True)
class EnforcementResult:
    success: bool
    commit: str | None = None
    auto_committed: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "commit": self.commit,
            "auto_committed": self.auto_committed,
            "error": self.error,
        }


class CommitContract:
    """Verify and enforce the commit contract for one workspace at a time."""

    def __init__(self, vcs: VersionControl, *, logger: Any | None = None) -> None:
        self._vcs = vcs
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def verify(self, workspace_path: Path | str, agent: str, base_ref: str) -> CommitContractResult:
        path = Path(workspace_path)
        errors: list[str] = []
        try:
            dirty = self._vcs.status(path)
            if dirty:
                errors.append(
                    f"Workspace is dirty ({len(dirty)} uncommitted change(s)): "
                    + "; ".join(entry.strip() for entry in dirty[:10])
                )

            head = self._vcs.current_head(path)
            base = self._vcs.resolve(base_ref, path)
            if base is None:
                errors.append(f"Base ref does not resolve: {base_ref}")
            elif head == base:
                errors.append(f"Agent made no commits (HEAD == {base_ref})")

            if self._vcs.object_type(head, path) != "commit":
                errors.append(f"Invalid commit: {head}")
        except VersionControlError as exc:
            errors = [f"Failed to verify commit contract: {exc}"]
            head = None

        result = CommitContractResult(
            valid=not errors,
            errors=tuple(errors),
            head_commit=head if not errors else None,
        )
        self._logger.info(
            "commit_contract_verified",
            agent=agent,
            workspace=path.as_posix(),
            valid=result.valid,
            errors=list(result.errors),
        )
        return result

    def enforce(
        self,
        workspace_path: Path | str,
        agent: str,
        message: str | None = None,
    ) -> EnforcementResult:
        """Commit any pending changes on the agent's behalf, or return the clean head."""

        path = Path(workspace_path)
        try:
            dirty = self._vcs.status(path)
            if not dirty:
                return EnforcementResult(success=True, commit=self._vcs.current_head(path))

            commit_message = message or f"[{agent}] Auto-commit: {len(dirty)} files changed"
            commit = self._vcs.commit_all(
                path,
                commit_message,
                author=agent,
                trailers=(("Agent", agent), ("Auto-Commit", "true")),
            )
        except VersionControlError as exc:
            self._logger.error("commit_enforcement_failed", agent=agent, error=str(exc))
            return EnforcementResult(success=False, error=f"Failed to enforce commit: {exc}")

        self._logger.warning(
            "commit_enforced",
            agent=agent,
            workspace=path.as_posix(),
            commit=commit,
            files=len(dirty),
        )
        return EnforcementResult(success=True, commit=commit, auto_committed=True)


__all__ = ["CommitContract", "CommitContractResult", "EnforcementResult"]
