"""Integration plane: git backend, preflight, workspaces, commit contract and atomic merge."""

from worktree_orchestrator.integration_plane.atomic_merge import (
    AcceptedCommit,
    AtomicMerger,
    MergeResult,
    department_priority,
    order_commits,
)
from worktree_orchestrator.integration_plane.commit_contract import (
    CommitContract,
    CommitContractResult,
    EnforcementResult,
)
from worktree_orchestrator.integration_plane.git_backend import (
    ApplyOutcome,
    GitBackend,
    GitCommandError,
    VersionControl,
    VersionControlError,
)
from worktree_orchestrator.integration_plane.preflight import PreflightResult, run_preflight
from worktree_orchestrator.integration_plane.workspace_manager import (
    CleanupResult,
    CleanupStatus,
    Workspace,
    WorkspaceError,
    WorkspaceManager,
    WorkspaceRegistry,
    workspace_slug,
)

__all__ = [
    "AcceptedCommit",
    "ApplyOutcome",
    "AtomicMerger",
    "CleanupResult",
    "CleanupStatus",
    "CommitContract",
    "CommitContractResult",
    "EnforcementResult",
    "GitBackend",
    "GitCommandError",
    "MergeResult",
    "PreflightResult",
    "VersionControl",
    "VersionControlError",
    "Workspace",
    "WorkspaceError",
    "WorkspaceManager",
    "WorkspaceRegistry",
    "department_priority",
    "order_commits",
    "run_preflight",
    "workspace_slug",
]
