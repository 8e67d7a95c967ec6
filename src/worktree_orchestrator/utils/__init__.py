"""Utility exports for filesystem helpers."""

from worktree_orchestrator.utils.fs import atomic_write, is_relative_to, probe_writable, safe_delete

__all__ = [
    "atomic_write",
    "is_relative_to",
    "probe_writable",
    "safe_delete",
]
