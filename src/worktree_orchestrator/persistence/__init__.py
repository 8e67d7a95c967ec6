"""Persistence: keyed audit storage for manifests and run reports."""

from worktree_orchestrator.persistence.audit_store import (
    AuditStore,
    AuditStoreError,
    FileAuditStore,
    InMemoryAuditStore,
)

__all__ = ["AuditStore", "AuditStoreError", "FileAuditStore", "InMemoryAuditStore"]
