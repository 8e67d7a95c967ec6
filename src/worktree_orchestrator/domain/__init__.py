"""Domain types shared across planes: plans, agent tasks/results, risk and test vocabularies."""

from worktree_orchestrator.domain.models import (
    KNOWN_GATES,
    AgentResult,
    AgentTask,
    GateStatus,
    JSONScalar,
    JSONValue,
    PlannedChange,
    RiskFlag,
    RiskLevel,
    TestStatus,
    is_safe_repo_path,
    looks_like_commit_id,
    normalize_repo_path,
    string_tuple,
)

__all__ = [
    "KNOWN_GATES",
    "AgentResult",
    "AgentTask",
    "GateStatus",
    "JSONScalar",
    "JSONValue",
    "PlannedChange",
    "RiskFlag",
    "RiskLevel",
    "TestStatus",
    "is_safe_repo_path",
    "looks_like_commit_id",
    "normalize_repo_path",
    "string_tuple",
]
