"""Planning plane: path matching and the pre-spawn ownership check."""

from worktree_orchestrator.planning.ownership import (
    DEFAULT_OWNERSHIP,
    FindingKind,
    OwnershipCheckResult,
    OwnershipConfig,
    OwnershipFinding,
    OwnershipViolationError,
    ParallelPlanValidation,
    check_ownership,
    enforce_ownership_or_throw,
    planned_changes_from,
    validate_parallel_plan,
)
from worktree_orchestrator.planning.path_matcher import PathMatcher, PatternSet

__all__ = [
    "DEFAULT_OWNERSHIP",
    "FindingKind",
    "OwnershipCheckResult",
    "OwnershipConfig",
    "OwnershipFinding",
    "OwnershipViolationError",
    "ParallelPlanValidation",
    "PathMatcher",
    "PatternSet",
    "check_ownership",
    "enforce_ownership_or_throw",
    "planned_changes_from",
    "validate_parallel_plan",
]
