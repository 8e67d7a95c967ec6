"""Verification plane: artifact manifests and the review gate."""

from worktree_orchestrator.verification_plane.manifest import (
    ArtifactManifest,
    ManifestConflict,
    ManifestValidation,
    create_manifest,
    detect_conflicts,
    validate_manifest,
)
from worktree_orchestrator.verification_plane.review_gate import (
    FindingCategory,
    ReviewFinding,
    ReviewGate,
    ReviewResult,
    RiskAssessment,
    assess_risk,
)

__all__ = [
    "ArtifactManifest",
    "FindingCategory",
    "ManifestConflict",
    "ManifestValidation",
    "ReviewFinding",
    "ReviewGate",
    "ReviewResult",
    "RiskAssessment",
    "assess_risk",
    "create_manifest",
    "detect_conflicts",
    "validate_manifest",
]
