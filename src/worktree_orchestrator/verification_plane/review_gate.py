"""
Review gate over every manifest of a run.

The gate is a pure aggregation: it never mutates its inputs and always returns
a fully explainable result, approved or not.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Final

import structlog

from worktree_orchestrator.domain.models import RiskFlag, RiskLevel, TestStatus
from worktree_orchestrator.planning.path_matcher import PatternSet
from worktree_orchestrator.verification_plane.manifest import (
    ArtifactManifest,
    ManifestConflict,
    detect_conflicts,
    validate_manifest,
)

if TYPE_CHECKING:
    from collections.abc import Iterable


class FindingCategory(StrEnum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    TEST_FAILURE = "test_failure"
    CONTRACT = "contract"


@dataclass(frozen=True, slots=True)
class ReviewFinding:
    category: FindingCategory
    message: str
    agent: str | None = None


@dataclass(frozen=True, slots=True)
class RiskAssessment:
    level: RiskLevel
    concerns: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ReviewResult:
    approved: bool
    conflicts: tuple[ManifestConflict, ...]
    errors: tuple[str, ...]
    warnings: tuple[str, ...]
    risk_assessment: RiskAssessment
    findings: tuple[ReviewFinding, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "conflicts": [conflict.message for conflict in self.conflicts],
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "risk_assessment": {
                "level": self.risk_assessment.level.value,
                "concerns": list(self.risk_assessment.concerns),
            },
            "findings": [
                {"category": item.category.value, "agent": item.agent, "message": item.message}
                for item in self.findings
            ],
        }


# First matching rule wins; order encodes precedence.
_RISK_RULES: Final[tuple[tuple[frozenset[str], RiskLevel, str], ...]] = (
    (
        frozenset({RiskFlag.BREAKING_CHANGE}),
        RiskLevel.CRITICAL,
        "Breaking changes require a major version bump",
    ),
    (
        frozenset({RiskFlag.DB_MIGRATION}),
        RiskLevel.HIGH,
        "Database migrations require rollback testing",
    ),
    (
        frozenset({RiskFlag.TOUCHES_AUTH, RiskFlag.SECURITY_SENSITIVE}),
        RiskLevel.HIGH,
        "Security-related changes require audit",
    ),
)


def assess_risk(flags: Iterable[str]) -> RiskAssessment:
    """Reduce the union of declared risk flags to one level with its concern."""

    present = frozenset(str(flag) for flag in flags)
    for triggers, level, concern in _RISK_RULES:
        if present & triggers:
            return RiskAssessment(level=level, concerns=(concern,))
    if present:
        return RiskAssessment(level=RiskLevel.MEDIUM)
    return RiskAssessment(level=RiskLevel.LOW)


class ReviewGate:
    """
    Approve or reject a run's manifests before merge.

    Strict mode approves only with zero errors. Non-strict mode tolerates
    conflict findings but still blocks on every other category.
    """

    def __init__(
        self,
        *,
        strict: bool = True,
        shared_paths: Sequence[str] | PatternSet | None = None,
        logger: Any | None = None,
    ) -> None:
        self.strict = strict
        self._shared_paths = (
            shared_paths
            if isinstance(shared_paths, PatternSet)
            else PatternSet.of(shared_paths or ())
        )
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def review(
        self,
        manifests: Sequence[ArtifactManifest],
        *,
        contract_failures: Mapping[str, Sequence[str]] | None = None,
    ) -> ReviewResult:
        findings: list[ReviewFinding] = []
        warnings: list[str] = []
        concerns: list[str] = []

        for manifest in manifests:
            validation = validate_manifest(manifest)
            findings.extend(
                ReviewFinding(
                    FindingCategory.VALIDATION, f"{manifest.agent}: {error}", manifest.agent
                )
                for error in validation.errors
            )
            warnings.extend(f"{manifest.agent}: {warning}" for warning in validation.warnings)

        for agent in sorted(contract_failures or {}):
            findings.extend(
                ReviewFinding(FindingCategory.CONTRACT, f"{agent}: {error}", agent)
                for error in (contract_failures or {})[agent]
            )

        conflicts = detect_conflicts(manifests, ignore=self._shared_paths)
        if conflicts:
            findings.extend(
                ReviewFinding(FindingCategory.CONFLICT, conflict.message) for conflict in conflicts
            )
            concerns.append(f"{len(conflicts)} file conflicts detected")

        failed = [manifest for manifest in manifests if manifest.test_status == TestStatus.FAIL]
        if failed:
            findings.extend(
                ReviewFinding(
                    FindingCategory.TEST_FAILURE, f"{item.agent}: Tests failed", item.agent
                )
                for item in failed
            )
            concerns.append("Test failures in one or more workspaces")

        risk = assess_risk(flag for manifest in manifests for flag in manifest.risk_flags)
        errors = tuple(finding.message for finding in findings)
        if self.strict:
            approved = not findings
        else:
            approved = all(finding.category is FindingCategory.CONFLICT for finding in findings)

        result = ReviewResult(
            approved=approved,
            conflicts=conflicts,
            errors=errors,
            warnings=tuple(warnings),
            risk_assessment=RiskAssessment(
                level=risk.level,
                concerns=(*concerns, *risk.concerns),
            ),
            findings=tuple(findings),
        )
        self._logger.info(
            "review_completed",
            approved=result.approved,
            strict=self.strict,
            manifests=len(manifests),
            errors=len(result.errors),
            conflicts=len(result.conflicts),
            risk_level=result.risk_assessment.level.value,
        )
        return result


__all__ = [
    "FindingCategory",
    "ReviewFinding",
    "ReviewGate",
    "ReviewResult",
    "RiskAssessment",
    "assess_risk",
]
