"""
Ownership map and pre-spawn conflict prevention.

Every planned write is checked before any workspace exists: paths claimed by
several agents, restricted paths, paths owned by another agent and lockfiles
are reported as conflicts or violations, and promoted to errors under strict
mode.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from worktree_orchestrator.constants import DEFAULT_LOCKFILE_PATTERNS, DEFAULT_RESTRICTED_AUTHORITY
from worktree_orchestrator.domain.models import (
    PlannedChange,
    is_safe_repo_path,
    normalize_repo_path,
    string_tuple,
)
from worktree_orchestrator.planning.path_matcher import PatternSet

if TYPE_CHECKING:
    from collections.abc import Iterable


class FindingKind(StrEnum):
    CONFLICT = "conflict"
    RESTRICTED = "restricted"
    OWNERSHIP = "ownership"
    LOCKFILE = "lockfile"
    INVALID_PATH = "invalid_path"


@dataclass(frozen=True, slots=True)
class OwnershipConfig:
    """Immutable ownership policy for one run."""

    strict: bool = True
    generated_paths: tuple[str, ...] = ()
    allow_shared_paths: tuple[str, ...] = ()
    restricted_paths: tuple[str, ...] = ()
    owners: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    lockfile_owner: str | None = None
    restricted_authority: str = DEFAULT_RESTRICTED_AUTHORITY
    lockfile_patterns: tuple[str, ...] = DEFAULT_LOCKFILE_PATTERNS

    def __post_init__(self) -> None:
        object.__setattr__(self, "generated_paths", tuple(self.generated_paths))
        object.__setattr__(self, "allow_shared_paths", tuple(self.allow_shared_paths))
        object.__setattr__(self, "restricted_paths", tuple(self.restricted_paths))
        object.__setattr__(self, "lockfile_patterns", tuple(self.lockfile_patterns))
        object.__setattr__(
            self,
            "owners",
            {agent: tuple(patterns) for agent, patterns in self.owners.items()},
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> OwnershipConfig:
        """Build a config from an ``[ownership]`` table or a YAML ownership map."""

        owners_raw = payload.get("owners") or {}
        owners = {
            str(agent): string_tuple(patterns)
            for agent, patterns in owners_raw.items()
        }
        lockfile_owner = payload.get("lockfile_owner")
        return cls(
            strict=bool(payload.get("strict", True)),
            generated_paths=string_tuple(payload.get("generated_paths", ())),
            allow_shared_paths=string_tuple(payload.get("allow_shared_paths", ())),
            restricted_paths=string_tuple(payload.get("restricted_paths", ())),
            owners=owners,
            lockfile_owner=(
                lockfile_owner if isinstance(lockfile_owner, str) and lockfile_owner else None
            ),
            restricted_authority=str(
                payload.get("restricted_authority", DEFAULT_RESTRICTED_AUTHORITY)
            ),
            lockfile_patterns=string_tuple(
                payload.get("lockfile_patterns", DEFAULT_LOCKFILE_PATTERNS)
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "strict": self.strict,
            "generated_paths": list(self.generated_paths),
            "allow_shared_paths": list(self.allow_shared_paths),
            "restricted_paths": list(self.restricted_paths),
            "owners": {agent: list(patterns) for agent, patterns in self.owners.items()},
            "restricted_authority": self.restricted_authority,
            "lockfile_patterns": list(self.lockfile_patterns),
        }
        if self.lockfile_owner is not None:
            payload["lockfile_owner"] = self.lockfile_owner
        return payload


DEFAULT_OWNERSHIP = OwnershipConfig(
    strict=True,
    generated_paths=("dist/", "build/", ".next/", "out/", "coverage/", "node_modules/"),
    allow_shared_paths=("docs/", "README.md", "CHANGELOG.md"),
    restricted_paths=(
        "shared/",
        "package.json",
        "pnpm-lock.yaml",
        "yarn.lock",
        "package-lock.json",
        "tsconfig.json",
        "tsconfig.base.json",
        ".eslintrc",
        ".prettierrc",
        "turbo.json",
        "nx.json",
    ),
    owners={
        "Frontend": ("apps/web/", "apps/mobile/", "packages/ui/"),
        "Backend": ("apps/api/", "apps/server/", "packages/core/", "db/", "prisma/"),
        "QA": ("tests/", "e2e/", "playwright/", "cypress/"),
        "Docs": ("docs/", "README.md", "CONTRIBUTING.md"),
        "Infra": ("terraform/", "docker/", "k8s/", ".github/"),
    },
    lockfile_owner="Backend",
)


@dataclass(frozen=True, slots=True)
class OwnershipFinding:
    """A conflict or violation attached to one path."""

    kind: FindingKind
    path: str
    agents: tuple[str, ...]
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class OwnershipCheckResult:
    ok: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()
    conflicts: tuple[OwnershipFinding, ...] = ()
    violations: tuple[OwnershipFinding, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "conflicts": [_finding_to_dict(item) for item in self.conflicts],
            "violations": [_finding_to_dict(item) for item in self.violations],
        }


@dataclass(frozen=True, slots=True)
class ParallelPlanValidation:
    safe: bool
    result: OwnershipCheckResult


class OwnershipViolationError(RuntimeError):
    """Raised by :func:`enforce_ownership_or_throw` when the plan is not ``ok``."""

    def __init__(self, result: OwnershipCheckResult) -> None:
        self.result = result
        rendered = "\n".join(f"- {error}" for error in result.errors)
        super().__init__(f"ownership check failed:\n{rendered}")


@dataclass(slots=True)
class _Collector:
    strict: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    conflicts: list[OwnershipFinding] = field(default_factory=list)
    violations: list[OwnershipFinding] = field(default_factory=list)

    def conflict(self, finding: OwnershipFinding, error: str) -> None:
        self.conflicts.append(finding)
        if self.strict:
            self.errors.append(error)

    def violation(self, finding: OwnershipFinding, error: str) -> None:
        self.violations.append(finding)
        if self.strict:
            self.errors.append(error)

    def result(self) -> OwnershipCheckResult:
        return OwnershipCheckResult(
            ok=not self.errors,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            conflicts=tuple(self.conflicts),
            violations=tuple(self.violations),
        )


def check_ownership(
    planned_changes: Iterable[PlannedChange],
    config: OwnershipConfig = DEFAULT_OWNERSHIP,
) -> OwnershipCheckResult:
    """Check every planned write against ``config``; findings accumulate per path."""

    generated = PatternSet.of(config.generated_paths)
    shared = PatternSet.of(config.allow_shared_paths)
    restricted = PatternSet.of(config.restricted_paths)
    lockfiles = PatternSet.of(config.lockfile_patterns)
    owner_sets = {agent: PatternSet.of(patterns) for agent, patterns in config.owners.items()}

    collector = _Collector(strict=config.strict)
    touched: dict[str, set[str]] = {}

    for change in planned_changes:
        for raw_path in change.files:
            if not is_safe_repo_path(raw_path):
                collector.violations.append(
                    OwnershipFinding(
                        kind=FindingKind.INVALID_PATH,
                        path=raw_path,
                        agents=(change.agent,),
                        message=f"{raw_path} is outside the repository ({change.agent})",
                    )
                )
                collector.errors.append(
                    f"INVALID_PATH: {change.agent} cannot modify {raw_path} outside the repository"
                )
                continue
            path = normalize_repo_path(raw_path)
            if generated.matches(path):
                continue
            touched.setdefault(path, set()).add(change.agent)

    for path in sorted(touched):
        agents = tuple(sorted(touched[path]))
        if shared.matches(path):
            continue

        if len(agents) > 1:
            agent_list = ", ".join(agents)
            collector.conflict(
                OwnershipFinding(
                    kind=FindingKind.CONFLICT,
                    path=path,
                    agents=agents,
                    message=f"{path} touched by multiple agents: {agent_list}",
                ),
                f"CONFLICT: {path} cannot be modified by multiple agents in parallel mode "
                f"({agent_list})",
            )

        if restricted.matches(path) and agents != (config.restricted_authority,):
            outsiders = tuple(agent for agent in agents if agent != config.restricted_authority)
            collector.violation(
                OwnershipFinding(
                    kind=FindingKind.RESTRICTED,
                    path=path,
                    agents=outsiders or agents,
                    message=(
                        f"{path} is restricted to {config.restricted_authority}; "
                        f"claimed by {', '.join(agents)}"
                    ),
                ),
                f"RESTRICTED: {path} requires {config.restricted_authority} approval",
            )

        path_owners = tuple(
            agent for agent in sorted(owner_sets) if owner_sets[agent].matches(path)
        )
        if path_owners:
            expected = " or ".join(path_owners)
            for agent in agents:
                if agent in path_owners:
                    continue
                collector.violation(
                    OwnershipFinding(
                        kind=FindingKind.OWNERSHIP,
                        path=path,
                        agents=(agent,),
                        message=f"{path} owned by {expected} but touched by {agent}",
                    ),
                    f"OWNERSHIP: {agent} cannot modify {path} (owned by {expected})",
                )
        elif owner_sets:
            collector.warnings.append(
                f"{path} has no owner in the ownership map (claimed by {', '.join(agents)})"
            )

        if config.lockfile_owner is not None and lockfiles.matches(path):
            for agent in agents:
                if agent == config.lockfile_owner:
                    continue
                collector.violation(
                    OwnershipFinding(
                        kind=FindingKind.LOCKFILE,
                        path=path,
                        agents=(agent,),
                        message=f"{path} is a lockfile; only {config.lockfile_owner} may modify it",
                    ),
                    f"LOCKFILE: {agent} cannot modify {path} (owned by {config.lockfile_owner})",
                )

    return collector.result()


def validate_parallel_plan(
    planned_changes: Iterable[PlannedChange],
    config: OwnershipConfig = DEFAULT_OWNERSHIP,
) -> ParallelPlanValidation:
    """Parallel spawning is safe iff there are no conflicts, violations, or errors."""

    result = check_ownership(planned_changes, config)
    safe = not result.conflicts and not result.violations and not result.errors
    return ParallelPlanValidation(safe=safe, result=result)


def enforce_ownership_or_throw(
    planned_changes: Iterable[PlannedChange],
    config: OwnershipConfig = DEFAULT_OWNERSHIP,
) -> OwnershipCheckResult:
    """Return the full result (warnings included) or raise ``OwnershipViolationError``."""

    result = check_ownership(planned_changes, config)
    if not result.ok:
        raise OwnershipViolationError(result)
    return result


def planned_changes_from(plan: Mapping[str, Sequence[str]]) -> tuple[PlannedChange, ...]:
    """Convenience constructor from an ``{agent: [paths]}`` mapping."""

    return tuple(PlannedChange(agent=agent, files=tuple(files)) for agent, files in plan.items())


def _finding_to_dict(finding: OwnershipFinding) -> dict[str, Any]:
    return {
        "kind": finding.kind.value,
        "path": finding.path,
        "agents": list(finding.agents),
        "message": finding.message,
    }


__all__ = [
    "DEFAULT_OWNERSHIP",
    "FindingKind",
    "OwnershipCheckResult",
    "OwnershipConfig",
    "OwnershipFinding",
    "OwnershipViolationError",
    "ParallelPlanValidation",
    "check_ownership",
    "enforce_ownership_or_throw",
    "planned_changes_from",
    "validate_parallel_plan",
]
