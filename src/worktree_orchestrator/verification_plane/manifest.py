"""
Artifact manifests: the machine-readable record each agent leaves behind.

A manifest is immutable once created and serialisable for the audit trail.
Validation accepts a manifest or a raw mapping, with camelCase or snake_case keys.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from worktree_orchestrator.constants import DEFAULT_BASE_REF, MANIFEST_SCHEMA_VERSION
from worktree_orchestrator.domain.models import (
    KNOWN_GATES,
    RiskFlag,
    TestStatus,
    is_safe_repo_path,
    looks_like_commit_id,
    normalize_repo_path,
)
from worktree_orchestrator.planning.path_matcher import PatternSet

if TYPE_CHECKING:
    from collections.abc import Iterable

_KEY_ALIASES: Final[dict[str, str]] = {
    "worktree": "workspace",
    "baseRef": "base_ref",
    "baseCommit": "base_commit",
    "headCommit": "head_commit",
    "noOp": "no_op",
    "autoCommitted": "auto_committed",
    "filesChanged": "files_changed",
    "commandsRun": "commands_run",
    "testStatus": "test_status",
    "riskFlags": "risk_flags",
    "schemaVersion": "schema_version",
}
_GATE_ALIASES: Final[dict[str, str]] = {
    "unitTest": "unit_test",
    "e2eTest": "e2e_test",
}
_STATUS_VALUES: Final[tuple[str, ...]] = tuple(status.value for status in TestStatus)
_RISK_FLAG_VALUES: Final[frozenset[str]] = frozenset(flag.value for flag in RiskFlag)


@dataclass(frozen=True, slots=True)
class ArtifactManifest:
    agent: str
    workspace: str
    summary: str
    head_commit: str | None
    base_ref: str = DEFAULT_BASE_REF
    base_commit: str | None = None
    no_op: bool = False
    auto_committed: bool = False
    files_changed: tuple[str, ...] = ()
    commands_run: tuple[str, ...] = ()
    gates: Mapping[str, str] = field(default_factory=dict)
    test_status: str = TestStatus.SKIPPED.value
    notes: tuple[str, ...] = ()
    risk_flags: tuple[str, ...] = ()
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "files_changed", tuple(self.files_changed))
        object.__setattr__(self, "commands_run", tuple(self.commands_run))
        object.__setattr__(self, "notes", tuple(self.notes))
        object.__setattr__(self, "risk_flags", tuple(str(flag) for flag in self.risk_flags))
        object.__setattr__(
            self, "gates", {_GATE_ALIASES.get(k, k): str(v) for k, v in self.gates.items()}
        )
        object.__setattr__(self, "test_status", str(self.test_status))

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": MANIFEST_SCHEMA_VERSION,
            "agent": self.agent,
            "workspace": self.workspace,
            "base_ref": self.base_ref,
            "base_commit": self.base_commit,
            "head_commit": self.head_commit,
            "no_op": self.no_op,
            "auto_committed": self.auto_committed,
            "summary": self.summary,
            "files_changed": list(self.files_changed),
            "commands_run": list(self.commands_run),
            "gates": dict(sorted(self.gates.items())),
            "test_status": self.test_status,
            "notes": list(self.notes),
            "risk_flags": list(self.risk_flags),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> ArtifactManifest:
        data = _canonical_keys(payload)
        return cls(
            agent=str(data.get("agent", "")),
            workspace=str(data.get("workspace", "")),
            summary=str(data.get("summary", "")),
            head_commit=data.get("head_commit"),
            base_ref=str(data.get("base_ref") or DEFAULT_BASE_REF),
            base_commit=data.get("base_commit"),
            no_op=bool(data.get("no_op", False)),
            auto_committed=bool(data.get("auto_committed", False)),
            files_changed=tuple(data.get("files_changed") or ()),
            commands_run=tuple(data.get("commands_run") or ()),
            gates=dict(data.get("gates") or {}),
            test_status=str(data.get("test_status") or TestStatus.SKIPPED.value),
            notes=tuple(data.get("notes") or ()),
            risk_flags=tuple(data.get("risk_flags") or ()),
            timestamp=float(data.get("timestamp") or time.time()),
        )


@dataclass(frozen=True, slots=True)
class ManifestValidation:
    valid: bool
    errors: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ManifestConflict:
    """A path reported by more than one non-no-op manifest."""

    path: str
    agents: tuple[str, ...]
    message: str

    def __str__(self) -> str:
        return self.message


def create_manifest(
    agent: str,
    workspace: str,
    summary: str,
    files_changed: Sequence[str],
    *,
    head_commit: str | None = None,
    base_ref: str = DEFAULT_BASE_REF,
    base_commit: str | None = None,
    no_op: bool | None = None,
    auto_committed: bool = False,
    commands_run: Sequence[str] = (),
    gates: Mapping[str, str] | None = None,
    test_status: TestStatus | str = TestStatus.SKIPPED,
    notes: Sequence[str] = (),
    risk_flags: Sequence[RiskFlag | str] = (),
    timestamp: float | None = None,
) -> ArtifactManifest:
    """
    Build a manifest from an agent's outcome.

    ``no_op`` defaults to true only when nothing changed and no head commit was supplied.
    """

    files = tuple(normalize_repo_path(path) for path in files_changed)
    return ArtifactManifest(
        agent=agent,
        workspace=workspace,
        summary=summary,
        head_commit=head_commit,
        base_ref=base_ref,
        base_commit=base_commit,
        no_op=no_op if no_op is not None else (not files and not head_commit),
        auto_committed=auto_committed,
        files_changed=files,
        commands_run=tuple(commands_run),
        gates=dict(gates or {}),
        test_status=str(test_status),
        notes=tuple(notes),
        risk_flags=tuple(str(flag) for flag in risk_flags),
        timestamp=timestamp if timestamp is not None else time.time(),
    )


def validate_manifest(candidate: ArtifactManifest | Mapping[str, Any]) -> ManifestValidation:
    """Structural and policy validation; unknown risk flags and gates only warn."""

    data = (
        candidate.to_dict()
        if isinstance(candidate, ArtifactManifest)
        else _canonical_keys(candidate)
    )
    errors: list[str] = []
    warnings: list[str] = []

    for key in ("agent", "workspace", "summary"):
        if not _non_empty_text(data.get(key)):
            errors.append(f"Missing required field: {key}")
    head_commit = data.get("head_commit")
    if not _non_empty_text(head_commit):
        errors.append("Missing required field: head_commit (agent must commit)")
        head_commit = None

    files_changed = data.get("files_changed")
    if isinstance(files_changed, str) or not isinstance(files_changed, Sequence):
        errors.append("files_changed must be a sequence of paths")
    else:
        for path in files_changed:
            if not isinstance(path, str):
                errors.append(f"files_changed entries must be strings, got {type(path).__name__}")
            elif not is_safe_repo_path(path):
                errors.append(f"files_changed contains a path outside the repository: {path}")

    test_status = data.get("test_status")
    if test_status not in _STATUS_VALUES:
        errors.append(f"test_status must be one of: {', '.join(_STATUS_VALUES)}")

    gates = data.get("gates") or {}
    if not isinstance(gates, Mapping):
        errors.append("gates must be a mapping of gate name to status")
    else:
        for raw_name, status in sorted(gates.items()):
            name = _GATE_ALIASES.get(raw_name, raw_name)
            if name not in KNOWN_GATES:
                warnings.append(f"Unknown gate: {raw_name}")
            if status not in _STATUS_VALUES:
                errors.append(f"gates.{name} must be one of: {', '.join(_STATUS_VALUES)}")

    risk_flags = data.get("risk_flags") or ()
    if isinstance(risk_flags, str) or not isinstance(risk_flags, Sequence):
        errors.append("risk_flags must be a sequence")
        risk_flags = ()
    for flag in risk_flags:
        if not isinstance(flag, str) or flag not in _RISK_FLAG_VALUES:
            warnings.append(f"Unknown risk flag: {flag}")

    if RiskFlag.TOUCHES_AUTH in risk_flags and RiskFlag.BREAKING_CHANGE in risk_flags:
        warnings.append("CRITICAL: Authentication + breaking change requires security review")
    if RiskFlag.DB_MIGRATION in risk_flags and test_status == TestStatus.FAIL:
        errors.append("BLOCKING: Database migration with failing tests")

    if head_commit is not None:
        base_commit = data.get("base_commit")
        if not data.get("no_op") and base_commit and head_commit == base_commit:
            errors.append("head_commit equals the base commit; agent made no commits")
        if not looks_like_commit_id(head_commit):
            warnings.append(f"head_commit does not look like a commit id: {head_commit}")

    return ManifestValidation(valid=not errors, errors=tuple(errors), warnings=tuple(warnings))


def detect_conflicts(
    manifests: Iterable[ArtifactManifest],
    *,
    ignore: PatternSet | Sequence[str] | None = None,
) -> tuple[ManifestConflict, ...]:
    """
    Report every pair of writers that claim the same path.

    No-op manifests are skipped. Entries that are not strings are left to
    :func:`validate_manifest`, which reports them. A path claimed by three
    agents yields all three pairs, each listing the later claimant first.
    """

    ignored = ignore if isinstance(ignore, PatternSet) else PatternSet.of(ignore or ())
    claimants: dict[str, list[str]] = {}
    conflicts: list[ManifestConflict] = []

    for manifest in manifests:
        if manifest.no_op:
            continue
        paths = (
            normalize_repo_path(item) for item in manifest.files_changed if isinstance(item, str)
        )
        for path in dict.fromkeys(paths):
            if ignored.matches(path):
                continue
            earlier = claimants.setdefault(path, [])
            if manifest.agent in earlier:
                continue
            for other in earlier:
                conflicts.append(
                    ManifestConflict(
                        path=path,
                        agents=(manifest.agent, other),
                        message=f"CONFLICT: {path} touched by both {manifest.agent} and {other}",
                    )
                )
            earlier.append(manifest.agent)
    return tuple(conflicts)


def _canonical_keys(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(key, key): value for key, value in payload.items()}


def _non_empty_text(value: object) -> bool:
    return isinstance(value, str) and bool(value.strip())


__all__ = [
    "ArtifactManifest",
    "ManifestConflict",
    "ManifestValidation",
    "create_manifest",
    "detect_conflicts",
    "validate_manifest",
]
