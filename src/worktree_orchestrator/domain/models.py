"""Domain value types shared across planes."""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from worktree_orchestrator.integration_plane.workspace_manager import Workspace

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

_COMMIT_SHA_RE: Final[re.Pattern[str]] = re.compile(r"^[0-9a-f]{7,64}$")
_WINDOWS_ABSOLUTE_PATH_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z]:[\\/]")


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER[self]


_RISK_ORDER: Final[dict[RiskLevel, int]] = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class RiskFlag(StrEnum):
    TOUCHES_AUTH = "touches-auth"
    DB_MIGRATION = "db-migration"
    BREAKING_CHANGE = "breaking-change"
    SECURITY_SENSITIVE = "security-sensitive"
    PERFORMANCE_CRITICAL = "performance-critical"


class TestStatus(StrEnum):
    __test__ = False

    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


# Per-gate statuses share the test status vocabulary.
GateStatus = TestStatus

KNOWN_GATES: Final[tuple[str, ...]] = ("lint", "typecheck", "unit_test", "e2e_test", "docs")


@dataclass(frozen=True, slots=True)
class PlannedChange:
    """Declared intent of one agent, used only for the pre-spawn ownership check."""

    agent: str
    files: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", tuple(self.files))


@dataclass(frozen=True, slots=True)
class AgentTask:
    """Opaque unit of work handed to an agent capability."""

    id: str
    type: str
    description: str
    critical: bool = False
    data: Mapping[str, Any] = field(default_factory=dict)
    workspace: Workspace | None = None


@dataclass(frozen=True, slots=True)
class AgentResult:
    """Result returned by an agent capability.

    ``data`` may declare ``files_changed``/``filesChanged``, ``risk_flags``/``riskFlags``,
    ``test_status``/``testStatus``, ``commands_run``, ``gates``, ``summary`` and ``notes``.
    """

    success: bool
    data: Mapping[str, Any] = field(default_factory=dict)
    logs: tuple[str, ...] = ()
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", dict(self.data or {}))
        object.__setattr__(self, "logs", tuple(self.logs))

    def declared(self, *keys: str, default: Any = None) -> Any:
        """Return the first present value among ``keys`` in ``data``."""
        for key in keys:
            if key in self.data:
                return self.data[key]
        return default


def normalize_repo_path(path: str) -> str:
    """Normalize a repository-relative path to POSIX form without leading ``./``."""
    normalized = path.strip().replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    while "//" in normalized:
        normalized = normalized.replace("//", "/")
    return normalized


def is_safe_repo_path(path: str) -> bool:
    """Return whether ``path`` stays inside the repository once normalized."""
    normalized = normalize_repo_path(path)
    if normalized in {"", "."}:
        return False
    if PurePosixPath(normalized).is_absolute() or _WINDOWS_ABSOLUTE_PATH_RE.match(normalized):
        return False
    return ".." not in PurePosixPath(normalized).parts


def looks_like_commit_id(value: str) -> bool:
    return _COMMIT_SHA_RE.fullmatch(value) is not None


def string_tuple(value: object) -> tuple[str, ...]:
    """Coerce a declared list of strings; non-sequences yield an empty tuple."""
    if isinstance(value, str) or not isinstance(value, Sequence):
        return ()
    return tuple(item for item in value if isinstance(item, str))


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
