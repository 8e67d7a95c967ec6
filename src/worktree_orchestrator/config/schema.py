"""
Configuration schema, defaults and validation.

Validation never stops at the first problem: every issue is collected with a
dotted path so operators can fix a config file in one pass.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from worktree_orchestrator.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_BASE_REF,
    DEFAULT_TARGET_BRANCH,
    DEFAULT_WORK_BRANCH_PREFIX,
    LOG_DIR,
)
from worktree_orchestrator.planning.ownership import DEFAULT_OWNERSHIP, OwnershipConfig

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# Config paths resolved relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("run", "workspace_root"),
    ("run", "ownership_map"),
    ("observability", "log_dir"),
)

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")


class MetaConfig(TypedDict):
    schema_version: int


class RunConfig(TypedDict):
    base_ref: str
    target_branch: str
    allow_dirty: bool
    parallel: bool
    preserve_workspaces: bool
    branch_prefix: str
    workspace_root: NotRequired[str]
    ownership_map: NotRequired[str]


class ReviewConfig(TypedDict):
    strict: bool


class OwnershipSection(TypedDict):
    strict: bool
    generated_paths: list[str]
    allow_shared_paths: list[str]
    restricted_paths: list[str]
    owners: dict[str, list[str]]
    restricted_authority: str
    lockfile_patterns: list[str]
    lockfile_owner: NotRequired[str]


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    json_logs: bool


class OrchestratorConfig(TypedDict):
    meta: MetaConfig
    run: RunConfig
    review: ReviewConfig
    ownership: OwnershipSection
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[dict[str, Any]] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "run": {
        "base_ref": DEFAULT_BASE_REF,
        "target_branch": DEFAULT_TARGET_BRANCH,
        "allow_dirty": False,
        "parallel": True,
        "preserve_workspaces": False,
        "branch_prefix": DEFAULT_WORK_BRANCH_PREFIX,
    },
    "review": {
        "strict": True,
    },
    "ownership": DEFAULT_OWNERSHIP.to_dict(),
    "observability": {
        "log_level": "INFO",
        "log_dir": f"{LOG_DIR}/",
        "log_to_stdout": False,
        "json_logs": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


@dataclass(frozen=True, slots=True)
class RunSettings:
    """Typed view of the ``run``/``review`` sections consumed by the orchestrator."""

    base_ref: str = DEFAULT_BASE_REF
    target_branch: str = DEFAULT_TARGET_BRANCH
    allow_dirty: bool = False
    parallel: bool = True
    preserve_workspaces: bool = False
    branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX
    workspace_root: str | None = None
    strict_review: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> RunSettings:
        run = config.get("run", {})
        review = config.get("review", {})
        return cls(
            base_ref=run.get("base_ref", DEFAULT_BASE_REF),
            target_branch=run.get("target_branch", DEFAULT_TARGET_BRANCH),
            allow_dirty=run.get("allow_dirty", False),
            parallel=run.get("parallel", True),
            preserve_workspaces=run.get("preserve_workspaces", False),
            branch_prefix=run.get("branch_prefix", DEFAULT_WORK_BRANCH_PREFIX),
            workspace_root=run.get("workspace_root"),
            strict_review=review.get("strict", True),
        )


def default_config() -> dict[str, Any]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade orchestrator.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the worktree-orchestrator runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``; lists are replaced, not extended."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def ownership_from_config(config: Mapping[str, Any]) -> OwnershipConfig:
    return OwnershipConfig.from_mapping(config.get("ownership", {}))


def validate_ownership_section(payload: object, path: str = "ownership") -> dict[str, Any]:
    """Validate a standalone ownership table (as loaded from a YAML ownership map)."""

    issues = _IssueCollector()
    section = _as_object(payload, path, issues)
    out: dict[str, Any] = {}
    if section is not None:
        out = _validate_ownership(section, path, issues)
    if issues.has_issues:
        raise ConfigValidationError(issues.items())
    return out


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    sections: dict[str, Callable[[dict[str, object], str, _IssueCollector], dict[str, Any]]] = {
        "meta": _validate_meta,
        "run": _validate_run,
        "review": _validate_review,
        "ownership": _validate_ownership,
        "observability": _validate_observability,
    }
    _reject_unknown_keys(payload, set(sections), "", issues)
    _require_keys(payload, set(sections), "", issues)

    out: dict[str, Any] = {}
    for key, validator in sections.items():
        raw = payload.get(key)
        if raw is None:
            continue
        section = _as_object(raw, key, issues)
        if section is None:
            continue
        out[key] = validator(section, key, issues)
    return out


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_run(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    text_fields = {"base_ref", "target_branch", "branch_prefix"}
    bool_fields = {"allow_dirty", "parallel", "preserve_workspaces"}
    optional_paths = {"workspace_root", "ownership_map"}
    _reject_unknown_keys(payload, text_fields | bool_fields | optional_paths, path, issues)
    _require_keys(payload, text_fields | bool_fields, path, issues)

    out: dict[str, Any] = {}
    for key in sorted(text_fields):
        if key in payload:
            parsed_text = _as_ref_name(payload[key], _join(path, key), issues)
            if parsed_text is not None:
                out[key] = parsed_text
    for key in sorted(bool_fields):
        if key in payload:
            parsed_bool = _as_bool(payload[key], _join(path, key), issues)
            if parsed_bool is not None:
                out[key] = parsed_bool
    for key in sorted(optional_paths):
        if key in payload:
            parsed_path = _as_path_text(payload[key], _join(path, key), issues)
            if parsed_path is not None:
                out[key] = parsed_path
    return out


def _validate_review(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"strict"}, path, issues)
    _require_keys(payload, {"strict"}, path, issues)

    out: dict[str, Any] = {}
    if "strict" in payload:
        parsed = _as_bool(payload["strict"], _join(path, "strict"), issues)
        if parsed is not None:
            out["strict"] = parsed
    return out


def _validate_ownership(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    list_fields = {"generated_paths", "allow_shared_paths", "restricted_paths", "lockfile_patterns"}
    allowed = list_fields | {"strict", "owners", "lockfile_owner", "restricted_authority"}
    _reject_unknown_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "strict" in payload:
        parsed_strict = _as_bool(payload["strict"], _join(path, "strict"), issues)
        if parsed_strict is not None:
            out["strict"] = parsed_strict

    for key in sorted(list_fields):
        if key in payload:
            parsed_list = _as_pattern_list(payload[key], _join(path, key), issues)
            if parsed_list is not None:
                out[key] = parsed_list

    if "owners" in payload:
        owners_path = _join(path, "owners")
        owners = _as_object(payload["owners"], owners_path, issues)
        if owners is not None:
            parsed_owners: dict[str, list[str]] = {}
            for agent in sorted(owners):
                agent_path = _join(owners_path, agent)
                if not agent.strip():
                    issues.add(owners_path, "agent name must not be empty")
                    continue
                patterns = _as_pattern_list(owners[agent], agent_path, issues)
                if patterns is not None:
                    parsed_owners[agent] = patterns
            out["owners"] = parsed_owners

    for key in ("lockfile_owner", "restricted_authority"):
        if key in payload:
            parsed_agent = _as_str(payload[key], _join(path, key), issues)
            if parsed_agent is not None:
                out[key] = parsed_agent
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    allowed = {"log_level", "log_dir", "log_to_stdout", "json_logs"}
    _reject_unknown_keys(payload, allowed, path, issues)
    _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        parsed_level = _as_enum(
            payload["log_level"],
            _join(path, "log_level"),
            issues,
            allowed_values=_LOG_LEVELS,
        )
        if parsed_level is not None:
            out["log_level"] = parsed_level

    if "log_dir" in payload:
        parsed_log_dir = _as_path_text(payload["log_dir"], _join(path, "log_dir"), issues)
        if parsed_log_dir is not None:
            out["log_dir"] = parsed_log_dir

    for key in ("log_to_stdout", "json_logs"):
        if key in payload:
            parsed_flag = _as_bool(payload[key], _join(path, key), issues)
            if parsed_flag is not None:
                out[key] = parsed_flag
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_ref_name(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if any(char.isspace() for char in parsed) or parsed.startswith("-") or ".." in parsed:
        issues.add(path, f"invalid git ref name {parsed!r}")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_pattern_list(value: object, path: str, issues: _IssueCollector) -> list[str] | None:
    if isinstance(value, str) or not isinstance(value, Sequence):
        issues.add(path, f"expected list of path patterns, got {type(value).__name__}")
        return None
    out: list[str] = []
    for index, item in enumerate(value):
        parsed = _as_path_text(item, f"{path}[{index}]", issues)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: _deep_copy_value(value[key]) for key in sorted(value)}


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "RunSettings",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "ownership_from_config",
    "validate_config",
    "validate_ownership_section",
]
