"""
Runtime config loader.

Precedence: CLI overrides > ``WTO_`` environment variables > ``orchestrator.toml`` > defaults.
An ownership map referenced by ``run.ownership_map`` (YAML) replaces the ``ownership`` section.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final, Literal

import yaml

from worktree_orchestrator.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    merge_config,
    validate_ownership_section,
)

DEFAULT_CONFIG_FILE: Final[str] = "orchestrator.toml"
ENV_PREFIX: Final[str] = "WTO_"

_BOOLEAN_TRUE: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_BOOLEAN_FALSE: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Scalar settings reachable as WTO_<SECTION>_<KEY>; owner tables are file-only.
_ENV_SETTINGS: Final[dict[tuple[str, str], Literal["str", "bool"]]] = {
    ("run", "base_ref"): "str",
    ("run", "target_branch"): "str",
    ("run", "allow_dirty"): "bool",
    ("run", "parallel"): "bool",
    ("run", "preserve_workspaces"): "bool",
    ("run", "workspace_root"): "str",
    ("run", "branch_prefix"): "str",
    ("run", "ownership_map"): "str",
    ("review", "strict"): "bool",
    ("ownership", "strict"): "bool",
    ("ownership", "restricted_authority"): "str",
    ("ownership", "lockfile_owner"): "str",
    ("observability", "log_level"): "str",
    ("observability", "log_dir"): "str",
    ("observability", "log_to_stdout"): "bool",
    ("observability", "json_logs"): "bool",
}


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load effective config with precedence CLI > env > file > defaults."""

    resolved_path = _resolve_config_path(config_path)
    env_map = os.environ if environ is None else environ

    file_payload = _load_toml_file(resolved_path, required=config_path is not None)
    merged = assert_valid_config(merge_config(default_config(), file_payload))

    merged = merge_config(merged, env_overrides(env_map))
    merged = merge_config(merged, _dotted_overrides(cli_overrides or {}))
    merged = assert_valid_config(merged)

    normalized = normalize_paths(merged, base_dir=resolved_path.parent)

    ownership_map = normalized["run"].get("ownership_map")
    if ownership_map is not None:
        normalized["ownership"] = load_ownership_map(ownership_map)

    return assert_valid_config(normalized)


def load_ownership_map(path: str | Path) -> dict[str, Any]:
    """
    Load and validate a YAML ownership map.

    The document may hold the ownership table directly or nest it under ``ownership``.
    """

    map_path = Path(path)
    try:
        with map_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle)
    except yaml.YAMLError as exc:
        raise ConfigLoadError(f"invalid YAML in ownership map {map_path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read ownership map {map_path}: {exc}") from exc

    if payload is None:
        payload = {}
    if isinstance(payload, Mapping) and isinstance(payload.get("ownership"), Mapping):
        payload = payload["ownership"]
    if not isinstance(payload, Mapping):
        raise ConfigLoadError(f"ownership map root must be a mapping: {map_path}")
    return validate_ownership_section(payload)


def env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``WTO_<SECTION>_<KEY>`` settings, coerced to their setting's type."""

    overrides: dict[str, Any] = {}
    for (section, key), kind in _ENV_SETTINGS.items():
        env_name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
        raw = environ.get(env_name)
        if raw is None:
            continue
        value: object = raw.strip()
        if kind == "bool":
            value = _parse_bool(raw.strip(), env_name, f"{section}.{key}")
        overrides.setdefault(section, {})[key] = value
    return overrides


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve configured path fields relative to ``base_dir``."""

    materialized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        table = materialized.get(section)
        if isinstance(table, dict) and isinstance(table.get(key), str):
            table[key] = _normalize_one_path(table[key], base_dir)
    return materialized


def _resolve_config_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _load_toml_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}

    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _parse_bool(value: str, env_name: str, dotted: str) -> bool:
    lowered = value.lower()
    if lowered in _BOOLEAN_TRUE:
        return True
    if lowered in _BOOLEAN_FALSE:
        return False
    raise ConfigLoadError(
        f"{env_name} -> {dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
    )


def _dotted_overrides(overrides: Mapping[str, object]) -> dict[str, Any]:
    """Expand ``{"run.base_ref": "x"}`` into ``{"run": {"base_ref": "x"}}``."""

    payload: dict[str, Any] = {}
    for dotted in sorted(overrides):
        *parents, leaf = dotted.split(".")
        if not leaf or not all(parents):
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        cursor = payload
        for part in parents:
            cursor = cursor.setdefault(part, {})
            if not isinstance(cursor, dict):
                raise ConfigLoadError(f"CLI override {dotted!r} conflicts with another key")
        cursor[leaf] = overrides[dotted]
    return payload


def _normalize_one_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(str(candidate))).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "env_overrides",
    "load_config",
    "load_ownership_map",
    "normalize_paths",
]
