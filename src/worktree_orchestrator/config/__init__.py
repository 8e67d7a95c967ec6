"""
Config package public API.

Loads ``orchestrator.toml`` with ``WTO_`` environment and CLI overrides, and
YAML ownership maps; validation failures carry every issue with its dotted path.
"""

from worktree_orchestrator.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    load_config,
    env_overrides,
    load_ownership_map,
    normalize_paths,
)
from worktree_orchestrator.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    OrchestratorConfig,
    RunSettings,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    ownership_from_config,
    validate_config,
    validate_ownership_section,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "OrchestratorConfig",
    "PATH_FIELDS",
    "RunSettings",
    "assert_valid_config",
    "default_config",
    "env_overrides",
    "load_config",
    "load_ownership_map",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "ownership_from_config",
    "validate_config",
    "validate_ownership_section",
]
