"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch names.
DEFAULT_BASE_REF: Final[str] = "main"
DEFAULT_TARGET_BRANCH: Final[str] = "main"
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "agent"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
MANIFEST_SCHEMA_VERSION: Final[int] = 1
AUDIT_RECORD_SCHEMA_VERSION: Final[int] = 1
RUN_REPORT_SCHEMA_VERSION: Final[int] = 1

# Default log directory (relative to the config file unless absolute).
LOG_DIR: Final[PurePosixPath] = PurePosixPath("logs")

# Central authority allowed to touch restricted paths.
DEFAULT_RESTRICTED_AUTHORITY: Final[str] = "ProjectManager"

# Lockfile naming conventions across ecosystems.
DEFAULT_LOCKFILE_PATTERNS: Final[tuple[str, ...]] = (
    "**/pnpm-lock.yaml",
    "**/yarn.lock",
    "**/package-lock.json",
    "**/npm-shrinkwrap.json",
    "**/poetry.lock",
    "**/uv.lock",
    "**/Pipfile.lock",
    "**/Cargo.lock",
    "**/Gemfile.lock",
    "**/composer.lock",
    "**/go.sum",
    "**/*.lock",
)

# Merge precedence by department (lower merges first).
DEPARTMENT_PRIORITY: Final[dict[str, int]] = {
    "backend": 1,
    "api": 1,
    "database": 1,
    "data": 1,
    "frontend": 2,
    "ui": 2,
    "ux": 2,
    "mobile": 2,
    "qa": 3,
    "test": 3,
    "e2e": 3,
    "docs": 4,
    "documentation": 4,
}
DEFAULT_DEPARTMENT_PRIORITY: Final[int] = 2

__all__ = [
    "AUDIT_RECORD_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_BASE_REF",
    "DEFAULT_DEPARTMENT_PRIORITY",
    "DEFAULT_LOCKFILE_PATTERNS",
    "DEFAULT_RESTRICTED_AUTHORITY",
    "DEFAULT_TARGET_BRANCH",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "DEPARTMENT_PRIORITY",
    "LOG_DIR",
    "MANIFEST_SCHEMA_VERSION",
    "RUN_REPORT_SCHEMA_VERSION",
]
