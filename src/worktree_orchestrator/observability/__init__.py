"""Observability exports: structlog configuration and correlation helpers."""

from worktree_orchestrator.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_logging,
    correlation_scope,
    get_logger,
    redact_event_dict,
    redact_text,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "LoggingHandle",
    "configure_logging",
    "correlation_scope",
    "get_logger",
    "redact_event_dict",
    "redact_text",
    "shutdown_logging",
]
