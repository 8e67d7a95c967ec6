"""Control-plane public API."""

from worktree_orchestrator.control_plane.escalation import (
    EscalationEvent,
    EscalationSink,
    LoggingEscalationSink,
    deliver,
)
from worktree_orchestrator.control_plane.orchestrator import (
    AgentAssignment,
    AgentCapability,
    Orchestrator,
    RunPhase,
    RunReport,
)

__all__ = [
    "AgentAssignment",
    "AgentCapability",
    "EscalationEvent",
    "EscalationSink",
    "LoggingEscalationSink",
    "Orchestrator",
    "RunPhase",
    "RunReport",
    "deliver",
]
