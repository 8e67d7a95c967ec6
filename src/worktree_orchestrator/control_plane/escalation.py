"""One-way escalation channel for failed critical tasks."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog


@dataclass(frozen=True, slots=True)
class EscalationEvent:
    run_id: str
    agent: str
    task_id: str
    reason: str
    details: dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))


class EscalationSink(Protocol):
    def notify(self, event: EscalationEvent) -> None: ...


class LoggingEscalationSink:
    """Default sink: escalations become error-level log events."""

    def __init__(self, *, logger: Any | None = None) -> None:
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def notify(self, event: EscalationEvent) -> None:
        self._logger.error(
            "critical_task_escalated",
            run_id=event.run_id,
            agent=event.agent,
            task_id=event.task_id,
            reason=event.reason,
            details=event.details,
        )


def deliver(sink: EscalationSink, event: EscalationEvent, *, logger: Any | None = None) -> bool:
    """Fire-and-forget delivery; sink failures are logged and reported as ``False``."""

    log = logger if logger is not None else structlog.get_logger(__name__)
    try:
        sink.notify(event)
    except Exception as exc:  # noqa: BLE001
        log.warning(
            "escalation_delivery_failed",
            agent=event.agent,
            task_id=event.task_id,
            error=f"{type(exc).__name__}: {exc}",
        )
        return False
    return True


__all__ = ["EscalationEvent", "EscalationSink", "LoggingEscalationSink", "deliver"]
