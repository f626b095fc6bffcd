"""
Structured events emitted by the recovery runner and storage selector.

Library code never prints. It writes RecoveryEvent records to an injected
sink; the caller owns formatting and destination. ``logging_sink`` is the
default and forwards events to the ``resilient-init.events`` logger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from resilient_init.recovery.classification import ErrorClassification

logger = logging.getLogger("resilient-init.events")


class EventKind(str, Enum):
    """Kinds of events a guarded run can emit."""

    RUN_STARTED = "run_started"
    ENVIRONMENT_NORMALIZED = "environment_normalized"
    ATTEMPT_STARTED = "attempt_started"
    ATTEMPT_FAILED = "attempt_failed"
    REMEDIATION_APPLIED = "remediation_applied"
    BACKOFF = "backoff"
    OBSERVER_FAILED = "observer_failed"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    STORAGE_SELECTED = "storage_selected"
    STORAGE_DOWNGRADED = "storage_downgraded"
    STORAGE_PROMOTED = "storage_promoted"


@dataclass
class RecoveryEvent:
    """A single structured event.

    Attributes:
        kind: What happened
        run_id: Identifier of the guarded run (empty for selector events)
        attempt: Attempt index the event belongs to (0 when not attempt-bound)
        classification: Failure classification, when relevant
        message: Short human-readable description
        data: Extra structured fields (delay, remediation outcome, ...)
        timestamp: When the event was created
    """

    kind: EventKind
    run_id: str = ""
    attempt: int = 0
    classification: Optional[ErrorClassification] = None
    message: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


EventSink = Callable[[RecoveryEvent], None]

_WARNING_KINDS = {
    EventKind.ATTEMPT_FAILED,
    EventKind.OBSERVER_FAILED,
    EventKind.EXHAUSTED,
    EventKind.STORAGE_DOWNGRADED,
}


def logging_sink(event: RecoveryEvent) -> None:
    """Forward an event to the ``resilient-init.events`` logger."""
    level = logging.WARNING if event.kind in _WARNING_KINDS else logging.INFO
    logger.log(
        level,
        "[%s] %s attempt=%d %s",
        event.run_id or "-",
        event.kind.value,
        event.attempt,
        event.message,
    )


class CollectingSink:
    """Sink that keeps every event in memory.

    Useful for diagnostics dumps and tests.
    """

    def __init__(self) -> None:
        self.events: list[RecoveryEvent] = []

    def __call__(self, event: RecoveryEvent) -> None:
        self.events.append(event)

    def of_kind(self, kind: EventKind) -> list[RecoveryEvent]:
        return [e for e in self.events if e.kind == kind]

    def kinds(self) -> list[EventKind]:
        return [e.kind for e in self.events]

    def clear(self) -> None:
        self.events.clear()


def emit(sink: Optional[EventSink], event: RecoveryEvent) -> None:
    """Deliver an event to a sink; sink failures are logged, never raised."""
    if sink is None:
        return
    try:
        sink(event)
    except Exception as exc:
        logger.warning("Event sink failed on %s: %s", event.kind.value, exc)


__all__ = [
    "CollectingSink",
    "EventKind",
    "EventSink",
    "RecoveryEvent",
    "emit",
    "logging_sink",
]
