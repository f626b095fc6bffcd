"""
Error recovery subsystem for fallible initialization sequences.

This package provides:
- Closed-set classification of initialization failures
- Idempotent remediation actions (installer cache cleanup, permission fixes)
- A retry runner with classification-driven remediation and doubling backoff
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from resilient_init.exceptions import RecoveryError
from resilient_init.recovery.classification import ErrorClassification
from resilient_init.recovery.remediation import RemediationAction, RemediationOutcome

T = TypeVar("T")


class RecoveryStatus(str, Enum):
    """Terminal status of a guarded run."""

    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass
class RecoveryAttempt:
    """One try of the guarded operation.

    Attributes:
        index: 1-based attempt number
        previous_error: Error observed on the previous attempt (None for the first)
        delay_before: Seconds waited before this attempt
        remediated: Whether a remediation action ran before this attempt
    """

    index: int
    previous_error: BaseException | None = None
    delay_before: float = 0.0
    remediated: bool = False


@dataclass
class RecoveryResult(Generic[T]):
    """Result of a guarded run.

    Attributes:
        status: Terminal status of the run
        value: Value produced by the operation (only when succeeded)
        error: Terminal error for exhausted or cancelled runs
        attempts: Number of times the operation was invoked
        classification: Classification of the last observed failure
        remediations: Ordered remediation actions tried during the run
        attempt_log: Every attempt made, in order
        run_id: Identifier carried by every event emitted for this run
    """

    status: RecoveryStatus
    value: T | None = None
    error: RecoveryError | None = None
    attempts: int = 0
    classification: ErrorClassification | None = None
    remediations: list[RemediationAction] = field(default_factory=list)
    attempt_log: list[RecoveryAttempt] = field(default_factory=list)
    run_id: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == RecoveryStatus.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.status == RecoveryStatus.CANCELLED

    @property
    def exhausted(self) -> bool:
        return self.status == RecoveryStatus.EXHAUSTED

    def unwrap(self) -> T:
        """Return the produced value, or raise the terminal error."""
        if self.status == RecoveryStatus.SUCCEEDED:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise RecoveryError(f"Run ended with status {self.status.value} but recorded no error")
        raise self.error

    def summary(self) -> dict[str, Any]:
        """Diagnostic summary suitable for logging or JSON output."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "classification": self.classification.value if self.classification else None,
            "remediations": [r.to_dict() for r in self.remediations],
            "error": str(self.error) if self.error else None,
        }


__all__ = [
    "ErrorClassification",
    "RecoveryAttempt",
    "RecoveryResult",
    "RecoveryStatus",
    "RemediationAction",
    "RemediationOutcome",
]
