"""
Exception hierarchy for resilient-init.

All errors raised by the package derive from ResilientInitError, which
carries a human-readable message plus a ``details`` dict for diagnostics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from resilient_init.recovery import RecoveryResult
    from resilient_init.recovery.classification import ErrorClassification
    from resilient_init.recovery.remediation import RemediationAction


class ResilientInitError(Exception):
    """Base exception for all resilient-init errors.

    Attributes:
        details: Structured context about the failure.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class ConfigurationError(ResilientInitError):
    """Raised when configuration values are missing or invalid."""


# ----------------------------------------------------------------------
# Recovery
# ----------------------------------------------------------------------


class RecoveryError(ResilientInitError):
    """Base class for terminal outcomes of a guarded run."""


class RecoveryExhaustedError(RecoveryError):
    """Raised (or returned) when every attempt of a guarded run failed.

    Attributes:
        attempts: Number of times the operation was invoked.
        last_error: The exception raised by the final attempt.
        classification: Classification of the final failure.
        remediations: Ordered remediation actions tried during the run.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException,
        classification: ErrorClassification | None = None,
        remediations: list[RemediationAction] | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.attempts = attempts
        self.last_error = last_error
        self.classification = classification
        self.remediations = list(remediations or [])


class RecoveryCancelledError(RecoveryError):
    """Raised when a guarded run was cancelled between attempts.

    Attributes:
        attempts: Number of times the operation was invoked before cancellation.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.attempts = attempts


# ----------------------------------------------------------------------
# Storage
# ----------------------------------------------------------------------


class StorageError(ResilientInitError):
    """Base class for storage backend errors."""


class DependencyUnavailableError(StorageError):
    """The native dependency of a storage backend cannot be loaded.

    Attributes:
        dependency: Name of the missing or broken dependency.
    """

    def __init__(
        self,
        message: str,
        *,
        dependency: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.dependency = dependency


class StorageUnavailableError(StorageError):
    """Neither the primary nor the fallback store could be initialized.

    This is fatal for the process: no empty handle is ever substituted.

    Attributes:
        primary_result: Recovery result of the primary initialization.
        fallback_result: Recovery result of the fallback initialization.
    """

    def __init__(
        self,
        message: str,
        *,
        primary_result: RecoveryResult | None = None,
        fallback_result: RecoveryResult | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.primary_result = primary_result
        self.fallback_result = fallback_result


__all__ = [
    "ResilientInitError",
    "ConfigurationError",
    "RecoveryError",
    "RecoveryExhaustedError",
    "RecoveryCancelledError",
    "StorageError",
    "DependencyUnavailableError",
    "StorageUnavailableError",
]
