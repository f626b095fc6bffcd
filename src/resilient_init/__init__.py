"""
resilient-init - recoverable initialization with a storage fallback.

Runs fallible setup operations under classification-driven remediation and
bounded retry, and downgrades from a native primary store to a plain JSON
store when the primary cannot be brought up.
"""

from .config import RecoveryConfig, load_config
from .events import CollectingSink, EventKind, RecoveryEvent, logging_sink
from .exceptions import (
    ConfigurationError,
    DependencyUnavailableError,
    RecoveryCancelledError,
    RecoveryError,
    RecoveryExhaustedError,
    ResilientInitError,
    StorageError,
    StorageUnavailableError,
)
from .recovery import ErrorClassification, RecoveryResult, RecoveryStatus
from .recovery.runner import RecoveryRunner, RunOptions, run_with_recovery
from .storage import StorageHandle, StorageSelection, StorageSelector, select_storage

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("resilient-init")
except Exception:
    __version__ = "0.1.0"  # Fallback if metadata unavailable

__all__ = [
    "CollectingSink",
    "ConfigurationError",
    "DependencyUnavailableError",
    "ErrorClassification",
    "EventKind",
    "RecoveryCancelledError",
    "RecoveryConfig",
    "RecoveryError",
    "RecoveryEvent",
    "RecoveryExhaustedError",
    "RecoveryResult",
    "RecoveryRunner",
    "RecoveryStatus",
    "ResilientInitError",
    "RunOptions",
    "StorageError",
    "StorageHandle",
    "StorageSelection",
    "StorageSelector",
    "StorageUnavailableError",
    "load_config",
    "logging_sink",
    "run_with_recovery",
    "select_storage",
]
