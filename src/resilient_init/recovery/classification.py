"""
Failure classification for guarded initialization runs.

Classification is a pure function of the failure (its type and message)
plus one environment query. Matching is a case-insensitive substring test,
which is sufficient for the installer and loader messages we see in the
field (``ENOTEMPTY`` from a half-removed cache entry, a native package that
cannot be found after an interrupted install, an ABI mismatch after a
runtime upgrade).

Order of evaluation:

  1. DEPENDENCY_UNAVAILABLE  - native dependency is present but unusable
  2. CACHE_CORRUPTION        - directory-not-empty or missing native package
  3. ENVIRONMENT_DEGRADED    - host has known filesystem quirks
  4. UNCLASSIFIED            - everything else
"""

from __future__ import annotations

import errno
import logging
import re
from enum import Enum
from typing import Iterable, Optional, Protocol

from resilient_init.exceptions import DependencyUnavailableError

logger = logging.getLogger("resilient-init.recovery.classification")


class ErrorClassification(str, Enum):
    """Closed set of failure classes driving remediation."""

    CACHE_CORRUPTION = "cache_corruption"
    ENVIRONMENT_DEGRADED = "environment_degraded"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    UNCLASSIFIED = "unclassified"

    @property
    def remediable(self) -> bool:
        """Whether a remediation action runs between retries for this class."""
        return self is ErrorClassification.CACHE_CORRUPTION


class DegradedEnvironmentProbe(Protocol):
    def is_degraded_environment(self) -> bool: ...


DEFAULT_NATIVE_PACKAGES: tuple[str, ...] = ("better-sqlite3", "sqlite3", "_sqlite3")

DIRECTORY_NOT_EMPTY_PATTERNS: tuple[str, ...] = (
    "enotempty",
    "directory not empty",
    "errno 39",
)

MISSING_MODULE_PATTERNS: tuple[str, ...] = (
    "cannot find module",
    "no module named",
    "module not found",
    "could not locate the bindings file",
    "failed to load",
    "not available",
)

NATIVE_MISMATCH_PATTERNS: tuple[str, ...] = (
    "node_module_version",
    "was compiled against a different",
    "re-compiling or re-installing the module",
    "undefined symbol",
    "wrong elf class",
    "incompatible architecture",
)


def _message_of(error: BaseException) -> str:
    return str(error).lower()


def is_directory_not_empty_error(error: BaseException) -> bool:
    """Detect a directory-not-empty failure from a partially removed cache entry."""
    if isinstance(error, OSError) and error.errno == errno.ENOTEMPTY:
        return True
    message = _message_of(error)
    return any(pattern in message for pattern in DIRECTORY_NOT_EMPTY_PATTERNS)


def is_native_mismatch_error(error: BaseException) -> bool:
    """Detect a native module built for a different runtime ABI."""
    message = _message_of(error)
    return any(pattern in message for pattern in NATIVE_MISMATCH_PATTERNS)


def is_missing_native_package_error(
    error: BaseException,
    native_packages: Iterable[str] = DEFAULT_NATIVE_PACKAGES,
) -> bool:
    """Detect a known native package reported missing.

    Both halves must match: the package name and a missing-module symptom.
    """
    message = _message_of(error)
    if isinstance(error, ModuleNotFoundError) and error.name:
        names = {error.name.lower()}
    else:
        names = set()
    mentions_package = any(
        pkg.lower() in message or pkg.lower() in names for pkg in native_packages
    )
    if not mentions_package:
        return False
    if isinstance(error, ImportError):
        return True
    return any(pattern in message for pattern in MISSING_MODULE_PATTERNS)


class ErrorClassifier:
    """Assigns an ErrorClassification to an observed failure.

    Args:
        native_packages: Package names treated as native dependencies.
        probe: Optional environment probe; when it reports a degraded host,
            otherwise-unmatched failures are classified ENVIRONMENT_DEGRADED.
    """

    def __init__(
        self,
        native_packages: Iterable[str] = DEFAULT_NATIVE_PACKAGES,
        probe: Optional[DegradedEnvironmentProbe] = None,
    ) -> None:
        self.native_packages = tuple(native_packages)
        self.probe = probe

    def classify(self, error: BaseException) -> ErrorClassification:
        """Classify a failure.

        Args:
            error: The exception raised by the guarded operation.

        Returns:
            The matching ErrorClassification.
        """
        if isinstance(error, DependencyUnavailableError) or is_native_mismatch_error(error):
            classification = ErrorClassification.DEPENDENCY_UNAVAILABLE
        elif is_directory_not_empty_error(error) or is_missing_native_package_error(
            error, self.native_packages
        ):
            classification = ErrorClassification.CACHE_CORRUPTION
        elif self.probe is not None and self.probe.is_degraded_environment():
            classification = ErrorClassification.ENVIRONMENT_DEGRADED
        else:
            classification = ErrorClassification.UNCLASSIFIED

        logger.debug("Classified %s as %s", type(error).__name__, classification.value)
        return classification


# Runtime ABI numbers seen in native module mismatch messages
_ABI_VERSION_MAP: dict[str, str] = {
    "108": "18.x",
    "115": "20.x",
    "120": "21.x",
    "127": "22.x",
    "131": "23.x",
}


def native_module_recovery_message(error: BaseException) -> str:
    """Build a suggestion for recovering from a native module mismatch.

    When the error names both the compiled and the required ABI versions,
    the message includes the runtime versions they correspond to.

    Args:
        error: The failure raised while loading the native module.

    Returns:
        Multi-line human-readable guidance.
    """
    text = str(error)
    compiled = re.search(r"NODE_MODULE_VERSION (\d+)", text)
    required = re.search(r"requires\s+NODE_MODULE_VERSION (\d+)", text)

    lines = ["Native module version mismatch detected."]
    if compiled and required:
        built_for = _ABI_VERSION_MAP.get(compiled.group(1), f"ABI {compiled.group(1)}")
        running = _ABI_VERSION_MAP.get(required.group(1), f"ABI {required.group(1)}")
        lines.append(f"  Module was compiled for runtime {built_for}, but running {running}.")

    lines.extend(
        [
            "",
            "  To fix this, try one of:",
            "  1. Rebuild the native module (e.g. npm rebuild better-sqlite3)",
            "  2. Remove installed modules and reinstall them",
            "  3. Clear the installer cache (resilient-init clean-cache) and run again",
        ]
    )
    return "\n".join(lines)


__all__ = [
    "DEFAULT_NATIVE_PACKAGES",
    "ErrorClassification",
    "ErrorClassifier",
    "is_directory_not_empty_error",
    "is_missing_native_package_error",
    "is_native_mismatch_error",
    "native_module_recovery_message",
]
