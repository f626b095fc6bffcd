"""
Remediation actions applied between retries of a guarded run.

Every action here mutates the filesystem and is idempotent: running it
against an already-clean cache or already-normalized directory succeeds
again without changing anything. Actions never raise; failures are
reported through the returned RemediationAction so the retry loop can
carry on.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence

from resilient_init.recovery.classification import ErrorClassification

logger = logging.getLogger("resilient-init.recovery.remediation")

CLEAN_COMMAND_TIMEOUT = 120


class RemediationOutcome(str, Enum):
    """Result of a single remediation step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class RemediationAction:
    """One corrective step and its result.

    Attributes:
        name: Step identifier ("clean-cache", "fix-permissions", ...)
        outcome: Whether the step succeeded, failed, or did not apply
        detail: Human-readable description of what happened
        classification: Failure class that triggered the step
        attempt: Attempt index the step preceded (0 for proactive steps)
    """

    name: str
    outcome: RemediationOutcome
    detail: str = ""
    classification: Optional[ErrorClassification] = None
    attempt: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == RemediationOutcome.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "detail": self.detail,
            "classification": self.classification.value if self.classification else None,
            "attempt": self.attempt,
        }


class CacheCleaner:
    """Clears the installer's on-disk cache for the affected package tree.

    Args:
        cache_root: Root of the installer cache (e.g. ``~/.npm``).
        subdirs: Subtrees under ``cache_root`` to remove. An empty sequence
            removes the contents of ``cache_root`` itself.
        clean_command: Optional installer command run first
            (e.g. ``["npm", "cache", "clean", "--force"]``). Its failure is
            logged and the directory cleanup still runs.
    """

    name = "clean-cache"

    def __init__(
        self,
        cache_root: Path,
        subdirs: Sequence[str] = ("_npx",),
        clean_command: Optional[Sequence[str]] = None,
    ) -> None:
        self.cache_root = Path(cache_root).expanduser()
        self.subdirs = tuple(subdirs)
        self.clean_command = list(clean_command) if clean_command else None

    def _is_contained(self, target: Path) -> bool:
        """True if ``target`` lies strictly inside ``cache_root``.

        Parent components are resolved, so a symlinked directory on the way
        cannot lead outside the cache. The final component itself may be a
        symlink; it is unlinked, never followed.
        """
        normalized = Path(os.path.normpath(target))
        if normalized.name in ("", ".", ".."):
            return False
        root = self.cache_root.resolve()
        location = normalized.parent.resolve() / normalized.name
        return location != root and root in location.parents

    def _targets(self) -> list[Path]:
        if self.subdirs:
            return [Path(os.path.normpath(self.cache_root / sub)) for sub in self.subdirs]
        if not self.cache_root.is_dir():
            return []
        return sorted(self.cache_root.iterdir())

    def _run_clean_command(self) -> Optional[str]:
        """Run the installer clean command, returning an error string on failure."""
        if not self.clean_command:
            return None
        try:
            result = subprocess.run(
                self.clean_command,
                capture_output=True, text=True, timeout=CLEAN_COMMAND_TIMEOUT,
            )
        except FileNotFoundError:
            return f"{self.clean_command[0]} not found"
        except subprocess.TimeoutExpired:
            return "clean command timed out"
        if result.returncode != 0:
            return f"clean command exited with {result.returncode}: {result.stderr.strip()}"
        return None

    def clean(self) -> RemediationAction:
        """Remove the cache subtrees.

        Returns:
            RemediationAction describing what was removed. Missing targets
            count as already clean.
        """
        notes: list[str] = []

        command_error = self._run_clean_command()
        if command_error:
            logger.warning("Installer cache clean command failed, continuing: %s", command_error)
            notes.append(command_error)

        targets = self._targets()
        escaping = [str(t) for t in targets if not self._is_contained(t)]
        if escaping:
            logger.warning("Refusing to clean paths outside %s: %s", self.cache_root, ", ".join(escaping))
            return RemediationAction(
                name=self.name,
                outcome=RemediationOutcome.FAILED,
                detail=f"Refusing to remove paths outside the cache root: {', '.join(escaping)}",
            )

        removed: list[str] = []
        try:
            for target in targets:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                    removed.append(str(target))
                elif target.exists() or target.is_symlink():
                    target.unlink()
                    removed.append(str(target))
        except OSError as exc:
            logger.warning("Failed to clean cache at %s: %s", self.cache_root, exc)
            return RemediationAction(
                name=self.name,
                outcome=RemediationOutcome.FAILED,
                detail=f"Failed to clean cache: {exc}",
            )

        if removed:
            logger.info("Removed cache entries: %s", ", ".join(removed))
            notes.append(f"removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")
        else:
            logger.debug("Cache at %s already clean", self.cache_root)
            notes.append("cache already clean")

        return RemediationAction(
            name=self.name,
            outcome=RemediationOutcome.SUCCEEDED,
            detail="; ".join(notes),
        )


class PermissionFixer:
    """Normalizes permissions of a directory tree (``chmod -R <mode>``).

    Args:
        root: Directory to normalize.
        mode: Permission bits applied to every entry.
    """

    name = "fix-permissions"

    def __init__(self, root: Path, mode: int = 0o755) -> None:
        self.root = Path(root).expanduser()
        self.mode = mode

    def fix(self) -> RemediationAction:
        """Apply ``mode`` recursively under ``root``."""
        if not self.root.exists():
            return RemediationAction(
                name=self.name,
                outcome=RemediationOutcome.NOT_APPLICABLE,
                detail=f"{self.root} does not exist",
            )

        changed = 0
        try:
            os.chmod(self.root, self.mode)
            for dirpath, dirnames, filenames in os.walk(self.root):
                for entry in dirnames + filenames:
                    path = os.path.join(dirpath, entry)
                    if os.path.islink(path):
                        continue
                    os.chmod(path, self.mode)
                    changed += 1
        except OSError as exc:
            logger.warning("Permission fix failed on %s: %s", self.root, exc)
            return RemediationAction(
                name=self.name,
                outcome=RemediationOutcome.FAILED,
                detail=f"Permission fix failed: {exc}",
            )

        logger.info("Normalized permissions on %s (%d entries)", self.root, changed)
        return RemediationAction(
            name=self.name,
            outcome=RemediationOutcome.SUCCEEDED,
            detail=f"mode {oct(self.mode)} applied to {self.root}",
        )


__all__ = [
    "CacheCleaner",
    "PermissionFixer",
    "RemediationAction",
    "RemediationOutcome",
]
