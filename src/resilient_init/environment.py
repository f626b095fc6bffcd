"""
Host environment detection for initialization recovery.

Detects execution modes with known filesystem quirks: Windows Subsystem
for Linux (WSL), and working directories on a Windows drive mounted into
WSL (``/mnt/<drive>``) where file locking and rename semantics differ.
All functions here are pure queries with no side effects.
"""

import logging
import os
import platform
import shutil
from pathlib import Path
from typing import Optional

logger = logging.getLogger("resilient-init.environment")

_PROC_VERSION = Path("/proc/version")
_WINDOWS_MOUNT_PREFIX = "/mnt/"
_BUILD_TOOLS = ("gcc", "make")


def _read_proc_version() -> str:
    try:
        return _PROC_VERSION.read_text(encoding="utf-8", errors="replace").lower()
    except OSError:
        return ""


def is_wsl() -> bool:
    """Detect if running under Windows Subsystem for Linux.

    Returns:
        True if the kernel reports a Microsoft/WSL build.
    """
    if platform.system() != "Linux":
        return False
    release = _read_proc_version()
    return "microsoft" in release or "wsl" in release


def is_cross_filesystem_mount(path: Optional[Path] = None) -> bool:
    """Detect a working directory on a Windows drive mounted into WSL.

    Args:
        path: Directory to check. Defaults to the current working directory.

    Returns:
        True if running under WSL and ``path`` lives under ``/mnt/``.
    """
    if not is_wsl():
        return False
    target = str(path if path is not None else os.getcwd())
    return target.startswith(_WINDOWS_MOUNT_PREFIX)


def has_build_toolchain() -> bool:
    """Check whether a native build toolchain is on PATH.

    Native modules that have to be compiled during install need a C
    compiler and make.
    """
    return all(shutil.which(tool) is not None for tool in _BUILD_TOOLS)


def get_environment_info(path: Optional[Path] = None) -> dict[str, str]:
    """Get a summary of the host environment relevant to initialization.

    Returns:
        Dictionary with environment details:
        - "platform": Operating system name.
        - "machine": CPU architecture.
        - "python": Python version.
        - "wsl": "yes" or "no".
        - "cross_filesystem_mount": "yes" or "no".
        - "build_toolchain": "yes" or "no".
        - "cwd": Directory that was checked.
    """
    cwd = path if path is not None else Path(os.getcwd())
    return {
        "platform": platform.system(),
        "machine": platform.machine(),
        "python": platform.python_version(),
        "wsl": "yes" if is_wsl() else "no",
        "cross_filesystem_mount": "yes" if is_cross_filesystem_mount(cwd) else "no",
        "build_toolchain": "yes" if has_build_toolchain() else "no",
        "cwd": str(cwd),
    }


class EnvironmentProbe:
    """Injectable probe over the detection functions.

    The recovery runner consumes this interface only, so tests and callers
    can substitute their own answers.

    Args:
        cwd: Working directory to evaluate. Defaults to the process cwd at
            query time.
    """

    def __init__(self, cwd: Optional[Path] = None) -> None:
        self.cwd = cwd

    def is_compatibility_layer(self) -> bool:
        """True when running under a compatibility layer (WSL)."""
        return is_wsl()

    def cwd_is_cross_filesystem_mount(self) -> bool:
        """True when the working directory is on a cross-filesystem mount."""
        return is_cross_filesystem_mount(self.cwd)

    def is_degraded_environment(self) -> bool:
        """True when the host is in a known-problematic execution mode."""
        degraded = self.is_compatibility_layer() or self.cwd_is_cross_filesystem_mount()
        if degraded:
            logger.debug("Degraded environment detected (wsl=%s)", self.is_compatibility_layer())
        return degraded


class StaticEnvironmentProbe(EnvironmentProbe):
    """Probe with fixed answers, for configuration overrides and tests.

    Args:
        compatibility_layer: Value reported by is_compatibility_layer().
        cross_filesystem_mount: Value reported by cwd_is_cross_filesystem_mount().
    """

    def __init__(
        self,
        compatibility_layer: bool = False,
        cross_filesystem_mount: bool = False,
    ) -> None:
        super().__init__()
        self._compatibility_layer = compatibility_layer
        self._cross_filesystem_mount = cross_filesystem_mount

    def is_compatibility_layer(self) -> bool:
        return self._compatibility_layer

    def cwd_is_cross_filesystem_mount(self) -> bool:
        return self._cross_filesystem_mount
