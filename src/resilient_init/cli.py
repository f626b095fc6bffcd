"""
Command line interface for resilient-init.

Usage:
    resilient-init init [--force] [--data-dir PATH] [--cache-root PATH] [--json-only]
    resilient-init env
    resilient-init clean-cache [--cache-root PATH]

Exit codes:
    0   success (including a downgrade to the fallback store)
    1   fatal failure
    130 cancelled (Ctrl-C)
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional, TextIO

from filelock import FileLock, Timeout

from resilient_init.config import RecoveryConfig, load_config
from resilient_init.environment import EnvironmentProbe, get_environment_info, has_build_toolchain
from resilient_init.events import EventKind, RecoveryEvent, logging_sink
from resilient_init.exceptions import (
    RecoveryCancelledError,
    ResilientInitError,
    StorageUnavailableError,
)
from resilient_init.recovery.classification import is_native_mismatch_error, native_module_recovery_message
from resilient_init.recovery.remediation import RemediationOutcome
from resilient_init.recovery.runner import RecoveryRunner
from resilient_init.storage.selector import StorageSelector

logger = logging.getLogger("resilient-init.cli")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CANCELLED = 130

LOCK_TIMEOUT = 60.0


class ConsoleSink:
    """Event sink printing progress lines for the user.

    Also forwards every event to ``logging_sink`` so ``--verbose`` shows the
    full structured trail.
    """

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stdout

    def _print(self, text: str) -> None:
        print(text, file=self.stream)

    def __call__(self, event: RecoveryEvent) -> None:
        logging_sink(event)
        if event.kind == EventKind.ATTEMPT_FAILED:
            self._print(f"  attempt {event.attempt} failed ({event.classification.value}): {event.message}")
        elif event.kind == EventKind.REMEDIATION_APPLIED:
            self._print(f"  remediation {event.message}")
        elif event.kind == EventKind.BACKOFF:
            self._print(f"  retrying in {event.data.get('delay', 0):g}s (attempt {event.attempt})")
        elif event.kind == EventKind.ENVIRONMENT_NORMALIZED:
            self._print("  normalized cache permissions for this environment")
        elif event.kind == EventKind.STORAGE_SELECTED:
            self._print(f"Storage: {event.data.get('backend')} at {event.data.get('path')}")
        elif event.kind == EventKind.STORAGE_DOWNGRADED:
            self._print(f"Storage downgraded to {event.data.get('backend')} at {event.data.get('path')}")
            self._print(f"  reason: {event.data.get('reason')}")


def _print_environment_warnings(probe: EnvironmentProbe, stream: TextIO) -> None:
    if not probe.is_compatibility_layer():
        return
    print("WSL environment detected.", file=stream)
    if probe.cwd_is_cross_filesystem_mount():
        print(
            "  Warning: running from a Windows filesystem mount (/mnt/...).\n"
            "  For best results, work from the Linux filesystem (e.g. ~/projects).",
            file=stream,
        )
    if not has_build_toolchain():
        print(
            "  Warning: build tools (gcc, make) not found; native modules may fail to build.\n"
            "  Install them with your package manager (e.g. sudo apt-get install build-essential).",
            file=stream,
        )


def _build_config(args: argparse.Namespace) -> RecoveryConfig:
    overrides = {
        "config_file": args.config,
        "cache_root": args.cache_root,
    }
    if getattr(args, "data_dir", None) is not None:
        overrides["data_dir"] = args.data_dir
    if getattr(args, "force", False):
        overrides["force"] = True
    if getattr(args, "json_only", False):
        overrides["force_fallback"] = True
    return load_config(**overrides)


async def _initialize(selector: StorageSelector) -> None:
    selection = await selector.initialize()
    try:
        entries = selection.handle.list()
        logger.debug("Active store holds %d entries in the default namespace", len(entries))
    finally:
        selector.close()


def cmd_init(args: argparse.Namespace, stream: TextIO) -> int:
    """Initialize storage with recovery and fallback."""
    config = _build_config(args)
    probe = EnvironmentProbe()
    _print_environment_warnings(probe, stream)

    runner = RecoveryRunner(config, probe=probe, event_sink=ConsoleSink(stream))
    selector = StorageSelector(runner, config)

    print(f"Initializing storage in {config.data_dir} (max {config.effective_max_attempts} attempts)", file=stream)
    lock = FileLock(str(config.cache_lock_path), timeout=LOCK_TIMEOUT)
    try:
        with lock:
            asyncio.run(_initialize(selector))
    except Timeout:
        print(f"Error: another initialization holds {config.cache_lock_path}", file=stream)
        return EXIT_FAILURE
    except RecoveryCancelledError:
        print("Initialization cancelled.", file=stream)
        return EXIT_CANCELLED
    except StorageUnavailableError as exc:
        print(f"Error: {exc}", file=stream)
        primary = exc.primary_result
        last_error = getattr(primary.error, "last_error", None) if primary is not None else None
        if last_error is not None and is_native_mismatch_error(last_error):
            print(native_module_recovery_message(last_error), file=stream)
        if not config.force:
            print("Try again with --force for more recovery attempts.", file=stream)
        return EXIT_FAILURE

    selection = selector.selection
    if selection is not None and selection.downgraded:
        print("Initialization completed with the fallback store.", file=stream)
    else:
        print("Initialization completed.", file=stream)
    return EXIT_OK


def cmd_env(args: argparse.Namespace, stream: TextIO) -> int:
    """Print environment details relevant to initialization."""
    for key, value in get_environment_info().items():
        print(f"{key}: {value}", file=stream)
    return EXIT_OK


def cmd_clean_cache(args: argparse.Namespace, stream: TextIO) -> int:
    """Run the cache cleanup (and the permission fix on WSL) once."""
    config = _build_config(args)
    probe = EnvironmentProbe()
    runner = RecoveryRunner(config, probe=probe, event_sink=logging_sink)

    lock = FileLock(str(config.cache_lock_path), timeout=LOCK_TIMEOUT)
    try:
        with lock:
            actions = [runner.cache_cleaner.clean()]
            if probe.is_compatibility_layer():
                actions.append(runner.permission_fixer.fix())
    except Timeout:
        print(f"Error: another process holds {config.cache_lock_path}", file=stream)
        return EXIT_FAILURE

    for action in actions:
        print(f"{action.name}: {action.outcome.value} {action.detail}".rstrip(), file=stream)
    failed = any(a.outcome == RemediationOutcome.FAILED for a in actions)
    return EXIT_FAILURE if failed else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="resilient-init",
        description="Recoverable initialization with a storage fallback",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Initialize storage, retrying with recovery
  resilient-init init

  # More aggressive recovery (5 attempts)
  resilient-init init --force

  # Skip the native store entirely
  resilient-init init --json-only --data-dir /path/to/data
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize storage")
    init_parser.add_argument("--force", action="store_true", help="Use more recovery attempts")
    init_parser.add_argument("--data-dir", type=Path, default=None, help="Directory holding the stores")
    init_parser.add_argument("--cache-root", type=Path, default=None, help="Installer cache root")
    init_parser.add_argument(
        "--json-only", action="store_true", help="Use the JSON fallback store without trying the primary"
    )
    init_parser.set_defaults(handler=cmd_init)

    env_parser = subparsers.add_parser("env", help="Show environment information")
    env_parser.set_defaults(handler=cmd_env)

    clean_parser = subparsers.add_parser("clean-cache", help="Clear the installer cache")
    clean_parser.add_argument("--cache-root", type=Path, default=None, help="Installer cache root")
    clean_parser.set_defaults(handler=cmd_clean_cache)

    return parser


def _configure_logging(verbose: bool) -> None:
    level_name = "DEBUG" if verbose else os.environ.get("RESILIENT_INIT_LOG_LEVEL", "WARNING")
    logging.basicConfig(
        level=getattr(logging, level_name.upper(), logging.WARNING),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def main(argv: Optional[list[str]] = None, stream: Optional[TextIO] = None) -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    stream = stream or sys.stdout

    try:
        return args.handler(args, stream)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=stream)
        return EXIT_CANCELLED
    except ResilientInitError as exc:
        print(f"Error: {exc}", file=stream)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
