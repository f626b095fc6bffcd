"""
Tests for the resilient-init command line interface.
"""

import io
import os
from unittest.mock import AsyncMock, patch

import pytest

from resilient_init.cli import EXIT_CANCELLED, EXIT_FAILURE, EXIT_OK, build_parser, main
from resilient_init.environment import StaticEnvironmentProbe
from resilient_init.exceptions import DependencyUnavailableError, RecoveryCancelledError


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Run every CLI test from an empty directory with no RESILIENT_INIT_* settings."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("RESILIENT_INIT_"):
            monkeypatch.delenv(name)
    monkeypatch.setenv("RESILIENT_INIT_INITIAL_DELAY", "0")


@pytest.fixture
def healthy_host():
    with patch("resilient_init.cli.EnvironmentProbe", return_value=StaticEnvironmentProbe()):
        yield


def run_cli(*argv: str) -> tuple[int, str]:
    stream = io.StringIO()
    code = main(list(argv), stream=stream)
    return code, stream.getvalue()


class TestParser:
    """Tests for argument parsing."""

    def test_init_flags(self) -> None:
        args = build_parser().parse_args(["init", "--force", "--json-only", "--data-dir", "/tmp/x"])
        assert args.force is True
        assert args.json_only is True
        assert str(args.data_dir) == "/tmp/x"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestInitCommand:
    """Tests for `resilient-init init`."""

    def test_primary_store(self, tmp_path, healthy_host) -> None:
        code, output = run_cli("init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm"))

        assert code == EXIT_OK
        assert "Storage: sqlite" in output
        assert "Initialization completed." in output
        assert (tmp_path / "data" / "database.sqlite").exists()

    def test_json_only(self, tmp_path, healthy_host) -> None:
        code, output = run_cli(
            "init", "--json-only", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm")
        )

        assert code == EXIT_OK
        assert (tmp_path / "data" / "database.json").exists()
        assert not (tmp_path / "data" / "database.sqlite").exists()

    def test_downgrade_reported(self, tmp_path, healthy_host) -> None:
        error = DependencyUnavailableError("sqlite3 native module is not available", dependency="sqlite3")
        with patch("resilient_init.storage.sqlite_store.SQLiteBackend.open", side_effect=error):
            code, output = run_cli(
                "init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm")
            )

        assert code == EXIT_OK
        assert "Storage downgraded to json" in output
        assert "completed with the fallback store" in output
        assert output.count("failed (dependency_unavailable)") == 3

    def test_fatal_failure(self, tmp_path, healthy_host) -> None:
        primary_error = RuntimeError(
            "was compiled against a different Node.js version using NODE_MODULE_VERSION 115. "
            "This version of Node.js requires NODE_MODULE_VERSION 127."
        )
        with patch("resilient_init.storage.sqlite_store.SQLiteBackend.open", side_effect=primary_error), \
                patch("resilient_init.storage.json_store.JSONFileBackend.open", side_effect=OSError("read-only")):
            code, output = run_cli(
                "init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm")
            )

        assert code == EXIT_FAILURE
        assert "Error:" in output
        assert "Native module version mismatch detected." in output
        assert "--force" in output

    def test_force_uses_five_attempts(self, tmp_path, healthy_host) -> None:
        error = DependencyUnavailableError("missing", dependency="sqlite3")
        with patch("resilient_init.storage.sqlite_store.SQLiteBackend.open", side_effect=error):
            code, output = run_cli(
                "init", "--force", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm")
            )

        assert code == EXIT_OK
        assert "max 5 attempts" in output
        assert output.count("failed (dependency_unavailable)") == 5

    def test_keyboard_interrupt(self, tmp_path, healthy_host) -> None:
        with patch("resilient_init.cli._initialize", side_effect=KeyboardInterrupt):
            code, output = run_cli("init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm"))
        assert code == EXIT_CANCELLED

    def test_cancelled_initialization(self, tmp_path, healthy_host) -> None:
        cancelled = RecoveryCancelledError("Operation cancelled after 1 attempt(s)", attempts=1)
        with patch("resilient_init.cli.StorageSelector.initialize", new_callable=AsyncMock, side_effect=cancelled):
            code, output = run_cli("init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm"))
        assert code == EXIT_CANCELLED
        assert "Initialization cancelled." in output

    def test_wsl_warnings(self, tmp_path) -> None:
        probe = StaticEnvironmentProbe(compatibility_layer=True, cross_filesystem_mount=True)
        with patch("resilient_init.cli.EnvironmentProbe", return_value=probe), \
                patch("resilient_init.cli.has_build_toolchain", return_value=False):
            code, output = run_cli("init", "--data-dir", str(tmp_path / "data"), "--cache-root", str(tmp_path / "npm"))

        assert code == EXIT_OK
        assert "WSL environment detected." in output
        assert "Windows filesystem mount" in output
        assert "build tools (gcc, make) not found" in output

    def test_invalid_configuration(self, monkeypatch) -> None:
        monkeypatch.setenv("RESILIENT_INIT_MAX_ATTEMPTS", "0")
        code, output = run_cli("init")
        assert code == EXIT_FAILURE
        assert "Invalid configuration" in output


class TestEnvCommand:
    """Tests for `resilient-init env`."""

    def test_prints_environment(self) -> None:
        code, output = run_cli("env")
        assert code == EXIT_OK
        assert "platform:" in output
        assert "wsl:" in output


class TestCleanCacheCommand:
    """Tests for `resilient-init clean-cache`."""

    def test_removes_cache(self, tmp_path, healthy_host) -> None:
        cache_root = tmp_path / "npm"
        (cache_root / "_npx" / "pkg").mkdir(parents=True)

        code, output = run_cli("clean-cache", "--cache-root", str(cache_root))

        assert code == EXIT_OK
        assert "clean-cache: succeeded" in output
        assert not (cache_root / "_npx").exists()

    def test_permission_fix_on_wsl(self, tmp_path) -> None:
        cache_root = tmp_path / "npm"
        cache_root.mkdir()
        with patch("resilient_init.cli.EnvironmentProbe", return_value=StaticEnvironmentProbe(compatibility_layer=True)):
            code, output = run_cli("clean-cache", "--cache-root", str(cache_root))

        assert code == EXIT_OK
        assert "fix-permissions: succeeded" in output
