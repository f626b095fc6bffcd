"""
Tests for remediation actions.
"""

import os
import stat
import subprocess
import sys
from unittest.mock import patch

import pytest

from resilient_init.recovery.remediation import (
    CacheCleaner,
    PermissionFixer,
    RemediationAction,
    RemediationOutcome,
)


@pytest.fixture
def cache_root(tmp_path):
    root = tmp_path / ".npm"
    (root / "_npx" / "abc123" / "node_modules").mkdir(parents=True)
    (root / "_npx" / "abc123" / "package.json").write_text("{}")
    (root / "_cacache").mkdir()
    return root


class TestCacheCleaner:
    """Tests for CacheCleaner."""

    def test_removes_configured_subdirs(self, cache_root) -> None:
        action = CacheCleaner(cache_root).clean()

        assert action.outcome == RemediationOutcome.SUCCEEDED
        assert action.name == "clean-cache"
        assert "removed 1 cache entry" in action.detail
        assert not (cache_root / "_npx").exists()
        assert (cache_root / "_cacache").exists()

    def test_idempotent(self, cache_root) -> None:
        cleaner = CacheCleaner(cache_root)
        cleaner.clean()
        second = cleaner.clean()

        assert second.outcome == RemediationOutcome.SUCCEEDED
        assert second.detail == "cache already clean"

    def test_missing_cache_root_is_clean(self, tmp_path) -> None:
        action = CacheCleaner(tmp_path / "nowhere").clean()
        assert action.outcome == RemediationOutcome.SUCCEEDED
        assert action.detail == "cache already clean"

    def test_empty_subdirs_clears_root_contents(self, cache_root) -> None:
        action = CacheCleaner(cache_root, subdirs=()).clean()

        assert action.succeeded
        assert cache_root.exists()
        assert list(cache_root.iterdir()) == []

    def test_subdir_outside_cache_root_rejected(self, cache_root, tmp_path) -> None:
        sibling = tmp_path / "project"
        sibling.mkdir()

        action = CacheCleaner(cache_root, subdirs=("..",)).clean()

        assert action.outcome == RemediationOutcome.FAILED
        assert "outside the cache root" in action.detail
        assert sibling.exists()
        assert (cache_root / "_npx").exists()

    def test_nested_escape_rejected(self, cache_root, tmp_path) -> None:
        (tmp_path / "project").mkdir()

        action = CacheCleaner(cache_root, subdirs=("_npx", "_cacache/../../project")).clean()

        assert action.outcome == RemediationOutcome.FAILED
        assert (tmp_path / "project").exists()
        assert (cache_root / "_npx").exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
    def test_symlinked_parent_outside_cache_root_rejected(self, cache_root, tmp_path) -> None:
        outside = tmp_path / "outside"
        (outside / "data").mkdir(parents=True)
        (cache_root / "link").symlink_to(outside, target_is_directory=True)

        action = CacheCleaner(cache_root, subdirs=("link/data",)).clean()

        assert action.outcome == RemediationOutcome.FAILED
        assert (outside / "data").exists()

    def test_clean_command_runs_first(self, cache_root) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")
        with patch("resilient_init.recovery.remediation.subprocess.run", return_value=completed) as mock_run:
            action = CacheCleaner(cache_root, clean_command=["npm", "cache", "clean", "--force"]).clean()

        mock_run.assert_called_once()
        assert mock_run.call_args.args[0] == ["npm", "cache", "clean", "--force"]
        assert action.succeeded

    def test_failing_clean_command_still_removes_dirs(self, cache_root) -> None:
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="EPERM")
        with patch("resilient_init.recovery.remediation.subprocess.run", return_value=completed):
            action = CacheCleaner(cache_root, clean_command=["npm", "cache", "clean"]).clean()

        assert action.succeeded
        assert "exited with 1" in action.detail
        assert not (cache_root / "_npx").exists()

    def test_missing_clean_command_binary(self, cache_root) -> None:
        with patch("resilient_init.recovery.remediation.subprocess.run", side_effect=FileNotFoundError()):
            action = CacheCleaner(cache_root, clean_command=["npm", "cache", "clean"]).clean()

        assert action.succeeded
        assert "npm not found" in action.detail

    def test_removal_failure_reported(self, cache_root) -> None:
        with patch("resilient_init.recovery.remediation.shutil.rmtree", side_effect=OSError("busy")):
            action = CacheCleaner(cache_root).clean()

        assert action.outcome == RemediationOutcome.FAILED
        assert "busy" in action.detail


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX permission bits")
class TestPermissionFixer:
    """Tests for PermissionFixer."""

    def test_applies_mode_recursively(self, cache_root) -> None:
        target = cache_root / "_npx" / "abc123" / "package.json"
        os.chmod(target, 0o600)

        action = PermissionFixer(cache_root).fix()

        assert action.outcome == RemediationOutcome.SUCCEEDED
        assert stat.S_IMODE(os.stat(target).st_mode) == 0o755

    def test_missing_root_not_applicable(self, tmp_path) -> None:
        action = PermissionFixer(tmp_path / "missing").fix()
        assert action.outcome == RemediationOutcome.NOT_APPLICABLE

    def test_idempotent(self, cache_root) -> None:
        fixer = PermissionFixer(cache_root, mode=0o750)
        assert fixer.fix().succeeded
        assert fixer.fix().succeeded

    def test_chmod_failure_reported(self, cache_root) -> None:
        with patch("resilient_init.recovery.remediation.os.chmod", side_effect=PermissionError("denied")):
            action = PermissionFixer(cache_root).fix()
        assert action.outcome == RemediationOutcome.FAILED


class TestRemediationAction:
    """Tests for RemediationAction."""

    def test_to_dict(self) -> None:
        action = RemediationAction(name="clean-cache", outcome=RemediationOutcome.SUCCEEDED, detail="ok", attempt=2)
        data = action.to_dict()
        assert data["name"] == "clean-cache"
        assert data["outcome"] == "succeeded"
        assert data["attempt"] == 2
