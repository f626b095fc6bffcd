"""
Tests for storage fallback selection.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from resilient_init.config import RecoveryConfig
from resilient_init.environment import StaticEnvironmentProbe
from resilient_init.events import CollectingSink, EventKind
from resilient_init.exceptions import (
    DependencyUnavailableError,
    RecoveryCancelledError,
    StorageError,
    StorageUnavailableError,
)
from resilient_init.recovery import RecoveryResult, RecoveryStatus
from resilient_init.recovery.classification import ErrorClassification
from resilient_init.recovery.runner import RecoveryRunner, RunOptions
from resilient_init.storage import (
    BackendRegistry,
    JSONFileBackend,
    SQLiteBackend,
    StorageSelector,
    select_storage,
)
from resilient_init.storage.base import StorageBackend


# ============================================================================
# Fixtures
# ============================================================================


class SwitchableBackend(StorageBackend):
    """Primary backend that fails until ``broken`` is cleared."""

    def __init__(self, error: Exception | None = None) -> None:
        self.broken = True
        self.error = error or DependencyUnavailableError(
            "better-sqlite3 could not be loaded", dependency="better-sqlite3"
        )
        self.open_calls = 0

    @property
    def name(self) -> str:
        return "switchable"

    def is_available(self) -> bool:
        return True

    def open(self, path: Path):
        self.open_calls += 1
        if self.broken:
            raise self.error
        return SQLiteBackend().open(path)


class BrokenFallback(JSONFileBackend):
    def __init__(self) -> None:
        self.open_calls = 0

    def open(self, path: Path):
        self.open_calls += 1
        raise OSError(30, "Read-only file system")


def failing(message: str):
    def operation():
        raise RuntimeError(message)
    return operation


@pytest.fixture
def config(tmp_path) -> RecoveryConfig:
    return RecoveryConfig(
        data_dir=tmp_path / "data",
        cache_root=tmp_path / "npm",
        initial_delay=0,
    )


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def runner(config, sink) -> RecoveryRunner:
    return RecoveryRunner(config, probe=StaticEnvironmentProbe(), event_sink=sink)


# ============================================================================
# select_storage
# ============================================================================


class TestSelectStorage:
    """Tests for select_storage()."""

    @pytest.mark.asyncio
    async def test_successful_primary_is_used(self, runner, config, sink) -> None:
        handle = SQLiteBackend().open(config.primary_path)
        primary = RecoveryResult(status=RecoveryStatus.SUCCEEDED, value=handle, attempts=1)

        selection = await select_storage(primary, lambda: pytest.fail("fallback opened"), runner=runner)

        assert selection.handle is handle
        assert selection.downgraded is False
        assert selection.backend == "sqlite"
        assert len(sink.of_kind(EventKind.STORAGE_SELECTED)) == 1
        handle.close()

    @pytest.mark.asyncio
    async def test_exhausted_primary_downgrades(self, runner, config, sink) -> None:
        primary = await runner.run(failing("native load failed"))
        assert primary.exhausted

        selection = await select_storage(
            primary,
            lambda: JSONFileBackend().open(config.fallback_path),
            runner=runner,
        )

        assert selection.downgraded is True
        assert selection.backend == "json"
        assert "native load failed" in selection.reason
        assert selection.fallback_result.succeeded
        assert len(sink.of_kind(EventKind.STORAGE_DOWNGRADED)) == 1
        selection.handle.close()

    @pytest.mark.asyncio
    async def test_fallback_failure_is_fatal(self, runner, config) -> None:
        primary = await runner.run(failing("primary down"))
        fallback_calls = []

        def fallback():
            fallback_calls.append(1)
            raise OSError("disk full")

        with pytest.raises(StorageUnavailableError) as exc_info:
            await select_storage(primary, fallback, runner=runner, fallback_attempts=2)

        assert len(fallback_calls) == 2
        assert exc_info.value.primary_result is primary
        assert exc_info.value.fallback_result.attempts == 2

    @pytest.mark.asyncio
    async def test_cancelled_primary_is_not_downgraded(self, runner) -> None:
        primary = RecoveryResult(
            status=RecoveryStatus.CANCELLED,
            error=RecoveryCancelledError("cancelled", attempts=1),
            attempts=1,
        )
        with pytest.raises(RecoveryCancelledError):
            await select_storage(primary, lambda: pytest.fail("fallback opened"), runner=runner)


# ============================================================================
# StorageSelector
# ============================================================================


class TestStorageSelector:
    """Tests for StorageSelector."""

    @pytest.mark.asyncio
    async def test_primary_available(self, runner, config) -> None:
        selector = StorageSelector(runner, config)
        selection = await selector.initialize()

        assert selection.backend == "sqlite"
        assert selector.downgraded is False
        assert config.primary_path.exists()
        selector.handle.store("k", "v")
        assert selector.handle.retrieve("k") == "v"
        selector.close()

    @pytest.mark.asyncio
    async def test_persistently_unavailable_primary_downgrades(self, runner, config, sink) -> None:
        primary = SwitchableBackend()
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry([primary]))

        selection = await selector.initialize()

        assert primary.open_calls == 3
        assert selection.primary_result.attempts == 3
        assert selection.primary_result.classification == ErrorClassification.DEPENDENCY_UNAVAILABLE
        assert selector.downgraded is True
        assert selector.handle.backend_name == "json"
        assert selector.handle.path == config.fallback_path

        selector.handle.store("k", {"v": 1})
        assert selector.handle.retrieve("k") == {"v": 1}

        downgrades = sink.of_kind(EventKind.STORAGE_DOWNGRADED)
        assert len(downgrades) == 1
        assert downgrades[0].classification == ErrorClassification.DEPENDENCY_UNAVAILABLE
        selector.close()

    @pytest.mark.asyncio
    async def test_no_primary_backend_available(self, runner, config) -> None:
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry())
        selection = await selector.initialize()
        assert selection.downgraded is True
        assert selection.primary_result.classification == ErrorClassification.DEPENDENCY_UNAVAILABLE
        selector.close()

    @pytest.mark.asyncio
    async def test_both_stores_failing_is_fatal(self, runner, config) -> None:
        fallback = BrokenFallback()
        selector = StorageSelector(
            runner,
            config,
            primary_registry=BackendRegistry([SwitchableBackend()]),
            fallback_backend=fallback,
        )

        with pytest.raises(StorageUnavailableError):
            await selector.initialize()

        assert fallback.open_calls == config.fallback_max_attempts
        assert selector.selection is None
        with pytest.raises(StorageError):
            selector.handle

    @pytest.mark.asyncio
    async def test_second_initialize_rejected(self, runner, config) -> None:
        selector = StorageSelector(runner, config)
        await selector.initialize()
        with pytest.raises(StorageError):
            await selector.initialize()
        selector.close()

    @pytest.mark.asyncio
    async def test_force_fallback_skips_primary(self, config, sink) -> None:
        config = config.model_copy(update={"force_fallback": True})
        runner = RecoveryRunner(config, probe=StaticEnvironmentProbe(), event_sink=sink)
        primary = SwitchableBackend()
        selector = StorageSelector(runner, primary_registry=BackendRegistry([primary]))

        selection = await selector.initialize()

        assert primary.open_calls == 0
        assert selection.backend == "json"
        assert selection.downgraded is False
        assert selection.reason == "fallback forced by configuration"
        selector.close()


class TestPromotion:
    """Tests for explicit promotion back to the primary store."""

    @pytest.mark.asyncio
    async def test_promote_after_primary_recovers(self, runner, config, sink) -> None:
        primary = SwitchableBackend()
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry([primary]))
        await selector.initialize()
        assert selector.downgraded

        primary.broken = False
        assert await selector.promote() is True

        assert selector.downgraded is False
        assert selector.handle.backend_name == "sqlite"
        assert len(sink.of_kind(EventKind.STORAGE_PROMOTED)) == 1
        selector.close()

    @pytest.mark.asyncio
    async def test_promote_keeps_fallback_when_primary_still_down(self, runner, config) -> None:
        primary = SwitchableBackend()
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry([primary]))
        await selector.initialize()
        fallback_handle = selector.handle

        assert await selector.promote() is False
        assert selector.handle is fallback_handle
        assert selector.downgraded is True
        selector.close()

    @pytest.mark.asyncio
    async def test_cancelled_promotion_raises_and_keeps_fallback(self, runner, config, sink) -> None:
        primary = SwitchableBackend()
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry([primary]))
        await selector.initialize()
        fallback_handle = selector.handle
        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(RecoveryCancelledError):
            await selector.promote(RunOptions(max_attempts=3, initial_delay=0, cancel_event=cancel))

        assert selector.downgraded is True
        assert selector.handle is fallback_handle
        assert sink.of_kind(EventKind.STORAGE_PROMOTED) == []
        selector.close()

    @pytest.mark.asyncio
    async def test_promote_noop_when_not_downgraded(self, runner, config) -> None:
        selector = StorageSelector(runner, config)
        await selector.initialize()
        assert await selector.promote() is False
        selector.close()

    @pytest.mark.asyncio
    async def test_promote_before_initialize(self, runner, config) -> None:
        with pytest.raises(StorageError):
            await StorageSelector(runner, config).promote()

    @pytest.mark.asyncio
    async def test_downgrade_is_sticky_without_promote(self, runner, config) -> None:
        primary = SwitchableBackend()
        selector = StorageSelector(runner, config, primary_registry=BackendRegistry([primary]))
        await selector.initialize()

        primary.broken = False
        assert selector.handle.backend_name == "json"
        assert primary.open_calls == 3
        selector.close()
