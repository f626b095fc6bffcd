"""
Storage fallback selection.

Decides once per process whether the primary or the fallback store is
used and exposes the chosen StorageHandle. The transition from primary to
fallback (a downgrade) is one-way within a run: the only route back is an
explicit ``StorageSelector.promote()`` whose new primary attempt succeeds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from resilient_init.config import RecoveryConfig
from resilient_init.events import EventKind, RecoveryEvent, emit
from resilient_init.exceptions import (
    DependencyUnavailableError,
    StorageError,
    StorageUnavailableError,
)
from resilient_init.recovery import RecoveryResult, RecoveryStatus
from resilient_init.recovery.classification import ErrorClassification
from resilient_init.recovery.runner import RecoveryRunner, RunOptions
from resilient_init.storage.base import StorageBackend, StorageHandle
from resilient_init.storage.registry import (
    BackendRegistry,
    default_fallback_backend,
    default_primary_registry,
)

logger = logging.getLogger("resilient-init.storage.selector")

FALLBACK_MAX_ATTEMPTS = 3


@dataclass
class StorageSelection:
    """Outcome of storage selection.

    Attributes:
        handle: The active store
        backend: Name of the backend behind ``handle``
        downgraded: True when the fallback replaced a failed primary
        primary_result: Recovery result of the primary initialization
        fallback_result: Recovery result of the fallback initialization
        reason: Why the fallback was chosen (empty when primary is active)
    """

    handle: StorageHandle
    backend: str
    downgraded: bool = False
    primary_result: Optional[RecoveryResult] = None
    fallback_result: Optional[RecoveryResult] = None
    reason: str = ""


def _downgrade_reason(result: RecoveryResult) -> str:
    classification = result.classification or ErrorClassification.UNCLASSIFIED
    error = result.error
    last_error = getattr(error, "last_error", None) or error
    return f"{classification.value} after {result.attempts} attempt(s): {last_error}"


async def select_storage(
    primary_result: RecoveryResult,
    fallback_init: Callable[[], Any],
    *,
    runner: RecoveryRunner,
    fallback_attempts: int = FALLBACK_MAX_ATTEMPTS,
    options: Optional[RunOptions] = None,
) -> StorageSelection:
    """Choose the active store from the primary initialization result.

    Args:
        primary_result: Result of the guarded primary initialization.
        fallback_init: Zero-argument callable opening the fallback store.
        runner: Runner used to guard the fallback initialization.
        fallback_attempts: Attempts allowed for the fallback.
        options: Base options for the fallback run (delay, observer,
            cancel event). ``max_attempts`` is replaced by ``fallback_attempts``.

    Returns:
        StorageSelection bound to the primary on success, otherwise to the
        fallback with ``downgraded=True``.

    Raises:
        RecoveryCancelledError: If either initialization was cancelled.
        StorageUnavailableError: If the fallback also failed. Fatal.
    """
    if primary_result.status == RecoveryStatus.SUCCEEDED:
        handle: StorageHandle = primary_result.value
        emit(runner.event_sink, RecoveryEvent(
            kind=EventKind.STORAGE_SELECTED,
            run_id=primary_result.run_id,
            message=f"using primary store ({handle.backend_name})",
            data={"backend": handle.backend_name, "path": str(handle.path)},
        ))
        return StorageSelection(
            handle=handle,
            backend=handle.backend_name,
            primary_result=primary_result,
        )

    if primary_result.status == RecoveryStatus.CANCELLED:
        raise primary_result.error

    reason = _downgrade_reason(primary_result)
    logger.warning("Primary store unavailable (%s), switching to fallback store", reason)

    base = options or runner.default_options()
    fallback_options = RunOptions(
        max_attempts=fallback_attempts,
        initial_delay=base.initial_delay,
        on_retry=base.on_retry,
        cleanup_fn=base.cleanup_fn,
        cancel_event=base.cancel_event,
    )
    fallback_result = await runner.run(fallback_init, fallback_options)

    if fallback_result.status == RecoveryStatus.CANCELLED:
        raise fallback_result.error
    if fallback_result.status != RecoveryStatus.SUCCEEDED:
        raise StorageUnavailableError(
            "Neither the primary nor the fallback store could be initialized. "
            f"Primary: {reason}. Fallback: {fallback_result.error}",
            primary_result=primary_result,
            fallback_result=fallback_result,
        )

    handle = fallback_result.value
    emit(runner.event_sink, RecoveryEvent(
        kind=EventKind.STORAGE_DOWNGRADED,
        run_id=fallback_result.run_id,
        classification=primary_result.classification,
        message=f"downgraded to fallback store ({handle.backend_name}): {reason}",
        data={"backend": handle.backend_name, "path": str(handle.path), "reason": reason},
    ))
    return StorageSelection(
        handle=handle,
        backend=handle.backend_name,
        downgraded=True,
        primary_result=primary_result,
        fallback_result=fallback_result,
        reason=reason,
    )


class StorageSelector:
    """Owns the process-wide storage selection.

    Args:
        runner: Runner guarding primary and fallback initialization.
        config: Paths and attempt limits. Defaults to ``runner.config``.
        primary_registry: Candidate primary backends; the first available is used.
        fallback_backend: Backend used after a downgrade.
    """

    def __init__(
        self,
        runner: RecoveryRunner,
        config: Optional[RecoveryConfig] = None,
        *,
        primary_registry: Optional[BackendRegistry] = None,
        fallback_backend: Optional[StorageBackend] = None,
    ) -> None:
        self.runner = runner
        self.config = config or runner.config
        self.primary_registry = primary_registry or default_primary_registry()
        self.fallback_backend = fallback_backend or default_fallback_backend()
        self._selection: Optional[StorageSelection] = None

    # ------------------------------------------------------------------
    # Init operations
    # ------------------------------------------------------------------

    def _open_primary(self) -> StorageHandle:
        backend = self.primary_registry.first_available()
        if backend is None:
            raise DependencyUnavailableError(
                "No primary storage backend is available "
                f"(tried: {', '.join(self.primary_registry.names) or 'none'})",
                dependency=",".join(self.primary_registry.names),
            )
        return backend.open(self.config.primary_path)

    def _open_fallback(self) -> StorageHandle:
        return self.fallback_backend.open(self.config.fallback_path)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def selection(self) -> Optional[StorageSelection]:
        return self._selection

    @property
    def handle(self) -> StorageHandle:
        if self._selection is None:
            raise StorageError("Storage has not been selected yet; call initialize() first")
        return self._selection.handle

    @property
    def downgraded(self) -> bool:
        return self._selection is not None and self._selection.downgraded

    async def initialize(self, options: Optional[RunOptions] = None) -> StorageSelection:
        """Initialize storage for this process.

        Args:
            options: Options for the primary run; the fallback run reuses
                them with ``fallback_max_attempts``.

        Raises:
            StorageError: If storage was already selected.
            StorageUnavailableError: If no store could be initialized.
            RecoveryCancelledError: If initialization was cancelled.
        """
        if self._selection is not None:
            raise StorageError("Storage is already selected for this process")

        options = options or self.runner.default_options()

        if self.config.force_fallback:
            logger.info("Fallback store forced by configuration")
            result = await self.runner.run(self._open_fallback, RunOptions(
                max_attempts=self.config.fallback_max_attempts,
                initial_delay=options.initial_delay,
                on_retry=options.on_retry,
                cancel_event=options.cancel_event,
            ))
            if result.status == RecoveryStatus.CANCELLED:
                raise result.error
            if result.status != RecoveryStatus.SUCCEEDED:
                raise StorageUnavailableError(
                    f"Fallback store could not be initialized: {result.error}",
                    fallback_result=result,
                )
            self._selection = StorageSelection(
                handle=result.value,
                backend=result.value.backend_name,
                fallback_result=result,
                reason="fallback forced by configuration",
            )
            return self._selection

        primary_result = await self.runner.run(self._open_primary, options)
        self._selection = await select_storage(
            primary_result,
            self._open_fallback,
            runner=self.runner,
            fallback_attempts=self.config.fallback_max_attempts,
            options=options,
        )
        if self._selection.downgraded:
            logger.warning(
                "Storage downgraded to %s at %s",
                self._selection.backend,
                self._selection.handle.path,
            )
        return self._selection

    async def promote(self, options: Optional[RunOptions] = None) -> bool:
        """Explicitly retry the primary store after a downgrade.

        On success the fallback handle is closed and replaced. Data written
        to the fallback store is not migrated.

        Returns:
            True if the primary store is now active.

        Raises:
            RecoveryCancelledError: If the new primary attempt was cancelled.
        """
        if self._selection is None:
            raise StorageError("Storage has not been selected yet; call initialize() first")
        if not self._selection.downgraded:
            return False

        result = await self.runner.run(self._open_primary, options or self.runner.default_options())
        if result.status == RecoveryStatus.CANCELLED:
            raise result.error
        if result.status != RecoveryStatus.SUCCEEDED:
            logger.info("Primary store still unavailable, keeping fallback: %s", result.error)
            return False

        previous = self._selection.handle
        self._selection = StorageSelection(
            handle=result.value,
            backend=result.value.backend_name,
            primary_result=result,
        )
        try:
            previous.close()
        except Exception as exc:
            logger.warning("Failed to close fallback store %s: %s", previous.path, exc)

        emit(self.runner.event_sink, RecoveryEvent(
            kind=EventKind.STORAGE_PROMOTED,
            run_id=result.run_id,
            message=f"promoted to primary store ({result.value.backend_name})",
            data={"backend": result.value.backend_name, "path": str(result.value.path)},
        ))
        return True

    def close(self) -> None:
        if self._selection is not None:
            self._selection.handle.close()
