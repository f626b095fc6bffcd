"""
Recoverable initialization runner.

Wraps a fallible, possibly side-effecting setup operation with
classification-driven remediation and bounded retry:

  1. Attempt the operation; return immediately on success.
  2. On failure, classify the error.
  3. If this was the last attempt, return an exhausted result.
  4. Otherwise notify the observer, remediate if the class is remediable,
     wait ``initial_delay * 2 ** (attempt - 1)`` and try again.

Attempts run strictly one after another. The only suspension point is the
inter-attempt wait, which ends early when the caller sets the run's
cancel event; a cancelled run is reported as such and never as exhausted.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from shortuuid import random as shortuuid_random

from resilient_init.config import RecoveryConfig
from resilient_init.environment import EnvironmentProbe
from resilient_init.events import EventKind, EventSink, RecoveryEvent, emit, logging_sink
from resilient_init.exceptions import RecoveryCancelledError, RecoveryExhaustedError
from resilient_init.recovery import RecoveryAttempt, RecoveryResult, RecoveryStatus
from resilient_init.recovery.classification import ErrorClassification, ErrorClassifier
from resilient_init.recovery.remediation import (
    CacheCleaner,
    PermissionFixer,
    RemediationAction,
    RemediationOutcome,
)

logger = logging.getLogger("resilient-init.recovery.runner")

T = TypeVar("T")

Operation = Callable[[], Union[T, Awaitable[T]]]
RetryObserver = Callable[[int, BaseException], Any]
CleanupFn = Callable[[], Any]

FORCE_MAX_ATTEMPTS = 5


@dataclass
class RunOptions:
    """Per-run settings.

    Attributes:
        max_attempts: Maximum number of times the operation is invoked
        initial_delay: Seconds to wait before the second attempt; doubles after
        on_retry: Observer called as ``on_retry(attempt, error)`` before each
            retry. Its exceptions are logged and ignored.
        cleanup_fn: Extra remediation run once per retry, before the wait,
            when the failure is remediable
        cancel_event: Setting this event during a wait cancels the run
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    on_retry: Optional[RetryObserver] = None
    cleanup_fn: Optional[CleanupFn] = None
    cancel_event: Optional[asyncio.Event] = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must not be negative, got {self.initial_delay}")

    @classmethod
    def force(cls, **kwargs: Any) -> "RunOptions":
        """Options for the aggressive ``--force`` mode (5 attempts)."""
        kwargs.setdefault("max_attempts", FORCE_MAX_ATTEMPTS)
        return cls(**kwargs)

    @classmethod
    def from_config(cls, config: RecoveryConfig, **kwargs: Any) -> "RunOptions":
        kwargs.setdefault("max_attempts", config.effective_max_attempts)
        kwargs.setdefault("initial_delay", config.initial_delay)
        return cls(**kwargs)

    def delay_before(self, attempt: int) -> float:
        """Seconds waited before ``attempt`` (1-based). Zero for the first."""
        if attempt < 2:
            return 0.0
        return self.initial_delay * (2 ** (attempt - 2))

    def schedule(self) -> list[float]:
        """Every wait this run could perform, in order."""
        return [self.delay_before(k) for k in range(2, self.max_attempts + 1)]


class RecoveryRunner:
    """Runs guarded operations with classification-driven remediation.

    Args:
        config: Settings used to build default collaborators and options.
        probe: Host environment probe.
        classifier: Failure classifier. Built from ``config`` and ``probe``
            when omitted.
        cache_cleaner: Remediation for CACHE_CORRUPTION.
        permission_fixer: Remediation for compatibility-layer hosts.
        event_sink: Receiver of structured events. ``None`` disables events.
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        *,
        probe: Optional[EnvironmentProbe] = None,
        classifier: Optional[ErrorClassifier] = None,
        cache_cleaner: Optional[CacheCleaner] = None,
        permission_fixer: Optional[PermissionFixer] = None,
        event_sink: Optional[EventSink] = logging_sink,
    ) -> None:
        self.config = config or RecoveryConfig()
        self.probe = probe or EnvironmentProbe()
        self.classifier = classifier or ErrorClassifier(
            native_packages=self.config.native_packages,
            probe=self.probe,
        )
        self.cache_cleaner = cache_cleaner or CacheCleaner(
            self.config.cache_root,
            subdirs=self.config.cache_subdirs,
            clean_command=self.config.cache_clean_command,
        )
        self.permission_fixer = permission_fixer or PermissionFixer(
            self.config.cache_root,
            mode=self.config.permission_mode,
        )
        self.event_sink = event_sink

    def default_options(self, **kwargs: Any) -> RunOptions:
        """Options derived from the runner's config."""
        return RunOptions.from_config(self.config, **kwargs)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _emit(self, kind: EventKind, run_id: str, **fields: Any) -> None:
        emit(self.event_sink, RecoveryEvent(kind=kind, run_id=run_id, **fields))

    def _apply(
        self,
        name: str,
        step: Callable[[], Any],
        classification: ErrorClassification,
        attempt: int,
        run_id: str,
    ) -> RemediationAction:
        """Run one remediation sub-step; failures are recorded, never raised."""
        try:
            outcome = step()
        except Exception as exc:
            logger.warning("Remediation '%s' raised: %s", name, exc)
            action = RemediationAction(
                name=name,
                outcome=RemediationOutcome.FAILED,
                detail=str(exc),
            )
        else:
            if isinstance(outcome, RemediationAction):
                action = outcome
            else:
                action = RemediationAction(name=name, outcome=RemediationOutcome.SUCCEEDED)

        action.classification = classification
        action.attempt = attempt
        self._emit(
            EventKind.REMEDIATION_APPLIED,
            run_id,
            attempt=attempt,
            classification=classification,
            message=f"{action.name}: {action.outcome.value}",
            data=action.to_dict(),
        )
        return action

    async def _run_cleanup_fn(self, cleanup_fn: CleanupFn) -> RemediationAction:
        try:
            result = cleanup_fn()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("cleanup_fn failed, continuing: %s", exc)
            return RemediationAction(
                name="cleanup-fn",
                outcome=RemediationOutcome.FAILED,
                detail=str(exc),
            )
        return RemediationAction(name="cleanup-fn", outcome=RemediationOutcome.SUCCEEDED)

    async def _remediate(
        self,
        classification: ErrorClassification,
        attempt: int,
        options: RunOptions,
        run_id: str,
    ) -> list[RemediationAction]:
        """Remediation for a remediable failure, before the wait.

        Each sub-step runs independently: a failed cache cleanup does not
        skip the permission fix or the caller's cleanup_fn.
        """
        actions: list[RemediationAction] = []
        if classification is ErrorClassification.CACHE_CORRUPTION:
            actions.append(
                self._apply("clean-cache", self.cache_cleaner.clean, classification, attempt, run_id)
            )
            if self.probe.is_compatibility_layer():
                actions.append(
                    self._apply(
                        "fix-permissions", self.permission_fixer.fix, classification, attempt, run_id
                    )
                )

        if options.cleanup_fn is not None:
            action = await self._run_cleanup_fn(options.cleanup_fn)
            actions.append(
                self._apply("cleanup-fn", lambda: action, classification, attempt, run_id)
            )
        return actions

    async def _notify(
        self,
        observer: RetryObserver,
        attempt: int,
        error: BaseException,
        run_id: str,
    ) -> None:
        try:
            result = observer(attempt, error)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("on_retry observer failed (ignored): %s", exc)
            self._emit(
                EventKind.OBSERVER_FAILED,
                run_id,
                attempt=attempt,
                message=str(exc),
            )

    @staticmethod
    async def _wait(delay: float, cancel_event: Optional[asyncio.Event]) -> bool:
        """Wait ``delay`` seconds. Returns True if cancelled during the wait."""
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        if cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        operation: Operation[T],
        options: Optional[RunOptions] = None,
    ) -> RecoveryResult[T]:
        """Run ``operation`` with remediation and bounded retry.

        Args:
            operation: Zero-argument callable returning a value or an
                awaitable. It signals failure by raising.
            options: Per-run settings. Defaults to ``default_options()``.

        Returns:
            RecoveryResult with status succeeded, exhausted or cancelled.
        """
        options = options or self.default_options()
        run_id = shortuuid_random(length=8)
        remediations: list[RemediationAction] = []
        attempt_log: list[RecoveryAttempt] = []

        self._emit(
            EventKind.RUN_STARTED,
            run_id,
            message=f"max_attempts={options.max_attempts}",
            data={"max_attempts": options.max_attempts, "schedule": options.schedule()},
        )

        if self.probe.is_degraded_environment():
            action = self._apply(
                "fix-permissions",
                self.permission_fixer.fix,
                ErrorClassification.ENVIRONMENT_DEGRADED,
                0,
                run_id,
            )
            remediations.append(action)
            self._emit(
                EventKind.ENVIRONMENT_NORMALIZED,
                run_id,
                classification=ErrorClassification.ENVIRONMENT_DEGRADED,
                message=action.detail,
            )

        previous_error: Optional[BaseException] = None
        classification: Optional[ErrorClassification] = None
        delay = 0.0
        remediated = False
        attempt = 1

        while True:
            attempt_log.append(
                RecoveryAttempt(
                    index=attempt,
                    previous_error=previous_error,
                    delay_before=delay,
                    remediated=remediated,
                )
            )
            self._emit(EventKind.ATTEMPT_STARTED, run_id, attempt=attempt,
                       message=f"attempt {attempt}/{options.max_attempts}")
            try:
                value = operation()
                if inspect.isawaitable(value):
                    value = await value
            except Exception as exc:
                previous_error = exc
                classification = self.classifier.classify(exc)
                self._emit(
                    EventKind.ATTEMPT_FAILED,
                    run_id,
                    attempt=attempt,
                    classification=classification,
                    message=str(exc),
                    data={"error_type": type(exc).__name__},
                )
            else:
                self._emit(EventKind.SUCCEEDED, run_id, attempt=attempt,
                           classification=classification, message="operation succeeded")
                return RecoveryResult(
                    status=RecoveryStatus.SUCCEEDED,
                    value=value,
                    attempts=attempt,
                    classification=classification,
                    remediations=remediations,
                    attempt_log=attempt_log,
                    run_id=run_id,
                )

            if attempt >= options.max_attempts:
                error = RecoveryExhaustedError(
                    f"Operation failed after {attempt} attempts. "
                    f"Last error: {previous_error}",
                    attempts=attempt,
                    last_error=previous_error,
                    classification=classification,
                    remediations=remediations,
                    details={"run_id": run_id},
                )
                error.__cause__ = previous_error
                self._emit(EventKind.EXHAUSTED, run_id, attempt=attempt,
                           classification=classification, message=str(error))
                return RecoveryResult(
                    status=RecoveryStatus.EXHAUSTED,
                    error=error,
                    attempts=attempt,
                    classification=classification,
                    remediations=remediations,
                    attempt_log=attempt_log,
                    run_id=run_id,
                )

            if options.on_retry is not None:
                await self._notify(options.on_retry, attempt, previous_error, run_id)

            remediated = False
            if classification.remediable:
                actions = await self._remediate(classification, attempt + 1, options, run_id)
                remediations.extend(actions)
                remediated = bool(actions)

            delay = options.delay_before(attempt + 1)
            self._emit(EventKind.BACKOFF, run_id, attempt=attempt + 1,
                       classification=classification,
                       message=f"waiting {delay:g}s", data={"delay": delay})
            if await self._wait(delay, options.cancel_event):
                error = RecoveryCancelledError(
                    f"Operation cancelled after {attempt} attempt(s)",
                    attempts=attempt,
                    details={"run_id": run_id, "last_error": str(previous_error)},
                )
                self._emit(EventKind.CANCELLED, run_id, attempt=attempt,
                           classification=classification, message=str(error))
                return RecoveryResult(
                    status=RecoveryStatus.CANCELLED,
                    error=error,
                    attempts=attempt,
                    classification=classification,
                    remediations=remediations,
                    attempt_log=attempt_log,
                    run_id=run_id,
                )
            attempt += 1


async def run_with_recovery(
    operation: Operation[T],
    options: Optional[RunOptions] = None,
    **runner_kwargs: Any,
) -> RecoveryResult[T]:
    """One-shot helper: build a RecoveryRunner and run ``operation``."""
    return await RecoveryRunner(**runner_kwargs).run(operation, options)


__all__ = [
    "FORCE_MAX_ATTEMPTS",
    "RecoveryRunner",
    "RunOptions",
    "run_with_recovery",
]
