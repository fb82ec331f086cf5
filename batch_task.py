"""
Batch activation and deactivation of mods.

A BatchActivationTask walks an immutable snapshot of mod ids in order and
brings each one to the target state, one install unit at a time.  Units run
on a single-thread executor and the batch thread blocks on each unit's
Future, so the batch never performs file I/O itself and never spins.

Lifecycle: PENDING -> RUNNING -> COMPLETED | CANCELLED | ERRORED.

Cancellation is cooperative and sampled before each mod; a unit that has
started always settles first.  A unit whose overwrite prompt was declined
because of the cancellation is reported as cancelled, not failed.  Mods
committed before a failure or a cancellation stay committed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Optional

from file_transaction import StepFailure
from install_errors import (
    BatchInProgressError,
    ConflictDeniedError,
    LogCorruptionError,
    ManifestValidationError,
)
from install_log import InstallLog
from manifest_schema import ManagedFile
from mod_installer import ConfirmCallback, ModInstallerFactory

_log = logging.getLogger(__name__)

ManifestProvider = Callable[[str], list[ManagedFile]]


class TaskState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.CANCELLED, TaskState.ERRORED)


class ActivationTarget(Enum):
    ACTIVATE = "activate"
    DEACTIVATE = "deactivate"


@dataclass
class ModOutcome:
    """Final state of one mod in a batch."""

    mod_id: str
    status: Literal["skipped", "installed", "uninstalled", "failed", "cancelled"]
    error: Exception | None = None
    failures: list[StepFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        if self.status == "failed":
            return f"{type(self.error).__name__}: {self.error}"
        if self.failures:
            return f"{self.status} with {len(self.failures)} file error(s)"
        return self.status


@dataclass
class BatchResult:
    state: TaskState
    target: ActivationTarget
    outcomes: list[ModOutcome] = field(default_factory=list)
    failed_mod: str | None = None
    progress: int = 0
    maximum: int = 0

    def mods_with_status(self, status: str) -> list[str]:
        return [o.mod_id for o in self.outcomes if o.status == status]

    @property
    def skipped(self) -> list[str]:
        return self.mods_with_status("skipped")

    @property
    def failed(self) -> list[str]:
        return self.mods_with_status("failed")

    @property
    def cancelled(self) -> list[str]:
        return self.mods_with_status("cancelled")


# ── Progress reporting ────────────────────────────────────────────────


class ProgressReporter:
    """Push-model notifications for a controller.

    ``ended`` fires exactly once per reporter.  A listener that raises is
    logged and skipped.
    """

    def __init__(self):
        self._progress: list[Callable[[int, int], None]] = []
        self._mod_finished: list[Callable[[ModOutcome], None]] = []
        self._ended: list[Callable[[BatchResult], None]] = []
        self._lock = threading.Lock()
        self._has_ended = False

    def on_progress(self, callback: Callable[[int, int], None]):
        self._progress.append(callback)

    def on_mod_finished(self, callback: Callable[[ModOutcome], None]):
        self._mod_finished.append(callback)

    def on_ended(self, callback: Callable[[BatchResult], None]):
        self._ended.append(callback)

    def report_progress(self, value: int, maximum: int):
        self._notify(self._progress, value, maximum)

    def report_mod(self, outcome: ModOutcome):
        self._notify(self._mod_finished, outcome)

    def report_ended(self, result: BatchResult) -> bool:
        with self._lock:
            if self._has_ended:
                return False
            self._has_ended = True
        self._notify(self._ended, result)
        return True

    @staticmethod
    def _notify(listeners, *args):
        for callback in list(listeners):
            try:
                callback(*args)
            except Exception:
                _log.exception("Progress listener %r failed", callback)


# ── Task ──────────────────────────────────────────────────────────────


class BatchActivationTask:
    def __init__(
        self,
        mods: Iterable[str],
        target: ActivationTarget,
        install_log: InstallLog,
        installer_factory: ModInstallerFactory,
        manifest_provider: Optional[ManifestProvider] = None,
        *,
        stop_on_error: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ):
        self.mods: tuple[str, ...] = tuple(mods)
        seen: set[str] = set()
        for mod_id in self.mods:
            if not isinstance(mod_id, str) or not mod_id.strip():
                raise ManifestValidationError(f"Invalid mod id in batch: {mod_id!r}")
            if mod_id in seen:
                raise ManifestValidationError(f"Mod '{mod_id}' appears twice in the batch", mod_id)
            seen.add(mod_id)
        if target is ActivationTarget.ACTIVATE and manifest_provider is None:
            raise ValueError("Activation needs a manifest provider")

        self.target = target
        self.install_log = install_log
        self.installer_factory = installer_factory
        self.manifest_provider = manifest_provider
        self.stop_on_error = stop_on_error
        self.progress = reporter or ProgressReporter()

        self._state = TaskState.PENDING
        self._state_lock = threading.Lock()
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self.result: BatchResult | None = None

    @property
    def state(self) -> TaskState:
        with self._state_lock:
            return self._state

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self):
        """Ask the task to stop at the next mod boundary."""
        if not self._cancel.is_set():
            _log.info("Cancellation requested for %s batch", self.target.value)
        self._cancel.set()

    # ── Running ───────────────────────────────────────────────────────

    def _begin(self):
        with self._state_lock:
            if self._state is not TaskState.PENDING:
                raise RuntimeError(f"Batch task already {self._state.value}")
            if not self.install_log.write_lock.acquire(blocking=False):
                raise BatchInProgressError("Another activation batch is already running")
            self._state = TaskState.RUNNING

    def start(self, confirm: Optional[ConfirmCallback] = None) -> threading.Thread:
        """Run the batch on a dedicated worker thread."""
        self._begin()
        self._thread = threading.Thread(
            target=self._run_loop, args=(confirm,), name=f"batch-{self.target.value}", daemon=True
        )
        self._thread.start()
        return self._thread

    def run(self, confirm: Optional[ConfirmCallback] = None) -> BatchResult:
        """Run the batch on the calling thread."""
        self._begin()
        return self._run_loop(confirm)

    def wait(self, timeout: float | None = None) -> BatchResult | None:
        """Block until the task has ended; ``None`` if ``timeout`` ran out."""
        if not self._done.wait(timeout):
            return None
        return self.result

    def _run_loop(self, confirm: Optional[ConfirmCallback]) -> BatchResult:
        maximum = len(self.mods)
        result = BatchResult(TaskState.RUNNING, self.target, maximum=maximum)
        final = TaskState.COMPLETED
        _log.info("Starting %s batch over %d mod(s)", self.target.value, maximum)
        self.progress.report_progress(0, maximum)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mod-io")
        try:
            for mod_id in self.mods:
                if self._cancel.is_set():
                    final = TaskState.CANCELLED
                    break
                outcome = self._process(mod_id, confirm, executor)
                result.outcomes.append(outcome)
                self.progress.report_mod(outcome)
                result.progress += 1
                self.progress.report_progress(result.progress, maximum)

                if outcome.status == "cancelled":
                    final = TaskState.CANCELLED
                    break
                if outcome.status == "failed":
                    if result.failed_mod is None:
                        result.failed_mod = mod_id
                    if isinstance(outcome.error, LogCorruptionError):
                        _log.error("Install log is corrupt; aborting batch")
                        break
                    if self.stop_on_error:
                        break
        except Exception as exc:
            _log.exception("Batch task crashed")
            result.outcomes.append(ModOutcome("<batch>", "failed", error=exc))
            result.failed_mod = result.failed_mod or "<batch>"
        finally:
            executor.shutdown(wait=True)
            self.install_log.write_lock.release()

        if final is not TaskState.CANCELLED and result.failed_mod is not None:
            final = TaskState.ERRORED
        result.state = final
        with self._state_lock:
            self._state = final
            self.result = result
        _log.info(
            "%s batch ended %s: %d done, %d skipped, %d failed",
            self.target.value, final.value,
            result.progress - len(result.skipped) - len(result.failed) - len(result.cancelled),
            len(result.skipped), len(result.failed),
        )
        self.progress.report_ended(result)
        self._done.set()
        return result

    def _process(self, mod_id: str, confirm: Optional[ConfirmCallback], executor) -> ModOutcome:
        wanted_active = self.target is ActivationTarget.ACTIVATE
        if self.install_log.is_active(mod_id) == wanted_active:
            _log.debug("%s already %sd, skipping", mod_id, self.target.value)
            return ModOutcome(mod_id, "skipped")
        try:
            if wanted_active:
                files = self.manifest_provider(mod_id)
                unit = self.installer_factory.create_installer(mod_id, files, confirm)
            else:
                unit = self.installer_factory.create_uninstaller(mod_id, confirm)
            done = unit.submit(executor).result()
        except ConflictDeniedError as exc:
            if self._cancel.is_set():
                # The prompt was answered by the cancellation, not by the user.
                _log.info("%s interrupted by cancellation", mod_id)
                return ModOutcome(mod_id, "cancelled", error=exc)
            _log.error("Could not %s %s: %s", self.target.value, mod_id, exc)
            return ModOutcome(mod_id, "failed", error=exc)
        except Exception as exc:
            _log.error("Could not %s %s: %s", self.target.value, mod_id, exc)
            return ModOutcome(mod_id, "failed", error=exc)
        status = "installed" if wanted_active else "uninstalled"
        return ModOutcome(mod_id, status, failures=done.failures, warnings=done.warnings)
