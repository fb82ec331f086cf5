"""
Mod Activation Engine - Core Logic

Wires the install log, the mod repository and the install units together and
runs activation/deactivation batches, one at a time.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Callable, Optional

from batch_task import ActivationTarget, BatchActivationTask, ProgressReporter, TaskState
from file_transaction import DEFAULT_RETRY_DELAY, recover_journals
from game_profiles import GameProfile
from install_errors import BatchInProgressError, LogCorruptionError
from install_log import InstallLog
from mod_installer import JOURNAL_DIRNAME, ConfirmCallback, ModInstallerFactory
from mod_repository import ModPackage, ModRepository

_log = logging.getLogger(__name__)


class ModManager:
    """
    Main mod manager controller.

    Workflow:
        1. scan_mods() to discover mod archives in the mods directory
        2. check_installed_status() to find active mods with files missing
        3. activate() / deactivate() to start a batch; wait on the task
        4. close() at shutdown
    """

    def __init__(
        self,
        profile: GameProfile,
        install_root: str | Path,
        mods_dir: str | Path,
        state_dir: str | Path,
        log_callback: Optional[Callable[[str], None]] = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.profile = profile
        self.install_root = Path(install_root)
        self.mods_root = profile.mods_root(self.install_root)
        self.state_dir = Path(state_dir)
        self._log_cb = log_callback or _log.info

        self.repository = ModRepository(mods_dir)
        # Undo transactions a killed process left half-applied before trusting the log.
        for label in recover_journals(self.state_dir / JOURNAL_DIRNAME):
            self.log(f"Rolled back interrupted operation: {label}")
        self.install_log = InstallLog(self.state_dir)
        try:
            self.install_log.load()
        except LogCorruptionError as exc:
            self.log(f"ERROR: {exc}. Activation is disabled until the log is repaired or removed.")
        self.installer_factory = ModInstallerFactory(
            self.install_log, self.mods_root, self.state_dir, retry_delay=retry_delay
        )
        self.task: Optional[BatchActivationTask] = None

    # ── Logging ───────────────────────────────────────────────────────

    def log(self, msg: str):
        self._log_cb(msg)

    # ── Queries ───────────────────────────────────────────────────────

    def scan_mods(self) -> dict[str, ModPackage]:
        packages = self.repository.scan()
        self.log(f"Found {len(packages)} mod(s) in {self.repository.mods_dir}")
        return packages

    def is_active(self, mod_id: str) -> bool:
        return self.install_log.is_active(mod_id)

    @property
    def active_mods(self) -> list[str]:
        return sorted(self.install_log.active_mods)

    @property
    def busy(self) -> bool:
        return self.task is not None and self.task.state is TaskState.RUNNING

    def check_installed_status(self) -> dict[str, list[str]]:
        """Map each active mod to the files it owns that are missing on disk."""
        missing: dict[str, list[str]] = {}
        for mod_id in self.active_mods:
            gone = [
                path for path in self.install_log.owned_files(mod_id)
                if not (self.mods_root / path).exists()
            ]
            if gone:
                missing[mod_id] = gone
                self.log(f"  Mod '{mod_id}': {len(gone)} file(s) missing on disk")
        self.log(f"Verified {len(self.active_mods)} active mod(s), {len(missing)} with missing files")
        return missing

    # ── Batches ───────────────────────────────────────────────────────

    def activate(
        self,
        mods: Iterable[str],
        confirm: Optional[ConfirmCallback] = None,
        *,
        stop_on_error: bool = False,
        reporter: Optional[ProgressReporter] = None,
        background: bool = True,
    ) -> BatchActivationTask:
        return self._start_batch(mods, ActivationTarget.ACTIVATE, confirm, stop_on_error, reporter, background)

    def deactivate(
        self,
        mods: Iterable[str],
        confirm: Optional[ConfirmCallback] = None,
        *,
        stop_on_error: bool = False,
        reporter: Optional[ProgressReporter] = None,
        background: bool = True,
    ) -> BatchActivationTask:
        return self._start_batch(mods, ActivationTarget.DEACTIVATE, confirm, stop_on_error, reporter, background)

    def deactivate_all(self, confirm: Optional[ConfirmCallback] = None, **kwargs) -> BatchActivationTask:
        """Deactivate every active mod, most recently installed first."""
        active = sorted(
            self.install_log.active_mods,
            key=lambda mod_id: self.install_log.installed_at(mod_id),
            reverse=True,
        )
        return self.deactivate(active, confirm, **kwargs)

    def create_task(
        self,
        mods: Iterable[str],
        target: ActivationTarget,
        *,
        stop_on_error: bool = False,
        reporter: Optional[ProgressReporter] = None,
    ) -> BatchActivationTask:
        """Build a batch task without starting it (e.g. for a QThread bridge)."""
        if self.install_log.corruption is not None:
            raise self.install_log.corruption
        if self.busy:
            raise BatchInProgressError("Another activation batch is already running")
        if target is ActivationTarget.ACTIVATE and not self.repository.packages:
            self.repository.scan()
        self.task = BatchActivationTask(
            mods,
            target,
            self.install_log,
            self.installer_factory,
            self.repository.manifest,
            stop_on_error=stop_on_error,
            reporter=reporter,
        )
        return self.task

    def _start_batch(self, mods, target, confirm, stop_on_error, reporter, background) -> BatchActivationTask:
        task = self.create_task(mods, target, stop_on_error=stop_on_error, reporter=reporter)
        self.log(f"Starting {target.value} of {len(task.mods)} mod(s)...")
        if background:
            task.start(confirm)
        else:
            task.run(confirm)
        return task

    def close(self, timeout: float | None = None):
        if self.busy:
            self.task.cancel()
            self.task.wait(timeout)
        self.install_log.close()
