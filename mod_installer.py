"""
Per-mod install and uninstall units.

A ModInstaller or ModUninstaller turns one mod's manifest and the install
log's current ownership state into a FileTransaction and commits it.  Each
unit can run inline (``run()``) or be scheduled on an executor
(``submit()``), in which case the returned Future is its completion signal.

Content that a newly installed mod covers up is stashed under
``<state_dir>/overwrites/<owner>/<path>`` so it can be put back when the mod
on top is removed.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections.abc import Callable
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from conflict_detection import ORIGINAL_OWNER, UninstallStep, find_conflicts, format_conflicts
from file_transaction import DEFAULT_RETRY_DELAY, FileTransaction, StepFailure
from install_errors import ConflictDeniedError
from install_log import InstallLog
from manifest_schema import ManagedFile, validate_file_list

_log = logging.getLogger(__name__)

ConfirmCallback = Callable[[str], bool]

STASH_DIRNAME = "overwrites"
JOURNAL_DIRNAME = "journal"


def stash_key(mod_id: str) -> str:
    """Filesystem-safe, collision-free directory name for a mod's stash."""
    if mod_id == ORIGINAL_OWNER:
        return "_original"
    cleaned = re.sub(r'[<>:"/\\|?*\s]', "_", mod_id).strip().rstrip(".")
    digest = hashlib.sha1(mod_id.encode("utf-8")).hexdigest()[:8]
    return f"{cleaned or 'mod'}-{digest}"


def prune_empty_dirs(start: Path, stop: Path):
    """Remove empty directories from ``start`` upward, never touching ``stop``."""
    current = start
    while current != stop and stop in current.parents:
        if not current.is_dir() or any(current.iterdir()):
            return
        current.rmdir()
        _log.debug("Removed empty dir: %s", current)
        current = current.parent


@dataclass
class InstallOutcome:
    """What one unit of work did."""

    mod_id: str
    action: Literal["installed", "uninstalled", "noop"]
    files: list[str] = field(default_factory=list)
    steps: list[UninstallStep] = field(default_factory=list)
    failures: list[StepFailure] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class _UnitOfWork:
    def __init__(
        self,
        install_log: InstallLog,
        mod_id: str,
        install_root: Path,
        state_dir: Path,
        confirm: Optional[ConfirmCallback] = None,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.install_log = install_log
        self.mod_id = mod_id
        self.install_root = Path(install_root)
        self.stash_dir = Path(state_dir) / STASH_DIRNAME
        self.journal_dir = Path(state_dir) / JOURNAL_DIRNAME
        self.confirm = confirm
        self.retry_delay = retry_delay

    def stash_path(self, owner: str, path: str) -> Path:
        return self.stash_dir / stash_key(owner) / path

    def run(self) -> InstallOutcome:
        raise NotImplementedError

    def submit(self, executor: Executor) -> Future:
        """Schedule ``run()``; the Future resolves with the outcome or the error."""
        return executor.submit(self.run)


class ModInstaller(_UnitOfWork):
    """Activate one mod: write its files and make it their owner."""

    def __init__(self, install_log: InstallLog, mod_id: str, files: list[ManagedFile], install_root: Path,
                 state_dir: Path, confirm: Optional[ConfirmCallback] = None,
                 retry_delay: float = DEFAULT_RETRY_DELAY):
        super().__init__(install_log, mod_id, install_root, state_dir, confirm, retry_delay)
        self.files = files

    def run(self) -> InstallOutcome:
        files = validate_file_list(self.mod_id, self.files)
        if self.install_log.is_active(self.mod_id):
            _log.info("%s is already active, nothing to install", self.mod_id)
            return InstallOutcome(self.mod_id, "noop")
        self.install_log.check_writable()

        # Read and verify every source before the disk is touched.
        contents = [(managed.path, managed.read_verified(self.mod_id)) for managed in files]
        paths = [path for path, _ in contents]

        conflicts = find_conflicts(self.install_log, self.mod_id, paths, self.install_root)
        confirmed = True
        if conflicts and self.confirm is not None:
            confirmed = bool(self.confirm(format_conflicts(self.mod_id, conflicts)))
            if not confirmed:
                raise ConflictDeniedError([c.path for c in conflicts], self.mod_id)

        tx = FileTransaction(
            self.journal_dir,
            label=f"install-{stash_key(self.mod_id)}",
            retry_delay=self.retry_delay,
        )
        preexisting: list[str] = []
        warnings: list[str] = []
        for path, data in contents:
            target = self.install_root / path
            owner = self.install_log.owner_of(path)
            if owner is not None and owner != self.mod_id:
                if self.stash_path(owner, path).is_file():
                    # A failed restore left the owner's real content in the stash.
                    msg = f"{path}: keeping the stashed copy for {owner} instead of the file on disk"
                    _log.warning(msg)
                    warnings.append(msg)
                elif target.is_file():
                    tx.copy(target, self.stash_path(owner, path), f"stash {path} for {owner}")
                else:
                    msg = f"{path} belongs to {owner} but is missing on disk; nothing to stash"
                    _log.warning(msg)
                    warnings.append(msg)
            elif owner is None and target.is_file():
                tx.copy(target, self.stash_path(ORIGINAL_OWNER, path), f"stash original {path}")
                preexisting.append(path)
            tx.write(target, data, f"write {path}")

        _log.info("Installing %s: %d file(s), %d conflict(s)", self.mod_id, len(paths), len(conflicts))
        tx.commit(
            self.install_log,
            lambda: self.install_log.register_install(
                self.mod_id, paths, overwrite_confirmed=confirmed, preexisting=preexisting
            ),
        )
        return InstallOutcome(self.mod_id, "installed", files=paths, warnings=warnings)


class ModUninstaller(_UnitOfWork):
    """Deactivate one mod, handing each of its paths back to the previous owner.

    Best-effort per file: a file that cannot be restored or deleted is logged
    and reported, and the uninstall is still recorded in the log.
    """

    def run(self) -> InstallOutcome:
        if not self.install_log.is_active(self.mod_id):
            return InstallOutcome(self.mod_id, "noop")
        self.install_log.check_writable()

        tx = FileTransaction(
            self.journal_dir,
            label=f"uninstall-{stash_key(self.mod_id)}",
            best_effort=True,
            retry_delay=self.retry_delay,
        )
        warnings: list[str] = []
        deleted: list[Path] = []
        restores: dict[int, UninstallStep] = {}
        for step in self.install_log.plan_uninstall(self.mod_id):
            target = self.install_root / step.path
            main_step = None
            if step.action == "restore":
                stash = self.stash_path(step.owner, step.path)
                if stash.is_file():
                    main_step = tx.copy(stash, target, f"restore {step.path} from {step.owner}")
                    restores[main_step] = step
                    # The stash is the owner's only copy; drop it only once restored.
                    tx.delete(stash, f"drop stash of {step.path} for {step.owner}", depends_on=main_step)
                    deleted.append(stash)
                else:
                    msg = f"No stashed copy of {step.path} for {step.owner}"
                    if self.confirm is not None and self.confirm(
                        f"{msg}.\n\nDelete {step.path} instead of leaving '{self.mod_id}''s version in place?"
                    ):
                        main_step = tx.delete(target, f"delete {step.path}")
                        deleted.append(target)
                        msg += "; file deleted"
                    else:
                        msg += "; current file left in place"
                    _log.warning(msg)
                    warnings.append(msg)
            elif step.action == "delete":
                main_step = tx.delete(target, f"delete {step.path}")
                deleted.append(target)

            # Left over from an earlier restore that failed.
            own_stash = self.stash_path(self.mod_id, step.path)
            if own_stash.exists():
                tx.delete(own_stash, f"drop stash of {step.path} for {self.mod_id}", depends_on=main_step)
                deleted.append(own_stash)

        _log.info("Uninstalling %s: %d operation(s)", self.mod_id, len(tx))
        steps = tx.commit(self.install_log, lambda: self.install_log.register_uninstall(self.mod_id))

        for path in deleted:
            stop = self.stash_dir if self.stash_dir in path.parents else self.install_root
            prune_empty_dirs(path.parent, stop)
        for failure in tx.failures:
            _log.warning("Uninstall of %s: %s failed: %s", self.mod_id, failure.description, failure.error)
            if failure.step in restores:
                step = restores[failure.step]
                warnings.append(
                    f"{step.path} could not be restored; the copy for {step.owner} is kept in the stash"
                )
        return InstallOutcome(
            self.mod_id,
            "uninstalled",
            files=[step.path for step in steps],
            steps=steps,
            failures=list(tx.failures),
            warnings=warnings,
        )


class ModInstallerFactory:
    """Creates install units bound to one install log, install root and state dir."""

    def __init__(self, install_log: InstallLog, install_root: str | Path, state_dir: str | Path,
                 retry_delay: float = DEFAULT_RETRY_DELAY):
        self.install_log = install_log
        self.install_root = Path(install_root)
        self.state_dir = Path(state_dir)
        self.retry_delay = retry_delay

    def create_installer(self, mod_id: str, files: list[ManagedFile],
                         confirm: Optional[ConfirmCallback] = None) -> ModInstaller:
        return ModInstaller(self.install_log, mod_id, files, self.install_root, self.state_dir,
                            confirm, self.retry_delay)

    def create_uninstaller(self, mod_id: str, confirm: Optional[ConfirmCallback] = None) -> ModUninstaller:
        return ModUninstaller(self.install_log, mod_id, self.install_root, self.state_dir,
                              confirm, self.retry_delay)
