"""
Journaled filesystem transactions.

The filesystem has no multi-file transactions, so a FileTransaction stages a
list of operations, captures enough prior state before applying each one to
undo it (a backup copy in a journal directory, or an absence marker), and on
any failure undoes what it already applied in reverse order.  The install log
update is applied last, inside the same unit: if it fails the disk is rolled
back and the in-memory log restored from a snapshot.

In ``best_effort`` mode (uninstall) a failing step is logged and recorded
instead, the remaining steps still run, and the log update still commits.
A step staged with ``depends_on`` is skipped when the step it depends on
failed or was skipped.

The journal directory records every applied step in ``journal.json`` and is
only removed once the transaction has committed or fully rolled back.  A
journal left behind by a killed process is undone by ``recover_journals``.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError

from install_errors import LogCorruptionError, RollbackIncompleteError, TransactionFailed, classify_os_error

if TYPE_CHECKING:
    from install_log import InstallLog

_log = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRY_DELAY = 0.5
JOURNAL_FILENAME = "journal.json"

OperationKind = Literal["write", "copy", "delete"]


# ── Low-level file operations (patched in tests) ─────────────────────


def _write_bytes(path: Path, data: bytes):
    path.write_bytes(data)


def _copy_file(source: Path, dest: Path):
    shutil.copy2(source, dest)


def _remove_file(path: Path):
    path.unlink()


def _restore_file(backup: Path, target: Path):
    # The journal may live on another volume than the target.
    shutil.move(str(backup), str(target))


# ── Journal ───────────────────────────────────────────────────────────


class JournalRecord(BaseModel):
    description: str
    target: str
    backup: str | None = None  # None = target was absent before the step
    created_dirs: list[str] = Field(default_factory=list)


class JournalFile(BaseModel):
    label: str
    committed: bool = False
    applied: list[JournalRecord] = Field(default_factory=list)


def _undo(target: Path, backup: Path | None, created_dirs: list[Path]):
    if backup is not None:
        # A missing backup was already moved back by an earlier undo.
        if backup.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            _restore_file(backup, target)
    elif target.exists():
        target.unlink()
    for directory in created_dirs:
        if directory.exists() and not any(directory.iterdir()):
            directory.rmdir()


def recover_journals(journal_root: str | Path) -> list[str]:
    """Roll back transactions a previous process left half-applied.

    Returns the labels of the journals that were undone.  A journal whose
    undo fails again is left in place for the next attempt.
    """
    root = Path(journal_root)
    if not root.is_dir():
        return []
    recovered: list[str] = []
    for journal_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        manifest = journal_dir / JOURNAL_FILENAME
        if manifest.exists():
            try:
                journal = JournalFile.model_validate_json(manifest.read_bytes())
            except (OSError, ValidationError) as exc:
                _log.error("Unreadable journal %s left in place: %s", journal_dir, exc)
                continue
            if not journal.committed:
                failed = 0
                for record in reversed(journal.applied):
                    try:
                        _undo(
                            Path(record.target),
                            Path(record.backup) if record.backup else None,
                            [Path(d) for d in record.created_dirs],
                        )
                    except OSError as exc:
                        failed += 1
                        _log.error("[%s] could not undo %s: %s", journal.label, record.description, exc)
                if failed:
                    continue
                _log.warning(
                    "Rolled back interrupted transaction %s (%d step(s))", journal.label, len(journal.applied)
                )
                recovered.append(journal.label)
        shutil.rmtree(journal_dir, ignore_errors=True)
    return recovered


# ── Operations ────────────────────────────────────────────────────────


@dataclass
class _Operation:
    kind: OperationKind
    target: Path
    description: str
    data: bytes | None = None
    source: Path | None = None
    depends_on: int | None = None


@dataclass
class _Applied:
    op: _Operation
    backup: Path | None  # None = target was absent before the step
    created_dirs: list[Path] = field(default_factory=list)

    def record(self) -> JournalRecord:
        return JournalRecord(
            description=self.op.description,
            target=str(self.op.target.absolute()),
            backup=str(self.backup.absolute()) if self.backup is not None else None,
            created_dirs=[str(d.absolute()) for d in self.created_dirs],
        )


@dataclass(frozen=True)
class StepFailure:
    step: int
    description: str
    error: Exception


class FileTransaction:
    """An ordered list of file mutations that commits or rolls back as a unit."""

    def __init__(
        self,
        journal_root: str | Path,
        *,
        label: str = "tx",
        best_effort: bool = False,
        retry_delay: float = DEFAULT_RETRY_DELAY,
    ):
        self.journal_root = Path(journal_root)
        self.label = label
        self.best_effort = best_effort
        self.retry_delay = retry_delay
        self.failures: list[StepFailure] = []
        self.skipped: list[int] = []
        self.operations_applied = 0
        self._ops: list[_Operation] = []
        self._applied: list[_Applied] = []
        self._journal_dir: Path | None = None
        self._done = False

    def __len__(self) -> int:
        return len(self._ops)

    # ── Staging ───────────────────────────────────────────────────────
    # Each staging method returns the step index, usable as ``depends_on``.

    def _stage(self, op: _Operation) -> int:
        if op.depends_on is not None and not 0 <= op.depends_on < len(self._ops):
            raise ValueError(f"depends_on must name an earlier step, got {op.depends_on}")
        self._ops.append(op)
        return len(self._ops) - 1

    def write(self, target: Path, data: bytes, description: str | None = None,
              depends_on: int | None = None) -> int:
        """Write ``data`` to ``target``, creating it or overwriting with backup."""
        return self._stage(_Operation(
            "write", Path(target), description or f"write {target}", data=data, depends_on=depends_on
        ))

    def copy(self, source: Path, target: Path, description: str | None = None,
             depends_on: int | None = None) -> int:
        """Copy ``source`` over ``target``, creating it or overwriting with backup."""
        return self._stage(_Operation(
            "copy", Path(target), description or f"copy {source} -> {target}",
            source=Path(source), depends_on=depends_on,
        ))

    def delete(self, target: Path, description: str | None = None,
               depends_on: int | None = None) -> int:
        """Delete ``target`` with backup.  A missing target is not an error."""
        return self._stage(_Operation(
            "delete", Path(target), description or f"delete {target}", depends_on=depends_on
        ))

    # ── Commit / rollback ─────────────────────────────────────────────

    def commit(
        self,
        install_log: InstallLog | None = None,
        log_update: Callable[[], T] | None = None,
    ) -> T | None:
        """Apply every staged operation, then ``log_update``.

        Returns whatever ``log_update`` returns.  Raises ``TransactionFailed``
        after a clean rollback, ``RollbackIncompleteError`` when some step
        could not be undone, or ``LogCorruptionError`` unchanged.
        """
        if self._done:
            raise RuntimeError("FileTransaction can only be committed once")
        self._done = True

        not_applied: set[int] = set()
        for step, op in enumerate(self._ops):
            if op.depends_on in not_applied:
                _log.info("[%s] step %d (%s) skipped: step %d did not apply",
                          self.label, step, op.description, op.depends_on)
                self.skipped.append(step)
                not_applied.add(step)
                continue
            try:
                self._apply(op)
            except Exception as exc:
                if not self.best_effort:
                    _log.warning("[%s] step %d (%s) failed, rolling back: %s", self.label, step, op.description, exc)
                    raise self._abort(step, op.description, exc)
                _log.warning("[%s] step %d (%s) failed, continuing: %s", self.label, step, op.description, exc)
                self.failures.append(StepFailure(step, op.description, exc))
                not_applied.add(step)

        result = None
        if log_update is not None:
            snapshot = install_log.snapshot() if install_log is not None else None
            try:
                result = log_update()
            except LogCorruptionError:
                if snapshot is not None:
                    install_log.restore(snapshot)
                self._rollback()
                raise
            except Exception as exc:
                if snapshot is not None:
                    install_log.restore(snapshot)
                raise self._abort(len(self._ops), "update install log", exc)

        self._write_journal(committed=True)
        self._discard_journal()
        return result

    def _abort(self, step: int, description: str, cause: Exception) -> TransactionFailed:
        undo_errors = self._rollback()
        if undo_errors:
            _log.error("[%s] rollback incomplete; journal kept at %s", self.label, self._journal_dir)
            return RollbackIncompleteError(step, description, cause, undo_errors)
        return TransactionFailed(step, description, cause)

    def _apply(self, op: _Operation):
        applied = _Applied(op, self._capture(op))
        if op.kind != "delete":
            applied.created_dirs = self._missing_parents(op.target)
        self._applied.append(applied)
        self._write_journal()
        self._with_retry(op, lambda: self._mutate(op))
        self.operations_applied += 1

    def _ensure_journal(self) -> Path:
        if self._journal_dir is None:
            self._journal_dir = self.journal_root / f"{self.label}-{uuid.uuid4().hex[:8]}"
            self._journal_dir.mkdir(parents=True, exist_ok=True)
        return self._journal_dir

    def _write_journal(self, committed: bool = False):
        if self._journal_dir is None and not self._applied:
            return
        journal = JournalFile(
            label=self.label,
            committed=committed,
            applied=[applied.record() for applied in self._applied],
        )
        manifest = self._ensure_journal() / JOURNAL_FILENAME
        tmp = manifest.with_name(manifest.name + ".tmp")
        tmp.write_text(journal.model_dump_json(indent=2), encoding="utf-8")
        os.replace(tmp, manifest)

    def _capture(self, op: _Operation) -> Path | None:
        if not op.target.exists():
            return None
        backup = self._ensure_journal() / str(len(self._applied))
        self._with_retry(op, lambda: _copy_file(op.target, backup))
        return backup

    @staticmethod
    def _missing_parents(target: Path) -> list[Path]:
        missing: list[Path] = []
        parent = target.parent
        while not parent.exists():
            missing.append(parent)
            parent = parent.parent
        return missing

    @staticmethod
    def _mutate(op: _Operation):
        if op.kind == "delete":
            if op.target.exists():
                _remove_file(op.target)
            return
        op.target.parent.mkdir(parents=True, exist_ok=True)
        if op.kind == "write":
            _write_bytes(op.target, op.data)
        else:
            _copy_file(op.source, op.target)

    def _with_retry(self, op: _Operation, action: Callable[[], None]):
        """Run ``action`` with exactly one retry for transient errors."""
        try:
            action()
            return
        except OSError as exc:
            error = classify_os_error(exc, op.target)
            _log.info("[%s] %s; retrying in %.1fs", self.label, error, self.retry_delay)
        time.sleep(self.retry_delay)
        try:
            action()
        except OSError as exc:
            raise classify_os_error(exc, op.target) from exc

    def _rollback(self) -> list[OSError]:
        """Undo applied steps newest first.  Returns the undo errors.

        On a clean rollback the journal is removed; otherwise it is rewritten
        with the steps still to undo and left for ``recover_journals``.
        """
        remaining: list[_Applied] = []
        errors: list[OSError] = []
        for applied in reversed(self._applied):
            try:
                _undo(applied.op.target, applied.backup, applied.created_dirs)
            except OSError as exc:
                _log.error("[%s] could not undo %s: %s", self.label, applied.op.description, exc)
                remaining.insert(0, applied)
                errors.append(exc)
        self._applied = remaining
        if errors:
            self._write_journal()
        else:
            self._discard_journal()
        return errors

    def _discard_journal(self):
        if self._journal_dir is not None:
            shutil.rmtree(self._journal_dir, ignore_errors=True)
            self._journal_dir = None
