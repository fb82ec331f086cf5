"""
Exception types raised by the mod activation engine.

Every error derives from ``ModManagerError`` so callers that only want to
report a failure can catch one type.  ``FileLockedError`` is a
``FileIOError``: both are transient and get one retry inside a transaction.
"""

from __future__ import annotations

import errno
from pathlib import Path


class ModManagerError(Exception):
    """Base class for all activation engine errors."""

    def __init__(self, message: str, mod_id: str | None = None):
        self.mod_id = mod_id
        super().__init__(message)


class ManifestValidationError(ModManagerError):
    """A mod manifest or a batch mod list is malformed."""


class ConflictDeniedError(ModManagerError):
    """The confirmation callback declined an overwrite."""

    def __init__(self, paths: list[str], mod_id: str | None = None):
        self.paths = paths
        sample = ", ".join(paths[:5])
        suffix = f" (+{len(paths) - 5} more)" if len(paths) > 5 else ""
        super().__init__(f"Overwrite not confirmed for {len(paths)} file(s): {sample}{suffix}", mod_id)


class ChecksumMismatchError(ModManagerError):
    """Source content does not match the checksum declared by its manifest."""

    def __init__(self, path: str, expected: str, actual: str, mod_id: str | None = None):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for {path}: expected {expected[:12]}…, got {actual[:12]}…",
            mod_id,
        )


class FileIOError(ModManagerError):
    """A filesystem operation failed.  Eligible for one retry."""

    def __init__(self, message: str, path: Path | str | None = None):
        self.path = path
        super().__init__(message)


class FileLockedError(FileIOError):
    """The target path is in use, e.g. by the running game."""


class TransactionFailed(ModManagerError):
    """A FileTransaction step failed and the transaction was rolled back."""

    def __init__(self, step: int, description: str, cause: BaseException, mod_id: str | None = None):
        self.step = step
        self.description = description
        self.cause = cause
        super().__init__(f"Step {step} ({description}) failed: {cause}", mod_id)


class RollbackIncompleteError(TransactionFailed):
    """A step failed and some applied steps could not be undone.

    The transaction's journal is kept so the undo can be retried at the
    next start.
    """

    def __init__(self, step: int, description: str, cause: BaseException,
                 undo_errors: list[OSError], mod_id: str | None = None):
        self.undo_errors = undo_errors
        super().__init__(step, description, cause, mod_id)
        self.args = (f"{self.args[0]}; rollback incomplete, {len(undo_errors)} step(s) not undone",)


class LogCorruptionError(ModManagerError):
    """The install log failed its integrity check.  All activation is refused."""


class BatchInProgressError(ModManagerError):
    """Another batch already holds the install log's write path."""


# Windows reports a sharing violation as winerror 32 / 33 on a PermissionError.
_LOCKED_WINERRORS = {32, 33}


def classify_os_error(exc: OSError, path: Path | str) -> FileIOError:
    """Map an ``OSError`` to ``FileLockedError`` or ``FileIOError``."""
    if isinstance(exc, PermissionError) or exc.errno in (errno.EBUSY, errno.ETXTBSY):
        return FileLockedError(f"File is locked: {path} ({exc})", path)
    if getattr(exc, "winerror", None) in _LOCKED_WINERRORS:
        return FileLockedError(f"File is locked: {path} ({exc})", path)
    return FileIOError(f"I/O error on {path}: {exc}", path)
