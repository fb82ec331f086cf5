"""
Tests for FileTransaction: commit, rollback, retries and best-effort mode.
"""

import errno
import shutil
from pathlib import Path
from unittest.mock import patch

import pytest

from file_transaction import FileTransaction, recover_journals
from install_errors import (
    FileIOError,
    FileLockedError,
    LogCorruptionError,
    RollbackIncompleteError,
    TransactionFailed,
)
from tests.conftest import tree

_real_write = Path.write_bytes


def failing_write(victim: Path, exc: OSError):
    """A _write_bytes replacement that always fails for ``victim``."""

    def _write(path, data):
        if path == victim:
            raise exc
        _real_write(path, data)

    return _write


@pytest.fixture
def root(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "keep.txt").write_bytes(b"original keep")
    (root / "gone.txt").write_bytes(b"to be deleted")
    return root


@pytest.fixture
def journal(tmp_path):
    return tmp_path / "journal"


def test_commit_applies_all_operations(root, journal):
    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "new" / "deep" / "a.txt", b"new file")
    tx.write(root / "keep.txt", b"overwritten")
    tx.delete(root / "gone.txt")
    tx.delete(root / "never_existed.txt")

    tx.commit()

    assert tree(root) == {"keep.txt": b"overwritten", "new/deep/a.txt": b"new file"}
    assert tx.operations_applied == 4
    assert list(journal.iterdir()) == []


@pytest.mark.parametrize("fail_at", [0, 1, 2, 3])
def test_failure_at_any_step_restores_snapshot(root, journal, install_log, fail_at):
    install_log.register_install("A", ["keep.txt"])
    before_disk = tree(root)
    before_log = install_log.tracked_files()

    targets = [root / "a.txt", root / "keep.txt", root / "sub" / "b.txt", root / "c.txt"]
    tx = FileTransaction(journal, retry_delay=0)
    tx.write(targets[0], b"a")
    tx.write(targets[1], b"overwritten")
    tx.write(targets[2], b"b")
    tx.write(targets[3], b"c")

    with patch("file_transaction._write_bytes", failing_write(targets[fail_at], OSError(errno.EIO, "boom"))):
        with pytest.raises(TransactionFailed) as excinfo:
            tx.commit(install_log, lambda: install_log.register_install("B", ["a.txt", "keep.txt"]))

    assert excinfo.value.step == fail_at
    assert isinstance(excinfo.value.cause, FileIOError)
    assert tree(root) == before_disk
    assert not (root / "sub").exists()
    assert install_log.tracked_files() == before_log
    assert not install_log.is_active("B")


def test_failing_delete_is_rolled_back(root, journal):
    before = tree(root)
    tx = FileTransaction(journal, retry_delay=0)
    tx.delete(root / "gone.txt")
    tx.write(root / "keep.txt", b"changed")

    with patch("file_transaction._write_bytes", side_effect=OSError(errno.ENOSPC, "disk full")):
        with pytest.raises(TransactionFailed) as excinfo:
            tx.commit()

    assert excinfo.value.step == 1
    assert tree(root) == before


def test_locked_file_is_retried_once(root, journal):
    calls = []

    def flaky(path, data):
        calls.append(path)
        if len(calls) == 1:
            raise PermissionError(errno.EACCES, "in use")
        _real_write(path, data)

    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "keep.txt", b"second try")
    with patch("file_transaction._write_bytes", flaky):
        tx.commit()

    assert len(calls) == 2
    assert (root / "keep.txt").read_bytes() == b"second try"


def test_locked_file_fails_after_one_retry(root, journal):
    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "keep.txt", b"never")
    locked = PermissionError(errno.EACCES, "in use")

    with patch("file_transaction._write_bytes", side_effect=locked) as write:
        with pytest.raises(TransactionFailed) as excinfo:
            tx.commit()

    assert write.call_count == 2
    assert isinstance(excinfo.value.cause, FileLockedError)
    assert (root / "keep.txt").read_bytes() == b"original keep"


def test_log_update_failure_rolls_back_disk_and_log(root, journal, install_log):
    before = tree(root)

    def update():
        install_log.register_install("A", ["a.txt"], save=False)
        raise RuntimeError("save failed")

    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "a.txt", b"a")
    with pytest.raises(TransactionFailed) as excinfo:
        tx.commit(install_log, update)

    assert excinfo.value.description == "update install log"
    assert tree(root) == before
    assert not install_log.is_active("A")


def test_log_corruption_propagates_unwrapped(root, journal, install_log):
    def update():
        raise LogCorruptionError("bad log")

    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "a.txt", b"a")
    with pytest.raises(LogCorruptionError):
        tx.commit(install_log, update)
    assert not (root / "a.txt").exists()


def test_best_effort_records_failures_and_continues(root, journal):
    tx = FileTransaction(journal, best_effort=True, retry_delay=0)
    tx.write(root / "keep.txt", b"fails")
    tx.delete(root / "gone.txt")

    with patch("file_transaction._write_bytes", side_effect=OSError(errno.EIO, "boom")):
        result = tx.commit(None, lambda: "committed")

    assert result == "committed"
    assert [f.step for f in tx.failures] == [0]
    assert not (root / "gone.txt").exists()


def test_transaction_commits_only_once(root, journal):
    tx = FileTransaction(journal)
    tx.commit()
    with pytest.raises(RuntimeError):
        tx.commit()


def test_dependent_step_is_skipped_when_its_dependency_failed(root, journal):
    stash = root / "stash.bin"
    stash.write_bytes(b"only copy")
    tx = FileTransaction(journal, best_effort=True, retry_delay=0)
    restored = tx.copy(stash, root / "keep.txt", "restore keep.txt")
    tx.delete(stash, "drop stash", depends_on=restored)
    tx.delete(root / "gone.txt", "delete gone.txt")

    def locked_target(source, dest):
        if dest == root / "keep.txt":
            raise PermissionError(errno.EACCES, "in use")
        shutil.copy2(source, dest)

    with patch("file_transaction._copy_file", locked_target):
        tx.commit()

    assert [f.step for f in tx.failures] == [0]
    assert tx.skipped == [1]
    assert stash.read_bytes() == b"only copy"
    assert not (root / "gone.txt").exists()


def test_depends_on_must_name_an_earlier_step(root, journal):
    tx = FileTransaction(journal)
    with pytest.raises(ValueError):
        tx.delete(root / "gone.txt", depends_on=0)


def test_rollback_works_when_journal_is_on_another_volume(root, journal):
    before = tree(root)
    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "keep.txt", b"mod")
    tx.write(root / "b.txt", b"b")
    cross_device = OSError(errno.EXDEV, "Invalid cross-device link")

    with patch("os.rename", side_effect=cross_device), \
            patch("file_transaction._write_bytes", failing_write(root / "b.txt", OSError(errno.EIO, "boom"))):
        with pytest.raises(TransactionFailed) as excinfo:
            tx.commit()

    assert not isinstance(excinfo.value, RollbackIncompleteError)
    assert tree(root) == before
    assert list(journal.iterdir()) == []


def test_incomplete_rollback_keeps_journal_for_recovery(root, journal):
    before = tree(root)
    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "keep.txt", b"mod")
    tx.write(root / "b.txt", b"b")

    with patch("file_transaction._restore_file", side_effect=OSError(errno.EIO, "stuck")), \
            patch("file_transaction._write_bytes", failing_write(root / "b.txt", OSError(errno.EIO, "boom"))):
        with pytest.raises(RollbackIncompleteError) as excinfo:
            tx.commit()

    assert len(excinfo.value.undo_errors) == 1
    assert "rollback incomplete" in str(excinfo.value)
    assert (root / "keep.txt").read_bytes() == b"mod"
    assert len(list(journal.iterdir())) == 1

    assert recover_journals(journal) == ["tx"]
    assert tree(root) == before
    assert list(journal.iterdir()) == []


def test_interrupted_commit_is_undone_by_recovery(root, journal):
    before = tree(root)
    tx = FileTransaction(journal, label="install-A", retry_delay=0)
    tx.write(root / "keep.txt", b"mod")
    tx.write(root / "new" / "a.txt", b"a")
    tx.delete(root / "gone.txt")

    def killed(path, data):
        if path.name == "a.txt":
            raise KeyboardInterrupt
        _real_write(path, data)

    with patch("file_transaction._write_bytes", killed):
        with pytest.raises(KeyboardInterrupt):
            tx.commit()
    assert (root / "keep.txt").read_bytes() == b"mod"

    assert recover_journals(journal) == ["install-A"]
    assert tree(root) == before
    assert not (root / "new").exists()
    assert list(journal.iterdir()) == []


def test_recovery_ignores_committed_and_missing_journals(root, journal, tmp_path):
    assert recover_journals(tmp_path / "nothing-here") == []

    tx = FileTransaction(journal, retry_delay=0)
    tx.write(root / "keep.txt", b"committed")
    tx.commit()

    assert recover_journals(journal) == []
    assert (root / "keep.txt").read_bytes() == b"committed"
