"""
Install log for the mod activation engine.

The log is the single authority on which mod owns which file.  It maps each
managed path to its ordered ownership sequence (the last entry is what is on
disk) and keeps the set of active mods with their install timestamps.

It is saved after every committed transaction and validated on load: a log
that fails its integrity check is marked corrupt and refuses every further
mutation until the file is repaired or removed.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, ValidationError

from conflict_detection import ORIGINAL_OWNER, UninstallStep, plan_uninstall, resolve_install
from install_errors import ConflictDeniedError, LogCorruptionError, ModManagerError

_log = logging.getLogger(__name__)

LOG_FILENAME = "install_log.json"
LOG_VERSION = 1


class InstallLogFile(BaseModel):
    """On-disk representation of the install log."""

    version: int
    active_mods: dict[str, str]
    files: dict[str, list[str]]
    checksum: str


def _payload_checksum(version: int, active_mods: dict[str, str], files: dict[str, list[str]]) -> str:
    canonical = json.dumps(
        {"version": version, "active_mods": active_mods, "files": files},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class LogSnapshot:
    files: dict[str, list[str]]
    active_mods: dict[str, str]


class InstallLog:
    """Durable file-ownership registry.

    Reads take an internal lock so they never see a half-applied mutation.
    ``write_lock`` is held by whichever batch is currently allowed to mutate
    the log.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.path = self.state_dir / LOG_FILENAME
        self.write_lock = threading.Lock()
        self.corruption: LogCorruptionError | None = None
        self._lock = threading.RLock()
        self._files: dict[str, list[str]] = {}
        self._active: dict[str, str] = {}
        self._closed = False

    @classmethod
    def open(cls, state_dir: str | Path) -> InstallLog:
        install_log = cls(state_dir)
        install_log.load()
        return install_log

    # ── Persistence ───────────────────────────────────────────────────

    def load(self):
        with self._lock:
            self._files = {}
            self._active = {}
            self.corruption = None
            if not self.path.exists():
                _log.info("No install log at %s, starting empty", self.path)
                return
            try:
                data = InstallLogFile.model_validate_json(self.path.read_bytes())
                self._check_integrity(data)
            except (OSError, ValidationError, ValueError) as exc:
                self.corruption = LogCorruptionError(f"Install log {self.path} is corrupt: {exc}")
                _log.error("%s", self.corruption)
                raise self.corruption from exc
            self._files = {path: list(seq) for path, seq in data.files.items()}
            self._active = dict(data.active_mods)
            _log.info(
                "Loaded install log: %d active mod(s), %d managed file(s)",
                len(self._active), len(self._files),
            )

    @staticmethod
    def _check_integrity(data: InstallLogFile):
        if data.version != LOG_VERSION:
            raise ValueError(f"Unsupported install log version: {data.version!r}")
        if _payload_checksum(data.version, data.active_mods, data.files) != data.checksum:
            raise ValueError("checksum does not match contents")
        for mod_id, stamp in data.active_mods.items():
            datetime.fromisoformat(stamp)
            if mod_id == ORIGINAL_OWNER:
                raise ValueError(f"{ORIGINAL_OWNER} cannot be an active mod")
        for path, sequence in data.files.items():
            if not sequence:
                raise ValueError(f"empty ownership sequence for {path!r}")
            if len(set(sequence)) != len(sequence):
                raise ValueError(f"repeated owner in sequence for {path!r}")
            if sequence == [ORIGINAL_OWNER]:
                raise ValueError(f"{path!r} is owned only by {ORIGINAL_OWNER}")
            for i, owner in enumerate(sequence):
                if owner == ORIGINAL_OWNER:
                    if i != 0:
                        raise ValueError(f"{ORIGINAL_OWNER} is not first for {path!r}")
                elif owner not in data.active_mods:
                    raise ValueError(f"{path!r} is owned by inactive mod {owner!r}")

    def save(self):
        with self._lock:
            self._ensure_writable()
            files = {path: list(seq) for path, seq in sorted(self._files.items())}
            active = dict(sorted(self._active.items()))
            record = InstallLogFile(
                version=LOG_VERSION,
                active_mods=active,
                files=files,
                checksum=_payload_checksum(LOG_VERSION, active, files),
            )
            self.state_dir.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_name(self.path.name + ".tmp")
            tmp.write_text(
                json.dumps(record.model_dump(), indent=2, ensure_ascii=False),
                encoding="utf-8",
            )
            os.replace(tmp, self.path)

    def close(self):
        with self._lock:
            self._closed = True
        _log.debug("Install log closed")

    def check_writable(self):
        """Raise ``LogCorruptionError`` (or a closed-log error) if mutations are refused."""
        with self._lock:
            self._ensure_writable()

    def _ensure_writable(self):
        if self.corruption is not None:
            raise self.corruption
        if self._closed:
            raise ModManagerError("Install log is closed")

    # ── Snapshots ─────────────────────────────────────────────────────

    def snapshot(self) -> LogSnapshot:
        with self._lock:
            return LogSnapshot(copy.deepcopy(self._files), dict(self._active))

    def restore(self, snapshot: LogSnapshot):
        with self._lock:
            self._files = copy.deepcopy(snapshot.files)
            self._active = dict(snapshot.active_mods)

    # ── Queries ───────────────────────────────────────────────────────

    def is_active(self, mod_id: str) -> bool:
        with self._lock:
            return mod_id in self._active

    @property
    def active_mods(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._active)

    def installed_at(self, mod_id: str) -> datetime | None:
        with self._lock:
            stamp = self._active.get(mod_id)
        return datetime.fromisoformat(stamp) if stamp else None

    def owner_of(self, path: str) -> str | None:
        with self._lock:
            sequence = self._files.get(path)
            return sequence[-1] if sequence else None

    def ownership(self, path: str) -> list[str]:
        with self._lock:
            return list(self._files.get(path, ()))

    def tracked_files(self) -> dict[str, list[str]]:
        with self._lock:
            return {path: list(seq) for path, seq in self._files.items()}

    def files_of(self, mod_id: str) -> list[str]:
        """Paths whose ownership sequence contains ``mod_id``."""
        with self._lock:
            return sorted(path for path, seq in self._files.items() if mod_id in seq)

    def owned_files(self, mod_id: str) -> list[str]:
        """Paths where ``mod_id`` is the current owner."""
        with self._lock:
            return sorted(path for path, seq in self._files.items() if seq[-1] == mod_id)

    # ── Mutations ─────────────────────────────────────────────────────

    def register_install(
        self,
        mod_id: str,
        files: Iterable[str],
        *,
        overwrite_confirmed: bool = True,
        preexisting: Iterable[str] = (),
        save: bool = True,
    ):
        """Make ``mod_id`` the owner of ``files`` and mark it active.

        ``preexisting`` lists unmanaged paths whose original content was
        stashed before being overwritten; they get ``ORIGINAL_OWNER`` at the
        bottom of their sequence.
        """
        if mod_id == ORIGINAL_OWNER:
            raise ModManagerError(f"{ORIGINAL_OWNER} is reserved", mod_id)
        paths = list(files)
        original = set(preexisting)
        with self._lock:
            self._ensure_writable()
            if not overwrite_confirmed:
                overwritten = [
                    path for path in paths
                    if path in original or self._files.get(path, [mod_id])[-1] != mod_id
                ]
                if overwritten:
                    raise ConflictDeniedError(overwritten, mod_id)
            for path in paths:
                sequence = self._files.get(path, [])
                if not sequence and path in original:
                    sequence = [ORIGINAL_OWNER]
                self._files[path] = resolve_install(sequence, mod_id)
            self._active[mod_id] = datetime.now(timezone.utc).isoformat()
            if save:
                self.save()
        _log.info("Registered install of %s (%d file(s))", mod_id, len(paths))

    def plan_uninstall(self, mod_id: str) -> list[UninstallStep]:
        with self._lock:
            if mod_id not in self._active:
                return []
            return plan_uninstall(self._files, mod_id)

    def register_uninstall(self, mod_id: str, *, save: bool = True) -> list[UninstallStep]:
        """Remove ``mod_id`` from every ownership sequence and deactivate it.

        Returns what must happen on disk for each affected path.  A mod that
        is not active is a no-op with an empty result.
        """
        with self._lock:
            if mod_id not in self._active:
                return []
            self._ensure_writable()
            steps = plan_uninstall(self._files, mod_id)
            for step in steps:
                remaining = [owner for owner in self._files[step.path] if owner != mod_id]
                if remaining and remaining != [ORIGINAL_OWNER]:
                    self._files[step.path] = remaining
                else:
                    del self._files[step.path]
            del self._active[mod_id]
            if save:
                self.save()
        _log.info("Registered uninstall of %s (%d file(s))", mod_id, len(steps))
        return steps
