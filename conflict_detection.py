"""
Conflict resolution for the mod activation engine.

A "conflict" means an incoming mod writes a path that something else already
occupies: either another active mod (the current top of the path's ownership
sequence) or an unmanaged file that was on disk before any mod claimed it.

Ownership is last-installed-wins.  Each managed path keeps an ordered
sequence of mod ids; the last entry is the content on disk.  Uninstalling a
mod removes it from every sequence and, where it was on top, hands the path
back to the most recent remaining owner (or deletes the file when nobody is
left).

Public API
----------
find_conflicts(install_log, mod_id, paths, install_root)
    -> list of Conflict(path, owner)  (owner None = unmanaged file)
resolve_install(sequence, mod_id) -> new sequence
plan_uninstall(sequences, mod_id) -> list of UninstallStep
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from install_log import InstallLog

_log = logging.getLogger(__name__)

ORIGINAL_OWNER = "<original>"

UninstallAction = Literal["restore", "delete", "keep"]


@dataclass(frozen=True)
class Conflict:
    """One path an install would overwrite."""

    path: str
    owner: str | None  # None for an unmanaged file already on disk

    def describe(self) -> str:
        if self.owner is None:
            return f"{self.path} (unmanaged file)"
        return f"{self.path} (owned by {self.owner})"


@dataclass(frozen=True)
class UninstallStep:
    """What happens to one path when a mod leaves its ownership sequence.

    ``restore``: the mod was on top; ``owner``'s content goes back on disk.
    ``delete``:  the mod was the only owner; the file is removed.
    ``keep``:    the mod was below the top; disk is untouched and only the
                 mod's stashed copy is dropped.
    """

    path: str
    action: UninstallAction
    owner: str | None = None


# ── Install ───────────────────────────────────────────────────────────


def resolve_install(sequence: Sequence[str], mod_id: str) -> list[str]:
    """Return ``sequence`` with ``mod_id`` as the new owner (no duplicates)."""
    resolved = [owner for owner in sequence if owner != mod_id]
    resolved.append(mod_id)
    return resolved


def find_conflicts(
    install_log: InstallLog,
    mod_id: str,
    paths: Iterable[str],
    install_root: Path,
) -> list[Conflict]:
    """List the paths installing ``mod_id`` would take over from someone else.

    Paths already owned by ``mod_id`` are not conflicts.  A path with no
    ownership record is a conflict only when a file exists there on disk.
    """
    conflicts: list[Conflict] = []
    for path in paths:
        owner = install_log.owner_of(path)
        if owner is None:
            if (install_root / path).is_file():
                conflicts.append(Conflict(path, None))
        elif owner != mod_id:
            conflicts.append(Conflict(path, None if owner == ORIGINAL_OWNER else owner))
    if conflicts:
        _log.debug("%s conflicts on %d path(s)", mod_id, len(conflicts))
    return conflicts


def format_conflicts(mod_id: str, conflicts: list[Conflict]) -> str:
    """Build the confirmation prompt shown before an overwrite."""
    lines = [f"  • {c.describe()}" for c in conflicts[:10]]
    if len(conflicts) > 10:
        lines.append(f"  ... and {len(conflicts) - 10} more")
    return (
        f"Activating '{mod_id}' will overwrite {len(conflicts)} file(s):\n\n"
        + "\n".join(lines)
        + "\n\nThe overwritten content is kept and restored when the mod is deactivated. Continue?"
    )


# ── Uninstall ─────────────────────────────────────────────────────────


def plan_uninstall(sequences: Mapping[str, Sequence[str]], mod_id: str) -> list[UninstallStep]:
    """Work out, per path, what removing ``mod_id`` does to the disk."""
    steps: list[UninstallStep] = []
    for path, sequence in sequences.items():
        if mod_id not in sequence:
            continue
        remaining = [owner for owner in sequence if owner != mod_id]
        if sequence[-1] != mod_id:
            steps.append(UninstallStep(path, "keep"))
        elif remaining:
            steps.append(UninstallStep(path, "restore", remaining[-1]))
        else:
            steps.append(UninstallStep(path, "delete"))
    return steps
