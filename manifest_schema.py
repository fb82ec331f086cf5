"""
Manifest schema for the mod activation engine.

Mod authors can include a ``modmanifest.json`` at the root of their archive
to give the mod a stable identifier, restrict which archive directory is
installed, and declare SHA-256 checksums for its files.  The repository
reads it while scanning archives.

If no manifest is present the mod id is derived from the archive name and
every file in the archive is installed, unverified.

Schema version 1.0
------------------
Archive layout example:

    CoolArmor-1.2.0.zip
    ├── modmanifest.json
    ├── readme.txt            <- outside "root"; not installed
    └── Data/                 <- root; installed relative to the mods root
        ├── CoolArmor.esp
        └── textures/armor.dds

Manifest:

{
    "manifest_version": "1.0",
    "mod_id": "CoolArmor",
    "name": "Cool Armor",
    "version": "1.2.0",
    "root": "Data",
    "checksums": {
        "CoolArmor.esp": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08"
    }
}
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass

from pydantic import BaseModel, Field, field_validator, model_validator

from install_errors import ChecksumMismatchError, ManifestValidationError

MANIFEST_FILENAME = "modmanifest.json"
CURRENT_VERSION = (1, 0)  # (major, minor) supported by this build

_log = logging.getLogger(__name__)


def normalize_target_path(path: str) -> str:
    """Return ``path`` as a clean relative POSIX path.

    Raises ``ManifestValidationError`` for absolute paths, drive letters,
    ``..`` components and empty paths.
    """
    cleaned = path.replace("\\", "/").strip()
    if not cleaned or cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise ManifestValidationError(f"Invalid target path: {path!r}")
    parts = [part for part in cleaned.split("/") if part not in ("", ".")]
    if not parts or ".." in parts:
        raise ManifestValidationError(f"Invalid target path: {path!r}")
    return "/".join(parts)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ModManifest(BaseModel):
    """Parsed contents of a modmanifest.json file."""

    manifest_version: str
    mod_id: str
    name: str | None = None
    version: str | None = None
    author: str | None = None
    url: str | None = None
    root: str | None = None
    checksums: dict[str, str] = Field(default_factory=dict)

    @field_validator("manifest_version")
    @classmethod
    def _check_version(cls, v: str) -> str:
        try:
            major, minor = (int(x) for x in v.split("."))
        except ValueError:
            raise ValueError(
                f"Invalid manifest_version {v!r}: expected 'major.minor' (e.g. '1.0')"
            )
        cur_major, cur_minor = CURRENT_VERSION
        if major > cur_major:
            raise ValueError(
                f"manifest_version {v!r} requires a newer mod manager "
                f"(this build supports up to version {cur_major}.x)"
            )
        if major == cur_major and minor > cur_minor:
            _log.warning(
                "Manifest version %s is newer than this build supports (%d.%d); "
                "some fields may be ignored.",
                v, cur_major, cur_minor,
            )
        return v

    @field_validator("mod_id")
    @classmethod
    def _check_mod_id(cls, v: str) -> str:
        v = v.strip()
        if not v or v.startswith("<"):
            raise ValueError(f"Invalid mod_id {v!r}")
        return v

    @field_validator("root")
    @classmethod
    def _normalize_root(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.replace("\\", "/").strip("/")
        return v or None

    @model_validator(mode="after")
    def _normalize_checksums(self) -> ModManifest:
        normalized: dict[str, str] = {}
        for path, digest in self.checksums.items():
            try:
                key = normalize_target_path(path)
            except ManifestValidationError as exc:
                raise ValueError(str(exc))
            digest = digest.strip().lower()
            if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
                raise ValueError(f"Invalid SHA-256 checksum for {path!r}")
            if key in normalized:
                raise ValueError(f"Duplicate checksum entry: {key!r}")
            normalized[key] = digest
        self.checksums = normalized
        return self


def parse_manifest(data: bytes) -> ModManifest:
    """Parse raw JSON bytes into a ModManifest.

    Raises ``pydantic.ValidationError`` if the data is invalid.
    Raises ``json.JSONDecodeError`` if the bytes are not valid JSON.
    """
    return ModManifest.model_validate(json.loads(data))


@dataclass
class ManagedFile:
    """One file a mod contributes: where it goes and where its bytes come from."""

    path: str
    source: Callable[[], bytes]
    sha256: str | None = None

    def read_verified(self, mod_id: str | None = None) -> bytes:
        data = self.source()
        if self.sha256 is not None:
            actual = sha256_hex(data)
            if actual != self.sha256:
                raise ChecksumMismatchError(self.path, self.sha256, actual, mod_id)
        return data


def validate_file_list(mod_id: str, files: list[ManagedFile]) -> list[ManagedFile]:
    """Normalize target paths and reject empty or duplicated file lists."""
    if not files:
        raise ManifestValidationError(f"Mod '{mod_id}' has no files to install", mod_id)
    seen: set[str] = set()
    validated: list[ManagedFile] = []
    for managed in files:
        try:
            path = normalize_target_path(managed.path)
        except ManifestValidationError as exc:
            raise ManifestValidationError(f"Mod '{mod_id}': {exc}", mod_id)
        if path.casefold() in seen:
            raise ManifestValidationError(f"Mod '{mod_id}' lists {path!r} twice", mod_id)
        seen.add(path.casefold())
        validated.append(ManagedFile(path=path, source=managed.source, sha256=managed.sha256))
    return validated
