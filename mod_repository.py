"""
Mod repository: reads mod packages from archives in a mods directory.

Each supported archive (.zip, .7z, .rar) is one mod.  The repository gives
every mod a stable identifier and hands out its file manifest; file bytes
are read from the archive lazily, when an installer asks for them.
"""

from __future__ import annotations

import logging
import re
import sys
import tempfile
import zipfile
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path

import py7zr
import rarfile
from pydantic import ValidationError

from install_errors import ManifestValidationError
from manifest_schema import MANIFEST_FILENAME, ManagedFile, ModManifest, parse_manifest

_log = logging.getLogger(__name__)

# Point rarfile at UnRAR.exe: frozen exe uses _MEIPASS, dev uses assets/
if getattr(sys, "frozen", False):
    _unrar = Path(sys._MEIPASS) / "UnRAR.exe"
else:
    _unrar = Path(__file__).parent / "assets" / "UnRAR.exe"
if _unrar.exists():
    rarfile.UNRAR_TOOL = str(_unrar)

SUPPORTED_EXTENSIONS = {".zip", ".7z", ".rar"}

# "CoolArmor-1.2.0", "CoolArmor_v2", "CoolArmor 1.0b" -> "CoolArmor"
_VERSION_SUFFIX = re.compile(r"[\s_\-]+v?\d+(?:\.\d+)*[a-z]?$", re.IGNORECASE)


def mod_id_from_filename(filepath: Path) -> str:
    """Derive a version-independent mod id from an archive file name."""
    stem = filepath.stem
    stripped = _VERSION_SUFFIX.sub("", stem).strip()
    return stripped or stem


# ── Low-level archive reading ─────────────────────────────────────────


def read_archive_member(filepath: Path, member: str) -> bytes:
    """Read a single member from an archive into bytes without extracting to disk."""
    ext = filepath.suffix.lower()
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            return zf.read(member)
    if ext == ".7z":
        with tempfile.TemporaryDirectory() as tmpdir, py7zr.SevenZipFile(filepath, "r") as sz:
            sz.extract(tmpdir, targets=[member])
            return (Path(tmpdir) / member).read_bytes()
    if ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            return rf.read(member)
    raise ValueError(f"Unsupported archive format: {ext}")


def list_archive_files(filepath: Path) -> list[str]:
    """Return the archive's file members (directories excluded), '/'-separated."""
    ext = filepath.suffix.lower()
    if ext == ".zip":
        with zipfile.ZipFile(filepath, "r") as zf:
            names = [info.filename for info in zf.infolist() if not info.is_dir()]
    elif ext == ".7z":
        with py7zr.SevenZipFile(filepath, "r") as sz:
            names = [info.filename for info in sz.list() if not info.is_directory]
    elif ext == ".rar":
        with rarfile.RarFile(filepath, "r") as rf:
            names = [info.filename for info in rf.infolist() if not info.is_dir()]
    else:
        names = []
    return [name.replace("\\", "/") for name in names]


# ── Packages ──────────────────────────────────────────────────────────


@dataclass
class ModPackage:
    """One mod archive and the member -> target path mapping it installs."""

    mod_id: str
    filepath: Path
    name: str
    version: str | None = None
    manifest: ModManifest | None = None
    members: dict[str, str] = field(default_factory=dict)  # target path -> archive member

    def managed_files(self) -> list[ManagedFile]:
        checksums = self.manifest.checksums if self.manifest else {}
        return [
            ManagedFile(
                path=target,
                source=partial(read_archive_member, self.filepath, member),
                sha256=checksums.get(target),
            )
            for target, member in self.members.items()
        ]


class ModRepository:
    """Index of the mod archives in ``mods_dir``, keyed by mod id."""

    def __init__(self, mods_dir: str | Path):
        self.mods_dir = Path(mods_dir)
        self.packages: dict[str, ModPackage] = {}

    def scan(self) -> dict[str, ModPackage]:
        self.packages = {}
        if not self.mods_dir.exists():
            _log.warning("Mods directory does not exist: %s", self.mods_dir)
            return self.packages

        for filepath in sorted(self.mods_dir.iterdir()):
            if not filepath.is_file() or filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
                continue
            try:
                package = self._analyze_archive(filepath)
            except Exception as exc:
                _log.warning("Error scanning %s: %s", filepath.name, exc)
                continue
            if not package.members:
                _log.info("%s: no mod files found, skipping", filepath.name)
                continue
            if package.mod_id in self.packages:
                _log.warning(
                    "%s: mod id %r already provided by %s, ignoring",
                    filepath.name, package.mod_id, self.packages[package.mod_id].filepath.name,
                )
                continue
            self.packages[package.mod_id] = package
            _log.info("%s: mod %r, %d file(s)", filepath.name, package.mod_id, len(package.members))

        _log.info("Scan complete: %d mod(s)", len(self.packages))
        return self.packages

    def _analyze_archive(self, filepath: Path) -> ModPackage:
        names = list_archive_files(filepath)
        package = ModPackage(mod_id=mod_id_from_filename(filepath), filepath=filepath, name=filepath.stem)

        root = ""
        if MANIFEST_FILENAME in names:
            try:
                manifest = parse_manifest(read_archive_member(filepath, MANIFEST_FILENAME))
            except (ValidationError, ValueError) as exc:
                raise ManifestValidationError(f"Invalid {MANIFEST_FILENAME} in {filepath.name}: {exc}") from exc
            package.manifest = manifest
            package.mod_id = manifest.mod_id
            package.name = manifest.name or manifest.mod_id
            package.version = manifest.version
            if manifest.root:
                root = manifest.root + "/"

        for name in names:
            if name == MANIFEST_FILENAME or not name.startswith(root):
                continue
            target = name[len(root):]
            if target:
                package.members[target] = name

        if package.manifest:
            missing = set(package.manifest.checksums) - set(package.members)
            if missing:
                raise ManifestValidationError(
                    f"{filepath.name}: checksums listed for missing files: {sorted(missing)}"
                )
        return package

    def get(self, mod_id: str) -> ModPackage:
        if not self.packages:
            self.scan()
        try:
            return self.packages[mod_id]
        except KeyError:
            raise ManifestValidationError(f"No mod archive found for '{mod_id}'", mod_id) from None

    def manifest(self, mod_id: str) -> list[ManagedFile]:
        """File manifest for ``mod_id``; usable as a batch manifest provider."""
        return self.get(mod_id).managed_files()
