"""
Shared fixtures and helpers for the mod activation engine test suite.
"""

import zipfile
from pathlib import Path

import pytest

from install_log import InstallLog
from manifest_schema import ManagedFile
from mod_installer import ModInstallerFactory


def make_zip(path: Path, members: dict[str, bytes | str]) -> Path:
    """Create a zip with the given {archive_path: content} entries."""
    with zipfile.ZipFile(path, "w") as zf:
        for member, data in members.items():
            zf.writestr(member, data)
    return path


def managed(files: dict[str, bytes]) -> list[ManagedFile]:
    """In-memory file manifest: {target path: bytes}."""
    return [ManagedFile(path=path, source=lambda data=data: data) for path, data in files.items()]


def tree(root: Path) -> dict[str, bytes]:
    """Snapshot every file below ``root`` as {relative posix path: bytes}."""
    if not root.exists():
        return {}
    return {
        f.relative_to(root).as_posix(): f.read_bytes()
        for f in sorted(root.rglob("*"))
        if f.is_file()
    }


@pytest.fixture
def dirs(tmp_path):
    """Return (mods_dir, install_root, state_dir) as fresh tmp_path subdirectories."""
    mods = tmp_path / "mods"
    root = tmp_path / "game" / "Data"
    state = tmp_path / "state"
    mods.mkdir()
    root.mkdir(parents=True)
    return mods, root, state


@pytest.fixture
def install_log(dirs):
    _, _, state = dirs
    return InstallLog.open(state)


@pytest.fixture
def factory(dirs, install_log):
    _, root, state = dirs
    return ModInstallerFactory(install_log, root, state, retry_delay=0)


@pytest.fixture
def install(factory):
    """Install a mod from an in-memory {path: bytes} manifest."""

    def _install(mod_id, files, confirm=None):
        return factory.create_installer(mod_id, managed(files), confirm).run()

    return _install


@pytest.fixture
def uninstall(factory):
    def _uninstall(mod_id, confirm=None):
        return factory.create_uninstaller(mod_id, confirm).run()

    return _uninstall
