"""
Tests for archive scanning and manifest handling in ModRepository.
"""

import json
from pathlib import Path

import py7zr
import pytest

from install_errors import ChecksumMismatchError, ManifestValidationError
from manifest_schema import MANIFEST_FILENAME, sha256_hex
from mod_repository import ModRepository, list_archive_files, mod_id_from_filename, read_archive_member
from tests.conftest import make_zip


def manifest_json(**fields) -> str:
    return json.dumps({"manifest_version": "1.0", **fields})


@pytest.mark.parametrize(
    "filename, expected",
    [
        ("CoolArmor-1.2.0.zip", "CoolArmor"),
        ("CoolArmor_v2.7z", "CoolArmor"),
        ("Cool Armor 1.0b.rar", "Cool Armor"),
        ("NoVersion.zip", "NoVersion"),
        ("1.0.zip", "1.0"),
    ],
)
def test_mod_id_from_filename(filename, expected):
    assert mod_id_from_filename(Path(filename)) == expected


def test_archive_without_manifest_installs_everything(dirs):
    mods, _, _ = dirs
    make_zip(mods / "CoolArmor-1.2.zip", {"CoolArmor.esp": b"esp", "textures/a.dds": b"dds"})

    packages = ModRepository(mods).scan()

    assert list(packages) == ["CoolArmor"]
    package = packages["CoolArmor"]
    assert package.manifest is None
    assert package.members == {"CoolArmor.esp": "CoolArmor.esp", "textures/a.dds": "textures/a.dds"}
    files = {f.path: f.read_verified() for f in package.managed_files()}
    assert files == {"CoolArmor.esp": b"esp", "textures/a.dds": b"dds"}


def test_manifest_root_id_and_checksums(dirs):
    mods, _, _ = dirs
    make_zip(
        mods / "whatever.zip",
        {
            MANIFEST_FILENAME: manifest_json(
                mod_id="CoolArmor",
                name="Cool Armor",
                version="1.2.0",
                root="Data",
                checksums={"CoolArmor.esp": sha256_hex(b"esp")},
            ),
            "readme.txt": b"not installed",
            "Data/CoolArmor.esp": b"esp",
            "Data/textures/a.dds": b"dds",
        },
    )

    repo = ModRepository(mods)
    package = repo.get("CoolArmor")

    assert package.name == "Cool Armor"
    assert package.version == "1.2.0"
    assert set(package.members) == {"CoolArmor.esp", "textures/a.dds"}
    by_path = {f.path: f for f in repo.manifest("CoolArmor")}
    assert by_path["CoolArmor.esp"].sha256 == sha256_hex(b"esp")
    assert by_path["textures/a.dds"].sha256 is None
    assert by_path["CoolArmor.esp"].read_verified("CoolArmor") == b"esp"


def test_checksum_mismatch_is_detected_on_read(dirs):
    mods, _, _ = dirs
    make_zip(
        mods / "Bad.zip",
        {
            MANIFEST_FILENAME: manifest_json(mod_id="Bad", checksums={"a.txt": sha256_hex(b"other")}),
            "a.txt": b"actual",
        },
    )

    (managed,) = ModRepository(mods).manifest("Bad")

    with pytest.raises(ChecksumMismatchError):
        managed.read_verified("Bad")


@pytest.mark.parametrize(
    "manifest",
    [
        "{ not json",
        manifest_json(mod_id=""),
        json.dumps({"manifest_version": "2.0", "mod_id": "Future"}),
        manifest_json(mod_id="X", checksums={"../escape.txt": "0" * 64}),
        manifest_json(mod_id="X", checksums={"gone.txt": "0" * 64}),
    ],
)
def test_invalid_archives_are_skipped(dirs, manifest):
    mods, _, _ = dirs
    make_zip(mods / "Broken.zip", {MANIFEST_FILENAME: manifest, "a.txt": b"a"})
    make_zip(mods / "Good.zip", {"g.txt": b"g"})

    packages = ModRepository(mods).scan()

    assert list(packages) == ["Good"]


def test_first_archive_wins_for_duplicate_ids(dirs):
    mods, _, _ = dirs
    make_zip(mods / "A-1.0.zip", {"a.txt": b"first"})
    make_zip(mods / "A-2.0.zip", {"a.txt": b"second"})

    packages = ModRepository(mods).scan()

    assert packages["A"].filepath.name == "A-1.0.zip"


def test_unsupported_and_empty_archives_are_ignored(dirs):
    mods, _, _ = dirs
    (mods / "notes.txt").write_text("hello", encoding="utf-8")
    make_zip(mods / "Empty.zip", {})

    assert ModRepository(mods).scan() == {}


def test_missing_mods_dir_scans_empty(tmp_path):
    assert ModRepository(tmp_path / "nope").scan() == {}


def test_unknown_mod_raises_validation_error(dirs):
    mods, _, _ = dirs
    with pytest.raises(ManifestValidationError):
        ModRepository(mods).get("ghost")


def test_7z_archives_are_read(dirs, tmp_path):
    mods, _, _ = dirs
    src = tmp_path / "src"
    (src / "meshes").mkdir(parents=True)
    (src / "meshes" / "m.nif").write_bytes(b"mesh")
    archive = mods / "SevenMod.7z"
    with py7zr.SevenZipFile(archive, "w") as sz:
        sz.write(src / "meshes" / "m.nif", "meshes/m.nif")

    assert list_archive_files(archive) == ["meshes/m.nif"]
    assert read_archive_member(archive, "meshes/m.nif") == b"mesh"
    assert set(ModRepository(mods).scan()["SevenMod"].members) == {"meshes/m.nif"}
