"""
Tests for game profiles: built-ins, profile files and launch commands.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest

from game_profiles import BUILTIN_PROFILES, GameProfile, get_profile, load_profiles
from install_errors import ManifestValidationError


def test_fallout4_profile_layout(tmp_path):
    profile = get_profile("fallout4")

    assert profile.mods_root(tmp_path) == tmp_path / "Data"
    assert profile.executables == ("Fallout4.exe",)
    assert profile.launcher == "Fallout4Launcher.exe"

    with patch("game_profiles.documents_dir", return_value=tmp_path / "Docs"):
        paths = profile.settings_paths()
    user_dir = tmp_path / "Docs" / "My Games" / "Fallout4"
    assert paths == {
        "ini": user_dir / "Fallout4.ini",
        "prefs": user_dir / "Fallout4Prefs.ini",
        "custom": user_dir / "Fallout4Custom.ini",
    }


def test_launch_prefers_script_extender(tmp_path):
    profile = get_profile("fallout4")
    (tmp_path / "Fallout4.exe").write_bytes(b"")

    assert profile.is_installed_at(tmp_path)
    assert profile.launch_command(tmp_path) == [str(tmp_path / "Fallout4Launcher.exe")]

    (tmp_path / "f4se_loader.exe").write_bytes(b"")
    assert profile.launch_command(tmp_path) == [str(tmp_path / "f4se_loader.exe")]


def test_tool_command(tmp_path):
    profile = get_profile("fallout4")
    assert profile.tool_command("Creation Kit", tmp_path) == [str(tmp_path / "CreationKit.exe")]
    with pytest.raises(KeyError):
        profile.tool_command("Hammer", tmp_path)


def test_profile_without_data_subdir_uses_install_root(tmp_path):
    profile = GameProfile(game_id="g", name="G", executables=["g.exe"], data_subdir="\\")
    assert profile.mods_root(tmp_path) == tmp_path
    assert profile.settings_paths() == {}
    assert not profile.is_installed_at(tmp_path)
    assert profile.launch_command(tmp_path) == [str(tmp_path / "g.exe")]


def test_profiles_file_extends_builtins(tmp_path):
    path = tmp_path / "profiles.json"
    path.write_text(
        json.dumps({"skyrimse": {"name": "Skyrim SE", "executables": ["SkyrimSE.exe"], "data_subdir": "Data/"}}),
        encoding="utf-8",
    )

    profiles = load_profiles(path)

    assert set(BUILTIN_PROFILES) <= set(profiles)
    skyrim = get_profile("skyrimse", profiles)
    assert skyrim.game_id == "skyrimse"
    assert skyrim.mods_root(Path("/games/skyrim")) == Path("/games/skyrim/Data")


@pytest.mark.parametrize(
    "content",
    ["not json", json.dumps({"bad": {"name": "No exe", "executables": []}}), json.dumps(["list"])],
)
def test_invalid_profiles_file(tmp_path, content):
    path = tmp_path / "profiles.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ManifestValidationError):
        load_profiles(path)


def test_unknown_game():
    with pytest.raises(KeyError, match="fallout4"):
        get_profile("morrowind")


def test_profiles_are_frozen():
    with pytest.raises(Exception):
        BUILTIN_PROFILES["fallout4"].name = "changed"
