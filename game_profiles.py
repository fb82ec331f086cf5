"""
Per-game configuration.

A GameProfile is a plain, frozen value describing where a game keeps its
files and how it is launched.  Supporting another game means adding a
profile (built in, or in a JSON file passed to ``load_profiles``), not
subclassing anything.

Example profiles file:

{
    "skyrimse": {
        "name": "Skyrim Special Edition",
        "executables": ["SkyrimSE.exe"],
        "script_extender_executables": ["skse64_loader.exe"],
        "data_subdir": "Data",
        "user_data_path": "{documents}/My Games/Skyrim Special Edition",
        "settings_files": {"ini": "Skyrim.ini", "prefs": "SkyrimPrefs.ini"},
        "launcher": "SkyrimSELauncher.exe"
    }
}
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from install_errors import ManifestValidationError

_log = logging.getLogger(__name__)


def documents_dir() -> Path:
    return Path.home() / "Documents"


class GameProfile(BaseModel):
    """Paths, executables and launchers for one supported game."""

    model_config = ConfigDict(frozen=True)

    game_id: str
    name: str
    executables: tuple[str, ...]
    script_extender_executables: tuple[str, ...] = ()
    data_subdir: str = ""
    user_data_path: str | None = None
    settings_files: dict[str, str] = Field(default_factory=dict)
    launcher: str | None = None
    tool_launchers: dict[str, str] = Field(default_factory=dict)

    @field_validator("executables")
    @classmethod
    def _need_executable(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        if not v:
            raise ValueError("a game profile needs at least one executable")
        return v

    @field_validator("data_subdir")
    @classmethod
    def _normalize_subdir(cls, v: str) -> str:
        return v.replace("\\", "/").strip("/")

    def mods_root(self, install_root: str | Path) -> Path:
        """Directory mod files are layered onto."""
        root = Path(install_root)
        return root / self.data_subdir if self.data_subdir else root

    def resolved_user_data_path(self) -> Path | None:
        if self.user_data_path is None:
            return None
        expanded = self.user_data_path.replace("{documents}", str(documents_dir()))
        return Path(expanded).expanduser()

    def settings_paths(self) -> dict[str, Path]:
        user_dir = self.resolved_user_data_path()
        if user_dir is None:
            return {}
        return {label: user_dir / filename for label, filename in self.settings_files.items()}

    def is_installed_at(self, install_root: str | Path) -> bool:
        return any((Path(install_root) / exe).is_file() for exe in self.executables)

    def launch_command(self, install_root: str | Path) -> list[str]:
        """Command that starts the game, preferring an installed script extender."""
        root = Path(install_root)
        for exe in self.script_extender_executables:
            if (root / exe).is_file():
                return [str(root / exe)]
        return [str(root / (self.launcher or self.executables[0]))]

    def tool_command(self, tool: str, install_root: str | Path) -> list[str]:
        try:
            return [str(Path(install_root) / self.tool_launchers[tool])]
        except KeyError:
            raise KeyError(f"{self.name} has no tool named {tool!r}") from None


BUILTIN_PROFILES: dict[str, GameProfile] = {
    profile.game_id: profile
    for profile in (
        GameProfile(
            game_id="fallout4",
            name="Fallout 4",
            executables=("Fallout4.exe",),
            script_extender_executables=("f4se_loader.exe",),
            data_subdir="Data",
            user_data_path="{documents}/My Games/Fallout4",
            settings_files={
                "ini": "Fallout4.ini",
                "prefs": "Fallout4Prefs.ini",
                "custom": "Fallout4Custom.ini",
            },
            launcher="Fallout4Launcher.exe",
            tool_launchers={"Creation Kit": "CreationKit.exe"},
        ),
        GameProfile(
            game_id="nioh3",
            name="Nioh 3",
            executables=("nioh3.exe",),
            data_subdir="package",
        ),
    )
}


def load_profiles(path: str | Path | None = None) -> dict[str, GameProfile]:
    """Built-in profiles, extended (or overridden) by a JSON profiles file."""
    profiles = dict(BUILTIN_PROFILES)
    if path is None:
        return profiles
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        for game_id, raw in data.items():
            profiles[game_id] = GameProfile.model_validate({"game_id": game_id, **raw})
    except (OSError, ValueError, ValidationError, AttributeError, TypeError) as exc:
        raise ManifestValidationError(f"Could not load game profiles from {path}: {exc}") from exc
    _log.info("Loaded %d game profile(s) from %s", len(data), path)
    return profiles


def get_profile(game_id: str, profiles: dict[str, GameProfile] | None = None) -> GameProfile:
    profiles = profiles if profiles is not None else BUILTIN_PROFILES
    try:
        return profiles[game_id]
    except KeyError:
        known = ", ".join(sorted(profiles))
        raise KeyError(f"Unknown game {game_id!r} (known: {known})") from None
