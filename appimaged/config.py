"""Well-known locations and the options the daemon runs with."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

EXEC_LOCATION_KEY = "X-ExecLocation"
"""Desktop-file key recording where the AppImage lives on disk."""

UPDATE_INFORMATION_KEY = "X-AppImage-UpdateInformation"
"""Desktop-file key holding the embedded update information."""


def _xdg_dir(variable: str, fallback: str) -> Path:
    value = os.environ.get(variable, "")
    if value and os.path.isabs(value):
        return Path(value)
    return Path.home() / fallback


def data_home() -> Path:
    """Return $XDG_DATA_HOME, defaulting to ~/.local/share."""
    return _xdg_dir("XDG_DATA_HOME", ".local/share")


def cache_home() -> Path:
    """Return $XDG_CACHE_HOME, defaulting to ~/.cache."""
    return _xdg_dir("XDG_CACHE_HOME", ".cache")


def config_home() -> Path:
    """Return $XDG_CONFIG_HOME, defaulting to ~/.config."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def applications_dir() -> Path:
    """Directory in which menu entries for integrated AppImages live."""
    return data_home() / "applications"


def thumbnails_dir() -> Path:
    """Directory for normal-sized thumbnails as per the thumbnail specification."""
    return cache_home() / "thumbnails" / "normal"


@dataclass
class Settings:
    """Command-line options and directories of a running daemon."""

    verbose: bool = False
    overwrite: bool = False
    clean: bool = True
    quiet: bool = False
    no_zeroconf: bool = False
    applications_directory: Path = field(default_factory=applications_dir)
    thumbnails_directory: Path = field(default_factory=thumbnails_dir)
    desktop_cache_directory: Path = field(
        default_factory=lambda: cache_home() / "applications"
    )