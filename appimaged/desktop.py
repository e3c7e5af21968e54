"""Reading, building and writing desktop files for integrated AppImages."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from .appimage import AppImage
from .config import EXEC_LOCATION_KEY, UPDATE_INFORMATION_KEY

log = logging.getLogger(__name__)

DESKTOP_ENTRY = "Desktop Entry"
_FULLWIDTH_SEMICOLON = "\uff1b"

DesktopEntry = dict[str, dict[str, str]]


def is_writable(path) -> bool:
    """Return True if the file at ``path`` is writable by this user."""
    return os.access(path, os.W_OK)


def fix_desktop_text(text: str) -> str:
    """Undo value quoting with backticks and restore escaped semicolons."""
    if "=`" in text:
        text = text.replace("=`", "=").replace("`\n", "\n")
    return text.replace(_FULLWIDTH_SEMICOLON, ";")


def _parse_desktop_text(text: str, source: str = "<desktop file>") -> DesktopEntry:
    entry: DesktopEntry = {}
    section: dict[str, str] | None = None
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("[") and line.endswith("]"):
            section = entry.setdefault(line[1:-1].strip(), {})
            continue
        key, separator, value = line.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"{source}:{number}: malformed line {raw!r}")
        if section is None:
            raise ValueError(f"{source}:{number}: key outside of a section")
        section[key.strip()] = value.strip()
    return entry


def read_desktop_entry(path) -> DesktopEntry:
    """Parse the desktop file at ``path`` into sections of keys and values.

    Raises ValueError on malformed content and OSError if it cannot be read.
    """
    text = Path(path).read_text(encoding="utf-8")
    return _parse_desktop_text(text, str(path))


def _format_desktop_entry(entry: DesktopEntry) -> str:
    blocks = []
    for name, keys in entry.items():
        lines = [f"[{name}]"]
        lines.extend(f"{key}={value}" for key, value in keys.items())
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)


def _has(command: str) -> bool:
    return shutil.which(command) is not None


def _add_action(entry: DesktopEntry, actions: list[str], key: str, name: str, command: str) -> None:
    actions.append(key)
    entry[f"Desktop Action {key}"] = {"Name": name, "Exec": command}


def build_desktop_entry(ai: AppImage, executable, thumbnails_dir, existing: DesktopEntry | None) -> DesktopEntry:
    """Return the desktop entry integrating ``ai`` into the menu.

    ``existing`` is the desktop entry shipped inside the AppImage, if any;
    it is copied, never modified.
    """
    executable = str(executable)
    path = str(ai.path)
    entry: DesktopEntry = {name: dict(keys) for name, keys in (existing or {}).items()}
    desktop = entry.setdefault(DESKTOP_ENTRY, {})
    if existing:
        desktop.setdefault("Name", ai.name)
        desktop.setdefault("Type", "Application")
    else:
        desktop["Type"] = "Application"
        desktop["Name"] = ai.name

    desktop["Icon"] = str(Path(thumbnails_dir) / f"{ai.md5}.png")
    desktop["Exec"] = f'{executable} wrap "{path}"'
    desktop[EXEC_LOCATION_KEY] = path
    desktop["TryExec"] = executable
    desktop["Comment"] = path
    desktop["X-AppImage-Identifier"] = ai.md5
    if ai.update_information:
        desktop[UPDATE_INFORMATION_KEY] = f'"{ai.update_information}"'

    actions: list[str] = []
    writable = is_writable(ai.path)
    parent = os.path.dirname(path) or "."

    if writable:
        if _has("gio"):
            trash = f'gio trash "{path}"'
        elif _has("kioclient"):
            trash = f'kioclient move "{path}" trash:/'
        else:
            trash = f'mv "{path}" ~/.local/share/Trash/'
        _add_action(entry, actions, "Trash", "Move to Trash", trash)
        _add_action(entry, actions, "OpenPortableHome",
                    "Open Portable Home in File Manager", f'xdg-open "{path}.home"')
        _add_action(entry, actions, "CreatePortableHome",
                    "Create Portable Home", f'mkdir -p "{path}.home"')

    if ai.type > 1:
        if writable:
            extract = (
                f"bash -c \"cd '{parent}' && '{path}' --appimage-extract"
                f" && xdg-open '{os.path.join(parent, 'squashfs-root')}'\""
            )
        else:
            extract = (
                f"bash -c \"cd ~ && '{path}' --appimage-extract"
                " && xdg-open ~/squashfs-root\""
            )
        _add_action(entry, actions, "Extract", "Extract to AppDir", extract)

    if ai.update_information:
        _add_action(entry, actions, "Update", "Update", f'{executable} update "{path}"')

    if _has("xdg-open"):
        _add_action(entry, actions, "Show", "Open Containing Folder", f'xdg-open "{parent}"')

    if _has("firejail"):
        base = "firejail --env=DESKTOPINTEGRATION=appimaged --noprofile"
        for key, name, option in (
            ("Firejail", "Run in Firejail", ""),
            ("FirejailNoNetwork", "Run in Firejail Without Network Access", " --net=none"),
            ("FirejailPrivate", "Run in Private Firejail Sandbox", " --private"),
            ("FirejailOverlayTmpfs", "Run in Firejail with Temporary Overlay Filesystem", " --overlay-tmpfs"),
        ):
            _add_action(entry, actions, key, name, f'{base}{option} --appimage "{path}"')

    desktop["Actions"] = "".join(f"{action};" for action in actions)
    return entry


def write_desktop_file(ai: AppImage, executable, cache_dir, thumbnails_dir) -> Path:
    """Write the desktop file for ``ai`` into ``cache_dir`` and return its path."""
    directory = Path(cache_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / f"appimagekit_{ai.md5}.desktop"
    entry = build_desktop_entry(ai, executable, thumbnails_dir, None)
    log.debug("desktop: Saving to %s", target)
    target.write_text(fix_desktop_text(_format_desktop_entry(entry)), encoding="utf-8")
    return target


def find_desktop_files_pointing_to_executable(executable, applications_dir) -> list[str]:
    """Return names of desktop files whose Exec= mentions ``executable``.

    Raises OSError if the directory cannot be listed.
    """
    needle = str(executable)
    results = []
    for entry in sorted(Path(applications_dir).iterdir(), key=lambda item: item.name):
        if not entry.name.endswith(".desktop"):
            continue
        try:
            parsed = read_desktop_entry(entry)
        except (OSError, ValueError, UnicodeDecodeError) as err:
            log.warning("desktop: %s", err)
            continue
        if needle in parsed.get(DESKTOP_ENTRY, {}).get("Exec", ""):
            results.append(entry.name)
    return results