"""Context menu entries for AppImages in GNOME, KDE and Xfce file managers."""

from __future__ import annotations

import logging
from pathlib import Path

log = logging.getLogger(__name__)

THUNAR_ACTION_UNIQUE_ID = "1573903056061608-1"


def _gnome_action(executable: str) -> str:
    return (
        "[Desktop Entry]\n"
        "Type=Action\n"
        "Name=Update\n"
        "Icon=terminal\n"
        "TargetLocation=true\n"
        "TargetToolbar=true\n"
        "TargetContext=true\n"
        "MimeType=application/vnd.appimage;\n"
        "Capabilities=Writable\n"
        "Profiles=directory;\n"
        "\n"
        "[X-Action-Profile directory]\n"
        f"Exec={executable} update %f\n"
    )


def _kde_service_menu(executable: str) -> str:
    return (
        "[Desktop Entry]\n"
        "Type=Service\n"
        "X-KDE-ServiceTypes=KonqPopupMenu/Plugin\n"
        "MimeType=application/vnd.appimage;\n"
        "Actions=AppImageExecutable;AppImageUpdate;\n"
        "\n"
        "[Desktop Action AppImageUpdate]\n"
        "TryExec=AppImageUpdate\n"
        "Exec=konsole -e AppImageUpdate %f\n"
        "Icon=utilities-terminal\n"
        "Name=Update\n"
        "Comment=Update the AppImage\n"
        "\n"
        "[Desktop Action AppImageExecutable]\n"
        f"Exec={executable} update %f\n"
        "Icon=utilities-terminal\n"
        "Name=Make executable\n"
    )


def _thunar_action(executable: str) -> str:
    return (
        "<action>\n"
        "    <icon>terminal</icon>\n"
        "    <name>Update</name>\n"
        f"    <unique-id>{THUNAR_ACTION_UNIQUE_ID}</unique-id>\n"
        f"    <command>{executable} %f</command>\n"
        "    <description>Update the AppImage</description>\n"
        "    <patterns>*.AppImage;*.appimage</patterns>\n"
        "    <other-files/>\n"
        "    <directories/>\n"
        "</action>"
    )


def _thunar_document(action: str) -> str:
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<actions>\n{action}\n</actions>\n'


def merge_thunar_action(existing_text: str, action: str) -> str | None:
    """Insert ``action`` right after the ``<actions>`` line of a uca.xml.

    Returns None if our action is already present; raises ValueError if
    the document has no ``<actions>`` line.
    """
    lines = existing_text.splitlines()
    if any(THUNAR_ACTION_UNIQUE_ID in line for line in lines):
        return None
    try:
        start = lines.index("<actions>")
    except ValueError:
        raise ValueError("uca.xml has no <actions> line") from None
    head = lines[: start + 1]
    tail = lines[start + 1 :]
    return "".join(f"{line}\n" for line in (*head, action, *tail))


def _write(path: Path, text: str) -> bool:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as err:
        log.error("filemanager: %s", err)
        return False
    return True


def install_filemanager_context_menus(executable, data_home, config_home) -> list[Path]:
    """Install the context menu entries and return the files written."""
    executable = str(executable)
    written = []

    gnome = Path(data_home) / "file-manager" / "actions" / "appimaged.desktop"
    if _write(gnome, _gnome_action(executable)):
        written.append(gnome)

    kde = Path(data_home) / "kservices5" / "ServiceMenus" / "appimaged.desktop"
    if _write(kde, _kde_service_menu(executable)):
        written.append(kde)

    uca = Path(config_home) / "Thunar" / "uca.xml"
    action = _thunar_action(executable)
    if uca.exists():
        try:
            merged = merge_thunar_action(uca.read_text(encoding="utf-8"), action)
        except (OSError, ValueError, UnicodeDecodeError) as err:
            log.error("filemanager: %s: %s", uca, err)
            return written
        if merged is None:
            return written
        text = merged
    else:
        text = _thunar_document(action)
    if _write(uca, text):
        written.append(uca)
    return written