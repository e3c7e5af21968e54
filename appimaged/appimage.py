"""AppImage files: identification, embedded update information and lookup."""

from __future__ import annotations

import configparser
import hashlib
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote_plus

from .config import EXEC_LOCATION_KEY, applications_dir, thumbnails_dir

log = logging.getLogger(__name__)

_ELF_MAGIC = b"\x7fELF"
_UPDATE_SECTION = ".upd_info"

# Number of "|"-separated fields for each kind of update information.
_UPDATE_INFORMATION_FIELDS = {
    "zsync": 2,
    "gh-releases-zsync": 5,
    "bintray-zsync": 5,
    "pling-v1-zsync": 3,
}

# ELF header layout after e_ident, and section header layout, per class.
_ELF_LAYOUTS = {
    1: ("HHIIIIIHHHHHH", "IIIIIIIIII"),
    2: ("HHIQQQIHHHHHH", "IIQQQQIIQQ"),
}


class ElfError(ValueError):
    """Raised when a file is not a readable ELF or lacks a section."""


def detect_type(path) -> int:
    """Return the AppImage type (1 or 2) of ``path``, or -1 if it is not one."""
    try:
        with open(path, "rb") as handle:
            head = handle.read(16)
    except OSError:
        return -1
    if len(head) < 11 or head[:4] != _ELF_MAGIC or head[8:10] != b"AI":
        return -1
    return head[10] if head[10] in (1, 2) else -1


def read_elf_section(path, name: str) -> bytes:
    """Return the raw contents of the ELF section called ``name``."""
    with open(path, "rb") as handle:
        ident = handle.read(16)
        if len(ident) < 16 or ident[:4] != _ELF_MAGIC:
            raise ElfError(f"{path}: not an ELF file")
        if ident[4] not in _ELF_LAYOUTS:
            raise ElfError(f"{path}: unknown ELF class {ident[4]}")
        endian = {1: "<", 2: ">"}.get(ident[5])
        if endian is None:
            raise ElfError(f"{path}: unknown ELF byte order {ident[5]}")
        header_format, section_format = (endian + f for f in _ELF_LAYOUTS[ident[4]])

        raw = handle.read(struct.calcsize(header_format))
        if len(raw) < struct.calcsize(header_format):
            raise ElfError(f"{path}: truncated ELF header")
        header = struct.unpack(header_format, raw)
        shoff, shentsize, shnum, shstrndx = header[5], header[9], header[10], header[11]
        if shnum == 0 or shstrndx >= shnum:
            raise ElfError(f"{path}: no section name table")

        section_size = struct.calcsize(section_format)

        def section(index: int) -> tuple[int, int, int]:
            handle.seek(shoff + index * shentsize)
            entry = handle.read(section_size)
            if len(entry) < section_size:
                raise ElfError(f"{path}: truncated section header {index}")
            fields = struct.unpack(section_format, entry)
            return fields[0], fields[4], fields[5]

        def contents(offset: int, size: int) -> bytes:
            handle.seek(offset)
            return handle.read(size)

        sections = [section(index) for index in range(shnum)]
        names = contents(*sections[shstrndx][1:])
        wanted = name.encode()
        for name_offset, offset, size in sections:
            end = names.find(b"\x00", name_offset)
            if names[name_offset : end if end >= 0 else None] == wanted:
                return contents(offset, size)
    raise ElfError(f"{path}: no section {name}")


def validate_update_information(updateinformation: str) -> list[str]:
    """Check an update information string and return its fields.

    Raises ValueError when the string is not well formed.
    """
    if not updateinformation:
        raise ValueError("update information is empty")
    parts = updateinformation.split("|")
    expected = _UPDATE_INFORMATION_FIELDS.get(parts[0])
    if expected is None:
        raise ValueError(f"unknown update information type: {parts[0]!r}")
    if len(parts) != expected:
        raise ValueError(
            f"{parts[0]} update information needs {expected} fields, got {len(parts)}"
        )
    if any(not part for part in parts):
        raise ValueError("update information contains an empty field")
    if parts[0] != "pling-v1-zsync" and not parts[-1].endswith(".zsync"):
        raise ValueError("update information must point to a .zsync file")
    return parts


def _nice_name(path: Path) -> str:
    name = path.name
    for suffix in (".appimage", ".app"):
        if name.lower().endswith(suffix) and len(name) > len(suffix):
            return name[: -len(suffix)]
    return name


@dataclass
class AppImage:
    """An AppImage on disk, or one that used to be there.

    Missing or invalid files still get an object (with type -1) so that
    their integration can be removed.
    """

    path: Path
    type: int
    name: str
    uri: str
    md5: str
    desktop_filepath: Path
    thumbnail_filepath: Path
    update_information: str = ""
    startup: bool = False

    @classmethod
    def from_path(cls, path) -> "AppImage":
        """Describe the file at ``path``; never raises for missing files."""
        clean = Path(os.path.normpath(os.fspath(path)))
        uri = Path(os.path.abspath(clean)).as_uri().strip()
        digest = hashlib.md5(uri.encode()).hexdigest()
        ai = cls(
            path=clean,
            type=detect_type(clean),
            name=_nice_name(clean),
            uri=uri,
            md5=digest,
            desktop_filepath=applications_dir() / f"appimagekit_{digest}.desktop",
            thumbnail_filepath=thumbnails_dir() / f"{digest}.png",
        )
        if ai.valid:
            try:
                ai.update_information = ai.read_update_information()
            except (OSError, ValueError):
                ai.update_information = ""
        return ai

    @property
    def valid(self) -> bool:
        return self.type > 0

    @property
    def desktop_filename(self) -> str:
        return self.desktop_filepath.name

    @property
    def thumbnail_filename(self) -> str:
        return self.thumbnail_filepath.name

    @property
    def mtime(self) -> float | None:
        """Modification time of the file, or None if it cannot be read."""
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def read_update_information(self) -> str:
        """Return the update information embedded in the ``.upd_info`` section."""
        data = read_elf_section(self.path, _UPDATE_SECTION)
        return data.strip(b"\x00").decode("utf-8", errors="replace").strip()

    def validate(self) -> None:
        """Check the quality of this AppImage; raise ValueError on problems."""
        log.debug("Validating AppImage %s", self.path)
        if self.update_information:
            log.info("Validating updateinformation in %s", self.path)
            try:
                validate_update_information(self.update_information)
            except ValueError as err:
                log.error("appimage: updateinformation verification: %s", err)
                raise


def find_most_recent_file(paths) -> str | None:
    """Return the path with the newest modification time, or None."""
    candidates = []
    for path in paths:
        try:
            candidates.append((os.stat(path).st_mtime, path))
        except OSError:
            continue
    if not candidates:
        return None
    return str(max(candidates, key=lambda candidate: candidate[0])[1])


def _desktop_value(path: Path, key: str) -> str | None:
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str
    try:
        parser.read(path, encoding="utf-8")
    except (configparser.Error, UnicodeDecodeError, OSError) as err:
        log.warning("desktop: %s: %s", path, err)
        return None
    return parser.get("Desktop Entry", key, fallback=None)


def find_appimages_with_matching_update_information(
    updateinformation: str, applications_dir
) -> list[str]:
    """Return integrated AppImages whose embedded update information matches."""
    directory = Path(applications_dir)
    try:
        entries = sorted(directory.iterdir(), key=lambda entry: entry.name)
    except OSError as err:
        log.warning("desktop: %s", err)
        return []

    results = []
    for entry in entries:
        if not (entry.name.startswith("appimagekit_") and entry.name.endswith(".desktop")):
            continue
        target = _desktop_value(entry, EXEC_LOCATION_KEY)
        if not target:
            continue
        if not os.path.exists(target):
            log.info("%s does not exist, it is mentioned in %s", target, entry)
            continue
        ai = AppImage.from_path(target)
        if not ai.valid:
            continue
        try:
            embedded = ai.read_update_information()
        except (OSError, ValueError):
            continue
        if embedded and unquote_plus(embedded) == updateinformation:
            results.append(str(ai.path))
    return results


def find_most_recent_appimage_with_matching_update_information(
    updateinformation: str, applications_dir
) -> str | None:
    """Return the newest integrated AppImage for ``updateinformation``, or None."""
    return find_most_recent_file(
        find_appimages_with_matching_update_information(updateinformation, applications_dir)
    )