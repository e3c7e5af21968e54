"""Thumbnails for AppImages as described by the freedesktop thumbnail specification."""

from __future__ import annotations

import logging
import os
import re
import struct
import time
import zlib
from pathlib import Path

from .appimage import AppImage

log = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

_SVG_COMMENT = re.compile(rb"<!--.*?-->", re.S)
_SVG_START = re.compile(
    rb"\s*(?:<\?xml\b[^>]*>\s*)?(?:<!DOCTYPE\s+svg\b[^>]*>\s*)?<svg\b",
    re.I | re.S,
)


def _chunk(kind: bytes, payload: bytes) -> bytes:
    crc = zlib.crc32(kind + payload) & 0xFFFFFFFF
    return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", crc)


def _solid_png(width: int, height: int, rgba: tuple[int, int, int, int]) -> bytes:
    row = b"\x00" + bytes(rgba) * width
    header = struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0)
    return (
        PNG_SIGNATURE
        + _chunk(b"IHDR", header)
        + _chunk(b"IDAT", zlib.compress(row * height))
        + _chunk(b"IEND", b"")
    )


# Generic icon used whenever an AppImage does not provide a usable one.
_DEFAULT_ICON = _solid_png(48, 48, (0x4A, 0x6E, 0x8C, 0xFF))


def is_png(data: bytes) -> bool:
    """Return True if ``data`` carries the PNG magic at offset 1."""
    return data[1:4] == b"PNG"


def is_svg(data: bytes) -> bool:
    """Return True if ``data`` looks like an SVG document."""
    if not data or b"\x00" in data[:512] or is_png(data):
        return False
    text = data.removeprefix(b"\xef\xbb\xbf")
    return _SVG_START.match(_SVG_COMMENT.sub(b"", text)) is not None


def embed_png_text(data: bytes, key: str, value) -> bytes:
    """Return ``data`` with a tEXt chunk ``key``=``value`` placed after IHDR.

    Raises ValueError if ``data`` is not a PNG image or the key is invalid.
    """
    if not data.startswith(PNG_SIGNATURE):
        raise ValueError("not a PNG image")
    if not 1 <= len(key) <= 79 or "\x00" in key:
        raise ValueError(f"invalid PNG text key: {key!r}")
    if len(data) < 16 or data[12:16] != b"IHDR":
        raise ValueError("PNG image has no IHDR chunk")
    (length,) = struct.unpack(">I", data[8:12])
    end = 8 + 12 + length
    if end > len(data):
        raise ValueError("truncated PNG image")
    text = value if isinstance(value, bytes) else str(value).encode("latin-1")
    chunk = _chunk(b"tEXt", key.encode("latin-1") + b"\x00" + text)
    return data[:end] + chunk + data[end:]


def extract_thumbnail(ai: AppImage, icon: bytes | None, thumbnails_dir) -> Path | None:
    """Write the thumbnail for ``ai`` from ``icon`` and return its path.

    Invalid AppImages get no thumbnail and None is returned. A missing,
    SVG or otherwise non-PNG icon is replaced by the generic icon.
    """
    if ai.type <= 0:
        return None

    data = icon or _DEFAULT_ICON
    if is_svg(data):
        log.warning(
            "thumbnail: .DirIcon in %s is an SVG, this is discouraged; using generic icon",
            ai.path,
        )
        data = _DEFAULT_ICON
    if not is_png(data):
        log.info("thumbnail: Not a PNG file, using generic icon")
        data = _DEFAULT_ICON

    try:
        data = embed_png_text(data, "Thumb::URI", ai.uri)
    except ValueError as err:
        log.error("thumbnail: %s", err)

    mtime = ai.mtime
    if mtime is not None:
        try:
            data = embed_png_text(data, "Thumb::MTime", int(mtime))
        except ValueError as err:
            log.error("thumbnail: %s", err)

    directory = Path(thumbnails_dir)
    directory.mkdir(parents=True, exist_ok=True)
    target = directory / ai.thumbnail_filename
    log.debug("thumbnail: Writing icon to %s", target)
    target.write_bytes(data)
    os.chmod(target, 0o600)
    if mtime is not None:
        os.utime(target, (time.time(), mtime))
    return target