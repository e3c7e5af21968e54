import hashlib
import os
import struct
import zlib
from pathlib import Path

import pytest

from appimaged.appimage import AppImage
from appimaged.thumbnail import embed_png_text, extract_thumbnail, is_png, is_svg


def _chunk(kind, payload):
    crc = zlib.crc32(kind + payload) & 0xFFFFFFFF
    return struct.pack(">I", len(payload)) + kind + payload + struct.pack(">I", crc)


def _png(width, height):
    row = b"\x00" + b"\x10\x20\x30\xff" * width
    return (
        b"\x89PNG\r\n\x1a\n"
        + _chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, 6, 0, 0, 0))
        + _chunk(b"IDAT", zlib.compress(row * height))
        + _chunk(b"IEND", b"")
    )


def _chunks(data):
    pos = 8
    while pos < len(data):
        (length,) = struct.unpack(">I", data[pos : pos + 4])
        kind = data[pos + 4 : pos + 8]
        payload = data[pos + 8 : pos + 8 + length]
        (crc,) = struct.unpack(">I", data[pos + 8 + length : pos + 12 + length])
        yield kind, payload, crc
        pos += 12 + length


def _texts(data):
    result = {}
    for kind, payload, _ in _chunks(data):
        if kind == b"tEXt":
            key, _, value = payload.partition(b"\x00")
            result[key.decode("latin-1")] = value.decode("latin-1")
    return result


def _appimage(tmp_path, kind=2):
    path = tmp_path / "Demo.AppImage"
    path.write_bytes(b"\x7fELF")
    uri = path.as_uri()
    digest = hashlib.md5(uri.encode()).hexdigest()
    return AppImage(
        path=path,
        type=kind,
        name="Demo",
        uri=uri,
        md5=digest,
        desktop_filepath=tmp_path / f"appimagekit_{digest}.desktop",
        thumbnail_filepath=tmp_path / "thumbs" / f"{digest}.png",
    )


def test_is_png():
    assert is_png(_png(1, 1)) is True
    assert is_png(b"GIF89a") is False
    assert is_png(b"") is False


@pytest.mark.parametrize(
    "data",
    [
        b'<svg xmlns="http://www.w3.org/2000/svg"></svg>',
        b'<?xml version="1.0"?>\n<!-- icon -->\n<svg width="1"></svg>',
        b'<?xml version="1.0"?><!DOCTYPE svg PUBLIC "-//W3C//DTD SVG 1.1//EN"><svg/>',
    ],
)
def test_is_svg_accepts_svg(data):
    assert is_svg(data) is True


@pytest.mark.parametrize("data", [b"<html><body></body></html>", b"", b"plain text"])
def test_is_svg_rejects_other(data):
    assert is_svg(data) is False


def test_is_svg_rejects_png():
    assert is_svg(_png(2, 2)) is False


def test_embed_png_text_adds_chunk_after_ihdr():
    out = embed_png_text(_png(2, 2), "Thumb::URI", "file:///tmp/a.AppImage")
    kinds = [kind for kind, _, _ in _chunks(out)]
    assert kinds[:2] == [b"IHDR", b"tEXt"]
    assert _texts(out) == {"Thumb::URI": "file:///tmp/a.AppImage"}
    assert all(zlib.crc32(k + p) & 0xFFFFFFFF == c for k, p, c in _chunks(out))


def test_embed_png_text_converts_numbers():
    out = embed_png_text(_png(1, 1), "Thumb::MTime", 1234)
    assert _texts(out)["Thumb::MTime"] == "1234"


def test_embed_png_text_rejects_non_png():
    with pytest.raises(ValueError):
        embed_png_text(b"GIF89a....", "Thumb::URI", "x")


@pytest.mark.parametrize("key", ["", "k" * 80, "a\x00b"])
def test_embed_png_text_rejects_bad_key(key):
    with pytest.raises(ValueError):
        embed_png_text(_png(1, 1), key, "x")


def test_extract_thumbnail_uses_given_icon(tmp_path):
    ai = _appimage(tmp_path)
    target = extract_thumbnail(ai, _png(3, 2), tmp_path / "thumbs")
    assert target == tmp_path / "thumbs" / ai.thumbnail_filename
    data = target.read_bytes()
    ihdr = next(payload for kind, payload, _ in _chunks(data) if kind == b"IHDR")
    assert struct.unpack(">II", ihdr[:8]) == (3, 2)
    texts = _texts(data)
    assert texts["Thumb::URI"] == ai.uri
    assert texts["Thumb::MTime"] == str(int(ai.path.stat().st_mtime))


def test_extract_thumbnail_permissions_and_mtime(tmp_path):
    ai = _appimage(tmp_path)
    os.utime(ai.path, (1_000_000, 1_000_000))
    target = extract_thumbnail(ai, _png(1, 1), tmp_path / "thumbs")
    assert target.stat().st_mode & 0o777 == 0o600
    assert target.stat().st_mtime == pytest.approx(1_000_000, abs=1e-3)


def test_extract_thumbnail_falls_back_for_missing_icon(tmp_path):
    ai = _appimage(tmp_path)
    data = extract_thumbnail(ai, None, tmp_path / "thumbs").read_bytes()
    assert is_png(data)
    assert _texts(data)["Thumb::URI"] == ai.uri


def test_extract_thumbnail_falls_back_for_svg(tmp_path):
    ai = _appimage(tmp_path)
    svg = b'<svg xmlns="http://www.w3.org/2000/svg"></svg>'
    data = extract_thumbnail(ai, svg, tmp_path / "thumbs").read_bytes()
    assert is_png(data)
    assert not is_svg(data)


def test_extract_thumbnail_skips_invalid_appimage(tmp_path):
    ai = _appimage(tmp_path, kind=-1)
    assert extract_thumbnail(ai, _png(1, 1), tmp_path / "thumbs") is None
    assert not (tmp_path / "thumbs").exists()