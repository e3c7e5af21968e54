from unittest import mock

import pytest

from appimaged.appimage import AppImage
from appimaged.config import EXEC_LOCATION_KEY, UPDATE_INFORMATION_KEY
from appimaged.desktop import (
    build_desktop_entry,
    find_desktop_files_pointing_to_executable,
    fix_desktop_text,
    is_writable,
    read_desktop_entry,
    write_desktop_file,
)


@pytest.fixture
def appimage(tmp_path):
    path = tmp_path / "Tool-x86_64.AppImage"
    path.write_bytes(b"\x7fELF" + b"\x02\x01\x01\x00" + b"AI\x02" + b"\x00" * 64)
    return AppImage.from_path(path)


def test_fix_desktop_text_removes_backticks():
    assert fix_desktop_text("Actions=`Trash;Show;`\n") == "Actions=Trash;Show;\n"


def test_fix_desktop_text_restores_semicolons():
    assert fix_desktop_text("Categories=Utility\uff1bGraphics\uff1b\n") == "Categories=Utility;Graphics;\n"


def test_read_desktop_entry(tmp_path):
    path = tmp_path / "a.desktop"
    path.write_text("# comment\n[Desktop Entry]\nName=Foo\nExec=foo %f\n\n[Desktop Action X]\nName=Bar\n")
    entry = read_desktop_entry(path)
    assert entry["Desktop Entry"] == {"Name": "Foo", "Exec": "foo %f"}
    assert entry["Desktop Action X"] == {"Name": "Bar"}


def test_read_desktop_entry_malformed(tmp_path):
    path = tmp_path / "bad.desktop"
    path.write_text("[Desktop Entry]\nthis is not a key\n")
    with pytest.raises(ValueError):
        read_desktop_entry(path)


def test_is_writable(tmp_path):
    path = tmp_path / "f"
    path.write_text("x")
    assert is_writable(path) is True
    assert is_writable(tmp_path / "missing") is False


def test_build_entry_without_tools(appimage, tmp_path):
    with mock.patch("shutil.which", return_value=None):
        entry = build_desktop_entry(appimage, "/usr/bin/appimaged", tmp_path / "thumbs", None)
    desktop = entry["Desktop Entry"]
    path = str(appimage.path)
    assert desktop["Type"] == "Application"
    assert desktop["Name"] == appimage.name
    assert desktop["Exec"] == f'/usr/bin/appimaged wrap "{path}"'
    assert desktop[EXEC_LOCATION_KEY] == path
    assert desktop["TryExec"] == "/usr/bin/appimaged"
    assert desktop["Icon"] == str(tmp_path / "thumbs" / f"{appimage.md5}.png")
    assert desktop["X-AppImage-Identifier"] == appimage.md5
    assert desktop["Actions"] == "Trash;OpenPortableHome;CreatePortableHome;Extract;"
    assert entry["Desktop Action Trash"]["Exec"] == f'mv "{path}" ~/.local/share/Trash/'
    assert entry["Desktop Action Trash"]["Name"] == "Move to Trash"
    assert "--appimage-extract" in entry["Desktop Action Extract"]["Exec"]
    assert UPDATE_INFORMATION_KEY not in desktop


def test_build_entry_with_all_tools(appimage, tmp_path):
    appimage.update_information = "zsync|file.zsync"
    with mock.patch("shutil.which", return_value="/usr/bin/tool"):
        entry = build_desktop_entry(appimage, "/x/appimaged", tmp_path, None)
    desktop = entry["Desktop Entry"]
    path = str(appimage.path)
    actions = desktop["Actions"].rstrip(";").split(";")
    assert actions[0] == "Trash"
    assert "Update" in actions and "Show" in actions and "FirejailPrivate" in actions
    assert all(f"Desktop Action {action}" in entry for action in actions)
    assert entry["Desktop Action Trash"]["Exec"] == f'gio trash "{path}"'
    assert entry["Desktop Action Update"]["Exec"] == f'/x/appimaged update "{path}"'
    assert desktop[UPDATE_INFORMATION_KEY] == '"zsync|file.zsync"'


def test_build_entry_for_missing_file_has_no_actions(tmp_path):
    ai = AppImage.from_path(tmp_path / "Gone.AppImage")
    with mock.patch("shutil.which", return_value=None):
        entry = build_desktop_entry(ai, "/x/appimaged", tmp_path, None)
    assert entry["Desktop Entry"]["Actions"] == ""
    assert list(entry) == ["Desktop Entry"]


def test_build_entry_keeps_existing_values(appimage, tmp_path):
    existing = {"Desktop Entry": {"Name": "Shipped", "Categories": "Utility;"}}
    with mock.patch("shutil.which", return_value=None):
        entry = build_desktop_entry(appimage, "/x/appimaged", tmp_path, existing)
    assert entry["Desktop Entry"]["Name"] == "Shipped"
    assert entry["Desktop Entry"]["Categories"] == "Utility;"
    assert entry["Desktop Entry"]["Type"] == "Application"
    assert "Exec" not in existing["Desktop Entry"]


def test_write_desktop_file_round_trip(appimage, tmp_path):
    cache = tmp_path / "cache"
    with mock.patch("shutil.which", return_value=None):
        written = write_desktop_file(appimage, "/x/appimaged", cache, tmp_path / "thumbs")
        expected = build_desktop_entry(appimage, "/x/appimaged", tmp_path / "thumbs", None)
    assert written == cache / f"appimagekit_{appimage.md5}.desktop"
    assert read_desktop_entry(written) == expected


def test_find_desktop_files_pointing_to_executable(tmp_path):
    (tmp_path / "a.desktop").write_text("[Desktop Entry]\nExec=/opt/app/run %f\n")
    (tmp_path / "b.desktop").write_text("[Desktop Entry]\nExec=/usr/bin/other\n")
    (tmp_path / "c.txt").write_text("[Desktop Entry]\nExec=/opt/app/run\n")
    (tmp_path / "d.desktop").write_text("garbage line\n")
    assert find_desktop_files_pointing_to_executable("/opt/app/run", tmp_path) == ["a.desktop"]


def test_find_desktop_files_missing_directory(tmp_path):
    with pytest.raises(OSError):
        find_desktop_files_pointing_to_executable("/x", tmp_path / "nope")