import pytest

from appimaged.filemanager import (
    THUNAR_ACTION_UNIQUE_ID,
    install_filemanager_context_menus,
    merge_thunar_action,
)

EXISTING = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    "<actions>\n"
    "<action>\n"
    "    <unique-id>other-1</unique-id>\n"
    "</action>\n"
    "</actions>\n"
)


def test_merge_inserts_after_actions_line():
    merged = merge_thunar_action(EXISTING, "<action>NEW</action>")
    lines = merged.splitlines()
    assert lines[1] == "<actions>"
    assert lines[2] == "<action>NEW</action>"
    assert lines[3:] == EXISTING.splitlines()[2:]
    assert merged.endswith("</actions>\n")


def test_merge_returns_none_when_present():
    text = EXISTING.replace("other-1", THUNAR_ACTION_UNIQUE_ID)
    assert merge_thunar_action(text, "<action>NEW</action>") is None


def test_merge_without_actions_line():
    with pytest.raises(ValueError):
        merge_thunar_action("<?xml version='1.0'?>\n<root/>\n", "<action/>")


def test_install_writes_all_menus(tmp_path):
    data, config = tmp_path / "data", tmp_path / "config"
    written = install_filemanager_context_menus("/opt/appimaged", data, config)
    gnome = data / "file-manager" / "actions" / "appimaged.desktop"
    kde = data / "kservices5" / "ServiceMenus" / "appimaged.desktop"
    uca = config / "Thunar" / "uca.xml"
    assert written == [gnome, kde, uca]
    assert "Exec=/opt/appimaged update %f\n" in gnome.read_text()
    assert "X-KDE-ServiceTypes=KonqPopupMenu/Plugin" in kde.read_text()
    uca_text = uca.read_text()
    assert uca_text.count(THUNAR_ACTION_UNIQUE_ID) == 1
    assert "<command>/opt/appimaged %f</command>" in uca_text


def test_install_twice_does_not_duplicate(tmp_path):
    data, config = tmp_path / "data", tmp_path / "config"
    install_filemanager_context_menus("/opt/appimaged", data, config)
    second = install_filemanager_context_menus("/opt/appimaged", data, config)
    uca = config / "Thunar" / "uca.xml"
    assert uca not in second
    assert uca.read_text().count(THUNAR_ACTION_UNIQUE_ID) == 1


def test_install_merges_into_existing_uca(tmp_path):
    data, config = tmp_path / "data", tmp_path / "config"
    uca = config / "Thunar" / "uca.xml"
    uca.parent.mkdir(parents=True)
    uca.write_text(EXISTING)
    install_filemanager_context_menus("/opt/appimaged", data, config)
    text = uca.read_text()
    assert "other-1" in text
    assert text.count(THUNAR_ACTION_UNIQUE_ID) == 1
    assert text.index(THUNAR_ACTION_UNIQUE_ID) < text.index("other-1")