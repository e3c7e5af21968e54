"""The daemon that registers AppImages and integrates them with the desktop."""

from __future__ import annotations

import argparse
import logging
import os
import queue
import re
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path

from .appimage import AppImage
from .appwrapper import _send_notification
from .commands import take_care_of_commandline_commands
from .config import (
    EXEC_LOCATION_KEY,
    Settings,
    applications_dir,
    config_home,
    data_home,
    thumbnails_dir,
)
from .desktop import DESKTOP_ENTRY, read_desktop_entry, write_desktop_file
from .filemanager import install_filemanager_context_menus
from .mqtt import UpdateSubscriber, connect
from .network import check_if_connected_to_network
from .prerequisites import (
    check_prerequisites,
    print_udisks_showexec_hint,
    setup_to_run_through_systemd,
)
from .thumbnail import extract_thumbnail
from .watcher import DirectoryWatcher

log = logging.getLogger(__name__)

VERSION = "unsupported custom build"
EXCLUDED_MOUNT_PREFIXES = ("/sys", "/tmp", "/proc")
MQTT_URI_VARIABLE = "APPIMAGED_MQTT_URI"
MQTT_NAMESPACE_VARIABLE = "APPIMAGED_MQTT_NAMESPACE"
MQTT_CHECK_INTERVAL = 120.0
MOUNT_POLL_INTERVAL = 5.0
QUEUE_SIZE = 50

_MOUNTINFO = Path("/proc/self/mountinfo")
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")
_TRUE = {"1", "t", "true"}
_FALSE = {"0", "f", "false"}

_DESCRIPTION = """\
Optional daemon that registers AppImages and integrates them with the system.

Sets the executable bit on AppImages, adds them to the system menu,
and makes it possible to launch the most recent AppImage
that is registered on the system for a given application."""

_COMMANDS = """\
Commands:
run <updateinformation>:
\tRun the most recent AppImage registered
\tfor the updateinformation provided
start <updateinformation>:
\tStart the most recent AppImage registered
\tfor the updateinformation provided and exit immediately
update <path to AppImage>:
\tUpdate the AppImage using the most recent
\tAppImageUpdate registered
wrap <path to executable>:
\tExecute the executable and send
\tdesktop notifications for any errors"""


@dataclass
class Mount:
    """One entry of the mount table."""

    mount_point: str
    fs_type: str = ""
    source: str = ""
    options: dict[str, str] = field(default_factory=dict)
    super_options: dict[str, str] = field(default_factory=dict)


@dataclass
class _Runtime:
    """Connections shared by the integration functions of a running daemon."""

    subscriber: UpdateSubscriber | None = None

    def subscribe(self, updateinformation) -> None:
        if self.subscriber is None or not updateinformation:
            return
        if not check_if_connected_to_network():
            return
        threading.Thread(
            target=self.subscriber.subscribe, args=(updateinformation,), daemon=True
        ).start()

    def unsubscribe(self, updateinformation) -> None:
        if self.subscriber is None or not updateinformation:
            return
        threading.Thread(
            target=self.subscriber.unsubscribe, args=(updateinformation,), daemon=True
        ).start()


_runtime = _Runtime()


def _flag(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {value!r}")


def parse_args(argv) -> Settings:
    """Parse the daemon's command-line options into Settings."""
    parser = argparse.ArgumentParser(
        prog=os.path.basename(sys.argv[0]) or "appimaged",
        description=_DESCRIPTION,
        epilog=_COMMANDS,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    def option(name: str, default: bool, text: str) -> None:
        parser.add_argument(
            name, dest=name.lstrip("-"), nargs="?", const=True,
            default=default, type=_flag, metavar="BOOL", help=text,
        )

    option("-v", False, "Print verbose log messages")
    option("-o", False, "Overwrite existing desktop integration files (slower)")
    option("-c", True, "Clean pre-existing desktop files")
    option("-q", False, "Do not send desktop notifications")
    option("-nz", False, "Do not announce this service on the network using Zeroconf")
    parsed = parser.parse_args(list(argv))
    return Settings(
        verbose=parsed.v,
        overwrite=parsed.o,
        clean=parsed.c,
        quiet=parsed.q,
        no_zeroconf=parsed.nz,
    )


def _user_dir(home: Path, key: str, default: str) -> Path:
    variable = f"XDG_{key}_DIR"
    value = os.environ.get(variable, "")
    if value:
        return Path(value)
    try:
        text = (config_home() / "user-dirs.dirs").read_text(encoding="utf-8")
    except OSError:
        text = ""
    for line in text.splitlines():
        name, separator, raw = line.strip().partition("=")
        if separator and name.strip() == variable:
            resolved = raw.strip().strip('"').replace("$HOME", str(home))
            if resolved:
                return Path(resolved)
    return home / default


def candidate_directories(home) -> list[Path]:
    """Return the well-known directories in which AppImages are looked for."""
    home = Path(home)
    return [
        _user_dir(home, "DOWNLOAD", "Downloads"),
        _user_dir(home, "DESKTOP", "Desktop"),
        home / ".local" / "bin",
        home / "bin",
        home / "Applications",
        Path("/opt"),
        Path("/usr/local/bin"),
    ]


def _unescape(text: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), text)


def _options(text: str) -> dict[str, str]:
    result = {}
    for item in text.split(","):
        if item:
            key, _, value = item.partition("=")
            result[key] = value
    return result


def parse_mounts(text: str) -> list[Mount]:
    """Parse the contents of /proc/self/mountinfo; malformed lines are skipped."""
    mounts = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 10:
            continue
        try:
            separator = fields.index("-", 6)
        except ValueError:
            continue
        if separator + 3 >= len(fields) + 0 and separator + 3 > len(fields) - 1:
            if separator + 3 > len(fields) - 1 + 1:
                continue
        if separator + 3 >= len(fields) + 1:
            continue
        if separator + 3 > len(fields) - 1:
            continue
        mounts.append(
            Mount(
                mount_point=_unescape(fields[4]),
                fs_type=fields[separator + 1],
                source=_unescape(fields[separator + 2]),
                options=_options(fields[5]),
                super_options=_options(fields[separator + 3]),
            )
        )
    return mounts


def collect_watched_directories(candidates, mounts) -> list[Path]:
    """Return existing candidates plus the Applications folders of mounted volumes.

    Volumes mounted with the showexec option are left out, because
    AppImages cannot run from them; the user is told how to fix that.
    """
    watched: list[Path] = [Path(c) for c in candidates if Path(c).exists()]
    for mount in mounts:
        log.debug("main: MountPoint %s", mount.mount_point)
        if mount.mount_point.startswith(EXCLUDED_MOUNT_PREFIXES):
            continue
        applications = Path(mount.mount_point) / "Applications"
        if not applications.exists():
            continue
        if "showexec" in mount.super_options:
            _send_notification(
                "UDisks showexec issue",
                f"Applications cannot run from \n{mount.mount_point}. \n"
                "The volume is mounted with the showexec option.",
            )
            print_udisks_showexec_hint()
        elif applications not in watched:
            watched.append(applications)
    return watched


def _desktop_file_path(ai: AppImage, directory) -> Path:
    return Path(directory) / f"appimagekit_{ai.md5}.desktop"


def _is_newer(candidate, reference) -> bool:
    try:
        return os.stat(candidate).st_mtime > os.stat(reference).st_mtime
    except OSError:
        return False


def _set_exec_bit(path: str) -> None:
    try:
        os.chmod(path, 0o755)
    except OSError:
        return  # AppImages on read-only media are common
    log.debug("appimage: Set executable bit on %s", path)


def integrate(ai: AppImage, settings: Settings, executable) -> Path | None:
    """Write the menu entry and thumbnail for ``ai``.

    Returns the desktop file written to the cache directory, or None if
    the file is not named like an AppImage or is already integrated.
    """
    path = str(ai.path)
    if not path.upper().endswith((".APPIMAGE", ".APP")):
        return None
    _set_exec_bit(path)

    desktop_file = _desktop_file_path(ai, settings.applications_directory)
    if not settings.overwrite and _is_newer(desktop_file, path):
        _runtime.subscribe(ai.update_information)
        return None

    written = write_desktop_file(
        ai, executable, settings.desktop_cache_directory, settings.thumbnails_directory
    )
    _runtime.subscribe(ai.update_information)

    thumbnail = Path(settings.thumbnails_directory) / ai.thumbnail_filename
    if _is_newer(thumbnail, path):
        return written
    try:
        extract_thumbnail(ai, None, settings.thumbnails_directory)
    except OSError as err:
        log.error("thumbnail: %s", err)
    return written


def remove_integration(ai: AppImage) -> bool:
    """Remove the thumbnail and menu entry of ``ai``; True if the entry was removed."""
    log.info("appimage: Remove integration %s", ai.path)
    thumbnail = thumbnails_dir() / ai.thumbnail_filename
    try:
        thumbnail.unlink()
    except OSError as err:
        log.info("appimage: %s %s", err, thumbnail)
    else:
        log.info("appimage: Deleted %s", thumbnail)

    _runtime.unsubscribe(ai.update_information)

    desktop_file = _desktop_file_path(ai, applications_dir())
    try:
        desktop_file.unlink()
    except OSError as err:
        log.info("appimage: %s %s", err, desktop_file.name)
        return False
    log.info("appimage: Deleted %s", desktop_file)
    _send_notification("Removed", str(ai.path), 3000)
    return True


def integrate_or_unintegrate(ai: AppImage, settings: Settings, executable) -> bool:
    """Integrate ``ai`` if its file exists, otherwise remove its integration.

    Returns True if the file exists.
    """
    if not os.path.exists(str(ai.path)):
        remove_integration(ai)
        return False
    integrate(ai, settings, executable)
    return True


def _run_quietly(cmd: list[str]) -> None:
    try:
        result = subprocess.run(cmd, capture_output=True, check=False)
    except OSError as err:
        log.error("main: %s: %s", cmd[0], err)
        return
    if result.returncode == 0:
        log.info("Ran %s", " ".join(cmd))
    else:
        log.error("main: %s: exit status %d", cmd[0], result.returncode)


def move_desktop_files(ai: AppImage, settings: Settings, executable) -> Path | None:
    """(Un)integrate ``ai`` and move its new desktop file into the menu.

    Returns the desktop file in the applications directory, or None if
    nothing was moved. Raises OSError if the move fails.
    """
    if not integrate_or_unintegrate(ai, settings, executable):
        return None
    cached = _desktop_file_path(ai, settings.desktop_cache_directory)
    if not cached.exists():
        return None
    target = _desktop_file_path(ai, settings.applications_directory)
    target.parent.mkdir(parents=True, exist_ok=True)
    os.replace(cached, target)
    log.debug("main: Moved %s to %s", cached, target.parent)

    if not getattr(ai, "startup", False):
        _send_notification(f"Added {ai.name}", "", 5000)

    for command in ("update-menus",):
        if shutil.which(command):
            _run_quietly([command])
    if shutil.which("update-desktop-database"):
        _run_quietly(["update-desktop-database", str(settings.applications_directory)])
    return target


def _delete_desktop_files_with_missing_targets(directory) -> list[Path]:
    removed = []
    for path in sorted(Path(directory).glob("appimagekit_*.desktop")):
        try:
            entry = read_desktop_entry(path)
        except (OSError, ValueError, UnicodeDecodeError) as err:
            log.warning("desktop: %s", err)
            continue
        target = entry.get(DESKTOP_ENTRY, {}).get(EXEC_LOCATION_KEY, "")
        if target and not os.path.exists(target):
            try:
                path.unlink()
            except OSError as err:
                log.warning("desktop: %s", err)
                continue
            log.info("Deleted %s because %s does not exist", path, target)
            removed.append(path)
    return removed


def _read_mountinfo() -> str:
    try:
        return _MOUNTINFO.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return ""


def _check_mqtt_connected(client) -> None:
    if client is None or not check_if_connected_to_network():
        return
    if not client.is_connected():
        log.info("MQTT client is not connected; reconnecting")
        try:
            client.reconnect()
        except OSError as err:
            log.error("MQTT: %s", err)


def _connect_mqtt(own: AppImage):
    uri = os.environ.get(MQTT_URI_VARIABLE, "")
    if not uri or not check_if_connected_to_network():
        return None
    try:
        client = connect("sub", uri)
    except ValueError as err:
        log.error("MQTT: %s", err)
        return None
    namespace = os.environ.get(MQTT_NAMESPACE_VARIABLE, "appimaged")
    _runtime.subscriber = UpdateSubscriber(client, namespace, own.update_information or "")
    log.info("MQTT client connected: %s", client.is_connected())
    return client


class _Daemon:
    def __init__(self, settings: Settings, executable: str, candidates: list[Path], client):
        self.settings = settings
        self.executable = executable
        self.candidates = candidates
        self.client = client
        self.queue: queue.Queue = queue.Queue(maxsize=QUEUE_SIZE)
        self.watcher: DirectoryWatcher | None = None
        self.mountinfo = ""

    def _work(self) -> None:
        while True:
            ai = self.queue.get()
            if ai is None:
                return
            log.info("Integrating or unintegrating: %s", ai.name)
            try:
                move_desktop_files(ai, self.settings, self.executable)
            except (OSError, ValueError) as err:
                log.error("integrate: %s", err)

    def watch_directories(self) -> None:
        try:
            (Path.home() / "Applications").mkdir(parents=True, exist_ok=True)
        except OSError as err:
            log.error("main: %s", err)
        if self.watcher is not None:
            self.watcher.stop()
        self.watcher = DirectoryWatcher(self.queue)
        self.mountinfo = _read_mountinfo()
        directories = collect_watched_directories(self.candidates, parse_mounts(self.mountinfo))
        log.info("Registering AppImages in %s", [str(d) for d in directories])
        for directory in directories:
            self.watcher.watch(directory)
            try:
                entries = sorted(directory.iterdir())
            except OSError as err:
                log.error("watchDirectoriesReally: %s", err)
                continue
            for entry in entries:
                if entry.is_dir():
                    continue
                ai = AppImage.from_path(str(entry))
                if not ai.valid:
                    continue
                ai.startup = True
                self.queue.put(ai)
        _delete_desktop_files_with_missing_targets(self.settings.applications_directory)

    def run(self) -> None:
        threading.Thread(target=self._work, daemon=True).start()
        self.watch_directories()
        last_check = time.monotonic()
        try:
            while True:
                time.sleep(MOUNT_POLL_INTERVAL)
                if _read_mountinfo() != self.mountinfo:
                    log.info("Mounted volumes changed")
                    self.watch_directories()
                if time.monotonic() - last_check >= MQTT_CHECK_INTERVAL:
                    _check_mqtt_connected(self.client)
                    last_check = time.monotonic()
        except KeyboardInterrupt:
            log.info("Shutting down")
        finally:
            if self.watcher is not None:
                self.watcher.stop()
            self.queue.put(None)
            if self.client is not None:
                self.client.loop_stop()
                self.client.disconnect()


def main(argv=None) -> int:
    """Run the daemon, or one of its commands if one is given."""
    args = list(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")
    executable = os.path.abspath(os.environ.get("APPIMAGE") or sys.argv[0])

    take_care_of_commandline_commands(args)

    settings = parse_args(args)
    if settings.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    print(os.path.basename(sys.argv[0]), VERSION)

    candidates = candidate_directories(Path.home())
    check_prerequisites(settings, executable)
    setup_to_run_through_systemd(executable)
    install_filemanager_context_menus(executable, data_home(), config_home())

    client = _connect_mqtt(AppImage.from_path(executable))

    log.info("main: Running from %s", os.path.dirname(executable))
    log.info("main: data home = %s", data_home())
    _delete_desktop_files_with_missing_targets(settings.applications_directory)
    log.info("Overwrite: %s", settings.overwrite)
    log.info("Clean: %s", settings.clean)

    os.environ["DESKTOPINTEGRATION"] = "appimaged"

    _Daemon(settings, executable, candidates, client).run()
    return 0