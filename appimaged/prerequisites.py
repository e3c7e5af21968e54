"""Checks and preparations that have to happen before the daemon starts working."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

import psutil

from .appimage import detect_type
from .appwrapper import _send_notification
from .config import Settings, data_home

log = logging.getLogger(__name__)

LIVE_KEYWORDS = ("casper", "live", "Live", ".iso")
TESTED_SYSTEMS = ("deepin", "clear-linux-os")
NEEDED_TOOLS = ("bsdtar", "unsquashfs", "desktop-file-validate")
BINFMT_ENTRIES = (
    "/proc/sys/fs/binfmt_misc/appimage-type1",
    "/proc/sys/fs/binfmt_misc/appimage-type2",
)
SYSTEM_SERVICE_FILE = Path("/etc/systemd/user/appimaged.service")
SYSTEMD_MARKER = "LAUNCHED_BY_SYSTEMD"
DEVELOPMENT_VARIABLE = "APPIMAGED_DEVELOPMENT"
"""Set by developers to run the daemon outside of an AppImage."""

_OS_RELEASE_FILES = ("/etc/os-release", "/usr/lib/os-release")

_SERVICE_TEMPLATE = """[Unit]
Description=AppImage system integration daemon
After=syslog.target network.target

[Service]
Type=simple
ExecStart={exec_path}

LimitNOFILE=65536

RestartSec=3
Restart=always

StandardOutput=syslog
StandardError=syslog

SyslogIdentifier=appimaged

Environment=LAUNCHED_BY_SYSTEMD=1

[Install]
WantedBy=default.target"""

_UDISKS_DAEMONS = (
    "/usr/lib/udisks/udisks-daemon",
    "/usr/lib/udisks2/udisksd",
    "/usr/libexec/udisks2/udisksd",
)
_HINT_RULE = "+" * 88


def print_udisks_showexec_hint(file=None) -> str:
    """Print a workaround for volumes mounted with the showexec option and return it."""
    blank = r"\x00" * len("showexec")
    lines = [
        "You could run the following as a workaround. USE AT YOUR OWN RISK:",
        _HINT_RULE,
        "sudo su",
        "systemctl stop udisks2",
    ]
    for daemon in _UDISKS_DAEMONS:
        lines.append(f"if [ -e {daemon} ] ; then")
        lines.append(f"  sed -i -e 's|showexec|{blank}|g' {daemon}")
        lines.append("fi")
    lines.append("systemctl restart udisks2")
    lines.append(_HINT_RULE)
    text = "\n".join(lines)
    print(text, file=file if file is not None else sys.stdout)
    return text


def read_os_release(path) -> dict[str, str]:
    """Parse an os-release file into a dictionary; raises OSError if unreadable."""
    result: dict[str, str] = {}
    for raw in Path(path).read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, separator, value = line.partition("=")
        if not separator:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        result[key.strip()] = value
    return result


def is_supported_live_system(cmdline: str, os_release, environ) -> bool:
    """Return True if this looks like a supported (Live) system."""
    if os_release.get("ID") in TESTED_SYSTEMS:
        return True
    if environ.get(SYSTEMD_MARKER, ""):
        return True
    if any(keyword in cmdline for keyword in LIVE_KEYWORDS):
        return True
    return DEVELOPMENT_VARIABLE in environ


def check_if_running_systemd() -> bool:
    """Return True if process 1 is systemd."""
    cmd = ["ps", "-p", "1", "-o", "comm="]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except (OSError, subprocess.CalledProcessError) as err:
        log.info("%s: %s", " ".join(cmd), err)
        return False
    return result.stdout.strip() == "systemd"


def check_if_invoked_by_systemd(environ) -> bool:
    """Return True if systemd started this process (as far as can be told)."""
    if not check_if_running_systemd():
        log.info("This system is not running systemd")
        return False
    if SYSTEMD_MARKER in environ:
        log.info("Launched by systemd: %s is present", SYSTEMD_MARKER)
        return True
    log.info("Probably not launched by systemd (please file an issue if this is wrong)")
    return False


def service_file_text(exec_path) -> str:
    """Return the systemd user unit that starts the daemon from ``exec_path``."""
    return _SERVICE_TEMPLATE.format(exec_path=exec_path)


def sync_write_file(path, data, mode: int) -> None:
    """Write ``data`` to ``path`` with permissions ``mode`` and flush it to disk."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(descriptor, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())


def _systemctl(*args: str) -> subprocess.CompletedProcess | None:
    cmd = ["systemctl", "--user", *args]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as err:
        log.error("%s: %s", " ".join(cmd), err)
        return None
    if result.returncode != 0:
        log.info("%s: exit status %d", " ".join(cmd), result.returncode)
    return result


def install_service_file_in_home(exec_path, environ) -> Path | None:
    """Install the user unit for the daemon and return its path, or None on failure."""
    config = environ.get("XDG_CONFIG_HOME", "")
    if config:
        log.info("Creating $XDG_CONFIG_HOME/systemd/user/appimaged.service")
        directory = Path(config) / "systemd" / "user"
    else:
        log.info("Creating ~/.config/systemd/user/appimaged.service")
        home = environ.get("HOME") or str(Path.home())
        directory = Path(home) / ".config" / "systemd" / "user"
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as err:
        log.error("Failed making directory for service files: %s", err)
        return None

    target = directory / "appimaged.service"
    try:
        sync_write_file(target, service_file_text(exec_path), 0o644)
    except OSError as err:
        log.error("Error writing service file: %s", err)
        return None
    _systemctl("daemon-reload")
    return target


def setup_to_run_through_systemd(exec_path) -> bool:
    """Make sure the daemon runs under systemd where systemd is in use.

    Returns True if this process was started by systemd, False if systemd
    is not in use or handing over failed. Raises SystemExit(0) once systemd
    has (re)started the daemon, so that this instance can go away.
    """
    if not check_if_running_systemd():
        log.info("This system is not running systemd; skipping the systemd service")
        return False
    if check_if_invoked_by_systemd(os.environ):
        return True

    log.info("Manually launched, not by systemd. Check if enabled in systemd...")
    if not SYSTEM_SERVICE_FILE.exists():
        log.info("%s does not exist", SYSTEM_SERVICE_FILE)
        install_service_file_in_home(exec_path, os.environ)

    status = _systemctl("status", "appimaged")
    output = status.stdout.strip() if status is not None else ""
    if " enabled; " in output:
        log.info("Restarting via systemd...")
        restarted = _systemctl("restart", "appimaged")
        if restarted is not None and restarted.returncode == 0:
            raise SystemExit(0)
        return False

    log.info("Enabling systemd service...")
    _systemctl("enable", "appimaged")
    log.info("Starting systemd service...")
    restarted = _systemctl("restart", "appimaged")
    if restarted is not None and restarted.returncode == 0:
        log.info("Exiting...")
        raise SystemExit(0)
    return False


def find_other_instances(myself, appimage_env) -> list[int]:
    """Return pids of other daemons of this user started from ``myself``.

    Processes started with a verb and our own AppImage are left out.
    """
    myself = str(myself)
    appimage_env = str(appimage_env)
    name = os.path.basename(myself)
    own_pid = os.getpid()
    try:
        own_user = psutil.Process(own_pid).username()
    except psutil.Error as err:
        log.error("prerequisites: %s", err)
        return []

    pids = []
    for process in psutil.process_iter(["pid", "cmdline", "username"]):
        parts = process.info.get("cmdline")
        if not parts:
            continue
        cmdline = " ".join(parts)
        if (
            name in cmdline
            and "wrap" not in cmdline
            and "run" not in cmdline
            and appimage_env not in cmdline
            and myself not in cmdline
            and process.info.get("username") == own_user
            and process.info["pid"] != own_pid
        ):
            pids.append(process.info["pid"])
    return pids


def binfmt_exists(path) -> bool:
    """Return True if the binfmt_misc entry at ``path`` is registered."""
    return os.path.exists(path)


def _disable_binfmt(path: str) -> None:
    try:
        subprocess.run(
            ["/bin/sh", "-c", f"echo -1 | sudo tee {path}"],
            capture_output=True,
            check=False,
        )
    except OSError as err:
        log.debug("prerequisites: %s", err)


def clean_desktop_files(applications_dir) -> list[Path]:
    """Delete desktop files written by the daemon and return those removed."""
    removed = []
    for path in sorted(Path(applications_dir).glob("appimagekit_*")):
        log.debug("Deleting %s", path)
        try:
            path.unlink()
        except OSError as err:
            log.warning("main: %s", err)
            continue
        removed.append(path)
    log.info("Deleted %d desktop files from %s", len(removed), applications_dir)
    return removed


def _other_daemon_running(patterns: tuple[str, ...]) -> bool:
    result = _systemctl("list-units", "--all", "--no-legend", "--plain", *patterns)
    if result is None or result.returncode != 0:
        return False
    units = [line for line in result.stdout.splitlines() if line.strip()]
    for unit in units:
        log.info("%s", unit)
    return bool(units)


def _read_os_release_anywhere() -> dict[str, str]:
    for candidate in _OS_RELEASE_FILES:
        try:
            return read_os_release(candidate)
        except OSError:
            continue
    print("Error: cannot read os-release")
    return {}


def _check_live_system() -> None:
    try:
        cmdline = Path("/proc/cmdline").read_text(encoding="utf-8", errors="replace")
    except OSError:
        cmdline = ""
    if not is_supported_live_system(cmdline, _read_os_release_anywhere(), os.environ):
        _send_notification(
            "Not running on one of the supported Live systems",
            "This configuration is currently unsupported but may still work, please give feedback.",
            -1,
        )


def check_prerequisites(settings: Settings, exec_path) -> None:
    """Verify the environment and prepare directories; raise SystemExit(1) on failure."""
    _check_live_system()

    here = os.path.dirname(os.path.abspath(str(exec_path)))
    path_entries = os.environ.get("PATH", "").split(os.pathsep)
    if here not in path_entries:
        os.environ["PATH"] = os.pathsep.join([here, *filter(None, path_entries)])

    missing = [tool for tool in NEEDED_TOOLS if shutil.which(tool) is None]
    if missing:
        for tool in missing:
            log.error("Required tool %s not found on $PATH", tool)
        raise SystemExit(1)

    myself = os.path.realpath("/proc/self/exe")
    print("This process based on /proc/self/exe:", myself)
    print("Terminating other running processes with that name...")
    for pid in find_other_instances(myself, os.environ.get("APPIMAGE", "")):
        print("In the future, would send SIGTERM to", pid)

    if "APPIMAGE" not in os.environ:
        log.info("Running from AppImage type %d", detect_type(exec_path))
        if DEVELOPMENT_VARIABLE not in os.environ:
            log.error("Not running from within an AppImage, exiting")
            raise SystemExit(1)
        _send_notification(
            "Not running from an AppImage",
            "This is discouraged because some functionality may not be available",
            5000,
        )

    if _other_daemon_running(("appimagelauncher*",)):
        _send_notification(
            "Other AppImage integration daemon detected",
            "Please uninstall appimagelauncher first, then try again",
        )
        raise SystemExit(1)

    for entry in BINFMT_ENTRIES:
        if binfmt_exists(entry):
            _disable_binfmt(entry)
        if binfmt_exists(entry):
            log.error("%s exists. Please remove it by running", entry)
            print("echo -1 | sudo tee", entry)
            raise SystemExit(1)

    if settings.clean:
        clean_desktop_files(settings.applications_directory)

    old_thumbnails = Path.home() / ".thumbnails" / "normal"
    if not settings.thumbnails_directory.exists() and old_thumbnails.exists():
        log.info("Using %s as the location for thumbnails", old_thumbnails)
        settings.thumbnails_directory = old_thumbnails

    for directory in (
        settings.applications_directory,
        settings.thumbnails_directory,
        settings.desktop_cache_directory,
        data_home() / "appimagekit",
    ):
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            log.warning("main: %s", err)

    try:
        (data_home() / "appimagekit" / "no_desktopintegration").touch()
    except OSError as err:
        log.warning("main: %s", err)