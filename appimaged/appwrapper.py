"""Run an application and report its failures as desktop notifications."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading

from .appimage import AppImage
from .config import applications_dir
from .desktop import find_desktop_files_pointing_to_executable

log = logging.getLogger(__name__)

_MISSING_LIBRARY = "cannot open shared object file: No such file or directory"


def _send_notification(summary: str, body: str, timeout_ms: int = 0) -> None:
    """Show a desktop notification; a timeout of 0 means it never expires."""
    log.info("Notification: %s: %s", summary, body)
    tool = shutil.which("notify-send")
    if tool is None:
        log.warning("notification: notify-send is not available")
        return
    try:
        subprocess.run([tool, "-t", str(timeout_ms), summary, body], check=False)
    except OSError as err:
        log.error("notification: %s", err)


def _check_desktop_files(executable: str, directory) -> None:
    try:
        names = find_desktop_files_pointing_to_executable(executable, directory)
    except OSError as err:
        log.error("checkDesktopFiles: %s", err)
        return
    validator = shutil.which("desktop-file-validate")
    if validator is None:
        return
    for name in names:
        try:
            result = subprocess.run(
                [validator, os.path.join(directory, name)],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as err:
            log.error("checkDesktopFiles: %s", err)
            continue
        if result.returncode != 0:
            problem = (result.stdout + result.stderr).strip()
            _send_notification("Invalid desktop file", f"{executable}\n\n{problem}")


def describe_failure(appname: str, stderr: str, executable, is_appimage: bool) -> tuple[str, str]:
    """Return the notification summary and body for a failed launch."""
    summary = f"Cannot open {appname}"
    body = stderr.strip()
    base = os.path.basename(str(executable))

    if _MISSING_LIBRARY in stderr:
        parts = stderr.split(":")
        if len(parts) > 2:
            body = f"Missing library {parts[2].strip()}"

    if "execv error" in stderr and is_appimage:
        body = f"{base} is defective, AppRun is missing. \nPlease ask the author to fix it."

    if "Could not load the Qt platform plugin" in stderr and is_appimage:
        body = (
            f"{base} is defective, could not load the Qt platform plugin. \n"
            "Please run on the command line with 'QT_DEBUG_PLUGINS=1' \n"
            "to see error messages and ask the author to fix it."
        )
    return summary, body


def appwrap(argv) -> int:
    """Run ``argv[0]`` with the remaining arguments and return its exit status.

    Raises SystemExit(1) if no executable is given or it cannot be started.
    """
    argv = list(argv)
    if not argv:
        log.error("Argument missing")
        raise SystemExit(1)
    executable = argv[0]

    threading.Thread(
        target=_check_desktop_files,
        args=(executable, applications_dir()),
        daemon=True,
    ).start()

    ai = AppImage.from_path(executable)
    if ai.valid:
        try:
            ai.validate()
        except ValueError as err:
            _send_notification(
                f"{ai.name} is not a proper AppImage",
                f"{err}\nPlease ask the author to fix it.",
                30000,
            )

    try:
        process = subprocess.Popen(argv, stderr=subprocess.PIPE)
    except OSError as err:
        log.critical("cmd.Start: %s", err)
        raise SystemExit(1) from err
    _, raw = process.communicate()
    stderr = raw.decode("utf-8", errors="replace")

    if process.returncode != 0:
        log.info("Exit Status: %d", process.returncode)
        log.info("%s", stderr)
        appname = ai.name if ai.valid else os.path.basename(executable)
        summary, body = describe_failure(appname, stderr, executable, ai.valid)
        _send_notification(summary, body)
    return process.returncode