"""Update an AppImage by launching the most recent updater that is integrated."""

from __future__ import annotations

import logging
import os
import subprocess

from .appimage import find_most_recent_appimage_with_matching_update_information
from .appwrapper import _send_notification
from .config import applications_dir

log = logging.getLogger(__name__)

UPDATER_UPDATE_INFORMATION = (
    "gh-releases-zsync|antony-jr|AppImageUpdater|latest|AppImageUpdater*-x86_64.AppImage.zsync"
)
LEGACY_UPDATER_UPDATE_INFORMATION = (
    "gh-releases-zsync|antony-jr|AppImageUpdater|continuous|AppImageUpdater*-x86_64.AppImage.zsync"
)


def find_updater(applications_dir) -> str | None:
    """Return the most recent integrated updater AppImage, or None."""
    current = find_most_recent_appimage_with_matching_update_information(
        UPDATER_UPDATE_INFORMATION, applications_dir
    )
    if current:
        return current
    return find_most_recent_appimage_with_matching_update_information(
        LEGACY_UPDATER_UPDATE_INFORMATION, applications_dir
    )


def run_update(path, applications_dir) -> int | None:
    """Run the updater on ``path`` and return its exit status.

    Returns None if no updater is integrated or it could not be started.
    """
    program = find_updater(applications_dir)
    if program is None:
        _send_notification(
            "AppImageUpdater missing",
            "Please download the AppImageUpdater\nAppImage and try again",
            30000,
        )
        return None
    os.environ.pop("INVOCATION_ID", None)
    try:
        result = subprocess.run([program, "-n", "-d", str(path)], check=False)
    except OSError as err:
        log.error("update: %s", err)
        return None
    if result.returncode != 0:
        log.error("update: %s exited with status %d", program, result.returncode)
    return result.returncode


def update(argv) -> int | None:
    """Update the AppImage named by ``argv[0]``; exit with status 1 if it is missing."""
    argv = list(argv)
    if not argv:
        print("Argument missing")
        raise SystemExit(1)
    return run_update(argv[0], applications_dir())