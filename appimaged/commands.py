"""Commands the daemon executable can be invoked with."""

from __future__ import annotations

import logging
import subprocess

from .appimage import (
    find_most_recent_appimage_with_matching_update_information,
    validate_update_information,
)
from .appwrapper import appwrap
from .config import applications_dir
from .update import update

log = logging.getLogger(__name__)


def take_care_of_commandline_commands(argv) -> None:
    """Handle ``wrap``, ``update``, ``run`` and ``start`` and exit.

    ``argv`` holds the arguments without the program name. Returns
    normally only when no command was given.
    """
    argv = list(argv)
    if not argv:
        return
    command = argv[0]

    if command == "wrap":
        appwrap(argv[1:])
        raise SystemExit(0)

    if command == "update":
        update(argv[1:])
        raise SystemExit(0)

    if command in ("run", "start"):
        if len(argv) < 2:
            print("No updateinformation supplied")
            raise SystemExit(1)
        ui = argv[1]
        try:
            validate_update_information(ui)
        except ValueError:
            print("Invalid updateinformation string supplied")
            raise SystemExit(1) from None

        found = find_most_recent_appimage_with_matching_update_information(ui, applications_dir())
        if found is None:
            print(f"No AppImage found for {ui}")
        else:
            cmd = [found, *argv[2:]]
            if command == "run":
                try:
                    result = subprocess.run(cmd, check=False)
                except OSError as err:
                    log.error("LaunchMostRecentAppImage: %s", err)
                else:
                    if result.returncode != 0:
                        log.error(
                            "LaunchMostRecentAppImage: exit status %d", result.returncode
                        )
            else:
                try:
                    subprocess.Popen(cmd)
                except OSError as err:
                    print(err)
                    raise SystemExit(1) from err
                raise SystemExit(0)
        raise SystemExit(1)