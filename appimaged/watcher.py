"""Watching directories for AppImages that appear, change or disappear."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .appimage import AppImage

log = logging.getLogger(__name__)


class _Handler(FileSystemEventHandler):
    def __init__(self, queue):
        super().__init__()
        self._queue = queue

    def _offer(self, path, only_valid: bool) -> None:
        ai = AppImage.from_path(os.fsdecode(path))
        if only_valid and not ai.valid:
            return
        ai.startup = False
        self._queue.put(ai)

    def on_closed(self, event) -> None:
        if event.is_directory:
            return
        log.debug("inotifyWatch: %s closed after writing", os.fsdecode(event.src_path))
        self._offer(event.src_path, only_valid=True)

    def on_moved(self, event) -> None:
        if event.is_directory:
            return
        self._offer(event.src_path, only_valid=False)
        log.debug("inotifyWatch: %s moved in", os.fsdecode(event.dest_path))
        self._offer(event.dest_path, only_valid=True)

    def on_deleted(self, event) -> None:
        if event.is_directory:
            log.info("%s was deleted", os.fsdecode(event.src_path))
            return
        self._offer(event.src_path, only_valid=False)


class DirectoryWatcher:
    """Puts an AppImage on ``queue`` for every file that needs (un)integration.

    Files that were written or moved into a watched directory are queued if
    they are AppImages; files moved away or deleted are always queued so
    that their integration can be removed. Subdirectories are not watched.
    """

    def __init__(self, queue):
        self.queue = queue
        self._handler = _Handler(queue)
        self._observer = Observer()
        self._started = False
        self.watched: list[Path] = []

    def watch(self, path) -> bool:
        """Start watching the directory ``path``; return False if that fails."""
        directory = Path(path)
        if not directory.is_dir():
            log.warning("watcher: %s is not a directory", directory)
            return False
        if not self._started:
            self._observer.start()
            self._started = True
        try:
            self._observer.schedule(self._handler, os.fspath(directory), recursive=False)
        except OSError as err:
            log.warning("watcher: %s: %s", directory, err)
            return False
        self.watched.append(directory)
        return True

    def stop(self) -> None:
        """Stop watching all directories."""
        if self._started:
            self._observer.stop()
            self._observer.join()
            self._started = False

    def __enter__(self) -> "DirectoryWatcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()