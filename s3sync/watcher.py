"""File system watcher for s3sync.

Uses the watchdog library to monitor the sync root and translates its
notifications into :class:`RawEvent` objects.  Notification loss is
handled by asking the owner to rescan a subtree instead of assuming
reliable delivery.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from s3sync.events import EventKind, RawEvent

logger = logging.getLogger(__name__)

# Seconds between observer health checks.
SUPERVISE_INTERVAL = 2.0
# Consecutive failed restarts before the watcher gives up.
MAX_RESTART_FAILURES = 3


def iter_files(root: Path, recursive: bool) -> Iterator[Path]:
    """Yield regular files under *root*, descending only when *recursive*."""
    if not root.is_dir():
        return
    if recursive:
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                path = Path(dirpath) / name
                if path.is_file():
                    yield path
    else:
        for path in root.iterdir():
            if path.is_file():
                yield path


def _decode(path: str | bytes) -> Path:
    return Path(os.fsdecode(path))


class ChangeHandler(FileSystemEventHandler):
    """Watchdog handler that converts notifications into raw events."""

    def __init__(
        self,
        root: Path,
        on_event: Callable[[RawEvent], None],
        on_rescan: Callable[[Path], None],
        recursive: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self._root = Path(os.path.abspath(root))
        self._on_event = on_event
        self._on_rescan = on_rescan
        self._recursive = recursive
        self._clock = clock

    def _in_tree(self, path: Path) -> bool:
        if path.parent == self._root:
            return True
        if not self._recursive:
            return False
        return path.is_relative_to(self._root)

    def _emit(self, path: Path, kind: EventKind) -> None:
        if not self._in_tree(path):
            return
        self._on_event(RawEvent(path, kind, self._clock()))

    def on_created(self, event: DirCreatedEvent | FileCreatedEvent) -> None:
        """Handle a new file, or a new directory that may already hold files."""
        path = _decode(event.src_path)
        if event.is_directory:
            if self._recursive and path != self._root:
                self._on_rescan(path)
            return
        self._emit(path, EventKind.CREATED)

    def on_modified(self, event: DirModifiedEvent | FileModifiedEvent) -> None:
        """Handle a file modification event."""
        if event.is_directory:
            return
        self._emit(_decode(event.src_path), EventKind.MODIFIED)

    def on_closed(self, event: Any) -> None:
        """A writer closed the file; treat it as a final modification."""
        if event.is_directory or event.event_type != "closed":
            return
        self._emit(_decode(event.src_path), EventKind.MODIFIED)

    def on_deleted(self, event: DirDeletedEvent | FileDeletedEvent) -> None:
        """Handle a removed file."""
        if event.is_directory:
            return
        self._emit(_decode(event.src_path), EventKind.REMOVED)

    def on_moved(self, event: DirMovedEvent | FileMovedEvent) -> None:
        """Split a move into a removal of the source and a rename of the target."""
        src = _decode(event.src_path)
        dest = _decode(event.dest_path)
        if event.is_directory:
            if self._recursive and self._in_tree(dest):
                self._on_rescan(dest)
            return
        self._emit(src, EventKind.REMOVED)
        self._emit(dest, EventKind.RENAMED)


class FolderWatcher:
    """Watches the sync root and keeps watching if the observer dies.

    Usage:
        watcher = FolderWatcher(root, on_event, on_rescan, recursive=True)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        root: str | Path,
        on_event: Callable[[RawEvent], None],
        on_rescan: Callable[[Path], None],
        recursive: bool = False,
        stop_event: threading.Event | None = None,
        observer_factory: Callable[[], Any] = Observer,
        supervise_interval: float = SUPERVISE_INTERVAL,
        on_failure: Callable[[Exception], None] | None = None,
    ):
        """Create a new folder watcher."""
        self.root = Path(os.path.abspath(root))
        self._recursive = recursive
        self._on_rescan = on_rescan
        self._stop = stop_event or threading.Event()
        self._observer_factory = observer_factory
        self._supervise_interval = supervise_interval
        self._on_failure = on_failure
        self._handler = ChangeHandler(self.root, on_event, on_rescan, recursive)
        self._observer: Any | None = None
        self._supervisor: threading.Thread | None = None
        self.restarts = 0

    # ---- lifecycle ----

    def start(self) -> None:
        """Start watching the root folder."""
        if not self.root.is_dir():
            logger.error("Source folder does not exist: %s", self.root)
            raise FileNotFoundError(f"Source folder does not exist: {self.root}")

        self._observer = self._start_observer()
        self._supervisor = threading.Thread(
            target=self._supervise, daemon=True, name="WatcherSupervisor"
        )
        self._supervisor.start()
        logger.info("Watching '%s' (recursive=%s)", self.root, self._recursive)

    def _start_observer(self) -> Any:
        observer = self._observer_factory()
        observer.schedule(self._handler, str(self.root), recursive=self._recursive)
        observer.start()
        return observer

    def _supervise(self) -> None:
        """Restart a dead observer and request a rescan of what it missed."""
        failures = 0
        while not self._stop.wait(timeout=self._supervise_interval):
            observer = self._observer
            if observer is None or observer.is_alive():
                continue
            logger.warning("Watcher for %s stopped unexpectedly; restarting", self.root)
            try:
                self._observer = self._start_observer()
            except OSError as exc:
                failures += 1
                logger.exception("Could not restart watcher for %s", self.root)
                if failures >= MAX_RESTART_FAILURES:
                    logger.critical("Giving up on watching %s", self.root)
                    if self._on_failure:
                        self._on_failure(exc)
                    return
                continue
            failures = 0
            self.restarts += 1
            self._on_rescan(self.root)

    def stop(self) -> None:
        """Stop watching and release resources."""
        self._stop.set()
        observer, self._observer = self._observer, None
        if observer:
            observer.stop()
            observer.join(timeout=5)
        if self._supervisor and self._supervisor is not threading.current_thread():
            self._supervisor.join(timeout=5)
        self._supervisor = None
        logger.info("Watcher stopped.")

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()

    @property
    def recursive(self) -> bool:
        return self._recursive
