"""
Sync engine driver for s3sync.

Wires the watcher, file name filter, aggregator and upload orchestrator
together and owns the process lifecycle:

    watcher -> filter -> aggregator -> orchestrator -> S3

``SyncService.run_forever()`` blocks until SIGINT/SIGTERM, then shuts
down in order: stop watching, drop unsettled files, let running uploads
finish within the grace period.
"""

from __future__ import annotations

import logging
import logging.handlers
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from s3sync import __app_name__, __version__
from s3sync.aggregator import Aggregator
from s3sync.config import Config
from s3sync.events import EventKind, RawEvent, TaskState, UploadTask
from s3sync.filters import PathFilter
from s3sync.store import ObjectStore, S3ObjectStore
from s3sync.uploader import UploadOrchestrator
from s3sync.watcher import FolderWatcher, iter_files

logger = logging.getLogger(__name__)

_NOISY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3", "watchdog")

EXIT_OK = 0
EXIT_WATCHER_FAILED = 1


def setup_logging(cfg: Config) -> None:
    """Configure rotating file log and stderr handler."""
    level = getattr(logging, cfg.log_level, logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    log_path = cfg.log_file
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=cfg.max_log_size_mb * 1024 * 1024,
            backupCount=cfg.log_backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"Could not open log file {log_path}: {exc}", file=sys.stderr)
    else:
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)

    if level > logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


class SyncService:
    """
    Headless sync engine for one root folder and one bucket.

    The configuration must already be validated.  ``store`` and
    ``observer_factory`` can be injected; by default uploads go through
    boto3 and watching through watchdog.
    """

    def __init__(
        self,
        cfg: Config,
        store: ObjectStore | None = None,
        stop_event: threading.Event | None = None,
        **watcher_options: Any,
    ):
        self.config = cfg
        self.stop_event = stop_event or threading.Event()
        self.failed = False
        self._stopped = False
        self._stop_lock = threading.Lock()
        # Rescans run one at a time; a request already covered by a
        # pending one is dropped.
        self._rescanner = ThreadPoolExecutor(max_workers=1, thread_name_prefix="Rescan")
        self._pending_rescans: set[Path] = set()
        self._rescan_lock = threading.Lock()

        self.root = cfg.root_path
        self.path_filter = PathFilter(cfg.pattern)
        if store is None:
            store = S3ObjectStore(
                cfg.bucket,
                profile=cfg.profile,
                region=cfg.region,
                endpoint_url=cfg.endpoint_url,
            )
        self.orchestrator = UploadOrchestrator(
            root=self.root,
            store=store,
            key_prefix=cfg.key_prefix,
            delete_after_upload=cfg.delete_after_upload,
            max_workers=cfg.upload_workers,
            max_attempts=cfg.max_attempts,
            retry_base_delay=cfg.retry_base_delay,
            retry_max_delay=cfg.retry_max_delay,
            on_complete=self._on_upload_complete,
            stop_event=self.stop_event,
        )
        self.aggregator = Aggregator(
            cfg.window,
            on_ready=self.orchestrator.submit,
            stop_event=self.stop_event,
        )
        self.watcher = FolderWatcher(
            self.root,
            on_event=self.handle_event,
            on_rescan=self.request_rescan,
            recursive=cfg.recursive,
            stop_event=self.stop_event,
            on_failure=self._on_watcher_failure,
            **watcher_options,
        )

    # ---- event flow ----

    def handle_event(self, event: RawEvent) -> None:
        """Pass a raw event through the filter into the aggregator."""
        if not self.path_filter.accepts(event.path):
            return
        self.aggregator.submit(event)

    def rescan(self, subtree: Path) -> int:
        """Feed every file under *subtree* through the normal event path.

        Returns the number of files that passed the filter.
        """
        count = 0
        for path in iter_files(subtree, self.config.recursive):
            if self.stop_event.is_set():
                break
            if self.path_filter.accepts(path):
                self.aggregator.submit(RawEvent(path, EventKind.MODIFIED))
                count += 1
        logger.info("Rescanned %s: %d matching file(s)", subtree, count)
        return count

    def request_rescan(self, subtree: Path) -> None:
        """Queue a background rescan of *subtree* on the rescan worker."""
        with self._rescan_lock:
            if self.stop_event.is_set():
                return
            if any(subtree.is_relative_to(p) for p in self._pending_rescans):
                logger.debug("Rescan of %s already pending", subtree)
                return
            self._pending_rescans.add(subtree)
            self._rescanner.submit(self._safe_rescan, subtree)

    @property
    def pending_rescans(self) -> int:
        with self._rescan_lock:
            return len(self._pending_rescans)

    def _safe_rescan(self, subtree: Path) -> None:
        with self._rescan_lock:
            self._pending_rescans.discard(subtree)
        try:
            self.rescan(subtree)
        except OSError:
            logger.exception("Rescan of %s failed", subtree)

    # ---- lifecycle ----

    def start(self) -> None:
        """Start aggregation and watching, then queue existing files."""
        logger.info(
            "%s %s syncing %s -> s3://%s/%s",
            __app_name__, __version__, self.root,
            self.config.bucket, self.config.key_prefix,
        )
        self.aggregator.start()
        self.watcher.start()
        if self.config.scan_on_start:
            self.request_rescan(self.root)

    def stop(self) -> bool:
        """Shut down in order; safe to call more than once.

        Returns True when all running uploads finished within the grace
        period.
        """
        with self._stop_lock:
            if self._stopped:
                return True
            self._stopped = True
        logger.info("Shutting down…")
        self.stop_event.set()
        self.watcher.stop()
        with self._rescan_lock:
            self._pending_rescans.clear()
            self._rescanner.shutdown(wait=False, cancel_futures=True)
        self.aggregator.stop()
        finished = self.orchestrator.shutdown(self.config.shutdown_grace)
        logger.info("Totals: %s", self.orchestrator.stats.summary())
        return finished

    def run_forever(self) -> int:
        """Run until SIGINT/SIGTERM or a fatal watcher error; return an exit code."""

        def _handler(sig, frame):
            logger.info("Received signal %s", signal.Signals(sig).name)
            self.stop_event.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

        try:
            self.start()
        except OSError as exc:
            logger.error("Cannot start sync: %s", exc)
            self.failed = True
            self.stop()
            return EXIT_WATCHER_FAILED
        print(f"{__app_name__} running (press Ctrl-C to stop)…")
        while not self.stop_event.wait(timeout=1):
            pass
        self.stop()
        print(f"{__app_name__} stopped.")
        return EXIT_WATCHER_FAILED if self.failed else EXIT_OK

    # ---- callbacks ----

    def _on_watcher_failure(self, exc: Exception) -> None:
        logger.critical("Watcher failed permanently: %s", exc)
        self.failed = True
        self.stop_event.set()

    def _on_upload_complete(self, task: UploadTask) -> None:
        if task.state is TaskState.FAILED:
            logger.error(
                "Sync failed for %s after %d attempt(s): %s",
                task.path, task.attempts, task.last_error,
            )
        elif task.state is TaskState.DELETE_FAILED:
            logger.warning("Synced %s but left local copy: %s", task.key, task.delete_error)
