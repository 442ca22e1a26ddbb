"""
Upload orchestration for s3sync.

Accepts settled files from the aggregator and uploads them to the object
store on a bounded worker pool.  Uploads for different files run
concurrently; uploads for the same file are strictly serialised, with any
newer event for a busy file queued until the running task finishes.
Transient failures are retried with capped exponential backoff, and the
local file can optionally be removed after a successful upload.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from s3sync.events import SyncReadyEvent, TaskState, UploadTask
from s3sync.store import FatalUploadError, ObjectStore, RetryableUploadError

logger = logging.getLogger(__name__)

_HISTORY_LIMIT = 1000


def object_key(root: Path, path: Path, prefix: str = "") -> str:
    """Return the bucket key for *path* under *root*.

    Path components relative to *root* are joined with ``/`` and appended
    to *prefix* as-is, so the same file always maps to the same key.
    Raises ``ValueError`` when *path* is outside *root*.
    """
    rel = Path(os.path.abspath(path)).relative_to(os.path.abspath(root))
    return f"{prefix or ''}{PurePosixPath(*rel.parts)}"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Seconds to wait after failed *attempt* (1-based)."""
    return min(cap, base * (2 ** (attempt - 1)))


@dataclass
class UploadStats:
    """Aggregated upload statistics."""
    total_uploaded: int = 0
    total_failed: int = 0
    total_skipped: int = 0
    total_deleted: int = 0
    total_delete_failed: int = 0
    total_bytes: int = 0
    last_uploaded_key: str = ""
    history: list[UploadTask] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record(self, task: UploadTask) -> None:
        with self._lock:
            self.history.append(task)
            if task.state is TaskState.SKIPPED:
                self.total_skipped += 1
            elif task.succeeded:
                self.total_uploaded += 1
                self.total_bytes += task.size_bytes
                self.last_uploaded_key = task.key
                if task.state is TaskState.DELETED:
                    self.total_deleted += 1
                elif task.state is TaskState.DELETE_FAILED:
                    self.total_delete_failed += 1
            else:
                self.total_failed += 1
            if len(self.history) > _HISTORY_LIMIT:
                self.history = self.history[-_HISTORY_LIMIT:]

    def summary(self) -> str:
        with self._lock:
            return (
                f"{self.total_uploaded} uploaded ({self.total_bytes:,} bytes), "
                f"{self.total_failed} failed, {self.total_skipped} skipped, "
                f"{self.total_deleted} deleted, "
                f"{self.total_delete_failed} delete failures"
            )


def _unlink(path: Path) -> None:
    path.unlink()


class UploadOrchestrator:
    """
    Turns sync-ready events into uploads on a bounded thread pool.

    Parameters
    ----------
    root : Path
        The watched root; keys are computed relative to it.
    store : ObjectStore
        Upload capability, shared by all workers.
    key_prefix : str
        Prepended verbatim to every key.
    delete_after_upload : bool
        Remove the local file once its upload succeeded.
    max_workers : int
        Upper bound on concurrent uploads.
    max_attempts : int
        Total attempts per task, including the first.
    retry_base_delay, retry_max_delay : float
        Backoff parameters in seconds.
    on_complete : callable, optional
        Invoked with each terminal :class:`UploadTask`.
    stop_event : threading.Event, optional
        Shared shutdown signal.  Once set, no new tasks or queued
        follow-ups start and pending retries are abandoned.
    sleep : callable, optional
        Used for backoff waits; defaults to waiting on *stop_event*.
    delete_local : callable
        Removes a local file after upload.
    """

    def __init__(
        self,
        root: Path,
        store: ObjectStore,
        key_prefix: str = "",
        delete_after_upload: bool = False,
        max_workers: int = 4,
        max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        on_complete: Callable[[UploadTask], None] | None = None,
        stop_event: threading.Event | None = None,
        sleep: Callable[[float], object] | None = None,
        delete_local: Callable[[Path], None] = _unlink,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.root = Path(root)
        self._store = store
        self._key_prefix = key_prefix
        self._delete_after_upload = delete_after_upload
        self._max_attempts = max_attempts
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._on_complete = on_complete
        self._stop = stop_event or threading.Event()
        self._sleep = sleep or self._stop.wait
        self._delete_local = delete_local
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="Upload"
        )
        self.stats = UploadStats()
        # path -> events waiting for the in-flight task on that path
        self._in_flight: dict[Path, deque[SyncReadyEvent]] = {}
        self._futures: set[Future] = set()
        self._closed = False
        # Re-entrant: a done-callback may run inline on the dispatching thread.
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)

    # ---- status ----

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    @property
    def queued_count(self) -> int:
        with self._lock:
            return sum(len(q) for q in self._in_flight.values())

    def is_busy(self, path: Path) -> bool:
        with self._lock:
            return path in self._in_flight

    def key_for(self, path: Path) -> str:
        return object_key(self.root, path, self._key_prefix)

    # ---- dispatch ----

    def submit(self, event: SyncReadyEvent) -> bool:
        """Accept a settled file for upload.

        Returns False when the orchestrator is shutting down and the event
        was not accepted.
        """
        with self._lock:
            if self._closed or self._stop.is_set():
                logger.warning("Not accepting %s: shutting down", event.path)
                return False
            queue = self._in_flight.get(event.path)
            if queue is not None:
                queue.append(event)
                logger.info(
                    "Upload of %s in progress; queued follow-up (%d waiting)",
                    event.path,
                    len(queue),
                )
                return True
            self._in_flight[event.path] = deque()
            self._dispatch_locked(event)
        return True

    def _dispatch_locked(self, event: SyncReadyEvent) -> None:
        future = self._executor.submit(self._run_task, event)
        self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    def _run_task(self, event: SyncReadyEvent) -> None:
        try:
            task = self.process(event)
        except Exception:
            logger.exception("Unexpected error uploading %s", event.path)
        else:
            self.stats.record(task)
            if self._on_complete:
                try:
                    self._on_complete(task)
                except Exception:
                    logger.exception("Error in on_complete callback")
        finally:
            self._finish(event.path)

    def _finish(self, path: Path) -> None:
        with self._lock:
            queue = self._in_flight.get(path)
            if queue and not (self._closed or self._stop.is_set()):
                self._dispatch_locked(queue.popleft())
                return
            if queue:
                logger.warning(
                    "Dropping %d queued upload(s) for %s on shutdown", len(queue), path
                )
            self._in_flight.pop(path, None)
            if not self._in_flight:
                self._idle.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no upload is running or queued.

        Returns False if *timeout* expired first.
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._in_flight, timeout=timeout)

    # ---- one task ----

    def process(self, event: SyncReadyEvent) -> UploadTask:
        """Run a single upload task to a terminal state."""
        path = event.path
        task = UploadTask(path=path, key="", kind=event.kind)
        task.started = time.time()
        try:
            task.key = self.key_for(path)
        except ValueError:
            task.state = TaskState.FAILED
            task.last_error = f"{path} is outside {self.root}"
            task.finished = time.time()
            logger.error("Cannot upload %s: outside sync root %s", path, self.root)
            return task

        if not path.is_file():
            return self._skip(task, "File no longer exists")
        try:
            before = path.stat()
        except OSError:
            return self._skip(task, "File no longer exists")
        task.size_bytes = before.st_size

        task.state = TaskState.IN_FLIGHT
        while True:
            task.attempts += 1
            try:
                logger.info(
                    "Uploading %s -> %s (%d bytes, attempt %d/%d)",
                    path, task.key, task.size_bytes, task.attempts, self._max_attempts,
                )
                self._store.put_object(task.key, path)
            except FileNotFoundError:
                return self._skip(task, "File vanished during upload")
            except RetryableUploadError as exc:
                task.last_error = str(exc)
                if task.attempts >= self._max_attempts:
                    logger.error(
                        "Giving up on %s after %d attempts: %s",
                        path, task.attempts, exc,
                    )
                    return self._fail(task)
                delay = backoff_delay(
                    task.attempts, self._retry_base_delay, self._retry_max_delay
                )
                logger.warning(
                    "Upload of %s failed (%s); retrying in %.1fs", path, exc, delay
                )
                self._sleep(delay)
                if self._stop.is_set():
                    task.last_error = f"Shutdown during retry: {exc}"
                    logger.warning("Abandoning %s: shutting down", path)
                    return self._fail(task)
                continue
            except FatalUploadError as exc:
                task.last_error = str(exc)
                logger.error("Upload of %s failed permanently: %s", path, exc)
                return self._fail(task)
            except Exception as exc:
                task.last_error = str(exc)
                logger.exception("Unexpected error uploading %s", path)
                return self._fail(task)
            break

        task.state = TaskState.SUCCEEDED
        task.finished = time.time()
        logger.info("Upload complete in %.1fs: %s", task.duration, task.key)
        if self._delete_after_upload:
            self._delete(task, before)
        return task

    def _skip(self, task: UploadTask, reason: str) -> UploadTask:
        task.state = TaskState.SKIPPED
        task.last_error = reason
        task.finished = time.time()
        logger.warning("Skipping %s: %s", task.path, reason)
        return task

    def _fail(self, task: UploadTask) -> UploadTask:
        task.state = TaskState.FAILED
        task.finished = time.time()
        return task

    def _delete(self, task: UploadTask, before: os.stat_result) -> None:
        try:
            after = task.path.stat()
            if (after.st_mtime_ns, after.st_size) != (before.st_mtime_ns, before.st_size):
                # A newer write will settle again and be uploaded then.
                logger.warning("Keeping %s: modified during upload", task.path)
                return
            self._delete_local(task.path)
        except OSError as exc:
            task.state = TaskState.DELETE_FAILED
            task.delete_error = str(exc)
            logger.error("Uploaded %s but could not delete it: %s", task.path, exc)
        else:
            task.state = TaskState.DELETED
            logger.info("Source file removed: %s", task.path)

    # ---- shutdown ----

    def shutdown(self, grace: float | None = 30.0) -> bool:
        """Stop accepting work and wait up to *grace* seconds for uploads.

        Queued follow-ups that have not started are dropped.  Returns True
        when every in-flight upload finished within the grace period.
        """
        with self._lock:
            self._closed = True
            pending = set(self._futures)
        if pending:
            logger.info("Waiting up to %ss for %d upload(s)", grace, len(pending))
        _, not_done = wait(pending, timeout=grace)
        self._executor.shutdown(wait=False)
        if not_done:
            logger.warning("%d upload(s) still running after grace period", len(not_done))
            return False
        return True
