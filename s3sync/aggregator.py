"""Event aggregation for s3sync.

Turns the bursty stream of raw filesystem events into one
:class:`SyncReadyEvent` per file once that file has seen no activity for
``window`` seconds.  Pending files live in a single table keyed by path and
a single background thread scans it on a fixed tick, so the cost does not
grow with one timer per file.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from s3sync.events import EventKind, PendingEntry, RawEvent, SyncReadyEvent

logger = logging.getLogger(__name__)

# Scan tick as a fraction of the window, and its lower bound in seconds.
TICK_FRACTION = 0.2
MIN_TICK = 0.05


class Aggregator:
    """Debounces raw events per path and emits settled files.

    Parameters
    ----------
    window : float
        Seconds of quiet required before a file is considered stable.
        Zero disables coalescing: every event fires immediately.
    on_ready : callable
        Receives each :class:`SyncReadyEvent`.  Called without the
        internal lock held.
    stop_event : threading.Event, optional
        Shared shutdown signal.  The scan loop exits once it is set.
    clock : callable
        Monotonic time source, matching ``RawEvent.observed_at``.
    tick : float, optional
        Override for the scan interval.
    """

    def __init__(
        self,
        window: float,
        on_ready: Callable[[SyncReadyEvent], None],
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        tick: float | None = None,
    ):
        if window < 0:
            raise ValueError(f"window must be >= 0, got {window}")
        self._window = float(window)
        self._on_ready = on_ready
        self._stop = stop_event or threading.Event()
        self._clock = clock
        self._tick = tick if tick is not None else max(MIN_TICK, window * TICK_FRACTION)
        self._pending: dict[Path, PendingEntry] = {}
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def window(self) -> float:
        return self._window

    @property
    def tick(self) -> float:
        return self._tick

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the background scan thread."""
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="AggregatorScan"
        )
        self._thread.start()
        logger.info(
            "Aggregating events (window=%.2fs, tick=%.2fs)", self._window, self._tick
        )

    def stop(self, timeout: float | None = 5) -> int:
        """Stop scanning and discard entries that have not settled.

        Returns the number of discarded entries.
        """
        self._stop.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None
        with self._lock:
            dropped = list(self._pending)
            self._pending.clear()
        if dropped:
            logger.warning(
                "Discarding %d unsettled file(s) on shutdown: %s",
                len(dropped),
                ", ".join(str(p) for p in dropped),
            )
        return len(dropped)

    # ---- ingestion ----

    def submit(self, event: RawEvent) -> None:
        """Apply one raw event to the pending table."""
        if event.kind is EventKind.REMOVED:
            with self._lock:
                entry = self._pending.pop(event.path, None)
            if entry is not None:
                logger.debug("Cancelled pending %s (removed before settling)", event.path)
            return

        if self._window <= 0:
            self._emit([SyncReadyEvent(event.path, event.kind)])
            return

        with self._lock:
            entry = self._pending.get(event.path)
            if entry is None:
                self._pending[event.path] = PendingEntry(
                    path=event.path,
                    last_observed_at=event.observed_at,
                    pending_kind=event.kind,
                    window=self._window,
                )
            else:
                entry.reset(event)
        logger.debug("Tracking %s (%s)", event.path, event.kind.value)

    # ---- scanning ----

    def scan(self, now: float | None = None) -> list[SyncReadyEvent]:
        """Fire every entry whose deadline has passed.

        Deadlines are read under the lock at scan time, so an entry reset
        by a newer event is never fired early.
        """
        if now is None:
            now = self._clock()
        with self._lock:
            due = [e for e in self._pending.values() if e.deadline <= now]
            for entry in due:
                del self._pending[entry.path]
        # Oldest activity first; per path there is at most one entry.
        due.sort(key=lambda e: e.last_observed_at)
        ready = [SyncReadyEvent(e.path, e.pending_kind) for e in due]
        self._emit(ready)
        return ready

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.scan()
            except Exception:
                logger.exception("Aggregator scan failed")
            self._stop.wait(timeout=self._tick)

    def _emit(self, ready: list[SyncReadyEvent]) -> None:
        for event in ready:
            logger.info("File stable: %s", event.path)
            try:
                self._on_ready(event)
            except Exception:
                logger.exception("Error in on_ready callback for %s", event.path)

    # ---- status ----

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    @property
    def pending_paths(self) -> list[Path]:
        with self._lock:
            return list(self._pending)

    def deadline_for(self, path: Path) -> float | None:
        with self._lock:
            entry = self._pending.get(path)
            return entry.deadline if entry else None
