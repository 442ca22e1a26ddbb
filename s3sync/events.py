"""Event and task models shared across the sync engine."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class EventKind(str, Enum):
    """Kinds of filesystem change reported by the watcher."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED = "renamed"


@dataclass(frozen=True)
class RawEvent:
    """A single change observed in the watched tree.

    ``observed_at`` is a ``time.monotonic()`` reading.
    """

    path: Path
    kind: EventKind
    observed_at: float = field(default_factory=time.monotonic)


@dataclass
class PendingEntry:
    """Aggregation state for one path that has not settled yet."""

    path: Path
    last_observed_at: float
    pending_kind: EventKind
    window: float

    @property
    def deadline(self) -> float:
        return self.last_observed_at + self.window

    def reset(self, event: RawEvent) -> None:
        # Never move the deadline backwards for an out-of-order timestamp.
        self.last_observed_at = max(self.last_observed_at, event.observed_at)
        self.pending_kind = event.kind


@dataclass(frozen=True)
class SyncReadyEvent:
    """A file that stopped changing and should now be uploaded."""

    path: Path
    kind: EventKind


class TaskState(str, Enum):
    """Lifecycle of an upload task."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    DELETED = "deleted"
    DELETE_FAILED = "delete_failed"


# States that count as a successful sync of the file.
SUCCESS_STATES = frozenset(
    {TaskState.SUCCEEDED, TaskState.DELETED, TaskState.DELETE_FAILED}
)


@dataclass
class UploadTask:
    """Record of a single upload, mutated as it moves through its states."""

    path: Path
    key: str
    kind: EventKind = EventKind.MODIFIED
    state: TaskState = TaskState.PENDING
    attempts: int = 0
    last_error: str = ""
    delete_error: str = ""
    size_bytes: int = 0
    started: float = 0.0
    finished: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES

    @property
    def duration(self) -> float:
        if self.finished and self.started:
            return self.finished - self.started
        return 0.0

    @property
    def timestamp_str(self) -> str:
        """Human-readable timestamp of when the task finished."""
        if self.finished:
            return datetime.fromtimestamp(self.finished).strftime("%Y-%m-%d %H:%M:%S")
        return ""
