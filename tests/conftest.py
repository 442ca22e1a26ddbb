"""
Shared pytest fixtures for s3sync.
"""
import sys
import threading
from pathlib import Path

import pytest

# Make the package importable without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from s3sync.store import FatalUploadError, RetryableUploadError


class FakeStore:
    """In-memory object store that can fail on demand.

    ``failures`` is consumed one item per call: ``"retry"`` raises a
    retryable error, ``"fatal"`` a fatal one, ``None`` succeeds.
    """

    def __init__(self, failures=None, gate=None):
        self.failures = list(failures or [])
        self.gate = gate
        self.objects = {}
        self.calls = []
        self.active = {}
        self.max_active_per_key = 0
        self.max_active = 0
        self.started = threading.Event()
        self._lock = threading.Lock()

    def put_object(self, key, local_path):
        with self._lock:
            self.calls.append(key)
            self.active[key] = self.active.get(key, 0) + 1
            self.max_active_per_key = max(self.max_active_per_key, self.active[key])
            self.max_active = max(self.max_active, sum(self.active.values()))
            outcome = self.failures.pop(0) if self.failures else None
        self.started.set()
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if outcome == "retry":
                raise RetryableUploadError("SlowDown: please reduce your request rate")
            if outcome == "fatal":
                raise FatalUploadError("AccessDenied: nope")
            data = Path(local_path).read_bytes()
            with self._lock:
                self.objects[key] = data
        finally:
            with self._lock:
                self.active[key] -= 1


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def sync_root(tmp_path):
    root = tmp_path / "outbox"
    root.mkdir()
    return root
