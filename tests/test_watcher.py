"""
Tests for the watchdog adapter.
"""
import threading
import time
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileClosedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from s3sync.events import EventKind
from s3sync.watcher import ChangeHandler, FolderWatcher, iter_files


class Recorder:
    def __init__(self):
        self.events = []
        self.rescans = []

    def handler(self, root, recursive=False):
        return ChangeHandler(
            root, self.events.append, self.rescans.append, recursive, clock=lambda: 42.0
        )

    @property
    def kinds(self):
        return [(e.path.name, e.kind) for e in self.events]


@pytest.fixture
def rec():
    return Recorder()


class TestChangeHandler:
    def test_file_events_map_to_kinds(self, rec, sync_root):
        h = rec.handler(sync_root)
        f = str(sync_root / "a.csv")
        h.dispatch(FileCreatedEvent(f))
        h.dispatch(FileModifiedEvent(f))
        h.dispatch(FileClosedEvent(f))
        h.dispatch(FileDeletedEvent(f))
        assert rec.kinds == [
            ("a.csv", EventKind.CREATED),
            ("a.csv", EventKind.MODIFIED),
            ("a.csv", EventKind.MODIFIED),
            ("a.csv", EventKind.REMOVED),
        ]
        assert all(e.observed_at == 42.0 for e in rec.events)

    def test_move_is_removal_plus_rename(self, rec, sync_root):
        h = rec.handler(sync_root)
        h.dispatch(FileMovedEvent(str(sync_root / "a.tmp"), str(sync_root / "a.csv")))
        assert rec.kinds == [("a.tmp", EventKind.REMOVED), ("a.csv", EventKind.RENAMED)]

    def test_move_out_of_tree_is_removal_only(self, rec, sync_root, tmp_path):
        h = rec.handler(sync_root)
        h.dispatch(FileMovedEvent(str(sync_root / "a.csv"), str(tmp_path / "a.csv")))
        assert rec.kinds == [("a.csv", EventKind.REMOVED)]

    def test_directory_events_never_emit_files(self, rec, sync_root):
        h = rec.handler(sync_root)
        h.dispatch(DirModifiedEvent(str(sync_root)))
        h.dispatch(DirCreatedEvent(str(sync_root / "sub")))
        assert rec.events == []
        assert rec.rescans == []

    def test_new_directory_triggers_rescan_when_recursive(self, rec, sync_root):
        h = rec.handler(sync_root, recursive=True)
        h.dispatch(DirCreatedEvent(str(sync_root / "sub")))
        h.dispatch(DirMovedEvent(str(sync_root / "x"), str(sync_root / "y")))
        assert rec.rescans == [sync_root / "sub", sync_root / "y"]

    def test_nested_files_ignored_when_not_recursive(self, rec, sync_root):
        h = rec.handler(sync_root)
        h.dispatch(FileCreatedEvent(str(sync_root / "sub" / "a.csv")))
        assert rec.events == []

    def test_nested_files_reported_when_recursive(self, rec, sync_root):
        h = rec.handler(sync_root, recursive=True)
        h.dispatch(FileCreatedEvent(str(sync_root / "sub" / "a.csv")))
        assert rec.events[0].path == sync_root / "sub" / "a.csv"


class TestIterFiles:
    def test_recursive_and_flat(self, sync_root):
        (sync_root / "a.csv").write_text("a")
        (sync_root / "sub").mkdir()
        (sync_root / "sub" / "b.csv").write_text("b")
        assert sorted(p.name for p in iter_files(sync_root, False)) == ["a.csv"]
        assert sorted(p.name for p in iter_files(sync_root, True)) == ["a.csv", "b.csv"]

    def test_missing_root_yields_nothing(self, tmp_path):
        assert list(iter_files(tmp_path / "nope", True)) == []


class FakeObserver:
    """Observer stand-in whose liveness the test controls."""

    instances = []

    def __init__(self):
        self.alive = False
        self.scheduled = None
        FakeObserver.instances.append(self)

    def schedule(self, handler, path, recursive=False):
        self.scheduled = (path, recursive)

    def start(self):
        self.alive = True

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.alive


class TestFolderWatcher:
    def setup_method(self):
        FakeObserver.instances = []

    def test_missing_root_raises(self, tmp_path):
        watcher = FolderWatcher(tmp_path / "nope", lambda e: None, lambda p: None)
        with pytest.raises(FileNotFoundError):
            watcher.start()

    def test_start_and_stop(self, sync_root):
        watcher = FolderWatcher(
            sync_root, lambda e: None, lambda p: None,
            recursive=True, observer_factory=FakeObserver,
        )
        watcher.start()
        assert watcher.is_running
        assert FakeObserver.instances[0].scheduled == (str(sync_root), True)
        watcher.stop()
        assert not watcher.is_running

    def test_dead_observer_is_restarted_and_root_rescanned(self, sync_root):
        rescanned = threading.Event()
        rescans = []

        def on_rescan(path):
            rescans.append(path)
            rescanned.set()

        watcher = FolderWatcher(
            sync_root, lambda e: None, on_rescan,
            observer_factory=FakeObserver, supervise_interval=0.01,
        )
        watcher.start()
        try:
            FakeObserver.instances[0].alive = False
            assert rescanned.wait(timeout=5)
        finally:
            watcher.stop()
        assert rescans[0] == sync_root
        assert watcher.restarts >= 1
        assert len(FakeObserver.instances) >= 2

    def test_gives_up_after_repeated_restart_failures(self, sync_root):
        failed = threading.Event()

        class Flaky(FakeObserver):
            def start(self):
                if len(FakeObserver.instances) > 1:
                    raise OSError("inotify watch limit reached")
                super().start()

        watcher = FolderWatcher(
            sync_root, lambda e: None, lambda p: None,
            observer_factory=Flaky, supervise_interval=0.01,
            on_failure=lambda exc: failed.set(),
        )
        watcher.start()
        try:
            FakeObserver.instances[0].alive = False
            assert failed.wait(timeout=5)
        finally:
            watcher.stop()


class TestRealObserver:
    def test_reports_file_creation(self, sync_root):
        seen = threading.Event()
        events = []

        def on_event(event):
            events.append(event)
            if event.path.name == "hello.txt":
                seen.set()

        watcher = FolderWatcher(sync_root, on_event, lambda p: None)
        watcher.start()
        try:
            time.sleep(0.2)
            (sync_root / "hello.txt").write_text("hi")
            assert seen.wait(timeout=10)
        finally:
            watcher.stop()
        assert any(e.path == Path(sync_root) / "hello.txt" for e in events)
