"""Tests for the corpus indexer and debounced watcher."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from mnemo.memory.index import IndexStore
from mnemo.memory.watcher import CorpusIndexer, CorpusWatcher


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    (root / "memory").mkdir(parents=True)
    return root


@pytest.fixture
def index(tmp_path: Path) -> IndexStore:
    store = IndexStore(tmp_path / "index.sqlite", retry_backoff=0)
    yield store
    store.close()


@pytest.fixture
def indexer(workspace: Path, index: IndexStore) -> CorpusIndexer:
    return CorpusIndexer(workspace, index, chunk_size=50, chunk_overlap=10)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(100.0)


@pytest.fixture
def watcher(indexer: CorpusIndexer, clock: FakeClock) -> CorpusWatcher:
    return CorpusWatcher(indexer, debounce_seconds=2.0, max_pending=3, clock=clock)


class TestIndexer:
    def test_is_indexable(self, indexer: CorpusIndexer, workspace: Path):
        assert indexer.is_indexable(workspace / "MEMORY.md")
        assert indexer.is_indexable(workspace / "memory" / "2026-02-18.md")
        assert not indexer.is_indexable(workspace / "notes.txt")
        assert not indexer.is_indexable(workspace / ".versions" / "MEMORY-1.md")
        assert not indexer.is_indexable(workspace.parent / "outside.md")

    def test_source_path_is_relative(self, indexer: CorpusIndexer, workspace: Path):
        assert indexer.source_path(workspace / "memory" / "a.md") == "memory/a.md"

    def test_reconcile_indexes_new_files(self, indexer: CorpusIndexer, workspace: Path):
        (workspace / "MEMORY.md").write_text("remember the ocelot")
        (workspace / "memory" / "2026-01-01.md").write_text("daily heron")
        report = indexer.reconcile()
        assert sorted(report.upserted) == ["MEMORY.md", "memory/2026-01-01.md"]
        assert indexer.index.search("ocelot")[0].source_path == "MEMORY.md"

    def test_reconcile_detects_changes_and_deletions(
        self, indexer: CorpusIndexer, workspace: Path
    ):
        keep = workspace / "keep.md"
        change = workspace / "change.md"
        gone = workspace / "gone.md"
        keep.write_text("steady")
        change.write_text("before")
        gone.write_text("vanishing")
        indexer.reconcile()

        change.write_text("after")
        gone.unlink()
        report = indexer.reconcile()

        assert report.upserted == ["change.md"]
        assert report.deleted == ["gone.md"]
        assert report.unchanged == 1
        assert indexer.index.search("vanishing") == []
        assert indexer.index.search("after")[0].source_path == "change.md"

    def test_reconcile_is_idempotent(self, indexer: CorpusIndexer, workspace: Path):
        (workspace / "a.md").write_text("stable text")
        indexer.reconcile()
        report = indexer.reconcile()
        assert report.changed == 0
        assert report.unchanged == 1

    def test_reconcile_isolates_failures(self, indexer: CorpusIndexer, workspace: Path):
        (workspace / "a.md").write_text("alpha")
        (workspace / "b.md").write_text("bravo")
        original = indexer._chunks

        def broken(path: Path):
            if path.name == "a.md":
                raise OSError("permission denied")
            return original(path)

        with patch.object(indexer, "_chunks", side_effect=broken):
            report = indexer.reconcile()
        assert list(report.failed) == ["a.md"]
        assert report.upserted == ["b.md"]


class TestDebounce:
    def test_burst_coalesced_into_one_upsert(
        self, watcher: CorpusWatcher, workspace: Path, clock: FakeClock
    ):
        path = workspace / "note.md"
        path.write_text("draft one")
        with patch.object(watcher.indexer, "index_path", wraps=watcher.indexer.index_path) as up:
            for _ in range(5):
                watcher.queue(path)
                clock.now += 0.5
            assert watcher.process_pending() == 0  # still inside the window
            clock.now += 2.0
            assert watcher.process_pending() == 1
            assert watcher.process_pending() == 0
        assert up.call_count == 1
        assert watcher.indexer.index.search("draft")[0].source_path == "note.md"

    def test_delete_event_removes_entries(
        self, watcher: CorpusWatcher, workspace: Path, clock: FakeClock
    ):
        path = workspace / "note.md"
        path.write_text("temporary gecko")
        watcher.indexer.index_path(path)
        path.unlink()
        watcher.queue(path, removed=True)
        clock.now += 5
        watcher.process_pending()
        assert watcher.indexer.index.search("gecko") == []

    def test_last_event_wins(self, watcher: CorpusWatcher, workspace: Path, clock: FakeClock):
        path = workspace / "note.md"
        path.write_text("recreated lynx")
        watcher.queue(path, removed=True)
        watcher.queue(path)
        clock.now += 5
        watcher.process_pending()
        assert watcher.indexer.index.search("lynx")[0].source_path == "note.md"

    def test_ignores_non_markdown(self, watcher: CorpusWatcher, workspace: Path):
        watcher.queue(workspace / "image.png")
        watcher.queue(workspace / ".index" / "memory.md")
        assert watcher.pending_count == 0

    def test_stop_flushes_pending(self, watcher: CorpusWatcher, workspace: Path):
        path = workspace / "note.md"
        path.write_text("flushed on stop")
        watcher.queue(path)
        watcher.stop()
        assert watcher.pending_count == 0
        assert watcher.indexer.index.search("flushed")


class TestOverflow:
    def test_overflow_falls_back_to_reconcile(
        self, watcher: CorpusWatcher, workspace: Path, clock: FakeClock
    ):
        for i in range(5):
            (workspace / f"n{i}.md").write_text(f"note number {i} platypus")
            watcher.queue(workspace / f"n{i}.md")

        with patch.object(
            watcher.indexer, "reconcile", wraps=watcher.indexer.reconcile
        ) as reconcile:
            watcher.process_pending()
        reconcile.assert_called_once()
        assert len(watcher.indexer.index.indexed_paths()) == 5

    def test_request_rescan(self, watcher: CorpusWatcher, workspace: Path):
        (workspace / "a.md").write_text("missed event")
        watcher.request_rescan("observer stopped")
        watcher.process_pending()
        assert watcher.indexer.index.indexed_paths() == ["a.md"]

    def test_observer_restart_failure_keeps_worker_alive(
        self, watcher: CorpusWatcher, workspace: Path, clock: FakeClock
    ):
        dead = MagicMock()
        dead.is_alive.return_value = False
        alive = MagicMock()
        alive.is_alive.return_value = True
        watcher._observer = dead

        path = workspace / "note.md"
        path.write_text("survivor quokka")
        watcher.queue(path)
        clock.now += 5

        with patch.object(
            watcher,
            "_start_observer",
            side_effect=[OSError("inotify watch limit reached"), alive],
        ) as start:
            worker = threading.Thread(target=watcher._run, args=(0.01,), daemon=True)
            worker.start()
            assert _wait_for(lambda: start.call_count == 2)
            watcher._stop.set()
            worker.join(timeout=2)

        assert watcher._observer is alive
        assert watcher.indexer.index.search("quokka")[0].source_path == "note.md"


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


class TestLiveObserver:
    """Real watchdog observer on a temporary workspace."""

    @pytest.fixture
    def live(self, indexer: CorpusIndexer) -> CorpusWatcher:
        watcher = CorpusWatcher(indexer, debounce_seconds=0.1)
        watcher.start(poll_interval=0.05)
        yield watcher
        watcher.stop()

    def test_create_rename_delete(self, live: CorpusWatcher, workspace: Path):
        index = live.indexer.index
        path = workspace / "live.md"
        path.write_text("observed wombat")
        assert _wait_for(lambda: [r.source_path for r in index.search("wombat")] == ["live.md"])

        path.write_text("observed wombat, now with a numbat")
        assert _wait_for(lambda: bool(index.search("numbat")))

        renamed = workspace / "memory" / "moved.md"
        path.rename(renamed)
        assert _wait_for(lambda: index.indexed_paths() == ["memory/moved.md"])

        renamed.unlink()
        assert _wait_for(lambda: index.indexed_paths() == [])

    def test_ignores_other_files(self, live: CorpusWatcher, workspace: Path):
        (workspace / "picture.txt").write_text("not markdown")
        (workspace / "real.md").write_text("markdown ibis")
        assert _wait_for(lambda: live.indexer.index.indexed_paths() == ["real.md"])

    def test_moved_directory_reindexed(self, indexer: CorpusIndexer, workspace: Path):
        (workspace / "projects").mkdir()
        (workspace / "projects" / "a.md").write_text("tapir field notes")
        watcher = CorpusWatcher(indexer, debounce_seconds=0.1)
        watcher.start(poll_interval=0.05)
        try:
            assert indexer.index.indexed_paths() == ["projects/a.md"]
            (workspace / "projects").rename(workspace / "archive")
            assert _wait_for(lambda: indexer.index.indexed_paths() == ["archive/a.md"])
        finally:
            watcher.stop()
