"""Corpus watcher: keeps the index in step with the markdown workspace.

Filesystem events are best-effort. They feed a bounded debounce buffer;
a worker thread flushes each path once it has been quiet for the debounce
window. When the buffer overflows (or the observer dies) pending events are
dropped and a full content-hash reconciliation is run instead, so
correctness never depends on seeing every event.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from mnemo.errors import IndexStoreError, WatchError
from mnemo.memory.chunker import DEFAULT_CHUNK_OVERLAP, DEFAULT_CHUNK_SIZE, chunk_text
from mnemo.memory.index import IndexStore

logger = logging.getLogger(__name__)

INDEXED_SUFFIX = ".md"


@dataclass
class ReconcileReport:
    upserted: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        return len(self.upserted) + len(self.deleted)


class CorpusIndexer:
    """Synchronous file → index operations for one workspace."""

    def __init__(
        self,
        root: Path,
        index: IndexStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunk_overlap: int = DEFAULT_CHUNK_OVERLAP,
    ) -> None:
        self.root = root
        self.index = index
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    def is_indexable(self, path: Path) -> bool:
        """Markdown files under the root, outside dot-directories."""
        if path.suffix != INDEXED_SUFFIX:
            return False
        try:
            rel = path.relative_to(self.root)
        except ValueError:
            return False
        return not any(part.startswith(".") for part in rel.parts)

    def source_path(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _chunks(self, path: Path):
        text = path.read_text(encoding="utf-8", errors="replace")
        return chunk_text(self.source_path(path), text, self.chunk_size, self.chunk_overlap)

    def index_path(self, path: Path) -> int:
        """(Re)index one file. Returns the number of chunks written."""
        chunks = self._chunks(path)
        self.index.upsert_file(self.source_path(path), chunks, mtime=path.stat().st_mtime)
        return len(chunks)

    def remove_path(self, path: Path) -> None:
        self.index.delete_file(self.source_path(path))

    def discover(self) -> list[Path]:
        return sorted(p for p in self.root.rglob(f"*{INDEXED_SUFFIX}") if self.is_indexable(p))

    def reconcile(self) -> ReconcileReport:
        """Full rescan: re-upsert files whose chunk hashes differ, drop vanished files."""
        report = ReconcileReport()
        on_disk: set[str] = set()

        for path in self.discover():
            source = self.source_path(path)
            on_disk.add(source)
            try:
                chunks = self._chunks(path)
                fresh = [c.content_hash for c in chunks]
                if fresh == self.index.chunk_hashes(source):
                    report.unchanged += 1
                    continue
                self.index.upsert_file(source, chunks, mtime=path.stat().st_mtime)
                report.upserted.append(source)
            except (OSError, IndexStoreError) as e:
                logger.error("Reconcile failed for %s: %s", source, e)
                report.failed[source] = str(e)

        for source in self.index.indexed_paths():
            if source in on_disk:
                continue
            try:
                self.index.delete_file(source)
                report.deleted.append(source)
            except IndexStoreError as e:
                logger.error("Reconcile could not remove %s: %s", source, e)
                report.failed[source] = str(e)

        logger.info(
            "Reconciled index: %d upserted, %d deleted, %d unchanged, %d failed",
            len(report.upserted),
            len(report.deleted),
            report.unchanged,
            len(report.failed),
        )
        return report


class _CorpusEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: CorpusWatcher) -> None:
        self._watcher = watcher

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.queue(Path(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.queue(Path(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self._watcher.queue(Path(event.src_path), removed=True)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            # A renamed directory can move many files at once
            self._watcher.request_rescan("directory moved")
            return
        self._watcher.queue(Path(event.src_path), removed=True)
        self._watcher.queue(Path(event.dest_path))


class CorpusWatcher:
    """Debounced filesystem watcher driving incremental index updates.

    Features:
    - Coalesces bursts of events per path within ``debounce_seconds``
    - Exactly one upsert or delete per settled change
    - Bounded buffer; overflow falls back to a full reconcile
    - Initial reconcile on start
    """

    def __init__(
        self,
        indexer: CorpusIndexer,
        debounce_seconds: float = 2.0,
        max_pending: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.indexer = indexer
        self.debounce_seconds = debounce_seconds
        self.max_pending = max_pending
        self._clock = clock
        self._pending: dict[Path, tuple[float, bool]] = {}  # path → (last event, removed)
        self._rescan_needed = False
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._worker: threading.Thread | None = None
        self._observer = None

    # ── Event intake ──────────────────────────────────────────

    def queue(self, path: Path, removed: bool = False) -> None:
        """Record a change for ``path``; later events for the same path win."""
        if not self.indexer.is_indexable(path):
            return
        with self._lock:
            if path not in self._pending and len(self._pending) >= self.max_pending:
                self._overflow(WatchError(f"change buffer full ({self.max_pending} paths)"))
                return
            self._pending[path] = (self._clock(), removed)

    def request_rescan(self, reason: str) -> None:
        with self._lock:
            self._overflow(WatchError(reason))

    def _overflow(self, error: WatchError) -> None:
        """Drop buffered events and schedule a reconcile. Caller holds the lock."""
        logger.warning("Watch events lost (%s); scheduling full rescan", error)
        self._pending.clear()
        self._rescan_needed = True

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ── Flushing ──────────────────────────────────────────────

    def process_pending(self, now: float | None = None) -> int:
        """Apply every settled change. Returns how many paths were processed."""
        now = self._clock() if now is None else now
        with self._lock:
            rescan = self._rescan_needed
            self._rescan_needed = False
            settled = [
                (path, removed)
                for path, (stamp, removed) in self._pending.items()
                if now - stamp >= self.debounce_seconds
            ]
            for path, _ in settled:
                del self._pending[path]

        if rescan:
            self.indexer.reconcile()

        for path, removed in sorted(settled):
            self._apply(path, removed)
        return len(settled)

    def _apply(self, path: Path, removed: bool) -> None:
        try:
            if removed or not path.exists():
                self.indexer.remove_path(path)
                logger.info("Unindexed %s", self.indexer.source_path(path))
            else:
                count = self.indexer.index_path(path)
                logger.info("Reindexed %s (%d chunks)", self.indexer.source_path(path), count)
        except (OSError, IndexStoreError) as e:
            logger.error("Failed to update index for %s: %s", path, e)

    def _run(self, poll_interval: float) -> None:
        while not self._stop.wait(poll_interval):
            try:
                if self._observer is not None and not self._observer.is_alive():
                    self._restart_observer()
                self.process_pending()
            except Exception:
                logger.exception("Watcher pass failed")

    def _restart_observer(self) -> None:
        """Replace a dead observer; on failure the next poll tries again."""
        try:
            observer = self._start_observer()
        except OSError as e:
            logger.error("Cannot restart filesystem observer on %s: %s", self.indexer.root, e)
            return
        self._observer = observer
        # Events were lost while no observer was running
        self.request_rescan("observer restarted")

    # ── Lifecycle ─────────────────────────────────────────────

    def _start_observer(self):
        observer = Observer()
        observer.schedule(_CorpusEventHandler(self), str(self.indexer.root), recursive=True)
        observer.daemon = True
        observer.start()
        return observer

    def start(self, poll_interval: float = 0.5) -> None:
        """Reconcile once, then watch the workspace in the background."""
        self.indexer.root.mkdir(parents=True, exist_ok=True)
        self.indexer.reconcile()
        self._stop.clear()
        self._observer = self._start_observer()
        self._worker = threading.Thread(
            target=self._run, args=(poll_interval,), daemon=True, name="corpus-watcher"
        )
        self._worker.start()
        logger.info(
            "Corpus watcher started on %s (debounce: %.1fs)",
            self.indexer.root,
            self.debounce_seconds,
        )

    def stop(self) -> None:
        self._stop.set()
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        if self._worker is not None:
            self._worker.join(timeout=2)
            self._worker = None
        pending = self.pending_count
        if pending:
            logger.info("Flushing %d buffered changes before stopping", pending)
        self.process_pending(now=float("inf"))
