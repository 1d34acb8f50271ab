"""Persistent full-text index over corpus chunks.

Backed by SQLite with an FTS5 external-content table kept in sync by
triggers. The connection is a single-owner resource: every public method
takes ``self._lock`` for the duration of one synchronous operation, so the
watcher thread and async callers (via ``asyncio.to_thread``) are serialized.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from mnemo.errors import IndexStoreError
from mnemo.memory.chunker import Chunk

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS files (
    path TEXT PRIMARY KEY,
    mtime REAL NOT NULL,
    chunk_count INTEGER NOT NULL,
    indexed_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    path TEXT NOT NULL,
    chunk_index INTEGER NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    line_start INTEGER NOT NULL,
    line_end INTEGER NOT NULL,
    text TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    UNIQUE (path, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks(path);

CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(
    text,
    content='chunks', content_rowid='id'
);

CREATE TRIGGER IF NOT EXISTS chunks_ai AFTER INSERT ON chunks BEGIN
    INSERT INTO chunks_fts(rowid, text) VALUES (new.id, new.text);
END;

CREATE TRIGGER IF NOT EXISTS chunks_ad AFTER DELETE ON chunks BEGIN
    INSERT INTO chunks_fts(chunks_fts, rowid, text) VALUES ('delete', old.id, old.text);
END;
"""

_TERM_RE = re.compile(r"\w+", re.UNICODE)

# Transient conditions worth one retry (locked/busy database, full disk).
TRANSIENT_ERRORS = (sqlite3.OperationalError,)


@dataclass(frozen=True)
class SearchResult:
    source_path: str
    chunk_index: int
    text: str
    score: float
    line_start: int
    line_end: int


@dataclass(frozen=True)
class IndexStats:
    total_files: int
    total_chunks: int
    index_size_bytes: int

    @property
    def index_size_kb(self) -> int:
        return self.index_size_bytes // 1024


def build_match_query(query: str) -> str:
    """Reduce free text to an FTS5 OR-query of quoted terms.

    Quoting keeps user punctuation out of the FTS5 grammar.
    """
    terms: list[str] = []
    for term in _TERM_RE.findall(query.lower()):
        if term not in terms:
            terms.append(term)
    return " OR ".join(f'"{t}"' for t in terms)


class IndexStore:
    """Upsert/delete/search over chunk entries."""

    def __init__(
        self, db_path: Path | str, retry_backoff: float = 0.1, busy_timeout: float = 5.0
    ) -> None:
        self.db_path = str(db_path)
        self.retry_backoff = retry_backoff
        self._lock = threading.Lock()
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(
                self.db_path,
                timeout=busy_timeout,
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA)
            self._conn.execute("PRAGMA quick_check").fetchone()
        except sqlite3.DatabaseError as e:
            raise IndexStoreError(f"Cannot open index at {self.db_path}: {e}") from e
        logger.debug("Index store opened: %s", self.db_path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Writes ────────────────────────────────────────────────

    def upsert_file(self, path: str, chunks: Sequence[Chunk], mtime: float | None = None) -> None:
        """Replace every entry for ``path`` in one transaction.

        A transient failure is retried once; a second failure raises
        IndexStoreError with the previous entries for ``path`` intact.
        """
        mtime = time.time() if mtime is None else mtime
        for attempt in (1, 2):
            try:
                with self._lock:
                    self._transaction(self._replace, path, chunks, mtime)
                logger.debug("Indexed %s (%d chunks)", path, len(chunks))
                return
            except TRANSIENT_ERRORS as e:
                if attempt == 1:
                    logger.warning("Index write for %s failed (%s), retrying", path, e)
                    time.sleep(self.retry_backoff)
                    continue
                raise IndexStoreError(f"Failed to index {path}: {e}") from e
            except sqlite3.DatabaseError as e:
                raise IndexStoreError(f"Failed to index {path}: {e}") from e

    def delete_file(self, path: str) -> None:
        """Remove every entry for ``path``. No-op if absent."""
        try:
            with self._lock:
                self._transaction(self._delete, path)
        except sqlite3.DatabaseError as e:
            raise IndexStoreError(f"Failed to remove {path}: {e}") from e
        logger.debug("Removed %s from index", path)

    def _transaction(self, fn, *args) -> None:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            fn(*args)
            self._conn.execute("COMMIT")
        except BaseException:
            # A failed COMMIT (SQLITE_BUSY) leaves the transaction open
            if self._conn.in_transaction:
                self._conn.execute("ROLLBACK")
            raise

    def _replace(self, path: str, chunks: Sequence[Chunk], mtime: float) -> None:
        self._delete(path)
        self._insert_chunks(path, chunks)
        self._conn.execute(
            "INSERT INTO files (path, mtime, chunk_count, indexed_at) VALUES (?, ?, ?, ?)",
            (path, mtime, len(chunks), time.time()),
        )

    def _delete(self, path: str) -> None:
        self._conn.execute("DELETE FROM chunks WHERE path = ?", (path,))
        self._conn.execute("DELETE FROM files WHERE path = ?", (path,))

    def _insert_chunks(self, path: str, chunks: Sequence[Chunk]) -> None:
        self._conn.executemany(
            """INSERT INTO chunks
               (path, chunk_index, start_offset, end_offset, line_start, line_end,
                text, content_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            [
                (
                    path,
                    c.chunk_index,
                    c.start_offset,
                    c.end_offset,
                    c.line_start,
                    c.line_end,
                    c.text,
                    c.content_hash,
                )
                for c in chunks
            ],
        )

    # ── Reads ─────────────────────────────────────────────────

    def search(self, query: str, top_k: int = 6) -> list[SearchResult]:
        """Rank chunks by BM25; ties go to newer files, then path, then chunk order."""
        match = build_match_query(query)
        if not match or top_k <= 0:
            return []
        try:
            with self._lock:
                rows = self._conn.execute(
                    """SELECT c.path, c.chunk_index, c.text, c.line_start, c.line_end,
                              ROUND(bm25(chunks_fts), 6) AS rank
                       FROM chunks_fts
                       JOIN chunks c ON c.id = chunks_fts.rowid
                       JOIN files f ON f.path = c.path
                       WHERE chunks_fts MATCH ?
                       ORDER BY rank ASC, f.mtime DESC, c.path ASC, c.chunk_index ASC
                       LIMIT ?""",
                    (match, top_k),
                ).fetchall()
        except sqlite3.DatabaseError as e:
            raise IndexStoreError(f"Search failed for {query!r}: {e}") from e
        return [
            SearchResult(
                source_path=row["path"],
                chunk_index=row["chunk_index"],
                text=row["text"],
                score=-row["rank"],
                line_start=row["line_start"],
                line_end=row["line_end"],
            )
            for row in rows
        ]

    def stats(self) -> IndexStats:
        with self._lock:
            files = self._conn.execute("SELECT COUNT(*) FROM files").fetchone()[0]
            chunks = self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            page_count = self._conn.execute("PRAGMA page_count").fetchone()[0]
            page_size = self._conn.execute("PRAGMA page_size").fetchone()[0]
        return IndexStats(
            total_files=files, total_chunks=chunks, index_size_bytes=page_count * page_size
        )

    def chunk_hashes(self, path: str) -> list[str]:
        """Content hashes of the entries for ``path`` in chunk order."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT content_hash FROM chunks WHERE path = ? ORDER BY chunk_index", (path,)
            ).fetchall()
        return [row[0] for row in rows]

    def indexed_paths(self) -> list[str]:
        with self._lock:
            rows = self._conn.execute("SELECT path FROM files ORDER BY path").fetchall()
        return [row[0] for row in rows]
