"""Workspace corpus: MEMORY.md, HEARTBEAT.md and dated daily logs.

Markdown files are the source of truth; the index is derived from them.
Only session runs (through this class) and the user (editing by hand) write
these files.
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime
from pathlib import Path

import frontmatter

logger = logging.getLogger(__name__)

MEMORY_FILE = "MEMORY.md"
HEARTBEAT_FILE = "HEARTBEAT.md"
DAILY_DIR = "memory"
VERSIONS_DIR = ".versions"

_INITIAL_MEMORY = "# Memory\n\n## Preferences\n\n## Long-term goals\n\n## Current focus\n"
_INITIAL_HEARTBEAT = (
    "# Heartbeat tasks\n\n"
    "<!-- One task per line: '- [ ] pending', '- [x] done', '- [!] failed' -->\n"
)


def strip_frontmatter(text: str) -> str:
    """Return the markdown body without a leading YAML frontmatter block."""
    try:
        return frontmatter.loads(text).content
    except Exception:
        return text


class MemoryStore:
    """Read/write access to the markdown corpus."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._write_lock = threading.Lock()
        self._ensure_initialized()

    def _ensure_initialized(self) -> None:
        """Ensure base directories and files exist. Idempotent."""
        (self.root / DAILY_DIR).mkdir(parents=True, exist_ok=True)
        (self.root / VERSIONS_DIR).mkdir(parents=True, exist_ok=True)
        if not self.memory_file.exists():
            self.memory_file.write_text(_INITIAL_MEMORY, encoding="utf-8")
        if not self.heartbeat_file.exists():
            self.heartbeat_file.write_text(_INITIAL_HEARTBEAT, encoding="utf-8")

    @property
    def memory_file(self) -> Path:
        return self.root / MEMORY_FILE

    @property
    def heartbeat_file(self) -> Path:
        return self.root / HEARTBEAT_FILE

    # ── MEMORY.md ─────────────────────────────────────────────

    def read_memory(self) -> str:
        if self.memory_file.exists():
            return self.memory_file.read_text(encoding="utf-8")
        return ""

    def append_memory(self, entry: str) -> None:
        """Append a line to MEMORY.md, keeping a version backup of the old file."""
        with self._write_lock:
            self._backup(self.memory_file)
            with self.memory_file.open("a", encoding="utf-8") as f:
                f.write(f"\n{entry.rstrip()}\n")
        logger.info("Appended %d chars to MEMORY.md", len(entry))

    # ── HEARTBEAT.md ──────────────────────────────────────────

    def read_heartbeat(self) -> str:
        if self.heartbeat_file.exists():
            return self.heartbeat_file.read_text(encoding="utf-8")
        return ""

    def write_heartbeat(self, content: str) -> None:
        with self._write_lock:
            self.heartbeat_file.write_text(content, encoding="utf-8")

    # ── Daily logs ────────────────────────────────────────────

    def daily_path(self, day: str | None = None) -> Path:
        d = day or date.today().isoformat()
        return self.root / DAILY_DIR / f"{d}.md"

    def read_daily(self, day: str | None = None) -> str:
        path = self.daily_path(day)
        if path.exists():
            return path.read_text(encoding="utf-8")
        return ""

    def append_daily(self, entry: str, day: str | None = None) -> Path:
        """Append a timestamped bullet to the daily log, creating it if needed."""
        path = self.daily_path(day)
        timestamp = datetime.now().strftime("%H:%M")
        with self._write_lock:
            self._ensure_daily(path)
            with path.open("a", encoding="utf-8") as f:
                f.write(f"- [{timestamp}] {entry.rstrip()}\n")
        return path

    def append_flush(self, summary: str, label: str = "Session flush") -> Path:
        """Append a compaction summary as its own section of today's log."""
        path = self.daily_path()
        timestamp = datetime.now().strftime("%H:%M")
        with self._write_lock:
            self._ensure_daily(path)
            with path.open("a", encoding="utf-8") as f:
                f.write(f"\n## {label} ({timestamp})\n\n{summary.strip()}\n\n")
        logger.info("Flushed %d chars of session summary to %s", len(summary), path.name)
        return path

    def _ensure_daily(self, path: Path) -> None:
        if path.exists() and path.stat().st_size > 0:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        post = frontmatter.Post(f"# {path.stem}\n", date=path.stem, kind="daily")
        path.write_text(frontmatter.dumps(post) + "\n\n", encoding="utf-8")

    def recent_dailies(self, count: int) -> list[tuple[str, str]]:
        """The ``count`` most recent daily logs as (day, body) pairs, newest first."""
        if count <= 0:
            return []
        daily_dir = self.root / DAILY_DIR
        days = []
        for path in daily_dir.glob("*.md"):
            try:
                datetime.strptime(path.stem, "%Y-%m-%d")
            except ValueError:
                continue
            days.append(path)
        days.sort(key=lambda p: p.stem, reverse=True)
        return [
            (path.stem, strip_frontmatter(path.read_text(encoding="utf-8")))
            for path in days[:count]
        ]

    # ── Version backups ───────────────────────────────────────

    def _backup(self, path: Path) -> None:
        """Backup to .versions/, keep at most 10 versions per file."""
        if not path.exists():
            return
        versions_dir = self.root / VERSIONS_DIR
        versions_dir.mkdir(exist_ok=True)
        ts = datetime.now().strftime("%Y%m%dT%H%M%S%f")
        (versions_dir / f"{path.stem}-{ts}.md").write_text(
            path.read_text(encoding="utf-8"), encoding="utf-8"
        )
        old = sorted(versions_dir.glob(f"{path.stem}-*.md"))
        for f in old[:-10]:
            f.unlink()
