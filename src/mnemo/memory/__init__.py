"""Knowledge corpus, chunking, index and watcher.

Layout:
    ~/.mnemo/workspace/
    ├── MEMORY.md                      # Curated long-lived knowledge, injected verbatim
    ├── HEARTBEAT.md                   # Task list for the heartbeat scheduler
    ├── memory/
    │   └── 2026-02-18.md              # Daily logs (append-only, compaction flushes land here)
    ├── .versions/                     # Timestamped MEMORY.md backups
    └── .index/memory.sqlite           # FTS5 index derived from the markdown files

Every `*.md` outside dot-directories is chunked and indexed; the watcher keeps
the index in step with edits.
"""
