"""Daemon process: always-on mode.

Usage: mnemo serve

Manages:
- Corpus watcher (incremental index updates)
- Heartbeat scheduler (HEARTBEAT.md tasks within active hours)
- Connector lifecycle
- PID file (prevent duplicate instances)
- Graceful shutdown (SIGTERM/SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

from mnemo.config import MnemoConfig, load_config
from mnemo.core import Mnemo
from mnemo.memory.watcher import CorpusWatcher
from mnemo.scheduler.heartbeat import ActiveHours, Heartbeat

logger = logging.getLogger(__name__)


class MnemoDaemon:
    """Always-on daemon process."""

    def __init__(self, config: MnemoConfig | None = None) -> None:
        self.config = config or load_config()
        self._shutdown_event = asyncio.Event()

    # ── PID file management ──────────────────────────────────

    def _write_pid(self) -> None:
        self.config.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_file.write_text(str(os.getpid()))
        logger.info("PID file written: %s (pid=%d)", self.config.pid_file, os.getpid())

    def _remove_pid(self) -> None:
        if self.config.pid_file.exists():
            self.config.pid_file.unlink()

    def _check_existing(self) -> None:
        if not self.config.pid_file.exists():
            return
        try:
            pid = int(self.config.pid_file.read_text().strip())
            os.kill(pid, 0)  # Check if process exists
            print(f"mnemo daemon already running (pid={pid}). Exiting.", file=sys.stderr)
            sys.exit(1)
        except (ProcessLookupError, ValueError):
            # Stale PID file
            self._remove_pid()

    # ── Signal handling ──────────────────────────────────────

    def _setup_signals(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._handle_signal, sig)

    def _handle_signal(self, sig: signal.Signals) -> None:
        logger.info("Received %s, shutting down...", sig.name)
        self._shutdown_event.set()

    # ── Build components ─────────────────────────────────────

    def build_watcher(self, mnemo: Mnemo) -> CorpusWatcher:
        return CorpusWatcher(
            mnemo.indexer,
            debounce_seconds=self.config.memory.debounce_seconds,
            max_pending=self.config.memory.max_pending,
        )

    def build_heartbeat(self, mnemo: Mnemo) -> Heartbeat:
        hours = self.config.heartbeat.active_hours
        return Heartbeat(
            mnemo.memory,
            mnemo.new_session,
            interval=self.config.heartbeat.interval,
            active_hours=ActiveHours.parse(hours.start, hours.end) if hours else None,
        )

    # ── Main run loop ────────────────────────────────────────

    async def run(self) -> None:
        self._check_existing()
        self._write_pid()
        self._setup_signals()

        mnemo = Mnemo(self.config)
        watcher = self.build_watcher(mnemo)

        logger.info(
            "mnemo daemon starting (model=%s, workspace=%s)",
            self.config.agent.model,
            self.config.memory.workspace,
        )

        jobs = [mnemo.start()]
        if self.config.heartbeat.enabled:
            jobs.append(self.build_heartbeat(mnemo).start(self._shutdown_event))
        else:
            logger.info("Heartbeat disabled")
        jobs.append(self._shutdown_event.wait())

        try:
            health = await mnemo.check_providers()
            logger.info(
                "Provider health: %s",
                ", ".join(f"{name}={'ok' if ok else 'failing'}" for name, ok in health.items()),
            )
            await asyncio.to_thread(watcher.start)
            await asyncio.gather(*jobs)
        except asyncio.CancelledError:
            pass
        finally:
            await asyncio.to_thread(watcher.stop)
            await mnemo.stop()
            self._remove_pid()
            logger.info("mnemo daemon stopped.")
