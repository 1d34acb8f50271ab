"""Heartbeat scheduler using pure asyncio.

Every ``interval`` the scheduler wakes, checks the active-hours policy and,
when eligible, runs each pending task in HEARTBEAT.md through its own
session. Task status is rewritten in place and a line per task goes to the
daily log. Ticks never overlap: a batch that overruns defers the next tick
until it finishes, and missed ticks are not caught up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from mnemo.errors import ConfigError, SchedulerTaskError
from mnemo.scheduler.tasks import HeartbeatTask, TaskStatus, parse_tasks, set_task_status
from mnemo.session import SYSTEM_PROMPT

if TYPE_CHECKING:
    from mnemo.memory.store import MemoryStore
    from mnemo.session import Session

logger = logging.getLogger(__name__)

FAILURE_MARKER = "TASK FAILED"

HEARTBEAT_PROMPT = (
    SYSTEM_PROMPT
    + f"""
You are running unattended from the heartbeat scheduler. Carry out the task
you are given using what you know, and reply with the result. If the task
cannot be completed, reply with a single line starting with "{FAILURE_MARKER}:"
followed by the reason.
"""
)

SessionFactory = Callable[..., "Session"]


@dataclass(frozen=True)
class ActiveHours:
    """Daily window ``[start, end)``; wraps past midnight when start > end."""

    start: time
    end: time

    @classmethod
    def parse(cls, start: str, end: str) -> ActiveHours:
        try:
            parsed_start = datetime.strptime(start.strip(), "%H:%M").time()
            parsed_end = datetime.strptime(end.strip(), "%H:%M").time()
        except ValueError as e:
            raise ConfigError(f"Invalid active hours {start!r}-{end!r}: expected HH:MM") from e
        if parsed_start == parsed_end:
            raise ConfigError("Active hours start and end must differ")
        return cls(parsed_start, parsed_end)

    def contains(self, moment: time) -> bool:
        moment = moment.replace(second=0, microsecond=0)
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end


class SchedulerState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class TickReport:
    started_at: datetime
    ran: bool = False
    skipped_reason: str | None = None
    done: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


class Heartbeat:
    """Interval loop gated by active hours, executing HEARTBEAT.md tasks."""

    def __init__(
        self,
        memory: MemoryStore,
        session_factory: SessionFactory,
        interval: float,
        active_hours: ActiveHours | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if interval <= 0:
            raise ConfigError("heartbeat interval must be positive")
        self.memory = memory
        self.session_factory = session_factory
        self.interval = timedelta(seconds=interval)
        self.active_hours = active_hours
        self._clock = clock
        self._tick_lock = asyncio.Lock()
        self.state = SchedulerState.IDLE
        self.next_tick_time: datetime | None = None
        self.last_report: TickReport | None = None

    # ── Loop ──────────────────────────────────────────────────

    async def start(self, shutdown_event: asyncio.Event) -> None:
        """Run ticks until shutdown_event is set. Shutdown interrupts the wait at once."""
        logger.info(
            "Heartbeat started (interval=%ds, active hours=%s)",
            self.interval.total_seconds(),
            f"{self.active_hours.start:%H:%M}-{self.active_hours.end:%H:%M}"
            if self.active_hours
            else "always",
        )
        self.next_tick_time = self._clock() + self.interval

        while not shutdown_event.is_set():
            self.state = SchedulerState.WAITING
            delay = max(0.0, (self.next_tick_time - self._clock()).total_seconds())
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=delay)
                break  # shutdown requested
            except asyncio.TimeoutError:
                pass  # interval elapsed

            try:
                await self.tick()
            except Exception:
                logger.exception("Heartbeat tick failed")
            self.next_tick_time = self._schedule_after(self.next_tick_time)

        self.state = SchedulerState.STOPPED
        logger.info("Heartbeat stopped.")

    def _schedule_after(self, previous: datetime) -> datetime:
        """Next fire time; a batch that overran fires once right away, no catch-up."""
        return max(previous + self.interval, self._clock())

    # ── Tick ──────────────────────────────────────────────────

    async def tick(self, now: datetime | None = None, force: bool = False) -> TickReport:
        """Run one batch. ``force`` ignores active hours (manual runs)."""
        async with self._tick_lock:
            now = now or self._clock()
            report = TickReport(started_at=now)
            self.last_report = report

            if not force and self.active_hours and not self.active_hours.contains(now.time()):
                report.skipped_reason = "outside active hours"
                logger.info("Heartbeat tick at %s skipped: outside active hours", f"{now:%H:%M}")
                return report

            task_file = parse_tasks(await asyncio.to_thread(self.memory.read_heartbeat))
            if task_file.paused:
                report.skipped_reason = "paused"
                logger.info("Heartbeat tick skipped: HEARTBEAT.md is paused")
                return report

            pending = task_file.pending
            report.ran = True
            if not pending:
                logger.debug("Heartbeat tick: no pending tasks")
                return report

            previous_state, self.state = self.state, SchedulerState.RUNNING
            logger.info("Heartbeat tick: %d pending task(s)", len(pending))
            try:
                for task in pending:
                    await self._execute(task, report)
            finally:
                self.state = previous_state
            return report

    async def _execute(self, task: HeartbeatTask, report: TickReport) -> None:
        try:
            result = await self._run_task(task)
        except SchedulerTaskError as e:
            logger.error("Heartbeat task failed: %s", e)
            report.failed[task.description] = str(e)
            await self._finish(task, TaskStatus.FAILED, f"Failed: {task.description} ({e})")
            return

        report.done.append(task.description)
        summary = result.content.strip().splitlines()[0] if result.content.strip() else ""
        note = f"Done: {task.description}"
        if summary:
            note += f" :: {summary[:200]}"
        for warning in result.warnings:
            report.warnings.append(f"{task.description}: {warning}")
            note += f" (warning: {warning})"
        await self._finish(task, TaskStatus.DONE, note)

    async def _run_task(self, task: HeartbeatTask):
        session = self.session_factory(system_prompt=HEARTBEAT_PROMPT)
        try:
            result = await session.run(task.description)
        except Exception as e:
            raise SchedulerTaskError(task.description, str(e)) from e
        if result.content.strip().upper().startswith(FAILURE_MARKER):
            reason = result.content.strip()[len(FAILURE_MARKER) :].lstrip(": ").strip()
            raise SchedulerTaskError(task.description, reason or "reported failure")
        return result

    async def _finish(self, task: HeartbeatTask, status: TaskStatus, note: str) -> None:
        def write() -> None:
            text = self.memory.read_heartbeat()
            updated = set_task_status(text, task, status)
            if updated is None:
                logger.warning("Task line vanished from HEARTBEAT.md: %s", task.raw_text)
            else:
                self.memory.write_heartbeat(updated)
            self.memory.append_daily(f"[heartbeat] {note}")

        try:
            await asyncio.to_thread(write)
        except OSError as e:
            logger.error("Failed to record status for %s: %s", task.description, e)
