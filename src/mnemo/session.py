"""Session context manager.

A Session holds the ordered turns of one conversation and keeps them inside
a fixed token budget::

    sum(turn tokens) + reserve_tokens <= context_window

When an appended turn breaks the budget the session compacts: the older
turns are summarized by the provider, the summary is flushed to today's
daily log (where the watcher picks it up for indexing), and the history is
cut down to a synthetic summary turn plus the newest turns. If
summarization fails twice the session hard-truncates instead and is marked
degraded.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal

from mnemo.errors import CompactionError, ConfigError, IndexStoreError, ProviderError
from mnemo.memory.store import strip_frontmatter
from mnemo.memory.tokens import estimate_tokens, truncate_to_tokens
from mnemo.providers.base import Completion, CompletionOptions, Message, TokenUsage

if TYPE_CHECKING:
    from mnemo.config import MnemoConfig
    from mnemo.memory.index import IndexStore, SearchResult
    from mnemo.memory.store import MemoryStore
    from mnemo.providers.base import Provider

logger = logging.getLogger(__name__)

TurnRole = Literal["user", "assistant", "tool"]

SYSTEM_PROMPT = """\
You are mnemo, a local-first personal assistant with a persistent markdown memory.

Memory context is injected below inside <context> tags: the curated MEMORY.md,
the most recent daily logs, the pending task list (HEARTBEAT.md) and notes
retrieved from the knowledge base for the current message. Treat it as what
you remember. Earlier parts of long conversations may appear as a summary turn.
"""

FLUSH_PROMPT = """\
The conversation turns below are about to be removed from your working context.
Extract the durable facts worth keeping: decisions, preferences, commitments,
names, dates, open questions and results of completed work. Write them as
concise markdown bullet points. Do not restate small talk.
If nothing is worth keeping, reply with exactly: SKIP
"""

_SECTION_SEPARATOR = "\n\n---\n\n"


class SessionState(str, Enum):
    ACTIVE = "active"
    COMPACTING = "compacting"


@dataclass
class Turn:
    role: TurnRole
    content: str
    approx_token_count: int | None = None
    timestamp: datetime = field(default_factory=datetime.now)
    synthetic: bool = False

    def __post_init__(self) -> None:
        if self.approx_token_count is None:
            self.approx_token_count = estimate_tokens(self.content)


@dataclass
class CompactionReport:
    dropped: int
    kept: int
    summary: str | None = None
    degraded: bool = False
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class TurnResult:
    content: str
    warnings: list[str] = field(default_factory=list)
    degraded: bool = False
    token_usage: TokenUsage | None = None
    compacted: bool = False
    context_tokens: int | None = None
    context_budget: int | None = None


def render_turns(turns: list[Turn]) -> str:
    return "\n\n".join(f"[{t.role}] {t.content}" for t in turns)


class Session:
    """One conversation's turns, token budget and compaction."""

    def __init__(
        self,
        provider: Provider,
        *,
        context_window: int,
        reserve_tokens: int,
        memory: MemoryStore | None = None,
        index: IndexStore | None = None,
        fallback: Provider | None = None,
        top_k: int = 6,
        context_fraction: float = 0.25,
        recent_daily_logs: int = 2,
        compaction_timeout: float = 60.0,
        summary_tokens: int = 512,
        retry_backoff: float = 1.0,
        max_tokens: int | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> None:
        if reserve_tokens >= context_window:
            raise ConfigError("reserve_tokens must be smaller than context_window")
        self.provider = provider
        self.fallback = fallback
        self.memory = memory
        self.index = index
        self.context_window = context_window
        self.reserve_tokens = reserve_tokens
        self.top_k = top_k
        self.context_fraction = context_fraction
        self.recent_daily_logs = recent_daily_logs
        self.compaction_timeout = compaction_timeout
        self.summary_tokens = summary_tokens
        self.retry_backoff = retry_backoff
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

        self.turns: list[Turn] = []
        self.state = SessionState.ACTIVE
        self.degraded = False
        self.compactions: list[CompactionReport] = []
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: MnemoConfig,
        provider: Provider,
        *,
        memory: MemoryStore | None = None,
        index: IndexStore | None = None,
        fallback: Provider | None = None,
        system_prompt: str = SYSTEM_PROMPT,
    ) -> Session:
        agent = config.agent
        return cls(
            provider,
            context_window=agent.context_window,
            reserve_tokens=agent.reserve_tokens,
            memory=memory,
            index=index,
            fallback=fallback,
            top_k=agent.top_k,
            context_fraction=agent.context_fraction,
            recent_daily_logs=agent.recent_daily_logs,
            compaction_timeout=agent.compaction_timeout,
            max_tokens=agent.max_tokens,
            system_prompt=system_prompt,
        )

    # ── Budget ────────────────────────────────────────────────

    @property
    def budget(self) -> int:
        """Tokens available to turns."""
        return self.context_window - self.reserve_tokens

    @property
    def used_tokens(self) -> int:
        return sum(t.approx_token_count for t in self.turns)

    def within_budget(self) -> bool:
        return self.used_tokens + self.reserve_tokens <= self.context_window

    def clear_degraded(self) -> None:
        self.degraded = False

    # ── Turns & compaction ────────────────────────────────────

    @property
    def summary_room(self) -> int:
        """Tokens set aside for the summary turn when choosing what to keep."""
        return min(self.summary_tokens, self.budget // 4)

    async def add_turn(self, turn: Turn) -> CompactionReport | None:
        """Append a turn, compacting first-thing afterwards if the budget is exceeded."""
        async with self._lock:
            self.turns.append(turn)
            if self.within_budget():
                return None
            return await self._compact(self.budget - self.summary_room)

    async def compact(self) -> CompactionReport:
        """Compact now, regardless of the budget: everything but the newest turn."""
        async with self._lock:
            return await self._compact(0)

    async def _compact(self, keep_tokens: int) -> CompactionReport:
        self.state = SessionState.COMPACTING
        try:
            kept, dropped = self._split_for_compaction(keep_tokens)
            logger.info(
                "Compacting session: dropping %d turns (%d tokens), keeping %d",
                len(dropped),
                sum(t.approx_token_count for t in dropped),
                len(kept),
            )
            report = CompactionReport(dropped=len(dropped), kept=len(kept))
            if not dropped:
                self.turns = kept
                self._enforce_budget(report)
                return self._record(report)

            try:
                summary = await self._summarize(dropped)
            except CompactionError as e:
                logger.warning("Compaction degraded, hard-truncating: %s", e)
                self.degraded = True
                report.degraded = True
                report.error = str(e)
                report.warnings.append(
                    f"Context compaction degraded: {len(dropped)} earlier turns were dropped "
                    "without a summary. Review today's daily log and re-state anything important."
                )
                self.turns = kept
                self._enforce_budget(report)
                return self._record(report)

            report.summary = summary
            self._flush(summary, report)
            kept_tokens = sum(t.approx_token_count for t in kept)
            self.turns = [self._summary_turn(summary, len(dropped), kept_tokens)] + kept
            self._enforce_budget(report)
            return self._record(report)
        finally:
            self.state = SessionState.ACTIVE

    def _record(self, report: CompactionReport) -> CompactionReport:
        report.kept = len(self.turns)
        self.compactions.append(report)
        return report

    def _split_for_compaction(self, target: int) -> tuple[list[Turn], list[Turn]]:
        """Keep the newest turns whose tokens fit in ``target``."""
        kept: list[Turn] = []
        total = 0
        for turn in reversed(self.turns):
            if total + turn.approx_token_count > target:
                break
            kept.append(turn)
            total += turn.approx_token_count
        kept.reverse()
        if not kept and self.turns:
            # The newest turn alone is over target; keep it, _enforce_budget trims it
            kept = [self.turns[-1]]
        dropped = self.turns[: len(self.turns) - len(kept)]
        return kept, dropped

    def _summary_turn(self, summary: str, dropped: int, kept_tokens: int) -> Turn:
        if summary.strip().upper() == "SKIP":
            content = f"[{dropped} earlier turns were compacted; nothing durable to keep.]"
        else:
            header = f"[Summary of {dropped} earlier turns]\n"
            # The summary gets whatever the kept turns leave, at most a quarter of the budget
            room = min(self.budget // 4, self.budget - kept_tokens - estimate_tokens(header))
            content = header + truncate_to_tokens(summary.strip(), room)
        return Turn(role="assistant", content=content, synthetic=True)

    def _enforce_budget(self, report: CompactionReport) -> None:
        """Drop oldest non-summary turns, then trim the last one, until the budget holds."""
        while not self.within_budget() and len(self.turns) > 1:
            if self.turns[0].synthetic and len(self.turns) > 2:
                self.turns.pop(1)
            else:
                self.turns.pop(0)
        if not self.within_budget() and self.turns:
            turn = self.turns[-1]
            turn.content = truncate_to_tokens(turn.content, self.budget)
            turn.approx_token_count = estimate_tokens(turn.content)
            report.warnings.append("The latest turn was truncated to fit the context window.")

    async def _summarize(self, dropped: list[Turn]) -> str:
        """Ask the provider for a flush summary. One retry, bounded by a timeout."""
        messages = [
            Message("system", FLUSH_PROMPT),
            Message("user", render_turns(dropped)),
        ]
        options = CompletionOptions(max_tokens=max(64, self.summary_room))
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                completion = await asyncio.wait_for(
                    self.provider.complete(messages, options=options),
                    timeout=self.compaction_timeout,
                )
            except asyncio.TimeoutError:
                last_error = TimeoutError(f"summarization timed out after {self.compaction_timeout}s")
            except ProviderError as e:
                last_error = e
            else:
                if completion.content.strip():
                    return completion.content
                last_error = CompactionError("empty summary")
            logger.warning("Summarization attempt %d failed: %s", attempt, last_error)
        raise CompactionError(f"summarization failed twice: {last_error}")

    def _flush(self, summary: str, report: CompactionReport) -> None:
        if self.memory is None or summary.strip().upper() == "SKIP":
            return
        try:
            self.memory.append_flush(summary)
        except OSError as e:
            logger.error("Failed to flush compaction summary: %s", e)
            report.warnings.append(f"Compaction summary could not be written to the daily log: {e}")

    # ── Retrieved context ─────────────────────────────────────

    @property
    def context_budget(self) -> int:
        """Tokens retrieved material may use right now."""
        remaining = self.budget - self.used_tokens
        return max(0, min(int(self.context_window * self.context_fraction), remaining))

    async def build_context(self, query: str, max_tokens: int | None = None) -> str:
        """Assemble MEMORY.md, recent daily logs, HEARTBEAT.md and search hits.

        Sections are added in that order and the first one that overflows
        the budget is truncated; nothing after it is included.
        """
        limit = self.context_budget if max_tokens is None else max_tokens
        sections: list[str] = []
        included: set[str] = set()

        if self.memory is not None:
            memory = strip_frontmatter(self.memory.read_memory()).strip()
            if memory:
                sections.append(f"# MEMORY.md\n{memory}")
                included.add("MEMORY.md")
            for day, body in self.memory.recent_dailies(self.recent_daily_logs):
                if body.strip():
                    sections.append(f"# Daily log {day}\n{body.strip()}")
                    included.add(f"memory/{day}.md")
            heartbeat = strip_frontmatter(self.memory.read_heartbeat()).strip()
            if heartbeat:
                sections.append(f"# HEARTBEAT.md\n{heartbeat}")
                included.add("HEARTBEAT.md")

        hits = await self._search(query)
        hits = [h for h in hits if h.source_path not in included]
        if hits:
            body = "\n\n".join(
                f"## {h.source_path} (lines {h.line_start}-{h.line_end})\n{h.text}" for h in hits
            )
            sections.append(f"# Relevant notes\n{body}")

        return self._fit_sections(sections, limit)

    async def _search(self, query: str) -> list[SearchResult]:
        if self.index is None or not query.strip() or self.top_k <= 0:
            return []
        try:
            return await asyncio.to_thread(self.index.search, query, self.top_k)
        except IndexStoreError as e:
            logger.warning("Context retrieval skipped: %s", e)
            return []

    @staticmethod
    def _fit_sections(sections: list[str], limit: int) -> str:
        parts: list[str] = []
        used = 0
        for section in sections:
            cost = estimate_tokens(section) + estimate_tokens(_SECTION_SEPARATOR)
            if used + cost <= limit:
                parts.append(section)
                used += cost
                continue
            room = limit - used - estimate_tokens(_SECTION_SEPARATOR)
            if room > 16:
                parts.append(truncate_to_tokens(section, room))
            break
        return _SECTION_SEPARATOR.join(parts)

    # ── Running a turn ────────────────────────────────────────

    async def run(self, text: str) -> TurnResult:
        """Add a user turn, call the provider with injected context, record the reply."""
        warnings: list[str] = []
        compactions = len(self.compactions)

        report = await self.add_turn(Turn(role="user", content=text))
        if report:
            warnings.extend(report.warnings)

        context = await self.build_context(text)
        system = self.system_prompt
        if context:
            system = f"{system}\n<context>\n{context}\n</context>"
        messages = [Message("system", system)] + [Message(t.role, t.content) for t in self.turns]

        completion = await self._complete(messages)

        report = await self.add_turn(Turn(role="assistant", content=completion.content))
        if report:
            warnings.extend(report.warnings)

        return TurnResult(
            content=completion.content,
            warnings=warnings,
            degraded=self.degraded,
            token_usage=completion.token_usage,
            compacted=len(self.compactions) > compactions,
            context_tokens=self.used_tokens,
            context_budget=self.budget,
        )

    async def _complete(self, messages: list[Message]) -> Completion:
        """Primary provider with one retry for retryable errors, then the fallback."""
        options = CompletionOptions(max_tokens=self.max_tokens)
        try:
            return await self._complete_with_retry(self.provider, messages, options)
        except ProviderError:
            if self.fallback is None:
                raise
        logger.info("Falling back to provider %s", self.fallback.name)
        return await self._complete_with_retry(self.fallback, messages, options)

    async def _complete_with_retry(
        self, provider: Provider, messages: list[Message], options: CompletionOptions
    ) -> Completion:
        try:
            return await provider.complete(messages, options=options)
        except ProviderError as e:
            if not e.retryable:
                logger.error("Provider %s failed: %s", provider.name, e)
                raise
            logger.warning("Provider %s failed (%s), retrying", provider.name, e)
        await asyncio.sleep(self.retry_backoff)
        try:
            return await provider.complete(messages, options=options)
        except ProviderError as e:
            logger.error("Provider %s failed again: %s", provider.name, e)
            raise
