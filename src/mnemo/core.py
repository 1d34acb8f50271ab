"""mnemo orchestrator: the hub between connectors, sessions and the memory corpus.

Responsibilities:
1. Receive messages from any connector (IncomingMessage)
2. Lane queue: serialize per chat_id so one conversation never interleaves
3. Session management: chat_id → Session (token budget, compaction)
4. Own the workspace, the index and the corpus indexer shared by every session
5. Provider routing: primary model plus optional fallback
6. Session factory for the heartbeat scheduler
7. Chat commands (/new, /compact, /remember) and provider health checks
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from mnemo.config import MnemoConfig
from mnemo.connectors.base import IncomingMessage
from mnemo.memory.index import IndexStore
from mnemo.memory.store import MemoryStore
from mnemo.memory.watcher import CorpusIndexer
from mnemo.providers import build_provider
from mnemo.session import SYSTEM_PROMPT, Session, TurnResult

if TYPE_CHECKING:
    from mnemo.connectors.base import Connector
    from mnemo.providers.base import Provider

logger = logging.getLogger(__name__)

# Chat commands handled by the hub instead of the model
COMMANDS = {
    "/new": "Start a fresh conversation",
    "/compact": "Summarize the conversation so far into today's daily log",
    "/remember": "Append a line to MEMORY.md: /remember <text>",
    "/help": "List these commands",
}


class Mnemo:
    """Core orchestrator: routes messages between connectors and sessions."""

    def __init__(
        self,
        config: MnemoConfig,
        provider: Provider | None = None,
        fallback: Provider | None = None,
    ) -> None:
        self.config = config
        self.memory = MemoryStore(config.memory.workspace)
        self.index = IndexStore(config.memory.db_path)
        self.indexer = CorpusIndexer(
            config.memory.workspace,
            self.index,
            chunk_size=config.memory.chunk_size,
            chunk_overlap=config.memory.chunk_overlap,
        )
        self.provider = provider or build_provider(config)
        self.fallback = fallback
        if self.fallback is None and config.agent.fallback:
            self.fallback = build_provider(config, config.agent.fallback)
        self._connectors: list[Connector] = []
        self._sessions: dict[str, Session] = {}
        self._lane_locks: dict[str, asyncio.Lock] = {}  # per-chat serialization

    # ── Sessions ─────────────────────────────────────────────

    def new_session(self, system_prompt: str = SYSTEM_PROMPT) -> Session:
        """A fresh session wired to this hub's workspace, index and providers."""
        return Session.from_config(
            self.config,
            self.provider,
            memory=self.memory,
            index=self.index,
            fallback=self.fallback,
            system_prompt=system_prompt,
        )

    def session_for(self, chat_id: str) -> Session:
        session = self._sessions.get(chat_id)
        if session is None:
            session = self._sessions[chat_id] = self.new_session()
            logger.debug("New session for chat %s", chat_id)
        return session

    def reset_session(self, chat_id: str) -> None:
        self._sessions.pop(chat_id, None)

    # ── Connector management ─────────────────────────────────

    def add_connector(self, connector: Connector) -> None:
        self._connectors.append(connector)
        logger.info("Registered connector: %s", connector.name)

    # ── Lane Queue (per-chat serialization) ──────────────────

    def _get_lane_lock(self, chat_id: str) -> asyncio.Lock:
        if chat_id not in self._lane_locks:
            self._lane_locks[chat_id] = asyncio.Lock()
        return self._lane_locks[chat_id]

    # ── Message handling ─────────────────────────────────────

    async def handle_message(self, msg: IncomingMessage) -> TurnResult:
        """Process an incoming message; the entry point for all connectors."""
        async with self._get_lane_lock(msg.chat_id):
            command, _, arg = msg.text.strip().partition(" ")
            if command in COMMANDS:
                return await self._handle_command(msg.chat_id, command, arg.strip())

            session = self.session_for(msg.chat_id)
            result = await session.run(msg.text)
            for warning in result.warnings:
                logger.warning("[%s] %s", msg.chat_id, warning)
            if result.degraded:
                # Surfaced once per compaction failure
                session.clear_degraded()
            return result

    async def _handle_command(self, chat_id: str, command: str, arg: str) -> TurnResult:
        if command == "/new":
            self.reset_session(chat_id)
            return TurnResult(content="Started a new conversation.")

        if command == "/compact":
            session = self.session_for(chat_id)
            if len(session.turns) < 2:
                return TurnResult(content="Nothing to compact yet.")
            report = await session.compact()
            session.clear_degraded()
            return TurnResult(
                content=f"Compacted {report.dropped} turns into a summary.",
                warnings=report.warnings,
                degraded=report.degraded,
                compacted=True,
                context_tokens=session.used_tokens,
                context_budget=session.budget,
            )

        if command == "/remember":
            if not arg:
                return TurnResult(content="Usage: /remember <text>")
            await asyncio.to_thread(self.memory.append_memory, f"- {arg}")
            return TurnResult(content="Saved to MEMORY.md.")

        lines = [f"{name:<12} {text}" for name, text in COMMANDS.items()]
        return TurnResult(content="\n".join(lines))

    async def check_providers(self) -> dict[str, bool]:
        """Health-check the primary and fallback providers."""
        results: dict[str, bool] = {}
        for provider in (self.provider, self.fallback):
            if provider is None:
                continue
            try:
                healthy = await provider.health_check()
            except Exception as e:
                logger.error("Provider %s health check error: %s", provider.name, e)
                healthy = False
            if not healthy:
                logger.warning("Provider %s health check failed", provider.name)
            results[provider.name] = healthy
        return results

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> None:
        """Start all connectors (each listens for messages)."""
        tasks = [connector.start(self.handle_message) for connector in self._connectors]
        if tasks:
            await asyncio.gather(*tasks)

    async def stop(self) -> None:
        """Stop connectors, close providers that hold resources, close the index."""
        for connector in self._connectors:
            await connector.stop()

        for provider in (self.provider, self.fallback):
            close = getattr(provider, "close", None)
            if close and callable(close):
                await close()

        self.index.close()
