"""Local CLI REPL connector."""

from __future__ import annotations

import asyncio
import logging
import sys
from typing import TYPE_CHECKING

from mnemo.connectors.base import IncomingMessage
from mnemo.errors import ProviderError

if TYPE_CHECKING:
    from mnemo.connectors.base import MessageHandler
    from mnemo.session import TurnResult

logger = logging.getLogger(__name__)

_CLI_CHAT_ID = "cli"
_CLI_SENDER = "user"


class CLIConnector:
    """Interactive REPL connector on stdin/stdout."""

    def __init__(self) -> None:
        self._running = False

    @property
    def name(self) -> str:
        return "cli"

    async def start(self, handler: MessageHandler) -> None:
        self._running = True
        loop = asyncio.get_running_loop()

        print("mnemo (type 'exit' or Ctrl+C to quit, /help for commands)")
        print("-" * 40)

        while self._running:
            try:
                line = await loop.run_in_executor(None, self._read_input)
            except (EOFError, KeyboardInterrupt):
                print("\nBye!")
                break

            if line is None or line.strip().lower() in ("exit", "quit"):
                print("Bye!")
                break

            text = line.strip()
            if not text:
                continue

            msg = IncomingMessage(
                text=text,
                chat_id=_CLI_CHAT_ID,
                sender=_CLI_SENDER,
                connector_name=self.name,
            )

            try:
                response = await handler(msg)
            except ProviderError as e:
                print(f"\n[error] {e}", file=sys.stderr)
                continue
            await self.reply(_CLI_CHAT_ID, response)

    def _read_input(self) -> str | None:
        try:
            sys.stdout.write("\nYou: ")
            sys.stdout.flush()
            raw = sys.stdin.buffer.readline()
            if not raw:
                return None
            return raw.decode("utf-8", errors="replace").rstrip("\n")
        except EOFError:
            return None

    async def stop(self) -> None:
        self._running = False

    async def reply(self, chat_id: str, response: TurnResult) -> None:
        print(f"\nmnemo: {response.content}")
        if response.degraded:
            print(
                "  [degraded] Earlier turns were dropped without a summary; "
                "re-state anything the conversation still needs.",
                file=sys.stderr,
            )
        for warning in response.warnings:
            print(f"  [warning] {warning}", file=sys.stderr)
        status = format_status(response)
        if status:
            print(f"  [{status}]", file=sys.stderr)


def format_status(response: TurnResult) -> str:
    """One-line footer: token usage, context fill and whether compaction ran."""
    parts = []
    if response.token_usage is not None:
        usage = response.token_usage
        parts.append(f"input: {usage.input_tokens} tokens")
        parts.append(f"output: {usage.output_tokens} tokens")
    if response.context_tokens is not None and response.context_budget:
        percent = 100 * response.context_tokens // response.context_budget
        parts.append(f"context: {response.context_tokens}/{response.context_budget} ({percent}%)")
    if response.compacted:
        parts.append("compacted")
    return " | ".join(parts)
