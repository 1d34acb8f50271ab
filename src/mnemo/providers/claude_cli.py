"""Claude CLI provider: wraps `claude -p` using a Claude Code subscription."""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from dataclasses import dataclass

from mnemo.errors import ProviderError
from mnemo.providers.base import (
    Completion,
    CompletionOptions,
    Message,
    TokenUsage,
    split_system,
)

logger = logging.getLogger(__name__)

_ROLE_LABELS = {"user": "User", "assistant": "Assistant", "tool": "Tool result"}


def render_transcript(messages: list[Message]) -> str:
    """Flatten a turn history into a single prompt for the one-shot CLI."""
    if len(messages) == 1 and messages[0].role == "user":
        return messages[0].content
    lines = [f"{_ROLE_LABELS.get(m.role, m.role)}: {m.content}" for m in messages]
    lines.append("Assistant:")
    return "\n\n".join(lines)


def _classify_stderr(stderr: str) -> str:
    lowered = stderr.lower()
    if "rate limit" in lowered or "429" in lowered or "overloaded" in lowered:
        return "rate_limit"
    if "login" in lowered or "auth" in lowered or "api key" in lowered:
        return "auth"
    return "transport"


@dataclass
class ClaudeCLIProvider:
    """Subprocess wrapper around `claude -p --output-format json`.

    Uses your Claude Code subscription, no API key needed.
    """

    model: str | None = None
    timeout: int = 300

    @property
    def name(self) -> str:
        return "claude_cli"

    async def complete(
        self,
        messages: list[Message],
        *,
        options: CompletionOptions | None = None,
    ) -> Completion:
        system_prompt, turns = split_system(messages)
        cmd = ["claude", "-p", "--output-format", "json"]
        if self.model:
            cmd.extend(["--model", self.model])
        if system_prompt:
            cmd.extend(["--append-system-prompt", system_prompt])
        cmd.append(render_transcript(turns))

        logger.debug("Running: %s", " ".join(cmd[:4]) + " ...")

        try:
            result = await asyncio.to_thread(
                subprocess.run,
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise ProviderError("Claude CLI did not respond in time", "timeout") from e
        except FileNotFoundError as e:
            raise ProviderError(
                "`claude` CLI not found. Is Claude Code installed?", "invalid_request"
            ) from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            logger.error("claude CLI error (rc=%d): %s", result.returncode, stderr)
            raise ProviderError(
                f"claude CLI failed: {stderr or 'unknown error'}", _classify_stderr(stderr)
            )

        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            # Fallback: treat raw stdout as plain text
            return Completion(content=result.stdout.strip())

        if data.get("is_error"):
            raise ProviderError(f"claude CLI error: {data.get('result', '')}", "transport")

        usage = data.get("usage") or {}
        return Completion(
            content=data.get("result", result.stdout.strip()),
            token_usage=TokenUsage(
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            )
            if usage
            else None,
            model=data.get("model"),
            metadata={"cost_usd": data.get("cost_usd") or data.get("total_cost_usd")},
        )

    async def health_check(self) -> bool:
        try:
            result = await asyncio.to_thread(
                subprocess.run,
                ["claude", "--version"],
                capture_output=True,
                text=True,
                timeout=10,
            )
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False
