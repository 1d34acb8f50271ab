"""Anthropic API provider: plain conversation, no tool use."""

from __future__ import annotations

import asyncio
import logging
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


def to_anthropic_messages(messages: list[Message]) -> list[dict]:
    """Map turns onto the user/assistant roles the Messages API accepts."""
    converted = []
    for m in messages:
        if m.role == "assistant":
            converted.append({"role": "assistant", "content": m.content})
        elif m.role == "tool":
            converted.append({"role": "user", "content": f"[tool result]\n{m.content}"})
        else:
            converted.append({"role": "user", "content": m.content})
    return converted


@dataclass
class AnthropicAPIProvider:
    """Direct Anthropic API via the `anthropic` SDK."""

    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 4096
    timeout: int = 120

    def __post_init__(self) -> None:
        try:
            import anthropic

            self._anthropic = anthropic
            self._client = anthropic.Anthropic(timeout=self.timeout, max_retries=0)
        except ImportError:
            raise ImportError(
                "anthropic package required. Install with: uv pip install 'mnemo[api]'"
            )

    @property
    def name(self) -> str:
        return "anthropic_api"

    def _classify(self, e: Exception) -> ProviderError:
        anthropic = self._anthropic
        if isinstance(e, anthropic.APITimeoutError):
            kind = "timeout"
        elif isinstance(e, anthropic.APIConnectionError):
            kind = "transport"
        elif isinstance(e, anthropic.RateLimitError):
            kind = "rate_limit"
        elif isinstance(e, (anthropic.AuthenticationError, anthropic.PermissionDeniedError)):
            kind = "auth"
        elif isinstance(e, (anthropic.BadRequestError, anthropic.NotFoundError)):
            kind = "invalid_request"
        else:
            # 5xx and overloaded responses
            kind = "transport"
        return ProviderError(f"Anthropic API error: {e}", kind)

    async def complete(
        self,
        messages: list[Message],
        *,
        options: CompletionOptions | None = None,
    ) -> Completion:
        options = options or CompletionOptions()
        system_prompt, turns = split_system(messages)

        kwargs: dict = {
            "model": self.model,
            "max_tokens": options.max_tokens or self.max_tokens,
            "messages": to_anthropic_messages(turns),
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature

        try:
            response = await asyncio.to_thread(self._client.messages.create, **kwargs)
        except self._anthropic.APIError as e:
            logger.error("Anthropic API error: %s", e)
            raise self._classify(e) from e

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = None
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )
        return Completion(content=text, token_usage=usage, model=response.model)

    async def health_check(self) -> bool:
        try:
            response = await asyncio.to_thread(
                self._client.messages.create,
                model=self.model,
                max_tokens=10,
                messages=[{"role": "user", "content": "ping"}],
            )
            return bool(response.content)
        except self._anthropic.APIError:
            return False
