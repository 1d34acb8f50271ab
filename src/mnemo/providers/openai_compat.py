"""OpenAI-compatible chat completions over HTTP.

Covers the OpenAI API itself and local servers exposing the same endpoint
(Ollama, llama.cpp, LM Studio).
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

import aiohttp

from mnemo.errors import ProviderError
from mnemo.providers.base import Completion, CompletionOptions, Message, TokenUsage

logger = logging.getLogger(__name__)


def classify_status(status: int) -> str:
    if status in (401, 403):
        return "auth"
    if status == 429:
        return "rate_limit"
    if 400 <= status < 500:
        return "invalid_request"
    return "transport"


def to_openai_messages(messages: list[Message]) -> list[dict]:
    converted = []
    for m in messages:
        role = "user" if m.role == "tool" else m.role
        content = f"[tool result]\n{m.content}" if m.role == "tool" else m.content
        converted.append({"role": role, "content": content})
    return converted


@dataclass
class OpenAICompatProvider:
    """`POST {base_url}/chat/completions` via aiohttp."""

    model: str
    base_url: str = "https://api.openai.com/v1"
    api_key_env: str | None = "OPENAI_API_KEY"
    max_tokens: int = 4096
    timeout: int = 120
    label: str = "openai"

    @property
    def name(self) -> str:
        return self.label

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        key = os.getenv(self.api_key_env) if self.api_key_env else None
        if key:
            headers["Authorization"] = f"Bearer {key}"
        return headers

    async def complete(
        self,
        messages: list[Message],
        *,
        options: CompletionOptions | None = None,
    ) -> Completion:
        options = options or CompletionOptions()
        payload: dict = {
            "model": self.model,
            "messages": to_openai_messages(messages),
            "max_tokens": options.max_tokens or self.max_tokens,
        }
        if options.temperature is not None:
            payload["temperature"] = options.temperature

        url = f"{self.base_url.rstrip('/')}/chat/completions"
        try:
            async with aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            ) as session:
                async with session.post(url, json=payload, headers=self._headers()) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        logger.error("%s error (HTTP %d): %s", self.name, resp.status, body[:200])
                        raise ProviderError(
                            f"{self.name} HTTP {resp.status}: {body[:200]}",
                            classify_status(resp.status),
                        )
                    data = await resp.json()
        except asyncio.TimeoutError as e:
            raise ProviderError(f"{self.name} did not respond in time", "timeout") from e
        except aiohttp.ClientError as e:
            raise ProviderError(f"{self.name} transport error: {e}", "transport") from e

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.name} returned an unexpected payload", "transport") from e

        usage = data.get("usage")
        return Completion(
            content=content,
            token_usage=TokenUsage(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
            )
            if usage
            else None,
            model=data.get("model", self.model),
        )

    async def health_check(self) -> bool:
        url = f"{self.base_url.rstrip('/')}/models"
        try:
            async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
                async with session.get(url, headers=self._headers()) as resp:
                    return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False
