"""Provider protocol and shared types for the LLM capability boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol, runtime_checkable

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class Message:
    role: Role
    content: str


@dataclass
class CompletionOptions:
    """Per-call knobs. ``None`` means the provider default."""

    max_tokens: int | None = None
    temperature: float | None = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class Completion:
    """Response from a provider."""

    content: str
    token_usage: TokenUsage | None = None
    model: str | None = None
    metadata: dict = field(default_factory=dict)


@runtime_checkable
class Provider(Protocol):
    """Protocol that all provider backends must implement.

    ``complete`` raises ``mnemo.errors.ProviderError`` on failure, classified
    as retryable (transport, rate limit, timeout) or fatal (auth, invalid
    request).
    """

    @property
    def name(self) -> str: ...

    async def complete(
        self,
        messages: list[Message],
        *,
        options: CompletionOptions | None = None,
    ) -> Completion:
        """Send an ordered message list and return the completion."""
        ...

    async def health_check(self) -> bool:
        """Check if the provider is available. Returns True if healthy."""
        ...


def split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Separate system messages (joined) from the conversational ones."""
    system = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    return ("\n\n".join(system) if system else None), rest
