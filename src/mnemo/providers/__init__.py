"""LLM providers and model-name based selection."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from mnemo.errors import ConfigError
from mnemo.providers.base import Completion, CompletionOptions, Message, Provider, TokenUsage

if TYPE_CHECKING:
    from mnemo.config import MnemoConfig

ProviderKind = Literal["claude_cli", "anthropic", "openai", "local"]

__all__ = [
    "Completion",
    "CompletionOptions",
    "Message",
    "Provider",
    "ProviderSpec",
    "TokenUsage",
    "build_provider",
    "select_provider",
]


@dataclass(frozen=True)
class ProviderSpec:
    kind: ProviderKind
    model: str | None


def select_provider(model: str) -> ProviderSpec:
    """Map a model string to a provider kind by prefix.

    ``claude-cli`` / ``claude-cli/<model>`` → Claude CLI subprocess,
    ``claude-*`` / ``anthropic/<model>`` → Anthropic API,
    ``gpt-*`` / ``o1*`` / ``o3*`` / ``openai/<model>`` → OpenAI,
    ``ollama/<model>`` / ``local/<model>`` → local OpenAI-compatible server.
    """
    name = model.strip()
    lowered = name.lower()
    prefix, sep, rest = name.partition("/")
    prefix = prefix.lower()

    if lowered == "claude-cli":
        return ProviderSpec("claude_cli", None)
    if sep and prefix == "claude-cli":
        return ProviderSpec("claude_cli", rest or None)
    if sep and prefix == "anthropic":
        return ProviderSpec("anthropic", rest)
    if sep and prefix == "openai":
        return ProviderSpec("openai", rest)
    if sep and prefix in ("ollama", "local"):
        return ProviderSpec("local", rest)
    if not sep and lowered.startswith("claude"):
        return ProviderSpec("anthropic", name)
    if not sep and lowered.startswith(("gpt-", "o1", "o3", "o4")):
        return ProviderSpec("openai", name)
    raise ConfigError(f"Cannot select a provider for model {model!r}")


def build_provider(config: MnemoConfig, model: str | None = None) -> Provider:
    """Construct the provider for ``model`` (default: agent.model)."""
    spec = select_provider(model or config.agent.model)
    agent = config.agent
    if spec.kind == "claude_cli":
        from mnemo.providers.claude_cli import ClaudeCLIProvider

        return ClaudeCLIProvider(model=spec.model, timeout=agent.timeout)
    if spec.kind == "anthropic":
        from mnemo.providers.anthropic_api import AnthropicAPIProvider

        return AnthropicAPIProvider(
            model=spec.model, max_tokens=agent.max_tokens, timeout=agent.timeout
        )

    from mnemo.providers.openai_compat import OpenAICompatProvider

    if spec.kind == "openai":
        return OpenAICompatProvider(
            model=spec.model,
            base_url=config.providers.openai_base_url,
            api_key_env=config.providers.openai_api_key_env,
            max_tokens=agent.max_tokens,
            timeout=agent.timeout,
            label="openai",
        )
    return OpenAICompatProvider(
        model=spec.model,
        base_url=config.providers.local_base_url,
        api_key_env=None,
        max_tokens=agent.max_tokens,
        timeout=agent.timeout,
        label="local",
    )
