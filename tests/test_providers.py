"""Tests for provider selection and backends (mocked subprocess / local HTTP server)."""

from __future__ import annotations

import json
import subprocess
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from mnemo.config import MnemoConfig
from mnemo.errors import ConfigError, ProviderError
from mnemo.providers import ProviderSpec, build_provider, select_provider
from mnemo.providers.base import CompletionOptions, Message, split_system
from mnemo.providers.claude_cli import ClaudeCLIProvider, render_transcript
from mnemo.providers.openai_compat import (
    OpenAICompatProvider,
    classify_status,
    to_openai_messages,
)


def _completed(stdout: str = "", stderr: str = "", returncode: int = 0):
    return subprocess.CompletedProcess(
        args=["claude"], returncode=returncode, stdout=stdout, stderr=stderr
    )


# ── Selection ─────────────────────────────────────────────────


class TestSelectProvider:
    @pytest.mark.parametrize(
        "model,expected",
        [
            ("claude-cli", ProviderSpec("claude_cli", None)),
            ("claude-cli/opus", ProviderSpec("claude_cli", "opus")),
            ("claude-sonnet-4-5", ProviderSpec("anthropic", "claude-sonnet-4-5")),
            ("anthropic/claude-haiku-4-5", ProviderSpec("anthropic", "claude-haiku-4-5")),
            ("gpt-4o", ProviderSpec("openai", "gpt-4o")),
            ("o3-mini", ProviderSpec("openai", "o3-mini")),
            ("openai/gpt-4.1", ProviderSpec("openai", "gpt-4.1")),
            ("ollama/llama3.1", ProviderSpec("local", "llama3.1")),
            ("local/qwen2.5", ProviderSpec("local", "qwen2.5")),
        ],
    )
    def test_prefixes(self, model: str, expected: ProviderSpec):
        assert select_provider(model) == expected

    @pytest.mark.parametrize("model", ["mistral-large", "", "unknown/thing"])
    def test_unknown_model(self, model: str):
        with pytest.raises(ConfigError):
            select_provider(model)

    def test_build_local_provider(self):
        config = MnemoConfig()
        provider = build_provider(config, "ollama/llama3.1")
        assert isinstance(provider, OpenAICompatProvider)
        assert provider.name == "local"
        assert provider.base_url == config.providers.local_base_url
        assert provider.api_key_env is None

    def test_build_claude_cli(self):
        provider = build_provider(MnemoConfig())
        assert isinstance(provider, ClaudeCLIProvider)
        assert provider.model is None


class TestMessageHelpers:
    def test_split_system(self):
        system, rest = split_system(
            [Message("system", "a"), Message("user", "hi"), Message("system", "b")]
        )
        assert system == "a\n\nb"
        assert [m.content for m in rest] == ["hi"]

    def test_render_single_user_message(self):
        assert render_transcript([Message("user", "hello")]) == "hello"

    def test_render_history(self):
        text = render_transcript([Message("user", "hi"), Message("assistant", "hey")])
        assert text == "User: hi\n\nAssistant: hey\n\nAssistant:"

    def test_openai_tool_role_mapped(self):
        assert to_openai_messages([Message("tool", "42")]) == [
            {"role": "user", "content": "[tool result]\n42"}
        ]

    @pytest.mark.parametrize(
        "status,kind",
        [(401, "auth"), (403, "auth"), (429, "rate_limit"), (400, "invalid_request"),
         (404, "invalid_request"), (500, "transport"), (503, "transport")],
    )
    def test_classify_status(self, status: int, kind: str):
        assert classify_status(status) == kind


# ── Claude CLI ────────────────────────────────────────────────


class TestClaudeCLIProvider:
    @pytest.mark.asyncio
    async def test_complete_parses_json(self):
        payload = {
            "result": "Hi there",
            "model": "claude-sonnet-4-5",
            "usage": {"input_tokens": 12, "output_tokens": 3},
            "total_cost_usd": 0.001,
        }
        provider = ClaudeCLIProvider(model="sonnet")
        with patch(
            "mnemo.providers.claude_cli.subprocess.run",
            return_value=_completed(json.dumps(payload)),
        ) as run:
            completion = await provider.complete(
                [Message("system", "be brief"), Message("user", "hello")]
            )
        assert completion.content == "Hi there"
        assert completion.token_usage.total == 15
        assert completion.metadata["cost_usd"] == 0.001
        cmd = run.call_args[0][0]
        assert cmd[:4] == ["claude", "-p", "--output-format", "json"]
        assert ["--model", "sonnet"] == cmd[4:6]
        assert "--append-system-prompt" in cmd
        assert cmd[-1] == "hello"

    @pytest.mark.asyncio
    async def test_plain_text_stdout(self):
        provider = ClaudeCLIProvider()
        with patch(
            "mnemo.providers.claude_cli.subprocess.run", return_value=_completed("plain answer\n")
        ):
            completion = await provider.complete([Message("user", "q")])
        assert completion.content == "plain answer"
        assert completion.token_usage is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stderr,kind",
        [("Rate limit exceeded", "rate_limit"), ("Please run /login", "auth"), ("boom", "transport")],
    )
    async def test_nonzero_exit_classified(self, stderr: str, kind: str):
        provider = ClaudeCLIProvider()
        with patch(
            "mnemo.providers.claude_cli.subprocess.run",
            return_value=_completed(stderr=stderr, returncode=1),
        ):
            with pytest.raises(ProviderError) as exc:
                await provider.complete([Message("user", "q")])
        assert exc.value.kind == kind

    @pytest.mark.asyncio
    async def test_timeout(self):
        provider = ClaudeCLIProvider(timeout=1)
        with patch(
            "mnemo.providers.claude_cli.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="claude", timeout=1),
        ):
            with pytest.raises(ProviderError) as exc:
                await provider.complete([Message("user", "q")])
        assert exc.value.kind == "timeout"
        assert exc.value.retryable

    @pytest.mark.asyncio
    async def test_missing_binary_is_fatal(self):
        provider = ClaudeCLIProvider()
        with patch("mnemo.providers.claude_cli.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(ProviderError) as exc:
                await provider.complete([Message("user", "q")])
        assert not exc.value.retryable

    @pytest.mark.asyncio
    async def test_is_error_payload(self):
        provider = ClaudeCLIProvider()
        with patch(
            "mnemo.providers.claude_cli.subprocess.run",
            return_value=_completed(json.dumps({"is_error": True, "result": "overloaded"})),
        ):
            with pytest.raises(ProviderError):
                await provider.complete([Message("user", "q")])


# ── OpenAI-compatible HTTP ────────────────────────────────────


@pytest_asyncio.fixture
async def chat_server():
    seen: list[dict] = []
    state = {"status": 200}

    async def completions(request: web.Request) -> web.Response:
        seen.append({"json": await request.json(), "auth": request.headers.get("Authorization")})
        if state["status"] != 200:
            return web.Response(status=state["status"], text="nope")
        return web.json_response(
            {
                "model": "llama3.1",
                "choices": [{"message": {"role": "assistant", "content": "pong"}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 1},
            }
        )

    async def models(request: web.Request) -> web.Response:
        return web.json_response({"data": []})

    app = web.Application()
    app.router.add_post("/v1/chat/completions", completions)
    app.router.add_get("/v1/models", models)
    server = test_utils.TestServer(app)
    await server.start_server()
    yield SimpleNamespace(url=str(server.make_url("/v1")), seen=seen, state=state)
    await server.close()


class TestOpenAICompatProvider:
    @pytest.mark.asyncio
    async def test_complete(self, chat_server, monkeypatch):
        monkeypatch.setenv("TEST_KEY", "sk-test")
        provider = OpenAICompatProvider(
            model="llama3.1", base_url=chat_server.url, api_key_env="TEST_KEY"
        )
        completion = await provider.complete(
            [Message("system", "sys"), Message("user", "ping")],
            options=CompletionOptions(max_tokens=32, temperature=0.2),
        )
        assert completion.content == "pong"
        assert completion.token_usage.total == 8
        request = chat_server.seen[0]
        assert request["auth"] == "Bearer sk-test"
        assert request["json"]["max_tokens"] == 32
        assert request["json"]["temperature"] == 0.2
        assert request["json"]["messages"][0] == {"role": "system", "content": "sys"}

    @pytest.mark.asyncio
    async def test_http_errors_classified(self, chat_server):
        provider = OpenAICompatProvider(model="m", base_url=chat_server.url, api_key_env=None)
        chat_server.state["status"] = 429
        with pytest.raises(ProviderError) as exc:
            await provider.complete([Message("user", "ping")])
        assert exc.value.kind == "rate_limit"

        chat_server.state["status"] = 401
        with pytest.raises(ProviderError) as exc:
            await provider.complete([Message("user", "ping")])
        assert exc.value.kind == "auth"

    @pytest.mark.asyncio
    async def test_health_check(self, chat_server):
        provider = OpenAICompatProvider(model="m", base_url=chat_server.url, api_key_env=None)
        assert await provider.health_check()

    @pytest.mark.asyncio
    async def test_connection_refused_is_transport(self):
        provider = OpenAICompatProvider(
            model="m", base_url="http://127.0.0.1:1/v1", api_key_env=None, timeout=5
        )
        with pytest.raises(ProviderError) as exc:
            await provider.complete([Message("user", "ping")])
        assert exc.value.kind == "transport"
        assert exc.value.retryable


# ── Anthropic API ─────────────────────────────────────────────


class TestAnthropicAPIProvider:
    @pytest.fixture
    def provider(self, monkeypatch):
        pytest.importorskip("anthropic")
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        from mnemo.providers.anthropic_api import AnthropicAPIProvider

        return AnthropicAPIProvider(model="claude-sonnet-4-5")

    @pytest.mark.asyncio
    async def test_complete(self, provider):
        response = SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Hello")],
            usage=SimpleNamespace(input_tokens=5, output_tokens=2),
            model="claude-sonnet-4-5",
        )
        provider._client = MagicMock()
        provider._client.messages.create.return_value = response
        completion = await provider.complete(
            [Message("system", "sys"), Message("user", "hi"), Message("tool", "42")]
        )
        assert completion.content == "Hello"
        assert completion.token_usage.total == 7
        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "sys"
        assert kwargs["messages"][1] == {"role": "user", "content": "[tool result]\n42"}

    @pytest.mark.asyncio
    async def test_connection_error_is_retryable(self, provider):
        import anthropic
        import httpx

        provider._client = MagicMock()
        provider._client.messages.create.side_effect = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        )
        with pytest.raises(ProviderError) as exc:
            await provider.complete([Message("user", "hi")])
        assert exc.value.kind == "transport"
        assert exc.value.retryable
