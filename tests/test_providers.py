"""
Tests for the provider adapters and registry.

The OpenAI adapter is exercised with a mocked AsyncOpenAI client and the
Anthropic adapter with an httpx.MockTransport, so no network is used.
"""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from insight_pipeline.config import ProviderSettings
from insight_pipeline.errors import ProviderRateLimited, ProviderTransportError
from insight_pipeline.providers import (
    AnthropicProvider,
    OpenAIProvider,
    PromptPayload,
    Provider,
    ProviderRegistry,
    build_registry,
)

PROMPT = PromptPayload(system="sys", user="hello")
REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def _openai_client(create: AsyncMock) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = create
    client.close = AsyncMock()
    return client


def _completion(text: str, usage=(10, 5)):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text))],
        usage=SimpleNamespace(prompt_tokens=usage[0], completion_tokens=usage[1]),
        model="gpt-4o-mini",
    )


class TestOpenAIProvider:
    """Tests for OpenAIProvider."""

    @pytest.mark.asyncio
    async def test_generate(self):
        create = AsyncMock(return_value=_completion('{"ok": true}'))
        provider = OpenAIProvider(
            ProviderSettings("openai", api_key="k", model="gpt-4o-mini"),
            client=_openai_client(create),
        )

        result = await provider.generate(PROMPT, max_tokens=100, temperature=0.2, timeout=5)

        assert result.text == '{"ok": true}'
        assert result.total_tokens == 15
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][1] == {"role": "user", "content": "hello"}

    @pytest.mark.asyncio
    async def test_rate_limit_maps_retry_after(self):
        response = httpx.Response(429, headers={"retry-after": "3"}, request=REQUEST)
        create = AsyncMock(side_effect=openai.RateLimitError("slow down", response=response, body=None))
        provider = OpenAIProvider(ProviderSettings("openai", api_key="k"), client=_openai_client(create))

        with pytest.raises(ProviderRateLimited) as exc_info:
            await provider.generate(PROMPT, max_tokens=10, temperature=0, timeout=5)

        assert exc_info.value.retry_after == 3.0
        assert exc_info.value.provider == "openai"

    @pytest.mark.asyncio
    async def test_server_error_is_transport(self):
        response = httpx.Response(503, request=REQUEST)
        create = AsyncMock(side_effect=openai.InternalServerError("down", response=response, body=None))
        provider = OpenAIProvider(ProviderSettings("openai", api_key="k"), client=_openai_client(create))

        with pytest.raises(ProviderTransportError, match="HTTP 503"):
            await provider.generate(PROMPT, max_tokens=10, temperature=0, timeout=5)

    @pytest.mark.asyncio
    async def test_connection_error_is_transport(self):
        create = AsyncMock(side_effect=openai.APIConnectionError(request=REQUEST))
        provider = OpenAIProvider(ProviderSettings("openai", api_key="k"), client=_openai_client(create))

        with pytest.raises(ProviderTransportError):
            await provider.generate(PROMPT, max_tokens=10, temperature=0, timeout=5)

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def hang(**kwargs):
            await asyncio.sleep(1)

        provider = OpenAIProvider(ProviderSettings("openai", api_key="k"), client=_openai_client(AsyncMock(side_effect=hang)))

        with pytest.raises(ProviderTransportError, match="timeout"):
            await provider.generate(PROMPT, max_tokens=10, temperature=0, timeout=0.01)


def _anthropic(handler) -> AnthropicProvider:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url="https://api.anthropic.com",
    )
    return AnthropicProvider(
        ProviderSettings("anthropic", api_key="secret", model="claude-3-5-haiku-20241022"),
        client=client,
    )


class TestAnthropicProvider:
    """Tests for AnthropicProvider."""

    @pytest.mark.asyncio
    async def test_generate(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            return httpx.Response(200, json={
                "model": "claude-3-5-haiku-20241022",
                "content": [{"type": "text", "text": "Hello "}, {"type": "text", "text": "there"}],
                "usage": {"input_tokens": 12, "output_tokens": 3},
            })

        provider = _anthropic(handler)
        result = await provider.generate(PROMPT, max_tokens=50, temperature=0.1, timeout=5)
        await provider.aclose()

        assert result.text == "Hello there"
        assert (result.input_tokens, result.output_tokens) == (12, 3)
        assert seen["path"] == "/v1/messages"
        assert seen["headers"]["x-api-key"] == "secret"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"

    @pytest.mark.asyncio
    async def test_rate_limited(self):
        provider = _anthropic(lambda request: httpx.Response(429, headers={"retry-after": "7"}))

        with pytest.raises(ProviderRateLimited) as exc_info:
            await provider.generate(PROMPT, max_tokens=50, temperature=0.1, timeout=5)

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    async def test_http_error(self):
        provider = _anthropic(lambda request: httpx.Response(500, text="boom"))

        with pytest.raises(ProviderTransportError, match="HTTP 500"):
            await provider.generate(PROMPT, max_tokens=50, temperature=0.1, timeout=5)

    @pytest.mark.asyncio
    async def test_connect_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = _anthropic(handler)

        with pytest.raises(ProviderTransportError):
            await provider.generate(PROMPT, max_tokens=50, temperature=0.1, timeout=5)


class TestRegistry:
    """Tests for ProviderRegistry and build_registry."""

    def test_register_and_get(self, primary_provider):
        registry = ProviderRegistry()
        registry.register(primary_provider)

        assert registry.get("primary") is primary_provider
        assert "primary" in registry
        assert registry.names() == ["primary"]
        assert isinstance(primary_provider, Provider)

    def test_unknown(self):
        with pytest.raises(KeyError):
            ProviderRegistry().get("missing")

    def test_build_registry_skips_unconfigured(self):
        registry = build_registry({
            "openai": ProviderSettings("openai", api_key="k", model="gpt-4o-mini"),
            "anthropic": ProviderSettings("anthropic", api_key=""),
        })

        assert registry.names() == ["openai"]
        assert isinstance(registry.get("openai"), OpenAIProvider)

    @pytest.mark.asyncio
    async def test_aclose(self):
        closer = SimpleNamespace(name="c", model="m", aclose=AsyncMock())
        registry = ProviderRegistry()
        registry.register(closer)

        await registry.aclose()

        closer.aclose.assert_awaited_once()
