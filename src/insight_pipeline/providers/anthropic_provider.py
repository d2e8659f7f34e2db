"""
Anthropic Messages API adapter over httpx.
"""

import asyncio

import httpx

from ..config import ProviderSettings
from ..errors import ProviderRateLimited, ProviderTransportError
from .base import Generation, PromptPayload, count_tokens

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider:
    """POST /v1/messages with a pooled AsyncClient."""

    def __init__(self, settings: ProviderSettings, client: httpx.AsyncClient | None = None):
        self.name = settings.name
        self.model = settings.model
        self.settings = settings
        self.client = client or httpx.AsyncClient(
            base_url=settings.base_url or "https://api.anthropic.com",
            limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
        )

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.settings.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    async def generate(
        self,
        prompt: PromptPayload,
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Generation:
        body = {
            "model": self.model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": prompt.system,
            "messages": [{"role": "user", "content": prompt.user}],
        }
        try:
            response = await asyncio.wait_for(
                self.client.post("/v1/messages", json=body, headers=self._headers()),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTransportError(
                f"Request timeout after {timeout}s", provider=self.name
            ) from None
        except httpx.HTTPError as e:
            raise ProviderTransportError(
                type(e).__name__, provider=self.name, detail=str(e)
            ) from e

        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise ProviderRateLimited(
                "Rate limited",
                provider=self.name,
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                detail=response.text,
            )
        if response.status_code >= 300:
            raise ProviderTransportError(
                f"HTTP {response.status_code}", provider=self.name, detail=response.text
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderTransportError(
                "Malformed response body", provider=self.name, detail=response.text
            ) from e

        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens")
        output_tokens = usage.get("output_tokens")
        if input_tokens is None:
            input_tokens = count_tokens(prompt.system) + count_tokens(prompt.user)
        if output_tokens is None:
            output_tokens = count_tokens(text)

        return Generation(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=data.get("model") or self.model,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
