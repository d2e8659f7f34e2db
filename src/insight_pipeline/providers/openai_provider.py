"""
OpenAI-compatible provider adapter (OpenAI, OpenRouter).
"""

import asyncio

import httpx
from openai import AsyncOpenAI
import openai

from ..config import ProviderSettings
from ..errors import ProviderRateLimited, ProviderTransportError
from .base import Generation, PromptPayload, count_tokens


def _retry_after(error: openai.APIStatusError) -> float | None:
    value = error.response.headers.get("retry-after") if error.response is not None else None
    try:
        return float(value) if value else None
    except ValueError:
        return None


class OpenAIProvider:
    """Chat Completions over a pooled AsyncOpenAI client."""

    def __init__(self, settings: ProviderSettings, client: AsyncOpenAI | None = None):
        self.name = settings.name
        self.model = settings.model
        self.settings = settings
        self._http_client: httpx.AsyncClient | None = None
        if client is None:
            self._http_client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
            # Retries are owned by the gateway.
            client = AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.base_url,
                http_client=self._http_client,
                max_retries=0,
            )
        self.client = client

    async def generate(
        self,
        prompt: PromptPayload,
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Generation:
        try:
            response = await asyncio.wait_for(
                self.client.chat.completions.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    messages=prompt.to_messages(),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTransportError(
                f"Request timeout after {timeout}s", provider=self.name
            ) from None
        except openai.RateLimitError as e:
            raise ProviderRateLimited(
                "Rate limited", provider=self.name, retry_after=_retry_after(e), detail=str(e)
            ) from e
        except openai.APIStatusError as e:
            raise ProviderTransportError(
                f"HTTP {e.status_code}", provider=self.name, detail=str(e)
            ) from e
        except openai.APIError as e:
            # Connection errors and client-side timeouts
            raise ProviderTransportError(
                type(e).__name__, provider=self.name, detail=str(e)
            ) from e

        text = response.choices[0].message.content if response.choices else ""
        text = text or ""
        usage = response.usage
        if usage is not None:
            input_tokens = usage.prompt_tokens or 0
            output_tokens = usage.completion_tokens or 0
        else:
            input_tokens = count_tokens(prompt.system) + count_tokens(prompt.user)
            output_tokens = count_tokens(text)

        return Generation(
            text=text,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=getattr(response, "model", None) or self.model,
        )

    async def aclose(self) -> None:
        await self.client.close()
        if self._http_client is not None:
            await self._http_client.aclose()
