"""
Provider capability protocol and registry.

A provider is anything with an async ``generate`` method; adapters differ
only in request/response shape and their rate-limit settings.
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import tiktoken


@dataclass(frozen=True)
class PromptPayload:
    """System instructions plus the user message for one call."""
    system: str
    user: str

    def to_messages(self) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


@dataclass(frozen=True)
class Generation:
    """Text and usage returned by one provider call."""
    text: str
    input_tokens: int
    output_tokens: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@runtime_checkable
class Provider(Protocol):
    name: str
    model: str

    async def generate(
        self,
        prompt: PromptPayload,
        *,
        max_tokens: int,
        temperature: float,
        timeout: float,
    ) -> Generation:
        ...


_encoder: tiktoken.Encoding | None = None


def count_tokens(text: str) -> int:
    """Count tokens with the cl100k encoding, for responses that omit usage."""
    global _encoder
    if not text:
        return 0
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return len(_encoder.encode(text, disallowed_special=()))


class ProviderRegistry:
    """Providers keyed by name."""

    def __init__(self):
        self._providers: dict[str, Provider] = {}

    def register(self, provider: Provider, name: str | None = None) -> None:
        self._providers[name or provider.name] = provider

    def get(self, name: str) -> Provider:
        try:
            return self._providers[name]
        except KeyError:
            raise KeyError(f"Unknown provider: {name}") from None

    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: str) -> bool:
        return name in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()
