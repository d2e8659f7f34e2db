"""LLM provider adapters."""

from ..config import ProviderSettings
from .anthropic_provider import AnthropicProvider
from .base import Generation, PromptPayload, Provider, ProviderRegistry, count_tokens
from .openai_provider import OpenAIProvider

ADAPTERS = {
    "openai": OpenAIProvider,
    "openrouter": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def build_registry(providers: dict[str, ProviderSettings]) -> ProviderRegistry:
    """Create adapters for every provider that has credentials."""
    registry = ProviderRegistry()
    for name, settings in providers.items():
        if not settings.is_configured:
            continue
        adapter = ADAPTERS.get(name, OpenAIProvider)
        registry.register(adapter(settings), name)
    return registry


__all__ = [
    "AnthropicProvider",
    "Generation",
    "OpenAIProvider",
    "PromptPayload",
    "Provider",
    "ProviderRegistry",
    "build_registry",
    "count_tokens",
]
