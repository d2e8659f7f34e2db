"""
Configuration for the Insight analysis pipeline

Environment Variables:
- OPENAI_API_KEY / OPENAI_BASE_URL / OPENAI_MODEL: OpenAI provider
- ANTHROPIC_API_KEY / ANTHROPIC_BASE_URL / ANTHROPIC_MODEL: Anthropic provider
- OPENROUTER_API_KEY / OPENROUTER_MODEL: OpenRouter (OpenAI-compatible) provider
- INSIGHT_DEFAULT_PROVIDER: Provider tried first (default: openai)
- INSIGHT_FALLBACK_PROVIDER: Provider used once retries are exhausted
- INSIGHT_MAX_RETRIES: Attempts per provider (default: 3)
- INSIGHT_RETRY_BASE_DELAY / INSIGHT_RETRY_MAX_DELAY: Backoff base and cap in seconds
- INSIGHT_PROVIDER_TIMEOUT: Per-call timeout in seconds (default: 60)
- INSIGHT_CACHE_MAX_ENTRIES / INSIGHT_CACHE_TTL: Result cache capacity and TTL
- INSIGHT_DAILY_BUDGET / INSIGHT_MONTHLY_BUDGET: Cost ceilings in USD (unset = unlimited)
- INSIGHT_BATCH_SIZE / INSIGHT_MAX_CONCURRENCY: Sub-batch size and fan-out limit
- INSIGHT_WORKER_COUNT: Size of the worker pool
- INSIGHT_K_ANONYMITY / INSIGHT_SIMILARITY_THRESHOLD: Grouping defaults
- INSIGHT_BULK_THRESHOLD: Response count above which the cheapest provider is used
- INSIGHT_DB_PATH: SQLite file for jobs and results
- INSIGHT_VISIBILITY_TIMEOUT: Seconds before an unacknowledged job is requeued
- INSIGHT_SUBSCRIBER_TOKENS: Comma separated tokens allowed to subscribe to progress
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


DEFAULT_DB_PATH = Path.home() / ".insight-pipeline" / "jobs.db"


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name, "").strip()
    return float(value) if value else None


@dataclass
class ProviderSettings:
    """Credentials, endpoint and limits for one provider."""

    name: str
    api_key: str = ""
    base_url: str | None = None
    model: str = ""
    requests_per_minute: int = 60
    tokens_per_minute: int = 100_000

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)


def _default_providers() -> dict[str, ProviderSettings]:
    return {
        "openai": ProviderSettings(
            name="openai",
            api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv("OPENAI_BASE_URL") or None,
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            requests_per_minute=int(os.getenv("OPENAI_RPM", "500")),
            tokens_per_minute=int(os.getenv("OPENAI_TPM", "200000")),
        ),
        "anthropic": ProviderSettings(
            name="anthropic",
            api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            base_url=os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com"),
            model=os.getenv("ANTHROPIC_MODEL", "claude-3-5-haiku-20241022"),
            requests_per_minute=int(os.getenv("ANTHROPIC_RPM", "50")),
            tokens_per_minute=int(os.getenv("ANTHROPIC_TPM", "100000")),
        ),
        "openrouter": ProviderSettings(
            name="openrouter",
            api_key=os.getenv("OPENROUTER_API_KEY", ""),
            base_url="https://openrouter.ai/api/v1",
            model=os.getenv("OPENROUTER_MODEL", "google/gemini-2.5-flash-lite"),
        ),
    }


@dataclass
class PipelineConfig:
    """Configuration for analysis processing."""

    providers: dict[str, ProviderSettings] = field(default_factory=_default_providers)
    default_provider: str = field(
        default_factory=lambda: os.getenv("INSIGHT_DEFAULT_PROVIDER", "openai")
    )
    fallback_provider: str | None = field(
        default_factory=lambda: os.getenv("INSIGHT_FALLBACK_PROVIDER") or None
    )

    # Retry / backoff
    max_retries: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_MAX_RETRIES", "3"))
    )
    retry_base_delay: float = field(
        default_factory=lambda: _env_float("INSIGHT_RETRY_BASE_DELAY", "1.0")
    )
    retry_max_delay: float = field(
        default_factory=lambda: _env_float("INSIGHT_RETRY_MAX_DELAY", "30.0")
    )
    retry_jitter: bool = True
    provider_timeout_seconds: float = field(
        default_factory=lambda: _env_float("INSIGHT_PROVIDER_TIMEOUT", "60")
    )
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: int = 60

    # Cache
    cache_max_entries: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_CACHE_MAX_ENTRIES", "1000"))
    )
    cache_ttl_seconds: float = field(
        default_factory=lambda: _env_float("INSIGHT_CACHE_TTL", str(24 * 3600))
    )
    cache_sweep_interval_seconds: float = 3600.0

    # Budgets (None = unlimited)
    daily_budget: float | None = field(
        default_factory=lambda: _env_optional_float("INSIGHT_DAILY_BUDGET")
    )
    monthly_budget: float | None = field(
        default_factory=lambda: _env_optional_float("INSIGHT_MONTHLY_BUDGET")
    )

    # Batching / concurrency
    batch_size: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_BATCH_SIZE", "50"))
    )
    max_concurrency: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_MAX_CONCURRENCY", "4"))
    )
    worker_count: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_WORKER_COUNT", "4"))
    )
    bulk_threshold: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_BULK_THRESHOLD", "100"))
    )

    # Anonymization
    k_anonymity: int = field(
        default_factory=lambda: int(os.getenv("INSIGHT_K_ANONYMITY", "5"))
    )
    similarity_threshold: float = field(
        default_factory=lambda: _env_float("INSIGHT_SIMILARITY_THRESHOLD", "0.3")
    )
    anonymization_salt: str = field(
        default_factory=lambda: os.getenv("INSIGHT_ANONYMIZATION_SALT", "")
    )

    # Queue
    db_path: str = field(
        default_factory=lambda: os.getenv("INSIGHT_DB_PATH", str(DEFAULT_DB_PATH))
    )
    visibility_timeout_seconds: float = field(
        default_factory=lambda: _env_float("INSIGHT_VISIBILITY_TIMEOUT", "300")
    )
    poll_interval_seconds: float = 1.0

    # Progress subscriptions
    subscriber_tokens: set[str] = field(
        default_factory=lambda: {
            token.strip()
            for token in os.getenv("INSIGHT_SUBSCRIBER_TOKENS", "").split(",")
            if token.strip()
        }
    )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if not any(p.is_configured for p in self.providers.values()):
            errors.append("No provider API key configured (OPENAI_API_KEY, ANTHROPIC_API_KEY or OPENROUTER_API_KEY)")

        if self.default_provider not in self.providers:
            errors.append(f"Unknown default provider: {self.default_provider}")

        if self.fallback_provider and self.fallback_provider not in self.providers:
            errors.append(f"Unknown fallback provider: {self.fallback_provider}")

        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")

        if self.batch_size < 1:
            errors.append("batch_size must be at least 1")

        if self.max_concurrency < 1:
            errors.append("max_concurrency must be at least 1")

        if self.k_anonymity < 1:
            errors.append("k_anonymity must be at least 1")

        for name, budget in (("daily_budget", self.daily_budget), ("monthly_budget", self.monthly_budget)):
            if budget is not None and budget < 0:
                errors.append(f"{name} must not be negative")

        return errors


def get_config() -> PipelineConfig:
    """Get a configuration instance."""
    return PipelineConfig()
