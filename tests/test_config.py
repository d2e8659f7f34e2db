"""
Tests for environment-driven configuration.
"""

from insight_pipeline.config import PipelineConfig, ProviderSettings


def test_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("INSIGHT_DAILY_BUDGET", "12.5")
    monkeypatch.setenv("INSIGHT_BATCH_SIZE", "20")
    monkeypatch.setenv("INSIGHT_SUBSCRIBER_TOKENS", "a, b ,,")
    for name in ("INSIGHT_MONTHLY_BUDGET", "INSIGHT_DEFAULT_PROVIDER", "INSIGHT_FALLBACK_PROVIDER"):
        monkeypatch.delenv(name, raising=False)

    config = PipelineConfig()

    assert config.providers["openai"].is_configured
    assert config.daily_budget == 12.5
    assert config.monthly_budget is None
    assert config.batch_size == 20
    assert config.subscriber_tokens == {"a", "b"}
    assert config.validate() == []


def test_validate_reports_problems():
    config = PipelineConfig(
        providers={"openai": ProviderSettings("openai")},
        default_provider="missing",
        fallback_provider="also-missing",
        max_retries=0,
        batch_size=0,
        daily_budget=-1,
    )

    errors = config.validate()

    assert any("API key" in e for e in errors)
    assert any("default provider" in e for e in errors)
    assert any("fallback provider" in e for e in errors)
    assert any("max_retries" in e for e in errors)
    assert any("batch_size" in e for e in errors)
    assert any("daily_budget" in e for e in errors)
