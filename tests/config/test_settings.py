import pytest
from pydantic import ValidationError

from Lesson_Pipeline.config.settings import (
    AppSettings,
    Environment,
    ProviderKind,
    RetrySettings,
    load_settings,
)


def test_defaults_match_provider_limits():
    settings = AppSettings()
    assert settings.provider.kind is ProviderKind.OPENROUTER
    assert settings.provider.model == "mistralai/mistral-7b-instruct"
    assert settings.provider.max_tokens == 4000
    assert settings.provider.temperature == 0.7
    assert settings.provider.timeout_seconds == 120
    assert settings.retry.max_attempts == 3
    assert settings.retry.initial_delay_ms == 2000
    assert settings.retry.max_delay_ms == 20000
    assert settings.limits.max_concurrent_requests == 3
    assert settings.limits.max_requests_per_minute == 20
    assert settings.limits.max_tokens_per_minute == 100_000
    assert settings.quality.threshold == 0.7


def test_environment_variables_override_nested_fields(monkeypatch):
    monkeypatch.setenv("LP_PROVIDER__KIND", "anthropic")
    monkeypatch.setenv("LP_PROVIDER__API_KEY", "secret-key")
    monkeypatch.setenv("LP_LIMITS__MAX_CONCURRENT_REQUESTS", "5")
    settings = load_settings("dev")
    assert settings.provider.kind is ProviderKind.ANTHROPIC
    assert settings.provider.api_key.get_secret_value() == "secret-key"
    assert settings.limits.max_concurrent_requests == 5


def test_environment_defaults_do_not_override_explicit_values(monkeypatch):
    monkeypatch.setenv("LP_TELEMETRY__EXPORTER", "none")
    settings = load_settings("prod")
    assert settings.environment is Environment.PROD
    assert settings.telemetry.exporter == "none"
    assert settings.telemetry.sample_ratio == 0.05


def test_settings_are_immutable():
    settings = AppSettings()
    with pytest.raises(ValidationError):
        settings.retry.max_attempts = 10


def test_retry_ceiling_must_cover_initial_delay():
    with pytest.raises(ValidationError):
        RetrySettings(initial_delay_ms=5000, max_delay_ms=1000)


def test_api_key_is_not_rendered():
    settings = AppSettings(provider={"api_key": "sk-live"})
    assert "sk-live" not in repr(settings.provider)
