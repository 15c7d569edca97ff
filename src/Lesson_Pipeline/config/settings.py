"""Configuration system for the lesson pipeline.

Settings are read once at process start (environment variables prefixed with
``LP_``, nested fields separated by ``__``) and are immutable afterwards.
"""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environments supported by the pipeline."""

    DEV = "dev"
    STAGING = "staging"
    PROD = "prod"


class ProviderKind(str, Enum):
    """Closed set of language-model providers the transport can talk to."""

    OPENROUTER = "openrouter"
    OPENAI = "openai"
    NVIDIA = "nvidia"
    ANTHROPIC = "anthropic"


class FrozenSettingsModel(BaseModel):
    """Base block for settings that must not change after startup."""

    model_config = ConfigDict(frozen=True)


class TelemetrySettings(FrozenSettingsModel):
    """Configuration block for OpenTelemetry export."""

    exporter: str = Field(default="console", description="Target exporter type (console, otlp, none)")
    endpoint: str | None = Field(default=None, description="Exporter endpoint")
    sample_ratio: float = Field(default=0.1, ge=0.0, le=1.0)


class LoggingSettings(FrozenSettingsModel):
    """Structured logging configuration."""

    level: str = Field(default="INFO", description="Log level for application output")
    renderer: Literal["json", "console"] = Field(default="json", description="Output format")
    scrub_fields: Sequence[str] = Field(
        default_factory=lambda: ["api_key", "authorization", "token", "secret", "password"],
        description="Fields that should be redacted in logs",
    )


class ProviderSettings(FrozenSettingsModel):
    """Remote language-model endpoint and request defaults."""

    kind: ProviderKind = ProviderKind.OPENROUTER
    endpoint: str | None = Field(
        default=None, description="Override for the provider's chat endpoint URL"
    )
    api_key: SecretStr | None = Field(default=None, description="Bearer token for the provider")
    model: str = Field(default="mistralai/mistral-7b-instruct")
    max_tokens: int = Field(default=4000, gt=0)
    temperature: float = Field(default=0.7, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=120.0, gt=0)
    referer: str | None = Field(default=None, description="HTTP-Referer sent to OpenRouter")
    title: str = Field(default="Educational Content Processing System")


class RetrySettings(FrozenSettingsModel):
    """Backoff schedule applied by the resilient transport."""

    max_attempts: int = Field(default=3, ge=0, description="Additional attempts after the first")
    initial_delay_ms: float = Field(default=2000.0, ge=0.0)
    max_delay_ms: float = Field(default=20000.0, ge=0.0)
    backoff_factor: float = Field(default=2.0, ge=1.0)
    jitter: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _validate_ceiling(self) -> RetrySettings:
        if self.max_delay_ms < self.initial_delay_ms:
            raise ValueError("max_delay_ms must be >= initial_delay_ms")
        return self


class RateLimitSettings(FrozenSettingsModel):
    """Client-side admission budgets for one provider."""

    max_concurrent_requests: int = Field(default=3, ge=1)
    max_requests_per_minute: int = Field(default=20, ge=1)
    max_tokens_per_minute: int = Field(default=100_000, ge=1)


class QualitySettings(FrozenSettingsModel):
    """Quality gate between evaluation and refinement."""

    threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    default_score: float = Field(default=0.5, ge=0.0, le=1.0)


class MonitoringSettings(FrozenSettingsModel):
    """Metric retention and alert thresholds."""

    latency_threshold_ms: float = Field(default=45_000.0, gt=0)
    error_threshold: int = Field(default=3, ge=1)
    alert_cooldown_seconds: float = Field(default=300.0, ge=0)
    retention_hours: float = Field(default=24.0, gt=0)
    sweep_interval_seconds: float = Field(default=3600.0, gt=0)


class PersistenceSettings(FrozenSettingsModel):
    """Lesson store backend."""

    backend: str = Field(default="memory", description="memory or rest")
    url: str | None = Field(default=None, description="Base URL of the REST store")
    api_key: SecretStr | None = Field(default=None, description="Project key sent as apikey")
    access_token: SecretStr | None = Field(default=None, description="User session token")
    timeout_seconds: float = Field(default=30.0, gt=0)


class AppSettings(BaseSettings):
    """Top-level application settings."""

    environment: Environment = Environment.DEV
    service_name: str = "lesson-pipeline"
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    limits: RateLimitSettings = Field(default_factory=RateLimitSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)
    persistence: PersistenceSettings = Field(default_factory=PersistenceSettings)

    model_config = SettingsConfigDict(env_prefix="LP_", env_nested_delimiter="__", frozen=True)


ENVIRONMENT_DEFAULTS: Mapping[Environment, dict[str, Any]] = {
    Environment.DEV: {
        "telemetry": {"exporter": "console"},
        "logging": {"level": "DEBUG", "renderer": "console"},
    },
    Environment.STAGING: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.25},
    },
    Environment.PROD: {
        "telemetry": {"exporter": "otlp", "sample_ratio": 0.05},
    },
}


def _deep_update(target: dict[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in updates.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            target[key] = _deep_update(dict(current), value)
        else:
            target[key] = value
    return target


def load_settings(environment: str | None = None) -> AppSettings:
    """Load application settings with environment specific defaults applied.

    Values explicitly provided through the environment take precedence over
    the per-environment defaults.
    """
    env_value = (environment or os.getenv("LP_ENV", "dev")).lower()
    env = Environment(env_value)
    try:
        base_settings = AppSettings()
    except ValidationError as err:
        raise RuntimeError(f"Invalid configuration: {err}") from err
    explicit = base_settings.model_dump(exclude_unset=True)
    merged = _deep_update(dict(ENVIRONMENT_DEFAULTS.get(env, {})), explicit)
    merged["environment"] = env
    return AppSettings.model_validate(merged)


__all__ = [
    "AppSettings",
    "Environment",
    "LoggingSettings",
    "MonitoringSettings",
    "PersistenceSettings",
    "ProviderKind",
    "ProviderSettings",
    "QualitySettings",
    "RateLimitSettings",
    "RetrySettings",
    "TelemetrySettings",
    "load_settings",
]
