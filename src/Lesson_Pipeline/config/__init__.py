"""Lightweight configuration package exports."""

from __future__ import annotations

from .settings import (
    AppSettings,
    Environment,
    LoggingSettings,
    MonitoringSettings,
    PersistenceSettings,
    ProviderKind,
    ProviderSettings,
    QualitySettings,
    RateLimitSettings,
    RetrySettings,
    TelemetrySettings,
    load_settings,
)

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
