"""Cooldown-gated alert dispatch for provider health signals."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from Lesson_Pipeline.config.settings import MonitoringSettings

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class AlertThresholds:
    latency_ms: float = 45_000.0
    error_threshold: int = 3
    cooldown_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: MonitoringSettings) -> AlertThresholds:
        return cls(
            latency_ms=settings.latency_threshold_ms,
            error_threshold=settings.error_threshold,
            cooldown_seconds=settings.alert_cooldown_seconds,
        )


@dataclass(frozen=True, slots=True)
class Alert:
    """One emitted alert."""

    provider: str
    reason: str
    message: str
    timestamp: float
    context: dict[str, Any] = field(default_factory=dict)


class AlertManager:
    """Alert dispatcher writing to logs.

    A single cooldown is shared by every alert source: once any alert is
    emitted, further alerts are suppressed until ``cooldown_seconds`` elapse.
    """

    def __init__(
        self,
        thresholds: AlertThresholds | None = None,
        *,
        clock: Callable[[], float] = time.time,
        history_size: int = 100,
    ) -> None:
        self.thresholds = thresholds or AlertThresholds()
        self._clock = clock
        self._last_alert_at: float | None = None
        self.history: deque[Alert] = deque(maxlen=history_size)

    @property
    def last_alert_at(self) -> float | None:
        return self._last_alert_at

    def in_cooldown(self, now: float | None = None) -> bool:
        if self._last_alert_at is None:
            return False
        current = self._clock() if now is None else now
        return current - self._last_alert_at < self.thresholds.cooldown_seconds

    def emit(self, provider: str, reason: str, message: str, **context: Any) -> bool:
        """Emit an alert unless the cooldown is active.

        Returns:
            ``True`` when the alert was dispatched, ``False`` when suppressed.
        """
        now = self._clock()
        if self.in_cooldown(now):
            logger.debug("alerts.suppressed", provider=provider, reason=reason)
            return False
        self._last_alert_at = now
        alert = Alert(provider=provider, reason=reason, message=message, timestamp=now, context=context)
        self.history.append(alert)
        logger.error(f"alerts.{reason}", provider=provider, alert_message=message, **context)
        return True

    def latency_breach(self, provider: str, duration_ms: float) -> bool:
        if duration_ms <= self.thresholds.latency_ms:
            return False
        return self.emit(
            provider,
            "latency_breach",
            f"High latency detected for {provider}: {duration_ms:.0f}ms",
            duration_ms=round(duration_ms, 2),
            threshold_ms=self.thresholds.latency_ms,
        )

    def error_threshold_reached(self, provider: str, error_kind: str, count: int) -> bool:
        return self.emit(
            provider,
            "error_threshold",
            f"High error rate detected for {provider}: {count} {error_kind} errors",
            error_kind=error_kind,
            count=count,
        )


__all__ = ["Alert", "AlertManager", "AlertThresholds"]
