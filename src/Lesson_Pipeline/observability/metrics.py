"""Per-provider metric samples with threshold alerting.

Key Responsibilities:
    - Record latency, token usage and error samples keyed by provider name
    - Mirror every sample into Prometheus collectors on an injectable registry
    - Count errors per ``(provider, kind)`` and hand threshold crossings and
      slow calls to :class:`~Lesson_Pipeline.observability.alerts.AlertManager`
    - Prune samples past the retention window on a periodic sweep

Collaborators:
    - Upstream: The pipeline orchestrator records latency and token usage;
      the error classifier records errors
    - Downstream: ``prometheus_client`` collectors and the alert manager

Side Effects:
    - Registers collectors on the supplied ``CollectorRegistry``
    - ``start()`` spawns an asyncio task running the retention sweep

Thread Safety:
    - Designed for a single event loop; sample lists are mutated without locks
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import structlog
from prometheus_client import CollectorRegistry, Counter, Histogram

from Lesson_Pipeline.config.settings import MonitoringSettings
from Lesson_Pipeline.observability.alerts import AlertManager, AlertThresholds

logger = structlog.get_logger(__name__)

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


class MetricName(str, Enum):
    LATENCY = "latency"
    TOKENS = "tokens"
    ERRORS = "errors"


@dataclass(frozen=True, slots=True)
class MetricPoint:
    timestamp: float
    value: float


@dataclass(frozen=True, slots=True)
class ProviderSnapshot:
    """Aggregated view of one provider used by health reporting."""

    provider: str
    requests: int
    average_latency_ms: float
    tokens: int
    errors: int


# ==============================================================================
# PROMETHEUS COLLECTORS
# ==============================================================================


class LLMMetricRegistry:
    """Prometheus collectors for remote model calls."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        """Initialize the collectors.

        Args:
            registry: Prometheus collector registry to use. A private registry
                is created when omitted so several sinks can coexist.
        """
        self._registry = registry if registry is not None else CollectorRegistry()
        self._collectors: dict[str, Any] = {}
        self.initialize_collectors()

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def initialize_collectors(self) -> None:
        self._collectors["latency"] = Histogram(
            "llm_request_duration_seconds",
            "Duration of remote model operations including retries",
            ["provider"],
            buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 45.0, 90.0, 180.0],
            registry=self._registry,
        )
        self._collectors["tokens"] = Counter(
            "llm_estimated_tokens_total",
            "Estimated tokens submitted to remote models",
            ["provider"],
            registry=self._registry,
        )
        self._collectors["errors"] = Counter(
            "llm_errors_total",
            "Classified remote model failures",
            ["provider", "error_kind"],
            registry=self._registry,
        )

    def get_collector(self, name: str) -> Any:
        return self._collectors[name]


# ==============================================================================
# SINK
# ==============================================================================


class MetricsSink:
    """Append-only metric store with cooldown-gated alerting."""

    def __init__(
        self,
        settings: MonitoringSettings | None = None,
        *,
        alerts: AlertManager | None = None,
        registry: CollectorRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or MonitoringSettings()
        self._clock = clock
        self.alerts = alerts or AlertManager(AlertThresholds.from_settings(self._settings), clock=clock)
        self.prometheus = LLMMetricRegistry(registry)
        self._samples: dict[str, dict[MetricName, list[MetricPoint]]] = defaultdict(
            lambda: defaultdict(list)
        )
        self._error_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._sweep_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    def _append(self, provider: str, metric: MetricName, value: float) -> None:
        self._samples[provider][metric].append(MetricPoint(timestamp=self._clock(), value=value))

    def record_latency(self, provider: str, duration_ms: float) -> None:
        self._append(provider, MetricName.LATENCY, duration_ms)
        self.prometheus.get_collector("latency").labels(provider=provider).observe(duration_ms / 1000.0)
        self.alerts.latency_breach(provider, duration_ms)

    def record_token_usage(self, provider: str, tokens: int) -> None:
        self._append(provider, MetricName.TOKENS, float(tokens))
        self.prometheus.get_collector("tokens").labels(provider=provider).inc(tokens)

    def record_error(self, provider: str, kind: str | Enum) -> None:
        """Record one error and alert when the ``(provider, kind)`` count hits the threshold.

        The counter is reset on reaching the threshold whether or not the
        alert itself was suppressed by the cooldown.
        """
        kind_name = kind.value if isinstance(kind, Enum) else str(kind)
        self._append(provider, MetricName.ERRORS, 1.0)
        self.prometheus.get_collector("errors").labels(provider=provider, error_kind=kind_name).inc()

        key = (provider, kind_name)
        self._error_counts[key] += 1
        count = self._error_counts[key]
        if count >= self._settings.error_threshold:
            self._error_counts[key] = 0
            self.alerts.error_threshold_reached(provider, kind_name, count)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_metrics(
        self,
        provider: str,
        metric: MetricName | str,
        window_seconds: float | None = None,
    ) -> list[MetricPoint]:
        """Return samples for ``provider``, optionally limited to the trailing window."""
        points = self._samples.get(provider, {}).get(MetricName(metric), [])
        if window_seconds is None:
            return list(points)
        cutoff = self._clock() - window_seconds
        return [point for point in points if point.timestamp >= cutoff]

    def average_latency(self, provider: str, window_seconds: float = 300.0) -> float:
        points = self.get_metrics(provider, MetricName.LATENCY, window_seconds)
        if not points:
            return 0.0
        return sum(point.value for point in points) / len(points)

    def error_count(self, provider: str, kind: str | Enum) -> int:
        """Errors of ``kind`` seen since the last alert or sweep."""
        kind_name = kind.value if isinstance(kind, Enum) else str(kind)
        return self._error_counts.get((provider, kind_name), 0)

    def providers(self) -> list[str]:
        return sorted(self._samples)

    def snapshot(self, window_seconds: float | None = None) -> dict[str, ProviderSnapshot]:
        result: dict[str, ProviderSnapshot] = {}
        for provider in self.providers():
            latencies = self.get_metrics(provider, MetricName.LATENCY, window_seconds)
            tokens = self.get_metrics(provider, MetricName.TOKENS, window_seconds)
            errors = self.get_metrics(provider, MetricName.ERRORS, window_seconds)
            average = sum(p.value for p in latencies) / len(latencies) if latencies else 0.0
            result[provider] = ProviderSnapshot(
                provider=provider,
                requests=len(latencies),
                average_latency_ms=round(average, 2),
                tokens=int(sum(p.value for p in tokens)),
                errors=len(errors),
            )
        return result

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def sweep(self) -> int:
        """Drop samples older than the retention window and clear error counters.

        Returns:
            Number of samples removed.
        """
        cutoff = self._clock() - self._settings.retention_hours * 3600.0
        removed = 0
        for metrics in self._samples.values():
            for name, points in metrics.items():
                kept = [point for point in points if point.timestamp >= cutoff]
                removed += len(points) - len(kept)
                metrics[name] = kept
        self._error_counts.clear()
        if removed:
            logger.info("metrics.sweep.completed", removed=removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.sweep_interval_seconds)
            self.sweep()

    def start(self) -> None:
        """Schedule the periodic sweep on the running event loop."""
        if self._sweep_task is not None and not self._sweep_task.done():
            logger.warning("metrics.sweep.already_running")
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()


__all__ = [
    "LLMMetricRegistry",
    "MetricName",
    "MetricPoint",
    "MetricsSink",
    "ProviderSnapshot",
]
