import asyncio

import pytest
from prometheus_client import CollectorRegistry

from Lesson_Pipeline.config.settings import MonitoringSettings
from Lesson_Pipeline.observability.alerts import AlertManager, AlertThresholds
from Lesson_Pipeline.observability.metrics import MetricName, MetricsSink
from Lesson_Pipeline.services.llm.errors import ErrorKind


def test_three_service_errors_raise_exactly_one_alert(metrics, clock):
    for _ in range(3):
        metrics.record_error("openrouter", ErrorKind.SERVICE_UNAVAILABLE)
    assert len(metrics.alerts.history) == 1
    alert = metrics.alerts.history[0]
    assert alert.reason == "error_threshold"
    assert alert.context["error_kind"] == "service_unavailable"

    clock.advance(10)
    metrics.record_error("openrouter", ErrorKind.SERVICE_UNAVAILABLE)
    assert len(metrics.alerts.history) == 1


def test_counter_resets_even_when_alert_is_suppressed(metrics, clock):
    metrics.record_latency("openrouter", 50_000)
    assert len(metrics.alerts.history) == 1

    for _ in range(3):
        metrics.record_error("openrouter", ErrorKind.RATE_LIMITED)
    assert len(metrics.alerts.history) == 1
    assert metrics.error_count("openrouter", ErrorKind.RATE_LIMITED) == 0


def test_cooldown_expiry_allows_next_alert(metrics, clock):
    for _ in range(3):
        metrics.record_error("openrouter", "timeout")
    clock.advance(301)
    for _ in range(3):
        metrics.record_error("openrouter", "timeout")
    assert len(metrics.alerts.history) == 2


def test_error_counters_are_per_provider_and_kind(metrics):
    metrics.record_error("openrouter", ErrorKind.TIMEOUT)
    metrics.record_error("openrouter", ErrorKind.TIMEOUT)
    metrics.record_error("openrouter", ErrorKind.NETWORK_ERROR)
    metrics.record_error("nvidia", ErrorKind.TIMEOUT)
    assert metrics.error_count("openrouter", ErrorKind.TIMEOUT) == 2
    assert metrics.error_count("openrouter", ErrorKind.NETWORK_ERROR) == 1
    assert metrics.error_count("nvidia", ErrorKind.TIMEOUT) == 1
    assert not metrics.alerts.history


def test_slow_call_alerts_fast_call_does_not(metrics):
    metrics.record_latency("openrouter", 1_200)
    assert not metrics.alerts.history
    metrics.record_latency("openrouter", 45_001)
    assert metrics.alerts.history[0].reason == "latency_breach"


def test_average_latency_uses_trailing_window(metrics, clock):
    metrics.record_latency("openrouter", 1000)
    clock.advance(400)
    metrics.record_latency("openrouter", 3000)
    metrics.record_latency("openrouter", 5000)
    assert metrics.average_latency("openrouter") == 4000
    assert metrics.average_latency("openrouter", window_seconds=1000) == 3000
    assert metrics.average_latency("unknown") == 0.0


def test_sweep_prunes_old_samples_and_clears_counters(metrics, clock):
    metrics.record_token_usage("openrouter", 1000)
    metrics.record_error("openrouter", ErrorKind.TIMEOUT)
    clock.advance(25 * 3600)
    metrics.record_token_usage("openrouter", 250)

    removed = metrics.sweep()

    assert removed == 2
    tokens = metrics.get_metrics("openrouter", MetricName.TOKENS)
    assert [point.value for point in tokens] == [250]
    assert metrics.error_count("openrouter", ErrorKind.TIMEOUT) == 0


def test_prometheus_collectors_mirror_samples(clock):
    registry = CollectorRegistry()
    sink = MetricsSink(registry=registry, clock=clock)
    sink.record_token_usage("openai", 400)
    sink.record_error("openai", ErrorKind.AUTH_FAILED)
    sink.record_latency("openai", 1500)

    assert registry.get_sample_value("llm_estimated_tokens_total", {"provider": "openai"}) == 400
    assert (
        registry.get_sample_value(
            "llm_errors_total", {"provider": "openai", "error_kind": "auth_failed"}
        )
        == 1
    )
    assert registry.get_sample_value("llm_request_duration_seconds_count", {"provider": "openai"}) == 1


def test_snapshot_aggregates_per_provider(metrics):
    metrics.record_latency("openrouter", 1000)
    metrics.record_latency("openrouter", 2000)
    metrics.record_token_usage("openrouter", 300)
    metrics.record_error("openrouter", ErrorKind.TIMEOUT)
    row = metrics.snapshot()["openrouter"]
    assert row.requests == 2
    assert row.average_latency_ms == 1500
    assert row.tokens == 300
    assert row.errors == 1


def test_thresholds_follow_settings(clock):
    settings = MonitoringSettings(error_threshold=2, alert_cooldown_seconds=0)
    sink = MetricsSink(settings, registry=CollectorRegistry(), clock=clock)
    for _ in range(4):
        sink.record_error("openrouter", ErrorKind.TIMEOUT)
    assert len(sink.alerts.history) == 2


def test_alert_manager_cooldown_is_global(clock):
    manager = AlertManager(AlertThresholds(cooldown_seconds=300), clock=clock)
    assert manager.emit("openrouter", "error_threshold", "first")
    assert not manager.emit("nvidia", "latency_breach", "second")
    clock.advance(300)
    assert manager.emit("nvidia", "latency_breach", "third")


@pytest.mark.asyncio
async def test_sweep_task_lifecycle(clock):
    sink = MetricsSink(
        MonitoringSettings(sweep_interval_seconds=0.01),
        registry=CollectorRegistry(),
        clock=clock,
    )
    sink.record_error("openrouter", ErrorKind.TIMEOUT)
    sink.start()
    assert sink.running
    await asyncio.sleep(0.05)
    assert sink.error_count("openrouter", ErrorKind.TIMEOUT) == 0
    await sink.stop()
    assert not sink.running
