"""Observability helpers: metric samples and alerting."""

from .alerts import Alert, AlertManager, AlertThresholds
from .metrics import MetricName, MetricPoint, MetricsSink, ProviderSnapshot

__all__ = [
    "Alert",
    "AlertManager",
    "AlertThresholds",
    "MetricName",
    "MetricPoint",
    "MetricsSink",
    "ProviderSnapshot",
]
