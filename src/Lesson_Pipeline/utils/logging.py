"""Structured logging and tracing setup for the pipeline.

Key Responsibilities:
    - Route structlog events and standard library records (httpx, tenacity)
      through one ``ProcessorFormatter`` so every line shares the same shape
    - Redact configured sensitive keys before rendering
    - Carry a per-run correlation id in structlog context variables
    - Install the global OpenTelemetry tracer provider

Collaborators:
    - Upstream: The CLI bootstraps logging and tracing once per command;
      the orchestrator binds a correlation id per document run
    - Downstream: ``structlog``, ``logging`` and the OpenTelemetry SDK

Side Effects:
    - Replaces the root logging handlers and the global tracer provider
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Mapping, MutableMapping
from contextvars import Token
from typing import IO, Any

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

from Lesson_Pipeline.config.settings import LoggingSettings, TelemetrySettings

CORRELATION_KEY = "correlation_id"
REDACTED = "***"

# ==============================================================================
# PROCESSORS
# ==============================================================================


class RedactSensitiveKeys:
    """Structlog processor replacing values of sensitive keys, nested ones included."""

    def __init__(self, keys: Iterable[str]) -> None:
        self._keys = frozenset(key.lower() for key in keys)

    def _redact(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {
                k: REDACTED if str(k).lower() in self._keys else self._redact(v)
                for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._redact(item) for item in value]
        return value

    def __call__(self, _: Any, __: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
        for key in list(event_dict):
            if key.lower() in self._keys:
                event_dict[key] = REDACTED
            elif key != "event":
                event_dict[key] = self._redact(event_dict[key])
        return event_dict


def _shared_processors(settings: LoggingSettings) -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        RedactSensitiveKeys(settings.scrub_fields),
    ]


def configure_logging(
    *,
    settings: LoggingSettings | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Send structlog and standard library logs to ``stream`` as one format.

    Args:
        settings: Level, renderer and redacted keys. Defaults apply when omitted.
        stream: Output stream; standard error when omitted.
    """
    settings = settings or LoggingSettings()
    level = logging.getLevelName(settings.level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    shared = _shared_processors(settings)
    renderer: Any
    if settings.renderer == "console":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer(sort_keys=True)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==============================================================================
# TRACING
# ==============================================================================


def configure_tracing(service_name: str, telemetry: TelemetrySettings) -> None:
    """Install the global tracer provider.

    ``exporter="none"`` keeps spans in process without exporting them.
    """
    provider = TracerProvider(
        resource=Resource(attributes={"service.name": service_name}),
        sampler=TraceIdRatioBased(telemetry.sample_ratio),
    )
    exporter: SpanExporter | None = None
    target = telemetry.exporter.lower()
    if target == "otlp":
        exporter = OTLPSpanExporter(endpoint=telemetry.endpoint) if telemetry.endpoint else OTLPSpanExporter()
    elif target != "none":
        exporter = ConsoleSpanExporter(out=sys.stderr)
    if exporter is not None:
        provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)


# ==============================================================================
# CORRELATION IDS
# ==============================================================================


def bind_correlation_id(value: str) -> Mapping[str, Token[Any]]:
    """Attach ``value`` to every log line emitted from the current context."""
    return structlog.contextvars.bind_contextvars(**{CORRELATION_KEY: value})


def reset_correlation_id(tokens: Mapping[str, Token[Any]]) -> None:
    """Restore whatever correlation id was bound before :func:`bind_correlation_id`."""
    structlog.contextvars.reset_contextvars(**tokens)


__all__ = [
    "RedactSensitiveKeys",
    "bind_correlation_id",
    "configure_logging",
    "configure_tracing",
    "reset_correlation_id",
]
