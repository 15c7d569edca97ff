import io
import json
import logging

import pytest
import structlog
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider

from Lesson_Pipeline.config import LoggingSettings, TelemetrySettings
from Lesson_Pipeline.utils.logging import (
    bind_correlation_id,
    configure_logging,
    configure_tracing,
    reset_correlation_id,
)


@pytest.fixture(autouse=True)
def _restore_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


def test_structlog_events_render_as_redacted_json():
    stream = io.StringIO()
    configure_logging(settings=LoggingSettings(scrub_fields=["api_key", "token"]), stream=stream)

    structlog.get_logger("tests.pipeline").info(
        "pipeline.stage.started",
        api_key="sk-secret",
        request={"token": "abc", "stage": "extract"},
    )

    [line] = _lines(stream)
    assert line["event"] == "pipeline.stage.started"
    assert line["level"] == "info"
    assert line["logger"] == "tests.pipeline"
    assert line["api_key"] == "***"
    assert line["request"] == {"token": "***", "stage": "extract"}
    assert "sk-secret" not in stream.getvalue()


def test_correlation_id_reaches_structlog_and_stdlib_records():
    stream = io.StringIO()
    configure_logging(stream=stream)

    tokens = bind_correlation_id("run-123")
    structlog.get_logger("tests.pipeline").info("pipeline.run.completed")
    logging.getLogger("httpx").info("HTTP Request: POST https://llm.test")
    reset_correlation_id(tokens)
    structlog.get_logger("tests.pipeline").info("pipeline.run.idle")

    first, second, third = _lines(stream)
    assert first["correlation_id"] == "run-123"
    assert second["correlation_id"] == "run-123"
    assert second["event"] == "HTTP Request: POST https://llm.test"
    assert "correlation_id" not in third


def test_level_filters_debug_events():
    stream = io.StringIO()
    configure_logging(settings=LoggingSettings(level="WARNING"), stream=stream)
    log = structlog.get_logger("tests.pipeline")
    log.info("admission.permit.denied")
    log.warning("http.retry.scheduled", attempt=1)
    assert [line["event"] for line in _lines(stream)] == ["http.retry.scheduled"]


def test_console_renderer_is_human_readable():
    stream = io.StringIO()
    configure_logging(settings=LoggingSettings(renderer="console"), stream=stream)
    structlog.get_logger("tests.pipeline").info("pipeline.refresh.started", run_id="abc")
    output = stream.getvalue()
    assert "pipeline.refresh.started" in output
    assert "run_id=abc" in output
    with pytest.raises(json.JSONDecodeError):
        json.loads(output)


def test_configure_tracing_without_exporter():
    configure_tracing("lesson-pipeline", TelemetrySettings(exporter="none"))
    assert isinstance(trace.get_tracer_provider(), TracerProvider)
