import json

import httpx
import pytest
import structlog
from prometheus_client import CollectorRegistry
from typer.testing import CliRunner

from Lesson_Pipeline import cli
from Lesson_Pipeline.orchestration.orchestrator import build_orchestrator
from Lesson_Pipeline.storage.lessons import InMemoryLessonStore, Lesson, LessonStatus
from tests.conftest import chat_reply, error_reply

runner = CliRunner()


@pytest.fixture
def wire(monkeypatch, fake_sleep):
    """Route the CLI through an in-memory store and a scripted provider."""

    monkeypatch.setattr(cli, "configure_logging", lambda **_: None)
    monkeypatch.setattr(cli, "configure_tracing", lambda *_: None)
    structlog.configure(logger_factory=structlog.ReturnLoggerFactory())

    def _wire(handler, store=None):
        store = store or InMemoryLessonStore(user_id="user-1")

        def _build(settings):
            return build_orchestrator(
                settings,
                store=store,
                transport=httpx.MockTransport(handler),
                registry=CollectorRegistry(),
                sleep=fake_sleep,
            )

        monkeypatch.setattr(cli, "build_orchestrator", _build)
        return store

    yield _wire
    structlog.reset_defaults()


def test_process_prints_progress_and_succeeds(wire, tmp_path):
    wire(lambda _: chat_reply("Quality score: 0.9"))
    document = tmp_path / "cells.md"
    document.write_text("Cells are the basic unit of life.", encoding="utf-8")

    result = runner.invoke(cli.app, ["process", str(document)])

    assert result.exit_code == 0, result.output
    assert "Processing completed successfully!" in result.output


def test_process_json_reports_failure_with_exit_code(wire, tmp_path):
    wire(lambda _: error_reply(401, "bad key"))
    document = tmp_path / "cells.md"
    document.write_text("Cells are the basic unit of life.", encoding="utf-8")

    result = runner.invoke(cli.app, ["process", str(document), "--json"])

    assert result.exit_code == 1
    payload = json.loads(result.output)
    assert payload["success"] is False
    assert payload["error"]["kind"] == "auth_failed"


def test_process_rejects_missing_file(wire, tmp_path):
    wire(lambda _: chat_reply("unused"))
    result = runner.invoke(cli.app, ["process", str(tmp_path / "missing.md")])
    assert result.exit_code != 0


def test_refresh_streams_events(wire):
    store = InMemoryLessonStore(
        user_id="user-1",
        lessons=[
            Lesson(
                id="lesson-1",
                title="Cells",
                content="Body",
                status=LessonStatus.COMPLETE,
                user_id="user-1",
                course_id="course-1",
            )
        ],
    )
    wire(lambda _: chat_reply("Score 0.9"), store)

    result = runner.invoke(cli.app, ["refresh"])

    assert result.exit_code == 0, result.output
    assert "Found 1 lessons to process" in result.output
    assert "Global content refresh complete" in result.output


def test_status_renders_admission_table(wire):
    wire(lambda _: chat_reply("unused"))
    result = runner.invoke(cli.app, ["status"])
    assert result.exit_code == 0, result.output
    assert "Active Requests" in result.output
    assert "No metric samples recorded yet" in result.output
