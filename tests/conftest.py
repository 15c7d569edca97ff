from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from prometheus_client import CollectorRegistry

from Lesson_Pipeline.config.settings import ProviderSettings, RetrySettings
from Lesson_Pipeline.observability.metrics import MetricsSink
from Lesson_Pipeline.orchestration.orchestrator import PipelineOrchestrator
from Lesson_Pipeline.services.llm.admission import AdmissionController
from Lesson_Pipeline.services.llm.transport import LLMTransport
from Lesson_Pipeline.storage.lessons import InMemoryLessonStore

API_TEST_KEY = "test-provider-key"


class FakeClock:
    """Manually advanced clock shared by time-dependent components."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def chat_reply(content: str, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json={"choices": [{"message": {"content": content}}]})


def error_reply(status_code: int, message: str = "upstream failure") -> httpx.Response:
    return httpx.Response(status_code, json={"error": {"message": message}})


def prompt_of(request: httpx.Request) -> str:
    """Return the system prompt of a chat request."""
    body = json.loads(request.content)
    return body["messages"][0]["content"]


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch):
    for key in ("LP_ENV", "LP_PROVIDER__API_KEY", "LP_PERSISTENCE__BACKEND"):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps: list[float]) -> Callable[[float], Any]:
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def provider_settings() -> ProviderSettings:
    return ProviderSettings(api_key=API_TEST_KEY, endpoint="https://llm.test/v1/chat/completions")


@pytest.fixture
def metrics(clock: FakeClock) -> MetricsSink:
    return MetricsSink(registry=CollectorRegistry(), clock=clock)


@pytest.fixture
def store() -> InMemoryLessonStore:
    return InMemoryLessonStore(user_id="user-1")


@pytest.fixture
def make_transport(provider_settings: ProviderSettings, fake_sleep):
    def _factory(handler: Callable[[httpx.Request], httpx.Response], **retry: Any) -> LLMTransport:
        return LLMTransport(
            provider_settings,
            RetrySettings(**retry),
            transport=httpx.MockTransport(handler),
            sleep=fake_sleep,
        )

    return _factory


@pytest.fixture
def make_orchestrator(make_transport, store: InMemoryLessonStore, metrics: MetricsSink):
    def _factory(
        handler: Callable[[httpx.Request], httpx.Response],
        *,
        admission: AdmissionController | None = None,
        **retry: Any,
    ) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            transport=make_transport(handler, **retry),
            admission=admission or AdmissionController(name="openrouter"),
            store=store,
            metrics=metrics,
        )

    return _factory
