"""Lesson persistence interface and backends.

This module defines the contract the pipeline uses to read and write lessons,
together with two implementations:

- ``InMemoryLessonStore`` for local runs and tests
- ``RestLessonStore`` for a PostgREST compatible HTTP API (as exposed by
  Supabase), authenticated with a project key and a user session token

Every backend fails distinguishably: :class:`NotAuthenticatedError` when no
user session is available, :class:`LessonNotFoundError` for unknown ids and
:class:`PersistenceUnavailableError` for transport failures.

Thread Safety:
    Not thread-safe: backends are used from a single event loop.
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from Lesson_Pipeline.config.settings import PersistenceSettings
from Lesson_Pipeline.utils.errors import PipelineBaseError
from Lesson_Pipeline.utils.http_client import AsyncHttpClient, ProviderStatusError, RetryConfig

logger = structlog.get_logger(__name__)

# ==============================================================================
# DATA MODELS
# ==============================================================================


class LessonStatus(str, Enum):
    INCOMPLETE = "incomplete"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    NEEDS_REFINEMENT = "needs_refinement"


class Lesson(BaseModel):
    """Lesson row as returned by the store."""

    model_config = ConfigDict(extra="ignore")

    id: str
    title: str
    content: str
    status: LessonStatus = LessonStatus.PROCESSING
    user_id: str
    course_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class NotEqual:
    """Filter value matching rows whose column differs from ``value``."""

    value: Any


# ==============================================================================
# ERRORS
# ==============================================================================


class LessonStoreError(PipelineBaseError):
    """Base exception for lesson store backends."""


class NotAuthenticatedError(LessonStoreError):
    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message, status=401)


class LessonNotFoundError(LessonStoreError):
    def __init__(self, lesson_id: str) -> None:
        super().__init__("Lesson not found", status=404, extra={"lesson_id": lesson_id})
        self.lesson_id = lesson_id


class PersistenceUnavailableError(LessonStoreError):
    def __init__(self, message: str = "Lesson store unavailable", *, detail: str | None = None) -> None:
        super().__init__(message, status=503, detail=detail)


# ==============================================================================
# INTERFACE
# ==============================================================================


class LessonStore(ABC):
    """Interface for lesson persistence backends."""

    @abstractmethod
    async def get_current_user(self) -> str:
        """Return the authenticated user id.

        Raises:
            NotAuthenticatedError: If no user session is available.
        """

    @abstractmethod
    async def create_lesson(self, fields: Mapping[str, Any]) -> Lesson:
        """Insert a lesson and return the stored row."""

    @abstractmethod
    async def read_lesson_content(self, lesson_id: str) -> str:
        """Return the content of ``lesson_id``.

        Raises:
            LessonNotFoundError: If the lesson does not exist.
        """

    @abstractmethod
    async def update_lesson(self, lesson_id: str, fields: Mapping[str, Any]) -> None:
        """Apply ``fields`` to ``lesson_id``."""

    @abstractmethod
    async def query_lessons(self, filters: Mapping[str, Any]) -> list[Lesson]:
        """Return lessons matching every entry of ``filters``.

        Plain values match by equality; wrap a value in :class:`NotEqual` to
        exclude it instead.
        """

    async def aclose(self) -> None:
        """Release backend resources."""


# ==============================================================================
# IN-MEMORY BACKEND
# ==============================================================================


class InMemoryLessonStore(LessonStore):
    """Dictionary backed store with a fixed current user."""

    def __init__(self, user_id: str | None = "local-user", lessons: list[Lesson] | None = None) -> None:
        self._user_id = user_id
        self._lessons: dict[str, Lesson] = {lesson.id: lesson for lesson in lessons or []}

    async def get_current_user(self) -> str:
        if self._user_id is None:
            raise NotAuthenticatedError()
        return self._user_id

    async def create_lesson(self, fields: Mapping[str, Any]) -> Lesson:
        lesson = Lesson.model_validate({"id": str(uuid.uuid4()), **fields})
        self._lessons[lesson.id] = lesson
        return lesson

    async def get_lesson(self, lesson_id: str) -> Lesson:
        try:
            return self._lessons[lesson_id]
        except KeyError:
            raise LessonNotFoundError(lesson_id) from None

    async def read_lesson_content(self, lesson_id: str) -> str:
        return (await self.get_lesson(lesson_id)).content

    async def update_lesson(self, lesson_id: str, fields: Mapping[str, Any]) -> None:
        current = await self.get_lesson(lesson_id)
        self._lessons[lesson_id] = Lesson.model_validate({**current.model_dump(), **fields})

    async def query_lessons(self, filters: Mapping[str, Any]) -> list[Lesson]:
        def matches(lesson: Lesson) -> bool:
            row = lesson.model_dump(mode="json")
            return all(_matches(row.get(key), value) for key, value in filters.items())

        return [lesson for lesson in self._lessons.values() if matches(lesson)]


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _matches(column: Any, expected: Any) -> bool:
    if isinstance(expected, NotEqual):
        return column != _plain(expected.value)
    return column == _plain(expected)


def _filter_param(expected: Any) -> str:
    if isinstance(expected, NotEqual):
        return f"neq.{_plain(expected.value)}"
    return f"eq.{_plain(expected)}"


# ==============================================================================
# REST BACKEND
# ==============================================================================


class RestLessonStore(LessonStore):
    """PostgREST compatible lesson store over ``httpx``."""

    TABLE_PATH = "/rest/v1/lessons"
    USER_PATH = "/auth/v1/user"

    def __init__(
        self,
        settings: PersistenceSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if not settings.url:
            raise ValueError("persistence.url is required for the rest backend")
        self._access_token = settings.access_token.get_secret_value() if settings.access_token else None
        headers = {"Content-Type": "application/json"}
        if settings.api_key is not None:
            headers["apikey"] = settings.api_key.get_secret_value()
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        self._client = AsyncHttpClient(
            base_url=settings.url.rstrip("/"),
            retry=RetryConfig(
                max_attempts=1,
                initial_delay_ms=500.0,
                max_delay_ms=2000.0,
                timeout=settings.timeout_seconds,
            ),
            headers=headers,
            transport=transport,
            sleep=sleep,
        )

    @asynccontextmanager
    async def _guard(self, operation: str, lesson_id: str | None = None) -> AsyncIterator[None]:
        try:
            yield
        except ProviderStatusError as exc:
            logger.warning(
                "storage.lessons.request_failed",
                operation=operation,
                status_code=exc.status_code,
            )
            if exc.status_code in (401, 403):
                raise NotAuthenticatedError() from exc
            if exc.status_code == 404 and lesson_id is not None:
                raise LessonNotFoundError(lesson_id) from exc
            raise PersistenceUnavailableError(detail=exc.provider_message) from exc
        except httpx.TransportError as exc:
            logger.warning("storage.lessons.unreachable", operation=operation, error=str(exc))
            raise PersistenceUnavailableError(detail=str(exc)) from exc

    async def get_current_user(self) -> str:
        if not self._access_token:
            raise NotAuthenticatedError()
        async with self._guard("get_current_user"):
            response = await self._client.request("GET", self.USER_PATH)
        user_id = response.json().get("id")
        if not user_id:
            raise NotAuthenticatedError()
        return str(user_id)

    async def create_lesson(self, fields: Mapping[str, Any]) -> Lesson:
        payload = {key: _plain(value) for key, value in fields.items()}
        async with self._guard("create_lesson"):
            response = await self._client.request(
                "POST",
                self.TABLE_PATH,
                json=payload,
                headers={"Prefer": "return=representation"},
            )
        rows = response.json()
        if not rows:
            raise PersistenceUnavailableError("Failed to create lesson")
        return Lesson.model_validate(rows[0])

    async def read_lesson_content(self, lesson_id: str) -> str:
        async with self._guard("read_lesson_content", lesson_id):
            response = await self._client.request(
                "GET",
                self.TABLE_PATH,
                params={"id": f"eq.{lesson_id}", "select": "content"},
            )
        rows = response.json()
        if not rows:
            raise LessonNotFoundError(lesson_id)
        return str(rows[0].get("content") or "")

    async def update_lesson(self, lesson_id: str, fields: Mapping[str, Any]) -> None:
        payload = {key: _plain(value) for key, value in fields.items()}
        async with self._guard("update_lesson", lesson_id):
            response = await self._client.request(
                "PATCH",
                self.TABLE_PATH,
                params={"id": f"eq.{lesson_id}"},
                json=payload,
                headers={"Prefer": "return=representation"},
            )
        if not response.json():
            raise LessonNotFoundError(lesson_id)

    async def query_lessons(self, filters: Mapping[str, Any]) -> list[Lesson]:
        params = {"select": "*"}
        params.update({key: _filter_param(value) for key, value in filters.items()})
        async with self._guard("query_lessons"):
            response = await self._client.request("GET", self.TABLE_PATH, params=params)
        return [Lesson.model_validate(row) for row in response.json()]

    async def aclose(self) -> None:
        await self._client.aclose()


def create_lesson_store(
    settings: PersistenceSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LessonStore:
    """Build the backend named by ``settings.backend``."""
    backend = settings.backend.lower()
    if backend == "memory":
        return InMemoryLessonStore()
    if backend == "rest":
        return RestLessonStore(settings, transport=transport)
    raise ValueError(f"Unsupported lesson store backend: {settings.backend}")


__all__ = [
    "InMemoryLessonStore",
    "Lesson",
    "LessonNotFoundError",
    "LessonStatus",
    "LessonStore",
    "LessonStoreError",
    "NotAuthenticatedError",
    "NotEqual",
    "PersistenceUnavailableError",
    "RestLessonStore",
    "create_lesson_store",
]
