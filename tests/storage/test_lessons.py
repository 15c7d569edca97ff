import json

import httpx
import pytest

from Lesson_Pipeline.config.settings import PersistenceSettings
from Lesson_Pipeline.storage.lessons import (
    InMemoryLessonStore,
    LessonNotFoundError,
    LessonStatus,
    NotAuthenticatedError,
    NotEqual,
    PersistenceUnavailableError,
    RestLessonStore,
    create_lesson_store,
)

REST_SETTINGS = PersistenceSettings(
    backend="rest",
    url="https://db.test/",
    api_key="anon-key",
    access_token="session-token",
)


async def _no_sleep(_: float) -> None:
    return None


def _rest_store(handler, settings: PersistenceSettings = REST_SETTINGS) -> RestLessonStore:
    return RestLessonStore(settings, transport=httpx.MockTransport(handler), sleep=_no_sleep)


@pytest.mark.asyncio
async def test_in_memory_store_round_trip():
    store = InMemoryLessonStore(user_id="user-1")
    lesson = await store.create_lesson(
        {"title": "Cells", "content": "Draft", "user_id": "user-1", "status": LessonStatus.PROCESSING}
    )
    await store.update_lesson(lesson.id, {"content": "Final", "status": "complete"})
    assert await store.read_lesson_content(lesson.id) == "Final"
    complete = await store.query_lessons({"user_id": "user-1", "status": LessonStatus.COMPLETE})
    assert [item.id for item in complete] == [lesson.id]


@pytest.mark.asyncio
async def test_in_memory_store_excludes_not_equal_values():
    store = InMemoryLessonStore(user_id="user-1")
    for status in (LessonStatus.INCOMPLETE, LessonStatus.PROCESSING, LessonStatus.COMPLETE):
        await store.create_lesson({"title": status.value, "content": "Body", "user_id": "user-1", "status": status})

    lessons = await store.query_lessons({"user_id": "user-1", "status": NotEqual(LessonStatus.INCOMPLETE)})

    assert sorted(lesson.title for lesson in lessons) == ["complete", "processing"]


@pytest.mark.asyncio
async def test_in_memory_store_errors_are_distinguishable():
    store = InMemoryLessonStore(user_id=None)
    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()
    with pytest.raises(LessonNotFoundError):
        await store.read_lesson_content("missing")
    with pytest.raises(LessonNotFoundError):
        await store.update_lesson("missing", {"status": "complete"})


@pytest.mark.asyncio
async def test_rest_store_reads_current_user_with_session_headers():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(200, json={"id": "user-42", "email": "t@example.com"})

    store = _rest_store(handler)
    assert await store.get_current_user() == "user-42"
    request = captured["request"]
    assert request.url.path == "/auth/v1/user"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer session-token"
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_without_session_is_not_authenticated():
    settings = PersistenceSettings(backend="rest", url="https://db.test", api_key="anon-key")
    store = _rest_store(lambda _: httpx.Response(500), settings)
    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_maps_unauthorized_status():
    store = _rest_store(lambda _: httpx.Response(401, json={"message": "JWT expired"}))
    with pytest.raises(NotAuthenticatedError):
        await store.get_current_user()
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_creates_lesson_with_representation():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        row = {"id": "lesson-1", **json.loads(request.content)}
        return httpx.Response(201, json=[row])

    store = _rest_store(handler)
    lesson = await store.create_lesson(
        {"title": "Cells", "content": "Body", "user_id": "user-42", "status": LessonStatus.PROCESSING}
    )
    request = captured["request"]
    assert request.method == "POST"
    assert request.url.path == "/rest/v1/lessons"
    assert request.headers["Prefer"] == "return=representation"
    assert json.loads(request.content)["status"] == "processing"
    assert lesson.id == "lesson-1"
    assert lesson.status is LessonStatus.PROCESSING
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_read_filters_by_id_and_reports_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["id"] == "eq.lesson-1":
            return httpx.Response(200, json=[{"content": "Stored body"}])
        return httpx.Response(200, json=[])

    store = _rest_store(handler)
    assert await store.read_lesson_content("lesson-1") == "Stored body"
    with pytest.raises(LessonNotFoundError):
        await store.read_lesson_content("lesson-2")
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_update_patches_matching_row():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(200, json=[{"id": "lesson-1"}])

    store = _rest_store(handler)
    await store.update_lesson("lesson-1", {"content": "Refined", "status": LessonStatus.COMPLETE})
    request = captured["request"]
    assert request.method == "PATCH"
    assert request.url.params["id"] == "eq.lesson-1"
    assert json.loads(request.content) == {"content": "Refined", "status": "complete"}
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_query_translates_filters():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(
            200,
            json=[
                {
                    "id": "lesson-1",
                    "title": "Cells",
                    "content": "Body",
                    "status": "complete",
                    "user_id": "user-42",
                    "course_id": "course-1",
                    "category": "core",
                    "created_at": "2024-01-01T00:00:00Z",
                }
            ],
        )

    store = _rest_store(handler)
    lessons = await store.query_lessons({"user_id": "user-42", "status": LessonStatus.COMPLETE})
    params = captured["request"].url.params
    assert params["user_id"] == "eq.user-42"
    assert params["status"] == "eq.complete"
    assert lessons[0].course_id == "course-1"
    await store.aclose()


@pytest.mark.asyncio
async def test_rest_store_transport_failure_is_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    store = _rest_store(handler)
    with pytest.raises(PersistenceUnavailableError):
        await store.query_lessons({})
    await store.aclose()


def test_factory_selects_backend():
    assert isinstance(create_lesson_store(PersistenceSettings()), InMemoryLessonStore)
    assert isinstance(create_lesson_store(REST_SETTINGS), RestLessonStore)
    with pytest.raises(ValueError):
        create_lesson_store(PersistenceSettings(backend="sqlite"))


@pytest.mark.asyncio
async def test_rest_store_translates_not_equal_filter():
    captured: dict[str, httpx.Request] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["request"] = request
        return httpx.Response(200, json=[])

    store = _rest_store(handler)
    await store.query_lessons({"user_id": "user-42", "status": NotEqual(LessonStatus.INCOMPLETE)})
    params = captured["request"].url.params
    assert params["user_id"] == "eq.user-42"
    assert params["status"] == "neq.incomplete"
    await store.aclose()
