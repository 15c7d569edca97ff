"""Pipeline orchestrator driving documents through extract, evaluate and refine.

Key Responsibilities:
    - Sequence the remote stages for one document and for a whole library
    - Route every remote call through the admission controller, releasing the
      permit on every exit path
    - Record operation latency and token estimates, classify failures and
      return :class:`PipelineResult` values instead of raising

Collaborators:
    - Upstream: The CLI (``process``/``refresh`` commands)
    - Downstream: :class:`AdmissionController`, :class:`LLMTransport`,
      :class:`LessonStore`, :class:`MetricsSink`, :class:`ErrorClassifier`

Side Effects:
    - Remote model calls, lesson store writes, log lines and metric samples

Thread Safety:
    - Safe to call concurrently from one event loop; shared capacity is
      enforced by the injected admission controller
"""

# ==============================================================================
# IMPORTS
# ==============================================================================

from __future__ import annotations

import asyncio
import math
import re
import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx
import structlog
from prometheus_client import CollectorRegistry

from Lesson_Pipeline.config.settings import AppSettings, QualitySettings
from Lesson_Pipeline.observability.metrics import MetricsSink
from Lesson_Pipeline.orchestration.state import (
    PipelineResult,
    ProcessingRun,
    ProcessingStatus,
    ProgressEvent,
    ProgressLevel,
    SourceDocument,
)
from Lesson_Pipeline.services.llm.admission import AdmissionController, AdmissionStats
from Lesson_Pipeline.services.llm.errors import ErrorClassifier
from Lesson_Pipeline.services.llm.providers import ChatCompletion, ChatMessage
from Lesson_Pipeline.services.llm.transport import LLMTransport
from Lesson_Pipeline.storage.lessons import (
    Lesson,
    LessonStatus,
    LessonStore,
    NotEqual,
    create_lesson_store,
)
from Lesson_Pipeline.utils.errors import PipelineBaseError
from Lesson_Pipeline.utils.logging import bind_correlation_id, reset_correlation_id

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# ==============================================================================
# PROMPTS
# ==============================================================================

EXTRACT_SYSTEM_PROMPT = (
    "You process educational documents into structured lessons. Respond with a "
    "title, clearly separated sections and the key points of each section."
)
EVALUATE_SYSTEM_PROMPT = (
    "You review educational content. Give a quality score between 0 and 1 "
    "first, then detailed feedback."
)
REFINE_SYSTEM_PROMPT = (
    "You improve educational content. Keep the core message and structure and "
    "focus on clarity and engagement."
)
ARCHITECT_SYSTEM_PROMPT = (
    "You design course structures. Propose an ordered outline for the lessons "
    "provided, grouping related material into modules."
)

_SCORE_PATTERN = re.compile(r"(\d*\.)?\d+")
_OUTLINE_EXCERPT_CHARS = 500


class EmptyDocumentError(PipelineBaseError):
    def __init__(self) -> None:
        super().__init__("Empty or invalid file content", status=400)


# ==============================================================================
# HELPERS
# ==============================================================================


def estimate_tokens(size: int) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(size / 4)


def parse_quality_score(text: str, default: float = 0.5) -> float:
    """Return the first number in ``text`` clamped to ``[0, 1]``."""
    match = _SCORE_PATTERN.search(text)
    if match is None:
        return default
    return min(max(float(match.group(0)), 0.0), 1.0)


# ==============================================================================
# ORCHESTRATOR
# ==============================================================================


class PipelineOrchestrator:
    """Runs documents and stored lessons through the remote pipeline stages."""

    def __init__(
        self,
        *,
        transport: LLMTransport,
        admission: AdmissionController,
        store: LessonStore,
        metrics: MetricsSink,
        classifier: ErrorClassifier | None = None,
        quality: QualitySettings | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._transport = transport
        self._admission = admission
        self._store = store
        self._metrics = metrics
        self._classifier = classifier or ErrorClassifier(transport.provider_name, metrics)
        self._quality = quality or QualitySettings()
        self._clock = clock

    @property
    def provider(self) -> str:
        return self._transport.provider_name

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def metrics(self) -> MetricsSink:
        return self._metrics

    @property
    def store(self) -> LessonStore:
        return self._store

    # ------------------------------------------------------------------
    # Remote call plumbing
    # ------------------------------------------------------------------
    async def _execute_with_admission(
        self,
        operation: Callable[[], Awaitable[T]],
        estimated_tokens: int,
    ) -> T:
        if self._admission.acquire_permit(estimated_tokens):
            try:
                return await operation()
            finally:
                self._admission.release_permit(estimated_tokens)
        logger.info("pipeline.request.queued", provider=self.provider, estimated_tokens=estimated_tokens)
        return await self._admission.enqueue(operation)

    async def _invoke(
        self,
        stage: str,
        messages: Sequence[ChatMessage],
        estimated_tokens: int,
    ) -> ChatCompletion:
        started = self._clock()
        logger.info("pipeline.stage.started", stage=stage, estimated_tokens=estimated_tokens)
        try:
            completion = await self._execute_with_admission(
                lambda: self._transport.call(messages), estimated_tokens
            )
        finally:
            self._metrics.record_latency(self.provider, (self._clock() - started) * 1000.0)
        self._metrics.record_token_usage(self.provider, estimated_tokens)
        logger.info("pipeline.stage.completed", stage=stage)
        return completion

    def _failure(self, stage: str, exc: BaseException) -> PipelineResult[Any]:
        info = self._classifier.classify(exc)
        logger.warning("pipeline.stage.failed", stage=stage, error_kind=info.kind.value)
        return PipelineResult.fail(info)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def process_document(self, document: SourceDocument) -> PipelineResult[dict[str, Any]]:
        """Extract a lesson from ``document`` and store it.

        Returns:
            ``{"lesson_id", "content"}`` on success.
        """
        estimated = estimate_tokens(document.size)
        try:
            user_id = await self._store.get_current_user()
            if not document.content.strip():
                raise EmptyDocumentError()
            messages = [
                ChatMessage(role="system", content=EXTRACT_SYSTEM_PROMPT),
                ChatMessage(
                    role="user",
                    content=f"Extract the key information of this document as a structured lesson:\n\n{document.content}",
                ),
            ]
            completion = await self._invoke("extract", messages, estimated)
            lesson = await self._store.create_lesson(
                {
                    "title": document.title,
                    "content": completion.content,
                    "user_id": user_id,
                    "status": LessonStatus.PROCESSING,
                }
            )
        except Exception as exc:
            return self._failure("extract", exc)
        return PipelineResult.ok({"lesson_id": lesson.id, "content": completion.content})

    async def evaluate_lesson(self, lesson_id: str) -> PipelineResult[dict[str, Any]]:
        """Score a stored lesson.

        Returns:
            ``{"quality_score", "feedback"}`` on success.
        """
        try:
            content = await self._store.read_lesson_content(lesson_id)
            messages = [
                ChatMessage(role="system", content=EVALUATE_SYSTEM_PROMPT),
                ChatMessage(role="user", content=f"Evaluate this lesson:\n\n{content}"),
            ]
            completion = await self._invoke("evaluate", messages, estimate_tokens(len(content)))
        except Exception as exc:
            return self._failure("evaluate", exc)
        score = parse_quality_score(completion.content, self._quality.default_score)
        return PipelineResult.ok({"quality_score": score, "feedback": completion.content})

    async def refine_lesson(self, lesson_id: str) -> PipelineResult[dict[str, Any]]:
        """Rewrite a stored lesson and mark it complete.

        Returns:
            ``{"refined_content"}`` on success.
        """
        try:
            content = await self._store.read_lesson_content(lesson_id)
            messages = [
                ChatMessage(role="system", content=REFINE_SYSTEM_PROMPT),
                ChatMessage(role="user", content=f"Improve this lesson:\n\n{content}"),
            ]
            completion = await self._invoke("refine", messages, estimate_tokens(len(content)))
            await self._store.update_lesson(
                lesson_id, {"content": completion.content, "status": LessonStatus.COMPLETE}
            )
        except Exception as exc:
            return self._failure("refine", exc)
        return PipelineResult.ok({"refined_content": completion.content})

    async def architect_course(
        self,
        course_id: str,
        lessons: Sequence[Lesson],
    ) -> PipelineResult[dict[str, Any]]:
        """Propose an outline for the lessons of one course."""
        listing = "\n\n".join(
            f"## {lesson.title}\n{lesson.content[:_OUTLINE_EXCERPT_CHARS]}" for lesson in lessons
        )
        messages = [
            ChatMessage(role="system", content=ARCHITECT_SYSTEM_PROMPT),
            ChatMessage(role="user", content=f"Lessons of course {course_id}:\n\n{listing}"),
        ]
        try:
            completion = await self._invoke("architect", messages, estimate_tokens(len(listing)))
        except Exception as exc:
            return self._failure("architect", exc)
        return PipelineResult.ok({"course_id": course_id, "outline": completion.content})

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------
    async def process_one(
        self,
        document: SourceDocument,
        *,
        on_event: Callable[[ProgressEvent], None] | None = None,
    ) -> ProcessingRun:
        """Drive one document through the state machine.

        The run stops at the first failed stage. Work already stored by the
        lesson store is left as is.
        """
        self._ensure_sweep()
        run = ProcessingRun(document=document.name)
        tokens = bind_correlation_id(uuid.uuid4().hex)

        def emit(level: ProgressLevel, message: str, agent: str | None = None) -> None:
            event = ProgressEvent(
                level=level, message=message, status=run.status, unit_id=run.lesson_id, agent=agent
            )
            run.events.append(event)
            if on_event is not None:
                on_event(event)

        def fail(result: PipelineResult[Any]) -> ProcessingRun:
            assert result.error is not None
            run.fail(result.error)
            emit(ProgressLevel.ERROR, result.error.message)
            logger.warning("pipeline.run.failed", document=document.name, error_kind=result.error.kind.value)
            return run

        try:
            run.transition(ProcessingStatus.UPLOADING)
            emit(ProgressLevel.INFO, "Starting file upload and processing...")
            run.transition(ProcessingStatus.PROCESSING)
            extracted = await self.process_document(document)
            if not extracted.success:
                return fail(extracted)
            assert extracted.data is not None
            run.lesson_id = extracted.data["lesson_id"]
            emit(ProgressLevel.SUCCESS, "Document processed. Starting lesson evaluation...", "Architect Agent")

            run.transition(ProcessingStatus.EVALUATING)
            evaluated = await self.evaluate_lesson(run.lesson_id)
            if not evaluated.success:
                return fail(evaluated)
            assert evaluated.data is not None
            run.quality_score = evaluated.data["quality_score"]
            emit(
                ProgressLevel.SUCCESS,
                f"Lesson evaluated. Quality score: {run.quality_score:.2f}",
                "Content Evaluator Agent",
            )

            if run.quality_score < self._quality.threshold:
                run.transition(ProcessingStatus.REFINING)
                emit(ProgressLevel.INFO, "Quality score below threshold. Refining lesson...", "Innovator Agent")
                refined = await self.refine_lesson(run.lesson_id)
                if not refined.success:
                    return fail(refined)
                run.refined = True
                emit(ProgressLevel.SUCCESS, "Lesson refinement complete.", "Innovator Agent")

            run.transition(ProcessingStatus.COMPLETE)
            emit(ProgressLevel.SUCCESS, "Processing completed successfully!", "Publisher Agent")
            logger.info(
                "pipeline.run.completed",
                document=document.name,
                lesson_id=run.lesson_id,
                quality_score=run.quality_score,
                refined=run.refined,
            )
            return run
        finally:
            reset_correlation_id(tokens)

    async def process_all(self) -> AsyncIterator[ProgressEvent]:
        """Re-evaluate every lesson of the current user, course by course.

        Lessons still marked ``incomplete`` are left out.

        A failing lesson is reported and skipped. After its lessons, each
        course gets one structure step. Lessons without a course are ignored.
        """
        self._ensure_sweep()
        run_id = uuid.uuid4().hex
        logger.info("pipeline.refresh.started", run_id=run_id)
        yield ProgressEvent(ProgressLevel.INFO, "Starting global content refresh...")
        try:
            user_id = await self._store.get_current_user()
            lessons = await self._store.query_lessons(
                {"user_id": user_id, "status": NotEqual(LessonStatus.INCOMPLETE)}
            )
        except Exception as exc:
            info = self._classifier.classify(exc)
            yield ProgressEvent(ProgressLevel.ERROR, f"Error during global refresh: {info.message}")
            return

        yield ProgressEvent(ProgressLevel.INFO, f"Found {len(lessons)} lessons to process")
        courses: dict[str, list[Lesson]] = {}
        for lesson in lessons:
            if lesson.course_id:
                courses.setdefault(lesson.course_id, []).append(lesson)
        yield ProgressEvent(ProgressLevel.INFO, f"Processing {len(courses)} courses")

        for course_id, course_lessons in courses.items():
            yield ProgressEvent(
                ProgressLevel.INFO,
                f"Processing course {course_id} with {len(course_lessons)} lessons",
                course_id=course_id,
            )
            for lesson in course_lessons:
                async for event in self._refresh_lesson(lesson):
                    yield event

            yield ProgressEvent(
                ProgressLevel.INFO,
                f"Architecting course structure for course {course_id}",
                course_id=course_id,
                agent="Architect Agent",
            )
            outline = await self.architect_course(course_id, course_lessons)
            if outline.success:
                yield ProgressEvent(
                    ProgressLevel.SUCCESS,
                    "Successfully architected course structure",
                    course_id=course_id,
                    agent="Architect Agent",
                )
            else:
                assert outline.error is not None
                yield ProgressEvent(
                    ProgressLevel.ERROR,
                    f"Failed to architect course {course_id}: {outline.error.message}",
                    course_id=course_id,
                    agent="Architect Agent",
                )

        logger.info("pipeline.refresh.completed", run_id=run_id, courses=len(courses))
        yield ProgressEvent(ProgressLevel.SUCCESS, "Global content refresh complete")

    async def _refresh_lesson(self, lesson: Lesson) -> AsyncIterator[ProgressEvent]:
        course_id = lesson.course_id
        yield ProgressEvent(
            ProgressLevel.INFO,
            f"Evaluating lesson: {lesson.title}",
            status=ProcessingStatus.EVALUATING,
            unit_id=lesson.id,
            course_id=course_id,
        )
        evaluated = await self.evaluate_lesson(lesson.id)
        if not evaluated.success:
            assert evaluated.error is not None
            logger.warning("pipeline.refresh.lesson_failed", lesson_id=lesson.id, stage="evaluate")
            yield ProgressEvent(
                ProgressLevel.ERROR,
                f"Failed to evaluate lesson {lesson.title}: {evaluated.error.message}",
                status=ProcessingStatus.ERROR,
                unit_id=lesson.id,
                course_id=course_id,
            )
            return

        assert evaluated.data is not None
        score = evaluated.data["quality_score"]
        yield ProgressEvent(
            ProgressLevel.SUCCESS,
            f"Lesson {lesson.title} evaluation complete. Quality score: {score * 100:.1f}%",
            status=ProcessingStatus.EVALUATING,
            unit_id=lesson.id,
            course_id=course_id,
            agent="Content Evaluator Agent",
        )
        if score >= self._quality.threshold:
            return

        yield ProgressEvent(
            ProgressLevel.INFO,
            f"Quality score below threshold. Refining lesson: {lesson.title}",
            status=ProcessingStatus.REFINING,
            unit_id=lesson.id,
            course_id=course_id,
            agent="Innovator Agent",
        )
        refined = await self.refine_lesson(lesson.id)
        if refined.success:
            yield ProgressEvent(
                ProgressLevel.SUCCESS,
                f"Successfully refined lesson: {lesson.title}",
                status=ProcessingStatus.COMPLETE,
                unit_id=lesson.id,
                course_id=course_id,
                agent="Innovator Agent",
            )
        else:
            assert refined.error is not None
            logger.warning("pipeline.refresh.lesson_failed", lesson_id=lesson.id, stage="refine")
            yield ProgressEvent(
                ProgressLevel.ERROR,
                f"Failed to refine lesson {lesson.title}: {refined.error.message}",
                status=ProcessingStatus.ERROR,
                unit_id=lesson.id,
                course_id=course_id,
            )

    # ------------------------------------------------------------------
    # Health and lifecycle
    # ------------------------------------------------------------------
    def _ensure_sweep(self) -> None:
        # Retention runs on the loop driving the pipeline.
        if not self._metrics.running:
            self._metrics.start()

    def stats(self) -> AdmissionStats:
        return self._admission.stats()

    async def aclose(self) -> None:
        await self._metrics.stop()
        await self._transport.aclose()
        await self._store.aclose()


def build_orchestrator(
    settings: AppSettings,
    *,
    store: LessonStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    registry: CollectorRegistry | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> PipelineOrchestrator:
    """Wire one admission controller, transport and metrics sink for the configured provider."""
    provider = settings.provider.kind.value
    metrics = MetricsSink(settings.monitoring, registry=registry)
    return PipelineOrchestrator(
        transport=LLMTransport(settings.provider, settings.retry, transport=transport, sleep=sleep),
        admission=AdmissionController.from_settings(settings.limits, name=provider),
        store=store or create_lesson_store(settings.persistence),
        metrics=metrics,
        classifier=ErrorClassifier(provider, metrics),
        quality=settings.quality,
    )


__all__ = [
    "EmptyDocumentError",
    "PipelineOrchestrator",
    "build_orchestrator",
    "estimate_tokens",
    "parse_quality_score",
]
