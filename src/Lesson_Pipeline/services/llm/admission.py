"""Client-side admission control for one language-model provider.

Key Responsibilities:
    - Track a 60 second budget window of request and token counts
    - Bound the number of in-flight calls with a concurrency ceiling
    - Hold denied work in a FIFO queue and start it as concurrency frees up

Collaborators:
    - Upstream: :class:`~Lesson_Pipeline.orchestration.orchestrator.PipelineOrchestrator`
      acquires a permit before each remote call, or enqueues the call when denied
    - Downstream: None; the controller only schedules coroutines on the running loop

Side Effects:
    - ``enqueue`` schedules asyncio tasks for queued operations

Thread Safety:
    - Counter and queue mutation happens under a ``threading.Lock`` that is
      never held across an ``await``

Note:
    Releasing a permit frees concurrency only. The token count reserved by
    ``acquire_permit`` stays in the window until the window rolls over, so a
    sustained load is throttled by the token budget even when calls finish
    quickly.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from Lesson_Pipeline.config.settings import RateLimitSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T")

WINDOW_SECONDS = 60.0


@dataclass(frozen=True, slots=True)
class AdmissionStats:
    """Point-in-time view of the controller used for health reporting."""

    name: str
    active_requests: int
    queue_length: int
    request_count: int
    token_count: int
    window_age_seconds: float
    max_concurrent_requests: int
    max_requests_per_minute: int
    max_tokens_per_minute: int


@dataclass(slots=True)
class _QueuedOperation:
    operation: Callable[[], Awaitable[Any]]
    future: asyncio.Future[Any]


class AdmissionController:
    """Budget window, concurrency ceiling and FIFO wait queue for one provider."""

    def __init__(
        self,
        *,
        max_concurrent_requests: int = 3,
        max_requests_per_minute: int = 20,
        max_tokens_per_minute: int = 100_000,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_concurrent_requests < 1:
            raise ValueError("max_concurrent_requests must be >= 1")
        self.name = name
        self.max_concurrent_requests = max_concurrent_requests
        self.max_requests_per_minute = max_requests_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._request_count = 0
        self._token_count = 0
        self._window_start = clock()
        self._active_requests = 0
        self._queue: deque[_QueuedOperation] = deque()
        self._tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: RateLimitSettings,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ) -> AdmissionController:
        return cls(
            max_concurrent_requests=settings.max_concurrent_requests,
            max_requests_per_minute=settings.max_requests_per_minute,
            max_tokens_per_minute=settings.max_tokens_per_minute,
            name=name,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Permits
    # ------------------------------------------------------------------
    def _reset_window_if_expired(self, now: float) -> None:
        if now - self._window_start >= WINDOW_SECONDS:
            self._request_count = 0
            self._token_count = 0
            self._window_start = now

    def acquire_permit(self, estimated_tokens: int) -> bool:
        """Try to reserve capacity for one call.

        Args:
            estimated_tokens: Non-negative token estimate for the call.

        Returns:
            ``True`` when the permit was granted and the request, token and
            concurrency counters were incremented. ``False`` leaves every
            counter untouched.
        """
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens must be non-negative")
        with self._lock:
            self._reset_window_if_expired(self._clock())
            if self._request_count >= self.max_requests_per_minute:
                reason = "requests_per_minute"
            elif self._token_count + estimated_tokens >= self.max_tokens_per_minute:
                reason = "tokens_per_minute"
            elif self._active_requests >= self.max_concurrent_requests:
                reason = "concurrency"
            else:
                self._request_count += 1
                self._token_count += estimated_tokens
                self._active_requests += 1
                return True
        logger.info(
            "admission.permit.denied",
            controller=self.name,
            reason=reason,
            estimated_tokens=estimated_tokens,
        )
        return False

    def release_permit(self, estimated_tokens: int = 0) -> None:
        """Return a granted permit and start queued work if capacity allows.

        Must be called exactly once per granted permit. ``estimated_tokens``
        is accepted for symmetry with :meth:`acquire_permit`; the token count
        is not reduced.
        """
        with self._lock:
            self._active_requests = max(0, self._active_requests - 1)
        self._drain()

    # ------------------------------------------------------------------
    # Wait queue
    # ------------------------------------------------------------------
    def enqueue(self, operation: Callable[[], Awaitable[T]]) -> asyncio.Future[T]:
        """Queue ``operation`` and return a future settled with its outcome.

        Args:
            operation: Zero-argument callable returning an awaitable. It is
                invoked only once it reaches the head of the queue and a
                concurrency slot is free.
        """
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        with self._lock:
            self._queue.append(_QueuedOperation(operation=operation, future=future))
            depth = len(self._queue)
        logger.debug("admission.queue.enqueued", controller=self.name, queue_length=depth)
        self._drain()
        return future

    def _drain(self) -> None:
        started: list[_QueuedOperation] = []
        with self._lock:
            while self._queue and self._active_requests < self.max_concurrent_requests:
                item = self._queue.popleft()
                if item.future.done():
                    continue
                self._active_requests += 1
                started.append(item)
        for item in started:
            task = asyncio.get_running_loop().create_task(self._run_queued(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_queued(self, item: _QueuedOperation) -> None:
        try:
            result = await item.operation()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            with self._lock:
                self._active_requests = max(0, self._active_requests - 1)
            self._drain()

    def clear_queue(self) -> int:
        """Cancel every queued operation that has not started yet.

        Returns:
            Number of operations cancelled.
        """
        with self._lock:
            pending = list(self._queue)
            self._queue.clear()
        for item in pending:
            item.future.cancel()
        if pending:
            logger.warning("admission.queue.cleared", controller=self.name, cancelled=len(pending))
        return len(pending)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def active_requests(self) -> int:
        return self._active_requests

    @property
    def queue_length(self) -> int:
        return len(self._queue)

    @property
    def request_count(self) -> int:
        return self._request_count

    @property
    def token_count(self) -> int:
        return self._token_count

    def stats(self) -> AdmissionStats:
        with self._lock:
            return AdmissionStats(
                name=self.name,
                active_requests=self._active_requests,
                queue_length=len(self._queue),
                request_count=self._request_count,
                token_count=self._token_count,
                window_age_seconds=round(self._clock() - self._window_start, 3),
                max_concurrent_requests=self.max_concurrent_requests,
                max_requests_per_minute=self.max_requests_per_minute,
                max_tokens_per_minute=self.max_tokens_per_minute,
            )


__all__ = ["AdmissionController", "AdmissionStats", "WINDOW_SECONDS"]
