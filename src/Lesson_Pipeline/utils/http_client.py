"""Async HTTP client with bounded exponential backoff.

Key Responsibilities:
    - Construct an ``httpx.AsyncClient`` with a fixed request timeout
    - Retry transient failures with ``tenacity``: transport errors (no response
      at all, including timeouts) and HTTP 429 / 5xx responses
    - Expose the backoff schedule as a pure function so callers and tests can
      reason about delays without sleeping

Collaborators:
    - Upstream: :mod:`Lesson_Pipeline.services.llm.transport` and the REST
      lesson store issue requests through :class:`AsyncHttpClient`
    - Downstream: Wraps ``httpx`` clients and ``tenacity`` retry primitives

Side Effects:
    - Opens network connections via ``httpx``
    - Emits one OpenTelemetry span per attempt

Thread Safety:
    - Intended for use from a single event loop; the client holds no
      per-request state so one instance may serve many concurrent callers

Example:
    >>> config = RetryConfig(max_attempts=3, initial_delay_ms=2000, max_delay_ms=20000)
    >>> [compute_backoff_delay(n, config) for n in range(1, 7)]
    [2000.0, 4000.0, 8000.0, 16000.0, 20000.0, 20000.0]
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from opentelemetry import trace
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

logger = structlog.get_logger(__name__)

# ==============================================================================
# TYPE DEFINITIONS
# ==============================================================================


@dataclass(frozen=True)
class RetryConfig:
    """Retry configuration for :class:`AsyncHttpClient`.

    Attributes:
        max_attempts: Additional attempts after the first one.
        initial_delay_ms: Delay before the first retry.
        max_delay_ms: Ceiling applied to every computed delay.
        backoff_factor: Multiplier between consecutive delays.
        jitter: Relative jitter in ``[0, 1]``; the ceiling still applies.
        timeout: Per-request timeout in seconds.
    """

    max_attempts: int = 3
    initial_delay_ms: float = 2000.0
    max_delay_ms: float = 20000.0
    backoff_factor: float = 2.0
    jitter: float = 0.0
    timeout: float = 120.0


class ProviderStatusError(httpx.HTTPStatusError):
    """Non-2xx response annotated with the provider's error message."""

    def __init__(self, *, request: httpx.Request, response: httpx.Response) -> None:
        self.status_code = response.status_code
        self.provider_message = _extract_error_message(response)
        super().__init__(
            f"Upstream returned {self.status_code}: {self.provider_message}",
            request=request,
            response=response,
        )


def _extract_error_message(response: httpx.Response) -> str:
    """Return ``error.message`` from a JSON error body, falling back to text."""
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
        if isinstance(body.get("message"), str):
            return body["message"]
    return response.reason_phrase


# ==============================================================================
# RETRY POLICY
# ==============================================================================


def compute_backoff_delay(
    attempt: int,
    config: RetryConfig,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Return the delay in milliseconds before retry ``attempt`` (1-indexed).

    ``min(initial_delay_ms * backoff_factor ** (attempt - 1), max_delay_ms)``,
    optionally spread by ``config.jitter`` without exceeding the ceiling.
    """
    if attempt < 1:
        raise ValueError("attempt numbers start at 1")
    delay = config.initial_delay_ms * config.backoff_factor ** (attempt - 1)
    if config.jitter:
        delay *= 1.0 + config.jitter * (2.0 * rng() - 1.0)
    return float(max(0.0, min(delay, config.max_delay_ms)))


def is_retryable_status(status_code: int) -> bool:
    """429 and every 5xx are transient; all other statuses are final."""
    return status_code == 429 or 500 <= status_code <= 599


def is_retryable_error(exc: BaseException) -> bool:
    """Retry predicate shared by every caller of :class:`AsyncHttpClient`."""
    if isinstance(exc, httpx.HTTPStatusError):
        return is_retryable_status(exc.response.status_code)
    # No response at all: connection failures, read/connect timeouts.
    return isinstance(exc, httpx.TransportError)


class _BackoffWait(wait_base):
    """Tenacity wait strategy backed by :func:`compute_backoff_delay`."""

    def __init__(self, config: RetryConfig) -> None:
        self._config = config

    def __call__(self, retry_state: RetryCallState) -> float:
        return compute_backoff_delay(retry_state.attempt_number, self._config) / 1000.0


def _log_retry(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    logger.warning(
        "http.retry.scheduled",
        attempt=retry_state.attempt_number,
        delay_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
        error=type(exc).__name__ if exc else None,
        status_code=getattr(exc, "status_code", None),
    )


# ==============================================================================
# CLIENT
# ==============================================================================


class AsyncHttpClient:
    """Async HTTP client composed from ``httpx`` and ``tenacity``."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        retry: RetryConfig | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Create an async HTTP client with retry support.

        Args:
            base_url: Optional base URL applied to every request.
            retry: Retry configuration controlling attempts, backoff, and timeouts.
            headers: Default headers sent with every request.
            transport: Optional httpx transport override used in tests.
            sleep: Coroutine used between attempts; injectable for tests.
        """
        self._retry_config = retry or RetryConfig()
        client_kwargs: dict[str, Any] = {
            "timeout": self._retry_config.timeout,
            "transport": transport,
            "headers": headers or {},
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        self._client = httpx.AsyncClient(**client_kwargs)
        self._sleep = sleep
        self._tracer = trace.get_tracer(__name__)

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry_config

    def _build_retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._retry_config.max_attempts + 1),
            wait=_BackoffWait(self._retry_config),
            retry=retry_if_exception(is_retryable_error),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue a request, retrying transient failures.

        Returns:
            The first 2xx response.

        Raises:
            ProviderStatusError: For a non-retryable status, or the last
                retryable status once the budget is exhausted.
            httpx.TransportError: When the last attempt produced no response.
        """

        async def _attempt() -> httpx.Response:
            with self._tracer.start_as_current_span("http.request") as span:
                span.set_attribute("http.method", method)
                span.set_attribute("http.url", url)
                response = await self._client.request(method, url, **kwargs)
                span.set_attribute("http.status_code", response.status_code)
            if not response.is_success:
                await response.aread()
                raise ProviderStatusError(request=response.request, response=response)
            return response

        async for attempt in self._build_retrying():
            with attempt:
                return await _attempt()
        raise RuntimeError("unreachable")  # pragma: no cover - tenacity exhausts attempts

    async def aclose(self) -> None:
        """Close the underlying ``httpx.AsyncClient``."""
        await self._client.aclose()

    @asynccontextmanager
    async def lifespan(self) -> AsyncIterator[AsyncHttpClient]:
        """Async context manager that closes the client on exit."""
        try:
            yield self
        finally:
            await self.aclose()


__all__ = [
    "AsyncHttpClient",
    "RetryConfig",
    "ProviderStatusError",
    "compute_backoff_delay",
    "is_retryable_error",
    "is_retryable_status",
]
