"""Resilient transport for one language-model provider.

Builds the provider payload, sends it through :class:`AsyncHttpClient` (which
owns timeout and retry) and validates the reply against the provider's
response schema. Shape failures raise :class:`ResponseValidationError`, which
is never retried. The transport keeps no metrics; callers time the whole
operation.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from Lesson_Pipeline.config.settings import ProviderSettings, RetrySettings
from Lesson_Pipeline.services.llm.providers import ChatCompletion, ChatMessage, get_profile
from Lesson_Pipeline.utils.errors import PipelineBaseError
from Lesson_Pipeline.utils.http_client import AsyncHttpClient, RetryConfig

logger = structlog.get_logger(__name__)


class ResponseValidationError(PipelineBaseError):
    """Provider replied 2xx with a body that does not match its schema."""

    def __init__(self, details: str) -> None:
        super().__init__("Invalid response format", status=502, detail=details)
        self.details = details


def _summarise_validation_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", "invalid value")


def retry_config_from_settings(retry: RetrySettings, *, timeout: float) -> RetryConfig:
    return RetryConfig(
        max_attempts=retry.max_attempts,
        initial_delay_ms=retry.initial_delay_ms,
        max_delay_ms=retry.max_delay_ms,
        backoff_factor=retry.backoff_factor,
        jitter=retry.jitter,
        timeout=timeout,
    )


class LLMTransport:
    """Single remote chat invocation with retry and response validation."""

    def __init__(
        self,
        settings: ProviderSettings,
        retry: RetrySettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Create a transport for ``settings.kind``.

        Args:
            settings: Provider endpoint, credentials and request defaults.
            retry: Backoff schedule; defaults to three retries from 2s to 20s.
            transport: Optional httpx transport override used in tests.
            sleep: Coroutine used between retry attempts.
        """
        self._settings = settings
        self._profile = get_profile(settings.kind)
        if settings.api_key is None:
            logger.warning("llm.transport.missing_api_key", provider=self.provider_name)
        self._client = AsyncHttpClient(
            retry=retry_config_from_settings(retry or RetrySettings(), timeout=settings.timeout_seconds),
            headers=self._profile.headers(settings),
            transport=transport,
            sleep=sleep,
        )

    @property
    def provider_name(self) -> str:
        return self._settings.kind.value

    @property
    def endpoint(self) -> str:
        return self._profile.endpoint(self._settings)

    async def call(self, messages: Sequence[ChatMessage | Mapping[str, str]]) -> ChatCompletion:
        """Send ``messages`` and return the validated reply.

        Raises:
            ProviderStatusError: Non-2xx response after retries.
            httpx.TransportError: No response after retries.
            ResponseValidationError: Reply body does not match the schema.
        """
        turns = [m if isinstance(m, ChatMessage) else ChatMessage.model_validate(m) for m in messages]
        body = self._profile.build_body(self._settings, turns)
        response = await self._client.request("POST", self.endpoint, json=body)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResponseValidationError("response body is not valid JSON") from exc
        try:
            return self._profile.parse(payload)
        except ValidationError as exc:
            raise ResponseValidationError(_summarise_validation_error(exc)) from exc

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["LLMTransport", "ResponseValidationError", "retry_config_from_settings"]
