"""Classification of remote call failures into a closed error taxonomy.

Every failure leaving the transport or the lesson store is mapped to one
:class:`ErrorKind` with a fixed user-facing message. Classified errors are
forwarded to the metrics sink so threshold alerts see every failure.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from Lesson_Pipeline.services.llm.transport import ResponseValidationError
from Lesson_Pipeline.utils.errors import PipelineBaseError, ProblemDetail

if TYPE_CHECKING:
    from Lesson_Pipeline.observability.metrics import MetricsSink

logger = structlog.get_logger(__name__)


class ErrorKind(str, Enum):
    """Error categories surfaced by the pipeline."""

    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    AUTH_FAILED = "auth_failed"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    PAYLOAD_TOO_LARGE = "payload_too_large"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.RATE_LIMITED,
        ErrorKind.SERVICE_UNAVAILABLE,
        ErrorKind.NETWORK_ERROR,
        ErrorKind.TIMEOUT,
    }
)

MESSAGES: Mapping[ErrorKind, str] = {
    ErrorKind.RATE_LIMITED: "Rate limit exceeded. Please wait a moment and try again.",
    ErrorKind.INVALID_REQUEST: "Invalid request: {detail}",
    ErrorKind.AUTH_FAILED: "Authentication failed. Please check your API key.",
    ErrorKind.INSUFFICIENT_CREDITS: "Insufficient credits. Please check your provider account.",
    ErrorKind.RESOURCE_UNAVAILABLE: "The requested model is currently unavailable. Please try again later.",
    ErrorKind.PAYLOAD_TOO_LARGE: "Content too long for processing. Please try a shorter document.",
    ErrorKind.SERVICE_UNAVAILABLE: "Service temporarily unavailable. Please try again in a moment.",
    ErrorKind.TIMEOUT: "Request timed out. Please try again.",
    ErrorKind.NETWORK_ERROR: "Network connection error. Please check your internet connection and try again.",
    ErrorKind.VALIDATION_ERROR: "Invalid response format: {detail}",
    ErrorKind.UNKNOWN: "{detail}",
}

STATUS_KINDS: Mapping[int, ErrorKind] = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTH_FAILED,
    402: ErrorKind.INSUFFICIENT_CREDITS,
    404: ErrorKind.RESOURCE_UNAVAILABLE,
    413: ErrorKind.PAYLOAD_TOO_LARGE,
    429: ErrorKind.RATE_LIMITED,
}

_PROBLEM_STATUS: Mapping[ErrorKind, int] = {
    ErrorKind.TIMEOUT: 504,
    ErrorKind.NETWORK_ERROR: 502,
    ErrorKind.VALIDATION_ERROR: 502,
    ErrorKind.SERVICE_UNAVAILABLE: 503,
    ErrorKind.UNKNOWN: 500,
    **{kind: status for status, kind in STATUS_KINDS.items()},
}


@dataclass(frozen=True, slots=True)
class ErrorInfo:
    """Classified failure carried by a failed ``PipelineResult``."""

    kind: ErrorKind
    message: str
    retryable: bool
    status_code: int | None = None

    @classmethod
    def of(cls, kind: ErrorKind, detail: str = "", *, status_code: int | None = None) -> ErrorInfo:
        return cls(
            kind=kind,
            message=MESSAGES[kind].format(detail=detail),
            retryable=kind in RETRYABLE_KINDS,
            status_code=status_code,
        )

    def to_problem(self) -> ProblemDetail:
        return ProblemDetail(
            title=self.kind.value.replace("_", " ").capitalize(),
            status=self.status_code or _PROBLEM_STATUS[self.kind],
            detail=self.message,
            type=f"urn:lesson-pipeline:error:{self.kind.value}",
            extra={"retryable": self.retryable},
        )

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}


def classify_exception(exc: BaseException) -> ErrorInfo:
    """Map ``exc`` to an :class:`ErrorInfo` without side effects."""
    if isinstance(exc, ResponseValidationError):
        return ErrorInfo.of(ErrorKind.VALIDATION_ERROR, exc.details)

    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        detail = getattr(exc, "provider_message", None) or exc.response.reason_phrase
        if status in STATUS_KINDS:
            return ErrorInfo.of(STATUS_KINDS[status], detail, status_code=status)
        if 500 <= status <= 599:
            return ErrorInfo.of(ErrorKind.SERVICE_UNAVAILABLE, status_code=status)
        return ErrorInfo.of(ErrorKind.UNKNOWN, f"API error ({status}): {detail}", status_code=status)

    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ErrorInfo.of(ErrorKind.TIMEOUT)
    if isinstance(exc, httpx.TransportError):
        return ErrorInfo.of(ErrorKind.NETWORK_ERROR)

    if isinstance(exc, PipelineBaseError):
        return ErrorInfo.of(ErrorKind.UNKNOWN, exc.message, status_code=exc.problem.status)

    return ErrorInfo.of(ErrorKind.UNKNOWN, str(exc) or "An unexpected error occurred")


class ErrorClassifier:
    """Classifies failures for one provider and records them as error samples."""

    def __init__(self, provider: str, metrics: MetricsSink | None = None) -> None:
        self.provider = provider
        self._metrics = metrics

    def classify(self, exc: BaseException) -> ErrorInfo:
        info = classify_exception(exc)
        logger.warning(
            "llm.error.classified",
            provider=self.provider,
            error_kind=info.kind.value,
            retryable=info.retryable,
            status_code=info.status_code,
            error=type(exc).__name__,
        )
        if self._metrics is not None:
            self._metrics.record_error(self.provider, info.kind)
        return info


__all__ = [
    "ErrorClassifier",
    "ErrorInfo",
    "ErrorKind",
    "MESSAGES",
    "RETRYABLE_KINDS",
    "STATUS_KINDS",
    "classify_exception",
]
