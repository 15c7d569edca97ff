"""Problem detail helpers shared by the transport, store and CLI layers.

Key Responsibilities:
    - Provide an RFC 7807 style payload used when errors leave the process
      (CLI ``--json`` output, logs)
    - Supply the base exception every pipeline-raised failure derives from

Collaborators:
    - Upstream: Transport and persistence code raise ``PipelineBaseError``
      subclasses; the error classifier turns them into ``ErrorInfo`` values
    - Downstream: ``ErrorInfo.to_problem`` and the CLI serialise
      :class:`ProblemDetail`

Side Effects:
    - None; helpers are pure data containers
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

__all__ = ["PipelineBaseError", "ProblemDetail"]


@dataclass(slots=True)
class ProblemDetail:
    """Lightweight problem details object compliant with RFC 7807."""

    title: str
    status: int
    detail: str | None = None
    type: str = "about:blank"
    instance: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def model_dump(self) -> dict[str, Any]:
        """Return a dictionary representation with optional fields dropped."""
        payload = {key: value for key, value in asdict(self).items() if value is not None}
        if not payload.get("extra"):
            payload.pop("extra", None)
        return payload


class PipelineBaseError(RuntimeError):
    """Base exception that carries a :class:`ProblemDetail` instance."""

    def __init__(
        self,
        message: str,
        *,
        status: int = 500,
        detail: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> None:
        """Initialise the exception with structured problem detail attributes.

        Args:
            message: Human readable error summary.
            status: HTTP-like status code associated with the problem.
            detail: Optional detailed description of the failure.
            extra: Additional attributes included in the serialized payload.
        """
        super().__init__(message)
        self.message = message
        self.problem = ProblemDetail(
            title=message,
            status=status,
            detail=detail,
            extra=dict(extra or {}),
        )
