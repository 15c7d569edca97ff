"""Per-document processing state machine and result types."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Generic, TypeVar

from Lesson_Pipeline.services.llm.errors import ErrorInfo
from Lesson_Pipeline.utils.errors import PipelineBaseError

T = TypeVar("T")


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    PROCESSING = "processing"
    EVALUATING = "evaluating"
    REFINING = "refining"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({ProcessingStatus.COMPLETE, ProcessingStatus.ERROR})

_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.IDLE: frozenset({ProcessingStatus.UPLOADING}),
    ProcessingStatus.UPLOADING: frozenset({ProcessingStatus.PROCESSING}),
    ProcessingStatus.PROCESSING: frozenset({ProcessingStatus.EVALUATING}),
    ProcessingStatus.EVALUATING: frozenset({ProcessingStatus.REFINING, ProcessingStatus.COMPLETE}),
    ProcessingStatus.REFINING: frozenset({ProcessingStatus.COMPLETE}),
    ProcessingStatus.COMPLETE: frozenset(),
    ProcessingStatus.ERROR: frozenset(),
}


class InvalidTransition(PipelineBaseError):
    def __init__(self, current: ProcessingStatus, target: ProcessingStatus) -> None:
        super().__init__(
            f"Cannot move from {current.value} to {target.value}",
            status=409,
            extra={"current": current.value, "target": target.value},
        )
        self.current = current
        self.target = target


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    if target is ProcessingStatus.ERROR:
        return current not in TERMINAL_STATUSES
    return target in _TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class PipelineResult(Generic[T]):
    """Outcome of one public pipeline operation."""

    success: bool
    data: T | None = None
    error: ErrorInfo | None = None

    @classmethod
    def ok(cls, data: T) -> PipelineResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: ErrorInfo) -> PipelineResult[T]:
        return cls(success=False, error=error)

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data}
        assert self.error is not None
        return {"success": False, "error": self.error.to_dict()}


class ProgressLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One entry of the progress trail emitted while processing."""

    level: ProgressLevel
    message: str
    status: ProcessingStatus | None = None
    unit_id: str | None = None
    course_id: str | None = None
    agent: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "status": self.status.value if self.status else None,
            "unit_id": self.unit_id,
            "course_id": self.course_id,
            "agent": self.agent,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True, slots=True)
class SourceDocument:
    """Uploaded document handed to ``process_document``."""

    name: str
    content: str
    size: int

    @classmethod
    def from_text(cls, name: str, content: str) -> SourceDocument:
        return cls(name=name, content=content, size=len(content.encode("utf-8")))

    @classmethod
    def from_path(cls, path: str | Path) -> SourceDocument:
        source = Path(path)
        raw = source.read_bytes()
        return cls(name=source.name, content=raw.decode("utf-8", errors="replace"), size=len(raw))

    @property
    def title(self) -> str:
        """File name without its final extension."""
        stem, dot, _ = self.name.rpartition(".")
        return stem if dot and stem else self.name


@dataclass(slots=True)
class ProcessingRun:
    """Mutable record of one document moving through the state machine."""

    document: str
    status: ProcessingStatus = ProcessingStatus.IDLE
    lesson_id: str | None = None
    quality_score: float | None = None
    refined: bool = False
    error: ErrorInfo | None = None
    events: list[ProgressEvent] = field(default_factory=list)

    def transition(self, target: ProcessingStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransition(self.status, target)
        self.status = target

    def fail(self, error: ErrorInfo) -> None:
        self.transition(ProcessingStatus.ERROR)
        self.error = error

    @property
    def succeeded(self) -> bool:
        return self.status is ProcessingStatus.COMPLETE

    def result(self) -> PipelineResult[dict[str, Any]]:
        if self.error is not None:
            return PipelineResult.fail(self.error)
        return PipelineResult.ok(
            {
                "lesson_id": self.lesson_id,
                "quality_score": self.quality_score,
                "refined": self.refined,
                "status": self.status.value,
            }
        )


__all__ = [
    "InvalidTransition",
    "PipelineResult",
    "ProcessingRun",
    "ProcessingStatus",
    "ProgressEvent",
    "ProgressLevel",
    "SourceDocument",
    "TERMINAL_STATUSES",
    "can_transition",
]
