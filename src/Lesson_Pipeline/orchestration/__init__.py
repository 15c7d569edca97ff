"""Pipeline orchestration: state machine and stage sequencing."""

from .orchestrator import PipelineOrchestrator, build_orchestrator, estimate_tokens, parse_quality_score
from .state import (
    InvalidTransition,
    PipelineResult,
    ProcessingRun,
    ProcessingStatus,
    ProgressEvent,
    ProgressLevel,
    SourceDocument,
)

__all__ = [
    "InvalidTransition",
    "PipelineOrchestrator",
    "PipelineResult",
    "ProcessingRun",
    "ProcessingStatus",
    "ProgressEvent",
    "ProgressLevel",
    "SourceDocument",
    "build_orchestrator",
    "estimate_tokens",
    "parse_quality_score",
]
