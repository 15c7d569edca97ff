"""Utility modules shared across the pipeline."""

from .errors import PipelineBaseError, ProblemDetail


__all__ = ["PipelineBaseError", "ProblemDetail"]
