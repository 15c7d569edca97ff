"""Lesson pipeline: rate-limited, retrying orchestration of remote language-model stages."""

__version__ = "0.1.0"

__all__ = ["__version__"]
