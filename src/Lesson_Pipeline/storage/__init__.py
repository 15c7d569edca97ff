"""Lesson persistence backends."""

from .lessons import (
    InMemoryLessonStore,
    Lesson,
    LessonNotFoundError,
    LessonStatus,
    LessonStore,
    LessonStoreError,
    NotAuthenticatedError,
    NotEqual,
    PersistenceUnavailableError,
    RestLessonStore,
    create_lesson_store,
)

__all__ = [
    "InMemoryLessonStore",
    "Lesson",
    "LessonNotFoundError",
    "LessonStatus",
    "LessonStore",
    "LessonStoreError",
    "NotAuthenticatedError",
    "NotEqual",
    "PersistenceUnavailableError",
    "RestLessonStore",
    "create_lesson_store",
]
