"""Learned rules (lessons) and their hard/soft policy view."""

from mnemo.lessons.semantic import (
    DEFAULT_HARD_THRESHOLD,
    PolicyMergeResult,
    SemanticMemoryStore,
    SemanticSearchResult,
    merge_policies,
    resolve_policy,
)
from mnemo.lessons.store import LessonQuery, LessonSearchResult, LessonStore

__all__ = [
    "DEFAULT_HARD_THRESHOLD",
    "LessonQuery",
    "LessonSearchResult",
    "LessonStore",
    "PolicyMergeResult",
    "SemanticMemoryStore",
    "SemanticSearchResult",
    "merge_policies",
    "resolve_policy",
]
