"""Hard/soft policy view over the lesson store.

A lesson is a *hard* policy (must obey) when its metadata says so or its
confidence reaches ``hard_threshold``; otherwise it is *soft* (preference).
Policies are always derived, never stored.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from mnemo.lessons.store import LessonQuery, LessonStore
from mnemo.protocols import ValidationError
from mnemo.types import Lesson, PolicyKind, SemanticMemoryRecord, normalize_text

logger = logging.getLogger(__name__)

DEFAULT_HARD_THRESHOLD = 0.85

POLICY_PRIORITY = {PolicyKind.HARD: 0, PolicyKind.SOFT: 1}


@dataclass
class PolicyMergeResult:
    hard: List[SemanticMemoryRecord] = field(default_factory=list)
    soft: List[SemanticMemoryRecord] = field(default_factory=list)
    merged: List[SemanticMemoryRecord] = field(default_factory=list)


@dataclass
class SemanticSearchResult:
    record: SemanticMemoryRecord
    score: float


def resolve_policy(lesson: Lesson, hard_threshold: float = DEFAULT_HARD_THRESHOLD) -> PolicyKind:
    """Explicit ``metadata["policy"]`` wins, otherwise the confidence threshold."""
    explicit = (lesson.metadata or {}).get("policy")
    if isinstance(explicit, str) and explicit.lower() in (PolicyKind.HARD.value, PolicyKind.SOFT.value):
        return PolicyKind(explicit.lower())
    return PolicyKind.HARD if lesson.confidence >= hard_threshold else PolicyKind.SOFT


def _rule_key(rule: str) -> str:
    return normalize_text(rule).lower()


def _record_sort_key(record: SemanticMemoryRecord) -> Tuple[Any, ...]:
    return (
        POLICY_PRIORITY[record.policy],
        -record.confidence,
        -record.lesson.updated_at.timestamp(),
        record.rule,
        record.id,
    )


def merge_policies(
    records: List[SemanticMemoryRecord],
    hard_limit: Optional[int] = None,
    soft_limit: Optional[int] = None,
    total_limit: Optional[int] = None,
) -> PolicyMergeResult:
    """Partition, order and deduplicate policy records.

    Soft records whose normalized rule repeats a hard rule are dropped.
    Per-bucket limits apply first, then ``total_limit`` over the
    hard-then-soft concatenation. ``hard`` and ``soft`` in the result hold
    exactly what made it into ``merged``.
    """
    hard = sorted((r for r in records if r.policy == PolicyKind.HARD), key=_record_sort_key)
    hard_rules = {_rule_key(r.rule) for r in hard}
    soft = sorted(
        (r for r in records if r.policy == PolicyKind.SOFT and _rule_key(r.rule) not in hard_rules),
        key=_record_sort_key,
    )

    if hard_limit is not None:
        hard = hard[: max(hard_limit, 0)]
    if soft_limit is not None:
        soft = soft[: max(soft_limit, 0)]

    merged = hard + soft
    if total_limit is not None:
        merged = merged[: max(total_limit, 0)]
        hard = hard[: len(merged)]
        soft = soft[: max(len(merged) - len(hard), 0)]

    return PolicyMergeResult(hard=hard, soft=soft, merged=merged)


class SemanticMemoryStore:
    """Lesson store wrapper that attaches a hard/soft policy to every lesson.

    Args:
        lesson_store: Backing store. A fresh in-memory one is created if None.
        hard_threshold: Confidence at or above which a lesson is hard.
    """

    def __init__(self, lesson_store: Optional[LessonStore] = None, hard_threshold: float = DEFAULT_HARD_THRESHOLD):
        if not 0.0 <= hard_threshold <= 1.0:
            raise ValidationError("hard_threshold must be between 0 and 1")
        self.lessons = lesson_store or LessonStore()
        self.hard_threshold = hard_threshold

    def to_record(self, lesson: Lesson) -> SemanticMemoryRecord:
        return SemanticMemoryRecord(lesson=lesson, policy=resolve_policy(lesson, self.hard_threshold))

    async def add(self, trigger: str, rule: str, *, policy: Optional[PolicyKind] = None, **kwargs: Any) -> SemanticMemoryRecord:
        """Add a lesson. ``policy`` pins the policy regardless of confidence."""
        if policy is not None:
            metadata: Dict[str, Any] = dict(kwargs.pop("metadata", None) or {})
            metadata["policy"] = PolicyKind(policy).value
            kwargs["metadata"] = metadata
        return self.to_record(await self.lessons.add(trigger, rule, **kwargs))

    async def update(self, lesson_id: str, **changes: Any) -> Optional[SemanticMemoryRecord]:
        lesson = await self.lessons.update(lesson_id, **changes)
        return self.to_record(lesson) if lesson is not None else None

    async def delete(self, lesson_id: str) -> bool:
        return await self.lessons.delete(lesson_id)

    async def get(self, lesson_id: str) -> Optional[SemanticMemoryRecord]:
        lesson = await self.lessons.get(lesson_id)
        return self.to_record(lesson) if lesson is not None else None

    async def list(self, query: Optional[LessonQuery] = None) -> List[SemanticMemoryRecord]:
        return [self.to_record(lesson) for lesson in await self.lessons.list(query)]

    async def search(self, text: str, query: Optional[LessonQuery] = None) -> List[SemanticSearchResult]:
        """Lesson search ordered by policy, then score, confidence, recency, rule, id."""
        results = [
            SemanticSearchResult(record=self.to_record(r.lesson), score=r.score)
            for r in await self.lessons.search(text, query)
        ]
        results.sort(
            key=lambda r: (
                POLICY_PRIORITY[r.record.policy],
                -r.score,
                -r.record.confidence,
                -r.record.lesson.updated_at.timestamp(),
                r.record.rule,
                r.record.id,
            )
        )
        return results

    async def get_policies(
        self,
        query: Optional[LessonQuery] = None,
        hard_limit: Optional[int] = None,
        soft_limit: Optional[int] = None,
        total_limit: Optional[int] = None,
    ) -> PolicyMergeResult:
        """Merged hard/soft view of the lessons matching ``query``."""
        records = await self.list(query)
        result = merge_policies(records, hard_limit=hard_limit, soft_limit=soft_limit, total_limit=total_limit)
        logger.debug(f"Merged policies: {len(result.hard)} hard, {len(result.soft)} soft")
        return result
