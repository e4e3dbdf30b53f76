"""
In-process record store for long-term memories.

Supports CRUD, keyword search, embedding search, filtered/hybrid queries,
consolidation (pruning and conversation summaries) and importance decay.

Access bookkeeping: ``access_count`` and ``last_accessed_at`` are only
changed by read paths (get, search, semantic_search, query). Writes never
touch them.
"""

import json
import logging
import math
import time
from dataclasses import fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from mnemo.protocols import ValidationError
from mnemo.types import (
    ConsolidationResult,
    MemoryQuery,
    MemoryRecord,
    MemorySearchResult,
    MemoryStats,
    MemoryType,
    Metadata,
    SearchMeta,
    SearchMethod,
    clamp_unit,
    now_utc,
)
from mnemo.vector.similarity import cosine_similarity

logger = logging.getLogger(__name__)

DEFAULT_TEXT_WEIGHT = 0.4
DEFAULT_SEMANTIC_WEIGHT = 0.6
DEFAULT_SEMANTIC_THRESHOLD = 0.7

# Consolidation
PRUNE_IMPORTANCE = 0.3
PRUNE_AGE = timedelta(days=7)
MAX_CONVERSATIONS = 50
SUMMARY_SNIPPET_CHARS = 100
SUMMARY_MAX_CHARS = 500

# Decay / recency
DECAY_GRACE_DAYS = 1.0
RECENCY_HALF_WINDOW_DAYS = 30.0

_SECONDS_PER_DAY = 86400.0
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

_PROTECTED_FIELDS = frozenset({"id", "access_count", "last_accessed_at"})
_RECORD_FIELDS = frozenset(f.name for f in fields(MemoryRecord))


def _base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _copy(record: MemoryRecord) -> MemoryRecord:
    return replace(record, tags=list(record.tags))


def _coerce_type(value: Union[MemoryType, str]) -> MemoryType:
    try:
        return MemoryType(value)
    except ValueError:
        raise ValidationError(f"Invalid memory type: {value!r}") from None


def text_relevance(record: MemoryRecord, query: str) -> float:
    """Keyword relevance of a record for a lowercased query.

    +1.0 if the content contains the whole query; for each query word of
    two or more characters, +0.5 for an exact content word, +0.3 for a
    substring and +0.4 for a tag match. Boosted by importance.
    """
    content = record.content.lower()
    tags = " ".join(record.tags).lower()
    content_words = set(content.split())

    score = 0.0
    if query and query in content:
        score += 1.0

    for word in query.split():
        if len(word) < 2:
            continue
        if word in content_words:
            score += 0.5
        if word in content:
            score += 0.3
        if word in tags:
            score += 0.4

    return score * (1 + record.importance * 0.5)


class MemoryStore:
    """In-memory implementation of the long-term record store.

    Args:
        clock: Time source for timestamps, ages and decay.
        text_weight: Weight of the keyword score in hybrid queries.
        semantic_weight: Weight of the cosine score in hybrid queries.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = now_utc,
        text_weight: float = DEFAULT_TEXT_WEIGHT,
        semantic_weight: float = DEFAULT_SEMANTIC_WEIGHT,
    ):
        self._clock = clock
        self.text_weight = text_weight
        self.semantic_weight = semantic_weight
        self._memories: Dict[str, MemoryRecord] = {}
        self._counter = 0

    def __len__(self) -> int:
        return len(self._memories)

    def _generate_id(self) -> str:
        millis = int(self._clock().timestamp() * 1000)
        while True:
            self._counter += 1
            record_id = f"mem-{_base36(millis)}-{_base36(self._counter)}"
            if record_id not in self._memories:
                return record_id

    def _touch(self, record: MemoryRecord) -> None:
        record.access_count += 1
        record.last_accessed_at = self._clock()

    # === CRUD ===

    async def add(
        self,
        content: str,
        type: Union[MemoryType, str] = MemoryType.FACT,
        importance: float = 0.5,
        *,
        source: str = "user",
        tags: Optional[Iterable[str]] = None,
        embedding: Optional[Sequence[float]] = None,
        session_id: Optional[str] = None,
        related_ids: Optional[List[str]] = None,
        metadata: Optional[Metadata] = None,
        created_at: Optional[datetime] = None,
    ) -> str:
        """Store a new record and return its generated id."""
        memory_type = _coerce_type(type)
        created = created_at or self._clock()
        record_id = self._generate_id()
        self._memories[record_id] = MemoryRecord(
            id=record_id,
            type=memory_type,
            content=content,
            importance=clamp_unit(importance),
            created_at=created,
            last_accessed_at=created,
            access_count=0,
            source=source,
            tags=list(dict.fromkeys(tags or [])),
            embedding=list(embedding) if embedding is not None else None,
            session_id=session_id,
            related_ids=list(related_ids) if related_ids is not None else None,
            metadata=metadata,
        )
        return record_id

    async def get(self, memory_id: str) -> Optional[MemoryRecord]:
        """Return a copy of the record (and count the access), or None."""
        record = self._memories.get(memory_id)
        if record is None:
            return None
        self._touch(record)
        return _copy(record)

    async def update(self, memory_id: str, **changes: Any) -> None:
        """Apply field changes. Unknown ids are a silent no-op.

        ``id``, ``access_count`` and ``last_accessed_at`` are not writable
        and are ignored.
        """
        unknown = set(changes) - _RECORD_FIELDS
        if unknown:
            raise ValidationError(f"Unknown memory fields: {', '.join(sorted(unknown))}")

        record = self._memories.get(memory_id)
        if record is None:
            return

        for name, value in changes.items():
            if name in _PROTECTED_FIELDS:
                continue
            if name == "type":
                value = _coerce_type(value)
            elif name == "importance":
                value = clamp_unit(value, default=record.importance)
            elif name == "tags":
                value = list(dict.fromkeys(value or []))
            setattr(record, name, value)

    async def delete(self, memory_id: str) -> bool:
        return self._memories.pop(memory_id, None) is not None

    async def count(self) -> int:
        return len(self._memories)

    # === Search ===

    async def search(
        self,
        text: str,
        limit: int = 10,
        types: Optional[List[MemoryType]] = None,
    ) -> List[MemoryRecord]:
        """Keyword search. Only records scoring above zero are returned."""
        query = text.lower()
        scored = []
        for record in self._memories.values():
            if types and record.type not in types:
                continue
            score = text_relevance(record, query)
            if score > 0:
                scored.append((record, score))
        return self._finish(scored, limit)

    async def semantic_search(
        self,
        embedding: Sequence[float],
        limit: int = 10,
        threshold: float = DEFAULT_SEMANTIC_THRESHOLD,
    ) -> List[MemoryRecord]:
        """Cosine search over records that carry an embedding."""
        scored = []
        for record in self._memories.values():
            if not record.embedding or len(record.embedding) != len(embedding):
                continue
            score = cosine_similarity(embedding, record.embedding)
            if score >= threshold:
                scored.append((record, score))
        return self._finish(scored, limit)

    def _finish(self, scored: List[Tuple[MemoryRecord, float]], limit: int) -> List[MemoryRecord]:
        scored.sort(key=lambda pair: pair[1], reverse=True)
        results = []
        for record, _score in scored[: max(limit, 0)]:
            self._touch(record)
            results.append(_copy(record))
        return results

    def _semantic_score(self, record: MemoryRecord, embedding: Sequence[float]) -> float:
        if not record.embedding or len(record.embedding) != len(embedding):
            return 0.0
        return cosine_similarity(embedding, record.embedding)

    def _recency_score(self, record: MemoryRecord, now: datetime) -> float:
        age_days = (now - record.created_at).total_seconds() / _SECONDS_PER_DAY
        return math.exp(-age_days / RECENCY_HALF_WINDOW_DAYS)

    def _matches(self, record: MemoryRecord, query: MemoryQuery) -> bool:
        if query.types and record.type not in query.types:
            return False
        if query.tags and not any(tag in record.tags for tag in query.tags):
            return False
        if query.source and record.source != query.source:
            return False
        if query.session_id and record.session_id != query.session_id:
            return False
        if query.min_importance is not None and record.importance < query.min_importance:
            return False
        if query.created_after is not None and record.created_at < query.created_after:
            return False
        if query.created_before is not None and record.created_at > query.created_before:
            return False
        return True

    async def query(self, query: MemoryQuery) -> MemorySearchResult:
        """Filter, then rank by the best method the query allows.

        hybrid (text and embedding), semantic (embedding), text (text), or
        recency (neither): ``importance * 0.5 + exp(-age_days / 30) * 0.5``.
        """
        start = time.perf_counter()
        now = self._clock()
        candidates = [r for r in self._memories.values() if self._matches(r, query)]

        text = query.text.lower() if query.text else None
        if text and query.embedding:
            method = SearchMethod.HYBRID
            scored = [
                (
                    r,
                    text_relevance(r, text) * self.text_weight
                    + self._semantic_score(r, query.embedding) * self.semantic_weight,
                )
                for r in candidates
            ]
        elif query.embedding:
            method = SearchMethod.SEMANTIC
            scored = [(r, self._semantic_score(r, query.embedding)) for r in candidates]
        elif text:
            method = SearchMethod.TEXT
            scored = [(r, text_relevance(r, text)) for r in candidates]
        else:
            method = SearchMethod.RECENCY
            scored = [(r, r.importance * 0.5 + self._recency_score(r, now) * 0.5) for r in candidates]

        scored.sort(key=lambda pair: pair[1], reverse=True)
        total = len(scored)
        limited = scored[: max(query.limit, 0)]

        memories = []
        for record, _score in limited:
            self._touch(record)
            copy = _copy(record)
            if not query.include_embeddings:
                copy.embedding = None
            memories.append(copy)

        return MemorySearchResult(
            memories=memories,
            scores=[score for _record, score in limited],
            total=total,
            meta=SearchMeta(
                query=query,
                search_time_ms=(time.perf_counter() - start) * 1000,
                method=method,
            ),
        )

    # === Listing ===

    async def get_recent(self, limit: int = 10) -> List[MemoryRecord]:
        records = sorted(self._memories.values(), key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in records[: max(limit, 0)]]

    async def get_by_type(self, memory_type: Union[MemoryType, str], limit: int = 10) -> List[MemoryRecord]:
        wanted = _coerce_type(memory_type)
        records = sorted(
            (r for r in self._memories.values() if r.type == wanted),
            key=lambda r: r.importance,
            reverse=True,
        )
        return [_copy(r) for r in records[: max(limit, 0)]]

    async def get_by_tags(self, tags: List[str], limit: int = 10) -> List[MemoryRecord]:
        records = sorted(
            (r for r in self._memories.values() if any(t in r.tags for t in tags)),
            key=lambda r: r.importance,
            reverse=True,
        )
        return [_copy(r) for r in records[: max(limit, 0)]]

    def get_all(self) -> List[MemoryRecord]:
        """Copies of every record, in insertion order. Does not count as access."""
        return [_copy(r) for r in self._memories.values()]

    async def bulk_import(self, records: Iterable[MemoryRecord]) -> int:
        """Insert records as-is (ids and access data kept). Returns the count."""
        imported = 0
        for record in records:
            self._memories[record.id] = _copy(record)
            imported += 1
        return imported

    async def clear(self) -> None:
        self._memories.clear()

    # === Maintenance ===

    async def consolidate(self) -> ConsolidationResult:
        """Prune stale low-importance records and summarize old conversations.

        Records with importance below 0.3 created more than 7 days ago are
        deleted. If more than 50 conversation records remain, the oldest
        overflow is replaced by a single summary record.
        """
        start = time.perf_counter()
        now = self._clock()
        before = len(self._memories)
        deleted = 0
        merged = 0
        summaries: List[str] = []

        cutoff = now - PRUNE_AGE
        for record in list(self._memories.values()):
            if record.importance < PRUNE_IMPORTANCE and record.created_at < cutoff:
                del self._memories[record.id]
                deleted += 1

        conversations = sorted(
            (r for r in self._memories.values() if r.type == MemoryType.CONVERSATION),
            key=lambda r: r.created_at,
        )
        overflow = conversations[: max(len(conversations) - MAX_CONVERSATIONS, 0)]
        if overflow:
            summary = " | ".join(r.content[:SUMMARY_SNIPPET_CHARS] for r in overflow)
            for record in overflow:
                del self._memories[record.id]
                deleted += 1
            if summary:
                await self.add(
                    summary[:SUMMARY_MAX_CHARS],
                    MemoryType.SUMMARY,
                    0.5,
                    source="consolidation",
                    tags=["auto-summary"],
                )
                summaries.append(summary[:SUMMARY_SNIPPET_CHARS])
                merged += len(overflow)

        result = ConsolidationResult(
            memories_before=before,
            memories_after=len(self._memories),
            deleted=deleted,
            merged=merged,
            summaries=summaries,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        logger.debug(
            f"Consolidated memory store: {before} -> {result.memories_after} "
            f"(deleted={deleted}, merged={merged})"
        )
        return result

    async def apply_decay(self, rate: float) -> int:
        """Decay importance of records idle for more than a day.

        importance *= (1 - rate) ** days_since_access. Returns how many
        records were decayed.

        Raises:
            ValidationError: If rate is outside [0, 1].
        """
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or not 0.0 <= rate <= 1.0:
            raise ValidationError(f"Decay rate must be between 0 and 1, got {rate!r}")

        now = self._clock()
        decayed = 0
        for record in self._memories.values():
            days = (now - record.last_accessed_at).total_seconds() / _SECONDS_PER_DAY
            if days > DECAY_GRACE_DAYS:
                record.importance = clamp_unit(record.importance * (1 - rate) ** days, default=0.0)
                decayed += 1
        return decayed

    async def get_stats(self) -> MemoryStats:
        by_type = {t.value: 0 for t in MemoryType}
        total_importance = 0.0
        size_bytes = 0
        oldest: Optional[datetime] = None
        newest: Optional[datetime] = None

        for record in self._memories.values():
            by_type[record.type.value] += 1
            total_importance += record.importance
            size_bytes += len(json.dumps(record.to_dict()))
            if oldest is None or record.created_at < oldest:
                oldest = record.created_at
            if newest is None or record.created_at > newest:
                newest = record.created_at

        total = len(self._memories)
        return MemoryStats(
            total=total,
            by_type=by_type,
            average_importance=total_importance / total if total else 0.0,
            size_bytes=size_bytes,
            oldest_at=oldest,
            newest_at=newest,
        )
