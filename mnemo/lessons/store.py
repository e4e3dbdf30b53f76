"""
Lesson storage.

Lessons are learned behavioural rules ("when X, do Y") with a confidence
and a scope. The store keeps them in memory, mirrors them into a vector
store for similarity search, and persists the full set as one JSON
document ``{"items": [...]}``. Every write goes to a temp file that is
renamed over the target, so readers never see a half-written file.

The file is loaded lazily, exactly once, on first use.
"""

import asyncio
import json
import logging
import os
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from mnemo.protocols import StorageError, ValidationError
from mnemo.types import (
    Lesson,
    LessonProfile,
    LessonScope,
    LessonSource,
    Metadata,
    VectorStoreEntry,
    clamp_unit,
    normalize_text,
    now_utc,
    parse_datetime,
    to_millis,
)
from mnemo.vector.embeddings import HASH_EMBEDDING_DIM, HashEmbedder, adapt_provider
from mnemo.vector.store import InMemoryVectorStore

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 8

_UPDATABLE_FIELDS = frozenset(
    {"trigger", "rule", "confidence", "scope", "project_id", "profile", "source", "metadata"}
)


@dataclass
class LessonQuery:
    """Filter for LessonStore.list() and LessonStore.search().

    Scope resolution: explicit ``scopes`` win; otherwise a ``project_id``
    selects project lessons for that project plus global lessons, and no
    project_id selects global lessons only.
    """

    project_id: Optional[str] = None
    scopes: Optional[List[LessonScope]] = None
    profiles: Optional[List[str]] = None
    min_confidence: Optional[float] = None
    limit: Optional[int] = None

    def resolve_scopes(self) -> List[LessonScope]:
        if self.scopes:
            return [LessonScope(s) for s in self.scopes]
        if self.project_id:
            return [LessonScope.PROJECT, LessonScope.GLOBAL]
        return [LessonScope.GLOBAL]

    def matches(self, lesson: Lesson) -> bool:
        if lesson.scope not in self.resolve_scopes():
            return False
        if lesson.scope == LessonScope.PROJECT:
            if not self.project_id or lesson.project_id != self.project_id:
                return False
        if self.profiles and lesson.profile not in self.profiles:
            return False
        if self.min_confidence is not None and lesson.confidence < self.min_confidence:
            return False
        return True


@dataclass
class LessonSearchResult:
    lesson: Lesson
    score: float


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept ISO strings or epoch milliseconds."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return parse_datetime(str(value))


def build_lesson_content(lesson: Lesson) -> str:
    """Text that is embedded for a lesson."""
    return f"{lesson.trigger}\n{lesson.rule}".strip()


def lesson_from_dict(data: Dict[str, Any], default_time: datetime) -> Optional[Lesson]:
    """Parse a stored lesson, normalizing it. Returns None for unusable items."""
    if not isinstance(data, dict) or not data.get("id"):
        return None
    trigger = normalize_text(str(data.get("trigger") or ""))
    rule = normalize_text(str(data.get("rule") or ""))
    if not trigger or not rule:
        return None

    project_id = data.get("projectId")
    scope = LessonScope(data.get("scope") or ("project" if project_id else "global"))
    if scope == LessonScope.PROJECT and not project_id:
        return None

    created_at = _parse_timestamp(data.get("createdAt")) or default_time
    updated_at = _parse_timestamp(data.get("updatedAt")) or created_at
    return Lesson(
        id=str(data["id"]),
        trigger=trigger,
        rule=rule,
        confidence=clamp_unit(data.get("confidence")),
        scope=scope,
        project_id=project_id if scope == LessonScope.PROJECT else None,
        profile=data.get("profile") or LessonProfile.DEFAULT.value,
        source=LessonSource(data.get("source") or "manual"),
        created_at=created_at,
        updated_at=updated_at,
        embedding=data.get("embedding"),
        metadata=data.get("metadata"),
    )


def _validate(lesson: Lesson) -> None:
    if not lesson.trigger or not lesson.rule:
        raise ValidationError("Lessons require non-empty trigger and rule")
    if lesson.scope == LessonScope.PROJECT and not lesson.project_id:
        raise ValidationError("Project-scoped lessons require project_id")


class LessonStore:
    """Persistent, vector-backed lesson storage.

    Args:
        file_path: JSON document to persist to. None keeps lessons in memory.
        embedding_provider: Provider for lesson embeddings. Defaults to a
            deterministic HashEmbedder.
        dimension: Dimension for the default HashEmbedder.
        clock: Source of created/updated timestamps.
    """

    def __init__(
        self,
        file_path: Optional[Union[str, Path]] = None,
        embedding_provider: Any = None,
        dimension: int = HASH_EMBEDDING_DIM,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.file_path = Path(file_path) if file_path is not None else None
        self._clock = clock
        self._provider = adapt_provider(
            embedding_provider if embedding_provider is not None else HashEmbedder(dimension)
        )
        self._vector_store = InMemoryVectorStore(
            dimension=self._provider.dimension,
            embedding_provider=self._provider,
        )
        self._lessons: Dict[str, Lesson] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    # === Public API ===

    async def add(
        self,
        trigger: str,
        rule: str,
        *,
        confidence: Optional[float] = None,
        scope: Optional[Union[LessonScope, str]] = None,
        project_id: Optional[str] = None,
        profile: str = LessonProfile.DEFAULT.value,
        source: Union[LessonSource, str] = LessonSource.MANUAL,
        metadata: Optional[Metadata] = None,
        id: Optional[str] = None,
    ) -> Lesson:
        """Add a lesson.

        Scope defaults to ``project`` when a project_id is given, else
        ``global``. A project_id on a global lesson is dropped.

        Raises:
            ValidationError: Empty trigger/rule, or project scope without
                a project_id.
        """
        await self._ensure_loaded()
        now = self._clock()
        resolved_scope = LessonScope(scope) if scope else (
            LessonScope.PROJECT if project_id else LessonScope.GLOBAL
        )
        lesson = Lesson(
            id=id or str(uuid.uuid4()),
            trigger=normalize_text(trigger),
            rule=normalize_text(rule),
            confidence=clamp_unit(confidence),
            scope=resolved_scope,
            project_id=project_id if resolved_scope == LessonScope.PROJECT else None,
            profile=profile or LessonProfile.DEFAULT.value,
            source=LessonSource(source),
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        _validate(lesson)

        lesson.embedding = await self._provider.embed(build_lesson_content(lesson))
        await self._store(lesson)
        logger.debug(f"Added lesson {lesson.id[:8]} ({lesson.scope.value})")
        return replace(lesson)

    async def update(self, lesson_id: str, **changes: Any) -> Optional[Lesson]:
        """Apply changes to a lesson. Returns None if the id is unknown.

        The embedding is recomputed only when trigger or rule text changes.
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update lesson fields: {', '.join(sorted(unknown))}")

        await self._ensure_loaded()
        current = self._lessons.get(lesson_id)
        if current is None:
            return None

        scope = LessonScope(changes["scope"]) if changes.get("scope") else current.scope
        project_id = changes.get("project_id") or current.project_id
        updated = replace(
            current,
            trigger=normalize_text(changes["trigger"]) if "trigger" in changes else current.trigger,
            rule=normalize_text(changes["rule"]) if "rule" in changes else current.rule,
            confidence=(
                clamp_unit(changes["confidence"]) if "confidence" in changes else current.confidence
            ),
            scope=scope,
            project_id=project_id if scope == LessonScope.PROJECT else None,
            profile=changes.get("profile") or current.profile,
            source=LessonSource(changes["source"]) if changes.get("source") else current.source,
            metadata=changes["metadata"] if "metadata" in changes else current.metadata,
            updated_at=self._clock(),
        )
        _validate(updated)

        if updated.trigger != current.trigger or updated.rule != current.rule or not updated.embedding:
            updated.embedding = await self._provider.embed(build_lesson_content(updated))
        await self._store(updated)
        return replace(updated)

    async def delete(self, lesson_id: str) -> bool:
        await self._ensure_loaded()
        if self._lessons.pop(lesson_id, None) is None:
            return False
        await self._vector_store.delete(lesson_id)
        await self._persist()
        return True

    async def get(self, lesson_id: str) -> Optional[Lesson]:
        await self._ensure_loaded()
        lesson = self._lessons.get(lesson_id)
        return replace(lesson) if lesson is not None else None

    async def list(self, query: Optional[LessonQuery] = None) -> List[Lesson]:
        """Lessons matching the filter, in insertion order."""
        await self._ensure_loaded()
        query = query or LessonQuery()
        items = [replace(lesson) for lesson in self._lessons.values() if query.matches(lesson)]
        if query.limit is not None:
            items = items[: max(query.limit, 0)]
        return items

    async def search(self, text: str, query: Optional[LessonQuery] = None) -> List[LessonSearchResult]:
        """Similarity search, then scope/profile/confidence filtering.

        Fetches ``limit * 3`` candidates so filtering still fills the limit.
        """
        await self._ensure_loaded()
        query = query or LessonQuery()
        limit = query.limit if query.limit is not None else DEFAULT_SEARCH_LIMIT
        if limit <= 0:
            return []

        candidates = await self._vector_store.search(text, limit=limit * 3)
        results: List[LessonSearchResult] = []
        for candidate in candidates:
            lesson = self._lessons.get(candidate.entry.id)
            if lesson is None or not query.matches(lesson):
                continue
            results.append(LessonSearchResult(lesson=replace(lesson), score=candidate.score))
            if len(results) >= limit:
                break
        return results

    # === Internals ===

    async def _store(self, lesson: Lesson) -> None:
        await self._index(lesson)
        await self._persist()

    async def _index(self, lesson: Lesson) -> None:
        self._lessons[lesson.id] = lesson
        await self._vector_store.upsert(
            VectorStoreEntry(
                id=lesson.id,
                content=build_lesson_content(lesson),
                embedding=lesson.embedding,
                metadata={"scope": lesson.scope.value, "profile": lesson.profile},
            )
        )

    async def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if self._loaded:
                return
            if self.file_path is not None:
                items = await asyncio.to_thread(self._read_items)
                await self._restore(items)
            self._loaded = True

    def _read_items(self) -> List[Dict[str, Any]]:
        try:
            with open(self.file_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise StorageError(f"Lesson file {self.file_path} is not valid JSON: {e}") from e
        items = data.get("items") if isinstance(data, dict) else None
        return items if isinstance(items, list) else []

    async def _restore(self, items: List[Dict[str, Any]]) -> None:
        default_time = self._clock()
        restored = 0
        for item in items:
            try:
                lesson = lesson_from_dict(item, default_time)
            except ValueError as e:
                logger.warning(f"Skipping malformed lesson in {self.file_path}: {e}")
                continue
            if lesson is None:
                logger.warning(f"Skipping invalid lesson in {self.file_path}")
                continue
            if not lesson.embedding or len(lesson.embedding) != self._provider.dimension:
                lesson.embedding = await self._provider.embed(build_lesson_content(lesson))
            await self._index(lesson)
            restored += 1
        logger.debug(f"Loaded {restored} lessons from {self.file_path}")

    async def _persist(self) -> None:
        if self.file_path is None:
            return
        payload = json.dumps(
            {"items": [lesson.to_dict() for lesson in self._lessons.values()]}, indent=2
        )
        async with self._write_lock:
            await asyncio.to_thread(self._write_atomic, payload)

    def _write_atomic(self, payload: str) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_name(
            f"{self.file_path.name}.{to_millis(self._clock())}.tmp"
        )
        try:
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(temp_path, self.file_path)
        finally:
            if temp_path.exists():
                temp_path.unlink()
