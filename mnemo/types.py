"""
Shared memory types for mnemo.

All record dataclasses live here. They are the shared vocabulary between
the stores, the consolidation layer and the manager: the manager creates a
MemoryRecord, the store keeps it, the lesson store persists Lessons.
"""

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# === JSON-compatible metadata ===

JSONValue = Union[str, int, float, bool, None, List["JSONValue"], Dict[str, "JSONValue"]]
Metadata = Dict[str, JSONValue]


# === Shared Utility Functions ===


def now_utc() -> datetime:
    """Get the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string, assuming UTC when no offset is given."""
    if not s:
        return None
    parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_millis(dt: datetime) -> int:
    """Epoch milliseconds for a datetime."""
    return int(dt.timestamp() * 1000)


def normalize_text(value: str) -> str:
    """Collapse whitespace runs and trim."""
    return re.sub(r"\s+", " ", value or "").strip()


def clamp_unit(value: Any, default: float = 0.5) -> float:
    """Clamp a number into [0, 1]; non-numbers and NaN become ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        return default
    return max(0.0, min(1.0, float(value)))


# === Enums ===


class MemoryType(str, Enum):
    """Kinds of long-term memory records."""

    FACT = "fact"
    PREFERENCE = "preference"
    CODEBASE = "codebase"
    CONVERSATION = "conversation"
    DECISION = "decision"
    ERROR = "error"
    TOOL_RESULT = "tool_result"
    SUMMARY = "summary"


VALID_MEMORY_TYPE_VALUES = frozenset(m.value for m in MemoryType)


class LessonScope(str, Enum):
    PROJECT = "project"
    GLOBAL = "global"


class LessonProfile(str, Enum):
    DEFAULT = "default"
    STRICT_REVIEWER = "strict-reviewer"
    CREATIVE_PROTOTYPER = "creative-prototyper"


class LessonSource(str, Enum):
    CRITIC = "critic"
    MANUAL = "manual"


class PolicyKind(str, Enum):
    """Whether a learned rule must be obeyed or is a preference."""

    HARD = "hard"
    SOFT = "soft"


class WorkingMemoryType(str, Enum):
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"


class SearchMethod(str, Enum):
    TEXT = "text"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    RECENCY = "recency"


# === Long-term memory ===


@dataclass
class MemoryRecord:
    """A durable record of something the agent should recall later."""

    id: str
    type: MemoryType
    content: str
    importance: float
    created_at: datetime
    last_accessed_at: datetime
    access_count: int = 0
    source: str = "user"
    tags: List[str] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    session_id: Optional[str] = None
    related_ids: Optional[List[str]] = None
    metadata: Optional[Metadata] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "importance": self.importance,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "access_count": self.access_count,
            "source": self.source,
            "tags": list(self.tags),
            "embedding": self.embedding,
            "session_id": self.session_id,
            "related_ids": self.related_ids,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryRecord":
        created_at = parse_datetime(data.get("created_at")) or now_utc()
        return cls(
            id=data["id"],
            type=MemoryType(data["type"]),
            content=data.get("content", ""),
            importance=clamp_unit(data.get("importance")),
            created_at=created_at,
            last_accessed_at=parse_datetime(data.get("last_accessed_at")) or created_at,
            access_count=int(data.get("access_count") or 0),
            source=data.get("source") or "user",
            tags=list(data.get("tags") or []),
            embedding=data.get("embedding"),
            session_id=data.get("session_id"),
            related_ids=data.get("related_ids"),
            metadata=data.get("metadata"),
        )


@dataclass
class MemoryQuery:
    """Filters and scoring inputs for MemoryStore.query()."""

    text: Optional[str] = None
    embedding: Optional[List[float]] = None
    types: Optional[List[MemoryType]] = None
    tags: Optional[List[str]] = None
    source: Optional[str] = None
    session_id: Optional[str] = None
    min_importance: Optional[float] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    limit: int = 10
    include_embeddings: bool = False


@dataclass
class SearchMeta:
    query: MemoryQuery
    search_time_ms: float
    method: SearchMethod


@dataclass
class MemorySearchResult:
    memories: List[MemoryRecord]
    scores: List[float]
    total: int
    meta: SearchMeta


@dataclass
class ConsolidationResult:
    """Outcome of a MemoryStore consolidation pass."""

    memories_before: int
    memories_after: int
    deleted: int = 0
    merged: int = 0
    summaries: List[str] = field(default_factory=list)
    duration_ms: float = 0.0


@dataclass
class MemoryStats:
    total: int
    by_type: Dict[str, int]
    average_importance: float
    size_bytes: int
    oldest_at: Optional[datetime] = None
    newest_at: Optional[datetime] = None


@dataclass
class MemoryEvent:
    """Event emitted by the memory manager."""

    type: str
    timestamp: datetime
    data: Dict[str, Any] = field(default_factory=dict)


# === Lessons ===


@dataclass
class Lesson:
    """A learned behavioural rule with a trigger, confidence and scope."""

    id: str
    trigger: str
    rule: str
    confidence: float
    scope: LessonScope
    profile: str
    source: LessonSource
    created_at: datetime
    updated_at: datetime
    project_id: Optional[str] = None
    embedding: Optional[List[float]] = None
    metadata: Optional[Metadata] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "trigger": self.trigger,
            "rule": self.rule,
            "confidence": self.confidence,
            "scope": self.scope.value,
            "profile": self.profile,
            "source": self.source.value,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
        if self.project_id is not None:
            data["projectId"] = self.project_id
        if self.embedding is not None:
            data["embedding"] = self.embedding
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data


@dataclass
class SemanticMemoryRecord:
    """A lesson together with its resolved hard/soft policy."""

    lesson: Lesson
    policy: PolicyKind

    @property
    def id(self) -> str:
        return self.lesson.id

    @property
    def rule(self) -> str:
        return self.lesson.rule

    @property
    def confidence(self) -> float:
        return self.lesson.confidence


# === Working memory ===


@dataclass
class WorkingMemoryMetadata:
    created_at: datetime
    accessed_at: datetime
    access_count: int = 0
    importance: float = 0.5
    source: str = "user"
    session_id: Optional[str] = None


@dataclass
class WorkingMemoryEntry:
    id: str
    type: WorkingMemoryType
    content: str
    metadata: WorkingMemoryMetadata
    embedding: Optional[List[float]] = None


# === Vector store ===


@dataclass
class VectorStoreEntry:
    """Unit stored by vector index / vector store backends."""

    id: str
    content: str
    embedding: Optional[List[float]] = None
    metadata: Optional[Metadata] = None


@dataclass
class VectorSearchResult:
    entry: VectorStoreEntry
    score: float
