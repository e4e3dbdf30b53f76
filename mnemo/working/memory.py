"""Bounded in-process working memory.

Holds the most recent entries for the running session. Capacity is
enforced after every insert:

- ``fifo``: evicts strictly by insertion order; reads do not matter.
- ``lru``: every read moves the entry to most recent; evicts least
  recently read.

Sessions can be linked (directed, idempotent) as lookup hints.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from mnemo.protocols import ValidationError
from mnemo.types import (
    WorkingMemoryEntry,
    WorkingMemoryMetadata,
    WorkingMemoryType,
    clamp_unit,
    now_utc,
)
from mnemo.vector.similarity import cosine_similarity, text_match_score

logger = logging.getLogger(__name__)

DEFAULT_WORKING_MEMORY_SIZE = 100


class EvictionStrategy(str, Enum):
    LRU = "lru"
    FIFO = "fifo"


def _copy(entry: WorkingMemoryEntry) -> WorkingMemoryEntry:
    return replace(
        entry,
        metadata=replace(entry.metadata),
        embedding=list(entry.embedding) if entry.embedding is not None else None,
    )


class WorkingMemory:
    """Bounded buffer of recent memory entries."""

    def __init__(
        self,
        max_entries: int = DEFAULT_WORKING_MEMORY_SIZE,
        strategy: Union[EvictionStrategy, str] = EvictionStrategy.LRU,
        clock: Callable[[], datetime] = now_utc,
    ):
        if max_entries <= 0:
            raise ValidationError("max_entries must be positive")
        self.max_entries = max_entries
        self.strategy = EvictionStrategy(strategy)
        self._clock = clock
        self._entries: "OrderedDict[str, WorkingMemoryEntry]" = OrderedDict()
        self._session_links: Dict[str, List[str]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def remember(
        self,
        content: str,
        type: Union[WorkingMemoryType, str] = WorkingMemoryType.EPISODIC,
        importance: float = 0.5,
        source: str = "user",
        session_id: Optional[str] = None,
        embedding: Optional[Sequence[float]] = None,
    ) -> str:
        """Store an entry and return its id. May evict older entries."""
        now = self._clock()
        entry_id = str(uuid.uuid4())
        self._entries[entry_id] = WorkingMemoryEntry(
            id=entry_id,
            type=WorkingMemoryType(type),
            content=content,
            metadata=WorkingMemoryMetadata(
                created_at=now,
                accessed_at=now,
                importance=clamp_unit(importance),
                source=source,
                session_id=session_id,
            ),
            embedding=list(embedding) if embedding is not None else None,
        )
        self._evict_if_needed()
        return entry_id

    def get(self, entry_id: str) -> Optional[WorkingMemoryEntry]:
        """Return an entry and record the access."""
        if not self.touch(entry_id):
            return None
        return _copy(self._entries[entry_id])

    def peek(self, entry_id: str) -> Optional[WorkingMemoryEntry]:
        """Return an entry without recording an access."""
        entry = self._entries.get(entry_id)
        return _copy(entry) if entry is not None else None

    def touch(self, entry_id: str) -> bool:
        """Bump access metadata; under LRU also mark as most recent."""
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        entry.metadata.accessed_at = self._clock()
        entry.metadata.access_count += 1
        if self.strategy == EvictionStrategy.LRU:
            self._entries.move_to_end(entry_id)
        return True

    def list(self) -> List[WorkingMemoryEntry]:
        """Entries in eviction order (next to be evicted first)."""
        return [_copy(e) for e in self._entries.values()]

    def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def set_embedding(self, entry_id: str, embedding: Sequence[float]) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None:
            return False
        entry.embedding = list(embedding)
        return True

    def search(
        self,
        query: str,
        limit: int = 5,
        query_embedding: Optional[Sequence[float]] = None,
    ) -> List[Tuple[WorkingMemoryEntry, float]]:
        """Score entries against a query without recording access.

        Cosine similarity when both the query and the entry carry
        embeddings of the same length, text matching otherwise.
        """
        if limit <= 0:
            return []
        scored = []
        for entry in self._entries.values():
            if (
                query_embedding is not None
                and entry.embedding is not None
                and len(entry.embedding) == len(query_embedding)
            ):
                score = cosine_similarity(query_embedding, entry.embedding)
            else:
                score = text_match_score(entry.content, query)
            if score > 0:
                scored.append((entry, score))
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return [(_copy(entry), score) for entry, score in scored[:limit]]

    def entries_for_session(self, session_id: str) -> List[WorkingMemoryEntry]:
        return [_copy(e) for e in self._entries.values() if e.metadata.session_id == session_id]

    def evict_idle(self, max_idle: timedelta) -> List[str]:
        """Remove entries not accessed within ``max_idle``. Returns their ids."""
        now = self._clock()
        stale = [
            entry_id
            for entry_id, entry in self._entries.items()
            if now - entry.metadata.accessed_at > max_idle
        ]
        for entry_id in stale:
            del self._entries[entry_id]
        return stale

    # === Session links ===

    def link_sessions(self, from_session: str, to_session: str) -> None:
        """Add a directed link. Linking twice is a no-op."""
        links = self._session_links.setdefault(from_session, [])
        if to_session not in links:
            links.append(to_session)

    def linked_sessions(self, session_id: str) -> List[str]:
        """Sessions linked from ``session_id``, in the order they were linked."""
        return list(self._session_links.get(session_id, []))

    def _evict_if_needed(self) -> None:
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug(f"Working memory full ({self.strategy.value}), evicted {evicted_id[:8]}")
