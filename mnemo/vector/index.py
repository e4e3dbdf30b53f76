"""In-memory nearest-neighbour index over fixed-dimension vectors."""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Sequence

from mnemo.protocols import ValidationError
from mnemo.types import Metadata
from mnemo.vector.similarity import cosine_similarity

logger = logging.getLogger(__name__)


@dataclass
class IndexEntry:
    id: str
    vector: List[float]
    metadata: Optional[Metadata] = None


@dataclass
class IndexHit:
    entry: IndexEntry
    score: float


class VectorIndex:
    """Brute-force cosine index with insertion-ordered capacity eviction.

    Args:
        dimension: If set, vectors of any other length are rejected.
        max_entries: If set, inserting beyond it evicts the oldest entry.
    """

    def __init__(self, dimension: Optional[int] = None, max_entries: Optional[int] = None):
        if max_entries is not None and max_entries <= 0:
            raise ValidationError("max_entries must be positive")
        self.dimension = dimension
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, IndexEntry]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def ids(self) -> List[str]:
        """Entry ids, oldest insertion first."""
        return list(self._entries)

    def _check_dimension(self, vector: Sequence[float]) -> None:
        if self.dimension is not None and len(vector) != self.dimension:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}"
            )

    def add(self, entry_id: str, vector: Sequence[float], metadata: Optional[Metadata] = None) -> None:
        """Insert or replace an entry. A replaced entry counts as newly inserted."""
        self._check_dimension(vector)
        if entry_id in self._entries:
            del self._entries[entry_id]
        self._entries[entry_id] = IndexEntry(id=entry_id, vector=list(vector), metadata=metadata)
        self._evict_if_needed()

    def get(self, entry_id: str) -> Optional[IndexEntry]:
        return self._entries.get(entry_id)

    def remove(self, entry_id: str) -> bool:
        return self._entries.pop(entry_id, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def search(
        self,
        vector: Sequence[float],
        limit: Optional[int] = None,
        threshold: float = 0.0,
    ) -> List[IndexHit]:
        """Entries with cosine similarity >= threshold, best first.

        Equal scores keep insertion order. A non-positive limit returns [].
        """
        if limit is not None and limit <= 0:
            return []
        self._check_dimension(vector)

        hits = []
        for entry in self._entries.values():
            score = cosine_similarity(vector, entry.vector)
            if score >= threshold:
                hits.append(IndexHit(entry=entry, score=score))

        # sorted() is stable, so ties stay in insertion order
        hits = sorted(hits, key=lambda h: h.score, reverse=True)
        if limit is not None:
            hits = hits[:limit]
        return hits

    def _evict_if_needed(self) -> None:
        if self.max_entries is None:
            return
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.debug(f"Vector index at capacity, evicted {evicted_id}")
