"""In-memory vector store backed by VectorIndex."""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Union

from mnemo.protocols import EmbeddingProvider, ValidationError
from mnemo.types import VectorSearchResult, VectorStoreEntry
from mnemo.vector.embeddings import adapt_provider
from mnemo.vector.index import VectorIndex
from mnemo.vector.similarity import text_match_score

logger = logging.getLogger(__name__)


class InMemoryVectorStore:
    """VectorStore over an in-process index.

    Text queries are embedded with the provider when one is configured,
    otherwise they are scored with plain text matching.

    Args:
        dimension: Expected embedding length (defaults to the provider's).
        max_entries: Capacity; overflow evicts the oldest inserted entry.
        embedding_provider: Optional provider used to embed text.
    """

    def __init__(
        self,
        dimension: Optional[int] = None,
        max_entries: Optional[int] = None,
        embedding_provider: Any = None,
    ):
        self._provider: Optional[EmbeddingProvider] = (
            adapt_provider(embedding_provider) if embedding_provider is not None else None
        )
        if dimension is None and self._provider is not None:
            dimension = self._provider.dimension
        self._index = VectorIndex(dimension=dimension, max_entries=max_entries)
        self._entries: Dict[str, VectorStoreEntry] = {}

    @property
    def dimension(self) -> Optional[int]:
        return self._index.dimension

    async def upsert(self, entry: VectorStoreEntry) -> None:
        embedding = entry.embedding
        if embedding is None:
            if self._provider is None:
                raise ValidationError(
                    f"Entry {entry.id} has no embedding and no embedding provider is configured"
                )
            embedding = await self._provider.embed(entry.content)

        stored = replace(entry, embedding=list(embedding))
        self._index.add(stored.id, stored.embedding, stored.metadata)
        self._entries[stored.id] = stored
        self._sync_evictions()

    def _sync_evictions(self) -> None:
        if len(self._entries) == len(self._index):
            return
        for entry_id in [k for k in self._entries if k not in self._index]:
            del self._entries[entry_id]

    async def delete(self, entry_id: str) -> bool:
        self._entries.pop(entry_id, None)
        return self._index.remove(entry_id)

    async def get(self, entry_id: str) -> Optional[VectorStoreEntry]:
        entry = self._entries.get(entry_id)
        return replace(entry) if entry is not None else None

    async def count(self) -> int:
        return len(self._index)

    async def clear(self) -> None:
        self._index.clear()
        self._entries.clear()

    async def search(
        self,
        query: Union[str, Sequence[float]],
        limit: Optional[int] = 10,
        threshold: float = 0.0,
    ) -> List[VectorSearchResult]:
        if isinstance(query, str):
            if self._provider is None:
                return self._text_search(query, limit, threshold)
            query = await self._provider.embed(query)
        return await self.search_by_embedding(query, limit=limit, threshold=threshold)

    async def search_by_embedding(
        self,
        embedding: Sequence[float],
        limit: Optional[int] = 10,
        threshold: float = 0.0,
    ) -> List[VectorSearchResult]:
        hits = self._index.search(embedding, limit=limit, threshold=threshold)
        return [
            VectorSearchResult(entry=replace(self._entries[hit.entry.id]), score=hit.score)
            for hit in hits
        ]

    def _text_search(self, query: str, limit: Optional[int], threshold: float) -> List[VectorSearchResult]:
        if limit is not None and limit <= 0:
            return []
        results = []
        for entry_id in self._index.ids():
            entry = self._entries[entry_id]
            score = text_match_score(entry.content, query)
            if score > 0 and score >= threshold:
                results.append(VectorSearchResult(entry=replace(entry), score=score))
        results.sort(key=lambda r: r.score, reverse=True)
        logger.debug(f"Text fallback search for {query[:40]!r}: {len(results)} matches")
        return results[:limit] if limit is not None else results
