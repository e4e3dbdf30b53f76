"""Promotion of working-memory entries into a durable vector store.

Each pass does two independent things:

1. Entries with ``importance >= promotion_threshold`` are embedded (only if
   they have no embedding yet) and upserted into the durable store.
2. Entries idle for more than twice the consolidation interval are evicted
   from working memory. A promoted entry may be evicted in the same pass.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional, Sequence

from mnemo.protocols import EmbeddingProvider, MnemoError, ValidationError, VectorStore
from mnemo.types import (
    Metadata,
    VectorStoreEntry,
    WorkingMemoryEntry,
    WorkingMemoryMetadata,
    WorkingMemoryType,
    now_utc,
    parse_datetime,
)
from mnemo.vector.embeddings import adapt_provider
from mnemo.working.memory import WorkingMemory

logger = logging.getLogger(__name__)

DEFAULT_PROMOTION_THRESHOLD = 0.7
DEFAULT_CONSOLIDATION_INTERVAL = 300.0  # seconds


@dataclass
class ConsolidationReport:
    promoted: int
    evicted: int
    remaining: int


def _entry_metadata(entry: WorkingMemoryEntry) -> Metadata:
    meta = entry.metadata
    return {
        "type": entry.type.value,
        "importance": meta.importance,
        "source": meta.source,
        "session_id": meta.session_id,
        "created_at": meta.created_at.isoformat(),
        "accessed_at": meta.accessed_at.isoformat(),
        "access_count": meta.access_count,
    }


def _from_durable(entry: VectorStoreEntry, fallback_time: datetime) -> WorkingMemoryEntry:
    meta = entry.metadata or {}
    created_at = parse_datetime(meta.get("created_at")) or fallback_time
    try:
        entry_type = WorkingMemoryType(meta.get("type") or "semantic")
    except ValueError:
        entry_type = WorkingMemoryType.SEMANTIC
    return WorkingMemoryEntry(
        id=entry.id,
        type=entry_type,
        content=entry.content,
        metadata=WorkingMemoryMetadata(
            created_at=created_at,
            accessed_at=parse_datetime(meta.get("accessed_at")) or created_at,
            access_count=int(meta.get("access_count") or 0),
            importance=float(meta.get("importance", 0.5)),
            source=str(meta.get("source") or "user"),
            session_id=meta.get("session_id"),
        ),
        embedding=entry.embedding,
    )


class ConsolidationManager:
    """Two-tier memory: bounded working memory in front of a vector store.

    Args:
        working_memory: The fast tier.
        vector_store: The durable tier (any VectorStore backend).
        embedding_provider: Used to embed entries on promotion and queries
            on recall. If None, the vector store's own provider (or text
            search) is relied on.
        promotion_threshold: Minimum importance to promote.
        consolidation_interval: Seconds between scheduled passes; entries
            idle for twice this long are evicted.
        clock: Time source.
    """

    def __init__(
        self,
        working_memory: WorkingMemory,
        vector_store: VectorStore,
        embedding_provider: Any = None,
        promotion_threshold: float = DEFAULT_PROMOTION_THRESHOLD,
        consolidation_interval: float = DEFAULT_CONSOLIDATION_INTERVAL,
        clock: Callable[[], datetime] = now_utc,
    ):
        if consolidation_interval <= 0:
            raise ValidationError("consolidation_interval must be positive")
        self.working_memory = working_memory
        self.vector_store = vector_store
        self._provider: Optional[EmbeddingProvider] = (
            adapt_provider(embedding_provider) if embedding_provider is not None else None
        )
        self.promotion_threshold = promotion_threshold
        self.consolidation_interval = consolidation_interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def remember(self, content: str, **kwargs: Any) -> str:
        """Store in working memory. Accepts WorkingMemory.remember() options."""
        return self.working_memory.remember(content, **kwargs)

    async def recall(
        self,
        query: str,
        limit: int = 5,
        query_embedding: Optional[Sequence[float]] = None,
    ) -> List[WorkingMemoryEntry]:
        """Working memory first, topped up from the durable store.

        Every returned entry has its access metadata bumped; durable entries
        are re-upserted with the new metadata.
        """
        if limit <= 0:
            return []

        if query_embedding is None and self._provider is not None:
            query_embedding = await self._provider.embed(query)

        results: List[WorkingMemoryEntry] = []
        for entry, _score in self.working_memory.search(query, limit, query_embedding):
            self.working_memory.touch(entry.id)
            results.append(self.working_memory.peek(entry.id))

        if len(results) < limit:
            seen = {e.id for e in results}
            durable_query = query_embedding if query_embedding is not None else query
            # Ask for extra so entries already returned can be skipped
            hits = await self.vector_store.search(durable_query, limit=limit + len(seen))
            for hit in hits:
                if hit.entry.id in seen:
                    continue
                results.append(await self._bump_durable(hit.entry))
                seen.add(hit.entry.id)
                if len(results) >= limit:
                    break

        return results

    async def _bump_durable(self, entry: VectorStoreEntry) -> WorkingMemoryEntry:
        now = self._clock()
        recalled = _from_durable(entry, now)
        recalled.metadata.accessed_at = now
        recalled.metadata.access_count += 1
        entry.metadata = _entry_metadata(recalled)
        await self.vector_store.upsert(entry)
        return recalled

    async def consolidate(self) -> ConsolidationReport:
        promoted = 0
        for entry in self.working_memory.list():
            if entry.metadata.importance < self.promotion_threshold:
                continue
            try:
                embedding = entry.embedding
                if embedding is None and self._provider is not None:
                    embedding = await self._provider.embed(entry.content)
                    self.working_memory.set_embedding(entry.id, embedding)
                await self.vector_store.upsert(
                    VectorStoreEntry(
                        id=entry.id,
                        content=entry.content,
                        embedding=embedding,
                        metadata=_entry_metadata(entry),
                    )
                )
            except MnemoError as e:
                logger.warning(f"Skipping promotion of {entry.id[:8]}: {e}")
                continue
            promoted += 1

        evicted = self.working_memory.evict_idle(timedelta(seconds=2 * self.consolidation_interval))
        report = ConsolidationReport(
            promoted=promoted, evicted=len(evicted), remaining=len(self.working_memory)
        )
        logger.debug(
            f"Working memory consolidation: promoted={report.promoted}, "
            f"evicted={report.evicted}, remaining={report.remaining}"
        )
        return report

    def start(self) -> None:
        """Run consolidate() every interval on the running event loop."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.consolidation_interval)
            try:
                await self.consolidate()
            except Exception as e:
                logger.error(f"Scheduled consolidation failed: {e}", exc_info=True)
