"""
Memory manager: the top-level entry point.

Combines a MemoryStore (long-term records), an EmbeddingCache (vectors for
semantic recall) and a token-bounded short-term context buffer.

- remember/recall/forget/reinforce operate on long-term memory
- add_to_context keeps the conversation within ``short_term_limit`` tokens;
  turns pushed out of the buffer are saved as ``conversation`` memories
- consolidation runs whenever the store grows past ``max_memories``;
  decay is applied every ``consolidation_interval`` remembered items
- every state change is published to subscribers registered with on()
"""

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from mnemo.config import MemoryConfig
from mnemo.context import ContextMessage, ContextWindow
from mnemo.logging_config import log_consolidation, log_recall, log_remember
from mnemo.memory_store import MemoryStore
from mnemo.protocols import TokenCounter, ValidationError
from mnemo.types import (
    ConsolidationResult,
    MemoryEvent,
    MemoryQuery,
    MemoryRecord,
    MemoryStats,
    MemoryType,
    Metadata,
    now_utc,
)
from mnemo.utils import estimate_tokens, generate_session_id
from mnemo.vector.cache import EmbeddingCache

logger = logging.getLogger(__name__)

EXPORT_VERSION = 1

DEFAULT_IMPORTANCE = {
    MemoryType.PREFERENCE: 0.8,
    MemoryType.DECISION: 0.7,
    MemoryType.FACT: 0.6,
    MemoryType.CODEBASE: 0.6,
    MemoryType.ERROR: 0.5,
    MemoryType.SUMMARY: 0.5,
    MemoryType.TOOL_RESULT: 0.4,
    MemoryType.CONVERSATION: 0.3,
}

# Long-term memories injected into get_context()
CONTEXT_MEMORY_LIMIT = 3
CONTEXT_MEMORY_MIN_IMPORTANCE = 0.5
CONTEXT_MEMORY_TYPES = [MemoryType.FACT, MemoryType.CODEBASE, MemoryType.PREFERENCE]

OVERFLOW_IMPORTANCE = 0.3
REINFORCE_STEP = 0.1

EventHandler = Callable[[MemoryEvent], Any]


class MemoryManager:
    """Local implementation of the memory manager contract.

    Args:
        config: Tunables; defaults to ``MemoryConfig()``.
        store: Long-term record store; a fresh MemoryStore if None.
        embedding_provider: Optional provider. Wrapped in an EmbeddingCache
            unless it already is one.
        token_counter: Counts tokens for the context buffer.
        clock: Time source.
    """

    def __init__(
        self,
        config: Optional[MemoryConfig] = None,
        store: Optional[MemoryStore] = None,
        embedding_provider: Any = None,
        token_counter: TokenCounter = estimate_tokens,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.config = config or MemoryConfig()
        self._clock = clock
        self.store = store or MemoryStore(clock=clock)
        if embedding_provider is None or isinstance(embedding_provider, EmbeddingCache):
            self.embeddings: Optional[EmbeddingCache] = embedding_provider
        else:
            self.embeddings = EmbeddingCache(embedding_provider)
        self._context = ContextWindow(self.config.short_term_limit, token_counter, clock)
        self._turn_count = 0
        self._handlers: List[EventHandler] = []
        self.session_id = generate_session_id(clock())

    # === Properties ===

    @property
    def context_tokens(self) -> int:
        return self._context.tokens

    @property
    def context_messages(self) -> List[ContextMessage]:
        return self._context.messages

    # === Events ===

    def on(self, handler: EventHandler) -> Callable[[], None]:
        """Subscribe to memory events. Returns an unsubscribe callable."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _emit(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> None:
        event = MemoryEvent(type=event_type, timestamp=self._clock(), data=data or {})
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Memory event handler failed for {event_type}: {e}")

    # === Embeddings ===

    async def _embed(self, text: str) -> Optional[List[float]]:
        """Embedding for text, or None if unavailable. Failures are logged."""
        if self.embeddings is None or not self.config.vector_search_enabled:
            return None
        try:
            return await self.embeddings.embed(text)
        except Exception as e:
            logger.warning(f"Embedding failed, continuing without vector: {e}")
            return None

    # === Long-term memory ===

    async def remember(
        self,
        content: str,
        *,
        type: MemoryType = MemoryType.FACT,
        importance: Optional[float] = None,
        tags: Optional[List[str]] = None,
        source: str = "user",
        session_id: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> str:
        """Store a memory and return its id.

        Importance defaults by type (preferences highest, conversation
        lowest). If the store is over ``max_memories`` afterwards, a full
        consolidation runs before this returns.
        """
        if not content or not content.strip():
            raise ValidationError("Memory content cannot be empty")
        try:
            memory_type = MemoryType(type)
        except ValueError:
            raise ValidationError(f"Invalid memory type: {type!r}") from None
        if importance is None:
            importance = DEFAULT_IMPORTANCE.get(memory_type, 0.5)

        memory_id = await self.store.add(
            content,
            memory_type,
            importance,
            source=source,
            tags=tags,
            embedding=await self._embed(content),
            session_id=session_id or self.session_id,
            metadata=metadata,
        )
        self._emit("memory:added", {"id": memory_id, "type": memory_type.value, "content": content[:100]})
        log_remember(self.session_id, memory_type.value, memory_id, importance)

        self._turn_count += 1
        if await self.store.count() > self.config.max_memories:
            await self.consolidate()
        elif self.config.consolidation_interval and self._turn_count % self.config.consolidation_interval == 0:
            decayed = await self.store.apply_decay(self.config.decay_rate)
            logger.debug(f"Periodic decay after {self._turn_count} turns: {decayed} memories decayed")

        return memory_id

    async def recall(
        self,
        query: str,
        *,
        limit: int = 10,
        types: Optional[List[MemoryType]] = None,
        min_importance: float = 0.0,
        use_semantic_search: bool = True,
        tags: Optional[List[str]] = None,
    ) -> List[MemoryRecord]:
        """Relevant memories for a query.

        Uses hybrid ranking when an embedding is available and plain
        keyword ranking otherwise. Records with no relevance are dropped.
        """
        embedding = await self._embed(query) if use_semantic_search else None
        result = await self.store.query(
            MemoryQuery(
                text=query,
                embedding=embedding,
                types=types,
                tags=tags,
                min_importance=min_importance,
                limit=limit,
            )
        )
        memories = [m for m, score in zip(result.memories, result.scores) if score > 0]
        for memory in memories:
            self._emit("memory:accessed", {"id": memory.id})
        log_recall(self.session_id, query, len(memories), result.meta.method.value)
        return memories

    async def forget(self, memory_id: str) -> bool:
        deleted = await self.store.delete(memory_id)
        if deleted:
            self._emit("memory:deleted", {"id": memory_id})
        return deleted

    async def reinforce(self, memory_id: str) -> None:
        """Raise a memory's importance by 0.1 (capped at 1). Unknown ids are ignored."""
        memory = await self.store.get(memory_id)
        if memory is None:
            return
        importance = min(1.0, memory.importance + REINFORCE_STEP)
        await self.store.update(memory_id, importance=importance)
        self._emit("memory:updated", {"id": memory_id, "importance": importance})

    # === Short-term context ===

    async def get_context(self, max_tokens: Optional[int] = None) -> str:
        """Recent turns that fit the token budget, newest kept first.

        With long-term memory enabled, memories relevant to the last user
        turn are prepended. Recall failures never surface here.
        """
        lines = self._context.render(max_tokens)
        if self.config.long_term_enabled and lines:
            lines = await self._relevant_memory_lines() + lines
        return "\n".join(lines)

    async def _relevant_memory_lines(self) -> List[str]:
        last_user = self._context.last_user_message()
        if last_user is None:
            return []
        try:
            memories = await self.recall(
                last_user.content,
                limit=CONTEXT_MEMORY_LIMIT,
                min_importance=CONTEXT_MEMORY_MIN_IMPORTANCE,
                types=CONTEXT_MEMORY_TYPES,
            )
        except Exception as e:
            logger.warning(f"Could not load relevant memories for context: {e}")
            return []
        if not memories:
            return []
        return (
            ["--- Relevant memories ---"]
            + [f"[{m.type.value}]: {m.content}" for m in memories]
            + ["--- Context ---"]
        )

    async def add_to_context(self, message: str, role: str) -> None:
        """Append a turn. Turns evicted to stay within the limit are persisted."""
        for removed in self._context.append(message, role):
            if self.config.long_term_enabled and removed.content.strip():
                await self.remember(
                    removed.content,
                    type=MemoryType.CONVERSATION,
                    importance=OVERFLOW_IMPORTANCE,
                    source="context-overflow",
                    metadata={"role": removed.role},
                )

        self._emit(
            "context:updated",
            {"message_count": len(self._context), "tokens": self._context.tokens},
        )

    async def clear_context(self) -> None:
        """Drop the context buffer, saving a session summary first."""
        if self.config.long_term_enabled and len(self._context):
            await self.remember(
                f"Session summary: {self._context.summary()}",
                type=MemoryType.SUMMARY,
                importance=0.4,
                source="context-clear",
                tags=["session-end"],
            )
        self._context.clear()
        self._emit("context:cleared")

    async def new_session(self) -> str:
        await self.clear_context()
        self.session_id = generate_session_id(self._clock())
        self._turn_count = 0
        return self.session_id

    # === Maintenance ===

    async def consolidate(self) -> ConsolidationResult:
        self._emit("consolidation:start")
        result = await self.store.consolidate()
        decayed = await self.store.apply_decay(self.config.decay_rate)
        data = asdict(result)
        data["decayed"] = decayed
        self._emit("consolidation:complete", data)
        log_consolidation(
            self.session_id, result.memories_before, result.memories_after, result.deleted, decayed
        )
        return result

    async def get_stats(self) -> MemoryStats:
        return await self.store.get_stats()

    async def export_memories(self) -> str:
        """Serialize all memories and the context buffer as JSON."""
        return json.dumps(
            {
                "version": EXPORT_VERSION,
                "exported_at": self._clock().isoformat(),
                "session_id": self.session_id,
                "memories": [m.to_dict() for m in self.store.get_all()],
                "context": self._context.to_list(),
            }
        )

    async def import_memories(self, data: str) -> int:
        """Load an export_memories() document. Returns the number of memories.

        Raises:
            ValidationError: Malformed document or unsupported version.
        """
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Import data is not valid JSON: {e}") from e
        if not isinstance(parsed, dict) or parsed.get("version") != EXPORT_VERSION:
            version = parsed.get("version") if isinstance(parsed, dict) else None
            raise ValidationError(f"Unsupported export version: {version}")

        try:
            records = [MemoryRecord.from_dict(item) for item in parsed.get("memories") or []]
            context = parsed.get("context") or []
            if context:
                self._context.load(context)
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed import data: {e}") from e

        imported = await self.store.bulk_import(records)
        logger.info(f"Imported {imported} memories")
        return imported
