"""
mnemo Protocol Definitions
==========================

Interface contracts shared by the memory components.

- EmbeddingProvider: the injected text -> vector capability.
- VectorStore:       similarity storage implemented by the in-memory and
                     SQLite backends.
- MemoryManagerProtocol: the top-level contract implemented by the local
                     MemoryManager and by the cloud adapter.

Error handling philosophy:
- Malformed writes raise ValidationError and leave state unchanged
- Embedding provider failures propagate to every waiter of that request
- Storage extension failures raise StorageError unless configured tolerant
- Unknown ids are not errors: get -> None, delete -> False
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Sequence, Union, runtime_checkable

from mnemo.types import (
    ConsolidationResult,
    MemoryRecord,
    MemoryStats,
    MemoryType,
    Metadata,
    VectorSearchResult,
    VectorStoreEntry,
)

# =============================================================================
# ERRORS
# =============================================================================


class MnemoError(Exception):
    """Base for all mnemo errors."""

    pass


class ValidationError(MnemoError, ValueError):
    """Raised for malformed writes: empty lesson text, missing project id,
    embedding dimension mismatch, invalid configuration."""

    pass


class EmbeddingError(MnemoError):
    """Raised when an embedding provider fails."""

    pass


class StorageError(MnemoError):
    """Raised by storage backends on unrecoverable failures."""

    pass


class CloudError(MnemoError):
    """Raised when the remote memory service returns an error."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


TokenCounter = Callable[[str], int]


# =============================================================================
# EMBEDDING PROVIDER
# =============================================================================


@runtime_checkable
class EmbeddingProvider(Protocol):
    """The single provider shape used internally.

    Other shapes (sync providers, ``get_dimension()`` providers) are adapted
    at the boundary by ``mnemo.vector.embeddings.adapt_provider``.
    """

    @property
    def dimension(self) -> int:
        """Dimension of vectors produced by embed()."""
        ...

    @property
    def provider_id(self) -> str:
        """Stable ID of the embedding source, e.g. 'hash', 'openai'."""
        ...

    @property
    def model_id(self) -> str:
        """Model name within the provider."""
        ...

    async def embed(self, text: str) -> List[float]:
        ...

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        ...


# =============================================================================
# VECTOR STORE
# =============================================================================


@runtime_checkable
class VectorStore(Protocol):
    """Similarity storage contract shared by all backends."""

    async def upsert(self, entry: VectorStoreEntry) -> None:
        ...

    async def delete(self, entry_id: str) -> bool:
        ...

    async def get(self, entry_id: str) -> Optional[VectorStoreEntry]:
        ...

    async def search(
        self,
        query: Union[str, Sequence[float]],
        limit: Optional[int] = 10,
        threshold: float = 0.0,
    ) -> List[VectorSearchResult]:
        ...

    async def count(self) -> int:
        ...


# =============================================================================
# MEMORY MANAGER
# =============================================================================


@runtime_checkable
class MemoryManagerProtocol(Protocol):
    """Top-level memory contract.

    Implemented by ``mnemo.manager.MemoryManager`` (local engine) and
    ``mnemo.cloud.CloudMemoryClient`` (remote service).
    """

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
        ...

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
        ...

    async def forget(self, memory_id: str) -> bool:
        ...

    async def reinforce(self, memory_id: str) -> None:
        ...

    async def get_context(self, max_tokens: Optional[int] = None) -> str:
        ...

    async def add_to_context(self, message: str, role: str) -> None:
        ...

    async def clear_context(self) -> None:
        ...

    async def consolidate(self) -> ConsolidationResult:
        ...

    async def get_stats(self) -> MemoryStats:
        ...

    async def export_memories(self) -> str:
        ...

    async def import_memories(self, data: str) -> int:
        ...
