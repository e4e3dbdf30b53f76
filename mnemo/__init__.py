"""
mnemo - Tiered memory for AI agents.

Long-term records, learned lessons and working memory behind one manager.
"""

from .cloud import CloudMemoryClient
from .config import MemoryConfig, load_config
from .lessons import LessonQuery, LessonStore, SemanticMemoryStore, merge_policies
from .manager import MemoryManager
from .memory_store import MemoryStore
from .protocols import (
    CloudError,
    EmbeddingError,
    EmbeddingProvider,
    MemoryManagerProtocol,
    MnemoError,
    StorageError,
    ValidationError,
    VectorStore,
)
from .types import Lesson, MemoryQuery, MemoryRecord, MemoryType
from .vector import EmbeddingCache, HashEmbedder, InMemoryVectorStore, SQLiteVectorStore, VectorIndex
from .working import ConsolidationManager, WorkingMemory

try:
    from importlib.metadata import version

    __version__ = version("mnemo")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "CloudError",
    "CloudMemoryClient",
    "ConsolidationManager",
    "EmbeddingCache",
    "EmbeddingError",
    "EmbeddingProvider",
    "HashEmbedder",
    "InMemoryVectorStore",
    "Lesson",
    "LessonQuery",
    "LessonStore",
    "MemoryConfig",
    "MemoryManager",
    "MemoryManagerProtocol",
    "MemoryQuery",
    "MemoryRecord",
    "MemoryStore",
    "MemoryType",
    "MnemoError",
    "SQLiteVectorStore",
    "SemanticMemoryStore",
    "StorageError",
    "ValidationError",
    "VectorIndex",
    "VectorStore",
    "WorkingMemory",
    "load_config",
    "merge_policies",
]
