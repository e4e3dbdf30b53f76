"""Vector search building blocks: similarity math, index, embedding
providers and cache, and the in-memory and SQLite vector stores."""

from mnemo.vector.cache import EmbeddingCache
from mnemo.vector.embeddings import HashEmbedder, OpenAIEmbedder, adapt_provider
from mnemo.vector.index import IndexEntry, IndexHit, VectorIndex
from mnemo.vector.similarity import cosine_similarity, text_match_score
from mnemo.vector.sqlite_store import SQLiteVectorStore, VecState
from mnemo.vector.store import InMemoryVectorStore

__all__ = [
    "EmbeddingCache",
    "HashEmbedder",
    "IndexEntry",
    "IndexHit",
    "InMemoryVectorStore",
    "OpenAIEmbedder",
    "SQLiteVectorStore",
    "VecState",
    "VectorIndex",
    "adapt_provider",
    "cosine_similarity",
    "text_match_score",
]
