"""Embedding providers.

- HashEmbedder: deterministic character n-gram hashing embedder. No
  network, no model; used as the default provider and in tests.
- OpenAIEmbedder: wraps ``openai.AsyncOpenAI`` (imported lazily).
- adapt_provider: collapses foreign provider shapes (sync ``embed``,
  ``get_dimension()`` instead of ``dimension``) into EmbeddingProvider.
"""

from __future__ import annotations

import asyncio
import hashlib
import inspect
import logging
import math
import os
from typing import Any, List, Optional, Tuple

from mnemo.protocols import EmbeddingError, EmbeddingProvider, ValidationError

logger = logging.getLogger(__name__)

HASH_EMBEDDING_DIM = 384

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class HashEmbedder:
    """Character n-gram hashing embedder.

    Produces non-negative, unit-length vectors, so cosine similarity
    between two hash embeddings is always in [0, 1].
    """

    provider_id = "hash"

    def __init__(self, dimension: int = HASH_EMBEDDING_DIM, ngram_range: Tuple[int, int] = (2, 4)):
        if dimension <= 0:
            raise ValidationError("dimension must be positive")
        self._dimension = dimension
        self.ngram_range = ngram_range

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def model_id(self) -> str:
        low, high = self.ngram_range
        return f"ngram-{low}-{high}-d{self._dimension}"

    def _get_ngrams(self, text: str) -> List[str]:
        text = text.lower().strip()
        if not text:
            return []
        low, high = self.ngram_range
        ngrams = []
        for n in range(low, high + 1):
            for i in range(len(text) - n + 1):
                ngrams.append(text[i : i + n])
        # Word-level features
        ngrams.extend(text.split())
        return ngrams

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self._dimension
        for gram in self._get_ngrams(text):
            digest = hashlib.md5(gram.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimension
            vector[bucket] += 1.0

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed_sync(t) for t in texts]


class OpenAIEmbedder:
    """Embeddings from the OpenAI API.

    Requires the ``openai`` package. The client is created on first use so
    the class can be constructed without network access.
    """

    provider_id = "openai"

    def __init__(self, model: str = "text-embedding-3-small", api_key: Optional[str] = None):
        self.model = model
        self.api_key = api_key
        self._client: Any = None

    @property
    def dimension(self) -> int:
        return OPENAI_MODEL_DIMENSIONS.get(self.model, 1536)

    @property
    def model_id(self) -> str:
        return self.model

    def _get_client(self) -> Any:
        if self._client is None:
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai") from None
            api_key = self.api_key or os.environ.get("OPENAI_API_KEY")
            self._client = openai.AsyncOpenAI(api_key=api_key)
        return self._client

    async def embed(self, text: str) -> List[float]:
        client = self._get_client()
        try:
            response = await client.embeddings.create(model=self.model, input=text)
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e
        return list(response.data[0].embedding)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        client = self._get_client()
        try:
            response = await client.embeddings.create(model=self.model, input=texts)
        except Exception as e:
            raise EmbeddingError(f"OpenAI embedding request failed: {e}") from e
        return [list(item.embedding) for item in response.data]


class ProviderAdapter:
    """Wraps a provider with a foreign shape so it satisfies EmbeddingProvider."""

    def __init__(self, provider: Any):
        if not hasattr(provider, "embed"):
            raise ValidationError("Embedding provider must define embed()")
        self._provider = provider
        if hasattr(provider, "dimension"):
            dimension = provider.dimension
        elif hasattr(provider, "get_dimension"):
            dimension = provider.get_dimension()
        else:
            raise ValidationError("Embedding provider must expose dimension or get_dimension()")
        self._dimension = int(dimension)
        self._provider_id = getattr(provider, "provider_id", None) or type(provider).__name__
        self._model_id = getattr(provider, "model_id", None) or "default"

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def provider_id(self) -> str:
        return self._provider_id

    @property
    def model_id(self) -> str:
        return self._model_id

    async def _call(self, fn: Any, arg: Any) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(arg)
        result = await asyncio.to_thread(fn, arg)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def embed(self, text: str) -> List[float]:
        return list(await self._call(self._provider.embed, text))

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        batch_fn = getattr(self._provider, "embed_batch", None)
        if batch_fn is not None:
            return [list(v) for v in await self._call(batch_fn, texts)]
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))


def adapt_provider(provider: Any) -> EmbeddingProvider:
    """Return ``provider`` as an EmbeddingProvider, wrapping it if needed."""
    if (
        isinstance(provider, EmbeddingProvider)
        and inspect.iscoroutinefunction(provider.embed)
        and inspect.iscoroutinefunction(provider.embed_batch)
    ):
        return provider
    return ProviderAdapter(provider)
