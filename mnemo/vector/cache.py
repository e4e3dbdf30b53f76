"""Embedding cache with in-flight request deduplication.

Concurrent requests for the same text share one upstream call. Results are
kept in an LRU map keyed by a hash of (provider, model, text). Failures are
delivered to every waiter and never cached.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Set

from mnemo.protocols import EmbeddingProvider, ValidationError
from mnemo.types import normalize_text
from mnemo.vector.embeddings import adapt_provider

logger = logging.getLogger(__name__)

DEFAULT_CACHE_SIZE = 1000


class EmbeddingCache:
    """Caching, deduplicating wrapper around an embedding provider.

    Satisfies EmbeddingProvider itself, so it can be injected anywhere a
    provider is accepted.

    Args:
        provider: Upstream provider (any shape accepted by adapt_provider).
        max_entries: LRU capacity.
        normalize: Lowercase and collapse whitespace before keying.
    """

    def __init__(self, provider: Any, max_entries: int = DEFAULT_CACHE_SIZE, normalize: bool = False):
        if max_entries <= 0:
            raise ValidationError("max_entries must be positive")
        self._provider: EmbeddingProvider = adapt_provider(provider)
        self.max_entries = max_entries
        self.normalize = normalize
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._pending: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

        # Stats
        self.hits = 0
        self.misses = 0
        self.upstream_calls = 0

    # ---- EmbeddingProvider surface ----

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    @property
    def provider_id(self) -> str:
        return self._provider.provider_id

    @property
    def model_id(self) -> str:
        return self._provider.model_id

    # ---- Keys and LRU ----

    def make_key(self, text: str) -> str:
        """Cache key: sha256 over provider id, model id and (normalized) text."""
        if self.normalize:
            text = normalize_text(text).lower()
        raw = f"{self.provider_id}\x00{self.model_id}\x00{text}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _get_cached(self, key: str) -> Optional[List[float]]:
        vector = self._cache.get(key)
        if vector is not None:
            self._cache.move_to_end(key)
        return vector

    def _store(self, key: str, vector: List[float]) -> None:
        self._cache[key] = vector
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _wait(future: asyncio.Future) -> List[float]:
        # Shielded so a cancelled waiter does not cancel the shared request
        return list(await asyncio.shield(future))

    # ---- Single ----

    async def embed(self, text: str) -> List[float]:
        key = self.make_key(text)

        cached = self._get_cached(key)
        if cached is not None:
            self.hits += 1
            return list(cached)

        pending = self._pending.get(key)
        if pending is not None:
            self.hits += 1
            return await self._wait(pending)

        self.misses += 1
        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        self._spawn(self._run_single(key, text, future))
        return await self._wait(future)

    async def _run_single(self, key: str, text: str, future: asyncio.Future) -> None:
        try:
            self.upstream_calls += 1
            vector = list(await self._provider.embed(text))
            self._store(key, vector)
            if not future.done():
                future.set_result(vector)
        except BaseException as e:
            logger.debug(f"Embedding request failed for key {key[:12]}: {e}")
            if not future.done():
                future.set_exception(e)
            if not isinstance(e, Exception):
                raise
        finally:
            self._pending.pop(key, None)

    # ---- Batch ----

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts with at most one upstream batch call.

        Cached texts are served from cache, texts already in flight join the
        existing request, repeats within the batch are sent once, and the
        output order matches ``texts``.
        """
        if not texts:
            return []

        keys = [self.make_key(t) for t in texts]
        resolved: Dict[str, List[float]] = {}
        waiting: Dict[str, asyncio.Future] = {}
        missing: Dict[str, str] = {}

        for key, text in zip(keys, texts):
            if key in resolved or key in waiting or key in missing:
                continue
            cached = self._get_cached(key)
            if cached is not None:
                self.hits += 1
                resolved[key] = cached
                continue
            pending = self._pending.get(key)
            if pending is not None:
                self.hits += 1
                waiting[key] = pending
                continue
            self.misses += 1
            missing[key] = text

        if missing:
            loop = asyncio.get_running_loop()
            futures = {key: loop.create_future() for key in missing}
            self._pending.update(futures)
            waiting.update(futures)
            self._spawn(self._run_batch(missing, futures))

        for key, future in waiting.items():
            resolved[key] = await self._wait(future)

        return [list(resolved[key]) for key in keys]

    async def _run_batch(self, missing: Dict[str, str], futures: Dict[str, asyncio.Future]) -> None:
        keys = list(missing)
        try:
            self.upstream_calls += 1
            vectors = await self._provider.embed_batch([missing[k] for k in keys])
            if len(vectors) != len(keys):
                raise ValidationError(
                    f"Provider returned {len(vectors)} embeddings for {len(keys)} texts"
                )
            for key, vector in zip(keys, vectors):
                vector = list(vector)
                self._store(key, vector)
                if not futures[key].done():
                    futures[key].set_result(vector)
        except BaseException as e:
            logger.debug(f"Batch embedding request failed for {len(keys)} texts: {e}")
            for future in futures.values():
                if not future.done():
                    future.set_exception(e)
            if not isinstance(e, Exception):
                raise
        finally:
            for key in keys:
                self._pending.pop(key, None)

    # ---- Introspection ----

    def __len__(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        """Drop cached vectors. In-flight requests are unaffected."""
        self._cache.clear()

    def get_hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def stats(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.get_hit_rate(),
            "size": len(self._cache),
            "in_flight": len(self._pending),
            "upstream_calls": self.upstream_calls,
        }
