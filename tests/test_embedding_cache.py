"""Tests for the deduplicating embedding cache."""

import asyncio

import pytest

from conftest import CountingProvider, FailingProvider
from mnemo.protocols import ValidationError
from mnemo.vector.cache import EmbeddingCache


class TestEmbeddingCacheSingle:
    @pytest.mark.asyncio
    async def test_second_call_served_from_cache(self, counting_provider):
        cache = EmbeddingCache(counting_provider)

        first = await cache.embed("hello")
        second = await cache.embed("hello")

        assert first == second
        assert counting_provider.embed_calls == ["hello"]
        assert cache.hits == 1
        assert cache.misses == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_upstream_call(self, counting_provider):
        cache = EmbeddingCache(counting_provider)

        results = await asyncio.gather(*(cache.embed("same text") for _ in range(50)))

        assert len(counting_provider.embed_calls) == 1
        assert cache.upstream_calls == 1
        assert all(r == results[0] for r in results)
        assert cache.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_returned_vectors_are_copies(self, counting_provider):
        cache = EmbeddingCache(counting_provider)
        vector = await cache.embed("hello")
        vector[0] = 99.0
        assert (await cache.embed("hello"))[0] != 99.0

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_and_is_not_cached(self, failing_provider):
        cache = EmbeddingCache(failing_provider)

        results = await asyncio.gather(
            *(cache.embed("x") for _ in range(5)), return_exceptions=True
        )

        assert all(isinstance(r, RuntimeError) for r in results)
        assert len(failing_provider.embed_calls) == 1
        assert len(cache) == 0

        with pytest.raises(RuntimeError):
            await cache.embed("x")
        assert len(failing_provider.embed_calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_request(self, counting_provider):
        cache = EmbeddingCache(counting_provider)

        first = asyncio.ensure_future(cache.embed("shared"))
        second = asyncio.ensure_future(cache.embed("shared"))
        await asyncio.sleep(0)
        first.cancel()

        assert len(await second) == counting_provider.dimension
        assert first.cancelled()
        assert len(counting_provider.embed_calls) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction(self, counting_provider):
        cache = EmbeddingCache(counting_provider, max_entries=2)

        await cache.embed("a")
        await cache.embed("b")
        await cache.embed("a")  # a becomes most recent
        await cache.embed("c")  # evicts b

        assert len(cache) == 2
        await cache.embed("a")
        await cache.embed("b")
        assert counting_provider.embed_calls == ["a", "b", "c", "b"]

    @pytest.mark.asyncio
    async def test_normalize_shares_keys(self, counting_provider):
        cache = EmbeddingCache(counting_provider, normalize=True)
        await cache.embed("Hello   World")
        await cache.embed("hello world")
        assert len(counting_provider.embed_calls) == 1

    @pytest.mark.asyncio
    async def test_clear_keeps_stats(self, counting_provider):
        cache = EmbeddingCache(counting_provider)
        await cache.embed("a")
        cache.clear()
        assert len(cache) == 0
        assert cache.misses == 1


class TestEmbeddingCacheKeys:
    def test_key_depends_on_model(self):
        a = EmbeddingCache(CountingProvider())
        other = CountingProvider()
        other.model_id = "another-model"
        b = EmbeddingCache(other)
        assert a.make_key("text") != b.make_key("text")

    def test_key_is_sha256_hex(self):
        key = EmbeddingCache(CountingProvider()).make_key("text")
        assert len(key) == 64
        int(key, 16)

    def test_exposes_provider_identity(self):
        cache = EmbeddingCache(CountingProvider(dimension=12))
        assert cache.dimension == 12
        assert cache.provider_id == "counting"
        assert cache.model_id == "test-model"

    def test_invalid_capacity(self):
        with pytest.raises(ValidationError):
            EmbeddingCache(CountingProvider(), max_entries=0)


class TestEmbeddingCacheBatch:
    @pytest.mark.asyncio
    async def test_batch_makes_one_upstream_call_for_misses(self, counting_provider):
        cache = EmbeddingCache(counting_provider)
        await cache.embed("cached")

        vectors = await cache.embed_batch(["new-1", "cached", "new-2", "new-1"])

        assert counting_provider.batch_calls == [["new-1", "new-2"]]
        assert vectors[0] == vectors[3]
        assert vectors[1] == await cache.embed("cached")
        assert len(vectors) == 4

    @pytest.mark.asyncio
    async def test_batch_joins_in_flight_single_request(self, counting_provider):
        cache = EmbeddingCache(counting_provider)

        single = asyncio.ensure_future(cache.embed("shared"))
        await asyncio.sleep(0)
        batch = await cache.embed_batch(["shared", "other"])

        assert batch[0] == await single
        assert counting_provider.embed_calls == ["shared"]
        assert counting_provider.batch_calls == [["other"]]

    @pytest.mark.asyncio
    async def test_all_cached_batch_skips_upstream(self, counting_provider):
        cache = EmbeddingCache(counting_provider)
        await cache.embed_batch(["a", "b"])
        await cache.embed_batch(["b", "a"])
        assert len(counting_provider.batch_calls) == 1

    @pytest.mark.asyncio
    async def test_empty_batch(self, counting_provider):
        assert await EmbeddingCache(counting_provider).embed_batch([]) == []

    @pytest.mark.asyncio
    async def test_batch_failure_propagates(self):
        provider = FailingProvider()
        cache = EmbeddingCache(provider)
        with pytest.raises(RuntimeError, match="unavailable"):
            await cache.embed_batch(["a", "b"])
        assert cache.stats()["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_length_mismatch_rejected(self, counting_provider):
        async def short_batch(texts):
            return [[0.0] * counting_provider.dimension]

        counting_provider.embed_batch = short_batch
        cache = EmbeddingCache(counting_provider)
        with pytest.raises(ValidationError, match="1 embeddings for 2 texts"):
            await cache.embed_batch(["a", "b"])


class TestEmbeddingCacheStats:
    @pytest.mark.asyncio
    async def test_hit_rate(self, counting_provider):
        cache = EmbeddingCache(counting_provider)
        assert cache.get_hit_rate() == 0.0
        await cache.embed("a")
        await cache.embed("a")
        await cache.embed("a")
        await cache.embed("b")

        stats = cache.stats()
        assert stats["hits"] == 2
        assert stats["misses"] == 2
        assert stats["hit_rate"] == pytest.approx(0.5)
        assert stats["size"] == 2
        assert stats["upstream_calls"] == 2
