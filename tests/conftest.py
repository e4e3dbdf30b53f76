"""
Pytest fixtures and test configuration for mnemo tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from mnemo.vector.embeddings import HashEmbedder


class FakeClock:
    """Controllable time source passed as ``clock=`` to components."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class CountingProvider:
    """Async embedding provider that records upstream calls.

    ``delay`` makes every call yield to the event loop, so concurrent
    callers overlap.
    """

    provider_id = "counting"
    model_id = "test-model"

    def __init__(self, dimension: int = 16, delay: float = 0.01):
        self._embedder = HashEmbedder(dimension)
        self.delay = delay
        self.embed_calls: List[str] = []
        self.batch_calls: List[List[str]] = []

    @property
    def dimension(self) -> int:
        return self._embedder.dimension

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        await asyncio.sleep(self.delay)
        return self._embedder.embed_sync(text)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        await asyncio.sleep(self.delay)
        return [self._embedder.embed_sync(t) for t in texts]


class FailingProvider(CountingProvider):
    """Provider whose every call fails after yielding once."""

    provider_id = "failing"

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        await asyncio.sleep(self.delay)
        raise RuntimeError("provider unavailable")

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.batch_calls.append(list(texts))
        await asyncio.sleep(self.delay)
        raise RuntimeError("provider unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def counting_provider():
    return CountingProvider()


@pytest.fixture
def failing_provider():
    return FailingProvider()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point MNEMO_DATA_DIR at a temp dir so no test touches ~/.mnemo."""
    home = tmp_path / "mnemo-home"
    monkeypatch.setenv("MNEMO_DATA_DIR", str(home))
    for name in ("MNEMO_CLOUD_URL", "MNEMO_CLOUD_API_KEY"):
        monkeypatch.delenv(name, raising=False)
    return home
