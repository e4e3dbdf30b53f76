"""Tests for bounded working memory."""

from datetime import timedelta

import pytest

from mnemo.protocols import ValidationError
from mnemo.types import WorkingMemoryType
from mnemo.working import EvictionStrategy, WorkingMemory


def contents(memory):
    return [e.content for e in memory.list()]


class TestWorkingMemoryBasics:
    def test_remember_and_get(self, clock):
        memory = WorkingMemory(clock=clock)
        entry_id = memory.remember("hello", type="semantic", importance=0.9, session_id="s1")

        entry = memory.get(entry_id)
        assert entry.content == "hello"
        assert entry.type == WorkingMemoryType.SEMANTIC
        assert entry.metadata.importance == 0.9
        assert entry.metadata.session_id == "s1"
        assert entry.metadata.access_count == 1

    def test_peek_does_not_count_access(self):
        memory = WorkingMemory()
        entry_id = memory.remember("hello")
        assert memory.peek(entry_id).metadata.access_count == 0

    def test_get_returns_copy(self):
        memory = WorkingMemory()
        entry_id = memory.remember("hello")
        memory.get(entry_id).metadata.importance = 0.0
        assert memory.peek(entry_id).metadata.importance == 0.5

    def test_unknown_id(self):
        memory = WorkingMemory()
        assert memory.get("missing") is None
        assert memory.remove("missing") is False
        assert memory.touch("missing") is False

    def test_importance_clamped(self):
        memory = WorkingMemory()
        entry_id = memory.remember("x", importance=4)
        assert memory.peek(entry_id).metadata.importance == 1.0

    def test_invalid_capacity(self):
        with pytest.raises(ValidationError):
            WorkingMemory(max_entries=0)

    def test_clear(self):
        memory = WorkingMemory()
        memory.remember("x")
        memory.clear()
        assert len(memory) == 0


class TestWorkingMemoryEviction:
    def test_fifo_keeps_newest(self):
        memory = WorkingMemory(max_entries=2, strategy=EvictionStrategy.FIFO)
        for content in ("one", "two", "three"):
            memory.remember(content)
        assert contents(memory) == ["two", "three"]

    def test_fifo_ignores_reads(self):
        memory = WorkingMemory(max_entries=2, strategy="fifo")
        first = memory.remember("one")
        memory.remember("two")
        memory.get(first)
        memory.remember("three")
        assert contents(memory) == ["two", "three"]

    def test_lru_protects_recently_read(self):
        memory = WorkingMemory(max_entries=2, strategy=EvictionStrategy.LRU)
        first = memory.remember("one")
        memory.remember("two")
        memory.get(first)
        memory.remember("three")
        assert contents(memory) == ["one", "three"]

    def test_evict_idle(self, clock):
        memory = WorkingMemory(clock=clock)
        stale = memory.remember("stale")
        clock.advance(minutes=10)
        fresh = memory.remember("fresh")
        clock.advance(minutes=1)

        assert memory.evict_idle(timedelta(minutes=5)) == [stale]
        assert fresh in memory


class TestWorkingMemorySearch:
    def test_text_search(self):
        memory = WorkingMemory()
        memory.remember("python testing tips")
        memory.remember("rust ownership")

        results = memory.search("python")
        assert [e.content for e, _ in results] == ["python testing tips"]

    def test_embedding_search(self):
        memory = WorkingMemory()
        memory.remember("east", embedding=[1.0, 0.0])
        memory.remember("north", embedding=[0.0, 1.0])

        results = memory.search("anything", query_embedding=[1.0, 0.1])
        assert results[0][0].content == "east"

    def test_mismatched_embedding_falls_back_to_text(self):
        memory = WorkingMemory()
        memory.remember("east wind", embedding=[1.0, 0.0, 0.0])
        results = memory.search("east", query_embedding=[1.0, 0.0])
        assert [e.content for e, _ in results] == ["east wind"]

    def test_search_does_not_record_access(self):
        memory = WorkingMemory()
        entry_id = memory.remember("python")
        memory.search("python")
        assert memory.peek(entry_id).metadata.access_count == 0

    def test_limit(self):
        memory = WorkingMemory()
        for i in range(5):
            memory.remember(f"note {i}")
        assert len(memory.search("note", limit=2)) == 2
        assert memory.search("note", limit=0) == []


class TestWorkingMemorySessions:
    def test_entries_for_session(self):
        memory = WorkingMemory()
        memory.remember("a", session_id="s1")
        memory.remember("b", session_id="s2")
        assert [e.content for e in memory.entries_for_session("s1")] == ["a"]

    def test_links_are_directed_and_idempotent(self):
        memory = WorkingMemory()
        memory.link_sessions("s1", "s2")
        memory.link_sessions("s1", "s2")
        memory.link_sessions("s1", "s3")

        assert memory.linked_sessions("s1") == ["s2", "s3"]
        assert memory.linked_sessions("s2") == []

    def test_set_embedding(self):
        memory = WorkingMemory()
        entry_id = memory.remember("x")
        assert memory.set_embedding(entry_id, [0.5]) is True
        assert memory.peek(entry_id).embedding == [0.5]
        assert memory.set_embedding("missing", [0.5]) is False
