"""Tests for the in-memory nearest-neighbour index."""

import pytest

from mnemo.protocols import ValidationError
from mnemo.vector.index import VectorIndex


class TestVectorIndexBasics:
    def test_add_and_get(self):
        index = VectorIndex(dimension=2)
        index.add("a", [1.0, 0.0], {"k": "v"})

        entry = index.get("a")
        assert entry.vector == [1.0, 0.0]
        assert entry.metadata == {"k": "v"}
        assert "a" in index
        assert len(index) == 1

    def test_dimension_enforced(self):
        index = VectorIndex(dimension=3)
        with pytest.raises(ValidationError, match="dimension mismatch"):
            index.add("a", [1.0, 0.0])
        assert len(index) == 0

    def test_unbounded_dimension_accepts_any(self):
        index = VectorIndex()
        index.add("a", [1.0])
        index.add("b", [1.0, 2.0])
        assert len(index) == 2

    def test_remove(self):
        index = VectorIndex()
        index.add("a", [1.0, 0.0])
        assert index.remove("a") is True
        assert index.remove("a") is False
        assert index.get("a") is None

    def test_invalid_capacity(self):
        with pytest.raises(ValidationError):
            VectorIndex(max_entries=0)


class TestVectorIndexEviction:
    def test_oldest_insertion_evicted(self):
        index = VectorIndex(max_entries=2)
        index.add("a", [1.0, 0.0])
        index.add("b", [0.0, 1.0])
        index.add("c", [1.0, 1.0])

        assert index.ids() == ["b", "c"]

    def test_replace_counts_as_new_insertion(self):
        index = VectorIndex(max_entries=2)
        index.add("a", [1.0, 0.0])
        index.add("b", [0.0, 1.0])
        index.add("a", [1.0, 0.1])
        index.add("c", [1.0, 1.0])

        assert index.ids() == ["a", "c"]


class TestVectorIndexSearch:
    @pytest.fixture
    def index(self):
        index = VectorIndex(dimension=2)
        index.add("east", [1.0, 0.0])
        index.add("north", [0.0, 1.0])
        index.add("northeast", [1.0, 1.0])
        return index

    def test_best_first(self, index):
        hits = index.search([1.0, 0.1])
        assert [h.entry.id for h in hits] == ["east", "northeast", "north"]

    def test_threshold_filters(self, index):
        hits = index.search([1.0, 0.0], threshold=0.5)
        assert [h.entry.id for h in hits] == ["east", "northeast"]

    def test_limit(self, index):
        assert len(index.search([1.0, 0.0], limit=1)) == 1

    def test_non_positive_limit_returns_empty(self, index):
        assert index.search([1.0, 0.0], limit=0) == []

    def test_ties_keep_insertion_order(self):
        index = VectorIndex()
        index.add("first", [1.0, 0.0])
        index.add("second", [2.0, 0.0])
        hits = index.search([1.0, 0.0])
        assert [h.entry.id for h in hits] == ["first", "second"]

    def test_query_dimension_checked(self, index):
        with pytest.raises(ValidationError):
            index.search([1.0, 0.0, 0.0])
