"""Tests for LessonStore: scoping, persistence and search."""

import json
from unittest.mock import patch

import pytest

from conftest import CountingProvider, FakeClock
from mnemo.lessons.store import LessonQuery, LessonStore, lesson_from_dict
from mnemo.protocols import StorageError, ValidationError
from mnemo.types import LessonScope, LessonSource


@pytest.fixture
def lesson_file(tmp_path):
    return tmp_path / "lessons.json"


@pytest.fixture
def store(lesson_file, clock):
    return LessonStore(file_path=lesson_file, dimension=64, clock=clock)


class TestLessonStoreAdd:
    @pytest.mark.asyncio
    async def test_add_normalizes_and_defaults(self, store):
        lesson = await store.add("  when   writing tests ", "use  pytest fixtures")

        assert lesson.trigger == "when writing tests"
        assert lesson.rule == "use pytest fixtures"
        assert lesson.scope == LessonScope.GLOBAL
        assert lesson.project_id is None
        assert lesson.confidence == 0.5
        assert lesson.profile == "default"
        assert lesson.source == LessonSource.MANUAL
        assert len(lesson.embedding) == 64

    @pytest.mark.asyncio
    async def test_project_id_implies_project_scope(self, store):
        lesson = await store.add("deploying", "run migrations first", project_id="project-a")
        assert lesson.scope == LessonScope.PROJECT
        assert lesson.project_id == "project-a"

    @pytest.mark.asyncio
    async def test_global_scope_drops_project_id(self, store):
        lesson = await store.add("t", "r", scope="global", project_id="project-a")
        assert lesson.project_id is None

    @pytest.mark.asyncio
    async def test_confidence_clamped(self, store):
        assert (await store.add("t", "r", confidence=1.7)).confidence == 1.0
        assert (await store.add("t2", "r2", confidence=-3)).confidence == 0.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("trigger,rule", [("", "rule"), ("trigger", "   ")])
    async def test_empty_text_rejected(self, store, trigger, rule):
        with pytest.raises(ValidationError, match="non-empty"):
            await store.add(trigger, rule)
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_project_scope_requires_project_id(self, store):
        with pytest.raises(ValidationError, match="project_id"):
            await store.add("t", "r", scope=LessonScope.PROJECT)

    @pytest.mark.asyncio
    async def test_returned_lesson_is_copy(self, store):
        lesson = await store.add("t", "r")
        lesson.rule = "changed"
        assert (await store.get(lesson.id)).rule == "r"


class TestLessonStoreScoping:
    @pytest.mark.asyncio
    async def test_project_query_includes_global_lessons(self, store):
        global_lesson = await store.add("formatting code", "run the formatter before commit")
        project_lesson = await store.add(
            "formatting code", "use the project prettier config", project_id="project-a"
        )

        in_a = await store.search("formatting code", LessonQuery(project_id="project-a"))
        assert {r.lesson.id for r in in_a} == {global_lesson.id, project_lesson.id}

        in_b = await store.search("formatting code", LessonQuery(project_id="project-b"))
        assert [r.lesson.id for r in in_b] == [global_lesson.id]

    @pytest.mark.asyncio
    async def test_no_project_means_global_only(self, store):
        global_lesson = await store.add("a", "global rule")
        await store.add("a", "project rule", project_id="project-a")

        assert [l.id for l in await store.list()] == [global_lesson.id]

    @pytest.mark.asyncio
    async def test_explicit_scopes(self, store):
        await store.add("a", "global rule")
        project_lesson = await store.add("a", "project rule", project_id="project-a")

        query = LessonQuery(project_id="project-a", scopes=[LessonScope.PROJECT])
        assert [l.id for l in await store.list(query)] == [project_lesson.id]

    @pytest.mark.asyncio
    async def test_profile_and_confidence_filters(self, store):
        await store.add("a", "lenient", profile="creative-prototyper", confidence=0.9)
        strict = await store.add("a", "strict", profile="strict-reviewer", confidence=0.9)
        await store.add("a", "weak", profile="strict-reviewer", confidence=0.2)

        query = LessonQuery(profiles=["strict-reviewer"], min_confidence=0.5)
        assert [l.id for l in await store.list(query)] == [strict.id]

    @pytest.mark.asyncio
    async def test_list_limit_keeps_insertion_order(self, store):
        first = await store.add("a", "one")
        second = await store.add("b", "two")
        await store.add("c", "three")
        assert [l.id for l in await store.list(LessonQuery(limit=2))] == [first.id, second.id]


class TestLessonStoreSearch:
    @pytest.mark.asyncio
    async def test_most_similar_first(self, store):
        await store.add("database migration failed", "check the schema version")
        tabs = await store.add("indentation style", "use tabs for indentation")

        results = await store.search("tabs for indentation")
        assert results[0].lesson.id == tabs.id
        assert results[0].score >= results[1].score

    @pytest.mark.asyncio
    async def test_default_limit(self, store):
        for i in range(12):
            await store.add(f"trigger {i}", f"rule {i}")
        assert len(await store.search("trigger")) == 8

    @pytest.mark.asyncio
    async def test_zero_limit(self, store):
        await store.add("a", "b")
        assert await store.search("a", LessonQuery(limit=0)) == []

    @pytest.mark.asyncio
    async def test_filtering_still_fills_limit(self, store):
        for i in range(2):
            await store.add("shared trigger", f"project rule {i}", project_id="project-a")
        kept = await store.add("shared trigger", "global rule")

        results = await store.search("shared trigger", LessonQuery(limit=1))
        assert [r.lesson.id for r in results] == [kept.id]

    @pytest.mark.asyncio
    async def test_every_listed_lesson_is_searchable(self, store):
        added = [await store.add(f"trigger {name}", f"rule {name}") for name in ("alpha", "beta", "gamma")]

        listed = await store.list()
        assert [lesson.id for lesson in listed] == [lesson.id for lesson in added]
        for lesson in added:
            results = await store.search(lesson.trigger, LessonQuery(limit=len(added)))
            assert lesson.id in [r.lesson.id for r in results]


class TestLessonStoreUpdateDelete:
    @pytest.mark.asyncio
    async def test_update_reembeds_on_text_change(self, lesson_file):
        provider = CountingProvider(dimension=16, delay=0)
        store = LessonStore(file_path=lesson_file, embedding_provider=provider)
        lesson = await store.add("t", "r")

        await store.update(lesson.id, confidence=0.9)
        assert len(provider.embed_calls) == 1

        updated = await store.update(lesson.id, rule="new rule")
        assert len(provider.embed_calls) == 2
        assert updated.rule == "new rule"
        assert updated.confidence == 0.9

    @pytest.mark.asyncio
    async def test_update_bumps_updated_at(self, lesson_file):
        clock = FakeClock()
        store = LessonStore(file_path=lesson_file, clock=clock)
        lesson = await store.add("t", "r")
        clock.advance(minutes=5)

        updated = await store.update(lesson.id, confidence=0.8)
        assert updated.updated_at > lesson.updated_at
        assert updated.created_at == lesson.created_at

    @pytest.mark.asyncio
    async def test_update_unknown_id(self, store):
        assert await store.update("missing", confidence=0.1) is None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store):
        lesson = await store.add("t", "r")
        with pytest.raises(ValidationError, match="created_at"):
            await store.update(lesson.id, created_at="now")

    @pytest.mark.asyncio
    async def test_update_rejects_empty_text(self, store):
        lesson = await store.add("t", "r")
        with pytest.raises(ValidationError):
            await store.update(lesson.id, trigger="  ")
        assert (await store.get(lesson.id)).trigger == "t"

    @pytest.mark.asyncio
    async def test_delete(self, store):
        lesson = await store.add("t", "r")
        assert await store.delete(lesson.id) is True
        assert await store.delete(lesson.id) is False
        assert await store.search("t") == []


class TestLessonStorePersistence:
    @pytest.mark.asyncio
    async def test_file_format(self, store, lesson_file):
        lesson = await store.add("t", "r", project_id="project-a", metadata={"origin": "review"})

        data = json.loads(lesson_file.read_text())
        assert list(data) == ["items"]
        item = data["items"][0]
        assert item["id"] == lesson.id
        assert item["projectId"] == "project-a"
        assert item["scope"] == "project"
        assert item["metadata"] == {"origin": "review"}
        assert "createdAt" in item and "updatedAt" in item

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, store, lesson_file):
        await store.add("t", "r")
        await store.add("t2", "r2")
        assert [p.name for p in lesson_file.parent.iterdir()] == ["lessons.json"]

    @pytest.mark.asyncio
    async def test_failed_write_removes_temp_file(self, store, lesson_file):
        with patch("mnemo.lessons.store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                await store.add("t", "r")
        assert list(lesson_file.parent.iterdir()) == []

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, store, lesson_file):
        lesson = await store.add("t", "r")

        reloaded = LessonStore(file_path=lesson_file, dimension=64)
        restored = await reloaded.get(lesson.id)
        assert restored.rule == "r"
        assert restored.embedding == lesson.embedding
        assert [r.lesson.id for r in await reloaded.search("t")] == [lesson.id]

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path):
        store = LessonStore(file_path=tmp_path / "nope" / "lessons.json")
        assert await store.list() == []

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, lesson_file):
        lesson_file.write_text("{not json")
        with pytest.raises(StorageError, match="not valid JSON"):
            await LessonStore(file_path=lesson_file).list()

    @pytest.mark.asyncio
    async def test_invalid_items_skipped(self, lesson_file):
        lesson_file.write_text(
            json.dumps(
                {
                    "items": [
                        {"id": "ok", "trigger": "t", "rule": "r", "createdAt": 1700000000000},
                        {"id": "no-rule", "trigger": "t"},
                        {"id": "bad-scope", "trigger": "t", "rule": "r", "scope": "project"},
                        {"trigger": "no id", "rule": "r"},
                    ]
                }
            )
        )
        store = LessonStore(file_path=lesson_file, dimension=32)
        lessons = await store.list(LessonQuery(scopes=[LessonScope.GLOBAL, LessonScope.PROJECT]))
        assert [l.id for l in lessons] == ["ok"]
        assert len(lessons[0].embedding) == 32

    @pytest.mark.asyncio
    async def test_dimension_change_reembeds(self, store, lesson_file):
        lesson = await store.add("t", "r")
        reloaded = LessonStore(file_path=lesson_file, dimension=16)
        assert len((await reloaded.get(lesson.id)).embedding) == 16

    @pytest.mark.asyncio
    async def test_in_memory_store_writes_nothing(self, tmp_path):
        store = LessonStore()
        await store.add("t", "r")
        assert store.file_path is None
        assert list(tmp_path.iterdir()) == []


class TestLessonFromDict:
    def test_epoch_millis_timestamps(self, clock):
        lesson = lesson_from_dict(
            {"id": "x", "trigger": "t", "rule": "r", "createdAt": 0, "updatedAt": 1000}, clock()
        )
        assert lesson.created_at.year == 1970
        assert (lesson.updated_at - lesson.created_at).total_seconds() == 1

    def test_missing_timestamps_use_default(self, clock):
        lesson = lesson_from_dict({"id": "x", "trigger": "t", "rule": "r"}, clock())
        assert lesson.created_at == clock()
        assert lesson.updated_at == clock()

    def test_project_id_infers_scope(self, clock):
        lesson = lesson_from_dict({"id": "x", "trigger": "t", "rule": "r", "projectId": "p"}, clock())
        assert lesson.scope == LessonScope.PROJECT
