"""Tests for the remote memory service adapter."""

import json

import httpx
import pytest

from mnemo.cloud import CloudMemoryClient, load_cloud_credentials, validate_cloud_url
from mnemo.protocols import CloudError, MemoryManagerProtocol, ValidationError
from mnemo.types import MemoryType

BASE_URL = "https://memory.example.com"


class FakeService:
    """Records requests and replies from a route table."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, request.url.path)
        handler = self.routes.get(key)
        if handler is None:
            return httpx.Response(404, json={"error": "not found"})
        if callable(handler):
            return handler(request)
        status, body = handler
        return httpx.Response(status, json=body) if body is not None else httpx.Response(status)

    def last_json(self):
        return json.loads(self.requests[-1].content)


def make_client(service, **kwargs):
    return CloudMemoryClient(
        base_url=BASE_URL, api_key="secret", transport=httpx.MockTransport(service), **kwargs
    )


class TestCredentials:
    def test_explicit_arguments(self):
        creds = load_cloud_credentials(BASE_URL + "/", "key")
        assert creds == {"base_url": BASE_URL, "api_key": "key"}

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("MNEMO_CLOUD_URL", BASE_URL)
        monkeypatch.setenv("MNEMO_CLOUD_API_KEY", "env-key")
        assert load_cloud_credentials()["api_key"] == "env-key"

    def test_credentials_file(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "credentials.json").write_text(
            json.dumps({"cloud_url": BASE_URL, "api_key": "file-key"})
        )
        assert load_cloud_credentials() == {"base_url": BASE_URL, "api_key": "file-key"}

    def test_unreadable_credentials_file_ignored(self, isolated_home):
        isolated_home.mkdir(parents=True)
        (isolated_home / "credentials.json").write_text("{broken")
        with pytest.raises(CloudError, match="not configured"):
            load_cloud_credentials()

    def test_missing(self):
        with pytest.raises(CloudError, match="not configured"):
            load_cloud_credentials()

    @pytest.mark.parametrize(
        "url", ["ftp://memory.example.com", "http://memory.example.com", "https://"]
    )
    def test_rejects_unsafe_urls(self, url):
        with pytest.raises(CloudError):
            validate_cloud_url(url)

    @pytest.mark.parametrize("url", ["http://localhost:8000", "http://127.0.0.1"])
    def test_allows_local_http(self, url):
        assert validate_cloud_url(url) == url


class TestRemoteOperations:
    @pytest.mark.asyncio
    async def test_remember(self):
        service = FakeService({("POST", "/v1/memories"): (201, {"id": "mem-1"})})
        async with make_client(service) as client:
            memory_id = await client.remember("likes tea", type=MemoryType.PREFERENCE, tags=["drinks"])

        assert memory_id == "mem-1"
        request = service.requests[0]
        assert request.headers["Authorization"] == "Bearer secret"
        body = service.last_json()
        assert body["content"] == "likes tea"
        assert body["type"] == "preference"
        assert body["tags"] == ["drinks"]
        assert body["session_id"].startswith("session-")
        assert "importance" not in body

    @pytest.mark.asyncio
    async def test_remember_validates_locally(self):
        service = FakeService()
        async with make_client(service) as client:
            with pytest.raises(ValidationError):
                await client.remember("  ")
        assert service.requests == []

    @pytest.mark.asyncio
    async def test_recall(self):
        memory = {
            "id": "mem-1",
            "type": "fact",
            "content": "tea",
            "importance": 0.6,
            "created_at": "2025-01-01T00:00:00+00:00",
        }
        service = FakeService({("POST", "/v1/memories/search"): (200, {"memories": [memory]})})
        async with make_client(service) as client:
            results = await client.recall("tea", limit=3, types=[MemoryType.FACT])

        assert [m.id for m in results] == ["mem-1"]
        assert results[0].type == MemoryType.FACT
        assert service.last_json() == {
            "query": "tea",
            "limit": 3,
            "min_importance": 0.0,
            "semantic": True,
            "types": ["fact"],
        }

    @pytest.mark.asyncio
    async def test_forget(self):
        service = FakeService({("DELETE", "/v1/memories/mem-1"): (204, None)})
        async with make_client(service) as client:
            assert await client.forget("mem-1") is True
            assert await client.forget("mem-2") is False

    @pytest.mark.asyncio
    async def test_reinforce_ignores_unknown(self):
        service = FakeService({("POST", "/v1/memories/mem-1/reinforce"): (204, None)})
        async with make_client(service) as client:
            await client.reinforce("mem-1")
            await client.reinforce("mem-2")
        assert len(service.requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_raises(self):
        service = FakeService({("POST", "/v1/memories/mem-1/reinforce"): (500, {"error": "down"})})
        async with make_client(service) as client:
            with pytest.raises(CloudError) as exc_info:
                await client.reinforce("mem-1")
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        def fail(request):
            raise httpx.ConnectError("refused", request=request)

        service = FakeService({("GET", "/v1/memories/stats"): fail})
        async with make_client(service) as client:
            with pytest.raises(CloudError, match="failed"):
                await client.get_stats()

    @pytest.mark.asyncio
    async def test_consolidate_and_stats(self):
        service = FakeService(
            {
                ("POST", "/v1/memories/consolidate"): (
                    200,
                    {"memories_before": 10, "memories_after": 7, "deleted": 3},
                ),
                ("GET", "/v1/memories/stats"): (
                    200,
                    {"total": 7, "by_type": {"fact": 7}, "average_importance": 0.5, "size_bytes": 100},
                ),
            }
        )
        async with make_client(service) as client:
            result = await client.consolidate()
            stats = await client.get_stats()

        assert (result.memories_before, result.memories_after, result.deleted) == (10, 7, 3)
        assert stats.total == 7
        assert stats.by_type == {"fact": 7}


class TestLocalContext:
    @pytest.mark.asyncio
    async def test_overflow_sent_to_service(self):
        service = FakeService({("POST", "/v1/memories"): (201, {"id": "mem-1"})})
        async with make_client(service, short_term_limit=2, token_counter=lambda t: len(t.split())) as client:
            await client.add_to_context("one two", "user")
            await client.add_to_context("three", "assistant")
            context = await client.get_context()

        assert context == "[assistant]: three"
        body = service.last_json()
        assert body["content"] == "one two"
        assert body["type"] == "conversation"
        assert body["metadata"] == {"role": "user"}

    @pytest.mark.asyncio
    async def test_export_includes_context_and_import_restores_it(self):
        service = FakeService(
            {
                ("GET", "/v1/memories/export"): (200, {"memories": []}),
                ("POST", "/v1/memories/import"): (200, {"imported": 0}),
            }
        )
        async with make_client(service) as client:
            await client.add_to_context("hi", "user")
            exported = await client.export_memories()
            await client.clear_context()
            assert await client.get_context() == ""

            assert await client.import_memories(exported) == 0
            assert await client.get_context() == "[user]: hi"

        assert "context" not in service.last_json()
        assert json.loads(exported)["version"] == 1

    @pytest.mark.asyncio
    async def test_import_rejects_non_json(self):
        async with make_client(FakeService()) as client:
            with pytest.raises(ValidationError):
                await client.import_memories("nope")


def test_satisfies_protocol():
    client = CloudMemoryClient(base_url=BASE_URL, api_key="k")
    assert isinstance(client, MemoryManagerProtocol)
