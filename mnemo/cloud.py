"""Remote memory service adapter.

Implements the same contract as the local MemoryManager, but stores and
searches memories through a hosted REST API. Only the short-term context
buffer is kept locally.

Endpoints (relative to the base URL):

    POST   /v1/memories                   remember
    POST   /v1/memories/search            recall
    DELETE /v1/memories/{id}              forget
    POST   /v1/memories/{id}/reinforce    reinforce
    POST   /v1/memories/consolidate       consolidate
    GET    /v1/memories/stats             get_stats
    GET    /v1/memories/export            export_memories
    POST   /v1/memories/import            import_memories
"""

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import httpx

from mnemo.context import ContextWindow
from mnemo.protocols import CloudError, TokenCounter, ValidationError
from mnemo.types import (
    ConsolidationResult,
    MemoryRecord,
    MemoryStats,
    MemoryType,
    Metadata,
    now_utc,
    parse_datetime,
)
from mnemo.utils import estimate_tokens, generate_session_id, get_mnemo_home

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0
DEFAULT_SHORT_TERM_LIMIT = 4096

_LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def validate_cloud_url(url: str) -> str:
    """Reject URLs that would send the API key somewhere unsafe.

    Only https is accepted, except plain http to localhost.

    Raises:
        CloudError: If the URL is unusable.
    """
    parsed = urlparse(url or "")
    if parsed.scheme not in {"https", "http"}:
        raise CloudError("Invalid cloud URL scheme; only http/https allowed")
    if not parsed.netloc:
        raise CloudError("Invalid cloud URL; missing host")
    if parsed.scheme == "http" and (parsed.hostname or "") not in _LOCAL_HOSTS:
        raise CloudError("Refusing non-local http cloud URL")
    return url.rstrip("/")


def load_cloud_credentials(
    base_url: Optional[str] = None, api_key: Optional[str] = None
) -> Dict[str, str]:
    """Resolve cloud URL and API key.

    Priority: explicit arguments, then ``MNEMO_CLOUD_URL`` /
    ``MNEMO_CLOUD_API_KEY``, then ``<mnemo home>/credentials.json``.

    Raises:
        CloudError: If either value is missing.
    """
    base_url = base_url or os.environ.get("MNEMO_CLOUD_URL")
    api_key = api_key or os.environ.get("MNEMO_CLOUD_API_KEY")

    if not base_url or not api_key:
        credentials_path = get_mnemo_home() / "credentials.json"
        creds = _read_credentials(credentials_path)
        base_url = base_url or creds.get("cloud_url")
        api_key = api_key or creds.get("api_key")

    if not base_url or not api_key:
        raise CloudError("Cloud memory is not configured (set MNEMO_CLOUD_URL and MNEMO_CLOUD_API_KEY)")
    return {"base_url": validate_cloud_url(base_url), "api_key": api_key}


def _read_credentials(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable credentials file {path}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _stats_from_dict(data: Dict[str, Any]) -> MemoryStats:
    return MemoryStats(
        total=int(data.get("total", 0)),
        by_type={str(k): int(v) for k, v in (data.get("by_type") or {}).items()},
        average_importance=float(data.get("average_importance", 0.0)),
        size_bytes=int(data.get("size_bytes", 0)),
        oldest_at=parse_datetime(data.get("oldest_at")),
        newest_at=parse_datetime(data.get("newest_at")),
    )


class CloudMemoryClient:
    """Memory manager backed by a remote memory service.

    Args:
        base_url: Service URL. Falls back to env / credentials file.
        api_key: Bearer token. Falls back to env / credentials file.
        short_term_limit: Token limit of the local context buffer.
        timeout: Request timeout in seconds.
        token_counter: Counts tokens for the context buffer.
        transport: Optional httpx transport (used in tests).
        clock: Time source.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        short_term_limit: int = DEFAULT_SHORT_TERM_LIMIT,
        timeout: float = DEFAULT_TIMEOUT,
        token_counter: TokenCounter = estimate_tokens,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = now_utc,
    ):
        creds = load_cloud_credentials(base_url, api_key)
        self.base_url = creds["base_url"]
        self._clock = clock
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {creds['api_key']}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )
        self._context = ContextWindow(short_term_limit, token_counter, clock)
        self.session_id = generate_session_id(clock())

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CloudMemoryClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise CloudError(f"Cloud request {method} {path} failed: {e}") from e

        if response.status_code >= 400:
            raise CloudError(
                f"Cloud request {method} {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise CloudError(f"Cloud response for {method} {path} is not JSON") from e

    # === Long-term memory ===

    async def remember(
        self,
        content: str,
        *,
        type: MemoryType = MemoryType.FACT,
        importance: Optional[float] = None,
        tags: Optional[List[str]] = None,
        source: str = "user",
        session_id: Optional[str] = None,
        metadata: Optional[Metadata] = None,
    ) -> str:
        if not content or not content.strip():
            raise ValidationError("Memory content cannot be empty")
        payload: Dict[str, Any] = {
            "content": content,
            "type": MemoryType(type).value,
            "tags": tags or [],
            "source": source,
            "session_id": session_id or self.session_id,
        }
        if importance is not None:
            payload["importance"] = importance
        if metadata is not None:
            payload["metadata"] = metadata
        data = await self._request("POST", "/v1/memories", json=payload)
        return str(data["id"])

    async def recall(
        self,
        query: str,
        *,
        limit: int = 10,
        types: Optional[List[MemoryType]] = None,
        min_importance: float = 0.0,
        use_semantic_search: bool = True,
        tags: Optional[List[str]] = None,
    ) -> List[MemoryRecord]:
        payload: Dict[str, Any] = {
            "query": query,
            "limit": limit,
            "min_importance": min_importance,
            "semantic": use_semantic_search,
        }
        if types:
            payload["types"] = [MemoryType(t).value for t in types]
        if tags:
            payload["tags"] = tags
        data = await self._request("POST", "/v1/memories/search", json=payload)
        return [MemoryRecord.from_dict(item) for item in (data or {}).get("memories", [])]

    async def forget(self, memory_id: str) -> bool:
        try:
            await self._request("DELETE", f"/v1/memories/{memory_id}")
        except CloudError as e:
            if e.status_code == 404:
                return False
            raise
        return True

    async def reinforce(self, memory_id: str) -> None:
        try:
            await self._request("POST", f"/v1/memories/{memory_id}/reinforce")
        except CloudError as e:
            if e.status_code != 404:
                raise
            logger.debug(f"Reinforce of unknown memory {memory_id} ignored")

    # === Short-term context (local) ===

    async def get_context(self, max_tokens: Optional[int] = None) -> str:
        return "\n".join(self._context.render(max_tokens))

    async def add_to_context(self, message: str, role: str) -> None:
        for removed in self._context.append(message, role):
            if removed.content.strip():
                await self.remember(
                    removed.content,
                    type=MemoryType.CONVERSATION,
                    importance=0.3,
                    source="context-overflow",
                    metadata={"role": removed.role},
                )

    async def clear_context(self) -> None:
        self._context.clear()

    # === Maintenance ===

    async def consolidate(self) -> ConsolidationResult:
        data = await self._request("POST", "/v1/memories/consolidate") or {}
        return ConsolidationResult(
            memories_before=int(data.get("memories_before", 0)),
            memories_after=int(data.get("memories_after", 0)),
            deleted=int(data.get("deleted", 0)),
            merged=int(data.get("merged", 0)),
            summaries=list(data.get("summaries") or []),
            duration_ms=float(data.get("duration_ms", 0.0)),
        )

    async def get_stats(self) -> MemoryStats:
        return _stats_from_dict(await self._request("GET", "/v1/memories/stats") or {})

    async def export_memories(self) -> str:
        data = await self._request("GET", "/v1/memories/export") or {}
        data.setdefault("version", 1)
        data["context"] = self._context.to_list()
        return json.dumps(data)

    async def import_memories(self, data: str) -> int:
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Import data is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValidationError("Import data must be a JSON object")
        context = parsed.pop("context", None)
        result = await self._request("POST", "/v1/memories/import", json=parsed) or {}
        if context:
            self._context.load(context)
        return int(result.get("imported", 0))
