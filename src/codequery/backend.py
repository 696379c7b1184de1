"""
Search backend client.

The embedding model and vector index live in a separate service. This
module talks to it over HTTP and normalizes every response into the typed
records in `codequery.models` right at the boundary, so nothing past this
file ever branches on JSON shape.

Endpoints used:
- GET  /api/workspaces                         -> [{id, path}] or {workspaces: [...]}
- GET  /api/workspaces/{id}/index/status       -> readiness flags and counts
- POST /api/workspaces/{id}/index              -> {status}
- POST /api/workspaces/{id}/search/semantic    -> {results: [...], query_time_ms}
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from cachetools import TTLCache
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from codequery.errors import (
    BackendUnavailable,
    CodeQueryError,
    SearchTimeout,
    WorkspaceNotIndexed,
)
from codequery.models import IndexStatus, SearchResponse, SemanticChunk, Workspace

logger = logging.getLogger("codequery.backend")

DEFAULT_BACKEND_URL = "http://127.0.0.1:7777"
REQUEST_TIMEOUT = 30.0  # seconds; embedding + HNSW search can take a moment
MAX_RETRIES = 3
WORKSPACE_CACHE_TTL = 60.0

# Idempotent GETs retry on connection failures only
BACKEND_RETRY_DECORATOR = retry(
    stop=stop_after_attempt(MAX_RETRIES),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    retry=retry_if_exception_type(httpx.ConnectError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


class SearchBackend(Protocol):
    """What the query engine needs from a vector search service."""

    async def resolve_workspace(self, workspace_path: str) -> str | None: ...

    async def index_status(self, workspace_id: str) -> IndexStatus: ...

    async def trigger_index(self, workspace_id: str) -> str: ...

    async def search(self, workspace_id: str, query: str, limit: int) -> SearchResponse: ...


# ─────────────────────────────────────────────────────────────────────────────
# Response normalization
# ─────────────────────────────────────────────────────────────────────────────


def normalize_workspace_path(path: str) -> str:
    """Forward slashes, no trailing slash, lowercase."""
    return path.replace("\\", "/").rstrip("/").lower()


def parse_workspaces(payload: Any) -> list[Workspace]:
    """Accept either a bare list or a {"workspaces": [...]} wrapper."""
    if isinstance(payload, dict):
        payload = payload.get("workspaces")
    if not isinstance(payload, list):
        return []
    workspaces = []
    for entry in payload:
        if isinstance(entry, dict) and entry.get("id") is not None and entry.get("path"):
            workspaces.append(Workspace(id=str(entry["id"]), path=str(entry["path"])))
    return workspaces


def parse_index_status(payload: Any) -> IndexStatus:
    data = payload if isinstance(payload, dict) else {}
    return IndexStatus(
        indexed=bool(data.get("indexed", False)),
        is_indexing=bool(data.get("is_indexing", False)),
        is_vector_indexing=bool(data.get("is_vector_indexing", False)),
        indexed_count=int(data.get("indexed_count") or 0),
        total_count=int(data.get("total_count") or 0),
        vector_count=int(data.get("vector_count") or 0),
        vector_ready=bool(data.get("vector_ready", False)),
        embedding_model_ready=bool(data.get("embedding_model_ready", False)),
    )


def parse_chunk(entry: dict) -> SemanticChunk:
    """Build a SemanticChunk. Raises KeyError/TypeError/ValueError on malformed input."""
    relative_path = entry.get("relative_path") or entry["path"]
    line_start = max(1, int(entry["line_start"]))
    line_end = max(line_start, int(entry.get("line_end") or line_start))
    return SemanticChunk(
        path=str(entry.get("path") or relative_path),
        relative_path=str(relative_path),
        chunk_text=str(entry.get("chunk_text") or ""),
        line_start=line_start,
        line_end=line_end,
        language=str(entry.get("language") or ""),
        score=float(entry.get("score") or 0.0),
    )


def parse_search_response(payload: Any) -> SearchResponse:
    data = payload if isinstance(payload, dict) else {"results": payload}
    results = data.get("results") or []
    chunks = []
    for entry in results if isinstance(results, list) else []:
        try:
            chunks.append(parse_chunk(entry))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping malformed search result %r: %s", entry, e)
    return SearchResponse(chunks=chunks, query_time_ms=int(data.get("query_time_ms") or 0))


# ─────────────────────────────────────────────────────────────────────────────
# HTTP client
# ─────────────────────────────────────────────────────────────────────────────


class HttpSearchBackend:
    """SearchBackend over the service's JSON HTTP API."""

    def __init__(
        self,
        base_url: str = DEFAULT_BACKEND_URL,
        timeout: float = REQUEST_TIMEOUT,
        workspace_cache_ttl: float = WORKSPACE_CACHE_TTL,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._workspace_ids: TTLCache = TTLCache(maxsize=64, ttl=workspace_cache_ttl)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> HttpSearchBackend:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _request(self, method: str, path: str, json: dict | None = None) -> Any:
        """Send a request and decode JSON, mapping transport errors to the taxonomy."""
        try:
            response = await self.client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise SearchTimeout(f"Search backend timed out after {self.timeout:g}s ({method} {path})") from e
        except httpx.ConnectError:
            raise
        except httpx.TransportError as e:
            raise BackendUnavailable(f"Search backend request failed: {e}") from e

        if response.status_code == 404 and path.startswith("/api/workspaces/"):
            raise WorkspaceNotIndexed(f"Workspace not known to the search backend: {response.text}")
        if response.status_code == 503:
            raise BackendUnavailable(f"Search backend unavailable: {response.text}")
        if response.is_error:
            raise CodeQueryError(f"Search backend {response.status_code}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise CodeQueryError(f"Search backend returned invalid JSON for {path}") from e

    @BACKEND_RETRY_DECORATOR
    async def _get_with_retry(self, path: str) -> Any:
        return await self._request("GET", path)

    async def _get(self, path: str) -> Any:
        try:
            return await self._get_with_retry(path)
        except httpx.ConnectError as e:
            logger.error("Cannot connect to search backend at %s", self.base_url)
            raise BackendUnavailable(f"Cannot connect to search backend at {self.base_url}") from e

    async def _post(self, path: str, json: dict | None = None) -> Any:
        try:
            return await self._request("POST", path, json=json)
        except httpx.ConnectError as e:
            logger.error("Cannot connect to search backend at %s", self.base_url)
            raise BackendUnavailable(f"Cannot connect to search backend at {self.base_url}") from e

    async def list_workspaces(self) -> list[Workspace]:
        return parse_workspaces(await self._get("/api/workspaces"))

    async def resolve_workspace(self, workspace_path: str) -> str | None:
        """Workspace id for a path, matched case-insensitively; None if unregistered."""
        target = normalize_workspace_path(workspace_path)
        if target in self._workspace_ids:
            return self._workspace_ids[target]

        for ws in await self.list_workspaces():
            if normalize_workspace_path(ws.path) == target:
                self._workspace_ids[target] = ws.id
                return ws.id
        return None

    async def index_status(self, workspace_id: str) -> IndexStatus:
        return parse_index_status(await self._get(f"/api/workspaces/{workspace_id}/index/status"))

    async def trigger_index(self, workspace_id: str) -> str:
        payload = await self._post(f"/api/workspaces/{workspace_id}/index")
        if isinstance(payload, dict):
            return str(payload.get("status") or "indexing_started")
        return "indexing_started"

    async def search(self, workspace_id: str, query: str, limit: int) -> SearchResponse:
        payload = await self._post(
            f"/api/workspaces/{workspace_id}/search/semantic",
            json={"query": query, "limit": limit},
        )
        return parse_search_response(payload)
