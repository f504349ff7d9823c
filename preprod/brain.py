"""Client for the graph / semantic-search service ("brain").

Staged content is indexed here as nodes and queried by similarity. The
service's graph internals are out of scope.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from preprod.config import get_settings
from preprod.errors import SearchError

log = logging.getLogger(__name__)

STAGED_CONTENT_TYPE = "gather"


@dataclass
class SearchHit:
    id: str
    type: str
    content: str
    similarity: float
    properties: dict[str, Any] = field(default_factory=dict)


class BrainClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.brain_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.brain_api_key
        self.timeout = timeout or settings.search_timeout_seconds
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers=self._headers(),
            transport=self._transport,
        )

    async def search_similar(
        self,
        query: str,
        project_id: str,
        *,
        types: list[str] | None = None,
        limit: int = 5,
        threshold: float = 0.8,
    ) -> list[SearchHit]:
        """Ranked semantic matches for *query* within one project."""
        body: dict[str, Any] = {
            "query": query,
            "project_id": project_id,
            "limit": limit,
            "threshold": threshold,
        }
        if types:
            body["types"] = types
        try:
            async with self._client() as client:
                resp = await client.post("/api/v1/search/semantic", json=body)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SearchError(f"Semantic search failed: {exc}") from exc

        raw_results = data.get("results", []) if isinstance(data, dict) else data
        hits: list[SearchHit] = []
        for r in raw_results or []:
            if not isinstance(r, dict) or r.get("id") is None:
                continue
            try:
                similarity = float(r.get("similarity", 0.0))
            except (TypeError, ValueError):
                continue
            hits.append(SearchHit(
                id=str(r["id"]),
                type=str(r.get("type", "")),
                content=str(r.get("content", "")),
                similarity=similarity,
                properties=r.get("properties") or {},
            ))
        return hits

    async def add_node(
        self,
        node_type: str,
        content: str,
        project_id: str,
        *,
        node_id: str | None = None,
        properties: dict[str, Any] | None = None,
    ) -> str:
        """Index *content* as a node so later similarity queries can find it.

        Returns the node id reported by the service, falling back to *node_id*.
        """
        body: dict[str, Any] = {
            "type": node_type,
            "content": content,
            "project_id": project_id,
            "properties": properties or {},
        }
        if node_id is not None:
            body["id"] = node_id
        try:
            async with self._client() as client:
                resp = await client.post("/api/v1/nodes", json=body)
                resp.raise_for_status()
                data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SearchError(f"Adding node failed: {exc}") from exc

        node = data.get("node") if isinstance(data, dict) else None
        if isinstance(node, dict) and node.get("id") is not None:
            return str(node["id"])
        return node_id or ""

    async def delete_node(self, node_id: str) -> None:
        """Remove a node. A node the service does not know counts as removed."""
        try:
            async with self._client() as client:
                resp = await client.delete(f"/api/v1/nodes/{node_id}", params={"cascade": "false"})
                if resp.status_code == 404:
                    log.info("Node %s not found in search service", node_id)
                    return
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise SearchError(f"Deleting node {node_id} failed: {exc}") from exc
