"""CloudIndex — proxy for the remote vector backend, shaped like the local store."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from threadindex.exceptions import InvalidResponseError
from threadindex.search._http import ServiceClient
from threadindex.search.filters import FilterExpression, compile_cloud
from threadindex.search.types import CloudIngestResult, EmbeddingHit, SimilarItem

if TYPE_CHECKING:
    import httpx

logger = logging.getLogger(__name__)

MAX_SEARCH_LIMIT = 100


class CloudIndex:
    """Remote RAG index reached over HTTP.

    The service embeds on ingest (parents are sent whole, first member as
    the topic and the rest as replies) and answers searches by query text.
    Hits come back in the same :class:`EmbeddingHit` / :class:`SimilarItem`
    shapes the local store produces.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        tenant_id: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._http = ServiceClient(
            base_url=base_url,
            api_key=api_key,
            tenant_id=tenant_id,
            timeout=timeout,
            client=client,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def ingest(
        self,
        threads: list[dict[str, Any]],
        *,
        chunk_size: int = 512,
        overlap_percent: int = 20,
    ) -> CloudIngestResult:
        """Send thread payloads to ``POST /rag/ingest``."""
        if not threads:
            return CloudIngestResult()
        data = await self._http.request(
            "POST",
            "/rag/ingest",
            json=self._http.with_tenant(
                {
                    "threads": threads,
                    "chunk_size": int(chunk_size),
                    "overlap_percent": int(overlap_percent),
                }
            ),
        )
        raw_hashes = data.get("indexed_hashes") or {}
        if isinstance(raw_hashes, list):
            raw_hashes = {pid: "" for pid in raw_hashes}
        if not isinstance(raw_hashes, dict):
            msg = "Invalid ingest response: 'indexed_hashes' must be an object"
            raise InvalidResponseError(msg)
        try:
            hashes = {int(pid): str(h) for pid, h in raw_hashes.items()}
        except (TypeError, ValueError) as exc:
            msg = "Invalid ingest response: non-numeric parent id"
            raise InvalidResponseError(msg) from exc

        credits = data.get("credits_used")
        result = CloudIngestResult(
            parent_ids=list(hashes),
            hashes=hashes,
            credits_used=int(credits) if isinstance(credits, (int, float)) else len(hashes),
        )
        logger.info("Cloud ingested %d of %d threads", len(result.parent_ids), len(threads))
        return result

    async def delete_parent(self, parent_id: int, partition_id: int = 0) -> None:
        """Remove every vector of a parent (``DELETE /rag/topic/{id}``)."""
        await self._http.request(
            "DELETE", f"/rag/topic/{int(parent_id)}", json={"board_id": partition_id}
        )

    async def delete_content(self, content_id: int, partition_id: int = 0) -> None:
        """Remove one member's vectors (``DELETE /rag/post/{id}``)."""
        await self._http.request(
            "DELETE", f"/rag/post/{int(content_id)}", json={"board_id": partition_id}
        )

    async def clear(self) -> None:
        """Remove everything for the tenant (``DELETE /rag/clear``)."""
        await self._http.request("DELETE", "/rag/clear")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        *,
        partition_id: int,
        limit: int = 10,
        filters: FilterExpression | None = None,
    ) -> list[EmbeddingHit]:
        """Semantic search by query text (``POST /search/semantic``).

        The partition is always sent so results never cross partitions.
        """
        payload: dict[str, Any] = {
            "query": query,
            "limit": max(1, min(int(limit), MAX_SEARCH_LIMIT)),
            "filters": {"board_id": str(partition_id)},
        }
        if filters is not None:
            payload["filters"]["where"] = compile_cloud(filters)
        data = await self._http.request(
            "POST", "/search/semantic", json=self._http.with_tenant(payload)
        )
        return [_to_hit(raw, partition_id) for raw in _result_list(data)]

    async def find_similar(self, parent_id: int, limit: int = 5) -> list[SimilarItem]:
        """Parents similar to *parent_id* (``GET /rag/similar``)."""
        data = await self._http.request(
            "GET", "/rag/similar", params={"topic_id": int(parent_id), "limit": int(limit)}
        )
        items: list[SimilarItem] = []
        for raw in _result_list(data):
            similar_id = _first_int(raw, "topic_id", "topicid")
            if similar_id is None or similar_id == parent_id:
                continue
            items.append(
                SimilarItem(
                    parent_id=similar_id,
                    content_id=_first_int(raw, "post_id", "postid") or 0,
                    score=float(raw.get("score", raw.get("similarity", 0.0))),
                    rank=len(items) + 1,
                    partition_id=_first_int(raw, "board_id", "forum_id", "forumid") or 0,
                )
            )
        return items[:limit]

    async def indexed_parent_ids(self) -> set[int]:
        """Every parent the cloud holds vectors for (``GET /rag/indexed-topics``)."""
        data = await self._http.request("GET", "/rag/indexed-topics")
        raw_ids = data.get("topic_ids")
        if not isinstance(raw_ids, list):
            msg = "Invalid indexed-topics response: missing 'topic_ids' list"
            raise InvalidResponseError(msg)
        try:
            return {int(pid) for pid in raw_ids}
        except (TypeError, ValueError) as exc:
            msg = "Invalid indexed-topics response: non-numeric id"
            raise InvalidResponseError(msg) from exc

    async def status(self, partition_id: int = 0) -> dict[str, Any]:
        """Raw index status (``GET /rag/status``)."""
        params = {"boardid": partition_id} if partition_id > 0 else None
        return await self._http.request("GET", "/rag/status", params=params)

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._http.close()


def _result_list(data: dict[str, Any]) -> list[dict[str, Any]]:
    raw = data.get("results", [])
    if not isinstance(raw, list):
        msg = "Invalid response: 'results' must be a list"
        raise InvalidResponseError(msg)
    return [item for item in raw if isinstance(item, dict)]


def _first_int(raw: dict[str, Any], *keys: str) -> int | None:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _to_hit(raw: dict[str, Any], partition_id: int) -> EmbeddingHit:
    parent_id = _first_int(raw, "topic_id", "topicid")
    if parent_id is None:
        msg = "Invalid search result: missing topic id"
        raise InvalidResponseError(msg)
    preview = raw.get("content_preview") or raw.get("content") or ""
    return EmbeddingHit(
        content_id=_first_int(raw, "post_id", "postid") or 0,
        parent_id=parent_id,
        partition_id=_first_int(raw, "board_id", "forum_id", "forumid") or partition_id,
        owner_id=_first_int(raw, "user_id", "userid") or 0,
        similarity=float(raw.get("similarity", raw.get("score", 0.0))),
        preview=str(preview),
    )
