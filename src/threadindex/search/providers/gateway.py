"""HttpEmbeddingGateway — embeddings from the metered remote service over httpx."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from threadindex.exceptions import InvalidResponseError
from threadindex.search._http import ServiceClient
from threadindex.search.types import (
    BatchEmbeddingResponse,
    BatchItemResult,
    EmbeddingResponse,
    QuotaStatus,
)

if TYPE_CHECKING:
    import httpx

    from threadindex.search.types import BatchItem, ImageRef

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "amazon.titan-embed-text-v2"
MAX_BATCH_ITEMS = 100
# The service's API gateway cuts requests at 29 s; give up before that.
BATCH_TIMEOUT = 25.0


class HttpEmbeddingGateway:
    """Embedding gateway backed by the remote indexing service.

    ``embed`` handles image-bearing items (the service describes the images
    and embeds text plus descriptions).  ``embed_batch`` handles text-only
    items and always sends ``topic_count`` (the parent units to charge), even
    when it is 0; without it the service bills per item.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        tenant_id: str | None = None,
        model: str = DEFAULT_MODEL,
        site_domain: str | None = None,
        max_batch_items: int = MAX_BATCH_ITEMS,
        timeout: float = 30.0,
        batch_timeout: float = BATCH_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._http = ServiceClient(
            base_url=base_url,
            api_key=api_key,
            tenant_id=tenant_id,
            timeout=timeout,
            client=client,
        )
        self._model = model
        self._site_domain = site_domain
        self._max_batch_items = max_batch_items
        self._batch_timeout = batch_timeout

    # ------------------------------------------------------------------
    # EmbeddingGateway protocol
    # ------------------------------------------------------------------

    async def embed(
        self,
        text: str,
        images: list[ImageRef] | None = None,
        context: str | None = None,
    ) -> EmbeddingResponse:
        """Embed one item via ``POST /search/embedding/generate``."""
        if not text.strip():
            msg = "Content cannot be empty"
            raise ValueError(msg)

        payload: dict[str, Any] = {"content": text}
        if images:
            payload["images"] = [{"url": image.url, "alt": image.alt} for image in images]
            if self._site_domain:
                payload["site_domain"] = self._site_domain
            if context:
                payload["topic_context"] = context

        data = await self._http.request(
            "POST", "/search/embedding/generate", json=self._http.with_tenant(payload)
        )
        vector = _parse_vector(data.get("embedding"), "embedding")
        if vector is None:
            msg = "Invalid embedding response: missing or malformed 'embedding'"
            raise InvalidResponseError(msg)

        image_stats = data.get("image_processing")
        processed = data.get("processed_content")
        return EmbeddingResponse(
            vector=vector,
            credits_used=_as_int(data.get("credits_used"), default=1),
            processed_text=processed if isinstance(processed, str) else None,
            image_stats=image_stats if isinstance(image_stats, dict) else {},
        )

    async def embed_batch(
        self,
        items: list[BatchItem],
        unit_charge_count: int,
    ) -> BatchEmbeddingResponse:
        """Embed up to :attr:`max_batch_items` items via ``POST .../generate-batch``."""
        if not items:
            return BatchEmbeddingResponse()
        if len(items) > self._max_batch_items:
            msg = f"embed_batch accepts at most {self._max_batch_items} items, got {len(items)}"
            raise ValueError(msg)

        payload: dict[str, Any] = {
            "items": [{"id": item.id, "content": item.text} for item in items],
            "topic_count": int(unit_charge_count),
        }
        logger.debug(
            "Batch embedding %d items, topic_count=%d", len(items), int(unit_charge_count)
        )
        data = await self._http.request(
            "POST",
            "/search/embedding/generate-batch",
            json=self._http.with_tenant(payload),
            timeout=self._batch_timeout,
        )

        raw_results = data.get("results")
        if not isinstance(raw_results, list):
            msg = "Invalid batch embedding response: missing 'results' list"
            raise InvalidResponseError(msg)

        results: list[BatchItemResult] = []
        for raw in raw_results:
            if not isinstance(raw, dict) or "id" not in raw:
                msg = "Invalid batch embedding response: result without an id"
                raise InvalidResponseError(msg)
            item_id = str(raw["id"])
            try:
                vector = _parse_vector(raw.get("embedding"), item_id)
            except InvalidResponseError as exc:
                results.append(BatchItemResult(id=item_id, success=False, error=str(exc)))
                continue
            if raw.get("success") and vector is not None:
                results.append(BatchItemResult(id=item_id, success=True, vector=vector))
            else:
                error = raw.get("error") or "No embedding returned"
                results.append(BatchItemResult(id=item_id, success=False, error=str(error)))

        return BatchEmbeddingResponse(
            results=results,
            credits_used=_as_int(data.get("credits_used"), default=0),
        )

    async def get_quota(self) -> QuotaStatus:
        """Read remaining credits from ``GET /tenant/status``."""
        data = await self._http.request("GET", "/tenant/status")
        subscription = data.get("subscription")
        if not isinstance(subscription, dict):
            subscription = {}
        plan = subscription.get("plan")
        return QuotaStatus(
            credits_remaining=_as_int(subscription.get("credits_remaining"), default=0),
            plan=plan if isinstance(plan, str) else None,
        )

    @property
    def model_name(self) -> str:
        """Return the model name."""
        return self._model

    @property
    def max_batch_items(self) -> int:
        """Return the per-call item cap."""
        return self._max_batch_items

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._http.close()


def _parse_vector(raw: Any, where: str) -> list[float] | None:
    """Validate an embedding payload; None when absent, error when malformed."""
    if raw is None:
        return None
    if not isinstance(raw, list) or not raw:
        msg = f"Invalid embedding for {where}: expected a non-empty list"
        raise InvalidResponseError(msg)
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError) as exc:
        msg = f"Invalid embedding for {where}: non-numeric component"
        raise InvalidResponseError(msg) from exc


def _as_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
