"""OpenAIEmbeddingGateway — self-hosted embeddings via OpenAI's API."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

try:
    import openai
    from openai import AsyncOpenAI

    _HAS_OPENAI = True
except ImportError:  # pragma: no cover
    _HAS_OPENAI = False

from threadindex.exceptions import GatewayError, GatewayUnavailableError, QuotaExceededError
from threadindex.search.types import (
    BatchEmbeddingResponse,
    BatchItemResult,
    EmbeddingResponse,
    QuotaStatus,
)

if TYPE_CHECKING:
    from openai import AsyncOpenAI as AsyncOpenAIType

    from threadindex.search.types import BatchItem, ImageRef


class OpenAIEmbeddingGateway:
    """Embedding gateway backed by the OpenAI Embeddings API.

    Unmetered from threadindex's point of view: credits are always 0 and
    :meth:`get_quota` reports no limit.  Images are ignored.

    Requires the ``openai`` package::

        pip install threadindex[openai]
    """

    def __init__(
        self,
        *,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        api_key: str | None = None,
        max_retries: int = 2,
        timeout: float = 25.0,
        max_batch_items: int = 100,
    ) -> None:
        if not _HAS_OPENAI:
            msg = (
                "openai is required for OpenAIEmbeddingGateway. "
                "Install it with: pip install threadindex[openai]"
            )
            raise ImportError(msg)

        resolved_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not resolved_key:
            msg = (
                "No OpenAI API key provided. Pass api_key= or set the "
                "OPENAI_API_KEY environment variable."
            )
            raise ValueError(msg)

        self._model = model
        self._dimensions = dimensions
        self._max_batch_items = max_batch_items
        self._client: AsyncOpenAIType = AsyncOpenAI(
            api_key=resolved_key,
            max_retries=max_retries,
            timeout=timeout,
        )

    # ------------------------------------------------------------------
    # EmbeddingGateway protocol
    # ------------------------------------------------------------------

    async def embed(
        self,
        text: str,
        images: list[ImageRef] | None = None,
        context: str | None = None,
    ) -> EmbeddingResponse:
        """Embed a single text (images and context are ignored)."""
        vectors = await self._call_api([text])
        return EmbeddingResponse(vector=vectors[0], credits_used=0)

    async def embed_batch(
        self,
        items: list[BatchItem],
        unit_charge_count: int,
    ) -> BatchEmbeddingResponse:
        """Embed up to :attr:`max_batch_items` texts in one API call."""
        if not items:
            return BatchEmbeddingResponse()
        if len(items) > self._max_batch_items:
            msg = f"embed_batch accepts at most {self._max_batch_items} items, got {len(items)}"
            raise ValueError(msg)
        vectors = await self._call_api([item.text for item in items])
        return BatchEmbeddingResponse(
            results=[
                BatchItemResult(id=item.id, success=True, vector=vector)
                for item, vector in zip(items, vectors, strict=True)
            ],
            credits_used=0,
        )

    async def get_quota(self) -> QuotaStatus:
        """OpenAI usage is not metered here."""
        return QuotaStatus(credits_remaining=None, plan="openai")

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
        await self._client.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _call_api(self, texts: list[str]) -> list[list[float]]:
        """Call the OpenAI embeddings endpoint and return ordered vectors."""
        kwargs: dict[str, Any] = {
            "input": texts,
            "model": self._model,
        }
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions

        try:
            response = await self._client.embeddings.create(**kwargs)
        except openai.RateLimitError as exc:
            if getattr(exc, "code", None) == "insufficient_quota":
                raise QuotaExceededError(str(exc)) from exc
            raise GatewayError(str(exc), status_code=429) from exc
        except (openai.APIConnectionError, openai.APITimeoutError) as exc:
            raise GatewayUnavailableError(str(exc)) from exc
        except openai.APIStatusError as exc:
            raise GatewayError(str(exc), status_code=exc.status_code) from exc

        # Sort by index to ensure order matches input
        sorted_data = sorted(response.data, key=lambda e: e.index)
        return [item.embedding for item in sorted_data]
