"""Search layer protocols — async interfaces for embedding providers."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from threadindex.search.types import (
        BatchEmbeddingResponse,
        BatchItem,
        EmbeddingResponse,
        ImageRef,
        QuotaStatus,
    )


@runtime_checkable
class EmbeddingGateway(Protocol):
    """Async capability to obtain embeddings from a (usually remote) model.

    ``embed_batch`` accepts at most :attr:`max_batch_items` items; callers
    chunk larger inputs.  Exhausted credits raise
    :class:`~threadindex.exceptions.QuotaExceededError`; unreachable services
    raise :class:`~threadindex.exceptions.GatewayUnavailableError`.
    """

    async def embed(
        self,
        text: str,
        images: list[ImageRef] | None = None,
        context: str | None = None,
    ) -> EmbeddingResponse:
        """Embed one item, optionally with images described in *context*."""
        ...

    async def embed_batch(
        self,
        items: list[BatchItem],
        unit_charge_count: int,
    ) -> BatchEmbeddingResponse:
        """Embed text items in one call, charging *unit_charge_count* parent units."""
        ...

    async def get_quota(self) -> QuotaStatus:
        """Report the remaining credit budget."""
        ...

    @property
    def model_name(self) -> str:
        """Name of the embedding model."""
        ...

    @property
    def max_batch_items(self) -> int:
        """Maximum items accepted by one ``embed_batch`` call."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
