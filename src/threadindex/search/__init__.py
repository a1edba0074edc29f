"""Vector search layer — math, stores, filters, and embedding gateways."""

from threadindex.search.filters import FilterExpression
from threadindex.search.protocols import EmbeddingGateway
from threadindex.search.stores.cloud import CloudIndex
from threadindex.search.stores.local import LocalVectorStore
from threadindex.search.types import EmbeddingHit, SimilarItem, StoreStats

__all__ = [
    "CloudIndex",
    "EmbeddingGateway",
    "EmbeddingHit",
    "FilterExpression",
    "LocalVectorStore",
    "SimilarItem",
    "StoreStats",
]
