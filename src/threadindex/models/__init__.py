"""SQLModel database models for threadindex."""

from threadindex.models.cache import SimilarityCacheEntry, SimilarityCacheEntryBase
from threadindex.models.config import ConfigEntry
from threadindex.models.embeddings import EmbeddingRecord, EmbeddingRecordBase

__all__ = [
    "ConfigEntry",
    "EmbeddingRecord",
    "EmbeddingRecordBase",
    "SimilarityCacheEntry",
    "SimilarityCacheEntryBase",
]
