"""SimilarityCacheEntry model — ranked similar-parent lists with a TTL."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class SimilarityCacheEntryBase(SQLModel):
    """One ranked candidate for a cached ``find_similar`` source.

    Candidates are always parents; ``candidate_content_id`` is the member of
    that parent that scored best.  Rows past ``expires_at`` are never read.
    """

    id: int | None = Field(default=None, primary_key=True)
    source_type: str = Field(index=True)
    source_id: int = Field(index=True)
    candidate_type: str = Field(default="parent")
    candidate_id: int = Field(index=True)
    candidate_content_id: int = Field(index=True)
    partition_id: int = Field(default=0)
    score: float = Field(default=0.0)
    rank: int = Field(default=0)
    expires_at: datetime = Field(
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
        index=True,
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class SimilarityCacheEntry(SimilarityCacheEntryBase, table=True):
    """Default similarity cache table — ``threadindex_similarity_cache``."""

    __tablename__ = "threadindex_similarity_cache"
