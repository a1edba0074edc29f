"""EmbeddingRecord model — one packed vector per (content item, model).

Provides ``EmbeddingRecordBase`` (non-table base) and ``EmbeddingRecord``
(concrete table).  Subclass the base with ``table=True`` and a custom
``__tablename__`` to store embeddings under a different table name.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, LargeBinary, UniqueConstraint
from sqlmodel import Field, SQLModel


class EmbeddingRecordBase(SQLModel):
    """Base fields for a stored embedding.

    ``embedding_vector`` holds little-endian float32 bytes of a unit-length
    vector; ``dimensions`` is its component count.
    """

    id: int | None = Field(default=None, primary_key=True)
    content_id: int = Field(index=True)
    parent_id: int = Field(index=True)
    partition_id: int = Field(default=0, index=True)
    owner_id: int = Field(default=0, index=True)
    embedding_vector: bytes = Field(sa_type=LargeBinary)  # type: ignore[invalid-argument-type]
    dimensions: int = Field(default=0)
    model_name: str = Field(default="")
    content_hash: str = Field(default="", index=True)
    preview_text: str = Field(default="")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class EmbeddingRecord(EmbeddingRecordBase, table=True):
    """Default embeddings table — ``threadindex_embeddings``."""

    __tablename__ = "threadindex_embeddings"
    __table_args__ = (
        UniqueConstraint("content_id", "model_name", name="uq_threadindex_embeddings_content"),
    )
