"""Search layer data types — value objects for stored vectors, hits, and gateway payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# ------------------------------------------------------------------
# Stored vectors
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StoredEmbedding:
    """An embedding record as read back from the local store.

    Attributes:
        id: Row id (insertion order).
        content_id: Member item the vector represents.
        parent_id: Parent (thread) the member belongs to.
        partition_id: Partition (forum/board) of the parent.
        owner_id: Author of the member.
        vector: Unit-length vector, unpacked.
        dimensions: Component count.
        model_name: Model that produced the vector.
        content_hash: Fingerprint of the content that was embedded.
        preview: Plain-text preview.
        created_at: First time the record was stored.
        updated_at: Last time the record was stored.
    """

    id: int
    content_id: int
    parent_id: int
    partition_id: int
    owner_id: int
    vector: list[float]
    dimensions: int
    model_name: str
    content_hash: str
    preview: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class EmbeddingHit:
    """A single ranked hit from :meth:`LocalVectorStore.search`.

    Attributes:
        content_id: Matched member.
        parent_id: Parent of the matched member.
        partition_id: Partition of the matched member.
        owner_id: Author of the matched member.
        similarity: Cosine similarity to the query (higher is closer).
        preview: Stored text preview.
    """

    content_id: int
    parent_id: int
    partition_id: int
    owner_id: int
    similarity: float
    preview: str = ""


@dataclass(frozen=True, slots=True)
class SimilarItem:
    """A parent ranked as similar to a source parent or member.

    Attributes:
        parent_id: The similar parent.
        content_id: The member of that parent that scored best.
        score: Cosine similarity.
        rank: 1-based position in the ranked list.
        partition_id: Partition of the similar parent.
    """

    parent_id: int
    content_id: int
    score: float
    rank: int
    partition_id: int = 0


@dataclass(frozen=True, slots=True)
class StoreStats:
    """Aggregate counters for a local store.

    Attributes:
        record_count: Stored embeddings.
        parent_count: Distinct parents with at least one embedding.
        cache_entry_count: Similarity cache rows (expired included).
        approx_bytes: Approximate bytes held by packed vectors and previews.
        last_updated_at: Most recent ``updated_at`` across records.
    """

    record_count: int = 0
    parent_count: int = 0
    cache_entry_count: int = 0
    approx_bytes: int = 0
    last_updated_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class StorageRecommendation:
    """Whether local storage suits a corpus of a given size.

    Attributes:
        status: ``"good"``, ``"warning"``, or ``"not_recommended"``.
        message: Human-readable explanation.
        corpus_size: The size the recommendation was computed for.
    """

    status: str
    message: str
    corpus_size: int


# ------------------------------------------------------------------
# Gateway payloads
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ImageRef:
    """An image attached to a member.

    Attributes:
        url: Public URL of the image.
        alt: Alternate text, if any.
    """

    url: str
    alt: str = ""


@dataclass(frozen=True, slots=True)
class EmbeddingResponse:
    """Result of a single-item embedding call.

    Attributes:
        vector: The embedding.
        credits_used: Credits charged by the service.
        processed_text: Text as the service actually embedded it (may include
            image descriptions), when returned.
        image_stats: Service-reported image processing details.
    """

    vector: list[float]
    credits_used: int = 0
    processed_text: str | None = None
    image_stats: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class BatchItem:
    """One text item in a batch embedding request.

    Attributes:
        id: Caller-chosen item id, echoed back in the result.
        text: Prepared content to embed.
    """

    id: str
    text: str


@dataclass(frozen=True, slots=True)
class BatchItemResult:
    """Outcome for one item of a batch embedding request.

    Attributes:
        id: The item id from the request.
        success: Whether an embedding was produced.
        vector: The embedding, on success.
        error: Error message, on failure.
    """

    id: str
    success: bool
    vector: list[float] | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class BatchEmbeddingResponse:
    """Result of a batch embedding call.

    Attributes:
        results: Per-item outcomes, in service order.
        credits_used: Credits charged for the whole call.
    """

    results: list[BatchItemResult] = field(default_factory=list)
    credits_used: int = 0


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    """Remaining embedding budget.

    Attributes:
        credits_remaining: Credits left; ``None`` means unmetered.
        plan: Subscription plan name, if reported.
    """

    credits_remaining: int | None
    plan: str | None = None

    @property
    def unlimited(self) -> bool:
        """True when the service does not meter credits."""
        return self.credits_remaining is None


@dataclass(frozen=True, slots=True)
class CloudIngestResult:
    """Result of a cloud ingest call.

    Attributes:
        parent_ids: Parents the cloud reports as indexed.
        hashes: Change-detection hash the cloud recorded per indexed parent.
        credits_used: Credits charged.
    """

    parent_ids: list[int] = field(default_factory=list)
    hashes: dict[int, str] = field(default_factory=dict)
    credits_used: int = 0
