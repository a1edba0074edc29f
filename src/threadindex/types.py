"""Router-level types — context, modes, and normalized result shapes.

Every router call takes an explicit :class:`IndexContext`; results have the
same shape whichever backend served them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from threadindex.exceptions import ConfigurationError
from threadindex.search.types import StorageRecommendation, StoreStats


class IndexMode(Enum):
    """Storage backend serving a partition."""

    LOCAL = "local"
    CLOUD = "cloud"

    @classmethod
    def parse(cls, value: IndexMode | str) -> IndexMode:
        """Accept an ``IndexMode`` or its string value."""
        if isinstance(value, IndexMode):
            return value
        try:
            return cls(value)
        except ValueError:
            msg = f"Unknown storage mode {value!r}; expected 'local' or 'cloud'"
            raise ConfigurationError(msg) from None


@dataclass(frozen=True, slots=True)
class IndexContext:
    """Tenant and partition a call operates on.

    Attributes:
        tenant_id: Tenant (site) identifier.
        partition_id: Partition (forum/board) inside the tenant.
    """

    tenant_id: str
    partition_id: int

    @property
    def key(self) -> str:
        """Stable string form used in durable keys."""
        return f"{self.tenant_id}:{self.partition_id}"


@dataclass(frozen=True, slots=True)
class IndexOptions:
    """Per-call indexing options.

    Attributes:
        force: Re-embed even when the stored fingerprint matches.
        include_images: Override the configured image routing; None keeps it.
    """

    force: bool = False
    include_images: bool | None = None


# ------------------------------------------------------------------
# Indexing results
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IndexResult:
    """Structured outcome of an indexing call.

    Attributes:
        indexed: Members embedded and stored.
        skipped: Members whose fingerprint already matched.
        not_eligible: Parents excluded by policy (private or unapproved).
        errors: Per-item error messages.
        credits_used: Credits charged by the embedding service.
        parents_indexed: Parents now fully represented in the backend.
        quota_exceeded: True if work stopped because credits ran out.
    """

    indexed: int = 0
    skipped: int = 0
    not_eligible: int = 0
    errors: list[str] = field(default_factory=list)
    credits_used: int = 0
    parents_indexed: list[int] = field(default_factory=list)
    quota_exceeded: bool = False

    @property
    def success(self) -> bool:
        """False when items were attempted and every one of them failed."""
        if self.quota_exceeded and self.indexed == 0:
            return False
        return not (self.errors and self.indexed == 0 and self.skipped == 0)

    def merge(self, other: IndexResult) -> IndexResult:
        """Combine two results (counts add, lists concatenate)."""
        return IndexResult(
            indexed=self.indexed + other.indexed,
            skipped=self.skipped + other.skipped,
            not_eligible=self.not_eligible + other.not_eligible,
            errors=[*self.errors, *other.errors],
            credits_used=self.credits_used + other.credits_used,
            parents_indexed=[*self.parents_indexed, *other.parents_indexed],
            quota_exceeded=self.quota_exceeded or other.quota_exceeded,
        )


@dataclass(frozen=True, slots=True)
class ReindexResult:
    """Outcome of :meth:`StorageRouter.reindex_all`.

    Attributes:
        mode: Backend being reindexed.
        full: True if every marker was cleared first.
        candidates: Parents that needed indexing.
        queued: Parents placed on the queue.
        skipped: Candidates dropped because quota was short.
        credits_remaining: Quota observed before queueing (None if unmetered).
    """

    mode: IndexMode
    full: bool
    candidates: int
    queued: int
    skipped: int = 0
    credits_remaining: int | None = None


# ------------------------------------------------------------------
# Search results
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SearchResult:
    """A search hit hydrated with live parent/member metadata.

    Attributes:
        content_id: Matched member.
        parent_id: Its parent.
        partition_id: Partition of the parent.
        score: Similarity score (higher is closer).
        title: Parent title.
        url: Parent URL.
        member_url: Member permalink.
        author_id: Member author id.
        author_name: Member author display name.
        created_at: Member creation time.
        preview: Text preview.
    """

    content_id: int
    parent_id: int
    partition_id: int
    score: float
    title: str = ""
    url: str = ""
    member_url: str = ""
    author_id: int = 0
    author_name: str = ""
    created_at: datetime | None = None
    preview: str = ""


@dataclass(frozen=True, slots=True)
class SearchResponse:
    """Ranked results with a total count.

    Attributes:
        results: Hydrated hits, best first.
        total: Number of results.
    """

    results: list[SearchResult] = field(default_factory=list)
    total: int = 0

    @classmethod
    def of(cls, results: list[SearchResult]) -> SearchResponse:
        """Build a response whose total matches *results*."""
        return cls(results=results, total=len(results))


# ------------------------------------------------------------------
# Status
# ------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StatusBreakdown:
    """Parents of a partition by indexing status.

    Attributes:
        total: All parents.
        indexed: Eligible parents with a current marker.
        pending: Eligible parents not yet indexed.
        private: Parents excluded as private.
        unapproved: Parents excluded as unapproved.
    """

    total: int = 0
    indexed: int = 0
    pending: int = 0
    private: int = 0
    unapproved: int = 0


@dataclass(frozen=True, slots=True)
class BackendStats:
    """Backend-agnostic storage counters.

    Attributes:
        mode: Backend that produced the numbers.
        record_count: Stored vectors or chunks.
        parent_count: Parents represented.
        cache_entry_count: Similarity cache rows (local only).
        approx_bytes: Approximate storage size (local only).
        last_updated_at: Most recent write, when known.
        extra: Backend-specific details.
    """

    mode: IndexMode
    record_count: int = 0
    parent_count: int = 0
    cache_entry_count: int = 0
    approx_bytes: int = 0
    last_updated_at: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_store(cls, stats: StoreStats) -> BackendStats:
        """Wrap local store counters."""
        return cls(
            mode=IndexMode.LOCAL,
            record_count=stats.record_count,
            parent_count=stats.parent_count,
            cache_entry_count=stats.cache_entry_count,
            approx_bytes=stats.approx_bytes,
            last_updated_at=stats.last_updated_at,
        )


@dataclass(frozen=True, slots=True)
class IndexStatus:
    """Everything :meth:`StorageRouter.get_status` reports.

    Attributes:
        mode: Active backend.
        backend: Storage counters from the active backend.
        breakdown: Parents by indexing status.
        queue_state: Drain state name for the active mode.
        pending_in_queue: Parent ids waiting on the queue.
        recommendation: Whether local storage suits this partition (local only).
    """

    mode: IndexMode
    backend: BackendStats
    breakdown: StatusBreakdown
    queue_state: str
    pending_in_queue: int
    recommendation: StorageRecommendation | None = None
