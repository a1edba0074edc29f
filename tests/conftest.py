"""Shared fixtures and in-memory fakes for threadindex tests."""

from __future__ import annotations

import hashlib
import math
from dataclasses import replace
from typing import TYPE_CHECKING, Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

import threadindex.models  # noqa: F401  (registers tables on SQLModel.metadata)
from threadindex.config import QueueConfig, ThreadIndexConfig
from threadindex.content import IndexedStatusMarker, MemberRecord, ParentRecord
from threadindex.exceptions import GatewayError, QuotaExceededError
from threadindex.indexing.kvstore import SqlConfigStore
from threadindex.router import StorageRouter
from threadindex.search.stores.local import LocalVectorStore
from threadindex.search.types import (
    BatchEmbeddingResponse,
    BatchItemResult,
    CloudIngestResult,
    EmbeddingResponse,
    QuotaStatus,
    SimilarItem,
)
from threadindex.types import IndexContext, IndexMode, StatusBreakdown

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from threadindex.search.types import BatchItem, EmbeddingHit, ImageRef


def hash_vector(text: str) -> list[float]:
    """Deterministic unit vector from text hash."""
    h = hashlib.sha256(text.encode()).digest()
    raw = [float(b) for b in h]
    norm = math.sqrt(sum(x * x for x in raw))
    return [x / norm for x in raw]


# ------------------------------------------------------------------
# Fake content source
# ------------------------------------------------------------------


class FakeContentSource:
    """In-memory parents and members.

    Member ids are ``parent_id * 100 + n`` for the n-th member (1-based),
    so tests can name them without bookkeeping.
    """

    def __init__(self) -> None:
        self.parents: dict[int, ParentRecord] = {}
        self.members: dict[int, list[MemberRecord]] = {}
        self.markers: dict[int, dict[str, IndexedStatusMarker]] = {}
        self.marker_writes: list[tuple[int, IndexMode, IndexedStatusMarker | None]] = []

    def add_parent(
        self,
        parent_id: int,
        *bodies: str,
        partition_id: int = 5,
        title: str | None = None,
        tags: tuple[str, ...] = (),
        private: bool = False,
        approved: bool = True,
    ) -> ParentRecord:
        bodies = bodies or (f"Opening post of thread {parent_id}",)
        self.members[parent_id] = [
            MemberRecord(
                id=parent_id * 100 + n,
                parent_id=parent_id,
                owner_id=7,
                body=body,
                url=f"https://forum.test/t/{parent_id}#p{parent_id * 100 + n}",
                author_name="alice",
            )
            for n, body in enumerate(bodies, start=1)
        ]
        parent = ParentRecord(
            id=parent_id,
            partition_id=partition_id,
            title=title or f"Thread {parent_id}",
            url=f"https://forum.test/t/{parent_id}",
            owner_id=7,
            tags=tags,
            private=private,
            approved=approved,
            member_count=len(bodies),
        )
        self.parents[parent_id] = parent
        return parent

    def add_member(self, parent_id: int, body: str, **kwargs: Any) -> MemberRecord:
        members = self.members[parent_id]
        content_id = parent_id * 100 + len(members) + 1
        member = MemberRecord(id=content_id, parent_id=parent_id, body=body, **kwargs)
        members.append(member)
        self.parents[parent_id] = replace(self.parents[parent_id], member_count=len(members))
        return member

    def edit_member(self, content_id: int, body: str) -> None:
        for members in self.members.values():
            for i, member in enumerate(members):
                if member.id == content_id:
                    members[i] = replace(member, body=body)
                    return
        raise KeyError(content_id)

    def remove_member(self, content_id: int) -> None:
        for parent_id, members in self.members.items():
            kept = [m for m in members if m.id != content_id]
            if len(kept) != len(members):
                self.members[parent_id] = kept
                self.parents[parent_id] = replace(self.parents[parent_id], member_count=len(kept))
                return

    def remove_parent(self, parent_id: int) -> None:
        self.parents.pop(parent_id, None)
        self.members.pop(parent_id, None)
        self.markers.pop(parent_id, None)

    def marker_of(
        self, parent_id: int, mode: IndexMode = IndexMode.LOCAL
    ) -> IndexedStatusMarker | None:
        return self.markers.get(parent_id, {}).get(mode.value)

    # ContentSource protocol

    async def get_parent(self, parent_id: int) -> ParentRecord | None:
        parent = self.parents.get(parent_id)
        if parent is None:
            return None
        return replace(parent, markers=dict(self.markers.get(parent_id, {})))

    async def get_members(self, parent_id: int) -> list[MemberRecord]:
        return list(self.members.get(parent_id, []))

    async def get_member(self, content_id: int) -> MemberRecord | None:
        for members in self.members.values():
            for member in members:
                if member.id == content_id:
                    return member
        return None

    async def list_parent_ids(
        self,
        partition_id: int,
        *,
        mode: IndexMode,
        indexed: bool | None = None,
        limit: int | None = None,
    ) -> list[int]:
        ids: list[int] = []
        for parent_id in sorted(self.parents):
            parent = await self.get_parent(parent_id)
            assert parent is not None
            if parent.partition_id != partition_id or not parent.eligible:
                continue
            if indexed is not None:
                marker = parent.marker(mode)
                current = marker is not None and marker.is_current(parent)
                if current != indexed:
                    continue
            ids.append(parent_id)
        return ids[:limit] if limit is not None else ids

    async def status_breakdown(self, partition_id: int, mode: IndexMode) -> StatusBreakdown:
        in_partition = [p for p in self.parents.values() if p.partition_id == partition_id]
        eligible = await self.list_parent_ids(partition_id, mode=mode)
        indexed = await self.list_parent_ids(partition_id, mode=mode, indexed=True)
        return StatusBreakdown(
            total=len(in_partition),
            indexed=len(indexed),
            pending=len(eligible) - len(indexed),
            private=sum(1 for p in in_partition if p.private),
            unapproved=sum(1 for p in in_partition if not p.approved and not p.private),
        )

    async def count_members(self, partition_id: int) -> int:
        total = 0
        for parent_id in await self.list_parent_ids(partition_id, mode=IndexMode.LOCAL):
            total += sum(1 for m in self.members[parent_id] if m.eligible)
        return total

    async def set_marker(
        self,
        parent_id: int,
        mode: IndexMode,
        marker: IndexedStatusMarker | None,
    ) -> None:
        self.marker_writes.append((parent_id, mode, marker))
        per_mode = self.markers.setdefault(parent_id, {})
        if marker is None:
            per_mode.pop(mode.value, None)
        else:
            per_mode[mode.value] = marker


# ------------------------------------------------------------------
# Fake embedding gateway
# ------------------------------------------------------------------


class FakeGateway:
    """Deterministic embedding gateway that records every call.

    ``embed`` charges one credit; ``embed_batch`` charges the units it is
    asked to.  Set ``quota_after_batches`` to make the n-th and later batch
    calls fail with :class:`QuotaExceededError`.
    """

    def __init__(
        self,
        *,
        credits_remaining: int | None = 1000,
        max_batch_items: int = 100,
    ) -> None:
        self.credits_remaining = credits_remaining
        self.embed_calls: list[tuple[str, list[ImageRef] | None, str | None]] = []
        self.batch_calls: list[tuple[list[str], int]] = []
        self.fail_ids: set[str] = set()
        self.failing_batches: set[int] = set()
        self.quota_after_batches: int | None = None
        self.quota_on_embed = False
        self.closed = False
        self._max_batch_items = max_batch_items

    async def embed(
        self,
        text: str,
        images: list[ImageRef] | None = None,
        context: str | None = None,
    ) -> EmbeddingResponse:
        if self.quota_on_embed:
            raise QuotaExceededError
        self.embed_calls.append((text, images, context))
        processed = None
        if images:
            processed = text + "\n\n" + " ".join(f"[image: {i.alt or i.url}]" for i in images)
        return EmbeddingResponse(
            vector=hash_vector(text), credits_used=1, processed_text=processed
        )

    async def embed_batch(
        self, items: list[BatchItem], unit_charge_count: int
    ) -> BatchEmbeddingResponse:
        call_index = len(self.batch_calls)
        if self.quota_after_batches is not None and call_index >= self.quota_after_batches:
            raise QuotaExceededError
        self.batch_calls.append(([item.id for item in items], unit_charge_count))
        if call_index in self.failing_batches:
            msg = "Batch embedding timed out"
            raise GatewayError(msg)
        results = [
            BatchItemResult(id=item.id, success=False, error="content rejected")
            if item.id in self.fail_ids
            else BatchItemResult(id=item.id, success=True, vector=hash_vector(item.text))
            for item in items
        ]
        return BatchEmbeddingResponse(results=results, credits_used=unit_charge_count)

    async def get_quota(self) -> QuotaStatus:
        return QuotaStatus(credits_remaining=self.credits_remaining, plan="test")

    @property
    def model_name(self) -> str:
        return "fake-embed"

    @property
    def max_batch_items(self) -> int:
        return self._max_batch_items

    async def close(self) -> None:
        self.closed = True

    @property
    def embedded_ids(self) -> list[str]:
        """Item ids sent through ``embed_batch``, in call order."""
        return [item_id for ids, _units in self.batch_calls for item_id in ids]


# ------------------------------------------------------------------
# Fake cloud index
# ------------------------------------------------------------------


class FakeCloudIndex:
    """Records ingested threads; reports every thread it receives as indexed."""

    def __init__(self) -> None:
        self.ingested: list[dict[str, Any]] = []
        self.ingest_calls: list[dict[str, Any]] = []
        self.hits: list[EmbeddingHit] = []
        self.similar_calls: list[tuple[int, int]] = []
        self.reject: set[int] = set()
        self.error: Exception | None = None
        self.deleted: list[tuple[str, int, int]] = []
        self.cleared = False
        self.closed = False

    async def ingest(self, threads, *, chunk_size=512, overlap_percent=20):
        if self.error is not None:
            raise self.error
        self.ingest_calls.append({"chunk_size": chunk_size, "overlap_percent": overlap_percent})
        self.ingested.extend(threads)
        hashes = {
            int(t["thread_id"]): "h" for t in threads if int(t["thread_id"]) not in self.reject
        }
        return CloudIngestResult(parent_ids=list(hashes), hashes=hashes, credits_used=len(hashes))

    async def search(self, query, *, partition_id, limit=10, filters=None):
        return self.hits[:limit]

    async def find_similar(self, parent_id, limit=5):
        self.similar_calls.append((parent_id, limit))
        return [SimilarItem(parent_id=99, content_id=9901, score=0.9, rank=1)]

    async def delete_parent(self, parent_id, partition_id=0):
        self.deleted.append(("parent", parent_id, partition_id))

    async def delete_content(self, content_id, partition_id=0):
        self.deleted.append(("content", content_id, partition_id))

    async def clear(self):
        self.cleared = True

    async def indexed_parent_ids(self):
        return {int(t["thread_id"]) for t in self.ingested} - self.reject

    async def status(self, partition_id=0):
        return {"total_chunks": 12, "total_topics": 3, "status": "ready"}

    async def close(self):
        self.closed = True


# ------------------------------------------------------------------
# Manual scheduler
# ------------------------------------------------------------------


class ManualScheduler:
    """Scheduler that only records jobs; tests decide when they run."""

    def __init__(self) -> None:
        self.jobs: dict[tuple[str, tuple[Any, ...]], float] = {}
        self.history: list[tuple[str, tuple[Any, ...], float]] = []

    async def schedule(self, delay: float, hook: str, args: tuple[Any, ...] = ()) -> bool:
        job = (hook, tuple(args))
        if job in self.jobs:
            return False
        self.jobs[job] = delay
        self.history.append((hook, tuple(args), delay))
        return True

    async def is_scheduled(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        return (hook, tuple(args)) in self.jobs

    async def cancel(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        return self.jobs.pop((hook, tuple(args)), None) is not None

    def fire(self, hook: str, args: tuple[Any, ...]) -> float:
        """Take a pending job off the schedule, as if its delay elapsed."""
        return self.jobs.pop((hook, tuple(args)))


# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> Callable[..., AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def local_store(session_factory: Callable[..., AsyncSession]) -> LocalVectorStore:
    return LocalVectorStore(session_factory, model_name="test-model")


@pytest.fixture
def config_store(session_factory: Callable[..., AsyncSession]) -> SqlConfigStore:
    return SqlConfigStore(session_factory)


@pytest.fixture
def content() -> FakeContentSource:
    return FakeContentSource()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def ctx() -> IndexContext:
    return IndexContext(tenant_id="site-a", partition_id=5)


@pytest.fixture
def config() -> ThreadIndexConfig:
    """Small batches and short lock waits so queue tests stay fast."""
    return ThreadIndexConfig(
        queue=QueueConfig(batch_size=2, lock_wait=0.05, lock_poll_interval=0.01),
    )


@pytest.fixture
async def router(
    async_engine: AsyncEngine,
    content: FakeContentSource,
    gateway: FakeGateway,
    scheduler: ManualScheduler,
    config: ThreadIndexConfig,
) -> AsyncIterator[StorageRouter]:
    r = await StorageRouter.create(
        async_engine, content, gateway, scheduler=scheduler, config=config
    )
    yield r


@pytest.fixture
def cloud_index() -> FakeCloudIndex:
    return FakeCloudIndex()
