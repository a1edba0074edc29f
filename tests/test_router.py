"""Tests for StorageRouter — routing, reindexing, queueing, and observers."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from conftest import FakeCloudIndex, FakeContentSource, FakeGateway, ManualScheduler

from threadindex.config import IndexingConfig, QueueConfig, ThreadIndexConfig
from threadindex.events import ContentEvent, EventBus, EventType
from threadindex.exceptions import (
    ConfigurationError,
    ContentNotFoundError,
    NotEligibleError,
    QuotaExceededError,
)
from threadindex.indexing.queue import DRAIN_HOOK, DrainOutcome
from threadindex.indexing.scheduler import AsyncioScheduler
from threadindex.router import StorageRouter
from threadindex.search.stores.local import LocalVectorStore
from threadindex.types import IndexContext, IndexMode, IndexOptions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncEngine

JOB = (DRAIN_HOOK, ("site-a", 5, "local"))


class NextModelGateway(FakeGateway):
    """Same vectors, newer model name."""

    @property
    def model_name(self) -> str:
        return "fake-embed-v2"


@pytest.fixture
async def cloud_router(
    async_engine: AsyncEngine,
    content: FakeContentSource,
    gateway: FakeGateway,
    cloud_index: FakeCloudIndex,
    scheduler: ManualScheduler,
    config: ThreadIndexConfig,
) -> AsyncIterator[StorageRouter]:
    r = await StorageRouter.create(
        async_engine,
        content,
        gateway,
        cloud_index=cloud_index,  # type: ignore[arg-type]
        scheduler=scheduler,
        config=config,
    )
    yield r


# ==================================================================
# Indexing
# ==================================================================


class TestIndexing:
    async def test_second_run_is_all_skips(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        content.add_parent(1, "Descale with vinegar.", "Citric acid works too.")

        first = await router.index_many(ctx, [1])
        second = await router.index_many(ctx, [1])

        assert first.indexed == 2
        assert second.indexed == 0
        assert second.skipped == 2
        assert len(gateway.batch_calls) == 1

    async def test_records_filed_under_gateway_model(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        gateway: FakeGateway,
        session_factory,
        ctx,
    ):
        content.add_parent(1)
        await router.index_many(ctx, [1])

        store = LocalVectorStore(session_factory)
        stored = await store.get(101, model=gateway.model_name)
        assert stored is not None
        assert stored.model_name == "fake-embed"
        assert await store.get(101, model=IndexingConfig().model_name) is None

    async def test_new_gateway_model_re_embeds(
        self,
        router: StorageRouter,
        async_engine: AsyncEngine,
        content: FakeContentSource,
        scheduler: ManualScheduler,
        config: ThreadIndexConfig,
        ctx,
    ):
        content.add_parent(1)
        await router.index_many(ctx, [1])

        upgraded = NextModelGateway()
        other = await StorageRouter.create(
            async_engine, content, upgraded, scheduler=scheduler, config=config
        )
        result = await other.index_many(ctx, [1])

        assert result.indexed == 1
        assert result.skipped == 0
        assert upgraded.embedded_ids == ["post_101"]

    async def test_empty_list(self, router: StorageRouter, gateway: FakeGateway, ctx):
        result = await router.index_many(ctx, [])
        assert result.indexed == 0
        assert gateway.batch_calls == []

    async def test_index_content(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1, "a")
        result = await router.index_content(ctx, 1, IndexOptions(force=True))
        assert result.indexed == 1
        assert content.marker_of(1) is not None

    async def test_index_content_unknown(self, router: StorageRouter, ctx):
        with pytest.raises(ContentNotFoundError, match="404"):
            await router.index_content(ctx, 404)

    @pytest.mark.parametrize(
        ("kwargs", "reason"),
        [({"private": True}, "private"), ({"approved": False}, "unapproved")],
    )
    async def test_index_content_ineligible(
        self, router: StorageRouter, content: FakeContentSource, ctx, kwargs, reason
    ):
        content.add_parent(1, **kwargs)
        with pytest.raises(NotEligibleError) as exc_info:
            await router.index_content(ctx, 1)
        assert exc_info.value.parent_id == 1
        assert exc_info.value.reason == reason

    async def test_mark_helpers(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1)
        await router.mark_indexed(ctx, 1)
        assert content.marker_of(1) is not None
        await router.mark_unindexed(ctx, 1)
        assert content.marker_of(1) is None
        with pytest.raises(ContentNotFoundError):
            await router.mark_indexed(ctx, 404)


# ==================================================================
# reindex_all
# ==================================================================


class TestReindexAll:
    async def test_incremental(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        scheduler: ManualScheduler,
        ctx,
    ):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        await router.index_many(ctx, [1])

        result = await router.reindex_all(ctx)

        assert not result.full
        assert result.candidates == 2
        assert result.queued == 2
        assert result.credits_remaining == 1000
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [2, 3]
        assert content.marker_of(1) is not None
        assert scheduler.jobs == {JOB: 5.0}

    async def test_full_when_everything_indexed(
        self, router: StorageRouter, content: FakeContentSource, ctx
    ):
        for pid in (1, 2):
            content.add_parent(pid)
        await router.index_many(ctx, [1, 2])

        result = await router.reindex_all(ctx)

        assert result.full
        assert result.queued == 2
        assert content.marker_of(1) is None
        assert content.marker_of(2) is None

    async def test_force_is_full(self, router: StorageRouter, content: FakeContentSource, ctx):
        for pid in (1, 2):
            content.add_parent(pid)
        await router.index_many(ctx, [1])
        result = await router.reindex_all(ctx, IndexOptions(force=True))
        assert result.full
        assert result.candidates == 2

    async def test_no_credits(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        content.add_parent(1)
        gateway.credits_remaining = 0
        with pytest.raises(QuotaExceededError):
            await router.reindex_all(ctx)
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []

    @pytest.mark.parametrize("opts", [None, IndexOptions(force=True)])
    async def test_no_credits_keeps_markers(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        gateway: FakeGateway,
        ctx,
        opts,
    ):
        content.add_parent(1)
        await router.index_many(ctx, [1])
        gateway.credits_remaining = 0

        with pytest.raises(QuotaExceededError):
            await router.reindex_all(ctx, opts)

        assert content.marker_of(1) is not None
        assert (await router.get_status(ctx)).breakdown.indexed == 1

    async def test_force_re_embeds_when_drained(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        content.add_parent(1)
        await router.index_many(ctx, [1])

        await router.reindex_all(ctx, IndexOptions(force=True))
        assert await router.queue.forced(ctx, IndexMode.LOCAL) == {1}

        steps = await router.process_queue(ctx)

        assert steps[0].result.indexed == 1
        assert steps[0].result.skipped == 0
        assert gateway.embedded_ids == ["post_101", "post_101"]
        assert content.marker_of(1) is not None
        assert await router.queue.forced(ctx, IndexMode.LOCAL) == set()

    async def test_plain_reindex_still_dedupes(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        content.add_parent(1)
        await router.index_many(ctx, [1])

        await router.reindex_all(ctx)
        steps = await router.process_queue(ctx)

        assert steps[0].result.skipped == 1
        assert gateway.embedded_ids == ["post_101"]

    async def test_short_credits_truncate(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        gateway.credits_remaining = 2

        result = await router.reindex_all(ctx)

        assert result.candidates == 3
        assert result.queued == 2
        assert result.skipped == 1
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [1, 2]

    async def test_unmetered(
        self, router: StorageRouter, content: FakeContentSource, gateway: FakeGateway, ctx
    ):
        for pid in (1, 2):
            content.add_parent(pid)
        gateway.credits_remaining = None
        result = await router.reindex_all(ctx)
        assert result.queued == 2
        assert result.credits_remaining is None

    async def test_empty_partition(self, router: StorageRouter, gateway: FakeGateway, ctx):
        result = await router.reindex_all(ctx)
        assert result.candidates == 0
        assert result.queued == 0


# ==================================================================
# Mode
# ==================================================================


class TestMode:
    async def test_defaults_to_local(self, router: StorageRouter, ctx):
        assert await router.get_mode(ctx) is IndexMode.LOCAL

    async def test_cloud_without_backend(self, router: StorageRouter, ctx):
        with pytest.raises(ConfigurationError, match="cloud"):
            await router.set_mode(ctx, "cloud")
        assert await router.get_mode(ctx) is IndexMode.LOCAL

    async def test_unknown_mode(self, router: StorageRouter, ctx):
        with pytest.raises(ConfigurationError, match="disk"):
            await router.set_mode(ctx, "disk")

    async def test_switch_reconciles_target_markers(
        self,
        cloud_router: StorageRouter,
        content: FakeContentSource,
        cloud_index: FakeCloudIndex,
        ctx,
    ):
        for pid in (1, 2):
            content.add_parent(pid)
        await cloud_router.index_many(ctx, [1, 2])
        cloud_index.ingested.append({"thread_id": "2"})

        counts = await cloud_router.set_mode(ctx, IndexMode.CLOUD)

        assert counts == {"marked": 1, "cleared": 1}
        assert await cloud_router.get_mode(ctx) is IndexMode.CLOUD
        assert content.marker_of(2, IndexMode.CLOUD) is not None
        assert content.marker_of(1, IndexMode.CLOUD) is None
        # Local markers belong to the local backend and are left alone.
        assert content.marker_of(1, IndexMode.LOCAL) is not None

    async def test_same_mode_is_noop(self, cloud_router: StorageRouter, content, ctx):
        content.add_parent(1)
        assert await cloud_router.set_mode(ctx, IndexMode.LOCAL) == {}
        assert content.marker_writes == []

    async def test_modes_are_per_partition(self, cloud_router: StorageRouter):
        await cloud_router.set_mode(IndexContext("site-a", 5), "cloud")
        assert await cloud_router.get_mode(IndexContext("site-a", 6)) is IndexMode.LOCAL
        assert await cloud_router.get_mode(IndexContext("site-b", 5)) is IndexMode.LOCAL

    async def test_calls_follow_active_mode(
        self,
        cloud_router: StorageRouter,
        content: FakeContentSource,
        cloud_index: FakeCloudIndex,
        gateway: FakeGateway,
        ctx,
    ):
        content.add_parent(1, "a")
        await cloud_router.set_mode(ctx, "cloud")
        result = await cloud_router.index_many(ctx, [1])
        assert result.parents_indexed == [1]
        assert [t["thread_id"] for t in cloud_index.ingested] == ["1"]
        assert gateway.batch_calls == []

    async def test_reconcile_local(
        self, router: StorageRouter, content: FakeContentSource, ctx
    ):
        for pid in (1, 2):
            content.add_parent(pid)
        await router.index_many(ctx, [1])
        await content.set_marker(1, IndexMode.LOCAL, None)

        counts = await router.reconcile(ctx)

        assert counts == {"marked": 1, "cleared": 1}
        assert content.marker_of(1) is not None


# ==================================================================
# Reads
# ==================================================================


class TestReads:
    async def test_search_empty_index(
        self, router: StorageRouter, gateway: FakeGateway, ctx
    ):
        response = await router.search(ctx, "anything")
        assert response.total == 0
        assert gateway.embed_calls == []

    async def test_search(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1, "Descale with vinegar.", "Citric acid works too.")
        await router.index_many(ctx, [1])
        response = await router.search(ctx, "Citric acid works too.", limit=1)
        assert [r.content_id for r in response.results] == [102]

    async def test_find_similar(self, router: StorageRouter, content: FakeContentSource, ctx):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        await router.index_many(ctx, [1, 2, 3])
        items = await router.find_similar(ctx, "parent", 1)
        assert sorted(i.parent_id for i in items) == [2, 3]
        assert [i.rank for i in items] == [1, 2]

    async def test_status(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1)
        content.add_parent(2)
        content.add_parent(3, private=True)
        await router.index_many(ctx, [1])

        status = await router.get_status(ctx)

        assert status.mode is IndexMode.LOCAL
        assert status.backend.record_count == 1
        assert status.backend.parent_count == 1
        assert status.breakdown.total == 3
        assert status.breakdown.indexed == 1
        assert status.breakdown.pending == 1
        assert status.breakdown.private == 1
        assert status.queue_state == "idle"
        assert status.pending_in_queue == 0
        assert status.recommendation is not None
        assert status.recommendation.status == "good"
        assert status.recommendation.corpus_size == 2

    async def test_status_with_queued_work(
        self, router: StorageRouter, content: FakeContentSource, ctx
    ):
        content.add_parent(1)
        await router.enqueue(ctx, [1])
        status = await router.get_status(ctx)
        assert status.queue_state == "scheduled"
        assert status.pending_in_queue == 1


# ==================================================================
# Deletes
# ==================================================================


class TestDeletes:
    async def test_delete_parent(
        self, router: StorageRouter, content: FakeContentSource, ctx
    ):
        content.add_parent(1, "a", "b")
        await router.index_many(ctx, [1])
        await router.enqueue(ctx, [1])

        await router.delete_parent(ctx, 1)

        assert (await router.get_status(ctx)).backend.record_count == 0
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []
        assert content.marker_of(1) is None

    async def test_delete_content(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1, "a", "b")
        await router.index_many(ctx, [1])
        await router.delete_content(ctx, 101)
        assert (await router.get_status(ctx)).backend.record_count == 1

    async def test_clear_all(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        scheduler: ManualScheduler,
        ctx,
    ):
        for pid in (1, 2):
            content.add_parent(pid)
        await router.index_many(ctx, [1])
        await router.enqueue(ctx, [2])

        await router.clear_all(ctx)

        status = await router.get_status(ctx)
        assert status.backend.record_count == 0
        assert status.pending_in_queue == 0
        assert status.queue_state == "idle"
        assert content.marker_of(1) is None
        assert scheduler.jobs == {}


# ==================================================================
# Background draining
# ==================================================================


class TestBackground:
    async def test_scheduled_drain_reschedules_until_empty(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        scheduler: ManualScheduler,
        ctx,
    ):
        for pid in (1, 2, 3):
            content.add_parent(pid)

        assert await router.enqueue(ctx, [1, 2, 3]) == 3
        assert scheduler.fire(*JOB) == 5.0

        first = await router.drain_queue(ctx)
        assert first.batch == [1, 2]
        assert first.remaining == 1
        assert scheduler.fire(*JOB) == 30.0

        second = await router.drain_queue(ctx)
        assert second.batch == [3]
        assert second.remaining == 0
        assert scheduler.jobs == {}
        assert all(content.marker_of(pid) is not None for pid in (1, 2, 3))

    async def test_process_queue(self, router: StorageRouter, content: FakeContentSource, ctx):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        await router.enqueue(ctx, [1, 2, 3])

        steps = await router.process_queue(ctx)

        assert [s.batch for s in steps] == [[1, 2], [3]]
        assert all(content.marker_of(pid) is not None for pid in (1, 2, 3))

    async def test_quota_stops_drain(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        gateway: FakeGateway,
        scheduler: ManualScheduler,
        ctx,
    ):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        await router.enqueue(ctx, [1, 2, 3])
        scheduler.fire(*JOB)
        gateway.quota_after_batches = 0

        step = await router.drain_queue(ctx)

        assert step.outcome is DrainOutcome.QUOTA_EXCEEDED
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [1, 2, 3]
        assert scheduler.jobs == {}

    async def test_sweep_pending(self, router: StorageRouter, content: FakeContentSource, ctx):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        await router.index_many(ctx, [1])

        assert await router.sweep_pending(ctx) == 2
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [2, 3]
        assert await router.sweep_pending(ctx) == 0

    async def test_sweep_limit(self, router: StorageRouter, content: FakeContentSource, ctx):
        for pid in (1, 2, 3):
            content.add_parent(pid)
        assert await router.sweep_pending(ctx, limit=1) == 1

    async def test_cleanup_cache(self, router: StorageRouter, ctx):
        assert await router.cleanup_cache(ctx) == 0

    async def test_asyncio_scheduler_end_to_end(
        self, async_engine: AsyncEngine, content: FakeContentSource, gateway: FakeGateway
    ):
        config = ThreadIndexConfig(
            queue=QueueConfig(
                batch_size=2,
                coalesce_delay=0.01,
                drain_interval=0.01,
                lock_wait=0.05,
                lock_poll_interval=0.01,
            )
        )
        sched = AsyncioScheduler()
        router = await StorageRouter.create(
            async_engine, content, gateway, scheduler=sched, config=config
        )
        ctx = IndexContext("site-a", 5)
        for pid in (1, 2, 3):
            content.add_parent(pid)

        await router.enqueue(ctx, [1, 2, 3])
        for _ in range(200):
            if all(content.marker_of(pid) is not None for pid in (1, 2, 3)):
                break
            await asyncio.sleep(0.01)
        await sched.shutdown()

        assert all(content.marker_of(pid) is not None for pid in (1, 2, 3))
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []


# ==================================================================
# Content observers
# ==================================================================


class TestObservers:
    async def test_changed_parent_requeued(
        self,
        router: StorageRouter,
        content: FakeContentSource,
        scheduler: ManualScheduler,
        ctx,
    ):
        content.add_parent(1, "a")
        await router.index_many(ctx, [1])
        content.add_member(1, "b")

        await router.on_content_created(ctx, 1)

        assert content.marker_of(1) is None
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [1]
        assert scheduler.jobs == {JOB: 30.0}

    async def test_deleted_member(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1, "a", "b")
        await router.index_many(ctx, [1])
        content.remove_member(102)

        await router.on_content_deleted(ctx, 1, 102)

        assert (await router.get_status(ctx)).backend.record_count == 1
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [1]

    async def test_deleted_parent(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1, "a", "b")
        await router.index_many(ctx, [1])
        content.remove_parent(1)

        await router.on_parent_deleted(ctx, 1)

        assert (await router.get_status(ctx)).backend.record_count == 0
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []

    async def test_auto_index_off(
        self,
        async_engine: AsyncEngine,
        content: FakeContentSource,
        gateway: FakeGateway,
        scheduler: ManualScheduler,
        ctx,
    ):
        router = await StorageRouter.create(
            async_engine,
            content,
            gateway,
            scheduler=scheduler,
            config=ThreadIndexConfig(indexing=IndexingConfig(auto_index=False)),
        )
        content.add_parent(1)
        await router.on_content_changed(ctx, 1)
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []
        assert content.marker_writes == []

    async def test_event_bus(self, router: StorageRouter, content: FakeContentSource, ctx):
        content.add_parent(1)
        bus = EventBus()
        router.register_with(bus)
        assert bus.handler_count == 4

        await bus.emit(ContentEvent(EventType.CONTENT_CHANGED, ctx, 1))

        assert await router.queue.pending(ctx, IndexMode.LOCAL) == [1]

    async def test_event_bus_scoped_to_tenant(
        self, router: StorageRouter, content: FakeContentSource, ctx
    ):
        content.add_parent(1)
        bus = EventBus()
        router.register_with(bus, tenant_id="site-b")

        assert await bus.emit(ContentEvent(EventType.CONTENT_CHANGED, ctx, 1)) == 0
        assert await router.queue.pending(ctx, IndexMode.LOCAL) == []


class TestLifecycle:
    async def test_close(
        self, cloud_router: StorageRouter, gateway: FakeGateway, cloud_index: FakeCloudIndex
    ):
        await cloud_router.close()
        assert gateway.closed
        assert cloud_index.closed
