"""StorageRouter — primary async entry point over the local and cloud backends."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from threadindex.backends import CloudBackend, LocalBackend
from threadindex.config import ThreadIndexConfig
from threadindex.content import IndexedStatusMarker, marker_hash
from threadindex.events import EventType
from threadindex.exceptions import (
    ConfigurationError,
    ContentNotFoundError,
    NotEligibleError,
    QuotaExceededError,
)
from threadindex.indexing.billing import per_parent_once
from threadindex.indexing.kvstore import SqlConfigStore
from threadindex.indexing.queue import DrainTrigger, IndexingQueue
from threadindex.indexing.scheduler import AsyncioScheduler
from threadindex.search.stores.local import LocalVectorStore
from threadindex.types import (
    IndexContext,
    IndexMode,
    IndexOptions,
    IndexResult,
    IndexStatus,
    ReindexResult,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from threadindex.backends import VectorBackend
    from threadindex.content import ContentSource
    from threadindex.events import ContentEvent, EventBus
    from threadindex.indexing.billing import BillingPolicy
    from threadindex.indexing.kvstore import ConfigStore
    from threadindex.indexing.queue import DrainResult
    from threadindex.indexing.scheduler import Scheduler
    from threadindex.search.filters import FilterExpression
    from threadindex.search.protocols import EmbeddingGateway
    from threadindex.search.stores.cloud import CloudIndex
    from threadindex.search.types import SimilarItem
    from threadindex.types import SearchResponse

logger = logging.getLogger(__name__)


class StorageRouter:
    """Routes indexing, search, and maintenance to the partition's active backend.

    Every call takes an explicit :class:`IndexContext`; the active mode is
    stored per ``(tenant, partition)`` in the config store and defaults to
    local.  Callers never branch on mode.

    Engine-based setup (primary API)::

        engine = create_async_engine("sqlite+aiosqlite:///index.db")
        router = await StorageRouter.create(engine, content, gateway)
        result = await router.index_many(ctx, [12, 13, 14])

    Background work runs through the scheduler: enqueues coalesce into one
    drain per ``(partition, mode)``, and each drain reschedules itself while
    work remains.
    """

    def __init__(
        self,
        content: ContentSource,
        *,
        local: VectorBackend,
        config_store: ConfigStore,
        scheduler: Scheduler,
        cloud: VectorBackend | None = None,
        gateway: EmbeddingGateway | None = None,
        config: ThreadIndexConfig | None = None,
    ) -> None:
        self._content = content
        self._config = config or ThreadIndexConfig()
        self._config_store = config_store
        self._gateway = gateway
        self._backends: dict[IndexMode, VectorBackend] = {IndexMode.LOCAL: local}
        if cloud is not None:
            self._backends[IndexMode.CLOUD] = cloud
        self._queue = IndexingQueue(config_store, scheduler, self._config.queue)
        if isinstance(scheduler, AsyncioScheduler):
            scheduler.register(self._queue.hook, self._drain_hook)

    @classmethod
    async def create(
        cls,
        engine: AsyncEngine,
        content: ContentSource,
        gateway: EmbeddingGateway,
        *,
        cloud_index: CloudIndex | None = None,
        scheduler: Scheduler | None = None,
        config: ThreadIndexConfig | None = None,
        billing: BillingPolicy = per_parent_once,
    ) -> StorageRouter:
        """Wire a router on *engine*: local store, config store, and backends."""
        config = config or ThreadIndexConfig()
        # Records are filed under the model that actually produced them.
        store = await LocalVectorStore.from_engine(engine, config, model_name=gateway.model_name)
        local = LocalBackend(store, gateway, content, config.indexing, billing=billing)
        cloud = None
        if cloud_index is not None:
            cloud = CloudBackend(cloud_index, content, config.indexing)
        return cls(
            content,
            local=local,
            cloud=cloud,
            config_store=SqlConfigStore.from_engine(engine),
            scheduler=scheduler or AsyncioScheduler(),
            gateway=gateway,
            config=config,
        )

    @property
    def queue(self) -> IndexingQueue:
        """The indexing queue."""
        return self._queue

    @property
    def config(self) -> ThreadIndexConfig:
        """Active configuration."""
        return self._config

    # ------------------------------------------------------------------
    # Mode
    # ------------------------------------------------------------------

    @staticmethod
    def _mode_key(ctx: IndexContext) -> str:
        return f"mode:{ctx.key}"

    async def get_mode(self, ctx: IndexContext) -> IndexMode:
        """Active storage mode for the context's partition."""
        raw = await self._config_store.get(self._mode_key(ctx), IndexMode.LOCAL.value)
        return IndexMode.parse(raw)

    async def set_mode(self, ctx: IndexContext, mode: IndexMode | str) -> dict[str, int]:
        """Switch the partition's backend.

        Switching to a different mode first reconciles every parent's
        marker against what the new backend really holds.  Returns the
        reconciliation counts (empty when the mode did not change).
        """
        target = IndexMode.parse(mode)
        self._backend(target)
        current = await self.get_mode(ctx)
        counts: dict[str, int] = {}
        if target is not current:
            counts = await self.reconcile(ctx, target)
        await self._config_store.set(self._mode_key(ctx), target.value)
        if target is not current:
            logger.info(
                "Storage mode for %s switched %s -> %s", ctx.key, current.value, target.value
            )
        return counts

    async def reconcile(self, ctx: IndexContext, mode: IndexMode | None = None) -> dict[str, int]:
        """Re-derive every parent's marker for *mode* from the backend's contents."""
        mode = mode or await self.get_mode(ctx)
        indexed = await self._backend(mode).indexed_parent_ids(ctx)
        stats = {"marked": 0, "cleared": 0}
        for parent_id in await self._content.list_parent_ids(ctx.partition_id, mode=mode):
            parent = await self._content.get_parent(parent_id)
            if parent is None:
                continue
            if parent_id in indexed:
                await self._content.set_marker(
                    parent_id,
                    mode,
                    IndexedStatusMarker(indexed=True, change_hash=marker_hash(parent)),
                )
                stats["marked"] += 1
            else:
                await self._content.set_marker(parent_id, mode, None)
                stats["cleared"] += 1
        logger.info(
            "Reconciled %s/%s markers: %d marked, %d cleared",
            ctx.key,
            mode.value,
            stats["marked"],
            stats["cleared"],
        )
        return stats

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_content(
        self,
        ctx: IndexContext,
        parent_id: int,
        opts: IndexOptions | None = None,
    ) -> IndexResult:
        """Index one parent in the active backend.

        Raises :class:`ContentNotFoundError` for an unknown parent and
        :class:`NotEligibleError` for a private or unapproved one.
        """
        parent = await self._content.get_parent(parent_id)
        if parent is None:
            msg = f"Parent not found: {parent_id}"
            raise ContentNotFoundError(msg)
        if not parent.eligible:
            raise NotEligibleError(parent_id, "private" if parent.private else "unapproved")
        return await self.index_many(ctx, [parent_id], opts)

    async def index_many(
        self,
        ctx: IndexContext,
        parent_ids: list[int],
        opts: IndexOptions | None = None,
    ) -> IndexResult:
        """Index several parents in the active backend."""
        if not parent_ids:
            return IndexResult()
        mode = await self.get_mode(ctx)
        return await self._backend(mode).index(ctx, list(parent_ids), opts)

    async def reindex_all(
        self, ctx: IndexContext, opts: IndexOptions | None = None
    ) -> ReindexResult:
        """Queue every parent that needs indexing in the active backend.

        Incremental when some eligible parents are unmarked; otherwise (or
        with ``opts.force``) every marker is cleared and the whole partition
        is queued.  Remaining quota is checked first: none raises
        :class:`QuotaExceededError`, and less than the candidate count
        truncates the queue.
        """
        mode = await self.get_mode(ctx)
        self._backend(mode)
        candidates = await self._content.list_parent_ids(
            ctx.partition_id, mode=mode, indexed=False
        )
        force = opts is not None and opts.force
        full = not candidates or force
        if full:
            candidates = await self._content.list_parent_ids(ctx.partition_id, mode=mode)
        if not candidates:
            return ReindexResult(mode=mode, full=full, candidates=0, queued=0)

        # Markers stay untouched when there is nothing to spend.
        credits = await self._credits_remaining()
        if credits is not None and credits <= 0:
            msg = "No credits available for indexing"
            raise QuotaExceededError(msg, credits_remaining=credits)

        if full:
            for parent_id in candidates:
                await self._content.set_marker(parent_id, mode, None)

        queued = candidates
        if credits is not None and credits < len(candidates):
            queued = candidates[:credits]
            logger.warning(
                "%d credits for %d parents in %s; %d skipped",
                credits,
                len(candidates),
                ctx.key,
                len(candidates) - credits,
            )
        await self._queue.replace(ctx, mode, queued, force=force)
        logger.info(
            "%s reindex of %s/%s: %d parents queued",
            "Full" if full else "Incremental",
            ctx.key,
            mode.value,
            len(queued),
        )
        return ReindexResult(
            mode=mode,
            full=full,
            candidates=len(candidates),
            queued=len(queued),
            skipped=len(candidates) - len(queued),
            credits_remaining=credits,
        )

    async def mark_indexed(
        self, ctx: IndexContext, parent_id: int, mode: IndexMode | None = None
    ) -> None:
        """Set the parent's marker as indexed and current."""
        mode = mode or await self.get_mode(ctx)
        parent = await self._content.get_parent(parent_id)
        if parent is None:
            msg = f"Parent not found: {parent_id}"
            raise ContentNotFoundError(msg)
        await self._content.set_marker(
            parent_id, mode, IndexedStatusMarker(indexed=True, change_hash=marker_hash(parent))
        )

    async def mark_unindexed(
        self, ctx: IndexContext, parent_id: int, mode: IndexMode | None = None
    ) -> None:
        """Clear the parent's marker."""
        mode = mode or await self.get_mode(ctx)
        await self._content.set_marker(parent_id, mode, None)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search(
        self,
        ctx: IndexContext,
        query: str,
        limit: int = 10,
        filters: FilterExpression | dict[str, Any] | None = None,
    ) -> SearchResponse:
        """Semantic search in the active backend.  Never errors for an empty index."""
        mode = await self.get_mode(ctx)
        return await self._backend(mode).search(ctx, query, limit, filters)

    async def find_similar(
        self,
        ctx: IndexContext,
        source_type: str,
        source_id: int,
        limit: int = 5,
        *,
        force_refresh: bool = False,
    ) -> list[SimilarItem]:
        """Parents similar to a parent (``"parent"``) or member (``"content"``)."""
        mode = await self.get_mode(ctx)
        return await self._backend(mode).find_similar(
            ctx, source_type, source_id, limit, force_refresh=force_refresh
        )

    async def get_status(self, ctx: IndexContext) -> IndexStatus:
        """Mode, storage counters, marker breakdown, and queue state."""
        mode = await self.get_mode(ctx)
        backend = self._backend(mode)
        corpus = await self._content.count_members(ctx.partition_id)
        return IndexStatus(
            mode=mode,
            backend=await backend.stats(ctx),
            breakdown=await self._content.status_breakdown(ctx.partition_id, mode),
            queue_state=(await self._queue.state(ctx, mode)).value,
            pending_in_queue=len(await self._queue.pending(ctx, mode)),
            recommendation=await backend.storage_recommendation(ctx, corpus),
        )

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    async def delete_content(self, ctx: IndexContext, content_id: int) -> None:
        """Remove one member's vectors from the active backend."""
        mode = await self.get_mode(ctx)
        await self._backend(mode).delete_content(ctx, content_id)

    async def delete_parent(self, ctx: IndexContext, parent_id: int) -> None:
        """Remove a parent's vectors, its queue entries, and its marker."""
        mode = await self.get_mode(ctx)
        await self._backend(mode).delete_parent(ctx, parent_id)
        await self._queue.remove(ctx, mode, [parent_id])
        await self._content.set_marker(parent_id, mode, None)

    async def clear_all(self, ctx: IndexContext) -> None:
        """Remove every vector in the partition and reset markers and queue."""
        mode = await self.get_mode(ctx)
        await self._backend(mode).clear(ctx)
        await self._queue.clear(ctx, mode)
        for parent_id in await self._content.list_parent_ids(
            ctx.partition_id, mode=mode, indexed=True
        ):
            await self._content.set_marker(parent_id, mode, None)
        logger.info("Cleared %s index for %s", mode.value, ctx.key)

    # ------------------------------------------------------------------
    # Background entry points
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        ctx: IndexContext,
        parent_ids: list[int],
        *,
        delay: float | None = None,
    ) -> int:
        """Queue parents for background indexing in the active backend."""
        mode = await self.get_mode(ctx)
        return await self._queue.enqueue(ctx, mode, parent_ids, delay=delay)

    async def drain_queue(
        self,
        ctx: IndexContext,
        mode: IndexMode | None = None,
        trigger: DrainTrigger = DrainTrigger.BACKGROUND,
    ) -> DrainResult:
        """Run one drain step for *mode* (the active mode by default)."""
        mode = mode or await self.get_mode(ctx)
        indexer = self._queue_indexer(ctx, mode)
        return await self._queue.drain(ctx, mode, indexer, trigger=trigger)

    async def process_queue(
        self,
        ctx: IndexContext,
        mode: IndexMode | None = None,
        *,
        max_steps: int | None = None,
    ) -> list[DrainResult]:
        """Drain in-process until the queue is empty (fast path)."""
        mode = mode or await self.get_mode(ctx)
        indexer = self._queue_indexer(ctx, mode)
        return await self._queue.run_until_idle(ctx, mode, indexer, max_steps=max_steps)

    async def cleanup_cache(self, ctx: IndexContext) -> int:
        """Purge expired similarity cache rows.  Returns rows removed."""
        return await self._backends[IndexMode.LOCAL].cleanup(ctx)

    async def sweep_pending(self, ctx: IndexContext, limit: int | None = None) -> int:
        """Re-discover eligible unmarked parents and enqueue them.

        Catches parents whose batch was lost (crash mid-drain, quota stop)
        or whose marker went stale.  Returns the number newly queued.
        """
        mode = await self.get_mode(ctx)
        ids = await self._content.list_parent_ids(
            ctx.partition_id,
            mode=mode,
            indexed=False,
            limit=limit or self._config.queue.sweep_limit,
        )
        if not ids:
            return 0
        added = await self._queue.enqueue(ctx, mode, ids)
        if added:
            logger.info("Sweep queued %d unindexed parents for %s", added, ctx.key)
        return added

    def _queue_indexer(
        self, ctx: IndexContext, mode: IndexMode
    ) -> Callable[[list[int]], Awaitable[IndexResult]]:
        backend = self._backend(mode)

        async def indexer(batch: list[int]) -> IndexResult:
            forced = await self._queue.forced(ctx, mode)
            rerun = [pid for pid in batch if pid in forced]
            plain = [pid for pid in batch if pid not in forced]
            result = IndexResult()
            if rerun:
                result = await backend.index(ctx, rerun, IndexOptions(force=True))
            if plain and not result.quota_exceeded:
                result = result.merge(await backend.index(ctx, plain))
            return result

        return indexer

    async def _drain_hook(self, tenant_id: str, partition_id: int, mode: str) -> None:
        await self.drain_queue(IndexContext(tenant_id, int(partition_id)), IndexMode.parse(mode))

    # ------------------------------------------------------------------
    # Content observer
    # ------------------------------------------------------------------

    async def on_content_created(self, ctx: IndexContext, parent_id: int) -> None:
        """A member was added: mark the parent stale and queue it."""
        await self._requeue(ctx, parent_id)

    async def on_content_changed(self, ctx: IndexContext, parent_id: int) -> None:
        """A member was edited: mark the parent stale and queue it."""
        await self._requeue(ctx, parent_id)

    async def on_content_deleted(
        self, ctx: IndexContext, parent_id: int, content_id: int | None = None
    ) -> None:
        """A member was removed: drop its vectors, then refresh the parent."""
        if content_id is not None:
            await self.delete_content(ctx, content_id)
        if await self._content.get_parent(parent_id) is not None:
            await self._requeue(ctx, parent_id)

    async def on_parent_deleted(self, ctx: IndexContext, parent_id: int) -> None:
        """A parent was removed: drop all its vectors and queue entries."""
        await self.delete_parent(ctx, parent_id)

    def register_with(self, bus: EventBus, *, tenant_id: str | None = None) -> None:
        """Subscribe the observer methods to *bus*, optionally for one tenant."""
        for event_type, handler in (
            (EventType.CONTENT_CREATED, self._on_created_event),
            (EventType.CONTENT_CHANGED, self._on_changed_event),
            (EventType.CONTENT_DELETED, self._on_deleted_event),
            (EventType.PARENT_DELETED, self._on_parent_deleted_event),
        ):
            bus.register(event_type, handler, tenant_id=tenant_id)

    async def _on_created_event(self, event: ContentEvent) -> None:
        await self.on_content_created(event.ctx, event.parent_id)

    async def _on_changed_event(self, event: ContentEvent) -> None:
        await self.on_content_changed(event.ctx, event.parent_id)

    async def _on_deleted_event(self, event: ContentEvent) -> None:
        await self.on_content_deleted(event.ctx, event.parent_id, event.content_id)

    async def _on_parent_deleted_event(self, event: ContentEvent) -> None:
        await self.on_parent_deleted(event.ctx, event.parent_id)

    async def _requeue(self, ctx: IndexContext, parent_id: int) -> None:
        if not self._config.indexing.auto_index:
            return
        mode = await self.get_mode(ctx)
        await self._content.set_marker(parent_id, mode, None)
        await self._queue.enqueue(
            ctx, mode, [parent_id], delay=self._config.queue.auto_index_delay
        )

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _backend(self, mode: IndexMode) -> VectorBackend:
        backend = self._backends.get(mode)
        if backend is None:
            msg = f"No backend configured for mode {mode.value!r}"
            raise ConfigurationError(msg)
        return backend

    async def _credits_remaining(self) -> int | None:
        if self._gateway is None:
            return None
        quota = await self._gateway.get_quota()
        return None if quota.unlimited else quota.credits_remaining

    async def close(self) -> None:
        """Close backends and the gateway."""
        for backend in self._backends.values():
            await backend.close()
        if self._gateway is not None:
            await self._gateway.close()
