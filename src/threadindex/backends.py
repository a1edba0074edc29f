"""Vector backends — one polymorphic interface with local and cloud variants.

The router picks a backend once per call from the partition's mode; nothing
downstream branches on mode again.  Both variants take an explicit
:class:`~threadindex.types.IndexContext` and return the router-level result
types.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from threadindex.content import (
    IndexedStatusMarker,
    extract_images,
    fingerprint,
    make_preview,
    marker_hash,
    prepare_content,
)
from threadindex.exceptions import GatewayError, QuotaExceededError
from threadindex.indexing.billing import BillingRun, per_parent_once
from threadindex.search.filters import and_, coerce_filter, eq
from threadindex.search.stores.local import SOURCE_PARENT
from threadindex.search.types import BatchItem
from threadindex.types import (
    BackendStats,
    IndexMode,
    IndexOptions,
    IndexResult,
    SearchResponse,
    SearchResult,
)

if TYPE_CHECKING:
    from threadindex.config import IndexingConfig
    from threadindex.content import ContentSource, MemberRecord, ParentRecord
    from threadindex.indexing.billing import BillingPolicy
    from threadindex.search.filters import FilterExpression
    from threadindex.search.protocols import EmbeddingGateway
    from threadindex.search.stores.cloud import CloudIndex
    from threadindex.search.stores.local import LocalVectorStore
    from threadindex.search.types import (
        EmbeddingHit,
        ImageRef,
        SimilarItem,
        StorageRecommendation,
    )
    from threadindex.types import IndexContext

logger = logging.getLogger(__name__)


@runtime_checkable
class VectorBackend(Protocol):
    """Storage backend serving one mode."""

    @property
    def mode(self) -> IndexMode:
        """Mode this backend serves."""
        ...

    async def index(
        self,
        ctx: IndexContext,
        parent_ids: list[int],
        opts: IndexOptions | None = None,
    ) -> IndexResult:
        """Embed and store the parents' members; flip their markers."""
        ...

    async def search(
        self,
        ctx: IndexContext,
        query: str,
        limit: int = 10,
        filters: FilterExpression | dict[str, Any] | None = None,
    ) -> SearchResponse:
        """Semantic search within the context's partition."""
        ...

    async def find_similar(
        self,
        ctx: IndexContext,
        source_type: str,
        source_id: int,
        limit: int = 5,
        *,
        force_refresh: bool = False,
    ) -> list[SimilarItem]:
        """Parents similar to a parent or member."""
        ...

    async def delete_content(self, ctx: IndexContext, content_id: int) -> None:
        """Remove one member's vectors."""
        ...

    async def delete_parent(self, ctx: IndexContext, parent_id: int) -> None:
        """Remove every vector of a parent."""
        ...

    async def clear(self, ctx: IndexContext) -> None:
        """Remove every vector in the context's partition."""
        ...

    async def stats(self, ctx: IndexContext) -> BackendStats:
        """Storage counters."""
        ...

    async def indexed_parent_ids(self, ctx: IndexContext) -> set[int]:
        """Parents this backend actually holds vectors for."""
        ...

    async def storage_recommendation(
        self, ctx: IndexContext, corpus_size: int
    ) -> StorageRecommendation | None:
        """Whether this backend suits a corpus of *corpus_size* members, if it has a view."""
        ...

    async def cleanup(self, ctx: IndexContext) -> int:
        """Housekeeping (expired cache rows).  Returns rows purged."""
        ...

    async def close(self) -> None:
        """Release resources."""
        ...


# ------------------------------------------------------------------
# Helpers shared by both backends
# ------------------------------------------------------------------


def _dedupe(ids: list[int]) -> list[int]:
    return list(dict.fromkeys(int(pid) for pid in ids))


def _with_first(members: list[MemberRecord]) -> list[MemberRecord]:
    """Flag the earliest member as the opening post."""
    return [
        replace(member, is_first=(i == 0)) if member.is_first != (i == 0) else member
        for i, member in enumerate(members)
    ]


async def _flip_markers(
    content: ContentSource,
    parents: list[ParentRecord],
    mode: IndexMode,
) -> None:
    for parent in parents:
        await content.set_marker(
            parent.id, mode, IndexedStatusMarker(indexed=True, change_hash=marker_hash(parent))
        )


async def _hydrate(
    content: ContentSource,
    hits: list[EmbeddingHit],
) -> list[SearchResult]:
    """Attach live parent/member metadata; hits whose records vanished are dropped."""
    parents: dict[int, ParentRecord | None] = {}
    members: dict[int, dict[int, MemberRecord]] = {}
    results: list[SearchResult] = []
    for hit in hits:
        if hit.parent_id not in parents:
            parents[hit.parent_id] = await content.get_parent(hit.parent_id)
        parent = parents[hit.parent_id]
        if parent is None or not parent.eligible:
            continue
        if hit.parent_id not in members:
            members[hit.parent_id] = {m.id: m for m in await content.get_members(hit.parent_id)}
        parent_members = members[hit.parent_id]
        # Cloud hits may only name the parent; fall back to its opening post.
        member = parent_members.get(hit.content_id)
        if member is None and hit.content_id == 0 and parent_members:
            member = next(iter(parent_members.values()))
        if member is None or not member.eligible:
            continue
        results.append(
            SearchResult(
                content_id=member.id,
                parent_id=parent.id,
                partition_id=parent.partition_id,
                score=hit.similarity,
                title=parent.title,
                url=parent.url,
                member_url=member.url or parent.url,
                author_id=member.owner_id,
                author_name=member.author_name,
                created_at=member.created_at,
                preview=hit.preview or make_preview(member.body),
            )
        )
    return results


@dataclass(slots=True)
class _PendingItem:
    item_id: str
    parent: ParentRecord
    member: MemberRecord
    text: str
    content_hash: str
    images: tuple[ImageRef, ...]


# ------------------------------------------------------------------
# Local
# ------------------------------------------------------------------


class LocalBackend:
    """Embeds through the gateway and keeps vectors in a :class:`LocalVectorStore`.

    Members are fingerprinted before any network call; unchanged members
    are skipped.  Image-bearing members go one by one through
    ``gateway.embed``; text-only members go through ``gateway.embed_batch``
    in chunks, with per-chunk parent charges decided by the billing policy.
    Per-item failures are collected; a quota stop ends the run after the
    results gathered so far are stored.
    """

    def __init__(
        self,
        store: LocalVectorStore,
        gateway: EmbeddingGateway,
        content: ContentSource,
        config: IndexingConfig,
        *,
        billing: BillingPolicy = per_parent_once,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._content = content
        self._config = config
        self._billing = billing

    @property
    def mode(self) -> IndexMode:
        return IndexMode.LOCAL

    @property
    def store(self) -> LocalVectorStore:
        """The underlying vector store."""
        return self._store

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index(
        self,
        ctx: IndexContext,
        parent_ids: list[int],
        opts: IndexOptions | None = None,
    ) -> IndexResult:
        """Embed and store every changed member of *parent_ids*."""
        opts = opts or IndexOptions()
        include_images = (
            self._config.include_images if opts.include_images is None else opts.include_images
        )

        skipped = 0
        not_eligible = 0
        errors: list[str] = []
        with_content: dict[int, ParentRecord] = {}
        pending: list[_PendingItem] = []

        for parent_id in _dedupe(parent_ids):
            parent = await self._content.get_parent(parent_id)
            if parent is None:
                logger.debug("Parent %d vanished before indexing", parent_id)
                continue
            if not parent.eligible:
                not_eligible += 1
                continue

            members = _with_first(
                [m for m in await self._content.get_members(parent_id) if m.eligible]
            )
            if not members:
                continue
            stored_hashes = await self._store.content_hashes(m.id for m in members)

            for member in members:
                text = prepare_content(member, parent, max_chars=self._config.max_content_chars)
                images = extract_images(member) if include_images else ()
                content_hash = fingerprint(text, len(images))
                if not opts.force and stored_hashes.get(member.id) == content_hash:
                    skipped += 1
                    with_content[parent.id] = parent
                    continue
                if not text.strip():
                    logger.debug("Member %d has no text to embed", member.id)
                    continue
                pending.append(
                    _PendingItem(
                        item_id=f"post_{member.id}",
                        parent=parent,
                        member=member,
                        text=text,
                        content_hash=content_hash,
                        images=images,
                    )
                )

        indexed = 0
        credits = 0
        quota_exceeded = False

        image_items = [item for item in pending if item.images]
        text_items = [item for item in pending if not item.images]

        for item in image_items:
            try:
                response = await self._gateway.embed(
                    item.text, list(item.images), context=item.parent.title
                )
            except QuotaExceededError:
                quota_exceeded = True
                break
            except GatewayError as exc:
                errors.append(f"Failed to embed {item.item_id}: {exc}")
                continue
            credits += response.credits_used
            await self._save(item, response.vector, response.processed_text or item.text)
            indexed += 1
            with_content[item.parent.id] = item.parent

        if text_items and not quota_exceeded:
            # Parents already charged through the image path are not charged again.
            billing = BillingRun(self._billing, already_billed={i.parent.id for i in image_items})
            by_id = {item.item_id: item for item in text_items}
            size = max(1, self._gateway.max_batch_items)
            for chunk_index, start in enumerate(range(0, len(text_items), size)):
                chunk = text_items[start : start + size]
                units = billing.units_for(chunk_index, [item.parent.id for item in chunk])
                try:
                    response = await self._gateway.embed_batch(
                        [BatchItem(id=item.item_id, text=item.text) for item in chunk], units
                    )
                except QuotaExceededError:
                    quota_exceeded = True
                    break
                except GatewayError as exc:
                    errors.append(f"Chunk {chunk_index + 1} failed: {exc}")
                    continue
                credits += response.credits_used
                for outcome in response.results:
                    item = by_id.get(outcome.id)
                    if item is None:
                        continue
                    if not outcome.success or not outcome.vector:
                        errors.append(
                            f"Failed to embed {outcome.id}: {outcome.error or 'Unknown error'}"
                        )
                        continue
                    await self._save(item, outcome.vector, item.text)
                    indexed += 1
                    with_content[item.parent.id] = item.parent

        if quota_exceeded:
            logger.warning(
                "Embedding quota exhausted for %s after %d of %d items",
                ctx.key,
                indexed,
                len(pending),
            )

        await _flip_markers(self._content, list(with_content.values()), IndexMode.LOCAL)
        result = IndexResult(
            indexed=indexed,
            skipped=skipped,
            not_eligible=not_eligible,
            errors=errors,
            credits_used=credits,
            parents_indexed=list(with_content),
            quota_exceeded=quota_exceeded,
        )
        logger.info(
            "Local index %s: %d indexed, %d skipped, %d not eligible, %d errors",
            ctx.key,
            result.indexed,
            result.skipped,
            result.not_eligible,
            len(result.errors),
        )
        return result

    async def _save(self, item: _PendingItem, vector: list[float], preview_source: str) -> None:
        await self._store.store(
            content_id=item.member.id,
            parent_id=item.parent.id,
            partition_id=item.parent.partition_id,
            owner_id=item.member.owner_id,
            vector=vector,
            content_hash=item.content_hash,
            preview=make_preview(preview_source, self._config.preview_chars),
        )

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
        """Embed *query* and rank the partition's stored members against it."""
        if not query.strip() or limit <= 0:
            return SearchResponse()
        if await self._store.count(ctx.partition_id) == 0:
            return SearchResponse()

        response = await self._gateway.embed(query)
        scope = eq("partition_id", ctx.partition_id)
        extra = coerce_filter(filters)
        expression = scope if extra is None else and_(scope, extra)
        hits = await self._store.search(response.vector, limit, expression)
        return SearchResponse.of(await _hydrate(self._content, hits))

    async def find_similar(
        self,
        ctx: IndexContext,
        source_type: str,
        source_id: int,
        limit: int = 5,
        *,
        force_refresh: bool = False,
    ) -> list[SimilarItem]:
        return await self._store.find_similar(
            source_type, source_id, limit, force_refresh=force_refresh
        )

    async def delete_content(self, ctx: IndexContext, content_id: int) -> None:
        await self._store.delete(content_id)

    async def delete_parent(self, ctx: IndexContext, parent_id: int) -> None:
        await self._store.delete_by_parent(parent_id)

    async def clear(self, ctx: IndexContext) -> None:
        await self._store.delete_by_partition(ctx.partition_id)

    async def stats(self, ctx: IndexContext) -> BackendStats:
        stats = BackendStats.from_store(await self._store.stats())
        by_partition = await self._store.counts_by_partition()
        return replace(stats, extra={"parents_by_partition": by_partition})

    async def indexed_parent_ids(self, ctx: IndexContext) -> set[int]:
        return await self._store.indexed_parent_ids(ctx.partition_id)

    async def storage_recommendation(
        self, ctx: IndexContext, corpus_size: int
    ) -> StorageRecommendation | None:
        return self._store.storage_recommendation(corpus_size)

    async def cleanup(self, ctx: IndexContext) -> int:
        return await self._store.cleanup_expired_cache()

    async def close(self) -> None:
        await self._store.close()


# ------------------------------------------------------------------
# Cloud
# ------------------------------------------------------------------


class CloudBackend:
    """Sends whole threads to the :class:`CloudIndex`, which embeds on ingest.

    A parent whose cloud marker is current is skipped unless forced; a
    stale marker asks the service to re-embed (``force_reindex``).
    """

    def __init__(
        self,
        index: CloudIndex,
        content: ContentSource,
        config: IndexingConfig,
    ) -> None:
        self._index = index
        self._content = content
        self._config = config

    @property
    def mode(self) -> IndexMode:
        return IndexMode.CLOUD

    async def index(
        self,
        ctx: IndexContext,
        parent_ids: list[int],
        opts: IndexOptions | None = None,
    ) -> IndexResult:
        """Build thread payloads for changed parents and ingest them."""
        opts = opts or IndexOptions()
        not_eligible = 0
        skipped = 0
        threads: list[dict[str, Any]] = []
        parents: dict[int, ParentRecord] = {}
        sent: dict[int, int] = {}

        for parent_id in _dedupe(parent_ids):
            parent = await self._content.get_parent(parent_id)
            if parent is None:
                logger.debug("Parent %d vanished before indexing", parent_id)
                continue
            if not parent.eligible:
                not_eligible += 1
                continue
            marker = parent.marker(IndexMode.CLOUD)
            current = marker is not None and marker.is_current(parent)
            if current and not opts.force:
                skipped += 1
                continue
            members = _with_first(
                [m for m in await self._content.get_members(parent_id) if m.eligible]
            )
            if not members:
                continue
            payload = self._thread_payload(ctx, parent, members)
            if opts.force or (marker is not None and marker.indexed):
                payload["force_reindex"] = True
            threads.append(payload)
            parents[parent.id] = parent
            sent[parent.id] = len(members)

        if not threads:
            return IndexResult(skipped=skipped, not_eligible=not_eligible)

        try:
            ingest = await self._index.ingest(
                threads,
                chunk_size=self._config.cloud_chunk_size,
                overlap_percent=self._config.cloud_overlap_percent,
            )
        except QuotaExceededError:
            logger.warning("Cloud quota exhausted for %s", ctx.key)
            return IndexResult(skipped=skipped, not_eligible=not_eligible, quota_exceeded=True)
        except GatewayError as exc:
            return IndexResult(
                skipped=skipped,
                not_eligible=not_eligible,
                errors=[f"Cloud ingest failed: {exc}"],
            )

        done = [parents[pid] for pid in ingest.parent_ids if pid in parents]
        missing = [pid for pid in parents if pid not in ingest.hashes]
        errors = [f"Parent {pid} was not indexed by the cloud service" for pid in missing]
        await _flip_markers(self._content, done, IndexMode.CLOUD)
        logger.info(
            "Cloud index %s: %d of %d threads ingested", ctx.key, len(done), len(threads)
        )
        return IndexResult(
            indexed=sum(sent[p.id] for p in done),
            skipped=skipped,
            not_eligible=not_eligible,
            errors=errors,
            credits_used=ingest.credits_used,
            parents_indexed=[p.id for p in done],
        )

    def _thread_payload(
        self,
        ctx: IndexContext,
        parent: ParentRecord,
        members: list[MemberRecord],
    ) -> dict[str, Any]:
        first, replies = members[0], members[1:]
        topic: dict[str, Any] = {
            "title": parent.title,
            "body": prepare_content(first, parent, max_chars=self._config.max_content_chars),
            "author": first.author_name,
            "author_id": first.owner_id,
            "display_name": first.author_name,
            "post_id": first.id,
            "created_at": first.created_at.isoformat() if first.created_at else None,
            "url": parent.url,
            "forum_id": parent.partition_id,
        }
        if self._config.include_images:
            images = extract_images(first)
            if images:
                topic["images"] = [{"url": image.url, "alt": image.alt} for image in images]
        return {
            "thread_id": str(parent.id),
            "board_id": ctx.partition_id,
            "topic": topic,
            "replies": [
                {
                    "body": prepare_content(
                        reply, parent, max_chars=self._config.max_content_chars
                    ),
                    "author": reply.author_name,
                    "author_id": reply.owner_id,
                    "display_name": reply.author_name,
                    "post_id": reply.id,
                    "created_at": reply.created_at.isoformat() if reply.created_at else None,
                }
                for reply in replies
            ],
        }

    async def search(
        self,
        ctx: IndexContext,
        query: str,
        limit: int = 10,
        filters: FilterExpression | dict[str, Any] | None = None,
    ) -> SearchResponse:
        """Text search on the service, hydrated from the content source."""
        if not query.strip() or limit <= 0:
            return SearchResponse()
        hits = await self._index.search(
            query, partition_id=ctx.partition_id, limit=limit, filters=coerce_filter(filters)
        )
        return SearchResponse.of(await _hydrate(self._content, hits))

    async def find_similar(
        self,
        ctx: IndexContext,
        source_type: str,
        source_id: int,
        limit: int = 5,
        *,
        force_refresh: bool = False,
    ) -> list[SimilarItem]:
        parent_id = source_id
        if source_type != SOURCE_PARENT:
            # The cloud service relates parents only; resolve a member to its parent.
            member = await self._content.get_member(source_id)
            if member is None:
                return []
            parent_id = member.parent_id
        return await self._index.find_similar(parent_id, limit)

    async def delete_content(self, ctx: IndexContext, content_id: int) -> None:
        await self._index.delete_content(content_id, ctx.partition_id)

    async def delete_parent(self, ctx: IndexContext, parent_id: int) -> None:
        await self._index.delete_parent(parent_id, ctx.partition_id)

    async def clear(self, ctx: IndexContext) -> None:
        await self._index.clear()

    async def stats(self, ctx: IndexContext) -> BackendStats:
        raw = await self._index.status(ctx.partition_id)
        return BackendStats(
            mode=IndexMode.CLOUD,
            record_count=_as_int(raw.get("total_chunks", raw.get("total_vectors"))),
            parent_count=_as_int(raw.get("total_topics", raw.get("indexed_topics"))),
            extra=raw,
        )

    async def indexed_parent_ids(self, ctx: IndexContext) -> set[int]:
        return await self._index.indexed_parent_ids()

    async def storage_recommendation(
        self, ctx: IndexContext, corpus_size: int
    ) -> StorageRecommendation | None:
        return None

    async def cleanup(self, ctx: IndexContext) -> int:
        return 0

    async def close(self) -> None:
        await self._index.close()


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
