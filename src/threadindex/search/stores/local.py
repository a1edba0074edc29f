"""LocalVectorStore — SQL-backed exact-scan vector store with a similarity cache."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from threadindex.exceptions import PersistenceError
from threadindex.models.cache import SimilarityCacheEntry, SimilarityCacheEntryBase
from threadindex.models.embeddings import EmbeddingRecord, EmbeddingRecordBase
from threadindex.search import vector_math
from threadindex.search.filters import FilterExpression, compile_sql
from threadindex.search.types import (
    EmbeddingHit,
    SimilarItem,
    StorageRecommendation,
    StoredEmbedding,
    StoreStats,
)

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Callable, Iterable

    from sqlalchemy.ext.asyncio import AsyncEngine

    from threadindex.config import ThreadIndexConfig

logger = logging.getLogger(__name__)

SOURCE_PARENT = "parent"
SOURCE_CONTENT = "content"
_SOURCE_TYPES = frozenset({SOURCE_PARENT, SOURCE_CONTENT})


class LocalVectorStore:
    """Single-node vector store that ranks by scanning every candidate.

    One embedding is kept per ``(content_id, model_name)``.  Vectors are
    normalized before packing, so ranking a candidate is one dot product
    against the normalized query.  Search cost is O(n) in the number of
    filtered records; see :meth:`storage_recommendation` for when to move a
    corpus to the cloud backend.

    ``find_similar`` results are cached per source with a TTL.  Cache rows are
    invalidated after every write that touches the source or a candidate.
    Cache failures are logged and suppressed; canonical read/write failures
    raise :class:`PersistenceError` and are never retried.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        *,
        model_name: str = "amazon.titan-embed-text-v2",
        cache_ttl: int = 3600,
        max_cached_similar: int = 20,
        recommendation_tiers: tuple[int, int, int] = (10_000, 50_000, 100_000),
        record_model: type[EmbeddingRecordBase] = EmbeddingRecord,
        cache_model: type[SimilarityCacheEntryBase] = SimilarityCacheEntry,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._model_name = model_name
        self._cache_ttl = cache_ttl
        self._max_cached_similar = max_cached_similar
        self._tiers = recommendation_tiers
        self._record_model = record_model
        self._cache_model = cache_model
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    async def from_engine(
        cls,
        engine: AsyncEngine,
        config: ThreadIndexConfig | None = None,
        *,
        create_tables: bool = True,
        **kwargs: Any,
    ) -> LocalVectorStore:
        """Build a store on *engine*, optionally creating its tables first."""
        if create_tables:
            async with engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
        if config is not None:
            kwargs.setdefault("model_name", config.indexing.model_name)
            kwargs.setdefault("cache_ttl", config.cache.ttl_seconds)
            kwargs.setdefault("max_cached_similar", config.cache.max_similar)
            kwargs.setdefault(
                "recommendation_tiers",
                (
                    config.indexing.excellent_max_records,
                    config.indexing.performance_threshold,
                    config.indexing.warning_max_records,
                ),
            )
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        return cls(factory, **kwargs)

    @property
    def model_name(self) -> str:
        """Default model recorded on stored embeddings."""
        return self._model_name

    @property
    def max_cached_similar(self) -> int:
        """Maximum ranked entries cached per source."""
        return self._max_cached_similar

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def store(
        self,
        content_id: int,
        parent_id: int,
        partition_id: int,
        owner_id: int,
        vector: list[float],
        content_hash: str,
        preview: str = "",
        model: str | None = None,
    ) -> int:
        """Insert or update the embedding for *content_id*.  Returns the row id."""
        if len(vector) == 0:
            msg = f"Cannot store an empty vector for content {content_id}"
            raise ValueError(msg)

        model_name = model or self._model_name
        normalized = vector_math.normalize(vector)
        packed = vector_math.pack(normalized)

        # A concurrent writer may insert the same (content_id, model) between
        # our read and our insert; the second attempt takes the update path.
        for attempt in range(2):
            try:
                record_id, previous_parent = await self._upsert(
                    content_id=content_id,
                    parent_id=parent_id,
                    partition_id=partition_id,
                    owner_id=owner_id,
                    packed=packed,
                    dimensions=len(normalized),
                    model_name=model_name,
                    content_hash=content_hash,
                    preview=preview,
                )
                break
            except PersistenceError as exc:
                if attempt == 0 and isinstance(exc.__cause__, IntegrityError):
                    continue
                raise

        parents = {parent_id}
        if previous_parent is not None:
            parents.add(previous_parent)
        await self._invalidate(content_ids=[content_id], parent_ids=parents)
        return record_id

    async def get(self, content_id: int, model: str | None = None) -> StoredEmbedding | None:
        """Return the stored embedding for *content_id*, or ``None``."""
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm).where(
                    rm.content_id == content_id,  # type: ignore[arg-type]
                    rm.model_name == (model or self._model_name),  # type: ignore[arg-type]
                )
            )
            record = result.scalar_one_or_none()
        if record is None:
            return None
        return _to_stored(record)

    async def content_hashes(
        self,
        content_ids: Iterable[int],
        model: str | None = None,
    ) -> dict[int, str]:
        """Map each stored content id among *content_ids* to its fingerprint."""
        ids = list(content_ids)
        if not ids:
            return {}
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm.content_id, rm.content_hash).where(
                    rm.content_id.in_(ids),  # type: ignore[unresolved-attribute]
                    rm.model_name == (model or self._model_name),  # type: ignore[arg-type]
                )
            )
            return {row.content_id: row.content_hash for row in result}

    async def is_indexed(self, content_id: int, content_hash: str | None = None) -> bool:
        """True if *content_id* is stored (and, when given, with *content_hash*)."""
        hashes = await self.content_hashes([content_id])
        if content_id not in hashes:
            return False
        return content_hash is None or hashes[content_id] == content_hash

    async def delete(self, content_id: int) -> bool:
        """Delete every embedding of *content_id*.  Returns True if any existed."""
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm.parent_id).where(rm.content_id == content_id)  # type: ignore[arg-type]
            )
            parents = {row.parent_id for row in result}
            if not parents:
                return False
            await session.execute(
                sa_delete(rm).where(rm.content_id == content_id)  # type: ignore[arg-type]
            )
        await self._invalidate(content_ids=[content_id], parent_ids=parents)
        return True

    async def delete_by_parent(self, parent_id: int) -> int:
        """Delete every embedding belonging to *parent_id*.  Returns the count removed."""
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm.content_id).where(rm.parent_id == parent_id)  # type: ignore[arg-type]
            )
            content_ids = [row.content_id for row in result]
            if not content_ids:
                return 0
            await session.execute(
                sa_delete(rm).where(rm.parent_id == parent_id)  # type: ignore[arg-type]
            )
        await self._invalidate(content_ids=content_ids, parent_ids=[parent_id])
        return len(content_ids)

    async def delete_all(self) -> int:
        """Remove every embedding and every cache row.  Returns records removed."""
        rm = self._record_model
        async with self._session() as session:
            count = (await session.execute(select(func.count()).select_from(rm))).scalar_one()
            await session.execute(sa_delete(rm))
            await session.execute(sa_delete(self._cache_model))
        logger.info("Cleared %d local embeddings", count)
        return int(count)

    async def delete_by_partition(self, partition_id: int) -> int:
        """Delete every embedding in *partition_id*.  Returns the count removed."""
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm.content_id, rm.parent_id).where(
                    rm.partition_id == partition_id  # type: ignore[arg-type]
                )
            )
            rows = result.all()
            if not rows:
                return 0
            await session.execute(
                sa_delete(rm).where(rm.partition_id == partition_id)  # type: ignore[arg-type]
            )
        await self._invalidate(
            content_ids=[row.content_id for row in rows],
            parent_ids={row.parent_id for row in rows},
        )
        logger.info("Cleared %d local embeddings in partition %d", len(rows), partition_id)
        return len(rows)

    async def count(self, partition_id: int | None = None) -> int:
        """Number of stored embeddings for the default model."""
        rm = self._record_model
        query = (
            select(func.count())
            .select_from(rm)
            .where(rm.model_name == self._model_name)  # type: ignore[arg-type]
        )
        if partition_id is not None:
            query = query.where(rm.partition_id == partition_id)  # type: ignore[arg-type]
        async with self._session() as session:
            return int((await session.execute(query)).scalar_one())

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query_vector: list[float],
        limit: int = 10,
        filters: FilterExpression | None = None,
        *,
        exclude_parent_ids: Iterable[int] | None = None,
        model: str | None = None,
    ) -> list[EmbeddingHit]:
        """Rank stored embeddings by cosine similarity to *query_vector*.

        Ties keep insertion order.  An empty store or an empty query returns
        an empty list.
        """
        if limit <= 0 or len(query_vector) == 0:
            return []
        hits = await self._scan(query_vector, filters, exclude_parent_ids, model)
        return hits[:limit]

    async def find_similar(
        self,
        source_type: str,
        source_id: int,
        limit: int = 10,
        *,
        force_refresh: bool = False,
    ) -> list[SimilarItem]:
        """Return parents similar to a source parent or member, best first.

        The source's own parent is never included, and each parent appears
        at most once (ranked by its best-scoring member).
        """
        if source_type not in _SOURCE_TYPES:
            msg = f"Unknown similarity source type {source_type!r}"
            raise ValueError(msg)
        if limit <= 0:
            return []

        if not force_refresh:
            cached = await self._read_cache(source_type, source_id, limit)
            if cached:
                return cached

        source = await self._representative(source_type, source_id)
        if source is None:
            return []

        hits = await self._scan(source.vector, None, [source.parent_id], source.model_name)
        best: list[SimilarItem] = []
        seen: set[int] = set()
        for hit in hits:
            if hit.parent_id in seen:
                continue
            seen.add(hit.parent_id)
            best.append(
                SimilarItem(
                    parent_id=hit.parent_id,
                    content_id=hit.content_id,
                    score=hit.similarity,
                    rank=len(best) + 1,
                    partition_id=hit.partition_id,
                )
            )
            if len(best) >= self._max_cached_similar:
                break

        await self._write_cache(source_type, source_id, best)
        return best[:limit]

    # ------------------------------------------------------------------
    # Cache maintenance
    # ------------------------------------------------------------------

    async def invalidate_cache(self, source_type: str, source_id: int) -> None:
        """Drop cached similar lists for one source."""
        cm = self._cache_model
        try:
            async with self._session_factory() as session:
                await session.execute(
                    sa_delete(cm).where(
                        cm.source_type == source_type,  # type: ignore[arg-type]
                        cm.source_id == source_id,  # type: ignore[arg-type]
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.warning(
                "Cache invalidation failed for %s %s", source_type, source_id, exc_info=True
            )

    async def cleanup_expired_cache(self) -> int:
        """Delete expired cache rows.  Idempotent; returns rows removed."""
        cm = self._cache_model
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    sa_delete(cm).where(cm.expires_at <= self._clock())  # type: ignore[operator]
                )
                await session.commit()
                removed = result.rowcount or 0
        except SQLAlchemyError:
            logger.warning("Similarity cache cleanup failed", exc_info=True)
            return 0
        if removed:
            logger.debug("Purged %d expired similarity cache rows", removed)
        return removed

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def stats(self) -> StoreStats:
        """Counters for records, parents, cache rows, and storage size."""
        rm = self._record_model
        async with self._session() as session:
            row = (
                await session.execute(
                    select(
                        func.count(rm.id),  # type: ignore[arg-type]
                        func.count(func.distinct(rm.parent_id)),
                        func.coalesce(
                            func.sum(
                                func.length(rm.embedding_vector) + func.length(rm.preview_text)
                            ),
                            0,
                        ),
                        func.max(rm.updated_at),
                    )
                )
            ).one()
            cache_count = (
                await session.execute(select(func.count()).select_from(self._cache_model))
            ).scalar_one()
        return StoreStats(
            record_count=int(row[0]),
            parent_count=int(row[1]),
            cache_entry_count=int(cache_count),
            approx_bytes=int(row[2]),
            last_updated_at=row[3],
        )

    async def indexed_parent_ids(self, partition_id: int | None = None) -> set[int]:
        """Distinct parents that have at least one stored embedding."""
        rm = self._record_model
        query = select(rm.parent_id).distinct()
        if partition_id is not None:
            query = query.where(rm.partition_id == partition_id)  # type: ignore[arg-type]
        async with self._session() as session:
            result = await session.execute(query)
            return {row.parent_id for row in result}

    async def counts_by_partition(self) -> dict[int, int]:
        """Number of indexed parents per partition."""
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm.partition_id, func.count(func.distinct(rm.parent_id))).group_by(
                    rm.partition_id
                )
            )
            return {int(partition): int(count) for partition, count in result}

    def storage_recommendation(self, corpus_size: int) -> StorageRecommendation:
        """Judge whether an exact local scan suits a corpus of *corpus_size* members."""
        excellent, good, warning = self._tiers
        if corpus_size < excellent:
            status, message = "good", "Local storage will be fast for a corpus this size."
        elif corpus_size < good:
            status, message = "good", "Local storage with caching will perform acceptably."
        elif corpus_size < warning:
            status = "warning"
            message = (
                f"{corpus_size:,} items: local search may be slow. "
                "Consider the cloud backend."
            )
        else:
            status = "not_recommended"
            message = f"{corpus_size:,} items: the cloud backend is recommended."
        return StorageRecommendation(status=status, message=message, corpus_size=corpus_size)

    async def close(self) -> None:
        """No-op for local store."""

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        """Yield a committing session; storage failures become PersistenceError."""
        try:
            session = self._session_factory()
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
        except SQLAlchemyError as exc:
            msg = f"Local vector store unavailable: {exc}"
            raise PersistenceError(msg) from exc

    async def _upsert(
        self,
        *,
        content_id: int,
        parent_id: int,
        partition_id: int,
        owner_id: int,
        packed: bytes,
        dimensions: int,
        model_name: str,
        content_hash: str,
        preview: str,
    ) -> tuple[int, int | None]:
        """Write one record.  Returns (row id, previous parent id or None)."""
        rm = self._record_model
        now = self._clock()
        async with self._session() as session:
            result = await session.execute(
                select(rm).where(
                    rm.content_id == content_id,  # type: ignore[arg-type]
                    rm.model_name == model_name,  # type: ignore[arg-type]
                )
            )
            record = result.scalar_one_or_none()
            previous_parent: int | None = None
            if record is None:
                record = rm(
                    content_id=content_id,
                    parent_id=parent_id,
                    partition_id=partition_id,
                    owner_id=owner_id,
                    embedding_vector=packed,
                    dimensions=dimensions,
                    model_name=model_name,
                    content_hash=content_hash,
                    preview_text=preview,
                    created_at=now,
                    updated_at=now,
                )
                session.add(record)
            else:
                previous_parent = record.parent_id
                record.parent_id = parent_id
                record.partition_id = partition_id
                record.owner_id = owner_id
                record.embedding_vector = packed
                record.dimensions = dimensions
                record.content_hash = content_hash
                record.preview_text = preview
                record.updated_at = now
            await session.flush()
            assert record.id is not None
            return record.id, previous_parent

    async def _scan(
        self,
        query_vector: list[float],
        filters: FilterExpression | None,
        exclude_parent_ids: Iterable[int] | None,
        model: str | None,
    ) -> list[EmbeddingHit]:
        """Score every matching record against the query, best first."""
        rm = self._record_model
        query = (
            select(
                rm.id,
                rm.content_id,
                rm.parent_id,
                rm.partition_id,
                rm.owner_id,
                rm.embedding_vector,
                rm.preview_text,
            )
            .where(rm.model_name == (model or self._model_name))  # type: ignore[arg-type]
            .order_by(rm.id)  # type: ignore[arg-type]
        )
        if filters is not None:
            query = query.where(compile_sql(filters, rm))
        excluded = list(exclude_parent_ids or [])
        if excluded:
            query = query.where(rm.parent_id.not_in(excluded))  # type: ignore[unresolved-attribute]

        async with self._session() as session:
            rows = (await session.execute(query)).all()
        if not rows:
            return []

        normalized_query = vector_math.normalize(query_vector)
        hits = [
            EmbeddingHit(
                content_id=row.content_id,
                parent_id=row.parent_id,
                partition_id=row.partition_id,
                owner_id=row.owner_id,
                similarity=vector_math.dot(
                    normalized_query, vector_math.unpack_array(row.embedding_vector)
                ),
                preview=row.preview_text,
            )
            for row in rows
        ]
        # list.sort is stable, so equal scores keep insertion (row id) order.
        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits

    async def _representative(self, source_type: str, source_id: int) -> StoredEmbedding | None:
        """Resolve the vector standing in for a source (first member for parents)."""
        if source_type == SOURCE_CONTENT:
            return await self.get(source_id)
        rm = self._record_model
        async with self._session() as session:
            result = await session.execute(
                select(rm)
                .where(
                    rm.parent_id == source_id,  # type: ignore[arg-type]
                    rm.model_name == self._model_name,  # type: ignore[arg-type]
                )
                .order_by(rm.content_id)  # type: ignore[arg-type]
                .limit(1)
            )
            record = result.scalar_one_or_none()
        return _to_stored(record) if record is not None else None

    async def _read_cache(self, source_type: str, source_id: int, limit: int) -> list[SimilarItem]:
        cm = self._cache_model
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(cm)
                    .where(
                        cm.source_type == source_type,  # type: ignore[arg-type]
                        cm.source_id == source_id,  # type: ignore[arg-type]
                        cm.expires_at > self._clock(),  # type: ignore[operator]
                    )
                    .order_by(cm.rank)  # type: ignore[arg-type]
                    .limit(limit)
                )
                rows = list(result.scalars().all())
        except SQLAlchemyError:
            logger.warning(
                "Similarity cache read failed for %s %s", source_type, source_id, exc_info=True
            )
            return []
        return [
            SimilarItem(
                parent_id=row.candidate_id,
                content_id=row.candidate_content_id,
                score=row.score,
                rank=row.rank,
                partition_id=row.partition_id,
            )
            for row in rows
        ]

    async def _write_cache(
        self, source_type: str, source_id: int, items: list[SimilarItem]
    ) -> None:
        cm = self._cache_model
        expires_at = self._clock() + timedelta(seconds=self._cache_ttl)
        try:
            async with self._session_factory() as session:
                await session.execute(
                    sa_delete(cm).where(
                        cm.source_type == source_type,  # type: ignore[arg-type]
                        cm.source_id == source_id,  # type: ignore[arg-type]
                    )
                )
                for item in items:
                    session.add(
                        cm(
                            source_type=source_type,
                            source_id=source_id,
                            candidate_type=SOURCE_PARENT,
                            candidate_id=item.parent_id,
                            candidate_content_id=item.content_id,
                            partition_id=item.partition_id,
                            score=item.score,
                            rank=item.rank,
                            expires_at=expires_at,
                        )
                    )
                await session.commit()
        except SQLAlchemyError:
            logger.warning(
                "Similarity cache write failed for %s %s", source_type, source_id, exc_info=True
            )

    async def _invalidate(self, *, content_ids: Iterable[int], parent_ids: Iterable[int]) -> None:
        """Drop cache rows naming any of the contents or parents, as source or candidate."""
        cm = self._cache_model
        contents = list(content_ids)
        parents = list(parent_ids)
        conditions = []
        if contents:
            conditions.append((cm.source_type == SOURCE_CONTENT) & cm.source_id.in_(contents))
            conditions.append(cm.candidate_content_id.in_(contents))
        if parents:
            conditions.append((cm.source_type == SOURCE_PARENT) & cm.source_id.in_(parents))
            conditions.append(cm.candidate_id.in_(parents))
        if not conditions:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(sa_delete(cm).where(or_(*conditions)))
                await session.commit()
        except SQLAlchemyError:
            logger.warning("Similarity cache invalidation failed", exc_info=True)


def _to_stored(record: EmbeddingRecordBase) -> StoredEmbedding:
    assert record.id is not None
    return StoredEmbedding(
        id=record.id,
        content_id=record.content_id,
        parent_id=record.parent_id,
        partition_id=record.partition_id,
        owner_id=record.owner_id,
        vector=vector_math.unpack(record.embedding_vector),
        dimensions=record.dimensions,
        model_name=record.model_name,
        content_hash=record.content_hash,
        preview=record.preview_text,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
