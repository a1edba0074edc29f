"""Durable config store — small JSON values with atomic read-modify-write and TTL flags.

Queue contents, drain locks, scheduled markers, and per-partition mode flags
all live here.  Atomicity across processes comes from an optimistic version
column: every write is ``UPDATE ... WHERE key = ? AND version = ?`` and a lost
race re-reads and retries.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from threadindex.exceptions import PersistenceError
from threadindex.models.config import ConfigEntry

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


@runtime_checkable
class ConfigStore(Protocol):
    """Key/value store with per-key atomic read-modify-write."""

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for *key*, or *default*."""
        ...

    async def set(self, key: str, value: Any, *, ttl: float | None = None) -> None:
        """Write *value*, optionally expiring after *ttl* seconds."""
        ...

    async def delete(self, key: str) -> None:
        """Remove *key* if present."""
        ...

    async def update(
        self,
        key: str,
        fn: Callable[[Any], Any],
        default: Any = None,
        *,
        ttl: float | None = None,
    ) -> Any:
        """Atomically replace the value with ``fn(current)`` and return it.

        *fn* may be called more than once and must be side-effect free.
        """
        ...

    async def add_if_absent(self, key: str, value: Any, *, ttl: float | None = None) -> bool:
        """Write *value* only if *key* is absent or expired.  True if written."""
        ...

    async def delete_if(self, key: str, value: Any) -> bool:
        """Remove *key* only if it currently holds *value*.  True if removed."""
        ...


class SqlConfigStore:
    """:class:`ConfigStore` on the ``threadindex_config`` table.

    Cross-process atomicity comes from the version column; an in-process
    :class:`asyncio.Lock` additionally serializes writers sharing one
    connection pool.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncSession],
        *,
        max_retries: int = 8,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_retries = max_retries
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = asyncio.Lock()

    @classmethod
    def from_engine(cls, engine: AsyncEngine, **kwargs: Any) -> SqlConfigStore:
        """Build a store whose sessions come from *engine*."""
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        return cls(factory, **kwargs)

    # ------------------------------------------------------------------
    # ConfigStore protocol
    # ------------------------------------------------------------------

    async def get(self, key: str, default: Any = None) -> Any:
        """Return the live value for *key*, or *default*."""
        async with self._lock:
            row = await self._read(key)
        if row is None or self._expired(row):
            return default
        return json.loads(row.value_json)

    async def set(self, key: str, value: Any, *, ttl: float | None = None) -> None:
        """Write *value* unconditionally."""
        await self.update(key, lambda _current: value, ttl=ttl)

    async def delete(self, key: str) -> None:
        """Remove *key* if present."""
        async with self._lock:
            await self._execute(
                sa_delete(ConfigEntry).where(ConfigEntry.key == key)  # type: ignore[arg-type]
            )

    async def update(
        self,
        key: str,
        fn: Callable[[Any], Any],
        default: Any = None,
        *,
        ttl: float | None = None,
    ) -> Any:
        """Atomically replace the value with ``fn(current)`` and return the new value."""
        async with self._lock:
            for _ in range(self._max_retries):
                row = await self._read(key)
                current = default
                if row is not None and not self._expired(row):
                    current = json.loads(row.value_json)
                new_value = fn(current)
                if await self._write(key, new_value, row, ttl):
                    return new_value
                logger.debug("Version conflict on %s, retrying", key)
        msg = f"Could not update {key!r} after {self._max_retries} attempts"
        raise PersistenceError(msg)

    async def add_if_absent(self, key: str, value: Any, *, ttl: float | None = None) -> bool:
        """Claim *key* with *value* unless a live value already holds it."""
        async with self._lock:
            row = await self._read(key)
            if row is not None and not self._expired(row):
                return False
            return await self._write(key, value, row, ttl)

    async def delete_if(self, key: str, value: Any) -> bool:
        """Remove *key* only if it holds *value*."""
        async with self._lock:
            result = await self._execute(
                sa_delete(ConfigEntry).where(
                    ConfigEntry.key == key,  # type: ignore[arg-type]
                    ConfigEntry.value_json == _dumps(value),  # type: ignore[arg-type]
                )
            )
        return bool(result.rowcount)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _expired(self, row: ConfigEntry) -> bool:
        if row.expires_at is None:
            return False
        expires_at = row.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= self._clock()

    async def _read(self, key: str) -> ConfigEntry | None:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ConfigEntry).where(ConfigEntry.key == key)  # type: ignore[arg-type]
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as exc:
            msg = f"Config store unavailable reading {key!r}: {exc}"
            raise PersistenceError(msg) from exc

    async def _write(
        self,
        key: str,
        value: Any,
        previous: ConfigEntry | None,
        ttl: float | None,
    ) -> bool:
        """Insert or version-checked update.  False when another writer won."""
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl) if ttl is not None else None
        try:
            async with self._session_factory() as session:
                if previous is None:
                    session.add(
                        ConfigEntry(
                            key=key,
                            value_json=_dumps(value),
                            version=1,
                            expires_at=expires_at,
                            updated_at=now,
                        )
                    )
                    try:
                        await session.commit()
                    except IntegrityError:
                        await session.rollback()
                        return False
                    return True

                result = await session.execute(
                    sa_update(ConfigEntry)
                    .where(
                        ConfigEntry.key == key,  # type: ignore[arg-type]
                        ConfigEntry.version == previous.version,  # type: ignore[arg-type]
                    )
                    .values(
                        value_json=_dumps(value),
                        version=previous.version + 1,
                        expires_at=expires_at,
                        updated_at=now,
                    )
                )
                await session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            msg = f"Config store unavailable writing {key!r}: {exc}"
            raise PersistenceError(msg) from exc

    async def _execute(self, statement: Any) -> Any:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                await session.commit()
                return result
        except SQLAlchemyError as exc:
            msg = f"Config store unavailable: {exc}"
            raise PersistenceError(msg) from exc


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))
