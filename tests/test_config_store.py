"""Tests for SqlConfigStore — versioned key/value rows with TTL flags."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from threadindex.exceptions import PersistenceError
from threadindex.indexing.kvstore import ConfigStore, SqlConfigStore

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def timed_store(session_factory, clock: _Clock) -> SqlConfigStore:
    return SqlConfigStore(session_factory, clock=clock)


# ==================================================================
# Basic operations
# ==================================================================


class TestBasics:
    def test_satisfies_protocol(self, config_store: SqlConfigStore):
        assert isinstance(config_store, ConfigStore)

    async def test_get_default(self, config_store: SqlConfigStore):
        assert await config_store.get("missing") is None
        assert await config_store.get("missing", []) == []

    async def test_set_and_get(self, config_store: SqlConfigStore):
        await config_store.set("mode:site:5", "cloud")
        assert await config_store.get("mode:site:5") == "cloud"

    async def test_json_values(self, config_store: SqlConfigStore):
        await config_store.set("queue", [3, 1, 2])
        await config_store.set("obj", {"b": 1, "a": [True, None]})
        assert await config_store.get("queue") == [3, 1, 2]
        assert await config_store.get("obj") == {"a": [True, None], "b": 1}

    async def test_overwrite(self, config_store: SqlConfigStore):
        await config_store.set("k", 1)
        await config_store.set("k", 2)
        assert await config_store.get("k") == 2

    async def test_delete(self, config_store: SqlConfigStore):
        await config_store.set("k", 1)
        await config_store.delete("k")
        assert await config_store.get("k") is None
        await config_store.delete("k")


# ==================================================================
# Atomic update
# ==================================================================


class TestUpdate:
    async def test_update_from_default(self, config_store: SqlConfigStore):
        result = await config_store.update("q", lambda cur: [*cur, 1], default=[])
        assert result == [1]
        assert await config_store.get("q") == [1]

    async def test_update_existing(self, config_store: SqlConfigStore):
        await config_store.set("q", [1])
        await config_store.update("q", lambda cur: [*cur, 2], default=[])
        assert await config_store.get("q") == [1, 2]

    async def test_concurrent_updates_lose_nothing(self, config_store: SqlConfigStore):
        async def push(n: int) -> None:
            await config_store.update("q", lambda cur: [*cur, n], default=[])

        await asyncio.gather(*(push(n) for n in range(10)))
        assert sorted(await config_store.get("q")) == list(range(10))

    async def test_version_conflict_retries(self, config_store: SqlConfigStore, session_factory):
        await config_store.set("q", [1])
        other = SqlConfigStore(session_factory)
        original_write = config_store._write
        raced = False

        async def write_after_race(key, value, previous, ttl):
            nonlocal raced
            if not raced:
                # Another process commits between our read and our write.
                raced = True
                await other.set("q", [1, 2])
            return await original_write(key, value, previous, ttl)

        seen: list[list[int]] = []

        def append_three(current):
            seen.append(list(current))
            return [*current, 3]

        config_store._write = write_after_race  # type: ignore[method-assign]
        result = await config_store.update("q", append_three, default=[])
        assert seen == [[1], [1, 2]]
        assert result == [1, 2, 3]
        assert await config_store.get("q") == [1, 2, 3]

    async def test_gives_up_after_max_retries(self, session_factory):
        store = SqlConfigStore(session_factory, max_retries=3)

        async def always_lose(key, value, previous, ttl):
            return False

        store._write = always_lose  # type: ignore[method-assign]
        with pytest.raises(PersistenceError, match="after 3 attempts"):
            await store.update("q", lambda cur: cur)


# ==================================================================
# Flags: add_if_absent / delete_if / TTL
# ==================================================================


class TestFlags:
    async def test_add_if_absent(self, config_store: SqlConfigStore):
        assert await config_store.add_if_absent("lock", "a") is True
        assert await config_store.add_if_absent("lock", "b") is False
        assert await config_store.get("lock") == "a"

    async def test_delete_if_matches(self, config_store: SqlConfigStore):
        await config_store.set("lock", "a")
        assert await config_store.delete_if("lock", "b") is False
        assert await config_store.get("lock") == "a"
        assert await config_store.delete_if("lock", "a") is True
        assert await config_store.get("lock") is None

    async def test_ttl_expiry(self, timed_store: SqlConfigStore, clock: _Clock):
        await timed_store.set("flag", True, ttl=10)
        assert await timed_store.get("flag") is True
        clock.now += timedelta(seconds=11)
        assert await timed_store.get("flag") is None

    async def test_expired_key_can_be_claimed(self, timed_store: SqlConfigStore, clock: _Clock):
        assert await timed_store.add_if_absent("lock", "a", ttl=5)
        clock.now += timedelta(seconds=6)
        assert await timed_store.add_if_absent("lock", "b", ttl=5)
        assert await timed_store.get("lock") == "b"

    async def test_update_ignores_expired_value(self, timed_store: SqlConfigStore, clock: _Clock):
        await timed_store.set("q", [1], ttl=1)
        clock.now += timedelta(seconds=2)
        assert await timed_store.update("q", lambda cur: [*cur, 2], default=[]) == [2]

    async def test_set_without_ttl_clears_expiry(self, timed_store: SqlConfigStore, clock: _Clock):
        await timed_store.set("k", 1, ttl=1)
        await timed_store.set("k", 2)
        clock.now += timedelta(days=1)
        assert await timed_store.get("k") == 2


class TestFailures:
    async def test_missing_table_raises_persistence_error(self, async_engine):
        store = SqlConfigStore.from_engine(async_engine)
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE threadindex_config")
        with pytest.raises(PersistenceError):
            await store.get("k")
        with pytest.raises(PersistenceError):
            await store.set("k", 1)
