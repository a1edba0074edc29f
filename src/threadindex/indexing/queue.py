"""IndexingQueue — durable per-partition queues with a self-rescheduling drain.

Each ``(tenant, partition, mode)`` owns these config-store keys:

- ``queue:...``      ordered, de-duplicated parent ids awaiting indexing
- ``lock:...``       drain lock, holder token with a TTL
- ``scheduled:...``  flag set while a background drain job is pending
- ``forced:...``     queued ids to re-embed even when their fingerprint matches

A drain moves ``IDLE -> SCHEDULED -> DRAINING -> (SCHEDULED | IDLE)``.
Scheduling always goes through the ``scheduled`` flag, so at most one drain
job is pending or running per key at any time.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from threadindex.exceptions import (
    LockContentionError,
    PersistenceError,
    QuotaExceededError,
    ThreadIndexError,
)
from threadindex.types import IndexResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from threadindex.config import QueueConfig
    from threadindex.indexing.kvstore import ConfigStore
    from threadindex.indexing.scheduler import Scheduler
    from threadindex.types import IndexContext, IndexMode

    Indexer = Callable[[list[int]], Awaitable[IndexResult]]

logger = logging.getLogger(__name__)

DRAIN_HOOK = "threadindex.drain"


class DrainState(Enum):
    """Where a partition's queue is in its drain cycle."""

    IDLE = "idle"
    SCHEDULED = "scheduled"
    DRAINING = "draining"


class DrainTrigger(Enum):
    """Who started a drain."""

    BACKGROUND = "background"
    FAST_PATH = "fast_path"


class DrainOutcome(Enum):
    """How one drain step ended."""

    PROCESSED = "processed"
    EMPTY = "empty"
    CONTENDED = "contended"
    QUOTA_EXCEEDED = "quota_exceeded"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class DrainResult:
    """Outcome of one :meth:`IndexingQueue.drain` step.

    Attributes:
        batch: Parent ids taken off the queue this step.
        remaining: Queue length after the step.
        outcome: How the step ended.
        result: Indexing result for the batch, when one ran.
    """

    batch: list[int]
    remaining: int
    outcome: DrainOutcome
    result: IndexResult | None = None

    @property
    def has_more_work(self) -> bool:
        """True if another step would find something to do."""
        if self.outcome is DrainOutcome.QUOTA_EXCEEDED:
            return False
        return self.remaining > 0


class IndexingQueue:
    """Durable indexing queues drained in fixed-size batches.

    The queue does not index anything itself: :meth:`drain` pops a batch
    and hands it to an *indexer* coroutine supplied by the caller.
    """

    def __init__(
        self,
        store: ConfigStore,
        scheduler: Scheduler,
        config: QueueConfig,
        *,
        hook: str = DRAIN_HOOK,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._config = config
        self._hook = hook

    @property
    def hook(self) -> str:
        """Scheduler hook name drain jobs are registered under."""
        return self._hook

    @property
    def config(self) -> QueueConfig:
        """Queue tuning values."""
        return self._config

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    @staticmethod
    def queue_key(ctx: IndexContext, mode: IndexMode) -> str:
        return f"queue:{ctx.key}:{mode.value}"

    @staticmethod
    def lock_key(ctx: IndexContext, mode: IndexMode) -> str:
        return f"lock:{ctx.key}:{mode.value}"

    @staticmethod
    def scheduled_key(ctx: IndexContext, mode: IndexMode) -> str:
        return f"scheduled:{ctx.key}:{mode.value}"

    @staticmethod
    def forced_key(ctx: IndexContext, mode: IndexMode) -> str:
        return f"forced:{ctx.key}:{mode.value}"

    @staticmethod
    def job_args(ctx: IndexContext, mode: IndexMode) -> tuple[Any, ...]:
        """Scheduler arguments identifying the drain job for *ctx* and *mode*."""
        return (ctx.tenant_id, ctx.partition_id, mode.value)

    # ------------------------------------------------------------------
    # Queue contents
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        parent_ids: Iterable[int],
        *,
        delay: float | None = None,
    ) -> int:
        """Append *parent_ids* not already queued and make sure a drain is pending.

        Returns the number of ids actually added.
        """
        incoming = _dedupe(parent_ids)
        added: list[int] = []

        def merge(current: Any) -> list[int]:
            queued = [int(pid) for pid in current or []]
            seen = set(queued)
            added[:] = [pid for pid in incoming if pid not in seen]
            return queued + added

        queued = await self._store.update(self.queue_key(ctx, mode), merge, default=[])
        if added:
            logger.debug(
                "Queued %d parents for %s/%s (%d pending)",
                len(added),
                ctx.key,
                mode.value,
                len(queued),
            )
        if queued:
            await self._ensure_scheduled(
                ctx, mode, self._config.coalesce_delay if delay is None else delay
            )
        return len(added)

    async def replace(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        parent_ids: Iterable[int],
        *,
        force: bool = False,
    ) -> int:
        """Overwrite the queue with *parent_ids* and schedule a drain if non-empty.

        With *force* every id is re-embedded when drained, even if its stored
        fingerprint still matches.
        """
        ids = _dedupe(parent_ids)
        if force and ids:
            await self._store.set(self.forced_key(ctx, mode), ids)
        else:
            await self._store.delete(self.forced_key(ctx, mode))
        await self._store.set(self.queue_key(ctx, mode), ids)
        if ids:
            await self._ensure_scheduled(ctx, mode, self._config.coalesce_delay)
        return len(ids)

    async def remove(self, ctx: IndexContext, mode: IndexMode, parent_ids: Iterable[int]) -> int:
        """Drop *parent_ids* from the queue.  Returns how many were removed."""
        drop = set(_dedupe(parent_ids))
        removed: list[int] = []

        def prune(current: Any) -> list[int]:
            queued = [int(pid) for pid in current or []]
            removed[:] = [pid for pid in queued if pid in drop]
            return [pid for pid in queued if pid not in drop]

        await self._store.update(self.queue_key(ctx, mode), prune, default=[])
        return len(removed)

    async def pending(self, ctx: IndexContext, mode: IndexMode) -> list[int]:
        """Parent ids waiting on the queue, in order."""
        return [int(pid) for pid in await self._store.get(self.queue_key(ctx, mode), [])]

    async def forced(self, ctx: IndexContext, mode: IndexMode) -> set[int]:
        """Queued ids marked for re-embedding regardless of fingerprint."""
        return {int(pid) for pid in await self._store.get(self.forced_key(ctx, mode), [])}

    async def clear(self, ctx: IndexContext, mode: IndexMode) -> None:
        """Empty the queue and cancel any pending drain job."""
        await self._store.delete(self.queue_key(ctx, mode))
        await self._store.delete(self.forced_key(ctx, mode))
        await self._store.delete(self.scheduled_key(ctx, mode))
        await self._scheduler.cancel(self._hook, self.job_args(ctx, mode))

    async def state(self, ctx: IndexContext, mode: IndexMode) -> DrainState:
        """Current drain state."""
        if await self._store.get(self.lock_key(ctx, mode)) is not None:
            return DrainState.DRAINING
        if await self._store.get(self.scheduled_key(ctx, mode)) is not None:
            return DrainState.SCHEDULED
        return DrainState.IDLE

    # ------------------------------------------------------------------
    # Draining
    # ------------------------------------------------------------------

    async def drain(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        indexer: Indexer,
        *,
        trigger: DrainTrigger = DrainTrigger.BACKGROUND,
        reschedule: bool = True,
    ) -> DrainResult:
        """Process one batch from the front of the queue.

        Takes the drain lock, pops up to ``batch_size`` ids, runs *indexer*
        on them, and releases the lock.  When work remains a follow-up job
        is scheduled (unless *reschedule* is False).  A quota stop puts the
        unprocessed ids back at the front and goes idle.
        """
        if trigger is DrainTrigger.BACKGROUND:
            await self._store.delete(self.scheduled_key(ctx, mode))

        token = f"{trigger.value}:{uuid.uuid4().hex}"
        try:
            await self._acquire(ctx, mode, token, trigger)
        except LockContentionError as exc:
            logger.info("%s", exc)
            if trigger is DrainTrigger.BACKGROUND and reschedule:
                await self._ensure_scheduled(
                    ctx, mode, self._config.contention_backoff, while_locked=True
                )
            remaining = len(await self.pending(ctx, mode))
            return DrainResult(batch=[], remaining=remaining, outcome=DrainOutcome.CONTENDED)

        batch: list[int] = []
        result: IndexResult | None = None
        outcome = DrainOutcome.EMPTY
        try:
            batch = await self._pop_batch(ctx, mode)
            if batch:
                outcome, result = await self._run_batch(ctx, mode, batch, indexer)
        finally:
            await self._store.delete_if(self.lock_key(ctx, mode), token)

        # Read after releasing the lock so ids enqueued mid-drain are seen.
        remaining = len(await self.pending(ctx, mode))
        if remaining and reschedule and outcome is not DrainOutcome.QUOTA_EXCEEDED:
            await self._ensure_scheduled(ctx, mode, self._config.drain_interval)
        return DrainResult(batch=batch, remaining=remaining, outcome=outcome, result=result)

    async def run_until_idle(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        indexer: Indexer,
        *,
        max_steps: int | None = None,
    ) -> list[DrainResult]:
        """Drain batch after batch in-process until nothing is left.

        Stops early on lock contention or quota exhaustion.  Work left over
        after *max_steps* is handed back to the background scheduler.
        """
        steps: list[DrainResult] = []
        while max_steps is None or len(steps) < max_steps:
            step = await self.drain(
                ctx, mode, indexer, trigger=DrainTrigger.FAST_PATH, reschedule=False
            )
            steps.append(step)
            if not step.has_more_work or step.outcome is DrainOutcome.CONTENDED:
                break
        if steps and steps[-1].has_more_work and steps[-1].outcome is not DrainOutcome.CONTENDED:
            await self._ensure_scheduled(ctx, mode, self._config.drain_interval)
        return steps

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    async def _ensure_scheduled(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        delay: float,
        *,
        while_locked: bool = False,
    ) -> bool:
        """Schedule a background drain unless one is pending or running.

        *while_locked* schedules even though the lock is held; a drain that
        lost the lock to a fast-path run uses it to come back later.
        """
        if not while_locked and await self._store.get(self.lock_key(ctx, mode)) is not None:
            # The running drain reschedules itself on release.
            return False
        claimed = await self._store.add_if_absent(
            self.scheduled_key(ctx, mode),
            True,
            ttl=delay + self._config.lock_ttl,
        )
        if not claimed:
            return False
        args = self.job_args(ctx, mode)
        if await self._scheduler.is_scheduled(self._hook, args):
            return False
        await self._scheduler.schedule(delay, self._hook, args)
        logger.debug("Drain for %s/%s scheduled in %.1fs", ctx.key, mode.value, delay)
        return True

    async def _acquire(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        token: str,
        trigger: DrainTrigger,
    ) -> None:
        key = self.lock_key(ctx, mode)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.lock_wait
        while True:
            if await self._store.add_if_absent(key, token, ttl=self._config.lock_ttl):
                return
            holder = await self._store.get(key)
            if (
                trigger is DrainTrigger.BACKGROUND
                and isinstance(holder, str)
                and holder.startswith(DrainTrigger.FAST_PATH.value)
            ):
                msg = f"Fast-path drain active for {ctx.key}/{mode.value}; backing off"
                raise LockContentionError(msg)
            if loop.time() >= deadline:
                msg = f"Drain lock for {ctx.key}/{mode.value} held by {holder!r}"
                raise LockContentionError(msg)
            await asyncio.sleep(self._config.lock_poll_interval)

    async def _pop_batch(self, ctx: IndexContext, mode: IndexMode) -> list[int]:
        size = self._config.batch_size
        taken: list[int] = []

        def take(current: Any) -> list[int]:
            queued = [int(pid) for pid in current or []]
            taken[:] = queued[:size]
            return queued[size:]

        await self._store.update(self.queue_key(ctx, mode), take, default=[])
        return list(taken)

    async def _push_front(self, ctx: IndexContext, mode: IndexMode, ids: list[int]) -> None:
        if not ids:
            return

        def prepend(current: Any) -> list[int]:
            queued = [int(pid) for pid in current or []]
            return _dedupe([*ids, *queued])

        await self._store.update(self.queue_key(ctx, mode), prepend, default=[])

    async def _run_batch(
        self,
        ctx: IndexContext,
        mode: IndexMode,
        batch: list[int],
        indexer: Indexer,
    ) -> tuple[DrainOutcome, IndexResult | None]:
        try:
            result = await indexer(batch)
        except QuotaExceededError:
            logger.warning(
                "Quota exhausted draining %s/%s; %d parents returned to queue",
                ctx.key,
                mode.value,
                len(batch),
            )
            await self._push_front(ctx, mode, batch)
            return DrainOutcome.QUOTA_EXCEEDED, IndexResult(quota_exceeded=True)
        except PersistenceError:
            await self._push_front(ctx, mode, batch)
            raise
        except ThreadIndexError as exc:
            logger.warning(
                "Drain batch for %s/%s failed: %s", ctx.key, mode.value, exc, exc_info=True
            )
            await self._unforce(ctx, mode, batch)
            return DrainOutcome.FAILED, IndexResult(errors=[str(exc)])

        if result.quota_exceeded:
            done = set(result.parents_indexed)
            leftover = [pid for pid in batch if pid not in done]
            await self._push_front(ctx, mode, leftover)
            await self._unforce(ctx, mode, done)
            logger.warning(
                "Quota exhausted draining %s/%s; %d parents returned to queue",
                ctx.key,
                mode.value,
                len(leftover),
            )
            return DrainOutcome.QUOTA_EXCEEDED, result
        await self._unforce(ctx, mode, batch)
        return DrainOutcome.PROCESSED, result

    async def _unforce(self, ctx: IndexContext, mode: IndexMode, ids: Iterable[int]) -> None:
        drop = set(ids)
        if not drop or not drop & await self.forced(ctx, mode):
            return

        def prune(current: Any) -> list[int]:
            return [int(pid) for pid in current or [] if int(pid) not in drop]

        remaining = await self._store.update(self.forced_key(ctx, mode), prune, default=[])
        if not remaining:
            await self._store.delete(self.forced_key(ctx, mode))


def _dedupe(ids: Iterable[int]) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for raw in ids:
        pid = int(raw)
        if pid not in seen:
            seen.add(pid)
            out.append(pid)
    return out
