"""Indexing queue, scheduling, and billing primitives."""

from threadindex.indexing.billing import BillingPolicy, BillingRun, per_parent_once, unbilled
from threadindex.indexing.kvstore import ConfigStore, SqlConfigStore
from threadindex.indexing.queue import (
    DRAIN_HOOK,
    DrainOutcome,
    DrainResult,
    DrainState,
    DrainTrigger,
    IndexingQueue,
)
from threadindex.indexing.scheduler import AsyncioScheduler, Scheduler

__all__ = [
    "DRAIN_HOOK",
    "AsyncioScheduler",
    "BillingPolicy",
    "BillingRun",
    "ConfigStore",
    "DrainOutcome",
    "DrainResult",
    "DrainState",
    "DrainTrigger",
    "IndexingQueue",
    "Scheduler",
    "SqlConfigStore",
    "per_parent_once",
    "unbilled",
]
