"""threadindex: embedding storage and semantic search for forum threads.

Local exact-scan or cloud-hosted vectors behind one router, kept in sync by
a durable, self-rescheduling indexing queue.
"""

__version__ = "0.1.0"

from threadindex.backends import CloudBackend, LocalBackend, VectorBackend
from threadindex.config import CacheConfig, IndexingConfig, QueueConfig, ThreadIndexConfig
from threadindex.content import (
    ContentSource,
    IndexedStatusMarker,
    MemberRecord,
    ParentRecord,
)
from threadindex.events import ContentEvent, EventBus, EventType
from threadindex.exceptions import (
    ConfigurationError,
    ContentNotFoundError,
    GatewayError,
    GatewayUnavailableError,
    InvalidResponseError,
    LockContentionError,
    NotEligibleError,
    PersistenceError,
    QuotaExceededError,
    ThreadIndexError,
)
from threadindex.indexing import (
    AsyncioScheduler,
    BillingPolicy,
    ConfigStore,
    DrainOutcome,
    DrainResult,
    DrainState,
    DrainTrigger,
    IndexingQueue,
    Scheduler,
    SqlConfigStore,
    per_parent_once,
)
from threadindex.router import StorageRouter
from threadindex.search.filters import (
    FilterExpression,
    and_,
    eq,
    gt,
    gte,
    in_,
    lt,
    lte,
    ne,
    not_in,
    or_,
)
from threadindex.search.protocols import EmbeddingGateway
from threadindex.search.providers.gateway import HttpEmbeddingGateway
from threadindex.search.stores.cloud import CloudIndex
from threadindex.search.stores.local import LocalVectorStore
from threadindex.search.types import EmbeddingHit, ImageRef, SimilarItem, StorageRecommendation
from threadindex.types import (
    BackendStats,
    IndexContext,
    IndexMode,
    IndexOptions,
    IndexResult,
    IndexStatus,
    ReindexResult,
    SearchResponse,
    SearchResult,
    StatusBreakdown,
)

__all__ = [
    "AsyncioScheduler",
    "BackendStats",
    "BillingPolicy",
    "CacheConfig",
    "CloudBackend",
    "CloudIndex",
    "ConfigStore",
    "ConfigurationError",
    "ContentEvent",
    "ContentNotFoundError",
    "ContentSource",
    "DrainOutcome",
    "DrainResult",
    "DrainState",
    "DrainTrigger",
    "EmbeddingGateway",
    "EmbeddingHit",
    "EventBus",
    "EventType",
    "FilterExpression",
    "GatewayError",
    "GatewayUnavailableError",
    "HttpEmbeddingGateway",
    "ImageRef",
    "IndexContext",
    "IndexMode",
    "IndexOptions",
    "IndexResult",
    "IndexStatus",
    "IndexedStatusMarker",
    "IndexingConfig",
    "IndexingQueue",
    "InvalidResponseError",
    "LocalBackend",
    "LocalVectorStore",
    "LockContentionError",
    "MemberRecord",
    "NotEligibleError",
    "ParentRecord",
    "PersistenceError",
    "QueueConfig",
    "QuotaExceededError",
    "ReindexResult",
    "Scheduler",
    "SearchResponse",
    "SearchResult",
    "SimilarItem",
    "SqlConfigStore",
    "StatusBreakdown",
    "StorageRecommendation",
    "StorageRouter",
    "ThreadIndexConfig",
    "ThreadIndexError",
    "VectorBackend",
    "__version__",
    "and_",
    "eq",
    "gt",
    "gte",
    "in_",
    "lt",
    "lte",
    "ne",
    "not_in",
    "or_",
    "per_parent_once",
]
