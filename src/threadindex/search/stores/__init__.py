"""Vector stores — the local exact-scan store and the cloud index proxy."""

from threadindex.search.stores.cloud import CloudIndex
from threadindex.search.stores.local import LocalVectorStore

__all__ = [
    "CloudIndex",
    "LocalVectorStore",
]
