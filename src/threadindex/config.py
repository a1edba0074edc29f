"""Configuration for the vector store, indexing queue, and content preparation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

from threadindex.exceptions import ConfigurationError

_ENV_PREFIX = "THREADINDEX_"


@dataclass(frozen=True, slots=True)
class CacheConfig:
    """Similarity cache settings."""

    ttl_seconds: int = 3600
    """How long a cached similar-items list stays valid."""

    max_similar: int = 20
    """Maximum number of ranked entries cached per source."""


@dataclass(frozen=True, slots=True)
class QueueConfig:
    """Indexing queue and drain pacing.

    All delays are in seconds.  The contention values are tunable rather
    than a fixed contract.
    """

    batch_size: int = 20
    """Parent ids consumed by one drain step."""

    coalesce_delay: float = 5.0
    """Delay before the first drain after an enqueue, so bursts coalesce."""

    auto_index_delay: float = 30.0
    """Coalescing delay used for content-change hooks."""

    drain_interval: float = 30.0
    """Delay before the next drain step when entries remain."""

    contention_backoff: float = 60.0
    """Delay before retrying when a fast-path run holds the lock."""

    lock_ttl: float = 300.0
    """Lifetime of the drain lock, so a crashed holder cannot block forever."""

    lock_wait: float = 2.0
    """Bounded wait for the lock before giving up and rescheduling."""

    lock_poll_interval: float = 0.1
    """Sleep between lock acquisition attempts."""

    sweep_limit: int = 500
    """Maximum unindexed parents re-discovered by one pending sweep."""


@dataclass(frozen=True, slots=True)
class IndexingConfig:
    """Embedding and content preparation settings."""

    model_name: str = "amazon.titan-embed-text-v2"
    """Model recorded by a standalone store; a router records its gateway's model."""

    max_content_chars: int = 45_000
    """Prepared content is truncated to this many characters."""

    preview_chars: int = 510
    """Length of the plain-text preview stored next to each vector."""

    include_images: bool = True
    """Route image-bearing members through the multimodal per-item call."""

    auto_index: bool = True
    """Re-index parents automatically from content-change hooks."""

    cloud_chunk_size: int = 512
    """Chunk size requested from the cloud ingest endpoint."""

    cloud_overlap_percent: int = 20
    """Chunk overlap requested from the cloud ingest endpoint."""

    excellent_max_records: int = 10_000
    """Corpus size below which local storage is an excellent fit."""

    performance_threshold: int = 50_000
    """Corpus size below which local storage is still a good fit."""

    warning_max_records: int = 100_000
    """Corpus size past which local storage is not recommended."""


@dataclass(frozen=True, slots=True)
class ThreadIndexConfig:
    """Top-level configuration bundle passed to the router."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    indexing: IndexingConfig = field(default_factory=IndexingConfig)

    def __post_init__(self) -> None:
        if self.queue.batch_size < 1:
            msg = f"queue.batch_size must be positive, got {self.queue.batch_size}"
            raise ConfigurationError(msg)
        if self.cache.max_similar < 1:
            msg = f"cache.max_similar must be positive, got {self.cache.max_similar}"
            raise ConfigurationError(msg)
        if self.indexing.max_content_chars < 1:
            msg = (
                "indexing.max_content_chars must be positive, "
                f"got {self.indexing.max_content_chars}"
            )
            raise ConfigurationError(msg)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ThreadIndexConfig:
        """Build a config from ``THREADINDEX_<SECTION>_<FIELD>`` variables.

        For example ``THREADINDEX_QUEUE_BATCH_SIZE=50`` overrides
        ``queue.batch_size``.  Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        sections: dict[str, Any] = {}
        for name, section in (
            ("cache", CacheConfig()),
            ("queue", QueueConfig()),
            ("indexing", IndexingConfig()),
        ):
            overrides: dict[str, Any] = {}
            for f in fields(section):
                key = f"{_ENV_PREFIX}{name.upper()}_{f.name.upper()}"
                if key in env:
                    overrides[f.name] = _coerce(key, env[key], getattr(section, f.name))
            sections[name] = replace(section, **overrides)
        return cls(**sections)


def _coerce(key: str, raw: str, default: Any) -> Any:
    """Convert an environment string to the type of *default*."""
    try:
        if isinstance(default, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(default, int):
            return int(raw)
        if isinstance(default, float):
            return float(raw)
    except ValueError as exc:
        msg = f"Invalid value for {key}: {raw!r}"
        raise ConfigurationError(msg) from exc
    return raw
