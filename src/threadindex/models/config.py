"""ConfigEntry model — durable key/value rows for queues, locks, and mode flags."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime, Text
from sqlmodel import Field, SQLModel


class ConfigEntry(SQLModel, table=True):
    """A JSON-encoded value with an optimistic-concurrency version.

    ``expires_at`` is set for flag-style entries (locks, scheduled markers);
    an expired entry reads as absent.
    """

    __tablename__ = "threadindex_config"

    key: str = Field(primary_key=True)
    value_json: str = Field(default="null", sa_type=Text)  # type: ignore[invalid-argument-type]
    version: int = Field(default=1)
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
