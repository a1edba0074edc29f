"""Exception hierarchy for threadindex."""

from __future__ import annotations


class ThreadIndexError(Exception):
    """Base exception for all threadindex errors."""


class NotEligibleError(ThreadIndexError):
    """Raised when a parent is excluded by policy (private or unapproved).

    This is a terminal outcome, never retried and never counted as a failure.
    """

    def __init__(self, parent_id: int, reason: str = "not eligible") -> None:
        self.parent_id = parent_id
        self.reason = reason
        super().__init__(f"Parent {parent_id} is {reason}")


class ContentNotFoundError(ThreadIndexError):
    """Raised when a parent or member record does not exist in the content source."""


class QuotaExceededError(ThreadIndexError):
    """Raised when the embedding service reports exhausted credits.

    Halts the remaining batch work and surfaces to the caller.
    """

    def __init__(
        self,
        message: str = "Embedding quota exceeded",
        *,
        credits_remaining: int = 0,
    ) -> None:
        self.credits_remaining = credits_remaining
        super().__init__(message)


class GatewayError(ThreadIndexError):
    """Raised on a network or remote failure talking to the embedding service."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class GatewayUnavailableError(GatewayError):
    """Raised when the embedding service is unreachable, timing out, or in maintenance."""


class InvalidResponseError(GatewayError):
    """Raised when the embedding service returns a malformed payload."""


class LockContentionError(ThreadIndexError):
    """Raised when a drain could not acquire its lock within the bounded wait."""


class PersistenceError(ThreadIndexError):
    """Raised when the local store is unavailable. Never retried internally."""


class ConfigurationError(ThreadIndexError):
    """Raised for invalid configuration values or unknown storage modes."""
