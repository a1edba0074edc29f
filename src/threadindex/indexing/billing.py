"""Billing policies — how many parent units each embedding chunk charges.

The embedding service bills per parent, not per member.  A batch indexing
run is split into chunks; the policy decides which chunk carries which
parent's charge so that a parent is never billed twice in one run.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

BillingPolicy = Callable[[int, Sequence[int], frozenset[int]], int]
"""``(chunk_index, chunk_parent_ids, already_billed) -> units to charge``."""


def per_parent_once(
    chunk_index: int,
    chunk_parent_ids: Sequence[int],
    already_billed: frozenset[int],
) -> int:
    """Charge each parent in the first chunk that introduces it."""
    return len(set(chunk_parent_ids) - already_billed)


def unbilled(
    chunk_index: int,
    chunk_parent_ids: Sequence[int],
    already_billed: frozenset[int],
) -> int:
    """Charge nothing (unmetered gateways)."""
    return 0


class BillingRun:
    """Tracks which parents one indexing run has already charged."""

    def __init__(
        self,
        policy: BillingPolicy = per_parent_once,
        already_billed: Iterable[int] = (),
    ) -> None:
        self._policy = policy
        self._billed: set[int] = set(already_billed)

    def units_for(self, chunk_index: int, chunk_parent_ids: Sequence[int]) -> int:
        """Return the units to send with chunk *chunk_index* and record them."""
        units = self._policy(chunk_index, chunk_parent_ids, frozenset(self._billed))
        self._billed.update(chunk_parent_ids)
        return units

    @property
    def billed(self) -> frozenset[int]:
        """Parents charged so far in this run."""
        return frozenset(self._billed)
