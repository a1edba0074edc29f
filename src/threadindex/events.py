"""EventBus and event types for keeping the index in step with content changes."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable

    from threadindex.types import IndexContext

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Host content changes that affect the index."""

    CONTENT_CREATED = "content_created"
    CONTENT_CHANGED = "content_changed"
    CONTENT_DELETED = "content_deleted"
    PARENT_DELETED = "parent_deleted"


@dataclass(frozen=True, slots=True)
class ContentEvent:
    """Immutable record of a content mutation.

    Attributes:
        event_type: The kind of mutation that occurred.
        ctx: Tenant and partition the content lives in.
        parent_id: Affected parent.
        content_id: Affected member, when the event concerns one.
    """

    event_type: EventType
    ctx: IndexContext
    parent_id: int
    content_id: int | None = None


class EventBus:
    """Dispatches content events to registered handlers.

    A handler is either global or scoped to one tenant; scoped handlers
    only see events whose context carries that tenant.  Handlers run
    sequentially in registration order.  A failing handler is logged and
    counted, never propagated: the index stays stale until the next sweep
    and the host's write still succeeds.
    """

    def __init__(self) -> None:
        self._handlers: dict[EventType, list[_Subscription]] = {et: [] for et in EventType}

    def register(
        self,
        event_type: EventType,
        handler: Callable[..., Any],
        *,
        tenant_id: str | None = None,
    ) -> None:
        """Subscribe *handler* to *event_type*, optionally for one tenant only."""
        self._handlers[event_type].append(_Subscription(handler, tenant_id))

    def unregister(
        self,
        event_type: EventType,
        handler: Callable[..., Any],
        *,
        tenant_id: str | None = None,
    ) -> bool:
        """Drop the first subscription matching *handler* and scope. True if found."""
        subs = self._handlers[event_type]
        for i, sub in enumerate(subs):
            if sub.handler == handler and sub.tenant_id == tenant_id:
                del subs[i]
                return True
        return False

    async def emit(self, event: ContentEvent) -> int:
        """Dispatch *event* to every matching handler.  Returns the failure count."""
        failures = 0
        for sub in list(self._handlers[event.event_type]):
            if sub.tenant_id is not None and sub.tenant_id != event.ctx.tenant_id:
                continue
            try:
                await sub.handler(event)
            except Exception:
                failures += 1
                logger.warning(
                    "Handler %r failed for %s on %s parent %d",
                    sub.handler,
                    event.event_type.value,
                    event.ctx.key,
                    event.parent_id,
                    exc_info=True,
                )
        return failures

    @property
    def handler_count(self) -> int:
        """Total subscriptions across all event types and scopes."""
        return sum(len(subs) for subs in self._handlers.values())

    def clear(self, tenant_id: str | None = None) -> None:
        """Remove every subscription, or only those scoped to *tenant_id*."""
        for subs in self._handlers.values():
            subs[:] = [] if tenant_id is None else [s for s in subs if s.tenant_id != tenant_id]


@dataclass(frozen=True, slots=True)
class _Subscription:
    handler: Callable[..., Any]
    tenant_id: str | None = None
