"""Deferred-job scheduling for queue drains."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


@runtime_checkable
class Scheduler(Protocol):
    """Host facility that runs a named hook after a delay.

    Delivery is at-least-once.  Jobs are identified by ``(hook, args)``.
    """

    async def schedule(self, delay: float, hook: str, args: tuple[Any, ...] = ()) -> bool:
        """Run *hook* with *args* after *delay* seconds.  False if already pending."""
        ...

    async def is_scheduled(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        """Return True if a job for ``(hook, args)`` is pending."""
        ...

    async def cancel(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        """Drop the pending job for ``(hook, args)``.  True if one was pending."""
        ...


class AsyncioScheduler:
    """In-process :class:`Scheduler` on the running event loop.

    Hooks are registered by name; a job for an unregistered hook is an
    error.  Failures inside a hook are logged, never propagated.
    """

    def __init__(self) -> None:
        self._hooks: dict[str, Callable[..., Awaitable[Any]]] = {}
        self._handles: dict[tuple[str, tuple[Any, ...]], asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[Any]] = set()

    def register(self, hook: str, fn: Callable[..., Awaitable[Any]]) -> None:
        """Bind *hook* to the coroutine function *fn*."""
        self._hooks[hook] = fn

    async def schedule(self, delay: float, hook: str, args: tuple[Any, ...] = ()) -> bool:
        if hook not in self._hooks:
            msg = f"No handler registered for hook {hook!r}"
            raise KeyError(msg)
        job = (hook, tuple(args))
        if job in self._handles:
            return False
        loop = asyncio.get_running_loop()
        self._handles[job] = loop.call_later(max(0.0, delay), self._fire, job)
        logger.debug("Scheduled %s%r in %.1fs", hook, job[1], delay)
        return True

    async def is_scheduled(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        return (hook, tuple(args)) in self._handles

    async def cancel(self, hook: str, args: tuple[Any, ...] = ()) -> bool:
        handle = self._handles.pop((hook, tuple(args)), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    @property
    def pending_count(self) -> int:
        """Jobs waiting for their delay to elapse."""
        return len(self._handles)

    async def shutdown(self) -> None:
        """Cancel pending jobs and wait for running ones to finish."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _fire(self, job: tuple[str, tuple[Any, ...]]) -> None:
        self._handles.pop(job, None)
        task = asyncio.ensure_future(self._run(job))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, job: tuple[str, tuple[Any, ...]]) -> None:
        hook, args = job
        try:
            await self._hooks[hook](*args)
        except Exception:
            logger.warning("Scheduled hook %s%r failed", hook, args, exc_info=True)
