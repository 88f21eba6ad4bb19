"""Keyed single-flight for coroutines.

At most one call per key is in flight.  Callers arriving while it runs
await the same task and receive its result (or its exception).
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    def __init__(self) -> None:
        self._calls: dict[str, asyncio.Task[T]] = {}

    def in_flight(self, key: str) -> bool:
        task = self._calls.get(key)
        return task is not None and not task.done()

    def start(self, key: str, fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """Return the running task for *key*, starting ``fn()`` if there is none.

        Must be called from inside a running event loop.
        """
        # No await between the lookup and the insert, so two callers on
        # the same loop can never both start a task.
        task = self._calls.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(fn())
            self._calls[key] = task
            task.add_done_callback(lambda t, key=key: self._release(key, t))
        return task

    async def do(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` for *key*, or join the call already running."""
        # shield: one waiter being cancelled must not cancel the others
        return await asyncio.shield(self.start(key, fn))

    def forget(self, key: str) -> None:
        """Detach the in-flight call for *key*; the next ``do`` starts fresh.

        The detached task keeps running and its waiters still get its
        result.
        """
        self._calls.pop(key, None)

    def _release(self, key: str, task: asyncio.Task[T]) -> None:
        if self._calls.get(key) is task:
            del self._calls[key]
        if not task.cancelled():
            # mark the exception retrieved; waiters already re-raised it
            task.exception()
