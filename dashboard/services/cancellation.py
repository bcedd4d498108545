"""Cancellation scopes for in-flight requests.

Every request a synchronizer makes runs inside that synchronizer's
CancelScope. Cancelling the scope aborts whatever is still in flight, and
a result that arrives after cancellation is never handed back to the
caller: it raises RequestCancelled instead.
"""

import asyncio
import logging
from typing import Awaitable, Set, TypeVar

from errors import RequestCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelScope:
    """Cancellation token shared by all requests of one resource session."""

    def __init__(self, name: str = ""):
        self.name = name
        self._cancelled = False
        self._tasks: Set[asyncio.Task] = set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._tasks:
            logger.debug(f"[{self.name}] Cancelling {len(self._tasks)} in-flight request(s)")
        for task in list(self._tasks):
            task.cancel()

    def check(self) -> None:
        """Raise RequestCancelled if the scope has been cancelled."""
        if self._cancelled:
            raise RequestCancelled(self.name)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable` under this scope."""
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RequestCancelled(self.name)

        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        try:
            result = await task
        except (asyncio.CancelledError, Exception):
            # Errors from a torn-down scope are as stale as its results
            if self._cancelled:
                raise RequestCancelled(self.name) from None
            raise
        finally:
            self._tasks.discard(task)

        # Late response for a scope that was torn down while it was in flight
        if self._cancelled:
            raise RequestCancelled(self.name)
        return result
