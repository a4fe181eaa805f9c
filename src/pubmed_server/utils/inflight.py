"""
In-flight request registry.

Collapses concurrent identical requests into one upstream call: the first
caller for a fingerprint starts the producer as a task, later callers await
that same task.  The entry is dropped as soon as the task settles, so this is
not a cache - it holds nothing once the call is done.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)


class InFlightRegistry:
    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._pending

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def dedupe(self, key: str, producer: Callable[[], Awaitable[Any]]) -> Any:
        """Return the result of ``producer()``, shared by all concurrent callers of ``key``.

        Waiters go through ``asyncio.shield`` so a caller that stops waiting
        never cancels the shared upstream call.
        """
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(producer())
            self._pending[key] = task
            task.add_done_callback(lambda t: self._settle(key, t))
        else:
            logger.debug("Joining in-flight request %s", key[:12])
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        # Mark the exception retrieved; every waiter still receives it.
        if not task.cancelled():
            task.exception()
