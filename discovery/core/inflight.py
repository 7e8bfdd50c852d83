from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class InFlightRegistry:
    """
    At most one running task per key. A second caller for a key that is
    already in flight awaits the same task instead of starting another.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        task = self._tasks.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._tasks[key] = task
            task.add_done_callback(lambda t, k=key: self._discard(k, t))
        else:
            logger.debug("[inflight] joining pending request for %s", key)
        # shield: one caller being cancelled must not cancel the shared task
        return await asyncio.shield(task)

    def _discard(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]
