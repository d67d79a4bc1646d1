"""Fire-and-forget background work."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable

from lorekeeper.llm import MissingCredentialError, ProviderExhaustedError

if TYPE_CHECKING:
    from lorekeeper.store import MemoryStore

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Runs coroutines on the current loop and logs their failures.

    A failed task never propagates to whoever submitted it.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()
        self.failures: list[tuple[str, BaseException]] = []

    def __len__(self) -> int:
        return len(self._tasks)

    def submit(self, name: str, coro: Awaitable) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        error = task.exception()
        if error is None:
            return
        self.failures.append((task.get_name(), error))
        if isinstance(error, MissingCredentialError):
            logger.info("Background task %s skipped: %s", task.get_name(), error)
        elif isinstance(error, ProviderExhaustedError):
            logger.warning("Background task %s gave up: %s", task.get_name(), error)
        else:
            logger.error(
                "Background task %s failed",
                task.get_name(),
                exc_info=(type(error), error, error.__traceback__),
            )

    async def drain(self) -> None:
        """Wait until no background work is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


def advance_turn_counter(store: MemoryStore, key: str, interval: int) -> bool:
    """Count one turn in a persisted counter.

    Returns:
        True when the new count is a multiple of interval
    """
    count = store.increment_counter(key)
    return interval > 0 and count % interval == 0
