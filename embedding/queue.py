"""
Keyed background queue for embedding refreshes.

At most one task is pending per key: a second ``enqueue`` for a key whose
task has not finished yet is a no-op, so a burst of card upserts in one turn
collapses into a single story-wide sweep. Tasks run under a shared semaphore
(one at a time by default) to respect upstream rate limits. Failures are
logged and dropped; the next write that re-enqueues the key retries.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Set

logger = logging.getLogger(__name__)

TaskFactory = Callable[[], Awaitable[Any]]


class EmbeddingQueue:
    def __init__(self, concurrency: int = 1):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._pending: Set[str] = set()
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_keys(self) -> Set[str]:
        return set(self._pending)

    def enqueue(self, key: str, task_factory: TaskFactory) -> bool:
        """Schedule ``task_factory()`` unless ``key`` is already pending."""
        if key in self._pending:
            logger.debug("Embedding task %s already pending; coalesced", key)
            return False
        self._pending.add(key)
        task = asyncio.get_running_loop().create_task(
            self._run(key, task_factory), name=f"embedding:{key}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, key: str, task_factory: TaskFactory) -> None:
        try:
            async with self._semaphore:
                await task_factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Embedding task %s failed", key)
        finally:
            self._pending.discard(key)

    async def run_inline(self, task_factory: TaskFactory) -> Any:
        """Run a task now, under the same concurrency limit, and return its result."""
        async with self._semaphore:
            return await task_factory()

    async def drain(self) -> None:
        """Wait until the queue is idle, including tasks enqueued while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
