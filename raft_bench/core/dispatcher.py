"""Open-loop fan-out of work items to a fixed worker pool."""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from .stats import StatsCollector
from .types import WorkItem

logger = logging.getLogger(__name__)


class Dispatcher:
    """Bounded queue between one producer and ``parallel`` workers.

    The queue holds at most one item per worker, so the producer only
    suspends when every worker already has a next item waiting. Replies are
    never awaited here: progress counts submitted requests, not completed
    ones.
    """

    def __init__(self, parallel: int, stats: Optional[StatsCollector] = None,
                 progress: Optional[Callable[[int], None]] = None):
        self.parallel = parallel
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=parallel)
        self.stats = stats
        self.progress = progress
        self.submitted = 0
        self.closed = False

    async def submit(self, item: WorkItem) -> None:
        await self.queue.put(item)
        self.submitted += 1
        if self.stats is not None:
            self.stats.mark_submission()
        if self.progress is not None:
            self.progress(1)

    async def close(self) -> None:
        """Signal that no more items will be produced; one sentinel per worker."""
        if self.closed:
            return
        self.closed = True
        for _ in range(self.parallel):
            await self.queue.put(None)

    async def produce(self, items: Iterable[WorkItem]) -> int:
        for item in items:
            await self.submit(item)
        logger.debug(f"Dispatcher submitted {self.submitted} items")
        await self.close()
        return self.submitted
