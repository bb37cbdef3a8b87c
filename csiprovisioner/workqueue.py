"""
Rate-limited work queue.

Each controller owns one queue drained by N workers. Failed items are
re-added with exponential backoff per key, starting at a configured
minimum and capped at a configured maximum.
"""

import asyncio
from typing import Dict, Hashable, List, Optional, Set

from csiprovisioner.metrics import WORKQUEUE_ADDS, WORKQUEUE_DEPTH, WORKQUEUE_RETRIES
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)


class ShutDownError(Exception):
    """Raised by get() once the queue is shut down and drained."""
    pass


class ItemExponentialFailureRateLimiter:
    """
    Per-item exponential backoff.

    Formula: min(base * 2^failures, max)
    """

    def __init__(self, base_delay: float, max_delay: float):
        """
        Initialize rate limiter.

        Args:
            base_delay: Delay after the first failure, in seconds
            max_delay: Upper bound for any delay, in seconds
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: Dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        """
        Record a failure and get the delay before the next attempt.

        Args:
            item: Failing work item

        Returns:
            Delay in seconds
        """
        exponent = self._failures.get(item, 0)
        self._failures[item] = exponent + 1

        # Avoid float overflow for long-failing items
        if exponent > 62:
            return self.max_delay

        return min(self.base_delay * (2 ** exponent), self.max_delay)

    def num_requeues(self, item: Hashable) -> int:
        return self._failures.get(item, 0)

    def forget(self, item: Hashable) -> None:
        """Reset the backoff of an item."""
        self._failures.pop(item, None)


class RateLimitingQueue:
    """
    FIFO work queue with deduplication and delayed re-adds.

    Guarantees:
    - an item is queued at most once at a time
    - an item is never processed by two workers concurrently; re-adds
      during processing are deferred until done() is called
    """

    def __init__(
        self,
        rate_limiter: ItemExponentialFailureRateLimiter,
        name: str = "",
    ):
        """
        Initialize queue.

        Args:
            rate_limiter: Rate limiter, may be shared between queues
            name: Queue name used for metrics
        """
        self.rate_limiter = rate_limiter
        self.name = name

        self._queue: List[Hashable] = []
        self._dirty: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._wakeup = asyncio.Event()
        self._shutting_down = False
        self._delayed: Dict[Hashable, asyncio.TimerHandle] = {}

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, item: Hashable) -> None:
        """Queue an item unless it is already queued."""
        if self._shutting_down:
            return
        if item in self._dirty:
            return

        WORKQUEUE_ADDS.labels(name=self.name).inc()
        self._dirty.add(item)
        if item in self._processing:
            return

        self._queue.append(item)
        WORKQUEUE_DEPTH.labels(name=self.name).set(len(self._queue))
        self._notify()

    def add_after(self, item: Hashable, delay: float) -> None:
        """
        Queue an item after a delay.

        Args:
            item: Work item
            delay: Seconds to wait, <= 0 adds immediately
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        existing = self._delayed.get(item)
        if existing is not None:
            # Keep the earlier deadline
            if existing.when() <= loop.time() + delay:
                return
            existing.cancel()

        self._delayed[item] = loop.call_later(delay, self._fire_delayed, item)

    def _fire_delayed(self, item: Hashable) -> None:
        self._delayed.pop(item, None)
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        """Queue an item after its backoff delay."""
        WORKQUEUE_RETRIES.labels(name=self.name).inc()
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    async def get(self) -> Hashable:
        """
        Wait for the next item.

        Returns:
            Work item, which must be passed to done() afterwards

        Raises:
            ShutDownError: If the queue is shut down
        """
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()
        if not self._queue:
            raise ShutDownError(self.name)

        item = self._queue.pop(0)
        WORKQUEUE_DEPTH.labels(name=self.name).set(len(self._queue))
        self._processing.add(item)
        self._dirty.discard(item)
        return item

    def done(self, item: Hashable) -> None:
        """Mark processing of an item as finished."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            WORKQUEUE_DEPTH.labels(name=self.name).set(len(self._queue))
            self._notify()

    def shut_down(self) -> None:
        """Stop accepting items and wake all waiting workers."""
        self._shutting_down = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()
        # Workers exit without draining pending items
        self._queue.clear()
        self._dirty.clear()
        self._notify()
        logger.debug("Work queue shut down", queue=self.name)

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def _notify(self) -> None:
        # Wakes every waiting worker; each re-checks the queue
        self._wakeup.set()


def new_rate_limiter(
    base_delay: float,
    max_delay: float,
) -> ItemExponentialFailureRateLimiter:
    return ItemExponentialFailureRateLimiter(base_delay, max_delay)


def new_named_queue(
    rate_limiter: Optional[ItemExponentialFailureRateLimiter],
    name: str,
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
) -> RateLimitingQueue:
    """
    Create a queue, with its own rate limiter unless one is given.
    """
    return RateLimitingQueue(rate_limiter or new_rate_limiter(base_delay, max_delay), name)
