"""
Worker-pool controller base.

A controller owns one rate-limited work queue drained by N workers. The
outcome of each item stays with that item:
- success forgets the item's backoff
- transient (and unexpected) errors requeue it with backoff
- permanent errors are recorded on the object and not retried
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Hashable, List

from csiprovisioner.errors import PermanentOperationalError
from csiprovisioner.metrics import WORKQUEUE_WORK_DURATION
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue, ShutDownError

logger = get_logger(__name__)


class QueueController(ABC):
    """Base class of all sub-controllers."""

    name = "controller"

    def __init__(self, queue: RateLimitingQueue):
        """
        Initialize controller.

        Args:
            queue: Work queue owned exclusively by this controller
        """
        self.queue = queue
        self._running = False

    @abstractmethod
    async def sync(self, key: Hashable) -> None:
        """Process one work item."""

    async def on_permanent_failure(self, key: Hashable, error: PermanentOperationalError) -> None:
        """Record a terminal failure; subclasses surface it on the object."""
        logger.error(
            "Giving up on item",
            controller=self.name,
            key=str(key),
            error=str(error),
        )

    def is_running(self) -> bool:
        return self._running

    async def run(self, cancel: asyncio.Event, threads: int) -> None:
        """
        Run workers until cancel is set.

        Args:
            cancel: Root cancellation signal
            threads: Number of parallel workers
        """
        self._running = True
        logger.info("Starting controller", controller=self.name, workers=threads)

        stopper = asyncio.create_task(self._shut_down_on(cancel))
        workers: List[asyncio.Task] = [
            asyncio.create_task(self._worker(), name=f"{self.name}-worker-{i}")
            for i in range(threads)
        ]
        try:
            await asyncio.gather(*workers)
        finally:
            stopper.cancel()
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            self._running = False
            logger.info("Controller stopped", controller=self.name)

    async def _shut_down_on(self, cancel: asyncio.Event) -> None:
        await cancel.wait()
        self.queue.shut_down()

    async def _worker(self) -> None:
        while True:
            try:
                key = await self.queue.get()
            except ShutDownError:
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: Hashable) -> None:
        """
        Process one item and apply the retry policy.

        Args:
            key: Work item
        """
        start = time.monotonic()
        try:
            await self.sync(key)
        except asyncio.CancelledError:
            raise
        except PermanentOperationalError as e:
            self.queue.forget(key)
            try:
                await self.on_permanent_failure(key, e)
            except Exception as report_error:
                logger.warning(
                    "Failed to record permanent failure",
                    controller=self.name,
                    key=str(key),
                    error=str(report_error),
                )
        except Exception as e:
            logger.warning(
                "Item failed, requeueing",
                controller=self.name,
                key=str(key),
                requeues=self.queue.num_requeues(key),
                error=str(e),
            )
            self.queue.add_rate_limited(key)
        else:
            self.queue.forget(key)
        finally:
            WORKQUEUE_WORK_DURATION.labels(name=self.queue.name).observe(time.monotonic() - start)
