"""
Readiness gate: no controller sees a cache before it has fully synced.
"""

import asyncio
from typing import Dict, List, Optional, Protocol

from csiprovisioner.errors import CacheSyncError
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)


class CacheFactory(Protocol):
    name: str

    def start(self, cancel: asyncio.Event) -> None:
        ...

    async def wait_for_cache_sync(
        self, cancel: asyncio.Event, timeout: Optional[float] = None
    ) -> Dict[str, bool]:
        ...


class ReadinessGate:
    """
    Starts all registered caches and blocks until each has synced.

    Any cache failing to sync within the timeout, or cancellation while
    waiting, is fatal.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize gate.

        Args:
            timeout: Seconds to wait for all caches, None waits until cancelled
        """
        self.timeout = timeout
        self._factories: List[CacheFactory] = []

    def register(self, factory: Optional[CacheFactory]) -> None:
        if factory is not None:
            self._factories.append(factory)

    @property
    def factories(self) -> List[CacheFactory]:
        return list(self._factories)

    async def wait(self, cancel: asyncio.Event) -> None:
        """
        Start caches and wait for their initial sync.

        Args:
            cancel: Root cancellation signal

        Raises:
            CacheSyncError: If any cache has not synced
        """
        for factory in self._factories:
            factory.start(cancel)

        results = await asyncio.gather(
            *(f.wait_for_cache_sync(cancel, self.timeout) for f in self._factories)
        )

        barrier: Dict[str, bool] = {}
        for factory, result in zip(self._factories, results):
            for kind, synced in result.items():
                barrier[f"{factory.name}/{kind}"] = synced

        unsynced = sorted(name for name, synced in barrier.items() if not synced)
        if unsynced:
            logger.error("Failed to sync informers", unsynced=unsynced)
            raise CacheSyncError(f"Failed to sync informers: {', '.join(unsynced)}")

        if cancel.is_set():
            raise CacheSyncError("cancelled while waiting for cache sync")

        logger.info("All caches synced", caches=sorted(barrier))
