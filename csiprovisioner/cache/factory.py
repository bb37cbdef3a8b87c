"""
Informer factory: one shared informer per resource kind.
"""

import asyncio
import time
from typing import Dict, List, Optional

from csiprovisioner.cache.informer import SharedInformer
from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

NODES = "nodes"
CSINODES = "csinodes"
STORAGE_CLASSES = "storageclasses"
CLAIMS = "persistentvolumeclaims"
VOLUMES = "persistentvolumes"
VOLUME_ATTACHMENTS = "volumeattachments"
CAPACITIES = "csistoragecapacities"

SYNC_POLL_INTERVAL = 0.1


class InformerFactory:
    """
    Lazily creates informers and starts the ones requested so far.

    A factory may be scoped to one namespace and label selector so that
    its watches only cover a small object population.
    """

    def __init__(
        self,
        client: ClusterClient,
        resync_period: float = 0.0,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
        name: str = "default",
    ):
        """
        Initialize factory.

        Args:
            client: Cluster-state client providing list/watch sources
            resync_period: Resync period handed to every informer
            namespace: Restrict watches to this namespace
            label_selector: Restrict watches to objects with these labels
            name: Factory name for logging
        """
        self.client = client
        self.resync_period = resync_period
        self.namespace = namespace
        self.label_selector = dict(label_selector or {})
        self.name = name

        self._informers: Dict[str, SharedInformer] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def informer(self, kind: str) -> SharedInformer:
        """
        Get or create the shared informer for a kind.

        Args:
            kind: Resource kind (plural name)

        Returns:
            Shared informer
        """
        if kind not in self._informers:
            source = self.client.source(kind, self.namespace, self.label_selector or None)
            self._informers[kind] = SharedInformer(kind, source, self.resync_period)
            logger.debug("Created informer", factory=self.name, kind=kind)
        return self._informers[kind]

    def requested_kinds(self) -> List[str]:
        return sorted(self._informers)

    def start(self, cancel: asyncio.Event) -> None:
        """
        Start every informer requested so far that is not yet running.

        Args:
            cancel: Root cancellation signal
        """
        for kind, informer in self._informers.items():
            if kind in self._tasks:
                continue
            self._tasks[kind] = asyncio.create_task(
                informer.run(cancel),
                name=f"informer-{self.name}-{kind}",
            )
        logger.info("Started informers", factory=self.name, kinds=self.requested_kinds())

    async def wait_for_cache_sync(
        self,
        cancel: asyncio.Event,
        timeout: Optional[float] = None,
    ) -> Dict[str, bool]:
        """
        Wait until every started informer has synced.

        Returns early when cancel is set or the timeout expires.

        Args:
            cancel: Root cancellation signal
            timeout: Maximum wait in seconds, None waits indefinitely

        Returns:
            Sync flag per kind
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            result = {kind: informer.has_synced() for kind, informer in self._informers.items()}
            if all(result.values()) or cancel.is_set():
                return result
            if deadline is not None and time.monotonic() >= deadline:
                return result
            await asyncio.sleep(SYNC_POLL_INTERVAL)

    async def shutdown(self) -> None:
        """Wait for informer tasks to finish after cancellation."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
