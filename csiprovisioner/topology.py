"""
Topology information for provisioning and capacity publishing.

Two providers exist:
- LiveTopology follows Node and CSINode objects cluster-wide
- FixedTopology serves the single segment of the node a node-local
  instance runs on, without watching any node traffic

When the backend has no topology support no provider exists at all and
consumers treat that as "no topology constraints".
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from csiprovisioner.cache.informer import SharedInformer
from csiprovisioner.csi.capabilities import DriverIdentity
from csiprovisioner.csi.client import NodeInfo
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue, ShutDownError

logger = get_logger(__name__)

SegmentCallback = Callable[[List["Segment"], List["Segment"]], None]

_RESYNC_KEY = "segments"


@dataclass(frozen=True)
class SegmentEntry:
    key: str
    value: str

    def __str__(self) -> str:
        return f"{self.key}: {self.value}"


@dataclass(frozen=True)
class Segment:
    """
    Ordered key/value location constraints.

    Keys are unique within a segment.
    """
    entries: Tuple[SegmentEntry, ...] = ()

    def __post_init__(self):
        keys = [entry.key for entry in self.entries]
        if len(keys) != len(set(keys)):
            raise ValueError(f"duplicate keys in topology segment: {keys}")

    @classmethod
    def from_dict(cls, values: Dict[str, str]) -> "Segment":
        """Build a segment ordered by key."""
        return cls(tuple(SegmentEntry(k, values[k]) for k in sorted(values)))

    def to_dict(self) -> Dict[str, str]:
        return {entry.key: entry.value for entry in self.entries}

    def __len__(self) -> int:
        return len(self.entries)

    def __str__(self) -> str:
        return "{" + ", ".join(str(e) for e in self.entries) + "}"


class TopologyProvider(ABC):
    """Lookup of topology segments by node name."""

    @abstractmethod
    def lookup(self, node_name: str) -> Optional[Segment]:
        """Segment of a node, None if the node is unknown or incomplete."""

    @abstractmethod
    def list_segments(self) -> List[Segment]:
        """All distinct segments currently known."""

    @abstractmethod
    def add_callback(self, callback: SegmentCallback) -> None:
        """Be told about (added, removed) segments."""

    @abstractmethod
    def has_synced(self) -> bool:
        ...

    @abstractmethod
    async def run_worker(self, cancel: asyncio.Event) -> None:
        ...


class FixedTopology(TopologyProvider):
    """Constant segment captured at startup; never changes."""

    def __init__(self, segment: Segment):
        self.segment = segment

    def lookup(self, node_name: str) -> Optional[Segment]:
        return self.segment

    def list_segments(self) -> List[Segment]:
        return [self.segment]

    def add_callback(self, callback: SegmentCallback) -> None:
        # Nothing ever changes, but the consumer still learns the segment
        callback([self.segment], [])

    def has_synced(self) -> bool:
        return True

    async def run_worker(self, cancel: asyncio.Event) -> None:
        await cancel.wait()


class LiveTopology(TopologyProvider):
    """
    Segments derived from live Node and CSINode caches.

    A node's segment consists of the node labels whose keys the driver
    registered in the node's CSINode entry. Lookups re-read the caches,
    so label changes are visible immediately; the distinct segment list
    is maintained by a worker driven by informer events.
    """

    def __init__(
        self,
        driver_name: str,
        nodes: SharedInformer,
        csinodes: SharedInformer,
        queue: RateLimitingQueue,
    ):
        """
        Initialize live topology.

        Args:
            driver_name: Backend driver name as registered in CSINode objects
            nodes: Node informer
            csinodes: CSINode informer
            queue: Work queue for segment resyncs
        """
        self.driver_name = driver_name
        self.nodes = nodes
        self.csinodes = csinodes
        self.queue = queue

        self._node_lister = nodes.lister()
        self._csinode_lister = csinodes.lister()
        self._segments: List[Segment] = []
        self._callbacks: List[SegmentCallback] = []

        def enqueue(*_: Any) -> None:
            self.queue.add(_RESYNC_KEY)

        nodes.add_event_handler(on_add=enqueue, on_update=self._on_node_update, on_delete=enqueue)
        csinodes.add_event_handler(on_add=enqueue, on_update=enqueue, on_delete=enqueue)

    def _on_node_update(self, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        old_labels = (old.get("metadata") or {}).get("labels")
        new_labels = (new.get("metadata") or {}).get("labels")
        if old_labels != new_labels:
            self.queue.add(_RESYNC_KEY)

    def topology_keys(self, node_name: str) -> Optional[List[str]]:
        """Topology keys the driver registered on a node, None if not registered."""
        csinode = self._csinode_lister.get(node_name)
        if csinode is None:
            return None
        for driver in (csinode.get("spec") or {}).get("drivers") or []:
            if driver.get("name") == self.driver_name:
                return list(driver.get("topologyKeys") or [])
        return None

    def lookup(self, node_name: str) -> Optional[Segment]:
        keys = self.topology_keys(node_name)
        if not keys:
            return None

        node = self._node_lister.get(node_name)
        if node is None:
            return None

        labels = (node.get("metadata") or {}).get("labels") or {}
        values = {}
        for key in keys:
            if key not in labels:
                # Driver not fully set up on this node yet
                return None
            values[key] = labels[key]
        return Segment.from_dict(values)

    def list_segments(self) -> List[Segment]:
        return list(self._segments)

    def add_callback(self, callback: SegmentCallback) -> None:
        self._callbacks.append(callback)

    def has_synced(self) -> bool:
        return self.nodes.has_synced() and self.csinodes.has_synced()

    def sync(self) -> None:
        """Recompute distinct segments and notify callbacks of changes."""
        seen = []
        for csinode in self._csinode_lister.list():
            segment = self.lookup((csinode.get("metadata") or {}).get("name", ""))
            if segment is not None and segment not in seen:
                seen.append(segment)

        added = [s for s in seen if s not in self._segments]
        removed = [s for s in self._segments if s not in seen]
        self._segments = seen

        if added or removed:
            logger.info(
                "Topology segments changed",
                added=[str(s) for s in added],
                removed=[str(s) for s in removed],
            )
            for callback in self._callbacks:
                callback(added, removed)

    async def run_worker(self, cancel: asyncio.Event) -> None:
        """
        Process resync requests until cancel is set.

        Args:
            cancel: Root cancellation signal
        """
        self.queue.add(_RESYNC_KEY)
        stopper = asyncio.create_task(_shut_down_on(cancel, self.queue))
        try:
            while True:
                try:
                    item = await self.queue.get()
                except ShutDownError:
                    return
                try:
                    self.sync()
                    self.queue.forget(item)
                except Exception as e:
                    logger.error("Topology sync failed", error=str(e))
                    self.queue.add_rate_limited(item)
                finally:
                    self.queue.done(item)
        finally:
            stopper.cancel()


async def _shut_down_on(cancel: asyncio.Event, queue: RateLimitingQueue) -> None:
    await cancel.wait()
    queue.shut_down()


def fixed_segment(node_info: NodeInfo) -> Segment:
    return Segment.from_dict(node_info.accessible_topology or {})


def build_topology_provider(
    identity: DriverIdentity,
    node_info: Optional[NodeInfo],
    nodes: Optional[SharedInformer],
    csinodes: Optional[SharedInformer],
    queue_factory: Callable[[str], RateLimitingQueue],
) -> Optional[TopologyProvider]:
    """
    Select the topology provider for this deployment.

    Args:
        identity: Probed driver identity
        node_info: Node info of a node-local deployment, None when cluster-wide
        nodes: Node informer (cluster-wide only)
        csinodes: CSINode informer (cluster-wide only)
        queue_factory: Creates a named work queue

    Returns:
        FixedTopology for node-local, LiveTopology for cluster-wide, or None
        when the backend does not support topology
    """
    if not identity.supports_topology():
        logger.info("CSI driver does not support topology, no topology constraints apply")
        return None

    if node_info is not None:
        segment = fixed_segment(node_info)
        logger.info("Using fixed topology segment", segment=str(segment))
        return FixedTopology(segment)

    if nodes is None or csinodes is None:
        raise ValueError("cluster-wide topology requires node and CSINode informers")

    return LiveTopology(identity.name, nodes, csinodes, queue_factory("csitopology"))
