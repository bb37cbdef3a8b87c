"""
Capacity publishing controller.

Publishes one CSIStorageCapacity object per (storage class, topology
segment) pair in the sidecar's own namespace, refreshed periodically and
after every provision/delete. Objects are labelled with the driver name
and a managed-by identity so that several instances (one per node in
node-local deployments) never touch each other's objects.
"""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Dict, Hashable, List, Optional

from prometheus_client import Gauge

from csiprovisioner.cache.informer import SharedInformer, object_key
from csiprovisioner.controllers.base import QueueController
from csiprovisioner.controllers.provisioning import Provisioner
from csiprovisioner.csi.client import DriverClient
from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.metrics import COMPONENT_REGISTRY
from csiprovisioner.owner import OwnerReference
from csiprovisioner.topology import Segment, TopologyProvider
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue

logger = get_logger(__name__)

DRIVER_NAME_LABEL = "csi.storage.k8s.io/drivername"
MANAGED_BY_LABEL = "csi.storage.k8s.io/managed-by"

MANAGED_BY_ID = "external-provisioner"

CAPACITY_DESIRED = Gauge(
    "csistoragecapacities_desired_current",
    "Number of CSIStorageCapacity objects that are supposed to be managed automatically.",
    registry=COMPONENT_REGISTRY,
)
CAPACITY_OBSOLETE = Gauge(
    "csistoragecapacities_obsolete",
    "Number of CSIStorageCapacity objects that exist and will be deleted automatically.",
    registry=COMPONENT_REGISTRY,
)


def managed_by_id(node_name: Optional[str] = None) -> str:
    """Managed-by identity, unique per node in node-local deployments."""
    if node_name:
        return f"{MANAGED_BY_ID}-{node_name}"
    return MANAGED_BY_ID


@dataclass(frozen=True)
class CapacityWorkItem:
    """
    One published capacity value.

    Attributes:
        storage_class_name: Storage class the capacity applies to
        segment: Topology segment, None when no topology constraints apply
    """
    storage_class_name: str
    segment: Optional[Segment] = None


@dataclass(frozen=True)
class ObsoleteItem:
    """A published object that no longer has a work item."""
    namespace: str
    name: str


class CapacityController(QueueController):
    """Keeps CSIStorageCapacity objects in line with backend capacity."""

    name = "capacity"

    def __init__(
        self,
        driver: DriverClient,
        driver_name: str,
        cluster: ClusterClient,
        queue: RateLimitingQueue,
        owner: Optional[OwnerReference],
        managed_by: str,
        namespace: str,
        topology: Optional[TopologyProvider],
        storage_classes: SharedInformer,
        capacities: SharedInformer,
        poll_interval: float,
        immediate_binding: bool,
        operation_timeout: float = 10.0,
    ):
        """
        Initialize capacity controller.

        Args:
            driver: Backend client used for GetCapacity
            driver_name: Backend driver name
            cluster: Cluster-state client
            queue: Work queue owned by this controller
            owner: Owner of published objects, None for no owner
            managed_by: Value of the managed-by label
            namespace: Namespace objects are published in
            topology: Topology provider, None when no constraints apply
            storage_classes: Storage class informer
            capacities: Informer for published objects (namespaced, label-filtered)
            poll_interval: Seconds between full refreshes
            immediate_binding: Also publish for classes with immediate binding
            operation_timeout: Timeout of each GetCapacity call
        """
        super().__init__(queue)
        self.driver = driver
        self.driver_name = driver_name
        self.cluster = cluster
        self.owner = owner
        self.managed_by = managed_by
        self.namespace = namespace
        self.topology = topology
        self.poll_interval = poll_interval
        self.immediate_binding = immediate_binding
        self.operation_timeout = operation_timeout

        self.storage_classes = storage_classes.lister()
        self.capacities = capacities.lister()

        # Work item -> published object (None until created)
        self._items: Dict[CapacityWorkItem, Optional[Dict[str, Any]]] = {}
        self._segments: List[Optional[Segment]] = [] if topology is not None else [None]
        self._started = False

        storage_classes.add_event_handler(
            on_add=self._on_storage_class_changed,
            on_update=lambda _, new: self._on_storage_class_changed(new),
            on_delete=self._on_storage_class_deleted,
        )
        capacities.add_event_handler(
            on_add=self._on_capacity_changed,
            on_update=lambda _, new: self._on_capacity_changed(new),
            on_delete=self._on_capacity_deleted,
        )
        if topology is not None:
            topology.add_callback(self._on_topology_changed)

    def labels(self) -> Dict[str, str]:
        return {DRIVER_NAME_LABEL: self.driver_name, MANAGED_BY_LABEL: self.managed_by}

    # Event handlers

    def _relevant_class(self, storage_class: Dict[str, Any]) -> bool:
        if storage_class.get("provisioner") != self.driver_name:
            return False
        if storage_class.get("volumeBindingMode") == "WaitForFirstConsumer":
            return True
        return self.immediate_binding

    def _on_storage_class_changed(self, storage_class: Dict[str, Any]) -> None:
        name = (storage_class.get("metadata") or {}).get("name", "")
        if not self._relevant_class(storage_class):
            self._on_storage_class_deleted(storage_class)
            return
        for segment in self._segments:
            self._add_item(CapacityWorkItem(name, segment))

    def _on_storage_class_deleted(self, storage_class: Dict[str, Any]) -> None:
        name = (storage_class.get("metadata") or {}).get("name", "")
        for item in [i for i in self._items if i.storage_class_name == name]:
            self._remove_item(item)

    def _on_topology_changed(self, added: List[Segment], removed: List[Segment]) -> None:
        for segment in removed:
            if segment in self._segments:
                self._segments.remove(segment)
            for item in [i for i in self._items if i.segment == segment]:
                self._remove_item(item)

        relevant = [sc for sc in self.storage_classes.list() if self._relevant_class(sc)]
        for segment in added:
            if segment not in self._segments:
                self._segments.append(segment)
            for storage_class in relevant:
                name = (storage_class.get("metadata") or {}).get("name", "")
                self._add_item(CapacityWorkItem(name, segment))

    def _on_capacity_changed(self, capacity: Dict[str, Any]) -> None:
        if not self._started:
            # Existing objects are matched up once run() starts
            return
        item = self._item_for(capacity)
        if item is not None and item in self._items:
            current = self._items[item]
            if current is None or object_key(current) == object_key(capacity):
                self._items[item] = capacity
                return
        # Orphaned or duplicate object
        self.queue.add(self._obsolete_key(capacity))

    def _on_capacity_deleted(self, capacity: Dict[str, Any]) -> None:
        if not self._started:
            return
        item = self._item_for(capacity)
        if item is not None and item in self._items:
            current = self._items[item]
            if current is not None and object_key(current) == object_key(capacity):
                self._items[item] = None
                self.queue.add(item)

    def _item_for(self, capacity: Dict[str, Any]) -> Optional[CapacityWorkItem]:
        class_name = capacity.get("storageClassName")
        if not class_name:
            return None
        match_labels = (capacity.get("nodeTopology") or {}).get("matchLabels")
        for item in self._items:
            if item.storage_class_name != class_name:
                continue
            expected = item.segment.to_dict() if item.segment is not None else None
            if (match_labels or None) == (expected or None):
                return item
        return None

    def _obsolete_key(self, capacity: Dict[str, Any]) -> ObsoleteItem:
        metadata = capacity.get("metadata") or {}
        return ObsoleteItem(metadata.get("namespace", self.namespace), metadata.get("name", ""))

    def _add_item(self, item: CapacityWorkItem) -> None:
        if item in self._items:
            return
        self._items[item] = None
        # Adopt an existing object for this item
        for capacity in self.capacities.list():
            if self._item_for(capacity) == item:
                self._items[item] = capacity
                break
        CAPACITY_DESIRED.set(len(self._items))
        self.queue.add(item)

    def _remove_item(self, item: CapacityWorkItem) -> None:
        capacity = self._items.pop(item, None)
        CAPACITY_DESIRED.set(len(self._items))
        if capacity is not None:
            self.queue.add(self._obsolete_key(capacity))

    # Refresh

    def refresh(self, storage_class_name: Optional[str] = None) -> None:
        """
        Schedule a refresh of published capacity.

        Args:
            storage_class_name: Only refresh this class, None refreshes all
        """
        for item in list(self._items):
            if storage_class_name is None or item.storage_class_name == storage_class_name:
                self.queue.add(item)

    async def _poll_loop(self, cancel: asyncio.Event) -> None:
        while not cancel.is_set():
            try:
                await asyncio.wait_for(cancel.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                logger.debug("Periodic capacity refresh", items=len(self._items))
                self.refresh()

    async def run(self, cancel: asyncio.Event, threads: int) -> None:
        # Pick up classes and segments already present in the synced caches
        for storage_class in self.storage_classes.list():
            self._on_storage_class_changed(storage_class)
        self._started = True
        for capacity in self.capacities.list():
            self._on_capacity_changed(capacity)

        poller = asyncio.create_task(self._poll_loop(cancel))
        try:
            await super().run(cancel, threads)
        finally:
            poller.cancel()
            await asyncio.gather(poller, return_exceptions=True)

    # Work

    async def sync(self, key: Hashable) -> None:
        if isinstance(key, ObsoleteItem):
            await self._delete_obsolete(key)
        else:
            await self._sync_item(key)

    async def _sync_item(self, item: CapacityWorkItem) -> None:
        if item not in self._items:
            return

        storage_class = self.storage_classes.get(item.storage_class_name)
        if storage_class is None:
            return

        topology = item.segment.to_dict() if item.segment is not None else None
        capacity_bytes = await self.driver.get_capacity(
            dict(storage_class.get("parameters") or {}),
            topology,
            self.operation_timeout,
        )
        quantity = str(capacity_bytes)

        # The item may have been removed while the call was in flight
        if item not in self._items:
            return

        current = self._items[item]
        if current is None:
            body = self._new_object(item, quantity)
            created = await self.cluster.create("csistoragecapacities", body, namespace=self.namespace)
            self._items[item] = created
            logger.info(
                "Created CSIStorageCapacity",
                name=(created.get("metadata") or {}).get("name"),
                storage_class=item.storage_class_name,
                segment=str(item.segment) if item.segment is not None else None,
                capacity=quantity,
            )
            return

        if current.get("capacity") == quantity:
            return

        updated = copy.deepcopy(current)
        updated["capacity"] = quantity
        metadata = updated.get("metadata") or {}
        self._items[item] = await self.cluster.replace(
            "csistoragecapacities", metadata.get("name", ""), updated, namespace=self.namespace
        )
        logger.debug(
            "Updated CSIStorageCapacity",
            name=metadata.get("name"),
            capacity=quantity,
        )

    def _new_object(self, item: CapacityWorkItem, quantity: str) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {
            "generateName": "csisc-",
            "namespace": self.namespace,
            "labels": self.labels(),
        }
        if self.owner is not None:
            metadata["ownerReferences"] = [self.owner.to_dict()]

        body: Dict[str, Any] = {
            "apiVersion": "storage.k8s.io/v1",
            "kind": "CSIStorageCapacity",
            "metadata": metadata,
            "storageClassName": item.storage_class_name,
            "capacity": quantity,
        }
        if item.segment is not None:
            body["nodeTopology"] = {"matchLabels": item.segment.to_dict()}
        return body

    async def _delete_obsolete(self, key: ObsoleteItem) -> None:
        for item, capacity in self._items.items():
            if capacity is not None and object_key(capacity) == f"{key.namespace}/{key.name}":
                # Adopted again in the meantime
                return

        obsolete = sum(
            1
            for capacity in self.capacities.list()
            if self._item_for(capacity) is None
        )
        CAPACITY_OBSOLETE.set(obsolete)

        await self.cluster.delete("csistoragecapacities", key.name, namespace=key.namespace)
        logger.info("Deleted obsolete CSIStorageCapacity", name=key.name)


class ProvisionWrapper(Provisioner):
    """Refreshes capacity after every provision and delete."""

    def __init__(self, provisioner: Provisioner, controller: CapacityController):
        self.provisioner = provisioner
        self.controller = controller

    def should_provision(self, claim: Dict[str, Any]) -> bool:
        return self.provisioner.should_provision(claim)

    def initial_delay(self, claim: Dict[str, Any]) -> float:
        return self.provisioner.initial_delay(claim)

    async def provision(self, claim: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            return await self.provisioner.provision(claim)
        finally:
            self.controller.refresh((claim.get("spec") or {}).get("storageClassName"))

    def should_delete(self, volume: Dict[str, Any]) -> bool:
        return self.provisioner.should_delete(volume)

    async def delete(self, volume: Dict[str, Any]) -> None:
        try:
            await self.provisioner.delete(volume)
        finally:
            self.controller.refresh((volume.get("spec") or {}).get("storageClassName"))

