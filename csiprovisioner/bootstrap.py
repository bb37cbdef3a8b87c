"""
Controller set assembly.

Turns the probed driver identity and the settings into the set of
controllers this instance runs, creating only the caches the backend's
capabilities make useful.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional

from csiprovisioner.cache.factory import (
    CAPACITIES,
    CLAIMS,
    CSINODES,
    NODES,
    STORAGE_CLASSES,
    VOLUME_ATTACHMENTS,
    VOLUMES,
    InformerFactory,
)
from csiprovisioner.cache.informer import Lister
from csiprovisioner.controllers.capacity import (
    DRIVER_NAME_LABEL,
    MANAGED_BY_LABEL,
    CapacityController,
    ProvisionWrapper,
    managed_by_id,
)
from csiprovisioner.controllers.cloning import CloningProtectionController
from csiprovisioner.controllers.provisioning import (
    CSIProvisioner,
    NodeDeployment,
    Provisioner,
    ProvisioningController,
)
from csiprovisioner.csi.capabilities import DriverIdentity
from csiprovisioner.csi.client import DriverClient, NodeInfo
from csiprovisioner.errors import FatalBootstrapError, FatalConfigurationError, ProvisionerError
from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.kube.events import EventRecorder
from csiprovisioner.owner import OwnerReference, OwnershipResolver
from csiprovisioner.readiness import ReadinessGate
from csiprovisioner.topology import TopologyProvider, build_topology_provider
from csiprovisioner.utils.config import ProvisionerSettings
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue, new_named_queue, new_rate_limiter

logger = get_logger(__name__)


@dataclass
class ControllerSet:
    """
    Controllers of one instance, ready to run once caches are synced.

    Optional members are None when the backend or the settings do not
    call for them.
    """
    settings: ProvisionerSettings
    identity: DriverIdentity
    gate: ReadinessGate
    provisioning: ProvisioningController
    topology: Optional[TopologyProvider] = None
    capacity: Optional[CapacityController] = None
    cloning: Optional[CloningProtectionController] = None
    volume_attachments: Optional[Lister] = None
    owner: Optional[OwnerReference] = None
    factories: List[InformerFactory] = field(default_factory=list)
    queues: List[RateLimitingQueue] = field(default_factory=list)

    def members(self) -> List[str]:
        """Names of the controllers that will run."""
        names = []
        if self.topology is not None:
            names.append("topology")
        if self.capacity is not None:
            names.append(self.capacity.name)
        if self.cloning is not None:
            names.append(self.cloning.name)
        names.append(self.provisioning.name)
        return names

    async def wait_for_caches(self, cancel: asyncio.Event) -> None:
        """
        Start every cache and block until all of them synced.

        Raises:
            CacheSyncError: If a cache did not sync
        """
        await self.gate.wait(cancel)

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Run all controllers until cancel is set.

        Caches must have been synced through wait_for_caches first. A
        controller crashing takes the others down with it.

        Args:
            cancel: Cancellation signal of the leading context
        """
        tasks = []
        if self.topology is not None:
            tasks.append(asyncio.create_task(self.topology.run_worker(cancel), name="topology"))
        if self.capacity is not None:
            tasks.append(asyncio.create_task(
                self.capacity.run(cancel, self.settings.capacity_threads),
                name=self.capacity.name,
            ))
        if self.cloning is not None:
            tasks.append(asyncio.create_task(
                self.cloning.run(cancel, self.settings.finalizer_threads),
                name=self.cloning.name,
            ))
        tasks.append(asyncio.create_task(
            self.provisioning.run(cancel, self.settings.worker_threads),
            name=self.provisioning.name,
        ))

        logger.info("Started controllers", controllers=self.members())

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        logger.info("Controllers stopped")

    def shut_down_queues(self) -> None:
        for queue in self.queues:
            queue.shut_down()

    async def shutdown(self) -> None:
        """Stop queues and informers."""
        self.shut_down_queues()
        for factory in self.factories:
            await factory.shutdown()


class ControllerAssembler:
    """Builds the ControllerSet for a probed backend."""

    def __init__(
        self,
        settings: ProvisionerSettings,
        identity: DriverIdentity,
        driver: DriverClient,
        cluster: ClusterClient,
        instance_identity: str = "",
    ):
        """
        Initialize assembler.

        Args:
            settings: Validated settings
            identity: Probed driver identity
            driver: Backend connection
            cluster: Cluster-state client
            instance_identity: Unique identity of this instance, used in events
        """
        self.settings = settings
        self.identity = identity
        self.driver = driver
        self.cluster = cluster
        self.instance_identity = instance_identity

        self._queues: List[RateLimitingQueue] = []
        # All claim-driven work shares one limiter so a failing claim backs
        # off the same way however it is reached
        self._claim_limiter = new_rate_limiter(
            settings.retry_interval_start, settings.retry_interval_max
        )

    def _queue(self, name: str, shared_limiter: bool = False) -> RateLimitingQueue:
        queue = new_named_queue(self._claim_limiter if shared_limiter else None, name)
        self._queues.append(queue)
        return queue

    async def node_info(self) -> Optional[NodeInfo]:
        """
        Node info of a node-local deployment, None when cluster-wide.

        Raises:
            FatalBootstrapError: If the backend cannot report it in time
        """
        if not self.settings.enable_node_deployment:
            return None

        timeout = self.settings.operation_timeout
        try:
            info = await asyncio.wait_for(self.driver.get_node_info(timeout), timeout)
        except asyncio.TimeoutError as e:
            raise FatalBootstrapError(f"NodeGetInfo timed out after {timeout}s") from e
        except ProvisionerError as e:
            raise FatalBootstrapError(f"NodeGetInfo failed: {e}") from e

        logger.info(
            "Running in node-local mode",
            node=self.settings.node_name,
            node_id=info.node_id,
            topology=info.accessible_topology,
        )
        return info

    async def owner(self) -> Optional[OwnerReference]:
        """
        Owner for published capacity objects.

        Raises:
            OwnerLookupError: If the requested owner cannot be determined
        """
        if not self.settings.enable_capacity:
            return None

        owner = await OwnershipResolver(self.cluster).resolve(
            self.settings.namespace,
            self.settings.pod_name,
            self.settings.capacity_ownerref_level,
        )
        if owner is not None:
            logger.info("Using owner for CSIStorageCapacity objects", kind=owner.kind, name=owner.name)
        else:
            logger.info("CSIStorageCapacity objects will have no owner")
        return owner

    async def assemble(self) -> ControllerSet:
        """
        Build the controller set.

        Returns:
            ControllerSet whose caches are not started yet

        Raises:
            FatalConfigurationError: If capacity publishing lacks its identity inputs
            FatalBootstrapError: If node info or owner resolution fails
        """
        settings = self.settings
        identity = self.identity

        if settings.enable_capacity:
            # Revalidated here since settings may have been built directly
            if not settings.namespace:
                raise FatalConfigurationError("need NAMESPACE env variable for CSIStorageCapacity objects")
            if settings.capacity_ownerref_level >= 0 and not settings.pod_name:
                raise FatalConfigurationError("need POD_NAME env variable to determine CSIStorageCapacity owner")

        node_info = await self.node_info()

        factory = InformerFactory(self.cluster, settings.resync_period, name="cluster")
        gate = ReadinessGate(settings.cache_sync_timeout)
        gate.register(factory)
        factories = [factory]

        storage_classes = factory.informer(STORAGE_CLASSES)
        claims = factory.informer(CLAIMS)
        volumes = factory.informer(VOLUMES)

        volume_attachments = None
        if identity.supports_attach():
            volume_attachments = factory.informer(VOLUME_ATTACHMENTS).lister()
        else:
            logger.info("CSI driver does not support PUBLISH_UNPUBLISH_VOLUME, not watching VolumeAttachments")

        nodes = csinodes = None
        if identity.supports_topology() and node_info is None:
            nodes = factory.informer(NODES)
            csinodes = factory.informer(CSINODES)

        topology = build_topology_provider(identity, node_info, nodes, csinodes, self._queue)

        node_deployment = None
        if node_info is not None:
            node_deployment = NodeDeployment(
                node_name=settings.node_name,
                node_id=node_info.node_id,
                immediate_binding=settings.node_deployment_immediate_binding,
                base_delay=settings.node_deployment_base_delay,
                max_delay=settings.node_deployment_max_delay,
            )

        provisioner: Provisioner = CSIProvisioner(
            settings,
            identity,
            self.driver,
            self.cluster,
            storage_classes.lister(),
            claims.lister(),
            volumes.lister(),
            topology=topology,
            volume_attachments=volume_attachments,
            node_deployment=node_deployment,
        )

        owner = None
        capacity = None
        if settings.enable_capacity:
            if not identity.supports_capacity():
                logger.warning("CSI driver does not declare GET_CAPACITY, capacity may not be reported")

            owner = await self.owner()
            managed_by = managed_by_id(settings.node_name if node_info is not None else None)

            # Only our own objects, in our own namespace
            capacity_factory = InformerFactory(
                self.cluster,
                settings.resync_period,
                namespace=settings.namespace,
                label_selector={
                    DRIVER_NAME_LABEL: identity.name,
                    MANAGED_BY_LABEL: managed_by,
                },
                name="capacity",
            )
            gate.register(capacity_factory)
            factories.append(capacity_factory)

            capacity = CapacityController(
                self.driver,
                identity.name,
                self.cluster,
                self._queue("csistoragecapacity"),
                owner,
                managed_by,
                settings.namespace,
                topology,
                storage_classes,
                capacity_factory.informer(CAPACITIES),
                poll_interval=settings.capacity_poll_interval,
                immediate_binding=settings.capacity_immediate_binding,
                operation_timeout=settings.operation_timeout,
            )
            provisioner = ProvisionWrapper(provisioner, capacity)

        cloning = None
        if identity.supports_cloning():
            cloning = CloningProtectionController(
                self.cluster,
                claims,
                self._queue("cloning-protection", shared_limiter=True),
            )

        recorder = EventRecorder(self.cluster, identity.name)
        provisioning = ProvisioningController(
            provisioner,
            self.cluster,
            claims,
            volumes,
            self._queue("claims", shared_limiter=True),
            recorder=recorder,
        )

        controller_set = ControllerSet(
            settings=settings,
            identity=identity,
            gate=gate,
            provisioning=provisioning,
            topology=topology,
            capacity=capacity,
            cloning=cloning,
            volume_attachments=volume_attachments,
            owner=owner,
            factories=factories,
            queues=list(self._queues),
        )
        logger.info("Assembled controllers", controllers=controller_set.members())
        return controller_set
