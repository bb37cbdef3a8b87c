"""
Claim provisioning controller.

Watches claims and released volumes belonging to this driver and hands
them to a Provisioner. CSIProvisioner is the default Provisioner: it turns
a claim into a CreateVolume call and the result into a PersistentVolume.
"""

import copy
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from kubernetes.utils import parse_quantity

from csiprovisioner.cache.informer import Lister, SharedInformer
from csiprovisioner.controllers.base import QueueController
from csiprovisioner.csi.capabilities import DriverIdentity
from csiprovisioner.csi.client import CreateVolumeRequest, DriverClient, TopologyRequirement
from csiprovisioner.errors import PermanentOperationalError, TransientOperationalError
from csiprovisioner.kube.client import ClusterClient, ConflictError
from csiprovisioner.kube.events import WARNING, EventRecorder
from csiprovisioner.topology import Segment, TopologyProvider
from csiprovisioner.utils.config import ProvisionerSettings
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue

logger = get_logger(__name__)

ANN_STORAGE_PROVISIONER = "volume.kubernetes.io/storage-provisioner"
ANN_BETA_STORAGE_PROVISIONER = "volume.beta.kubernetes.io/storage-provisioner"
ANN_SELECTED_NODE = "volume.kubernetes.io/selected-node"
ANN_PROVISIONED_BY = "pv.kubernetes.io/provisioned-by"
CLONING_FINALIZER = "provisioner.storage.kubernetes.io/cloning-protection"

PARAMETER_PREFIX = "csi.storage.k8s.io/"
FSTYPE_PARAMETER = PARAMETER_PREFIX + "fstype"

ACCESS_MODES = {
    "ReadWriteOnce": "SINGLE_NODE_WRITER",
    "ReadOnlyMany": "MULTI_NODE_READER_ONLY",
    "ReadWriteMany": "MULTI_NODE_MULTI_WRITER",
    "ReadWriteOncePod": "SINGLE_NODE_SINGLE_WRITER",
}


@dataclass(frozen=True)
class NodeDeployment:
    """
    Settings of a node-local deployment.

    Attributes:
        node_name: Node this instance runs on
        node_id: Backend node ID of that node
        immediate_binding: Whether claims without a selected node are handled
        base_delay: Minimum wait before trying to own such a claim
        max_delay: Maximum wait before trying to own such a claim
    """
    node_name: str
    node_id: str
    immediate_binding: bool = True
    base_delay: float = 20.0
    max_delay: float = 60.0


def claim_provisioner(claim: Dict[str, Any]) -> Optional[str]:
    annotations = (claim.get("metadata") or {}).get("annotations") or {}
    return annotations.get(ANN_STORAGE_PROVISIONER) or annotations.get(ANN_BETA_STORAGE_PROVISIONER)


def selected_node(claim: Dict[str, Any]) -> Optional[str]:
    annotations = (claim.get("metadata") or {}).get("annotations") or {}
    return annotations.get(ANN_SELECTED_NODE)


def claim_key(claim: Dict[str, Any]) -> Tuple[str, str, str]:
    metadata = claim.get("metadata") or {}
    return ("claim", metadata.get("namespace", ""), metadata.get("name", ""))


def volume_key(volume: Dict[str, Any]) -> Tuple[str, str, str]:
    return ("volume", "", (volume.get("metadata") or {}).get("name", ""))


class Provisioner(ABC):
    """Decision logic for creating and deleting volumes."""

    @abstractmethod
    def should_provision(self, claim: Dict[str, Any]) -> bool:
        ...

    def initial_delay(self, claim: Dict[str, Any]) -> float:
        """Seconds to wait before the first attempt on a claim."""
        return 0.0

    @abstractmethod
    async def provision(self, claim: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Create the backing volume; return the PersistentVolume to create."""

    @abstractmethod
    def should_delete(self, volume: Dict[str, Any]) -> bool:
        ...

    @abstractmethod
    async def delete(self, volume: Dict[str, Any]) -> None:
        ...


class CSIProvisioner(Provisioner):
    """
    Provisioner backed by the CSI driver.

    Topology requirements come from the topology provider; a missing
    provider means the request carries no topology constraints.
    """

    def __init__(
        self,
        settings: ProvisionerSettings,
        identity: DriverIdentity,
        driver: DriverClient,
        cluster: ClusterClient,
        storage_classes: Lister,
        claims: Lister,
        volumes: Lister,
        topology: Optional[TopologyProvider] = None,
        volume_attachments: Optional[Lister] = None,
        node_deployment: Optional[NodeDeployment] = None,
    ):
        self.settings = settings
        self.identity = identity
        self.driver = driver
        self.cluster = cluster
        self.storage_classes = storage_classes
        self.claims = claims
        self.volumes = volumes
        self.topology = topology
        self.volume_attachments = volume_attachments
        self.node_deployment = node_deployment

        self.names: FrozenSet[str] = identity.provisioner_names()

    def volume_name(self, claim: Dict[str, Any]) -> str:
        uid = (claim.get("metadata") or {}).get("uid", "")
        length = self.settings.volume_name_uuid_length
        if length > 0:
            uid = uid.replace("-", "")[:length]
        return f"{self.settings.volume_name_prefix}-{uid}"

    def should_provision(self, claim: Dict[str, Any]) -> bool:
        if claim_provisioner(claim) not in self.names:
            return False
        if (claim.get("spec") or {}).get("volumeName"):
            return False

        if self.node_deployment is not None:
            node = selected_node(claim)
            if node is None:
                return self.node_deployment.immediate_binding
            return node == self.node_deployment.node_name
        return True

    def initial_delay(self, claim: Dict[str, Any]) -> float:
        # Spread node-local instances racing for an unscheduled claim
        if self.node_deployment is not None and selected_node(claim) is None:
            return random.uniform(self.node_deployment.base_delay, self.node_deployment.max_delay)
        return 0.0

    async def provision(self, claim: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Create the volume for a claim.

        Args:
            claim: Claim in API form

        Returns:
            PersistentVolume to create, None when another instance owns the claim

        Raises:
            TransientOperationalError: Retryable failure
            PermanentOperationalError: Claim cannot be provisioned
        """
        metadata = claim.get("metadata") or {}
        spec = claim.get("spec") or {}

        class_name = spec.get("storageClassName")
        storage_class = self.storage_classes.get(class_name) if class_name else None
        if storage_class is None:
            raise TransientOperationalError(f"storage class {class_name!r} not found")

        if self.node_deployment is not None and selected_node(claim) is None:
            claim = await self._claim_for_this_node(claim)
            if claim is None:
                return None

        name = self.volume_name(claim)
        if self.volumes.get(name) is not None:
            logger.debug("Volume already exists", volume=name)
            return None

        parameters = dict(storage_class.get("parameters") or {})
        fs_type = parameters.get(FSTYPE_PARAMETER) or self.settings.default_fstype
        parameters = {k: v for k, v in parameters.items() if not k.startswith(PARAMETER_PREFIX)}

        if self.settings.extra_create_metadata:
            parameters[PARAMETER_PREFIX + "pvc/name"] = metadata.get("name", "")
            parameters[PARAMETER_PREFIX + "pvc/namespace"] = metadata.get("namespace", "")
            parameters[PARAMETER_PREFIX + "pv/name"] = name

        requested = ((spec.get("resources") or {}).get("requests") or {}).get("storage", "0")
        try:
            capacity_bytes = int(parse_quantity(requested))
        except ValueError as e:
            raise PermanentOperationalError(f"invalid storage request {requested!r}") from e

        access_modes = []
        for mode in spec.get("accessModes") or []:
            if mode not in ACCESS_MODES:
                raise PermanentOperationalError(f"unsupported access mode {mode}")
            access_modes.append(ACCESS_MODES[mode])

        request = CreateVolumeRequest(
            name=name,
            capacity_bytes=capacity_bytes,
            parameters=parameters,
            access_modes=access_modes,
            fs_type=fs_type,
            block=spec.get("volumeMode") == "Block",
            accessibility_requirements=self.topology_requirement(claim),
        )
        await self._apply_data_source(claim, request)

        volume = await self.driver.create_volume(request, self.settings.operation_timeout)
        logger.info(
            "Provisioned volume",
            claim=f"{metadata.get('namespace')}/{metadata.get('name')}",
            volume=name,
            volume_id=volume.volume_id,
        )

        pv: Dict[str, Any] = {
            "apiVersion": "v1",
            "kind": "PersistentVolume",
            "metadata": {
                "name": name,
                "annotations": {ANN_PROVISIONED_BY: self.identity.name},
            },
            "spec": {
                "capacity": {"storage": str(volume.capacity_bytes or capacity_bytes)},
                "accessModes": list(spec.get("accessModes") or []),
                "persistentVolumeReclaimPolicy": storage_class.get("reclaimPolicy") or "Delete",
                "storageClassName": class_name,
                "volumeMode": spec.get("volumeMode") or "Filesystem",
                "claimRef": {
                    "apiVersion": "v1",
                    "kind": "PersistentVolumeClaim",
                    "namespace": metadata.get("namespace"),
                    "name": metadata.get("name"),
                    "uid": metadata.get("uid"),
                },
                "csi": {
                    "driver": self.identity.name,
                    "volumeHandle": volume.volume_id,
                    "volumeAttributes": volume.volume_context,
                },
            },
        }
        if fs_type and spec.get("volumeMode") != "Block":
            pv["spec"]["csi"]["fsType"] = fs_type
        if storage_class.get("mountOptions"):
            pv["spec"]["mountOptions"] = list(storage_class["mountOptions"])
        if volume.accessible_topology:
            pv["spec"]["nodeAffinity"] = {
                "required": {
                    "nodeSelectorTerms": [
                        {
                            "matchExpressions": [
                                {"key": k, "operator": "In", "values": [v]}
                                for k, v in sorted(segment.items())
                            ]
                        }
                        for segment in volume.accessible_topology
                    ]
                }
            }
        return pv

    def topology_requirement(self, claim: Dict[str, Any]) -> Optional[TopologyRequirement]:
        """
        Accessibility requirements for a claim.

        Args:
            claim: Claim in API form

        Returns:
            Requirements, None when no topology constraints apply
        """
        if self.topology is None:
            return None

        node = selected_node(claim)
        if node is None:
            if not self.settings.immediate_topology:
                return None
            segments = self.topology.list_segments()
            if not segments or all(len(s) == 0 for s in segments):
                return None
            dicts = [s.to_dict() for s in segments if len(s)]
            return TopologyRequirement(requisite=dicts, preferred=list(dicts))

        segment = self.topology.lookup(node)
        if segment is None:
            raise TransientOperationalError(f"topology of selected node {node} not available")
        if len(segment) == 0:
            return None

        if self.settings.strict_topology:
            return TopologyRequirement(requisite=[segment.to_dict()], preferred=[segment.to_dict()])

        keys = [entry.key for entry in segment.entries]
        aggregated: List[Segment] = [segment]
        for other in self.topology.list_segments():
            if other != segment and [e.key for e in other.entries] == keys:
                aggregated.append(other)
        dicts = [s.to_dict() for s in aggregated]
        return TopologyRequirement(requisite=dicts, preferred=list(dicts))

    async def _apply_data_source(self, claim: Dict[str, Any], request: CreateVolumeRequest) -> None:
        data_source = (claim.get("spec") or {}).get("dataSource")
        if not data_source:
            return

        kind = data_source.get("kind")
        if kind != "PersistentVolumeClaim":
            raise PermanentOperationalError(f"unsupported data source kind {kind}")
        if not self.identity.supports_cloning():
            raise PermanentOperationalError("CSI driver does not support cloning")

        namespace = (claim.get("metadata") or {}).get("namespace")
        source = self.claims.get(data_source.get("name", ""), namespace)
        if source is None:
            raise TransientOperationalError(f"source claim {data_source.get('name')} not found")

        source_volume_name = (source.get("spec") or {}).get("volumeName")
        source_volume = self.volumes.get(source_volume_name) if source_volume_name else None
        if source_volume is None:
            raise TransientOperationalError(f"source claim {data_source.get('name')} is not bound")

        await self._protect_clone_source(source)
        request.source_volume_id = ((source_volume.get("spec") or {}).get("csi") or {}).get(
            "volumeHandle"
        )

    async def _protect_clone_source(self, source: Dict[str, Any]) -> None:
        finalizers = (source.get("metadata") or {}).get("finalizers") or []
        if CLONING_FINALIZER in finalizers:
            return
        updated = copy.deepcopy(source)
        updated["metadata"].setdefault("finalizers", []).append(CLONING_FINALIZER)
        metadata = updated["metadata"]
        await self.cluster.replace(
            "persistentvolumeclaims", metadata["name"], updated, namespace=metadata.get("namespace")
        )

    async def _claim_for_this_node(self, claim: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Try to own an unscheduled claim by selecting this node.

        The update is rejected if another instance changed the claim first.
        """
        metadata = claim.get("metadata") or {}
        updated = copy.deepcopy(claim)
        updated["metadata"].setdefault("annotations", {})[ANN_SELECTED_NODE] = (
            self.node_deployment.node_name
        )
        try:
            return await self.cluster.replace(
                "persistentvolumeclaims",
                metadata.get("name", ""),
                updated,
                namespace=metadata.get("namespace"),
            )
        except ConflictError:
            logger.debug("Claim owned by another node", claim=metadata.get("name"))
            return None

    def should_delete(self, volume: Dict[str, Any]) -> bool:
        metadata = volume.get("metadata") or {}
        spec = volume.get("spec") or {}
        annotations = metadata.get("annotations") or {}
        if annotations.get(ANN_PROVISIONED_BY) not in self.names:
            return False
        if spec.get("persistentVolumeReclaimPolicy") != "Delete":
            return False
        if (volume.get("status") or {}).get("phase") != "Released":
            return False
        if self.node_deployment is not None:
            # Only delete volumes local to this node
            terms = (((spec.get("nodeAffinity") or {}).get("required") or {}).get("nodeSelectorTerms")) or []
            if terms and self.topology is not None:
                segment = self.topology.lookup(self.node_deployment.node_name)
                if segment is None or not _matches_terms(segment, terms):
                    return False
        return True

    async def delete(self, volume: Dict[str, Any]) -> None:
        name = (volume.get("metadata") or {}).get("name", "")
        if self.volume_attachments is not None:
            for attachment in self.volume_attachments.list():
                source = ((attachment.get("spec") or {}).get("source")) or {}
                if source.get("persistentVolumeName") == name:
                    raise TransientOperationalError(f"volume {name} is still attached")

        handle = (((volume.get("spec") or {}).get("csi")) or {}).get("volumeHandle")
        if not handle:
            raise PermanentOperationalError(f"volume {name} has no CSI volume handle")

        await self.driver.delete_volume(handle, {}, self.settings.operation_timeout)
        logger.info("Deleted volume", volume=name, volume_id=handle)


def _matches_terms(segment: Segment, terms: List[Dict[str, Any]]) -> bool:
    labels = segment.to_dict()
    for term in terms:
        expressions = term.get("matchExpressions") or []
        if all(
            labels.get(expr.get("key")) in (expr.get("values") or [])
            for expr in expressions
            if expr.get("operator") == "In"
        ):
            return True
    return False


class ProvisioningController(QueueController):
    """Drives a Provisioner from claim and volume events."""

    name = "provisioner"

    def __init__(
        self,
        provisioner: Provisioner,
        cluster: ClusterClient,
        claims: SharedInformer,
        volumes: SharedInformer,
        queue: RateLimitingQueue,
        recorder: Optional[EventRecorder] = None,
    ):
        """
        Initialize controller.

        Args:
            provisioner: Provisioning decision logic
            cluster: Cluster-state client used to create/delete volumes
            claims: Claim informer
            volumes: PersistentVolume informer
            queue: Work queue owned by this controller
            recorder: Event recorder for terminal failures
        """
        super().__init__(queue)
        self.provisioner = provisioner
        self.cluster = cluster
        self.claims = claims.lister()
        self.volumes = volumes.lister()
        self.recorder = recorder

        claims.add_event_handler(on_add=self._claim_changed, on_update=lambda _, new: self._claim_changed(new))
        volumes.add_event_handler(on_add=self._volume_changed, on_update=lambda _, new: self._volume_changed(new))

    def _claim_changed(self, claim: Dict[str, Any]) -> None:
        if not self.provisioner.should_provision(claim):
            return
        delay = self.provisioner.initial_delay(claim)
        if delay > 0:
            self.queue.add_after(claim_key(claim), delay)
        else:
            self.queue.add(claim_key(claim))

    def _volume_changed(self, volume: Dict[str, Any]) -> None:
        if self.provisioner.should_delete(volume):
            self.queue.add(volume_key(volume))

    async def sync(self, key: Tuple[str, str, str]) -> None:
        kind, namespace, name = key
        if kind == "claim":
            await self._sync_claim(namespace, name)
        else:
            await self._sync_volume(name)

    async def _sync_claim(self, namespace: str, name: str) -> None:
        claim = self.claims.get(name, namespace)
        if claim is None or not self.provisioner.should_provision(claim):
            return

        pv = await self.provisioner.provision(claim)
        if pv is None:
            return
        try:
            await self.cluster.create("persistentvolumes", pv)
        except ConflictError:
            logger.debug("PersistentVolume already exists", volume=pv["metadata"]["name"])

    async def _sync_volume(self, name: str) -> None:
        volume = self.volumes.get(name)
        if volume is None or not self.provisioner.should_delete(volume):
            return
        await self.provisioner.delete(volume)
        await self.cluster.delete("persistentvolumes", name)

    async def on_permanent_failure(self, key: Tuple[str, str, str], error: PermanentOperationalError) -> None:
        await super().on_permanent_failure(key, error)
        if self.recorder is None:
            return

        kind, namespace, name = key
        obj = self.claims.get(name, namespace) if kind == "claim" else self.volumes.get(name)
        if obj is None:
            return
        if kind == "claim":
            obj = {**obj, "apiVersion": "v1", "kind": "PersistentVolumeClaim"}
            reason = "ProvisioningFailed"
        else:
            obj = {**obj, "apiVersion": "v1", "kind": "PersistentVolume"}
            reason = "VolumeFailedDelete"
        await self.recorder.record(obj, WARNING, reason, str(error))

