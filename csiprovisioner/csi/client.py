"""
Backend RPC client.

The sidecar talks to the storage backend over gRPC on a local endpoint.
DriverClient is the interface the rest of the sidecar depends on;
GrpcDriverClient implements it on top of grpc.aio with message classes
generated from the CSI protobuf definition.
"""

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import ModuleType
from typing import Dict, FrozenSet, List, Optional, Tuple

import grpc

from csiprovisioner.csi.capabilities import ControllerCapability, PluginCapability
from csiprovisioner.errors import FatalBootstrapError, classify_rpc_error
from csiprovisioner.metrics import CSIMetricsManager
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

IDENTITY_SERVICE = "/csi.v1.Identity"
CONTROLLER_SERVICE = "/csi.v1.Controller"
NODE_SERVICE = "/csi.v1.Node"

DEFAULT_PROTO_MODULE = "csi_pb2"


@dataclass(frozen=True)
class NodeInfo:
    """
    Node-local information reported by the backend.

    Attributes:
        node_id: Backend-specific node identifier
        accessible_topology: Topology segment the node belongs to
        max_volumes_per_node: Attach limit, 0 when unlimited
    """
    node_id: str
    accessible_topology: Dict[str, str] = field(default_factory=dict)
    max_volumes_per_node: int = 0


@dataclass
class TopologyRequirement:
    """Accessibility requirements attached to a CreateVolume call."""
    requisite: List[Dict[str, str]] = field(default_factory=list)
    preferred: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class CreateVolumeRequest:
    name: str
    capacity_bytes: int = 0
    parameters: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)
    access_modes: List[str] = field(default_factory=list)
    fs_type: str = ""
    block: bool = False
    accessibility_requirements: Optional[TopologyRequirement] = None
    source_volume_id: Optional[str] = None
    source_snapshot_id: Optional[str] = None


@dataclass
class CreatedVolume:
    volume_id: str
    capacity_bytes: int = 0
    volume_context: Dict[str, str] = field(default_factory=dict)
    accessible_topology: List[Dict[str, str]] = field(default_factory=list)


class DriverClient(ABC):
    """Operations the sidecar issues against the backend."""

    @abstractmethod
    async def probe(self, timeout: float) -> bool:
        """Return True when the backend reports ready."""

    @abstractmethod
    async def get_plugin_info(self, timeout: float) -> Tuple[str, str]:
        """Return (name, vendor_version)."""

    @abstractmethod
    async def get_plugin_capabilities(self, timeout: float) -> FrozenSet[PluginCapability]:
        ...

    @abstractmethod
    async def get_controller_capabilities(
        self, timeout: float
    ) -> FrozenSet[ControllerCapability]:
        ...

    @abstractmethod
    async def get_node_info(self, timeout: float) -> NodeInfo:
        ...

    @abstractmethod
    async def create_volume(self, request: CreateVolumeRequest, timeout: float) -> CreatedVolume:
        ...

    @abstractmethod
    async def delete_volume(
        self, volume_id: str, secrets: Dict[str, str], timeout: float
    ) -> None:
        ...

    @abstractmethod
    async def get_capacity(
        self,
        parameters: Dict[str, str],
        topology: Optional[Dict[str, str]],
        timeout: float,
    ) -> int:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def normalize_address(address: str) -> str:
    """
    Turn a socket path into a gRPC target.

    Args:
        address: Filesystem path or gRPC target

    Returns:
        gRPC target string
    """
    if address.startswith("/"):
        return f"unix://{address}"
    return address


def load_proto_module(name: str = DEFAULT_PROTO_MODULE) -> ModuleType:
    """
    Import the generated CSI message module.

    Raises:
        FatalBootstrapError: If the module cannot be imported
    """
    try:
        return importlib.import_module(name)
    except ImportError as e:
        raise FatalBootstrapError(
            f"CSI protobuf bindings {name!r} not importable; "
            "generate them from csi.proto with grpcio-tools"
        ) from e


class GrpcDriverClient(DriverClient):
    """
    DriverClient over a grpc.aio channel.

    Every call is instrumented by the metrics manager the connection was
    created with.
    """

    def __init__(
        self,
        address: str,
        metrics_manager: CSIMetricsManager,
        proto_module: Optional[ModuleType] = None,
    ):
        """
        Initialize client.

        Args:
            address: Socket path or gRPC target of the backend
            metrics_manager: Metrics manager recording RPC latencies
            proto_module: Generated CSI messages (imported lazily if None)
        """
        self.address = normalize_address(address)
        self.metrics_manager = metrics_manager
        self._pb = proto_module or load_proto_module()

        self._channel: grpc.aio.Channel = grpc.aio.insecure_channel(
            self.address,
            options=[
                ("grpc.keepalive_time_ms", 10000),
                ("grpc.keepalive_timeout_ms", 5000),
            ],
            interceptors=[metrics_manager.interceptor()],
        )

        logger.info(
            "Connecting to backend",
            address=self.address,
            migrated=metrics_manager.migrated,
        )

    async def _call(self, service: str, method: str, request, response_cls, timeout: float):
        callable_ = self._channel.unary_unary(
            f"{service}/{method}",
            request_serializer=type(request).SerializeToString,
            response_deserializer=response_cls.FromString,
        )
        try:
            return await callable_(request, timeout=timeout)
        except grpc.aio.AioRpcError as e:
            raise classify_rpc_error(e.code(), f"{method}: {e.details()}") from e

    async def probe(self, timeout: float) -> bool:
        pb = self._pb
        response = await self._call(
            IDENTITY_SERVICE, "Probe", pb.ProbeRequest(), pb.ProbeResponse, timeout
        )
        if response.HasField("ready"):
            return response.ready.value
        # An unset value means ready
        return True

    async def get_plugin_info(self, timeout: float) -> Tuple[str, str]:
        pb = self._pb
        response = await self._call(
            IDENTITY_SERVICE,
            "GetPluginInfo",
            pb.GetPluginInfoRequest(),
            pb.GetPluginInfoResponse,
            timeout,
        )
        return response.name, response.vendor_version

    async def get_plugin_capabilities(self, timeout: float) -> FrozenSet[PluginCapability]:
        pb = self._pb
        response = await self._call(
            IDENTITY_SERVICE,
            "GetPluginCapabilities",
            pb.GetPluginCapabilitiesRequest(),
            pb.GetPluginCapabilitiesResponse,
            timeout,
        )

        capabilities = set()
        for cap in response.capabilities:
            if cap.HasField("service"):
                name = pb.PluginCapability.Service.Type.Name(cap.service.type)
            elif cap.HasField("volume_expansion"):
                kind = pb.PluginCapability.VolumeExpansion.Type.Name(cap.volume_expansion.type)
                name = f"{kind}_VOLUME_EXPANSION"
            else:
                continue
            if name in PluginCapability.__members__:
                capabilities.add(PluginCapability[name])
        return frozenset(capabilities)

    async def get_controller_capabilities(
        self, timeout: float
    ) -> FrozenSet[ControllerCapability]:
        pb = self._pb
        response = await self._call(
            CONTROLLER_SERVICE,
            "ControllerGetCapabilities",
            pb.ControllerGetCapabilitiesRequest(),
            pb.ControllerGetCapabilitiesResponse,
            timeout,
        )

        capabilities = set()
        for cap in response.capabilities:
            name = pb.ControllerServiceCapability.RPC.Type.Name(cap.rpc.type)
            if name in ControllerCapability.__members__:
                capabilities.add(ControllerCapability[name])
        return frozenset(capabilities)

    async def get_node_info(self, timeout: float) -> NodeInfo:
        pb = self._pb
        response = await self._call(
            NODE_SERVICE, "NodeGetInfo", pb.NodeGetInfoRequest(), pb.NodeGetInfoResponse, timeout
        )
        topology = {}
        if response.HasField("accessible_topology"):
            topology = dict(response.accessible_topology.segments)
        return NodeInfo(
            node_id=response.node_id,
            accessible_topology=topology,
            max_volumes_per_node=response.max_volumes_per_node,
        )

    async def create_volume(self, request: CreateVolumeRequest, timeout: float) -> CreatedVolume:
        pb = self._pb
        capability = pb.VolumeCapability()
        if request.block:
            capability.block.SetInParent()
        else:
            capability.mount.fs_type = request.fs_type
        if request.access_modes:
            capability.access_mode.mode = pb.VolumeCapability.AccessMode.Mode.Value(
                request.access_modes[0]
            )

        message = pb.CreateVolumeRequest(
            name=request.name,
            capacity_range=pb.CapacityRange(required_bytes=request.capacity_bytes),
            volume_capabilities=[capability],
            parameters=request.parameters,
            secrets=request.secrets,
        )
        if request.accessibility_requirements is not None:
            reqs = request.accessibility_requirements
            message.accessibility_requirements.requisite.extend(
                pb.Topology(segments=s) for s in reqs.requisite
            )
            message.accessibility_requirements.preferred.extend(
                pb.Topology(segments=s) for s in reqs.preferred
            )
        if request.source_snapshot_id:
            message.volume_content_source.snapshot.snapshot_id = request.source_snapshot_id
        elif request.source_volume_id:
            message.volume_content_source.volume.volume_id = request.source_volume_id

        response = await self._call(
            CONTROLLER_SERVICE, "CreateVolume", message, pb.CreateVolumeResponse, timeout
        )
        volume = response.volume
        return CreatedVolume(
            volume_id=volume.volume_id,
            capacity_bytes=volume.capacity_bytes,
            volume_context=dict(volume.volume_context),
            accessible_topology=[dict(t.segments) for t in volume.accessible_topology],
        )

    async def delete_volume(
        self, volume_id: str, secrets: Dict[str, str], timeout: float
    ) -> None:
        pb = self._pb
        await self._call(
            CONTROLLER_SERVICE,
            "DeleteVolume",
            pb.DeleteVolumeRequest(volume_id=volume_id, secrets=secrets),
            pb.DeleteVolumeResponse,
            timeout,
        )

    async def get_capacity(
        self,
        parameters: Dict[str, str],
        topology: Optional[Dict[str, str]],
        timeout: float,
    ) -> int:
        pb = self._pb
        message = pb.GetCapacityRequest(parameters=parameters)
        if topology is not None:
            message.accessible_topology.segments.update(topology)
        response = await self._call(
            CONTROLLER_SERVICE, "GetCapacity", message, pb.GetCapacityResponse, timeout
        )
        return response.available_capacity

    async def close(self) -> None:
        await self._channel.close()
        logger.debug("Closed backend connection", address=self.address)
