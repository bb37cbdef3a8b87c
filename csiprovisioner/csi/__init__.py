"""
Backend (CSI driver) RPC interface.
"""

from csiprovisioner.csi.capabilities import (
    ControllerCapability,
    DriverIdentity,
    PluginCapability,
)
from csiprovisioner.csi.client import (
    CreatedVolume,
    CreateVolumeRequest,
    DriverClient,
    GrpcDriverClient,
    NodeInfo,
    TopologyRequirement,
)

__all__ = [
    # Capabilities
    "ControllerCapability",
    "DriverIdentity",
    "PluginCapability",
    # Client
    "CreatedVolume",
    "CreateVolumeRequest",
    "DriverClient",
    "GrpcDriverClient",
    "NodeInfo",
    "TopologyRequirement",
]
