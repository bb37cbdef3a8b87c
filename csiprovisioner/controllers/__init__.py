"""
Sub-controllers run while this instance is leading.
"""

from csiprovisioner.controllers.base import QueueController
from csiprovisioner.controllers.capacity import (
    CapacityController,
    CapacityWorkItem,
    ProvisionWrapper,
)
from csiprovisioner.controllers.cloning import CloningProtectionController
from csiprovisioner.controllers.provisioning import (
    CSIProvisioner,
    NodeDeployment,
    Provisioner,
    ProvisioningController,
)

__all__ = [
    # Base
    "QueueController",
    # Capacity
    "CapacityController",
    "CapacityWorkItem",
    "ProvisionWrapper",
    # Cloning
    "CloningProtectionController",
    # Provisioning
    "CSIProvisioner",
    "NodeDeployment",
    "Provisioner",
    "ProvisioningController",
]
