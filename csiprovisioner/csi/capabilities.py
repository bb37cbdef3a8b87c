"""
Backend capability sets and driver identity.
"""

import enum
from dataclasses import dataclass, field
from typing import FrozenSet, Optional


class PluginCapability(enum.Enum):
    """Plugin-level capabilities a backend may declare."""
    CONTROLLER_SERVICE = "CONTROLLER_SERVICE"
    VOLUME_ACCESSIBILITY_CONSTRAINTS = "VOLUME_ACCESSIBILITY_CONSTRAINTS"
    GROUP_CONTROLLER_SERVICE = "GROUP_CONTROLLER_SERVICE"
    ONLINE_VOLUME_EXPANSION = "ONLINE_VOLUME_EXPANSION"
    OFFLINE_VOLUME_EXPANSION = "OFFLINE_VOLUME_EXPANSION"


class ControllerCapability(enum.Enum):
    """Controller RPC capabilities a backend may declare."""
    CREATE_DELETE_VOLUME = "CREATE_DELETE_VOLUME"
    PUBLISH_UNPUBLISH_VOLUME = "PUBLISH_UNPUBLISH_VOLUME"
    LIST_VOLUMES = "LIST_VOLUMES"
    GET_CAPACITY = "GET_CAPACITY"
    CREATE_DELETE_SNAPSHOT = "CREATE_DELETE_SNAPSHOT"
    LIST_SNAPSHOTS = "LIST_SNAPSHOTS"
    CLONE_VOLUME = "CLONE_VOLUME"
    PUBLISH_READONLY = "PUBLISH_READONLY"
    EXPAND_VOLUME = "EXPAND_VOLUME"
    SINGLE_NODE_MULTI_WRITER = "SINGLE_NODE_MULTI_WRITER"


@dataclass(frozen=True)
class DriverIdentity:
    """
    Identity and capabilities of the backend, created once by the probe.

    Attributes:
        name: Driver name reported by GetPluginInfo
        plugin_capabilities: Declared plugin capabilities
        controller_capabilities: Declared controller RPC capabilities
        legacy_equivalent_name: In-tree plugin name this driver supersedes
    """
    name: str
    plugin_capabilities: FrozenSet[PluginCapability] = field(default_factory=frozenset)
    controller_capabilities: FrozenSet[ControllerCapability] = field(default_factory=frozenset)
    legacy_equivalent_name: Optional[str] = None

    @property
    def is_migrated(self) -> bool:
        return self.legacy_equivalent_name is not None

    def supports_topology(self) -> bool:
        return PluginCapability.VOLUME_ACCESSIBILITY_CONSTRAINTS in self.plugin_capabilities

    def supports_attach(self) -> bool:
        return ControllerCapability.PUBLISH_UNPUBLISH_VOLUME in self.controller_capabilities

    def supports_cloning(self) -> bool:
        return ControllerCapability.CLONE_VOLUME in self.controller_capabilities

    def supports_capacity(self) -> bool:
        return ControllerCapability.GET_CAPACITY in self.controller_capabilities

    def provisioner_names(self) -> FrozenSet[str]:
        """Names under which claims are accepted for this driver."""
        names = {self.name}
        if self.legacy_equivalent_name:
            names.add(self.legacy_equivalent_name)
        return frozenset(names)
