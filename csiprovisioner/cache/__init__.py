"""
Shared caches of cluster objects.
"""

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
from csiprovisioner.cache.informer import (
    Lister,
    ResourceSource,
    SharedInformer,
    object_key,
)

__all__ = [
    # Factory
    "InformerFactory",
    "CAPACITIES",
    "CLAIMS",
    "CSINODES",
    "NODES",
    "STORAGE_CLASSES",
    "VOLUME_ATTACHMENTS",
    "VOLUMES",
    # Informer
    "Lister",
    "ResourceSource",
    "SharedInformer",
    "object_key",
]
