"""
Cloning protection controller.

A claim used as the source of a clone carries a finalizer until every
claim cloned from it is bound, so that the source cannot be deleted while
the backend is still copying from it.
"""

import copy
from typing import Any, Dict, Optional, Tuple

from csiprovisioner.cache.informer import SharedInformer
from csiprovisioner.controllers.base import QueueController
from csiprovisioner.controllers.provisioning import CLONING_FINALIZER
from csiprovisioner.errors import TransientOperationalError
from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.utils.logging import get_logger
from csiprovisioner.workqueue import RateLimitingQueue

logger = get_logger(__name__)


def _clone_source(claim: Dict[str, Any]) -> Optional[str]:
    data_source = (claim.get("spec") or {}).get("dataSource") or {}
    if data_source.get("kind") == "PersistentVolumeClaim":
        return data_source.get("name")
    return None


def _has_finalizer(claim: Dict[str, Any]) -> bool:
    return CLONING_FINALIZER in ((claim.get("metadata") or {}).get("finalizers") or [])


class CloningProtectionController(QueueController):
    """Removes the cloning finalizer once no pending clone needs the source."""

    name = "cloning-protection"

    def __init__(
        self,
        cluster: ClusterClient,
        claims: SharedInformer,
        queue: RateLimitingQueue,
    ):
        super().__init__(queue)
        self.cluster = cluster
        self.claims = claims.lister()

        claims.add_event_handler(
            on_add=self._claim_changed,
            on_update=lambda _, new: self._claim_changed(new),
            on_delete=self._claim_changed,
        )

    def _claim_changed(self, claim: Dict[str, Any]) -> None:
        metadata = claim.get("metadata") or {}
        namespace = metadata.get("namespace", "")

        if _has_finalizer(claim):
            self.queue.add((namespace, metadata.get("name", "")))

        # A clone finished or went away: re-check its source
        source = _clone_source(claim)
        if source:
            self.queue.add((namespace, source))

    async def sync(self, key: Tuple[str, str]) -> None:
        namespace, name = key
        claim = self.claims.get(name, namespace)
        if claim is None or not _has_finalizer(claim):
            return

        for other in self.claims.list(namespace=namespace):
            if _clone_source(other) != name:
                continue
            if not (other.get("spec") or {}).get("volumeName"):
                raise TransientOperationalError(
                    f"claim {namespace}/{name} is still being cloned by "
                    f"{(other.get('metadata') or {}).get('name')}"
                )

        updated = copy.deepcopy(claim)
        updated["metadata"]["finalizers"] = [
            f for f in updated["metadata"].get("finalizers") or [] if f != CLONING_FINALIZER
        ]
        await self.cluster.replace("persistentvolumeclaims", name, updated, namespace=namespace)
        logger.info("Removed cloning protection finalizer", claim=f"{namespace}/{name}")
