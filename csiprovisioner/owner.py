"""
Ownership resolution for published capacity objects.

Walks the controller-reference chain upwards from the running pod to find
the object that should own the auxiliary objects this instance creates,
for example the StatefulSet or Deployment managing the pod.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from csiprovisioner.errors import OwnerLookupError
from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

NO_OWNER = -1


@dataclass(frozen=True)
class OwnerReference:
    """
    Reference to the owning object.

    Attributes:
        api_version: Group/version of the owner
        kind: Owner kind
        name: Owner name
        uid: Owner UID
    """
    api_version: str
    kind: str
    name: str
    uid: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Owner reference in API form, marked as controller."""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
        }


def _reference_of(obj: Dict[str, Any], api_version: str, kind: str) -> OwnerReference:
    metadata = obj.get("metadata") or {}
    return OwnerReference(
        api_version=obj.get("apiVersion") or api_version,
        kind=obj.get("kind") or kind,
        name=metadata.get("name", ""),
        uid=metadata.get("uid", ""),
    )


class OwnershipResolver:
    """Resolves the owner of a pod N controller levels up."""

    def __init__(self, client: ClusterClient):
        self.client = client

    async def resolve(
        self,
        namespace: str,
        pod_name: str,
        levels: int,
        api_version: str = "v1",
        kind: str = "Pod",
    ) -> Optional[OwnerReference]:
        """
        Resolve the owner reference.

        Args:
            namespace: Namespace of the running pod
            pod_name: Name of the running pod
            levels: -1 for no owner, 0 for the pod itself, N to walk N
                controller references upwards
            api_version: Group/version of the starting object
            kind: Kind of the starting object

        Returns:
            Owner reference, None when levels is -1

        Raises:
            OwnerLookupError: If an object is missing, a level does not have
                exactly one controller reference, or the chain is too short
        """
        if levels == NO_OWNER:
            return None
        if levels < NO_OWNER:
            raise OwnerLookupError(f"invalid owner level {levels}")

        obj = await self.client.get(api_version, kind, pod_name, namespace)
        if obj is None:
            raise OwnerLookupError(f"{kind} {namespace}/{pod_name} not found")
        reference = _reference_of(obj, api_version, kind)

        for level in range(levels):
            owner_refs = (obj.get("metadata") or {}).get("ownerReferences") or []
            controllers = [ref for ref in owner_refs if ref.get("controller")]

            if not controllers:
                raise OwnerLookupError(
                    f"{reference.kind} {namespace}/{reference.name} has no controller "
                    f"(level {level} of {levels})"
                )
            if len(controllers) > 1:
                raise OwnerLookupError(
                    f"{reference.kind} {namespace}/{reference.name} has "
                    f"{len(controllers)} controllers (level {level} of {levels})"
                )

            ref = controllers[0]
            obj = await self.client.get(ref["apiVersion"], ref["kind"], ref["name"], namespace)
            if obj is None:
                raise OwnerLookupError(
                    f"{ref['kind']} {namespace}/{ref['name']} not found (level {level + 1} of {levels})"
                )
            reference = _reference_of(obj, ref["apiVersion"], ref["kind"])

            logger.debug(
                "Resolved owner level",
                level=level + 1,
                kind=reference.kind,
                name=reference.name,
            )

        return reference
