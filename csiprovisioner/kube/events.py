"""
Event recording: surfaces terminal operation status on the affected object.
"""

import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from csiprovisioner.kube.client import ClusterClient
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

NORMAL = "Normal"
WARNING = "Warning"


class EventRecorder:
    """Creates core/v1 Events attributed to this sidecar."""

    def __init__(self, client: ClusterClient, component: str):
        """
        Initialize recorder.

        Args:
            client: Cluster-state client
            component: Reporting component, usually the driver name
        """
        self.client = client
        self.component = component

    async def record(
        self,
        obj: Dict[str, Any],
        event_type: str,
        reason: str,
        message: str,
    ) -> None:
        """
        Record an event about an object.

        Args:
            obj: Involved object in API form
            event_type: Normal or Warning
            reason: Short machine-readable reason
            message: Human-readable message
        """
        metadata = obj.get("metadata") or {}
        namespace = metadata.get("namespace") or "default"
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

        event = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{metadata.get('name', 'unknown')}.{int(time.time() * 1000):x}{uuid.uuid4().hex[:6]}",
                "namespace": namespace,
            },
            "involvedObject": {
                "apiVersion": obj.get("apiVersion", "v1"),
                "kind": obj.get("kind", ""),
                "name": metadata.get("name", ""),
                "namespace": metadata.get("namespace", ""),
                "uid": metadata.get("uid", ""),
                "resourceVersion": metadata.get("resourceVersion", ""),
            },
            "reason": reason,
            "message": message,
            "type": event_type,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }

        await self.client.create("events", event, namespace=namespace)
        logger.debug("Recorded event", reason=reason, object=metadata.get("name"))
