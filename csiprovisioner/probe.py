"""
Capability probe.

Queries the backend once at startup for its name and capability sets and
detects whether it supersedes a legacy in-tree plugin.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from csiprovisioner.csi.capabilities import DriverIdentity
from csiprovisioner.csi.client import DriverClient, GrpcDriverClient
from csiprovisioner.csi.translation import legacy_name_for
from csiprovisioner.errors import FatalBootstrapError, ProvisionerError
from csiprovisioner.metrics import CSIMetricsManager
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

Connector = Callable[[str, CSIMetricsManager], DriverClient]

PROBE_INTERVAL = 1.0


@dataclass
class ProbeResult:
    """
    Outcome of a successful probe.

    Attributes:
        identity: Driver identity and capabilities
        client: Live connection to use from now on
        metrics_manager: Metrics manager the connection reports to
    """
    identity: DriverIdentity
    client: DriverClient
    metrics_manager: CSIMetricsManager


class CapabilityProbe:
    """
    One-shot startup probe of the backend.

    Fails fatally when the backend cannot answer within the operation
    timeout; the surrounding process is expected to be restarted.
    """

    def __init__(self, connector: Optional[Connector] = None):
        """
        Initialize probe.

        Args:
            connector: Factory creating a client for (endpoint, metrics manager)
        """
        self.connector = connector or GrpcDriverClient

    async def probe(self, endpoint: str, timeout: float) -> ProbeResult:
        """
        Probe the backend and classify it.

        Args:
            endpoint: Backend endpoint
            timeout: Per-operation timeout in seconds

        Returns:
            ProbeResult with identity, connection and metrics manager

        Raises:
            FatalBootstrapError: If any step fails or times out
        """
        metrics_manager = CSIMetricsManager()
        client = self.connector(endpoint, metrics_manager)

        try:
            await self._wait_until_ready(client, timeout)

            name, vendor_version = await self._bounded(
                client.get_plugin_info(timeout), timeout, "GetPluginInfo"
            )
            if not name:
                raise FatalBootstrapError("backend reported an empty driver name")

            logger.info("Detected CSI driver", driver=name, vendor_version=vendor_version)
            metrics_manager.set_driver_name(name)

            legacy_name = legacy_name_for(name)
            if legacy_name is not None:
                logger.info(
                    "Supports migration from in-tree plugin",
                    driver=name,
                    in_tree_plugin=legacy_name,
                )
                # Reconnect so that RPC metrics carry the migrated label
                metrics_manager = CSIMetricsManager(driver_name=name, migrated=True)
                migrated_client = self.connector(endpoint, metrics_manager)
                await client.close()
                client = migrated_client
                await self._wait_until_ready(client, timeout)

            plugin_caps = await self._bounded(
                client.get_plugin_capabilities(timeout), timeout, "GetPluginCapabilities"
            )
            controller_caps = await self._bounded(
                client.get_controller_capabilities(timeout), timeout, "ControllerGetCapabilities"
            )
        except BaseException:
            await client.close()
            raise

        identity = DriverIdentity(
            name=name,
            plugin_capabilities=frozenset(plugin_caps),
            controller_capabilities=frozenset(controller_caps),
            legacy_equivalent_name=legacy_name,
        )

        logger.info(
            "Probed CSI driver capabilities",
            driver=name,
            plugin_capabilities=sorted(c.value for c in identity.plugin_capabilities),
            controller_capabilities=sorted(c.value for c in identity.controller_capabilities),
            migrated=identity.is_migrated,
        )

        return ProbeResult(identity=identity, client=client, metrics_manager=metrics_manager)

    async def _wait_until_ready(self, client: DriverClient, timeout: float) -> None:
        """
        Call Probe until the backend reports ready.

        The backend may legitimately answer "not ready" while it starts;
        that is retried until the timeout budget is spent. Errors are not.
        """
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FatalBootstrapError(f"backend not ready after {timeout}s")

            ready = await self._bounded(client.probe(remaining), remaining, "Probe")
            if ready:
                return

            logger.info("Backend not ready yet, probing again")
            await asyncio.sleep(min(PROBE_INTERVAL, max(deadline - time.monotonic(), 0)))

    async def _bounded(self, call: Awaitable[T], timeout: float, operation: str) -> T:
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            raise FatalBootstrapError(f"{operation} timed out after {timeout}s") from e
        except FatalBootstrapError:
            raise
        except ProvisionerError as e:
            raise FatalBootstrapError(f"{operation} failed: {e}") from e
