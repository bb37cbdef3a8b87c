"""
Execution coordinator.

Sequences startup and steady state:

    BOOTSTRAPPING -> CACHE_SYNCING -> STANDALONE | AWAITING_LEADERSHIP
                  -> LEADING -> SHUTTING_DOWN

Every fatal condition before LEADING goes straight to SHUTTING_DOWN and
yields a non-zero exit code. One root cancellation event stops everything.
"""

import asyncio
import random
import time
from enum import Enum, IntEnum
from typing import Callable, List, Optional

from csiprovisioner.bootstrap import ControllerAssembler, ControllerSet
from csiprovisioner.csi.client import DriverClient
from csiprovisioner.diagnostics import DiagnosticsServer
from csiprovisioner.election import KubernetesLeaseLock, LeaderElection, LeaseLock, lock_name_for
from csiprovisioner.errors import CacheSyncError, ProvisionerError
from csiprovisioner.kube.client import ClusterClient, KubernetesClusterClient, load_api_client
from csiprovisioner.metrics import COMPONENT_REGISTRY, MergedGatherer
from csiprovisioner.probe import CapabilityProbe
from csiprovisioner.utils.config import ProvisionerSettings
from csiprovisioner.utils.logging import bind_identity, clear_identity, get_logger

logger = get_logger(__name__)

ClusterFactory = Callable[[ProvisionerSettings], ClusterClient]
LockFactory = Callable[[ClusterClient, str, str], LeaseLock]


class CoordinatorState(Enum):
    BOOTSTRAPPING = "bootstrapping"
    CACHE_SYNCING = "cache_syncing"
    STANDALONE = "standalone"
    AWAITING_LEADERSHIP = "awaiting_leadership"
    LEADING = "leading"
    SHUTTING_DOWN = "shutting_down"


class ExitCode(IntEnum):
    OK = 0
    FATAL = 1


def make_identity(driver_name: str, node_name: str = "") -> str:
    """Unique identity of this instance: <millis>-<random>-<driver>[-<node>]."""
    identity = f"{int(time.time() * 1000)}-{random.randint(0, 9999)}-{driver_name}"
    if node_name:
        identity = f"{identity}-{node_name}"
    return identity


def default_cluster_factory(settings: ProvisionerSettings) -> ClusterClient:
    api_client = load_api_client(settings.kube_master, settings.kubeconfig)
    return KubernetesClusterClient(api_client, settings.kube_api_qps, settings.kube_api_burst)


class ExecutionCoordinator:
    """Runs one instance of the sidecar from probe to shutdown."""

    def __init__(
        self,
        settings: ProvisionerSettings,
        cluster_factory: Optional[ClusterFactory] = None,
        probe: Optional[CapabilityProbe] = None,
        lock_factory: Optional[LockFactory] = None,
    ):
        """
        Initialize coordinator.

        Args:
            settings: Settings, validated again before anything else happens
            cluster_factory: Creates the cluster-state client
            probe: Capability probe of the backend
            lock_factory: Creates the leader election lock for
                (cluster, namespace, name)
        """
        self.settings = settings
        self.cluster_factory = cluster_factory or default_cluster_factory
        self.probe = probe or CapabilityProbe()
        self.lock_factory = lock_factory or KubernetesLeaseLock

        self.state = CoordinatorState.BOOTSTRAPPING
        self.history: List[CoordinatorState] = [self.state]
        self.identity: Optional[str] = None
        self.controllers: Optional[ControllerSet] = None
        self.election: Optional[LeaderElection] = None
        self.diagnostics: Optional[DiagnosticsServer] = None
        self._driver: Optional[DriverClient] = None
        self._cluster: Optional[ClusterClient] = None

    def _transition(self, state: CoordinatorState) -> None:
        if state == self.state:
            return
        logger.info("State transition", from_state=self.state.value, to_state=state.value)
        self.state = state
        self.history.append(state)

    async def run(self, cancel: asyncio.Event) -> ExitCode:
        """
        Run until cancel is set or a fatal error occurs.

        Args:
            cancel: Root cancellation signal

        Returns:
            Process exit code
        """
        try:
            await self._run(cancel)
            return ExitCode.OK
        except CacheSyncError as e:
            if cancel.is_set():
                logger.info("Cancelled while waiting for caches")
                return ExitCode.OK
            logger.error("Fatal error", error=str(e), state=self.state.value)
            return ExitCode.FATAL
        except ProvisionerError as e:
            logger.error("Fatal error", error=str(e), error_type=type(e).__name__, state=self.state.value)
            return ExitCode.FATAL
        except Exception as e:
            logger.error("Unexpected error", error=str(e), state=self.state.value, exc_info=True)
            return ExitCode.FATAL
        finally:
            self._transition(CoordinatorState.SHUTTING_DOWN)
            await self._shutdown()

    async def _run(self, cancel: asyncio.Event) -> None:
        settings = self.settings
        self._transition(CoordinatorState.BOOTSTRAPPING)

        # Configuration problems surface before the backend is contacted
        settings.validate()
        cluster = self._cluster = self.cluster_factory(settings)

        result = await self.probe.probe(settings.csi_address, settings.operation_timeout)
        self._driver = result.client
        driver_name = result.identity.name

        node_name = settings.node_name if settings.enable_node_deployment else ""
        self.identity = make_identity(driver_name, node_name)
        bind_identity(driver=driver_name, identity=self.identity)
        logger.info("Instance identity")

        if settings.diagnostics_address:
            gatherer = MergedGatherer([COMPONENT_REGISTRY, result.metrics_manager.registry])
            self.diagnostics = DiagnosticsServer(
                settings.diagnostics_address,
                settings.metrics_path,
                gatherer,
            )
            await self.diagnostics.start()

        assembler = ControllerAssembler(settings, result.identity, result.client, cluster, self.identity)
        self.controllers = await assembler.assemble()

        self._transition(CoordinatorState.CACHE_SYNCING)
        await self.controllers.wait_for_caches(cancel)

        if not settings.enable_leader_election:
            self._transition(CoordinatorState.STANDALONE)
            await self._lead(cancel)
            return

        namespace = settings.leader_election_namespace or settings.namespace or "default"
        lock = self.lock_factory(cluster, namespace, lock_name_for(driver_name))
        self.election = LeaderElection(
            lock,
            self.identity,
            self._lead,
            lease_duration=settings.lease_duration,
            renew_deadline=settings.renew_deadline,
            retry_period=settings.retry_period,
        )
        # The leadership health check is served only on the full diagnostics endpoint
        if self.diagnostics is not None and settings.http_endpoint:
            election = self.election
            self.diagnostics.set_health_check(
                lambda: election.health_check(settings.leader_health_timeout)
            )

        self._transition(CoordinatorState.AWAITING_LEADERSHIP)
        await self.election.run(cancel)

    async def _lead(self, cancel: asyncio.Event) -> None:
        self._transition(CoordinatorState.LEADING)
        await self.controllers.run(cancel)

    async def _shutdown(self) -> None:
        if self.controllers is not None:
            await self.controllers.shutdown()

        if self._driver is not None:
            await self._driver.close()
            self._driver = None

        if self._cluster is not None:
            await self._cluster.close()
            self._cluster = None

        if self.diagnostics is not None:
            await self.diagnostics.stop()

        logger.info("Shutdown complete")
        clear_identity()
