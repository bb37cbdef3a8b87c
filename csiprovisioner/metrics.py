"""
Metrics sources for the diagnostics endpoint.

Two independent registries exist:
- the component registry, holding work queue and leader election metrics
- the CSI metrics manager registry, holding backend RPC latencies

Both are merged into a single exposition by MergedGatherer.
"""

import time
from typing import Iterable, List, Optional

import grpc
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.metrics_core import Metric

from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

COMPONENT_REGISTRY = CollectorRegistry(auto_describe=True)

WORKQUEUE_DEPTH = Gauge(
    "workqueue_depth",
    "Current depth of workqueue",
    ["name"],
    registry=COMPONENT_REGISTRY,
)
WORKQUEUE_ADDS = Counter(
    "workqueue_adds",
    "Total number of adds handled by workqueue",
    ["name"],
    registry=COMPONENT_REGISTRY,
)
WORKQUEUE_RETRIES = Counter(
    "workqueue_retries",
    "Total number of retries handled by workqueue",
    ["name"],
    registry=COMPONENT_REGISTRY,
)
WORKQUEUE_WORK_DURATION = Histogram(
    "workqueue_work_duration_seconds",
    "How long in seconds processing an item from workqueue takes",
    ["name"],
    registry=COMPONENT_REGISTRY,
)
LEADER_ELECTION_STATUS = Gauge(
    "leader_election_master_status",
    "Gauge of if the reporting system is master of the relevant lease, 0 indicates backup, 1 indicates master",
    ["name"],
    registry=COMPONENT_REGISTRY,
)

SUBSYSTEM_SIDECAR = "csi_sidecar"


class CSIMetricsManager:
    """
    Records latency of every RPC issued to the backend.

    Each manager owns its registry so that a re-created manager (for
    example after migration detection) starts from a clean slate.
    """

    def __init__(
        self,
        driver_name: str = "",
        migrated: bool = False,
        subsystem: str = SUBSYSTEM_SIDECAR,
    ):
        """
        Initialize metrics manager.

        Args:
            driver_name: Backend driver name, may be set later
            migrated: Whether the driver supersedes a legacy in-tree plugin
            subsystem: Metric name prefix
        """
        self.driver_name = driver_name
        self.migrated = migrated
        self.registry = CollectorRegistry(auto_describe=True)

        self._operations = Histogram(
            f"{subsystem}_operations_seconds",
            "Container Storage Interface operation duration with gRPC error code status total",
            ["driver_name", "method_name", "grpc_status_code", "migrated"],
            buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 15, 25, 50, 120, 300, 600),
            registry=self.registry,
        )

    def set_driver_name(self, driver_name: str) -> None:
        self.driver_name = driver_name

    def record_operation(self, method: str, code: grpc.StatusCode, duration: float) -> None:
        """
        Record one completed RPC.

        Args:
            method: Full gRPC method name
            code: Resulting status code
            duration: Elapsed seconds
        """
        self._operations.labels(
            driver_name=self.driver_name,
            method_name=method,
            grpc_status_code=code.name,
            migrated=str(self.migrated).lower(),
        ).observe(duration)

    def interceptor(self) -> "MetricsInterceptor":
        return MetricsInterceptor(self)


class MetricsInterceptor(grpc.aio.UnaryUnaryClientInterceptor):
    """gRPC client interceptor feeding a CSIMetricsManager."""

    def __init__(self, manager: CSIMetricsManager):
        self.manager = manager

    async def intercept_unary_unary(self, continuation, client_call_details, request):
        start = time.monotonic()
        call = await continuation(client_call_details, request)
        code = await call.code()

        method = client_call_details.method
        if isinstance(method, bytes):
            method = method.decode()

        self.manager.record_operation(method, code, time.monotonic() - start)
        return call


class MergedGatherer:
    """
    Collector combining several registries into one exposition.

    Usable anywhere prometheus_client expects a registry.
    """

    def __init__(self, registries: Optional[List[CollectorRegistry]] = None):
        self._registries: List[CollectorRegistry] = list(registries or [])

    def add(self, registry: CollectorRegistry) -> None:
        self._registries.append(registry)

    def collect(self) -> Iterable[Metric]:
        seen = set()
        for registry in self._registries:
            for metric in registry.collect():
                # First source wins on duplicate family names
                if metric.name in seen:
                    continue
                seen.add(metric.name)
                yield metric
