"""
Diagnostics HTTP server.

Serves the merged metrics exposition and, when leader election is active,
the leader election health check. Started before leadership is contended
so that standby instances report as well.
"""

from typing import Callable, Optional, Tuple

from aiohttp import web
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

from csiprovisioner.errors import FatalConfigurationError
from csiprovisioner.metrics import MergedGatherer
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

LEADER_HEALTH_PATH = "/healthz/leader-election"

HealthCheck = Callable[[], bool]


def parse_address(address: str) -> Tuple[str, int]:
    """
    Split "host:port" into its parts.

    An empty host binds all interfaces.

    Raises:
        FatalConfigurationError: If the port is missing or invalid
    """
    host, sep, port = address.rpartition(":")
    if not sep:
        raise FatalConfigurationError(f"invalid diagnostics address {address!r}, expected host:port")
    try:
        port_number = int(port)
    except ValueError as e:
        raise FatalConfigurationError(f"invalid port in diagnostics address {address!r}") from e
    host = host.strip("[]") or "0.0.0.0"
    return host, port_number


class DiagnosticsServer:
    """aiohttp server for metrics and health endpoints."""

    def __init__(
        self,
        address: str,
        metrics_path: str,
        gatherer: MergedGatherer,
        health_check: Optional[HealthCheck] = None,
    ):
        """
        Initialize diagnostics server.

        Args:
            address: Listen address as host:port
            metrics_path: Path of the metrics exposition
            gatherer: Merged metrics sources
            health_check: Leader election health, None when election is off
        """
        self.host, self.port = parse_address(address)
        self.metrics_path = metrics_path if metrics_path.startswith("/") else "/" + metrics_path
        self.gatherer = gatherer
        self.health_check = health_check

        self._handler_registry = CollectorRegistry(auto_describe=True)
        self._handler_requests = Counter(
            "promhttp_metric_handler_requests",
            "Total number of scrapes by HTTP status code",
            ["code"],
            registry=self._handler_registry,
        )
        self.gatherer.add(self._handler_registry)

        self._runner: Optional[web.AppRunner] = None

    def set_health_check(self, health_check: Optional[HealthCheck]) -> None:
        self.health_check = health_check

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(self.metrics_path, self._handle_metrics)
        app.router.add_get(LEADER_HEALTH_PATH, self._handle_leader_health)
        return app

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        try:
            body = generate_latest(self.gatherer)
        except Exception as e:
            logger.error("Failed to gather metrics", error=str(e))
            self._handler_requests.labels(code="500").inc()
            return web.Response(status=500, text=f"error gathering metrics: {e}")

        self._handler_requests.labels(code="200").inc()
        return web.Response(body=body, headers={"Content-Type": CONTENT_TYPE_LATEST})

    async def _handle_leader_health(self, request: web.Request) -> web.Response:
        if self.health_check is None:
            return web.Response(status=404, text="leader election not enabled")
        if self.health_check():
            return web.Response(text="ok")
        return web.Response(status=500, text="leader election lease renewal is overdue")

    async def start(self) -> None:
        """Bind and start serving."""
        if self._runner is not None:
            logger.warning("Diagnostics server already running")
            return

        runner = web.AppRunner(self._build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise FatalConfigurationError(
                f"failed to listen on {self.host}:{self.port}: {e}"
            ) from e

        self._runner = runner
        logger.info(
            "Diagnostics server started",
            address=f"{self.host}:{self.bound_port}",
            metrics_path=self.metrics_path,
        )

    @property
    def bound_port(self) -> int:
        """Actual port, which differs from the configured one when that is 0."""
        if self._runner is None:
            return self.port
        for address in self._runner.addresses:
            if isinstance(address, tuple) and len(address) >= 2:
                return address[1]
        return self.port

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("Diagnostics server stopped")
