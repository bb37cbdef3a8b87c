"""
Tests for the diagnostics HTTP server.
"""

import aiohttp
import grpc
import pytest

from csiprovisioner.diagnostics import LEADER_HEALTH_PATH, DiagnosticsServer, parse_address
from csiprovisioner.errors import FatalConfigurationError
from csiprovisioner.metrics import COMPONENT_REGISTRY, WORKQUEUE_ADDS, CSIMetricsManager, MergedGatherer


class TestParseAddress:
    """Test listen address parsing."""

    def test_host_and_port(self):
        assert parse_address("127.0.0.1:8080") == ("127.0.0.1", 8080)

    def test_empty_host(self):
        assert parse_address(":8080") == ("0.0.0.0", 8080)

    def test_ipv6(self):
        assert parse_address("[::1]:9090") == ("::1", 9090)

    @pytest.mark.parametrize("address", ["8080", "host:", "host:port"])
    def test_invalid(self, address):
        with pytest.raises(FatalConfigurationError):
            parse_address(address)


@pytest.mark.asyncio
class TestDiagnosticsServer:
    """Test DiagnosticsServer."""

    async def fetch(self, server, path):
        url = f"http://127.0.0.1:{server.bound_port}{path}"
        async with aiohttp.ClientSession() as session:
            async with session.get(url) as response:
                return response.status, await response.text()

    async def test_merged_metrics(self):
        """Test component and RPC metrics share one exposition."""
        WORKQUEUE_ADDS.labels(name="diagnostics-test").inc()
        manager = CSIMetricsManager("hostpath.csi.k8s.io")
        manager.record_operation("/csi.v1.Identity/Probe", grpc.StatusCode.OK, 0.01)
        server = DiagnosticsServer(
            "127.0.0.1:0", "/metrics", MergedGatherer([COMPONENT_REGISTRY, manager.registry])
        )

        await server.start()
        try:
            assert server.bound_port != 0
            status, body = await self.fetch(server, "/metrics")
            assert status == 200
            assert 'workqueue_adds_total{name="diagnostics-test"}' in body
            assert "csi_sidecar_operations_seconds_bucket" in body
            assert 'method_name="/csi.v1.Identity/Probe"' in body

            _, body = await self.fetch(server, "/metrics")
            assert 'promhttp_metric_handler_requests_total{code="200"}' in body
        finally:
            await server.stop()

    async def test_custom_metrics_path(self):
        server = DiagnosticsServer("127.0.0.1:0", "custom", MergedGatherer([COMPONENT_REGISTRY]))

        await server.start()
        try:
            status, _ = await self.fetch(server, "/custom")
            assert status == 200
            status, _ = await self.fetch(server, "/metrics")
            assert status == 404
        finally:
            await server.stop()

    async def test_leader_health(self):
        """Test the health endpoint follows the configured check."""
        server = DiagnosticsServer("127.0.0.1:0", "/metrics", MergedGatherer())
        healthy = [True]

        await server.start()
        try:
            status, _ = await self.fetch(server, LEADER_HEALTH_PATH)
            assert status == 404

            server.set_health_check(lambda: healthy[0])
            status, body = await self.fetch(server, LEADER_HEALTH_PATH)
            assert (status, body) == (200, "ok")

            healthy[0] = False
            status, _ = await self.fetch(server, LEADER_HEALTH_PATH)
            assert status == 500
        finally:
            await server.stop()

    async def test_port_in_use(self):
        """Test a bind failure is a configuration error."""
        first = DiagnosticsServer("127.0.0.1:0", "/metrics", MergedGatherer())
        await first.start()
        try:
            second = DiagnosticsServer(f"127.0.0.1:{first.bound_port}", "/metrics", MergedGatherer())
            with pytest.raises(FatalConfigurationError):
                await second.start()
        finally:
            await first.stop()
