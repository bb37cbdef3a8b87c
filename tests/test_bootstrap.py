"""
Tests for controller set assembly.
"""

import asyncio

import pytest

from csiprovisioner.bootstrap import ControllerAssembler
from csiprovisioner.cache.factory import CAPACITIES, CSINODES, NODES, VOLUME_ATTACHMENTS
from csiprovisioner.controllers.capacity import DRIVER_NAME_LABEL, MANAGED_BY_LABEL, ProvisionWrapper
from csiprovisioner.csi.capabilities import ControllerCapability, DriverIdentity, PluginCapability
from csiprovisioner.csi.client import NodeInfo
from csiprovisioner.errors import FatalBootstrapError, FatalConfigurationError
from csiprovisioner.topology import FixedTopology, LiveTopology, Segment
from csiprovisioner.utils.config import ProvisionerSettings

from fakes import FakeCluster, FakeDriver, controller_ref, pod

DRIVER = "hostpath.csi.k8s.io"
ZONE = "topology.hostpath.csi/zone"


def identity(plugin=(), controller=(ControllerCapability.CREATE_DELETE_VOLUME,)):
    return DriverIdentity(
        name=DRIVER,
        plugin_capabilities=frozenset(plugin),
        controller_capabilities=frozenset(controller),
    )


def assembler(ident, cluster=None, driver=None, **settings):
    return ControllerAssembler(
        ProvisionerSettings(**settings),
        ident,
        driver or FakeDriver(),
        cluster or FakeCluster(),
        instance_identity="test-instance",
    )


@pytest.mark.asyncio
class TestControllerAssembler:
    """Test ControllerAssembler."""

    async def test_minimal_backend(self):
        """Test a backend without optional capabilities gets only provisioning."""
        cluster = FakeCluster()

        controllers = await assembler(identity(), cluster).assemble()

        assert controllers.members() == ["provisioning"]
        assert controllers.topology is None
        assert controllers.volume_attachments is None
        assert VOLUME_ATTACHMENTS not in cluster.sourced_kinds()
        assert NODES not in cluster.sourced_kinds()
        assert [f.name for f in controllers.factories] == ["cluster"]

    async def test_attach_capable_backend(self):
        """Test VolumeAttachments are watched only for attach-capable backends."""
        cluster = FakeCluster()
        ident = identity(controller=[
            ControllerCapability.CREATE_DELETE_VOLUME,
            ControllerCapability.PUBLISH_UNPUBLISH_VOLUME,
        ])

        controllers = await assembler(ident, cluster).assemble()

        assert controllers.volume_attachments is not None
        assert VOLUME_ATTACHMENTS in cluster.sourced_kinds()

    async def test_cluster_wide_topology(self):
        """Test topology-aware backends get live node caches."""
        cluster = FakeCluster()
        ident = identity(plugin=[PluginCapability.VOLUME_ACCESSIBILITY_CONSTRAINTS])

        controllers = await assembler(ident, cluster).assemble()

        assert isinstance(controllers.topology, LiveTopology)
        assert NODES in cluster.sourced_kinds()
        assert CSINODES in cluster.sourced_kinds()
        assert "topology" in controllers.members()
        assert "csitopology" in [q.name for q in controllers.queues]

    async def test_node_deployment_uses_fixed_topology(self):
        """Test node-local mode captures the node's segment once."""
        cluster = FakeCluster()
        driver = FakeDriver(node_info=NodeInfo(node_id="node-1-id", accessible_topology={ZONE: "a"}))
        ident = identity(plugin=[PluginCapability.VOLUME_ACCESSIBILITY_CONSTRAINTS])

        controllers = await assembler(
            ident, cluster, driver, enable_node_deployment=True, node_name="node-1"
        ).assemble()

        assert isinstance(controllers.topology, FixedTopology)
        assert controllers.topology.lookup("anything") == Segment.from_dict({ZONE: "a"})
        assert "NodeGetInfo" in driver.calls
        assert NODES not in cluster.sourced_kinds()
        assert CSINODES not in cluster.sourced_kinds()

    async def test_node_info_hangs(self):
        """Test a backend that never answers NodeGetInfo is fatal."""
        driver = FakeDriver()
        driver.hang = "NodeGetInfo"

        with pytest.raises(FatalBootstrapError):
            await assembler(
                identity(), driver=driver, enable_node_deployment=True,
                node_name="node-1", operation_timeout=0.1,
            ).assemble()

    async def test_cloning_controller(self):
        """Test cloning protection runs only for clone-capable backends and shares the claim limiter."""
        ident = identity(controller=[
            ControllerCapability.CREATE_DELETE_VOLUME,
            ControllerCapability.CLONE_VOLUME,
        ])

        controllers = await assembler(ident).assemble()

        assert controllers.cloning is not None
        assert controllers.cloning.queue.rate_limiter is controllers.provisioning.queue.rate_limiter
        assert controllers.members() == ["cloning-protection", "provisioning"]

    async def test_capacity_controller(self):
        """Test capacity publishing watches only its own objects."""
        cluster = FakeCluster()
        cluster.add("pods", pod("csi-0", "kube-system", [controller_ref("StatefulSet", "csi")]))
        cluster.add("statefulsets", {
            "apiVersion": "apps/v1",
            "kind": "StatefulSet",
            "metadata": {"name": "csi", "namespace": "kube-system", "uid": "uid-csi"},
        })
        ident = identity(controller=[
            ControllerCapability.CREATE_DELETE_VOLUME,
            ControllerCapability.GET_CAPACITY,
        ])

        controllers = await assembler(
            ident, cluster, enable_capacity=True, namespace="kube-system",
            pod_name="csi-0", capacity_ownerref_level=1,
        ).assemble()

        assert controllers.capacity is not None
        assert isinstance(controllers.provisioning.provisioner, ProvisionWrapper)
        assert controllers.owner.kind == "StatefulSet"
        assert controllers.owner.name == "csi"
        assert [f.name for f in controllers.factories] == ["cluster", "capacity"]
        assert controllers.capacity.queue.rate_limiter is not controllers.provisioning.queue.rate_limiter

        source = next(s for s in cluster.sources if s.kind == CAPACITIES)
        assert source.namespace == "kube-system"
        assert source.selector == {DRIVER_NAME_LABEL: DRIVER, MANAGED_BY_LABEL: "external-provisioner"}

    async def test_capacity_needs_pod_name(self):
        """Test capacity with an owner but no POD_NAME fails before any lookup."""
        cluster = FakeCluster()

        with pytest.raises(FatalConfigurationError):
            await assembler(
                identity(), cluster, enable_capacity=True, namespace="kube-system",
                capacity_ownerref_level=1,
            ).assemble()

        assert cluster.gets == []
        assert cluster.sources == []


@pytest.mark.asyncio
class TestControllerSet:
    """Test ControllerSet."""

    async def test_sync_run_and_shutdown(self):
        """Test the assembled set syncs, runs and stops on cancel."""
        controllers = await assembler(identity(), cache_sync_timeout=2.0).assemble()
        cancel = asyncio.Event()

        await controllers.wait_for_caches(cancel)
        task = asyncio.create_task(controllers.run(cancel))
        await asyncio.sleep(0.05)
        assert controllers.provisioning.is_running()

        cancel.set()
        await asyncio.wait_for(task, timeout=2.0)
        await controllers.shutdown()

        assert all(q.is_shutting_down() for q in controllers.queues)
