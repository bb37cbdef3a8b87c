"""
Tests for owner resolution.
"""

import pytest

from csiprovisioner.errors import FatalBootstrapError, OwnerLookupError
from csiprovisioner.owner import NO_OWNER, OwnerReference, OwnershipResolver

from fakes import FakeCluster, controller_ref, pod

NAMESPACE = "kube-system"


def deployment_chain(cluster: FakeCluster) -> None:
    """Pod -> ReplicaSet -> Deployment."""
    cluster.add("pods", pod("csi-0", NAMESPACE, [controller_ref("ReplicaSet", "csi-rs")]))
    cluster.add("replicasets", {
        "apiVersion": "apps/v1",
        "kind": "ReplicaSet",
        "metadata": {
            "name": "csi-rs",
            "namespace": NAMESPACE,
            "uid": "uid-csi-rs",
            "ownerReferences": [controller_ref("Deployment", "csi")],
        },
    })
    cluster.add("deployments", {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": "csi", "namespace": NAMESPACE, "uid": "uid-csi"},
    })


@pytest.mark.asyncio
class TestOwnershipResolver:
    """Test OwnershipResolver."""

    async def test_disabled_performs_no_lookup(self):
        """Test level -1 returns no owner without touching the cluster."""
        cluster = FakeCluster()
        resolver = OwnershipResolver(cluster)

        owner = await resolver.resolve(NAMESPACE, "csi-0", NO_OWNER)

        assert owner is None
        assert cluster.gets == []

    async def test_level_zero_is_pod(self):
        """Test level 0 returns the pod itself."""
        cluster = FakeCluster()
        deployment_chain(cluster)

        owner = await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 0)

        assert owner == OwnerReference("v1", "Pod", "csi-0", "uid-csi-0")
        assert len(cluster.gets) == 1

    async def test_walks_controller_chain(self):
        """Test levels 1 and 2 resolve the ReplicaSet and Deployment."""
        cluster = FakeCluster()
        deployment_chain(cluster)
        resolver = OwnershipResolver(cluster)

        replica_set = await resolver.resolve(NAMESPACE, "csi-0", 1)
        deployment = await resolver.resolve(NAMESPACE, "csi-0", 2)

        assert replica_set == OwnerReference("apps/v1", "ReplicaSet", "csi-rs", "uid-csi-rs")
        assert deployment == OwnerReference("apps/v1", "Deployment", "csi", "uid-csi")
        assert deployment.to_dict()["controller"] is True

    async def test_chain_too_short(self):
        """Test requesting more levels than exist fails loudly."""
        cluster = FakeCluster()
        deployment_chain(cluster)

        with pytest.raises(OwnerLookupError):
            await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 3)

    async def test_no_controller(self):
        """Test a level without a controller reference fails."""
        cluster = FakeCluster()
        cluster.add("pods", pod("csi-0", NAMESPACE, [
            controller_ref("ReplicaSet", "csi-rs", controller=False),
        ]))

        with pytest.raises(OwnerLookupError):
            await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 1)

    async def test_multiple_controllers(self):
        """Test a level with two controller references fails."""
        cluster = FakeCluster()
        cluster.add("pods", pod("csi-0", NAMESPACE, [
            controller_ref("ReplicaSet", "a"),
            controller_ref("StatefulSet", "b"),
        ]))

        with pytest.raises(OwnerLookupError):
            await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 1)

    async def test_missing_pod(self):
        """Test the starting pod must exist."""
        cluster = FakeCluster()

        with pytest.raises(FatalBootstrapError):
            await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 0)

    async def test_missing_owner_object(self):
        """Test a dangling controller reference fails."""
        cluster = FakeCluster()
        cluster.add("pods", pod("csi-0", NAMESPACE, [controller_ref("ReplicaSet", "gone")]))

        with pytest.raises(OwnerLookupError):
            await OwnershipResolver(cluster).resolve(NAMESPACE, "csi-0", 1)
