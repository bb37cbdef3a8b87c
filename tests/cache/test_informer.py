"""
Tests for shared informers and the informer factory.
"""

import asyncio

import pytest

from csiprovisioner.cache import informer as informer_module
from csiprovisioner.cache.factory import CAPACITIES, CLAIMS, InformerFactory
from csiprovisioner.cache.informer import Lister, ResourceSource, SharedInformer, object_key

from fakes import FakeCluster, wait_for


def claim(name: str, namespace: str = "default", labels=None):
    return {
        "apiVersion": "v1",
        "kind": "PersistentVolumeClaim",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(labels or {})},
    }


class TrackingSource(ResourceSource):
    """Source recording how its watch streams are opened and closed."""

    def __init__(self, fail_after=None, expire_after=None):
        self.fail_after = fail_after
        self.expire_after = expire_after
        self.versions = []
        self.lists = 0
        self.opened = 0
        self.closed = 0

    async def list(self):
        self.lists += 1
        return [claim("one")], str(self.lists)

    async def watch(self, resource_version):
        self.opened += 1
        self.versions.append(resource_version)
        try:
            if self.expire_after is not None and self.opened == 1:
                yield "MODIFIED", self.expire_after
                return
            if self.fail_after is not None:
                yield "MODIFIED", self.fail_after
                raise RuntimeError("stream broke")
            await asyncio.Event().wait()
            yield "ADDED", claim("never")
        finally:
            # Cleanup that itself suspends
            await asyncio.sleep(0)
            self.closed += 1


class TestLister:
    """Test Lister."""

    def test_get_and_list(self):
        """Test lookups by name, namespace and labels."""
        store = {
            "a/one": claim("one", "a", {"app": "x"}),
            "b/two": claim("two", "b", {"app": "y"}),
        }
        lister = Lister(store)

        assert lister.get("one", "a")["metadata"]["name"] == "one"
        assert lister.get("one", "b") is None
        assert len(lister.list()) == 2
        assert [o["metadata"]["name"] for o in lister.list(namespace="b")] == ["two"]
        assert [o["metadata"]["name"] for o in lister.list(label_selector={"app": "x"})] == ["one"]

    def test_object_key(self):
        assert object_key(claim("one", "a")) == "a/one"
        assert object_key({"metadata": {"name": "node-1"}}) == "node-1"


@pytest.mark.asyncio
class TestSharedInformer:
    """Test SharedInformer."""

    async def test_list_then_watch(self):
        """Test initial list, sync flag and watched changes."""
        cluster = FakeCluster()
        cluster.add(CLAIMS, claim("one"))
        informer = SharedInformer(CLAIMS, cluster.source(CLAIMS))
        added, updated, deleted = [], [], []
        informer.add_event_handler(
            on_add=lambda o: added.append(o["metadata"]["name"]),
            on_update=lambda old, new: updated.append(new["metadata"]["name"]),
            on_delete=lambda o: deleted.append(o["metadata"]["name"]),
        )

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        try:
            await wait_for(informer.has_synced)
            assert added == ["one"]

            cluster.add(CLAIMS, claim("two"))
            cluster.add(CLAIMS, claim("one"))
            cluster.remove(CLAIMS, "two", "default")
            await wait_for(lambda: deleted == ["two"])

            assert "two" in added
            assert "one" in updated
            assert informer.lister().get("one", "default") is not None
            assert informer.lister().get("two", "default") is None
        finally:
            cancel.set()
            await asyncio.wait_for(task, timeout=2.0)

    async def test_late_handler_gets_current_content(self):
        """Test handlers added after sync see existing objects."""
        cluster = FakeCluster()
        cluster.add(CLAIMS, claim("one"))
        informer = SharedInformer(CLAIMS, cluster.source(CLAIMS))

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        try:
            await wait_for(informer.has_synced)
            seen = []
            informer.add_event_handler(on_add=lambda o: seen.append(o["metadata"]["name"]))
            assert seen == ["one"]
        finally:
            cancel.set()
            await asyncio.wait_for(task, timeout=2.0)

    async def test_resync_redelivers(self):
        """Test periodic resync delivers updates for unchanged objects."""
        cluster = FakeCluster()
        cluster.add(CLAIMS, claim("one"))
        informer = SharedInformer(CLAIMS, cluster.source(CLAIMS), resync_period=0.05)
        updates = []
        informer.add_event_handler(on_update=lambda old, new: updates.append(new["metadata"]["name"]))

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        try:
            await wait_for(lambda: len(updates) >= 2)
        finally:
            cancel.set()
            await asyncio.wait_for(task, timeout=2.0)

    async def test_cancel_closes_watch_stream(self):
        """Test cancellation runs the stream's own cleanup to completion."""
        source = TrackingSource()
        informer = SharedInformer(CLAIMS, source)

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        await wait_for(lambda: source.opened == 1)
        cancel.set()
        await asyncio.wait_for(task, timeout=2.0)

        assert source.closed == 1
        assert source.lists == 1

    async def test_broken_stream_relists(self, monkeypatch):
        """Test a failing watch stream is closed and followed by a fresh list."""
        monkeypatch.setattr(informer_module, "WATCH_RESTART_DELAY", 0.01)
        source = TrackingSource(fail_after=claim("one", labels={"v": "2"}))
        informer = SharedInformer(CLAIMS, source)

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        try:
            await wait_for(lambda: source.lists >= 2)
            assert source.closed >= 1
            assert informer.lister().get("one", "default") is not None
        finally:
            cancel.set()
            await asyncio.wait_for(task, timeout=2.0)
        assert source.closed == source.opened

    async def test_expired_watch_resumes(self, monkeypatch):
        """Test a watch that ends cleanly is reopened without a new list."""
        monkeypatch.setattr(informer_module, "WATCH_RESTART_DELAY", 0.01)
        updated = claim("one")
        updated["metadata"]["resourceVersion"] = "7"
        source = TrackingSource(expire_after=updated)
        informer = SharedInformer(CLAIMS, source)

        cancel = asyncio.Event()
        task = asyncio.create_task(informer.run(cancel))
        try:
            await wait_for(lambda: source.opened == 2)
            assert source.versions == ["1", "7"]
            assert source.lists == 1
        finally:
            cancel.set()
            await asyncio.wait_for(task, timeout=2.0)


@pytest.mark.asyncio
class TestInformerFactory:
    """Test InformerFactory."""

    async def test_shared_informer_per_kind(self):
        """Test one informer per kind."""
        factory = InformerFactory(FakeCluster())

        assert factory.informer(CLAIMS) is factory.informer(CLAIMS)
        assert factory.requested_kinds() == [CLAIMS]

    async def test_scoped_factory(self):
        """Test namespace and label scoping reach the source."""
        cluster = FakeCluster()
        selector = {"csi.storage.k8s.io/drivername": "hostpath.csi.k8s.io"}
        cluster.add(CAPACITIES, {"metadata": {"name": "mine", "namespace": "ns", "labels": selector}})
        cluster.add(CAPACITIES, {"metadata": {"name": "other-ns", "namespace": "x", "labels": selector}})
        cluster.add(CAPACITIES, {"metadata": {"name": "unlabelled", "namespace": "ns"}})

        factory = InformerFactory(cluster, namespace="ns", label_selector=selector, name="capacity")
        informer = factory.informer(CAPACITIES)

        cancel = asyncio.Event()
        factory.start(cancel)
        try:
            result = await factory.wait_for_cache_sync(cancel, timeout=2.0)
            assert result == {CAPACITIES: True}
            assert [o["metadata"]["name"] for o in informer.lister().list()] == ["mine"]
        finally:
            cancel.set()
            await factory.shutdown()

    async def test_wait_times_out(self):
        """Test the wait reports unsynced kinds after the timeout."""
        cluster = FakeCluster()
        cluster.never_sync.add(CLAIMS)
        factory = InformerFactory(cluster)
        factory.informer(CLAIMS)

        cancel = asyncio.Event()
        factory.start(cancel)
        try:
            result = await factory.wait_for_cache_sync(cancel, timeout=0.2)
            assert result == {CLAIMS: False}
        finally:
            cancel.set()
            await factory.shutdown()
