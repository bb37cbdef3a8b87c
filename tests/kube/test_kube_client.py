"""
Tests for the cluster client helpers and event recording.
"""

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from kubernetes.client.rest import ApiException

from csiprovisioner.errors import PermanentOperationalError, TransientOperationalError
from csiprovisioner.kube.client import (
    RESOURCE_KINDS,
    ConflictError,
    KubernetesClusterClient,
    TokenBucket,
    _translate,
    format_selector,
)
from csiprovisioner.kube.events import WARNING, EventRecorder

from fakes import FakeCluster, wait_for


class TestHelpers:
    """Test selector formatting and API error mapping."""

    def test_format_selector(self):
        assert format_selector(None) is None
        assert format_selector({"b": "2", "a": "1"}) == "a=1,b=2"

    def test_conflict(self):
        assert isinstance(_translate(ApiException(status=409, reason="Conflict")), ConflictError)

    @pytest.mark.parametrize("status", [400, 403, 404, 422])
    def test_permanent(self, status):
        assert isinstance(_translate(ApiException(status=status, reason="x")), PermanentOperationalError)

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_transient(self, status):
        error = _translate(ApiException(status=status, reason="x"))
        assert isinstance(error, TransientOperationalError)
        assert not isinstance(error, ConflictError)


@pytest.mark.asyncio
class TestTokenBucket:
    """Test TokenBucket."""

    async def test_burst_then_throttle(self):
        """Test a burst passes immediately and the next request waits."""
        bucket = TokenBucket(qps=20, burst=3)

        start = time.monotonic()
        for _ in range(3):
            await bucket.acquire()
        assert time.monotonic() - start < 0.04

        await bucket.acquire()
        assert time.monotonic() - start >= 0.04

    async def test_disabled(self):
        bucket = TokenBucket(qps=0, burst=1)

        for _ in range(100):
            await bucket.acquire()


@pytest.mark.asyncio
class TestEventRecorder:
    """Test EventRecorder."""

    async def test_record(self):
        """Test the event references the object and the component."""
        cluster = FakeCluster()
        recorder = EventRecorder(cluster, "hostpath.csi.k8s.io")
        claim = {
            "apiVersion": "v1",
            "kind": "PersistentVolumeClaim",
            "metadata": {"name": "data", "namespace": "apps", "uid": "uid-data"},
        }

        await recorder.record(claim, WARNING, "ProvisioningFailed", "invalid parameters")

        events = list(cluster.objects["events"].values())
        assert len(events) == 1
        event = events[0]
        assert event["metadata"]["namespace"] == "apps"
        assert event["metadata"]["name"].startswith("data.")
        assert event["involvedObject"]["uid"] == "uid-data"
        assert event["reason"] == "ProvisioningFailed"
        assert event["type"] == "Warning"
        assert event["source"] == {"component": "hostpath.csi.k8s.io"}


class StubApiClient:

    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class StubObject:

    def __init__(self, data):
        self.data = data

    def to_dict(self):
        return self.data


class StubResource:

    def create(self, body, namespace=None):
        return StubObject(dict(body, metadata=dict(body["metadata"], namespace=namespace)))


class StubResources:

    def get(self, api_version, kind):
        return StubResource()


class StubDynamic:
    resources = StubResources()


def stub_client(burst=2):
    client = KubernetesClusterClient(StubApiClient(), qps=0, burst=burst)
    client._dynamic = StubDynamic()
    return client


def watch_threads():
    return [t for t in threading.enumerate() if t.name.startswith("kube-watch-")]


@pytest.mark.asyncio
class TestKubernetesClusterClient:
    """Test request and watch threading of KubernetesClusterClient."""

    async def test_requests_run_while_every_informer_watches(self):
        """Test open watches on all kinds leave room for requests."""
        # A default pool this small would be exhausted by the first watch
        asyncio.get_running_loop().set_default_executor(ThreadPoolExecutor(max_workers=1))
        client = stub_client()
        watching = []

        def blocking_stream(resource, watcher, **params):
            watching.append(params)
            while not watcher._stop:
                time.sleep(0.01)
            return
            yield

        client.stream = blocking_stream
        streams = [client.source(kind).watch("") for kind in RESOURCE_KINDS]
        pending = [asyncio.ensure_future(stream.__anext__()) for stream in streams]
        try:
            await wait_for(lambda: len(watching) == len(RESOURCE_KINDS))

            created = await asyncio.wait_for(
                client.create("events", {"metadata": {"name": "e1"}}, namespace="apps"),
                timeout=2.0,
            )
            assert created["metadata"] == {"name": "e1", "namespace": "apps"}
        finally:
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            await client.close()

        await wait_for(lambda: not watch_threads())
        assert client.api_client.closed

    async def test_watch_events(self):
        """Test events are relayed, bookmarks skipped and errors raised."""
        client = stub_client()

        def stream(resource, watcher, **params):
            assert params["resource_version"] == "42"
            assert params["label_selector"] == "app=x"
            yield {"type": "ADDED", "raw_object": {"metadata": {"name": "a"}}}
            yield {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "43"}}}
            yield {"type": "ERROR", "raw_object": {"code": 410}}

        client.stream = stream
        events = client.source("pods", "apps", {"app": "x"}).watch("42")

        assert await events.__anext__() == ("ADDED", {"metadata": {"name": "a"}})
        with pytest.raises(TransientOperationalError, match="410"):
            await events.__anext__()
        await client.close()

    async def test_watch_failure(self):
        """Test an exception on the watch thread ends the stream as transient."""
        client = stub_client()

        def stream(resource, watcher, **params):
            raise ApiException(status=500, reason="boom")

        client.stream = stream
        events = client.source("nodes").watch("")

        with pytest.raises(TransientOperationalError, match="boom"):
            await events.__anext__()
        await client.close()
