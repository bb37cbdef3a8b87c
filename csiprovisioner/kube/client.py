"""
Cluster-state client.

ClusterClient is the seam between the sidecar and the orchestrator's API.
KubernetesClusterClient implements it with the official kubernetes client,
running its blocking calls on threads owned by the client.
"""

import asyncio
import functools
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Optional, Tuple

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes import watch as k8s_watch
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.dynamic import DynamicClient

from csiprovisioner.cache.informer import ResourceSource
from csiprovisioner.errors import (
    FatalBootstrapError,
    PermanentOperationalError,
    TransientOperationalError,
)
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

# plural name -> (apiVersion, kind)
RESOURCE_KINDS: Dict[str, Tuple[str, str]] = {
    "nodes": ("v1", "Node"),
    "pods": ("v1", "Pod"),
    "persistentvolumeclaims": ("v1", "PersistentVolumeClaim"),
    "persistentvolumes": ("v1", "PersistentVolume"),
    "events": ("v1", "Event"),
    "csinodes": ("storage.k8s.io/v1", "CSINode"),
    "storageclasses": ("storage.k8s.io/v1", "StorageClass"),
    "volumeattachments": ("storage.k8s.io/v1", "VolumeAttachment"),
    "csistoragecapacities": ("storage.k8s.io/v1", "CSIStorageCapacity"),
    "leases": ("coordination.k8s.io/v1", "Lease"),
}

# Seconds; the server ends each watch after WATCH_TIMEOUT and the informer re-watches
WATCH_TIMEOUT = 60
WATCH_READ_GRACE = 10

_END = object()


class ConflictError(TransientOperationalError):
    """Write rejected because the object changed or already exists."""
    pass


def format_selector(label_selector: Optional[Dict[str, str]]) -> Optional[str]:
    if not label_selector:
        return None
    return ",".join(f"{k}={v}" for k, v in sorted(label_selector.items()))


class ClusterClient(ABC):
    """Access to cluster objects needed by the sidecar."""

    @abstractmethod
    def source(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> ResourceSource:
        """List/watch source for informers."""

    @abstractmethod
    async def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Fetch one object, None if it does not exist."""

    @abstractmethod
    async def create(self, kind: str, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def replace(
        self,
        kind: str,
        name: str,
        body: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        ...

    async def close(self) -> None:
        """Release connections and threads; called once at shutdown."""


class TokenBucket:
    """
    Client-side request throttle (QPS with burst).
    """

    def __init__(self, qps: float, burst: int):
        self.qps = qps
        self.burst = max(burst, 1)
        self._tokens = float(self.burst)
        self._last = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        if self.qps <= 0:
            return
        async with self._lock:
            while True:
                now = time.monotonic()
                self._tokens = min(self.burst, self._tokens + (now - self._last) * self.qps)
                self._last = now
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.qps)


def load_api_client(master: str = "", kubeconfig: str = "") -> k8s_client.ApiClient:
    """
    Build an API client from kubeconfig/master or the in-cluster environment.

    Raises:
        FatalBootstrapError: If no usable configuration is found
    """
    try:
        if master or kubeconfig:
            logger.info("Building kube config from master/kubeconfig", kubeconfig=kubeconfig)
            configuration = k8s_client.Configuration()
            if kubeconfig:
                k8s_config.load_kube_config(
                    config_file=kubeconfig,
                    client_configuration=configuration,
                )
            if master:
                configuration.host = master
        else:
            logger.info("Building kube config for running in cluster")
            configuration = k8s_client.Configuration()
            k8s_config.load_incluster_config(client_configuration=configuration)
    except ConfigException as e:
        raise FatalBootstrapError(f"Failed to create kube config: {e}") from e

    return k8s_client.ApiClient(configuration)


class KubernetesClusterClient(ClusterClient):
    """
    ClusterClient backed by the kubernetes dynamic client.

    Requests run on a private thread pool. Each watch owns a daemon thread,
    so any number of informers can stream without starving requests, and
    a watch blocked in a read never holds up interpreter exit.
    """

    def __init__(
        self,
        api_client: k8s_client.ApiClient,
        qps: float = 5.0,
        burst: int = 10,
        watch_timeout: int = WATCH_TIMEOUT,
    ):
        """
        Initialize client.

        Args:
            api_client: Configured kubernetes API client
            qps: Sustained request rate
            burst: Request burst size, also the request pool size
            watch_timeout: Server-side lifetime of one watch request
        """
        self.api_client = api_client
        self.watch_timeout = watch_timeout
        self._dynamic: Optional[DynamicClient] = None
        self._throttle = TokenBucket(qps, burst)
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, burst), thread_name_prefix="kube-api"
        )

    async def _call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def _resource(self, api_version: str, kind: str):
        if self._dynamic is None:
            # Performs discovery, which blocks
            self._dynamic = await self._call(DynamicClient, self.api_client)
        return await self._call(self._dynamic.resources.get, api_version=api_version, kind=kind)

    async def _resource_for(self, kind: str):
        api_version, kind_name = RESOURCE_KINDS[kind]
        return await self._resource(api_version, kind_name)

    def stream(self, resource, watcher: k8s_watch.Watch, **params: Any) -> Iterator[Dict[str, Any]]:
        """
        Blocking iterator over raw watch events, run on a watch thread.

        The read timeout outlasts the server-side timeout so an idle watch
        ends cleanly, and a dead connection ends shortly after.
        """
        return watcher.stream(
            resource.get,
            serialize=False,
            timeout_seconds=self.watch_timeout,
            _request_timeout=self.watch_timeout + WATCH_READ_GRACE,
            **params,
        )

    def source(
        self,
        kind: str,
        namespace: Optional[str] = None,
        label_selector: Optional[Dict[str, str]] = None,
    ) -> ResourceSource:
        return KubernetesSource(self, kind, namespace, label_selector)

    async def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        resource = await self._resource(api_version, kind)
        await self._throttle.acquire()
        try:
            obj = await self._call(resource.get, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e) from e
        return obj.to_dict()

    async def create(self, kind: str, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        resource = await self._resource_for(kind)
        await self._throttle.acquire()
        try:
            obj = await self._call(resource.create, body=body, namespace=namespace)
        except ApiException as e:
            raise _translate(e) from e
        return obj.to_dict()

    async def replace(
        self,
        kind: str,
        name: str,
        body: Dict[str, Any],
        namespace: Optional[str] = None,
    ) -> Dict[str, Any]:
        resource = await self._resource_for(kind)
        await self._throttle.acquire()
        try:
            obj = await self._call(resource.replace, body=body, name=name, namespace=namespace)
        except ApiException as e:
            raise _translate(e) from e
        return obj.to_dict()

    async def delete(self, kind: str, name: str, namespace: Optional[str] = None) -> None:
        resource = await self._resource_for(kind)
        await self._throttle.acquire()
        try:
            await self._call(resource.delete, name=name, namespace=namespace)
        except ApiException as e:
            if e.status == 404:
                return
            raise _translate(e) from e

    async def close(self) -> None:
        # Queued requests are dropped; running ones finish on their own
        self._executor.shutdown(wait=False, cancel_futures=True)
        self.api_client.close()
        logger.debug("Cluster client closed")


class KubernetesSource(ResourceSource):
    """List/watch of one kind through the dynamic client."""

    def __init__(
        self,
        client: KubernetesClusterClient,
        kind: str,
        namespace: Optional[str],
        label_selector: Optional[Dict[str, str]],
    ):
        self.client = client
        self.kind = kind
        self.namespace = namespace
        self.label_selector = format_selector(label_selector)

    async def list(self) -> Tuple[List[Dict[str, Any]], str]:
        resource = await self.client._resource_for(self.kind)
        await self.client._throttle.acquire()
        try:
            result = await self.client._call(
                resource.get,
                namespace=self.namespace,
                label_selector=self.label_selector,
            )
        except ApiException as e:
            raise _translate(e) from e

        data = result.to_dict()
        resource_version = (data.get("metadata") or {}).get("resourceVersion", "")
        return data.get("items") or [], resource_version

    async def watch(self, resource_version: str) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        resource = await self.client._resource_for(self.kind)
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()
        watcher = k8s_watch.Watch()
        stopped = threading.Event()

        def post(item: Any) -> None:
            if stopped.is_set():
                return
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Loop already closed, nobody is listening
                stopped.set()

        def pump() -> None:
            try:
                for event in self.client.stream(
                    resource,
                    watcher,
                    namespace=self.namespace,
                    label_selector=self.label_selector,
                    resource_version=resource_version or None,
                ):
                    if stopped.is_set():
                        break
                    post((event["type"], event["raw_object"]))
            except Exception as e:
                post(e)
            finally:
                post(_END)

        thread = threading.Thread(target=pump, name=f"kube-watch-{self.kind}", daemon=True)
        thread.start()
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, Exception):
                    raise TransientOperationalError(f"watch {self.kind}: {item}") from item
                event_type, obj = item
                if event_type == "BOOKMARK":
                    continue
                if event_type == "ERROR":
                    # Typically 410 Gone; the informer relists
                    raise TransientOperationalError(f"watch {self.kind}: {obj}")
                yield event_type, obj
        finally:
            stopped.set()
            watcher.stop()


def _translate(e: ApiException) -> Exception:
    if e.status == 409:
        return ConflictError(e.reason or "conflict")
    if e.status in (400, 403, 404, 422):
        return PermanentOperationalError(f"{e.status}: {e.reason}")
    return TransientOperationalError(f"{e.status}: {e.reason}")
