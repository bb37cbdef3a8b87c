"""
Shared informers: local caches of cluster objects kept current by list+watch.

Objects are held in their JSON (dict) form. Listers are read-only views
shared by reference between controllers; all access happens on the event
loop thread so no locking is required.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)

from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"

WATCH_RESTART_DELAY = 1.0


def object_key(obj: Dict[str, Any]) -> str:
    """
    Get the cache key of an object.

    Args:
        obj: Object in JSON form

    Returns:
        "namespace/name" for namespaced objects, "name" otherwise
    """
    metadata = obj.get("metadata") or {}
    name = metadata.get("name", "")
    namespace = metadata.get("namespace")
    if namespace:
        return f"{namespace}/{name}"
    return name


def labels_match(obj: Dict[str, Any], selector: Optional[Dict[str, str]]) -> bool:
    if not selector:
        return True
    labels = (obj.get("metadata") or {}).get("labels") or {}
    return all(labels.get(k) == v for k, v in selector.items())


class ResourceSource(ABC):
    """List/watch access to one kind of cluster object."""

    @abstractmethod
    async def list(self) -> Tuple[List[Dict[str, Any]], str]:
        """Return (objects, resource_version)."""

    @abstractmethod
    def watch(self, resource_version: str) -> AsyncIterator[Tuple[str, Dict[str, Any]]]:
        """Yield (event_type, object) pairs after resource_version."""


class Lister:
    """Read-only view of an informer's store."""

    def __init__(self, store: Dict[str, Dict[str, Any]]):
        self._store = store

    def get(self, name: str, namespace: Optional[str] = None) -> Optional[Dict[str, Any]]:
        key = f"{namespace}/{name}" if namespace else name
        return self._store.get(key)

    def list(
        self,
        label_selector: Optional[Dict[str, str]] = None,
        namespace: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        List cached objects.

        Args:
            label_selector: Required label values
            namespace: Restrict to one namespace

        Returns:
            Matching objects
        """
        result = []
        for obj in self._store.values():
            if namespace is not None and (obj.get("metadata") or {}).get("namespace") != namespace:
                continue
            if labels_match(obj, label_selector):
                result.append(obj)
        return result

    def __len__(self) -> int:
        return len(self._store)


@dataclass
class EventHandler:
    on_add: Optional[Callable[[Dict[str, Any]], None]] = None
    on_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None
    on_delete: Optional[Callable[[Dict[str, Any]], None]] = None


class SharedInformer:
    """
    Cache of one object kind, shared by all controllers.

    Lists the kind once, marks itself synced, then follows the watch
    stream. A failed watch triggers a fresh list, an expired one resumes
    from the last resource version. A periodic resync re-delivers every
    cached object as an update.
    """

    def __init__(
        self,
        kind: str,
        source: ResourceSource,
        resync_period: float = 0.0,
    ):
        """
        Initialize informer.

        Args:
            kind: Resource kind, used for logging
            source: List/watch source
            resync_period: Seconds between resyncs, 0 disables
        """
        self.kind = kind
        self.source = source
        self.resync_period = resync_period

        self._store: Dict[str, Dict[str, Any]] = {}
        self._handlers: List[EventHandler] = []
        self._synced = False
        self._resource_version = ""

    def lister(self) -> Lister:
        return Lister(self._store)

    def has_synced(self) -> bool:
        return self._synced

    def add_event_handler(
        self,
        on_add: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_update: Optional[Callable[[Dict[str, Any], Dict[str, Any]], None]] = None,
        on_delete: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> None:
        """
        Register callbacks for cache changes.

        Handlers registered after the initial sync receive the current
        content as adds.
        """
        handler = EventHandler(on_add, on_update, on_delete)
        self._handlers.append(handler)
        if self._synced and on_add:
            for obj in list(self._store.values()):
                on_add(obj)

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Keep the cache current until cancel is set.

        Args:
            cancel: Root cancellation signal
        """
        logger.debug("Starting informer", kind=self.kind)
        resync_task = None
        if self.resync_period > 0:
            resync_task = asyncio.create_task(self._resync_loop(cancel))

        relist = True
        try:
            while not cancel.is_set():
                try:
                    if relist:
                        await self._list()
                        relist = False
                    # A watch that simply expired resumes from the last version
                    await self._watch(cancel)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.warning(
                        "Informer list/watch failed, restarting",
                        kind=self.kind,
                        error=str(e),
                    )
                    relist = True
                await _sleep_or_cancel(cancel, WATCH_RESTART_DELAY)
        finally:
            if resync_task:
                resync_task.cancel()
            logger.debug("Informer stopped", kind=self.kind)

    async def _list(self) -> None:
        objects, resource_version = await self.source.list()
        fresh = {object_key(obj): obj for obj in objects}

        for key, old in list(self._store.items()):
            if key not in fresh:
                del self._store[key]
                self._dispatch_delete(old)

        for key, obj in fresh.items():
            old = self._store.get(key)
            self._store[key] = obj
            if old is None:
                self._dispatch_add(obj)
            else:
                self._dispatch_update(old, obj)

        self._resource_version = resource_version
        if not self._synced:
            self._synced = True
            logger.info("Informer synced", kind=self.kind, objects=len(self._store))

    async def _watch(self, cancel: asyncio.Event) -> None:
        stream = self.source.watch(self._resource_version)
        consume = asyncio.ensure_future(self._consume(stream))
        cancel_wait = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait(
                {consume, cancel_wait},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()
            if not consume.done():
                # Cancelling the task closes the generator from inside
                consume.cancel()
                await asyncio.gather(consume, return_exceptions=True)
        if not consume.cancelled():
            consume.result()

    async def _consume(self, stream: AsyncIterator[Tuple[str, Dict[str, Any]]]) -> None:
        try:
            async for event_type, obj in stream:
                self.apply(event_type, obj)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def apply(self, event_type: str, obj: Dict[str, Any]) -> None:
        """
        Apply one watch event to the cache.

        Args:
            event_type: ADDED, MODIFIED or DELETED
            obj: Object carried by the event
        """
        key = object_key(obj)
        resource_version = (obj.get("metadata") or {}).get("resourceVersion")
        if resource_version:
            self._resource_version = resource_version

        if event_type == DELETED:
            old = self._store.pop(key, None)
            if old is not None:
                self._dispatch_delete(old)
            return

        old = self._store.get(key)
        self._store[key] = obj
        if old is None:
            self._dispatch_add(obj)
        else:
            self._dispatch_update(old, obj)

    async def _resync_loop(self, cancel: asyncio.Event) -> None:
        while not cancel.is_set():
            await _sleep_or_cancel(cancel, self.resync_period)
            if cancel.is_set():
                return
            for obj in list(self._store.values()):
                self._dispatch_update(obj, obj)

    def _dispatch_add(self, obj: Dict[str, Any]) -> None:
        for handler in self._handlers:
            if handler.on_add:
                handler.on_add(obj)

    def _dispatch_update(self, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        for handler in self._handlers:
            if handler.on_update:
                handler.on_update(old, new)

    def _dispatch_delete(self, obj: Dict[str, Any]) -> None:
        for handler in self._handlers:
            if handler.on_delete:
                handler.on_delete(obj)


async def _sleep_or_cancel(cancel: asyncio.Event, delay: float) -> None:
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
