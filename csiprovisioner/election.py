"""
Lease-based leader election.

Several redundant instances race for one Lease object. The winner runs the
controller set and keeps renewing the lease; losers keep retrying (and keep
serving diagnostics). Losing the lease after having led is fatal: the
process exits and is restarted, so at most one instance ever runs the
controllers against a given lease term.
"""

import asyncio
import random
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from csiprovisioner.errors import ProvisionerError
from csiprovisioner.kube.client import ClusterClient, ConflictError
from csiprovisioner.metrics import LEADER_ELECTION_STATUS
from csiprovisioner.utils.logging import get_logger

logger = get_logger(__name__)

JITTER_FACTOR = 1.2

RunFunc = Callable[[asyncio.Event], Awaitable[None]]


class LeadershipLostError(ProvisionerError):
    """This instance stopped being the leader."""
    pass


def lock_name_for(driver_name: str) -> str:
    """Lease name for a driver; slashes are not valid in object names."""
    return driver_name.replace("/", "-")


@dataclass(frozen=True)
class LeaseRecord:
    """
    Content of the lease object.

    Times are seconds since the epoch.
    """
    holder_identity: str
    lease_duration: float
    acquire_time: float
    renew_time: float
    leader_transitions: int = 0
    resource_version: str = ""


class LeaseLock(ABC):
    """Storage of the lease record."""

    @abstractmethod
    async def get(self) -> Optional[LeaseRecord]:
        ...

    @abstractmethod
    async def create(self, record: LeaseRecord) -> LeaseRecord:
        """Create the lease; raises ConflictError if it exists."""

    @abstractmethod
    async def update(self, record: LeaseRecord) -> LeaseRecord:
        """Replace the lease; raises ConflictError if it changed meanwhile."""

    @abstractmethod
    def describe(self) -> str:
        ...


def _format_time(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _parse_time(value: Optional[str]) -> float:
    if not value:
        return 0.0
    if isinstance(value, datetime):
        return value.timestamp()
    for fmt in ("%Y-%m-%dT%H:%M:%S.%fZ", "%Y-%m-%dT%H:%M:%SZ"):
        try:
            return datetime.strptime(value, fmt).replace(tzinfo=timezone.utc).timestamp()
        except ValueError:
            continue
    return 0.0


class KubernetesLeaseLock(LeaseLock):
    """Lease lock stored in a coordination.k8s.io/v1 Lease."""

    def __init__(self, client: ClusterClient, namespace: str, name: str):
        self.client = client
        self.namespace = namespace
        self.name = name

    def describe(self) -> str:
        return f"{self.namespace}/{self.name}"

    def _to_body(self, record: LeaseRecord) -> Dict[str, Any]:
        metadata: Dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if record.resource_version:
            metadata["resourceVersion"] = record.resource_version
        return {
            "apiVersion": "coordination.k8s.io/v1",
            "kind": "Lease",
            "metadata": metadata,
            "spec": {
                "holderIdentity": record.holder_identity,
                "leaseDurationSeconds": int(record.lease_duration),
                "acquireTime": _format_time(record.acquire_time),
                "renewTime": _format_time(record.renew_time),
                "leaseTransitions": record.leader_transitions,
            },
        }

    def _from_body(self, body: Dict[str, Any]) -> LeaseRecord:
        spec = body.get("spec") or {}
        return LeaseRecord(
            holder_identity=spec.get("holderIdentity") or "",
            lease_duration=float(spec.get("leaseDurationSeconds") or 0),
            acquire_time=_parse_time(spec.get("acquireTime")),
            renew_time=_parse_time(spec.get("renewTime")),
            leader_transitions=int(spec.get("leaseTransitions") or 0),
            resource_version=(body.get("metadata") or {}).get("resourceVersion", ""),
        )

    async def get(self) -> Optional[LeaseRecord]:
        body = await self.client.get("coordination.k8s.io/v1", "Lease", self.name, self.namespace)
        if body is None:
            return None
        return self._from_body(body)

    async def create(self, record: LeaseRecord) -> LeaseRecord:
        body = await self.client.create("leases", self._to_body(record), namespace=self.namespace)
        return self._from_body(body)

    async def update(self, record: LeaseRecord) -> LeaseRecord:
        body = await self.client.replace(
            "leases", self.name, self._to_body(record), namespace=self.namespace
        )
        return self._from_body(body)


class InMemoryLeaseLock(LeaseLock):
    """
    Lease lock shared within one process.

    Several LeaderElection instances holding the same InMemoryLeaseLock
    behave like processes racing for the same Lease object.
    """

    def __init__(self, name: str = "lease"):
        self.name = name
        self._record: Optional[LeaseRecord] = None
        self._version = 0

    def describe(self) -> str:
        return self.name

    async def get(self) -> Optional[LeaseRecord]:
        return self._record

    async def create(self, record: LeaseRecord) -> LeaseRecord:
        if self._record is not None:
            raise ConflictError("lease exists")
        return self._store(record)

    async def update(self, record: LeaseRecord) -> LeaseRecord:
        if self._record is None or record.resource_version != self._record.resource_version:
            raise ConflictError("lease changed")
        return self._store(record)

    def _store(self, record: LeaseRecord) -> LeaseRecord:
        self._version += 1
        self._record = replace(record, resource_version=str(self._version))
        return self._record


class LeaderElection:
    """
    Runs a function only while holding the lease.

    Follows the client-go leader election timings: the lease is valid for
    lease_duration after it was last observed to change, the leader must
    renew within renew_deadline, and all attempts are spaced retry_period
    apart.
    """

    def __init__(
        self,
        lock: LeaseLock,
        identity: str,
        run: RunFunc,
        lease_duration: float = 15.0,
        renew_deadline: float = 10.0,
        retry_period: float = 5.0,
        name: str = "",
    ):
        """
        Initialize leader election.

        Args:
            lock: Lease storage
            identity: Unique identity of this instance
            run: Function to run while leading; receives the leading context's
                cancellation event
            lease_duration: Seconds non-leaders wait before taking over
            renew_deadline: Seconds the leader retries renewing before giving up
            retry_period: Seconds between attempts
            name: Lease name for metrics
        """
        if lease_duration <= renew_deadline:
            raise ValueError("lease_duration must be greater than renew_deadline")
        if renew_deadline <= JITTER_FACTOR * retry_period:
            raise ValueError("renew_deadline must be greater than retry_period*1.2")

        self.lock = lock
        self.identity = identity
        self.run_func = run
        self.lease_duration = lease_duration
        self.renew_deadline = renew_deadline
        self.retry_period = retry_period
        self.name = name or lock.describe()

        self._observed_record: Optional[LeaseRecord] = None
        self._observed_time = 0.0
        self._leading = False

    def is_leader(self) -> bool:
        return self._leading

    def leader(self) -> Optional[str]:
        if self._observed_record is None:
            return None
        return self._observed_record.holder_identity or None

    async def run(self, cancel: asyncio.Event) -> None:
        """
        Campaign for leadership, then run while leading.

        Args:
            cancel: Root cancellation signal

        Raises:
            LeadershipLostError: If the lease was lost while leading
        """
        logger.info("Attempting to acquire leader lease", lease=self.lock.describe(), identity=self.identity)

        if not await self._acquire(cancel):
            return

        leading_cancel = asyncio.Event()
        run_task = asyncio.create_task(self.run_func(leading_cancel))
        renew_task = asyncio.create_task(self._renew_loop(cancel))

        try:
            done, _ = await asyncio.wait(
                {run_task, renew_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            leading_cancel.set()
            renew_task.cancel()
            await asyncio.gather(renew_task, return_exceptions=True)

        # Let the controllers observe the cancellation before returning
        run_error: Optional[BaseException] = None
        try:
            await run_task
        except Exception as e:
            run_error = e

        self._set_leading(False)

        if run_task in done and run_error is not None:
            raise run_error

        if renew_task in done and not cancel.is_set():
            raise LeadershipLostError(f"leaderelection lost for {self.lock.describe()}")

        if cancel.is_set():
            await self._release()

    async def _acquire(self, cancel: asyncio.Event) -> bool:
        while not cancel.is_set():
            if await self._try_acquire_or_renew():
                self._set_leading(True)
                logger.info("Successfully acquired lease", lease=self.lock.describe(), identity=self.identity)
                return True

            holder = self.leader()
            logger.debug("Lease held by another instance", lease=self.lock.describe(), holder=holder)
            await _sleep_or_cancel(cancel, self.retry_period * random.uniform(1.0, JITTER_FACTOR))
        return False

    async def _renew_loop(self, cancel: asyncio.Event) -> None:
        """Returns when renewing failed for longer than the renew deadline."""
        last_renew = time.monotonic()
        while not cancel.is_set():
            await _sleep_or_cancel(cancel, self.retry_period)
            if cancel.is_set():
                return

            if await self._try_acquire_or_renew():
                last_renew = time.monotonic()
                continue

            if time.monotonic() - last_renew >= self.renew_deadline:
                logger.error("Failed to renew lease", lease=self.lock.describe(), identity=self.identity)
                return

    async def _try_acquire_or_renew(self) -> bool:
        now = time.time()
        try:
            record = await self.lock.get()
        except Exception as e:
            logger.warning("Error retrieving lease", lease=self.lock.describe(), error=str(e))
            return False

        if record is None:
            new = LeaseRecord(
                holder_identity=self.identity,
                lease_duration=self.lease_duration,
                acquire_time=now,
                renew_time=now,
            )
            try:
                created = await self.lock.create(new)
            except Exception as e:
                logger.debug("Error creating lease", error=str(e))
                return False
            self._observe(created)
            return True

        if self._observed_record != record:
            self._observe(record)

        held_by_other = record.holder_identity and record.holder_identity != self.identity
        if held_by_other and self._observed_time + record.lease_duration > time.monotonic():
            return False

        if record.holder_identity == self.identity:
            acquire_time = record.acquire_time
            transitions = record.leader_transitions
        else:
            acquire_time = now
            transitions = record.leader_transitions + 1

        new = LeaseRecord(
            holder_identity=self.identity,
            lease_duration=self.lease_duration,
            acquire_time=acquire_time,
            renew_time=now,
            leader_transitions=transitions,
            resource_version=record.resource_version,
        )
        try:
            updated = await self.lock.update(new)
        except Exception as e:
            logger.debug("Error updating lease", error=str(e))
            return False

        self._observe(updated)
        return True

    async def _release(self) -> None:
        """Give up the lease on clean shutdown so a standby can take over quickly."""
        record = self._observed_record
        if record is None or record.holder_identity != self.identity:
            return
        now = time.time()
        released = replace(record, holder_identity="", lease_duration=1, acquire_time=now, renew_time=now)
        try:
            await self.lock.update(released)
            logger.info("Released leader lease", lease=self.lock.describe())
        except Exception as e:
            logger.warning("Failed to release lease", lease=self.lock.describe(), error=str(e))

    def _observe(self, record: LeaseRecord) -> None:
        self._observed_record = record
        self._observed_time = time.monotonic()

    def _set_leading(self, leading: bool) -> None:
        if leading != self._leading:
            logger.info("Leader status changed", leading=leading, identity=self.identity)
        self._leading = leading
        LEADER_ELECTION_STATUS.labels(name=self.name).set(1 if leading else 0)

    def health_check(self, timeout: float) -> bool:
        """
        Leadership health.

        Only a leader that has not renewed for lease_duration + timeout is
        unhealthy; non-leaders are always healthy.

        Args:
            timeout: Tolerance beyond the lease duration, in seconds

        Returns:
            True if healthy
        """
        if not self._leading:
            return True
        return time.monotonic() - self._observed_time <= self.lease_duration + timeout


async def _sleep_or_cancel(cancel: asyncio.Event, delay: float) -> None:
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass
