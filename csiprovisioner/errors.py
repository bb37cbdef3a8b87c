"""
Error taxonomy for the provisioner sidecar.

Bootstrap-phase errors terminate the process; operational errors are
contained within the retry cycle of the work-queue item that raised them.
"""

from typing import Optional

import grpc


class ProvisionerError(Exception):
    """Base class for all sidecar errors."""
    pass


class FatalConfigurationError(ProvisionerError):
    """Required flag/environment combination is missing or contradictory."""
    pass


class FatalBootstrapError(ProvisionerError):
    """Capability probe, identity, ownership or cache sync failed at startup."""
    pass


class OwnerLookupError(FatalBootstrapError):
    """The controller-reference chain could not be resolved."""
    pass


class CacheSyncError(FatalBootstrapError):
    """One or more caches did not complete their initial sync."""
    pass


class TransientOperationalError(ProvisionerError):
    """A single operation failed but may succeed on retry."""
    pass


class PermanentOperationalError(ProvisionerError):
    """The backend declared a condition that cannot succeed on retry."""
    pass


TRANSIENT_STATUS_CODES = frozenset([
    grpc.StatusCode.DEADLINE_EXCEEDED,
    grpc.StatusCode.UNAVAILABLE,
    grpc.StatusCode.ABORTED,
    grpc.StatusCode.RESOURCE_EXHAUSTED,
    grpc.StatusCode.CANCELLED,
    grpc.StatusCode.UNKNOWN,
    grpc.StatusCode.INTERNAL,
])


def classify_rpc_error(
    code: Optional[grpc.StatusCode],
    message: str,
) -> ProvisionerError:
    """
    Map a gRPC status code to an operational error.

    Args:
        code: Status code returned by the backend (None for local timeouts)
        message: Error details

    Returns:
        TransientOperationalError or PermanentOperationalError
    """
    if code is None or code in TRANSIENT_STATUS_CODES:
        return TransientOperationalError(message)
    return PermanentOperationalError(message)
