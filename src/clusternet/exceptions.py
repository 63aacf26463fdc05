"""Error taxonomy for reconciliation.

A lookup that finds nothing is not an error: probes return None and the
caller takes the create branch. Everything below aborts the current
reconciliation unit and is safe to retry wholesale on the next pass.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

from keystoneauth1 import exceptions as ksa_exc
from openstack import exceptions as os_exc


class ReconcileError(Exception):
    """Base class for errors raised while converging remote state."""

    pass


class AmbiguousResourceError(ReconcileError):
    """Raised when a lookup expected to be unique matches several resources."""

    def __init__(self, kind: str, name: str, count: int) -> None:
        self.kind = kind
        self.name = name
        self.count = count
        super().__init__(f"found {count} {kind} resources named {name!r}, expected at most one")


class MissingPreconditionError(ReconcileError):
    """Raised when a status field another step should have filled is absent.

    Signals a reconciliation ordering bug in the caller rather than a
    remote-state problem.
    """

    pass


class BackendError(ReconcileError):
    """Raised when an OpenStack API call fails.

    The SDK exception is chained as __cause__.
    """

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        super().__init__(f"error {operation}: {cause}")


class WaitTimeoutError(ReconcileError):
    """Raised when a resource does not reach its target status in time."""

    def __init__(self, kind: str, resource_id: str, target: str, last_status: str | None) -> None:
        self.kind = kind
        self.resource_id = resource_id
        self.target = target
        self.last_status = last_status
        super().__init__(
            f"{kind} {resource_id} did not reach {target} in time (last status: {last_status})"
        )


@contextmanager
def backend_call(operation: str) -> Iterator[None]:
    """Translate SDK and transport failures inside the block into BackendError.

    openstacksdk lets keystoneauth errors such as ConnectFailure through
    unwrapped, so both hierarchies are caught.

    Usage:
        with backend_call(f"creating listener {name}"):
            listener = conn.load_balancer.create_listener(...)
    """
    try:
        yield
    except (os_exc.SDKException, ksa_exc.ClientException) as e:
        raise BackendError(operation, e) from e
