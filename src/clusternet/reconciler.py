"""Cluster reconciliation passes and the control loop driving them.

A pass runs the individual reconcilers in a fixed order:

1. Network
2. Subnet
3. Security groups (when managed)
4. API server load balancer (when managed), then control plane members

Each step depends on status filled in by the previous ones. A pass is
synchronous and blocking; the async loop runs it in an executor so shutdown
signals stay responsive while a pass waits on OpenStack.

Errors never escape a pass: they are logged by category and recorded on the
ReconcileResult, and the next pass starts over from remote state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .client import create_connection
from .config import CIRCUIT_BREAKER_RESET_SECONDS, MAX_CONSECUTIVE_FAILURES, Config
from .exceptions import (
    AmbiguousResourceError,
    BackendError,
    MissingPreconditionError,
    ReconcileError,
    WaitTimeoutError,
)
from .loadbalancer import LoadBalancerReconciler
from .models import ClusterDocument, ClusterStatus, Machine
from .network import NetworkReconciler
from .provenance import ChangeSummary, get_provenance_logger
from .securitygroups import SecurityGroupReconciler
from .spec_loader import SpecLoadError, load_cluster_document, load_status, write_status
from .teardown import TeardownOrchestrator
from .waiter import RetryPolicy, Waiter

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result of a single pass."""

    cluster_name: str
    operation: str = "reconcile"
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    status: ClusterStatus = field(default_factory=ClusterStatus)
    changes: ChangeSummary = field(default_factory=ChangeSummary)
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass succeeded."""
        return self.error is None


class ClusterReconciler:
    """Reconciles one cluster's network resources.

    Args:
        config: Validated operator configuration.
        conn: OpenStack connection. Created from config.cloud when omitted.
        waiter: Waiter for provisioning status. Built from config.wait when omitted.
    """

    def __init__(
        self,
        config: Config,
        conn: Any | None = None,
        waiter: Waiter | None = None,
    ) -> None:
        self._config = config
        self._conn = conn if conn is not None else create_connection(config.cloud)
        self._waiter = waiter or Waiter(RetryPolicy.from_config(config.wait))

        self._status = ClusterStatus()
        if config.status_dir is not None:
            self._status = load_status(self.status_path)

        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def status(self) -> ClusterStatus:
        """Status accumulated over the passes run so far."""
        return self._status

    @property
    def status_path(self) -> Path | None:
        if self._config.status_dir is None:
            return None
        return self._config.status_dir / f"{self._config.cluster_name}.status.yaml"

    def save_status(self, status: ClusterStatus) -> None:
        """Write status to the status directory, if one is configured."""
        path = self.status_path
        if path is not None:
            write_status(path, status)

    # =========================================================================
    # Passes
    # =========================================================================

    def reconcile(self, document: ClusterDocument) -> ReconcileResult:
        """Converge network, subnet, security groups and load balancer."""

        def converge(changes: ChangeSummary) -> None:
            name, spec, status = document.name, document.spec, self._status

            network = NetworkReconciler(self._conn, changes)
            network.reconcile_network(name, spec, status)
            network.reconcile_subnet(name, spec, status)

            SecurityGroupReconciler(self._conn, changes).reconcile_security_groups(
                name, spec, status
            )

            if spec.managed_api_server_load_balancer:
                lb = LoadBalancerReconciler(self._conn, self._waiter, changes)
                lb.reconcile_load_balancer(name, spec, status)
                if status.network is not None and status.network.api_server_load_balancer:
                    for machine in document.control_plane_machines:
                        if machine.address:
                            lb.reconcile_load_balancer_member(
                                name, machine, spec, status, machine.address
                            )
            elif status.network is not None:
                status.network.api_server_load_balancer = None

            status.ready = True

        return self._execute("reconcile", document.name, converge)

    def delete(self, document: ClusterDocument) -> ReconcileResult:
        """Tear down the load balancer, security groups and owned floating IP."""

        def teardown(changes: ChangeSummary) -> None:
            TeardownOrchestrator(self._conn, self._waiter, changes).delete_cluster(
                document.name, document.spec, self._status
            )

        return self._execute("delete", document.name, teardown)

    def reconcile_member(
        self, document: ClusterDocument, machine: Machine, address: str
    ) -> ReconcileResult:
        """Add or refresh one machine in the load balancer pools."""

        def add(changes: ChangeSummary) -> None:
            LoadBalancerReconciler(self._conn, self._waiter, changes).reconcile_load_balancer_member(
                document.name, machine, document.spec, self._status, address
            )

        return self._execute("member", document.name, add)

    def delete_member(self, document: ClusterDocument, machine: Machine) -> ReconcileResult:
        """Remove one machine from the load balancer pools."""

        def remove(changes: ChangeSummary) -> None:
            LoadBalancerReconciler(self._conn, self._waiter, changes).delete_load_balancer_member(
                document.name, machine, document.spec, self._status
            )

        return self._execute("member", document.name, remove)

    def _execute(
        self,
        operation: str,
        cluster_name: str,
        body: Callable[[ChangeSummary], None],
    ) -> ReconcileResult:
        result = ReconcileResult(cluster_name=cluster_name, operation=operation)

        # PROVENANCE: Initialize provenance record for audit trail
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            cluster_name=cluster_name,
            cloud=self._config.cloud,
            operation=operation,
        )

        try:
            body(result.changes)
            logger.info(
                "Pass complete",
                extra={
                    "cluster": cluster_name,
                    "operation": operation,
                    "changes": result.changes.total,
                },
            )
        except AmbiguousResourceError as e:
            # Needs a human: duplicate resources are never arbitrated
            logger.error(
                "Ambiguous resource",
                extra={"cluster": cluster_name, "kind": e.kind, "count": e.count, "error": str(e)},
            )
            result.error = e
        except MissingPreconditionError as e:
            logger.error("Missing precondition", extra={"cluster": cluster_name, "error": str(e)})
            result.error = e
        except WaitTimeoutError as e:
            logger.warning(
                "Timed out waiting for resource",
                extra={
                    "cluster": cluster_name,
                    "kind": e.kind,
                    "resource_id": e.resource_id,
                    "target": e.target,
                    "last_status": e.last_status,
                },
            )
            result.error = e
        except BackendError as e:
            logger.error("OpenStack API error", extra={"cluster": cluster_name, "error": str(e)})
            result.error = e
        except ReconcileError as e:
            logger.error("Reconciliation error", extra={"cluster": cluster_name, "error": str(e)})
            result.error = e
        except Exception as e:
            logger.exception("Unexpected error during reconciliation")
            result.error = e

        if result.error is not None:
            self._status.ready = False
        result.status = self._status.model_copy(deep=True)
        result.end_time = datetime.now(UTC)

        # PROVENANCE: Complete and log the provenance record
        provenance.change_summary = result.changes
        provenance.duration_seconds = result.duration_seconds
        if result.error:
            provenance.error = str(result.error)
            provenance.error_type = type(result.error).__name__
        provenance_logger.log_provenance(provenance)

        return result

    # =========================================================================
    # Control loop
    # =========================================================================

    async def run(self) -> None:
        """Run reconciliation passes at the configured interval until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "cluster": self._config.cluster_name,
                "cloud": self._config.cloud,
                "interval_seconds": self._config.reconcile_interval_seconds,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "cluster": self._config.cluster_name,
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    # Wait for circuit breaker reset or shutdown
                    try:
                        await asyncio.wait_for(
                            self._shutdown_event.wait(),
                            timeout=min(remaining, self._config.reconcile_interval_seconds),
                        )
                    except TimeoutError:
                        pass
                    continue
                else:
                    logger.info(
                        "Circuit breaker reset, resuming reconciliation",
                        extra={"cluster": self._config.cluster_name},
                    )
                    self._circuit_open_until = None
                    self._consecutive_failures = 0

            result = await self._reconcile_once()
            self._log_result(result)

            # Update circuit breaker state
            if result.error is not None:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "cluster": self._config.cluster_name,
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            # Wait for next cycle or shutdown
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self._config.reconcile_interval_seconds,
                )
            except TimeoutError:
                pass

        logger.info("Reconciler shutdown complete", extra={"cluster": self._config.cluster_name})

    def shutdown(self) -> None:
        """Signal the reconciler to stop."""
        logger.info("Shutdown requested", extra={"cluster": self._config.cluster_name})
        self._shutdown_event.set()

    async def _reconcile_once(self) -> ReconcileResult:
        """Load the cluster document and run one pass in an executor."""
        try:
            document = load_cluster_document(self._config.spec_path)
            if document.name != self._config.cluster_name:
                raise SpecLoadError(
                    f"Cluster document {self._config.spec_path} names cluster "
                    f"{document.name!r}, expected {self._config.cluster_name!r}"
                )
        except SpecLoadError as e:
            logger.error("Failed to load cluster document", extra={"error": str(e)})
            result = ReconcileResult(cluster_name=self._config.cluster_name, error=e)
            result.end_time = datetime.now(UTC)
            return result

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.reconcile, document)

        try:
            self.save_status(result.status)
        except SpecLoadError as e:
            logger.error("Failed to write status", extra={"error": str(e)})
            if result.error is None:
                result.error = e

        return result

    def _log_result(self, result: ReconcileResult) -> None:
        """Log pass result with structured data."""
        extra: dict[str, Any] = {
            "cluster": result.cluster_name,
            "operation": result.operation,
            "duration_seconds": result.duration_seconds,
            "changes_applied": result.changes.total,
            "changes_by_kind": result.changes.by_kind(),
            "ready": result.status.ready,
        }

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
