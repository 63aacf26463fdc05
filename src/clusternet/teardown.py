"""Cluster teardown sequencing.

Floating IP policy: an address is released only when it carries the
ownership tags written when this operator allocated it. Addresses supplied
by the operator are left in place. Networks and subnets are not deleted.
"""

from __future__ import annotations

import logging
from typing import Any

from .exceptions import backend_call
from .loadbalancer import LoadBalancerReconciler
from .models import ClusterSpec, ClusterStatus, SecurityGroup
from .naming import CONTROL_PLANE_SUFFIX, GLOBAL_SUFFIX, ownership_tags, security_group_name
from .probe import find_floating_ip, find_security_group
from .provenance import ChangeAction, ChangeSummary
from .securitygroups import SecurityGroupReconciler, convert_group
from .waiter import Waiter

logger = logging.getLogger(__name__)


class TeardownOrchestrator:
    """Deletes the cluster's load balancer, security groups and owned floating IP."""

    def __init__(
        self,
        conn: Any,
        waiter: Waiter | None = None,
        changes: ChangeSummary | None = None,
    ) -> None:
        self._conn = conn
        self._changes = changes if changes is not None else ChangeSummary()
        self._load_balancers = LoadBalancerReconciler(conn, waiter, self._changes)
        self._security_groups = SecurityGroupReconciler(conn, self._changes)

    def delete_cluster(self, cluster_name: str, spec: ClusterSpec, status: ClusterStatus) -> None:
        logger.info("Deleting cluster network resources", extra={"cluster": cluster_name})

        self._load_balancers.delete_load_balancer(cluster_name, spec)
        if status.network is not None:
            status.network.api_server_load_balancer = None

        if spec.managed_security_groups:
            for suffix, recorded in (
                (CONTROL_PLANE_SUFFIX, status.control_plane_security_group),
                (GLOBAL_SUFFIX, status.global_security_group),
            ):
                group = recorded or self._lookup_group(security_group_name(cluster_name, suffix))
                if group is not None:
                    self._security_groups.delete_security_group(group)
            status.control_plane_security_group = None
            status.global_security_group = None

        self._release_floating_ip(cluster_name, spec)
        status.ready = False

    def _lookup_group(self, name: str) -> SecurityGroup | None:
        # Status may be lost between passes; fall back to the deterministic name
        raw = find_security_group(self._conn, name)
        return convert_group(raw) if raw is not None else None

    def _release_floating_ip(self, cluster_name: str, spec: ClusterSpec) -> None:
        address = spec.api_server_load_balancer_floating_ip
        if not address:
            return

        fip = find_floating_ip(self._conn, address)
        if fip is None:
            return

        if not set(ownership_tags(cluster_name)) <= set(fip.tags or []):
            logger.info(
                "Floating IP was not allocated by this operator, keeping it",
                extra={"floating_ip": address, "floating_ip_id": fip.id},
            )
            return

        logger.info("Releasing floating IP", extra={"floating_ip": address, "floating_ip_id": fip.id})
        with backend_call(f"deleting floating IP {address}"):
            self._conn.network.delete_ip(fip.id)
        self._changes.record(ChangeAction.DELETE, "floating_ip", fip.id, address)
