"""Network and subnet reconciliation.

An adopted network is never modified. Subnets are adopted by network id and
CIDR; two subnets matching the same filter is a hard error for the cluster.
"""

from __future__ import annotations

import logging
from typing import Any

from .exceptions import backend_call
from .models import ClusterSpec, ClusterStatus, Network, Subnet
from .naming import network_name, ownership_tags
from .probe import find_network, find_subnet
from .provenance import ChangeAction, ChangeSummary

logger = logging.getLogger(__name__)


class NetworkReconciler:
    """Converges the cluster network and its single subnet.

    Args:
        conn: OpenStack connection.
        changes: Records every mutating call issued.
    """

    def __init__(self, conn: Any, changes: ChangeSummary | None = None) -> None:
        self._conn = conn
        self._changes = changes if changes is not None else ChangeSummary()

    def reconcile_network(
        self,
        cluster_name: str,
        spec: ClusterSpec,
        status: ClusterStatus,
    ) -> None:
        """Adopt or create the cluster network and record it in status."""
        name = network_name(cluster_name)
        logger.info("Reconciling network", extra={"cluster": cluster_name, "network": name})

        existing = find_network(self._conn, name)
        if existing is not None:
            logger.info(
                "Reusing existing network",
                extra={"network": name, "network_id": existing.id},
            )
            status.network = self._merge_network(status.network, existing.id, existing.name)
            return

        with backend_call(f"creating network {name}"):
            created = self._conn.network.create_network(
                name=name,
                admin_state_up=True,
                port_security_enabled=not spec.disable_port_security,
            )
        self._changes.record(ChangeAction.CREATE, "network", created.id, name)

        self._tag(created, "network", cluster_name)
        logger.info("Created network", extra={"network": name, "network_id": created.id})
        status.network = self._merge_network(status.network, created.id, created.name)

    def reconcile_subnet(
        self,
        cluster_name: str,
        spec: ClusterSpec,
        status: ClusterStatus,
    ) -> None:
        """Adopt or create the node subnet and record it in status.

        Does nothing until the network has been reconciled.

        Raises:
            AmbiguousResourceError: If several subnets carry the node CIDR.
        """
        if status.network is None or not status.network.id:
            logger.info("No network in status yet, skipping subnet", extra={"cluster": cluster_name})
            return

        name = network_name(cluster_name)
        network_id = status.network.id
        logger.info(
            "Reconciling subnet",
            extra={"subnet": name, "network_id": network_id, "cidr": spec.node_cidr},
        )

        subnet = find_subnet(self._conn, network_id, spec.node_cidr)
        if subnet is None:
            with backend_call(f"creating subnet {name}"):
                subnet = self._conn.network.create_subnet(
                    network_id=network_id,
                    name=name,
                    ip_version=4,
                    cidr=spec.node_cidr,
                    dns_nameservers=list(spec.dns_nameservers),
                )
            self._changes.record(ChangeAction.CREATE, "subnet", subnet.id, name)
            logger.info("Created subnet", extra={"subnet": name, "subnet_id": subnet.id})
        else:
            logger.info("Reusing existing subnet", extra={"subnet": subnet.name, "subnet_id": subnet.id})

        self._tag(subnet, "subnet", cluster_name)
        status.network.subnet = Subnet(name=subnet.name, id=subnet.id, cidr=subnet.cidr)

    def _tag(self, resource: Any, kind: str, cluster_name: str) -> None:
        tags = ownership_tags(cluster_name)
        if sorted(resource.tags or []) == sorted(tags):
            return
        with backend_call(f"tagging {kind} {resource.id}"):
            self._conn.network.set_tags(resource, tags)
        self._changes.record(ChangeAction.UPDATE, kind, resource.id, resource.name)

    @staticmethod
    def _merge_network(current: Network | None, network_id: str, name: str) -> Network:
        # Keep subnet and load balancer records gathered by earlier passes
        if current is not None and current.id == network_id:
            return current.model_copy(update={"name": name})
        return Network(id=network_id, name=name)
