"""API server load balancer orchestration.

Octavia rejects any mutation of a load balancer, or of its listeners, pools,
monitors and members, while the load balancer is not ACTIVE. Every mutating
call below is therefore bracketed by explicit waits on the load balancer's
provisioning status. Ports are processed strictly in configured order.
"""

from __future__ import annotations

import logging
from typing import Any

from .exceptions import MissingPreconditionError, backend_call
from .models import ClusterSpec, ClusterStatus, LoadBalancer, Machine
from .naming import load_balancer_name, member_name, ownership_tags, port_objects_name
from .probe import (
    find_floating_ip,
    find_listener,
    find_load_balancer,
    find_member,
    find_monitor,
    find_pool,
    list_listeners,
    list_members,
    list_pools,
)
from .provenance import ChangeAction, ChangeSummary
from .waiter import Waiter, wait_for_floating_ip, wait_for_listener, wait_for_load_balancer

logger = logging.getLogger(__name__)

# Fixed listener/pool/monitor settings for the API server
LB_PROTOCOL = "TCP"
LB_ALGORITHM = "ROUND_ROBIN"
MONITOR_TYPE = "TCP"
MONITOR_DELAY_SECONDS = 30
MONITOR_TIMEOUT_SECONDS = 5
MONITOR_MAX_RETRIES = 3


class LoadBalancerReconciler:
    """Creates, populates and tears down the API server load balancer.

    Args:
        conn: OpenStack connection.
        waiter: Waits for provisioning status between mutations.
        changes: Records every mutating call issued.
    """

    def __init__(
        self,
        conn: Any,
        waiter: Waiter | None = None,
        changes: ChangeSummary | None = None,
    ) -> None:
        self._conn = conn
        self._waiter = waiter or Waiter()
        self._changes = changes if changes is not None else ChangeSummary()

    # =========================================================================
    # Creation
    # =========================================================================

    def reconcile_load_balancer(
        self,
        cluster_name: str,
        spec: ClusterSpec,
        status: ClusterStatus,
    ) -> None:
        """Converge the load balancer, its floating IP and per-port objects.

        Skipped unless the external network, the floating IP address and the
        primary port are all configured. A skipped step clears any load
        balancer left in status by an earlier pass.

        Raises:
            MissingPreconditionError: If the subnet has not been reconciled.
        """
        if (
            not spec.external_network_id
            or not spec.api_server_load_balancer_floating_ip
            or not spec.api_server_load_balancer_port
        ):
            logger.info(
                "Load balancer not configured, skipping",
                extra={"cluster": cluster_name},
            )
            # A load balancer recorded by an earlier pass is no longer wanted
            if status.network is not None:
                status.network.api_server_load_balancer = None
            return

        if status.network is None or status.network.subnet is None:
            raise MissingPreconditionError(
                f"cannot reconcile load balancer for cluster {cluster_name}: "
                "network and subnet must be reconciled first"
            )

        name = load_balancer_name(cluster_name)
        logger.info("Reconciling load balancer", extra={"load_balancer": name})

        lb = find_load_balancer(self._conn, name)
        if lb is None:
            logger.info("Creating load balancer", extra={"load_balancer": name})
            with backend_call(f"creating load balancer {name}"):
                lb = self._conn.load_balancer.create_load_balancer(
                    name=name,
                    vip_subnet_id=status.network.subnet.id,
                )
            self._changes.record(ChangeAction.CREATE, "load_balancer", lb.id, name)
        self._wait_active(lb.id)

        fip = self._reconcile_floating_ip(cluster_name, spec, lb)

        for port in spec.load_balancer_ports:
            self._reconcile_port(lb, port)

        status.network.api_server_load_balancer = LoadBalancer(
            name=name,
            id=lb.id,
            ip=fip.floating_ip_address,
            internal_ip=lb.vip_address,
        )

    def _reconcile_floating_ip(self, cluster_name: str, spec: ClusterSpec, lb: Any) -> Any:
        address = spec.api_server_load_balancer_floating_ip

        fip = find_floating_ip(self._conn, address)
        if fip is None:
            logger.info("Allocating floating IP", extra={"floating_ip": address})
            # Ownership tags travel in the create request, so an address
            # never exists untagged and teardown can always release it
            with backend_call(f"creating floating IP {address}"):
                fip = self._conn.network.create_ip(
                    floating_ip_address=address,
                    floating_network_id=spec.external_network_id,
                    tags=ownership_tags(cluster_name),
                )
            self._changes.record(ChangeAction.CREATE, "floating_ip", fip.id, address)

        if fip.port_id != lb.vip_port_id:
            logger.info(
                "Associating floating IP with load balancer VIP",
                extra={"floating_ip": address, "port_id": lb.vip_port_id},
            )
            with backend_call(f"associating floating IP {address}"):
                fip = self._conn.network.update_ip(fip, port_id=lb.vip_port_id)
            self._changes.record(ChangeAction.UPDATE, "floating_ip", fip.id, address)

        wait_for_floating_ip(self._waiter, self._conn, fip.id)
        return fip

    def _reconcile_port(self, lb: Any, port: int) -> None:
        name = port_objects_name(lb.name, port)
        logger.info("Reconciling load balancer port", extra={"port": port, "resource_name": name})

        listener = find_listener(self._conn, name)
        if listener is None:
            self._wait_active(lb.id)
            with backend_call(f"creating listener {name}"):
                listener = self._conn.load_balancer.create_listener(
                    name=name,
                    protocol=LB_PROTOCOL,
                    protocol_port=port,
                    loadbalancer_id=lb.id,
                )
            self._changes.record(ChangeAction.CREATE, "listener", listener.id, name)
            self._wait_active(lb.id)
            wait_for_listener(self._waiter, self._conn, listener.id)

        pool = find_pool(self._conn, name)
        if pool is None:
            self._wait_active(lb.id)
            with backend_call(f"creating pool {name}"):
                pool = self._conn.load_balancer.create_pool(
                    name=name,
                    protocol=LB_PROTOCOL,
                    lb_algorithm=LB_ALGORITHM,
                    listener_id=listener.id,
                )
            self._changes.record(ChangeAction.CREATE, "pool", pool.id, name)
            self._wait_active(lb.id)

        monitor = find_monitor(self._conn, name)
        if monitor is None:
            self._wait_active(lb.id)
            with backend_call(f"creating health monitor {name}"):
                monitor = self._conn.load_balancer.create_health_monitor(
                    name=name,
                    pool_id=pool.id,
                    type=MONITOR_TYPE,
                    delay=MONITOR_DELAY_SECONDS,
                    timeout=MONITOR_TIMEOUT_SECONDS,
                    max_retries=MONITOR_MAX_RETRIES,
                )
            self._changes.record(ChangeAction.CREATE, "health_monitor", monitor.id, name)
            self._wait_active(lb.id)

    # =========================================================================
    # Membership
    # =========================================================================

    def reconcile_load_balancer_member(
        self,
        cluster_name: str,
        machine: Machine,
        spec: ClusterSpec,
        status: ClusterStatus,
        address: str,
    ) -> None:
        """Register a control plane machine in every per-port pool.

        A member whose address changed is deleted and recreated, never
        updated in place.

        Raises:
            MissingPreconditionError: If network, subnet or load balancer
                status is missing, or a pool does not exist.
        """
        if not machine.control_plane:
            return

        network = status.network
        if network is None or network.subnet is None or network.api_server_load_balancer is None:
            raise MissingPreconditionError(
                f"cannot add machine {machine.name} to load balancer of cluster "
                f"{cluster_name}: network, subnet and load balancer must be reconciled first"
            )

        lb = network.api_server_load_balancer
        logger.info(
            "Reconciling load balancer members",
            extra={"load_balancer": lb.name, "machine": machine.name, "address": address},
        )

        for port in spec.load_balancer_ports:
            pool_name = port_objects_name(lb.name, port)
            name = member_name(pool_name, machine.name)

            pool = find_pool(self._conn, pool_name)
            if pool is None:
                raise MissingPreconditionError(f"pool {pool_name} does not exist")

            member = find_member(self._conn, pool.id, name)
            if member is not None:
                if member.address == address:
                    logger.debug("Member up to date", extra={"member": name})
                    continue

                logger.info(
                    "Member address changed, replacing it",
                    extra={"member": name, "old_address": member.address, "address": address},
                )
                self._wait_active(lb.id)
                with backend_call(f"deleting member {name}"):
                    self._conn.load_balancer.delete_member(member.id, pool.id)
                self._changes.record(ChangeAction.DELETE, "member", member.id, name)
                self._wait_active(lb.id)

            self._wait_active(lb.id)
            with backend_call(f"creating member {name}"):
                created = self._conn.load_balancer.create_member(
                    pool.id,
                    name=name,
                    protocol_port=port,
                    address=address,
                    subnet_id=network.subnet.id,
                )
            self._changes.record(ChangeAction.CREATE, "member", created.id, name)
            self._wait_active(lb.id)

    def delete_load_balancer_member(
        self,
        cluster_name: str,
        machine: Machine,
        spec: ClusterSpec,
        status: ClusterStatus,
    ) -> None:
        """Remove a control plane machine from every per-port pool.

        Missing pools and members are tolerated.
        """
        if not machine.control_plane:
            return

        network = status.network
        if network is None or network.api_server_load_balancer is None:
            logger.info(
                "No load balancer in status, nothing to remove",
                extra={"cluster": cluster_name, "machine": machine.name},
            )
            return

        lb = network.api_server_load_balancer
        for port in spec.load_balancer_ports:
            pool_name = port_objects_name(lb.name, port)
            name = member_name(pool_name, machine.name)

            pool = find_pool(self._conn, pool_name)
            if pool is None:
                logger.info("Pool does not exist", extra={"pool": pool_name})
                continue

            member = find_member(self._conn, pool.id, name)
            if member is None:
                continue

            self._wait_active(lb.id)
            with backend_call(f"deleting member {name}"):
                self._conn.load_balancer.delete_member(member.id, pool.id)
            self._changes.record(ChangeAction.DELETE, "member", member.id, name)
            self._wait_active(lb.id)

    # =========================================================================
    # Deletion
    # =========================================================================

    def delete_load_balancer(self, cluster_name: str, spec: ClusterSpec) -> None:
        """Delete the load balancer and everything below it.

        Octavia deletes the whole tree in one cascading call. Without it,
        children are deleted bottom-up since the backend refuses to delete a
        resource that still has children.
        """
        name = load_balancer_name(cluster_name)
        lb = find_load_balancer(self._conn, name)
        if lb is None:
            logger.info("Load balancer does not exist", extra={"load_balancer": name})
            return

        if spec.use_octavia:
            logger.info("Deleting load balancer (cascade)", extra={"load_balancer": name})
            with backend_call(f"deleting load balancer {name}"):
                self._conn.load_balancer.delete_load_balancer(lb.id, cascade=True)
            self._changes.record(ChangeAction.DELETE, "load_balancer", lb.id, name)
            return

        pools = list_pools(self._conn, lb.id)

        # Every pool is emptied before the first pool goes
        for pool in pools:
            if pool.health_monitor_id:
                with backend_call(f"deleting health monitor {pool.health_monitor_id}"):
                    self._conn.load_balancer.delete_health_monitor(pool.health_monitor_id)
                self._changes.record(ChangeAction.DELETE, "health_monitor", pool.health_monitor_id)
                self._wait_active(lb.id)

            for member in list_members(self._conn, pool.id):
                with backend_call(f"deleting member {member.id}"):
                    self._conn.load_balancer.delete_member(member.id, pool.id)
                self._changes.record(ChangeAction.DELETE, "member", member.id, member.name)
                self._wait_active(lb.id)

        for pool in pools:
            with backend_call(f"deleting pool {pool.id}"):
                self._conn.load_balancer.delete_pool(pool.id)
            self._changes.record(ChangeAction.DELETE, "pool", pool.id, pool.name)
            self._wait_active(lb.id)

        for listener in list_listeners(self._conn, lb.id):
            with backend_call(f"deleting listener {listener.id}"):
                self._conn.load_balancer.delete_listener(listener.id)
            self._changes.record(ChangeAction.DELETE, "listener", listener.id, listener.name)
            self._wait_active(lb.id)

        logger.info("Deleting load balancer", extra={"load_balancer": name})
        with backend_call(f"deleting load balancer {name}"):
            self._conn.load_balancer.delete_load_balancer(lb.id)
        self._changes.record(ChangeAction.DELETE, "load_balancer", lb.id, name)

    def _wait_active(self, load_balancer_id: str) -> None:
        wait_for_load_balancer(self._waiter, self._conn, load_balancer_id)
