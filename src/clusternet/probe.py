"""Read-only lookups against the OpenStack networking and load-balancing APIs.

Every find_* helper returns None when nothing matches and raises
AmbiguousResourceError when more than one resource matches. Adoption of
pre-existing resources relies on this: picking the first of several matches
would silently bind the cluster to an arbitrary object.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, TypeVar

from openstack import exceptions as os_exc

from .exceptions import AmbiguousResourceError, BackendError, backend_call

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _unique(kind: str, name: str, resources: Iterable[T]) -> T | None:
    found = list(resources)
    if not found:
        return None
    if len(found) > 1:
        raise AmbiguousResourceError(kind, name, len(found))
    return found[0]


# =============================================================================
# Networking (Neutron)
# =============================================================================


def find_network(conn: Any, name: str) -> Any | None:
    with backend_call(f"listing networks named {name}"):
        return _unique("network", name, conn.network.networks(name=name))


def find_subnet(conn: Any, network_id: str, cidr: str) -> Any | None:
    """Find the subnet of a network carrying the given CIDR."""
    with backend_call(f"listing subnets of network {network_id}"):
        return _unique(
            "subnet",
            f"{cidr} on network {network_id}",
            conn.network.subnets(network_id=network_id, cidr=cidr),
        )


def find_security_group(conn: Any, name: str) -> Any | None:
    logger.debug("Looking up security group", extra={"security_group": name})
    with backend_call(f"listing security groups named {name}"):
        return _unique("security group", name, conn.network.security_groups(name=name))


def security_group_exists(conn: Any, group_id: str) -> bool:
    try:
        conn.network.get_security_group(group_id)
    except os_exc.NotFoundException:
        return False
    except os_exc.SDKException as e:
        raise BackendError(f"getting security group {group_id}", e) from e
    return True


def find_floating_ip(conn: Any, address: str) -> Any | None:
    with backend_call(f"listing floating IPs with address {address}"):
        return _unique("floating IP", address, conn.network.ips(floating_ip_address=address))


# =============================================================================
# Load balancing (Octavia / neutron-lbaas)
# =============================================================================


def find_load_balancer(conn: Any, name: str) -> Any | None:
    with backend_call(f"listing load balancers named {name}"):
        return _unique("load balancer", name, conn.load_balancer.load_balancers(name=name))


def find_listener(conn: Any, name: str) -> Any | None:
    with backend_call(f"listing listeners named {name}"):
        return _unique("listener", name, conn.load_balancer.listeners(name=name))


def find_pool(conn: Any, name: str) -> Any | None:
    with backend_call(f"listing pools named {name}"):
        return _unique("pool", name, conn.load_balancer.pools(name=name))


def find_monitor(conn: Any, name: str) -> Any | None:
    with backend_call(f"listing health monitors named {name}"):
        return _unique("health monitor", name, conn.load_balancer.health_monitors(name=name))


def find_member(conn: Any, pool_id: str, name: str) -> Any | None:
    with backend_call(f"listing members of pool {pool_id}"):
        return _unique("member", name, conn.load_balancer.members(pool_id, name=name))


def list_listeners(conn: Any, load_balancer_id: str) -> list[Any]:
    with backend_call(f"listing listeners of load balancer {load_balancer_id}"):
        return list(conn.load_balancer.listeners(load_balancer_id=load_balancer_id))


def list_pools(conn: Any, load_balancer_id: str) -> list[Any]:
    with backend_call(f"listing pools of load balancer {load_balancer_id}"):
        return list(conn.load_balancer.pools(loadbalancer_id=load_balancer_id))


def list_members(conn: Any, pool_id: str) -> list[Any]:
    with backend_call(f"listing members of pool {pool_id}"):
        return list(conn.load_balancer.members(pool_id))
