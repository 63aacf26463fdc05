"""OpenStack API Mock for Integration Testing.

This module provides an in-memory implementation of the openstacksdk
networking and load balancer proxies that enables testing without an
OpenStack cloud.

Key Features:
- In-memory state for networks, subnets, security groups, floating IPs
  and the Octavia object tree
- Provisioning transitions (PENDING_* -> ACTIVE) and Octavia's
  ACTIVE-before-mutation constraint
- Neutron's default egress rules on new security groups
- Call log distinguishing reads from mutations
- Error injection per proxy method

Usage:
    from openstack_mock import MockConnection, MockOpenStackState

    state = MockOpenStackState()
    conn = MockConnection(state)
    NetworkReconciler(conn).reconcile_network("demo", spec, status)

    assert state.mutation_methods() == ["create_network", "set_tags"]
"""

from .context import MockConnection, MockOpenStackContext, mock_openstack_context
from .load_balancer import MockLoadBalancerProxy
from .network import MockNetworkProxy
from .resources import MockCall, MockOpenStackState, MockResource

__all__ = [
    "MockCall",
    "MockConnection",
    "MockLoadBalancerProxy",
    "MockNetworkProxy",
    "MockOpenStackContext",
    "MockOpenStackState",
    "MockResource",
    "mock_openstack_context",
]
