"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for openstack_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from clusternet.models import ClusterSpec  # noqa: E402
from clusternet.waiter import RetryPolicy, Waiter  # noqa: E402
from openstack_mock import MockConnection, MockOpenStackState  # noqa: E402


@pytest.fixture
def state() -> MockOpenStackState:
    """Empty in-memory cloud."""
    return MockOpenStackState()


@pytest.fixture
def conn(state: MockOpenStackState) -> MockConnection:
    return MockConnection(state)


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by the waiter, in order."""
    return []


@pytest.fixture
def waiter(sleeps: list[float]) -> Waiter:
    """Waiter with a short budget that records instead of sleeping."""
    return Waiter(RetryPolicy(steps=5, duration=1.0, jitter=0.0), sleep=sleeps.append)


@pytest.fixture
def demo_spec() -> ClusterSpec:
    """Cluster "demo" with a managed API server load balancer on 6443 and 6444."""
    return ClusterSpec.model_validate(
        {
            "nodeCidr": "10.6.0.0/24",
            "dnsNameservers": ["8.8.8.8"],
            "externalNetworkId": "ext-net",
            "apiServerLoadBalancerFloatingIP": "172.24.4.10",
            "apiServerLoadBalancerPort": 6443,
            "apiServerLoadBalancerAdditionalPorts": [6444],
            "managedAPIServerLoadBalancer": True,
            "managedSecurityGroups": True,
        }
    )
