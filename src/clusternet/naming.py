"""Deterministic resource names.

Pre-existing resources are adopted purely by name, so these formats must not
change between releases.
"""

from __future__ import annotations

NETWORK_PREFIX = "k8s-clusterapi"
KUBEAPI_LB_SUFFIX = "kubeapi"

SECGROUP_PREFIX = "k8s"
CONTROL_PLANE_SUFFIX = "controlplane"
GLOBAL_SUFFIX = "all"

# Tags applied to every network, subnet and allocated floating IP
OWNERSHIP_TAG = "cluster-api-provider-openstack"


def network_name(cluster_name: str) -> str:
    """Name shared by the cluster network and its subnet."""
    return f"{NETWORK_PREFIX}-cluster-{cluster_name}"


def load_balancer_name(cluster_name: str) -> str:
    return f"{NETWORK_PREFIX}-cluster-{cluster_name}-{KUBEAPI_LB_SUFFIX}"


def port_objects_name(lb_name: str, port: int) -> str:
    """Name of the listener, pool and monitor serving one port."""
    return f"{lb_name}-{port}"


def member_name(port_objects: str, machine_name: str) -> str:
    return f"{port_objects}-{machine_name}"


def security_group_name(cluster_name: str, suffix: str) -> str:
    return f"{SECGROUP_PREFIX}-cluster-{cluster_name}-secgroup-{suffix}"


def ownership_tags(cluster_name: str) -> list[str]:
    return [OWNERSHIP_TAG, cluster_name]
