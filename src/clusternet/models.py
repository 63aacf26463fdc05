"""Pydantic models for the cluster document and the status it produces.

These models provide:
1. Type-safe YAML parsing of the desired topology (ClusterSpec)
2. Validation at the boundary (fail fast, fail loudly)
3. The status records written back for the owning controller
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# =============================================================================
# Desired state
# =============================================================================

Port = Annotated[int, Field(ge=1, le=65535)]


class ClusterSpec(BaseModel):
    """Desired network topology of one cluster.

    Field aliases follow the OpenStackCluster resource so documents can be
    copied from a live cluster object.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    node_cidr: str = Field(alias="nodeCidr")
    dns_nameservers: list[str] = Field(default_factory=list, alias="dnsNameservers")

    # Load balancing is opt-in: all three must be set for the LB to be built
    external_network_id: str = Field("", alias="externalNetworkId")
    api_server_load_balancer_floating_ip: str = Field("", alias="apiServerLoadBalancerFloatingIP")
    api_server_load_balancer_port: Annotated[int, Field(ge=0, le=65535)] = Field(
        0, alias="apiServerLoadBalancerPort"
    )
    api_server_load_balancer_additional_ports: list[Port] = Field(
        default_factory=list, alias="apiServerLoadBalancerAdditionalPorts"
    )
    managed_api_server_load_balancer: bool = Field(False, alias="managedAPIServerLoadBalancer")

    managed_security_groups: bool = Field(False, alias="managedSecurityGroups")
    disable_port_security: bool = Field(False, alias="disablePortSecurity")

    # Octavia supports cascading delete, neutron-lbaas does not
    use_octavia: bool = Field(False, alias="useOctavia")

    @field_validator("node_cidr")
    @classmethod
    def validate_node_cidr(cls, v: str) -> str:
        try:
            network = ipaddress.ip_network(v, strict=False)
        except ValueError as e:
            raise ValueError(f"nodeCidr is not a valid CIDR: {v}") from e
        if network.version != 4:
            raise ValueError(f"nodeCidr must be an IPv4 CIDR: {v}")
        return v

    @field_validator("dns_nameservers")
    @classmethod
    def validate_dns_nameservers(cls, v: list[str]) -> list[str]:
        for server in v:
            try:
                ipaddress.ip_address(server)
            except ValueError as e:
                raise ValueError(f"dnsNameservers entry is not an IP address: {server}") from e
        return v

    @field_validator("api_server_load_balancer_floating_ip")
    @classmethod
    def validate_floating_ip(cls, v: str) -> str:
        if v:
            try:
                ipaddress.ip_address(v)
            except ValueError as e:
                raise ValueError(f"apiServerLoadBalancerFloatingIP is not an IP address: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_unique_ports(self) -> ClusterSpec:
        ports = self.load_balancer_ports
        if len(ports) != len(set(ports)):
            raise ValueError(f"load balancer ports must be unique: {ports}")
        return self

    @property
    def load_balancer_ports(self) -> list[int]:
        """Primary port followed by the additional ports, in configured order."""
        return [self.api_server_load_balancer_port, *self.api_server_load_balancer_additional_ports]


class Machine(BaseModel):
    """A cluster machine as seen by the load balancer membership step."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1)]
    control_plane: bool = Field(False, alias="controlPlane")
    address: str | None = None


class ClusterDocument(BaseModel):
    """A loaded cluster document: name, desired spec and known machines."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1)]
    spec: ClusterSpec
    machines: list[Machine] = Field(default_factory=list)

    @property
    def control_plane_machines(self) -> list[Machine]:
        return [m for m in self.machines if m.control_plane]


# =============================================================================
# Status records
# =============================================================================


class SecurityGroupRule(BaseModel):
    """A security group rule as observed on (or submitted to) the backend.

    Unset backend values are normalised to 0 / "" so that a declared
    "any" rule compares equal to what Neutron reports back.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    direction: str
    ether_type: str = Field(alias="etherType")
    security_group_id: str = Field("", alias="securityGroupID")
    port_range_min: int = Field(0, alias="portRangeMin")
    port_range_max: int = Field(0, alias="portRangeMax")
    protocol: str = ""
    remote_group_id: str = Field("", alias="remoteGroupID")
    remote_ip_prefix: str = Field("", alias="remoteIPPrefix")

    def match_key(self) -> tuple[str, str, int, int, str, str, str]:
        """Fields that decide whether two rules are the same rule.

        id and security_group_id are assigned by the backend and excluded.
        """
        return (
            self.direction,
            self.ether_type,
            self.port_range_min,
            self.port_range_max,
            self.protocol,
            self.remote_group_id,
            self.remote_ip_prefix,
        )


class SecurityGroup(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str
    rules: list[SecurityGroupRule] = Field(default_factory=list)


class Subnet(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str
    cidr: str


class Router(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str


class LoadBalancer(BaseModel):
    """API server load balancer addresses recorded for the cluster."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str
    ip: str
    internal_ip: str = Field(alias="internalIP")


class Network(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    id: str
    subnet: Subnet | None = None
    router: Router | None = None
    # Optional: only set when the cluster has a managed API server load balancer
    api_server_load_balancer: LoadBalancer | None = Field(None, alias="apiServerLoadBalancer")


class ClusterStatus(BaseModel):
    """Status written back for the owning controller."""

    model_config = ConfigDict(populate_by_name=True)

    network: Network | None = None
    control_plane_security_group: SecurityGroup | None = Field(
        None, alias="controlPlaneSecurityGroup"
    )
    global_security_group: SecurityGroup | None = Field(None, alias="globalSecurityGroup")
    ready: bool = False

    def to_dict(self) -> dict[str, object]:
        """Serialize with resource-style camelCase keys."""
        return self.model_dump(by_alias=True, exclude_none=True)


# =============================================================================
# Desired security group rules
# =============================================================================


@dataclass(frozen=True)
class SelfGroup:
    """Remote group placeholder meaning "the group this rule belongs to"."""

    def __repr__(self) -> str:
        return "SELF_GROUP"


SELF_GROUP = SelfGroup()


@dataclass(frozen=True)
class RuleTemplate:
    """A declared rule whose remote group may be the owning group itself.

    Resolve against a concrete group id with resolve() right before the rule
    is compared or submitted.
    """

    direction: str
    ether_type: str
    port_range_min: int = 0
    port_range_max: int = 0
    protocol: str = ""
    remote_group: str | SelfGroup = ""
    remote_ip_prefix: str = ""

    def resolve(self, group_id: str) -> SecurityGroupRule:
        remote_group_id = group_id if isinstance(self.remote_group, SelfGroup) else self.remote_group
        return SecurityGroupRule(
            direction=self.direction,
            ether_type=self.ether_type,
            security_group_id=group_id,
            port_range_min=self.port_range_min,
            port_range_max=self.port_range_max,
            protocol=self.protocol,
            remote_group_id=remote_group_id,
            remote_ip_prefix=self.remote_ip_prefix,
        )


@dataclass(frozen=True)
class DesiredSecurityGroup:
    name: str
    rules: tuple[RuleTemplate, ...]

    def resolved_rules(self, group_id: str) -> list[SecurityGroupRule]:
        return [rule.resolve(group_id) for rule in self.rules]
