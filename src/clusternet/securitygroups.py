"""Security group reconciliation.

Each managed group moves through ABSENT -> CREATING -> (MATCHED | RESYNCING)
-> MATCHED. A group whose observed rules differ from the declared ones in any
way is resynchronised by deleting every observed rule and recreating every
declared rule. A freshly created group goes through the same resync, which
removes the rules Neutron seeds into every new group. If a resync fails
halfway, the next pass starts again from whatever rules are then present.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping
from typing import Any

from .exceptions import backend_call
from .models import (
    SELF_GROUP,
    ClusterSpec,
    ClusterStatus,
    DesiredSecurityGroup,
    RuleTemplate,
    SecurityGroup,
    SecurityGroupRule,
)
from .naming import CONTROL_PLANE_SUFFIX, GLOBAL_SUFFIX, security_group_name
from .probe import find_security_group, security_group_exists
from .provenance import ChangeAction, ChangeSummary

logger = logging.getLogger(__name__)

SECURITY_GROUP_DESCRIPTION = "Cluster API managed group"

# Unrestricted egress, appended to every managed group
DEFAULT_RULES: tuple[RuleTemplate, ...] = (
    RuleTemplate(direction="egress", ether_type="IPv4"),
    RuleTemplate(direction="egress", ether_type="IPv6"),
)


def control_plane_group(cluster_name: str) -> DesiredSecurityGroup:
    """Ingress for the API server (443) and SSH (22) from anywhere."""
    return DesiredSecurityGroup(
        name=security_group_name(cluster_name, CONTROL_PLANE_SUFFIX),
        rules=(
            RuleTemplate(
                direction="ingress",
                ether_type="IPv4",
                port_range_min=443,
                port_range_max=443,
                protocol="tcp",
                remote_ip_prefix="0.0.0.0/0",
            ),
            RuleTemplate(
                direction="ingress",
                ether_type="IPv4",
                port_range_min=22,
                port_range_max=22,
                protocol="tcp",
                remote_ip_prefix="0.0.0.0/0",
            ),
            *DEFAULT_RULES,
        ),
    )


def global_group(cluster_name: str) -> DesiredSecurityGroup:
    """Any traffic between members of the group itself."""
    return DesiredSecurityGroup(
        name=security_group_name(cluster_name, GLOBAL_SUFFIX),
        rules=(
            RuleTemplate(
                direction="ingress",
                ether_type="IPv4",
                port_range_min=1,
                port_range_max=65535,
                protocol="tcp",
                remote_group=SELF_GROUP,
            ),
            RuleTemplate(
                direction="ingress",
                ether_type="IPv4",
                port_range_min=1,
                port_range_max=65535,
                protocol="udp",
                remote_group=SELF_GROUP,
            ),
            RuleTemplate(
                direction="ingress",
                ether_type="IPv4",
                protocol="icmp",
                remote_group=SELF_GROUP,
            ),
            *DEFAULT_RULES,
        ),
    )


def match_groups(desired: DesiredSecurityGroup, observed: SecurityGroup) -> bool:
    """Check whether an observed group carries exactly the declared rules.

    Order is irrelevant; self placeholders resolve to the observed group's id.
    """
    wanted = Counter(rule.match_key() for rule in desired.resolved_rules(observed.id))
    actual = Counter(rule.match_key() for rule in observed.rules)
    return wanted == actual


def _field(raw: Any, attr: str, key: str) -> Any:
    # Rules embedded in a group come back as plain dicts with API keys,
    # rules returned by create_security_group_rule are SDK resources.
    if isinstance(raw, Mapping):
        return raw.get(key)
    return getattr(raw, attr, None)


def convert_rule(raw: Any) -> SecurityGroupRule:
    return SecurityGroupRule(
        id=_field(raw, "id", "id") or "",
        direction=_field(raw, "direction", "direction") or "",
        ether_type=_field(raw, "ether_type", "ethertype") or "",
        security_group_id=_field(raw, "security_group_id", "security_group_id") or "",
        port_range_min=_field(raw, "port_range_min", "port_range_min") or 0,
        port_range_max=_field(raw, "port_range_max", "port_range_max") or 0,
        protocol=_field(raw, "protocol", "protocol") or "",
        remote_group_id=_field(raw, "remote_group_id", "remote_group_id") or "",
        remote_ip_prefix=_field(raw, "remote_ip_prefix", "remote_ip_prefix") or "",
    )


def convert_group(raw: Any) -> SecurityGroup:
    return SecurityGroup(
        id=raw.id,
        name=raw.name,
        rules=[convert_rule(rule) for rule in (raw.security_group_rules or [])],
    )


class SecurityGroupReconciler:
    """Converges the cluster's managed security groups.

    Args:
        conn: OpenStack connection.
        changes: Records every mutating call issued.
    """

    def __init__(self, conn: Any, changes: ChangeSummary | None = None) -> None:
        self._conn = conn
        self._changes = changes if changes is not None else ChangeSummary()

    def reconcile_security_groups(
        self,
        cluster_name: str,
        spec: ClusterSpec,
        status: ClusterStatus,
    ) -> None:
        """Reconcile both managed groups and record them in status."""
        logger.info("Reconciling security groups", extra={"cluster": cluster_name})
        if not spec.managed_security_groups:
            logger.debug(
                "Security groups are not managed, nothing to do",
                extra={"cluster": cluster_name},
            )
            return

        status.control_plane_security_group = self.reconcile(control_plane_group(cluster_name))
        status.global_security_group = self.reconcile(global_group(cluster_name))

    def reconcile(self, desired: DesiredSecurityGroup) -> SecurityGroup:
        """Create, adopt or resynchronise one group.

        Returns:
            The group as it exists on the backend after this call.

        Raises:
            AmbiguousResourceError: If several groups carry the name.
            BackendError: If any create or delete fails.
        """
        logger.info("Reconciling security group", extra={"security_group": desired.name})

        raw = find_security_group(self._conn, desired.name)
        if raw is None:
            logger.info(
                "Security group does not exist, creating it",
                extra={"security_group": desired.name},
            )
            return self._create_group(desired)

        observed = convert_group(raw)
        if match_groups(desired, observed):
            logger.debug("Security group matched", extra={"security_group": desired.name})
            return observed

        logger.info(
            "Security group rules differ, resynchronising",
            extra={"security_group": desired.name, "security_group_id": observed.id},
        )
        return self._resync_group(desired, observed)

    def delete_security_group(self, group: SecurityGroup) -> None:
        """Delete a group recorded in status, if it still exists."""
        if not group.id or not security_group_exists(self._conn, group.id):
            logger.info(
                "Security group already gone",
                extra={"security_group": group.name, "security_group_id": group.id},
            )
            return

        logger.info(
            "Deleting security group",
            extra={"security_group": group.name, "security_group_id": group.id},
        )
        with backend_call(f"deleting security group {group.id}"):
            self._conn.network.delete_security_group(group.id)
        self._changes.record(ChangeAction.DELETE, "security_group", group.id, group.name)

    def _resync_group(
        self, desired: DesiredSecurityGroup, observed: SecurityGroup
    ) -> SecurityGroup:
        for rule in observed.rules:
            logger.debug(
                "Deleting rule",
                extra={"security_group": observed.name, "rule_id": rule.id},
            )
            with backend_call(f"deleting rule {rule.id} of security group {observed.name}"):
                self._conn.network.delete_security_group_rule(rule.id)
            self._changes.record(ChangeAction.DELETE, "security_group_rule", rule.id)

        recreated = [self._create_rule(rule) for rule in desired.resolved_rules(observed.id)]
        return observed.model_copy(update={"rules": recreated})

    def _create_group(self, desired: DesiredSecurityGroup) -> SecurityGroup:
        with backend_call(f"creating security group {desired.name}"):
            raw = self._conn.network.create_security_group(
                name=desired.name,
                description=SECURITY_GROUP_DESCRIPTION,
            )
        self._changes.record(ChangeAction.CREATE, "security_group", raw.id, desired.name)

        # Neutron seeds new groups with default egress rules. Recreating one
        # of them would be rejected as a duplicate, so they are cleared first.
        return self._resync_group(desired, convert_group(raw))

    def _create_rule(self, rule: SecurityGroupRule) -> SecurityGroupRule:
        attrs: dict[str, Any] = {
            "security_group_id": rule.security_group_id,
            "direction": rule.direction,
            "ethertype": rule.ether_type,
        }
        # Zero values mean "any" and are left out of the request
        optional = {
            "port_range_min": rule.port_range_min,
            "port_range_max": rule.port_range_max,
            "protocol": rule.protocol,
            "remote_group_id": rule.remote_group_id,
            "remote_ip_prefix": rule.remote_ip_prefix,
        }
        attrs.update({key: value for key, value in optional.items() if value})

        logger.debug("Creating rule", extra={"rule": attrs})
        with backend_call(f"creating rule for security group {rule.security_group_id}"):
            raw = self._conn.network.create_security_group_rule(**attrs)
        created = convert_rule(raw)
        self._changes.record(ChangeAction.CREATE, "security_group_rule", created.id)
        return created
