"""Tests for security group reconciliation."""

from __future__ import annotations

import pytest
from openstack import exceptions as os_exc

from clusternet.exceptions import AmbiguousResourceError, BackendError
from clusternet.models import (
    SELF_GROUP,
    ClusterSpec,
    ClusterStatus,
    DesiredSecurityGroup,
    RuleTemplate,
    SecurityGroup,
    SecurityGroupRule,
)
from clusternet.provenance import ChangeAction, ChangeSummary
from clusternet.securitygroups import (
    SECURITY_GROUP_DESCRIPTION,
    SecurityGroupReconciler,
    control_plane_group,
    convert_rule,
    global_group,
    match_groups,
)
from openstack_mock import MockConnection, MockOpenStackState


def observed(group_id: str, desired: DesiredSecurityGroup) -> SecurityGroup:
    """An observed group carrying exactly the desired rules."""
    rules = [
        rule.model_copy(update={"id": f"rule-{i}"})
        for i, rule in enumerate(desired.resolved_rules(group_id))
    ]
    return SecurityGroup(name=desired.name, id=group_id, rules=rules)


class TestGroupDefinitions:
    """Tests for the two fixed group definitions."""

    def test_names(self) -> None:
        """Group names follow the k8s-cluster-<name>-secgroup-<suffix> pattern."""
        assert control_plane_group("demo").name == "k8s-cluster-demo-secgroup-controlplane"
        assert global_group("demo").name == "k8s-cluster-demo-secgroup-all"

    def test_control_plane_rules(self) -> None:
        """API server and SSH ingress plus the default egress rules."""
        rules = control_plane_group("demo").resolved_rules("sg-1")
        ingress = {(r.protocol, r.port_range_min, r.remote_ip_prefix) for r in rules if r.direction == "ingress"}
        egress = {r.ether_type for r in rules if r.direction == "egress"}

        assert ingress == {("tcp", 443, "0.0.0.0/0"), ("tcp", 22, "0.0.0.0/0")}
        assert egress == {"IPv4", "IPv6"}

    def test_global_rules_reference_own_group(self) -> None:
        """All ingress rules of the global group allow traffic from the group itself."""
        rules = global_group("demo").resolved_rules("sg-all")
        ingress = [r for r in rules if r.direction == "ingress"]

        assert {r.protocol for r in ingress} == {"tcp", "udp", "icmp"}
        assert all(r.remote_group_id == "sg-all" for r in ingress)
        assert len(rules) == 5


class TestMatchGroups:
    """Tests for rule set comparison."""

    def test_identical_rules_match(self) -> None:
        """A group with exactly the desired rules matches."""
        desired = control_plane_group("demo")
        assert match_groups(desired, observed("sg-1", desired))

    def test_order_is_irrelevant(self) -> None:
        """Any permutation of the desired rules matches."""
        desired = global_group("demo")
        group = observed("sg-1", desired)
        shuffled = group.model_copy(update={"rules": list(reversed(group.rules))})
        assert match_groups(desired, shuffled)

    def test_swapped_field_does_not_match(self) -> None:
        """Changing the protocol of one rule breaks the match."""
        desired = global_group("demo")
        group = observed("sg-1", desired)
        rules = list(group.rules)
        rules[0] = rules[0].model_copy(update={"protocol": "udp"})
        assert not match_groups(desired, group.model_copy(update={"rules": rules}))

    def test_extra_rule_does_not_match(self) -> None:
        """A group with an additional rule does not match."""
        desired = control_plane_group("demo")
        group = observed("sg-1", desired)
        extra = group.rules[0].model_copy(update={"id": "extra", "port_range_min": 80, "port_range_max": 80})
        assert not match_groups(desired, group.model_copy(update={"rules": [*group.rules, extra]}))

    def test_duplicate_rule_does_not_match_distinct_rules(self) -> None:
        """Rule sets are compared as multisets, not by containment."""
        desired = DesiredSecurityGroup(
            name="g",
            rules=(
                RuleTemplate(direction="egress", ether_type="IPv4"),
                RuleTemplate(direction="egress", ether_type="IPv6"),
            ),
        )
        v4 = SecurityGroupRule(id="a", direction="egress", ether_type="IPv4", security_group_id="sg")
        group = SecurityGroup(name="g", id="sg", rules=[v4, v4.model_copy(update={"id": "b"})])
        assert not match_groups(desired, group)

    def test_self_resolves_to_observed_id(self) -> None:
        """A self rule matches a rule whose remote group is the observed group's id."""
        desired = DesiredSecurityGroup(
            name="g",
            rules=(RuleTemplate(direction="ingress", ether_type="IPv4", protocol="tcp", remote_group=SELF_GROUP),),
        )
        rule = SecurityGroupRule(
            direction="ingress", ether_type="IPv4", protocol="tcp", remote_group_id="sg-9", security_group_id="sg-9"
        )
        assert match_groups(desired, SecurityGroup(name="g", id="sg-9", rules=[rule]))

    def test_literal_self_string_never_matches(self) -> None:
        """An observed remote group of "self" is not the group itself."""
        desired = DesiredSecurityGroup(
            name="g",
            rules=(RuleTemplate(direction="ingress", ether_type="IPv4", protocol="tcp", remote_group=SELF_GROUP),),
        )
        rule = SecurityGroupRule(direction="ingress", ether_type="IPv4", protocol="tcp", remote_group_id="self")
        assert not match_groups(desired, SecurityGroup(name="g", id="sg-9", rules=[rule]))


class TestConvertRule:
    """Tests for normalising backend rules."""

    def test_unset_fields_normalise_to_zero_values(self) -> None:
        """None from Neutron becomes 0 or the empty string."""
        rule = convert_rule(
            {
                "id": "r",
                "security_group_id": "sg",
                "direction": "egress",
                "ethertype": "IPv6",
                "port_range_min": None,
                "port_range_max": None,
                "protocol": None,
                "remote_group_id": None,
                "remote_ip_prefix": None,
            }
        )
        assert rule.match_key() == ("egress", "IPv6", 0, 0, "", "", "")


class TestSecurityGroupReconciler:
    """Tests for SecurityGroupReconciler against the in-memory cloud."""

    def test_creates_absent_group(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """An absent group is created with the declared rules only."""
        reconciler = SecurityGroupReconciler(conn)
        group = reconciler.reconcile(control_plane_group("demo"))

        stored = state.find("security_group", name="k8s-cluster-demo-secgroup-controlplane")
        assert len(stored) == 1
        assert stored[0].description == SECURITY_GROUP_DESCRIPTION
        assert group.id == stored[0].id
        assert len(group.rules) == 4
        assert state.count("security_group_rule") == 4

    def test_second_pass_is_noop(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """Reconciling an unchanged group issues no mutating call."""
        first = SecurityGroupReconciler(conn).reconcile(global_group("demo"))
        state.reset_calls()

        changes = ChangeSummary()
        second = SecurityGroupReconciler(conn, changes).reconcile(global_group("demo"))

        assert state.mutations() == []
        assert changes.total == 0
        assert {r.match_key() for r in second.rules} == {r.match_key() for r in first.rules}

    def test_drifted_group_is_resynchronised(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """A differing group has every rule deleted, then every declared rule created."""
        desired = control_plane_group("demo")
        group = state.add("security_group", name=desired.name)
        state.add("security_group_rule", security_group_id=group.id, direction="ingress",
                  ether_type="IPv4", protocol="tcp", port_range_min=80, port_range_max=80)
        state.add("security_group_rule", security_group_id=group.id, direction="egress", ether_type="IPv4")

        changes = ChangeSummary()
        result = SecurityGroupReconciler(conn, changes).reconcile(desired)

        methods = state.mutation_methods()
        assert methods == ["delete_security_group_rule"] * 2 + ["create_security_group_rule"] * 4
        assert changes.count(ChangeAction.DELETE, "security_group_rule") == 2
        assert changes.count(ChangeAction.CREATE, "security_group_rule") == 4
        assert result.id == group.id
        assert match_groups(desired, result)

    def test_self_rules_use_group_id(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """Rules referencing the group itself are created with its id."""
        group = SecurityGroupReconciler(conn).reconcile(global_group("demo"))
        for rule in state.find("security_group_rule", security_group_id=group.id, direction="ingress"):
            assert rule.remote_group_id == group.id

    def test_ambiguous_group_is_fatal(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """Two groups with the same name are never arbitrated."""
        desired = global_group("demo")
        state.add("security_group", name=desired.name)
        state.add("security_group", name=desired.name)

        with pytest.raises(AmbiguousResourceError):
            SecurityGroupReconciler(conn).reconcile(desired)
        assert state.mutations() == []

    def test_rule_failure_aborts(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """A failed rule creation surfaces as BackendError."""
        state.fail("create_security_group_rule", os_exc.HttpException("quota exceeded"))
        with pytest.raises(BackendError, match="creating rule"):
            SecurityGroupReconciler(conn).reconcile(control_plane_group("demo"))

    def test_interrupted_resync_restarts_from_remaining_rules(
        self, state: MockOpenStackState, conn: MockConnection
    ) -> None:
        """A resync cut short while deleting is finished by the next pass without conflicts."""
        desired = control_plane_group("demo")
        group = state.add("security_group", name=desired.name)
        state.add("security_group_rule", security_group_id=group.id, direction="ingress",
                  ether_type="IPv4", protocol="tcp", port_range_min=80, port_range_max=80)
        state.add("security_group_rule", security_group_id=group.id, direction="ingress",
                  ether_type="IPv4", protocol="tcp", port_range_min=22, port_range_max=22,
                  remote_ip_prefix="0.0.0.0/0")
        state.add("security_group_rule", security_group_id=group.id, direction="egress", ether_type="IPv4")

        state.fail("delete_security_group_rule", after=1)
        with pytest.raises(BackendError, match="deleting rule"):
            SecurityGroupReconciler(conn).reconcile(desired)
        assert state.count("security_group_rule") == 2
        assert state.method_calls("create_security_group_rule") == []

        state.recover("delete_security_group_rule")
        result = SecurityGroupReconciler(conn).reconcile(desired)

        assert result.id == group.id
        assert match_groups(desired, result)
        assert state.count("security_group_rule") == 4

        state.reset_calls()
        SecurityGroupReconciler(conn).reconcile(desired)
        assert state.mutations() == []

    def test_unmanaged_groups_are_skipped(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """Nothing happens when managedSecurityGroups is false."""
        spec = ClusterSpec.model_validate({"nodeCidr": "10.6.0.0/24"})
        status = ClusterStatus()
        SecurityGroupReconciler(conn).reconcile_security_groups("demo", spec, status)

        assert state.calls == []
        assert status.control_plane_security_group is None

    def test_both_groups_written_to_status(
        self, conn: MockConnection, demo_spec: ClusterSpec
    ) -> None:
        """Managed groups end up in status."""
        status = ClusterStatus()
        SecurityGroupReconciler(conn).reconcile_security_groups("demo", demo_spec, status)

        assert status.control_plane_security_group is not None
        assert status.control_plane_security_group.name == "k8s-cluster-demo-secgroup-controlplane"
        assert status.global_security_group is not None
        assert status.global_security_group.name == "k8s-cluster-demo-secgroup-all"

    def test_delete_existing_group(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """A recorded group that still exists is deleted."""
        group = SecurityGroupReconciler(conn).reconcile(global_group("demo"))
        changes = ChangeSummary()
        SecurityGroupReconciler(conn, changes).delete_security_group(group)

        assert state.count("security_group") == 0
        assert changes.count(ChangeAction.DELETE, "security_group") == 1

    def test_delete_missing_group_is_noop(self, state: MockOpenStackState, conn: MockConnection) -> None:
        """A recorded group that no longer exists is skipped."""
        SecurityGroupReconciler(conn).delete_security_group(SecurityGroup(name="gone", id="sg-gone"))
        assert state.mutations() == []
