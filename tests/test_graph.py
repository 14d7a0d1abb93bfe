"""Tests for dependency graph construction."""

from __future__ import annotations

import pytest

from hubprovisioner.errors import CycleDetectedError, DanglingReferenceError, ValidationError
from hubprovisioner.graph import DependencyGraph, EdgeReason, build_graph
from hubprovisioner.models import ResourceNode, create_resource, external_resource

LOCATION = "westeurope"
SUBNET_ID = (
    "/subscriptions/11111111-2222-3333-4444-555555555555/resourceGroups/rg-spokes/providers/"
    "Microsoft.Network/virtualNetworks/vnet-a/subnets/snet-app"
)


def _ip_group(name: str, depends_on: list[str] | None = None) -> ResourceNode:
    return create_resource("ipGroup", name, LOCATION, depends_on=depends_on or [])


class TestBuildGraph:
    """Tests for build_graph edge derivation."""

    def test_reference_edges(self) -> None:
        """Test that embedded references become edges."""
        pip = create_resource("publicIPAddress", "pip-1", LOCATION)
        firewall = create_resource(
            "azureFirewall",
            "afw",
            LOCATION,
            {"ipConfigurations": [{"properties": {"publicIPAddress": {"id": pip.ref()}}}]},
        )

        graph = build_graph([pip, firewall])

        assert graph.dependencies_of(firewall.id) == {pip.id}
        assert graph.reasons[(firewall.id, pip.id)] == EdgeReason.REFERENCE

    def test_explicit_edges(self) -> None:
        """Test that depends_on becomes edges."""
        a = _ip_group("a")
        b = _ip_group("b", depends_on=[a.id])

        graph = build_graph([a, b])

        assert graph.dependencies_of(b.id) == {a.id}
        assert graph.reasons[(b.id, a.id)] == EdgeReason.EXPLICIT

    def test_parent_edges(self) -> None:
        """Test child to parent edges."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnet = create_resource("subnet", "snet", LOCATION, parent=vnet)

        graph = build_graph([vnet, subnet])

        assert graph.reasons[(subnet.id, vnet.id)] == EdgeReason.PARENT

    def test_duplicate_ids(self) -> None:
        """Test that duplicate ids are rejected."""
        with pytest.raises(ValidationError, match="Duplicate"):
            build_graph([_ip_group("a"), _ip_group("a")])

    def test_dangling_explicit_dependency(self) -> None:
        """Test that an unknown dependsOn target is reported."""
        with pytest.raises(DanglingReferenceError) as exc_info:
            build_graph([_ip_group("a", depends_on=["ipGroup/missing"])])

        assert exc_info.value.target_id == "ipGroup/missing"
        assert exc_info.value.via == "dependsOn"

    def test_dangling_reference(self) -> None:
        """Test that a reference to a node outside the graph is reported."""
        other = _ip_group("other")
        node = create_resource("ipGroup", "a", LOCATION, {"x": other.ref()})

        with pytest.raises(DanglingReferenceError):
            build_graph([node])

    def test_dangling_parent(self) -> None:
        """Test that a parent outside the graph is reported."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnet = create_resource("subnet", "snet", LOCATION, parent=vnet)

        with pytest.raises(DanglingReferenceError) as exc_info:
            build_graph([subnet])

        assert exc_info.value.via == "parent"

    def test_external_nodes_participate_in_edges(self) -> None:
        """Test that existing resources are valid edge targets."""
        subnet = external_resource(SUBNET_ID)
        ip_group = create_resource(
            "ipGroup", "ipg", LOCATION, {"ipAddresses": [subnet.ref("properties.addressPrefix")]}
        )

        graph = build_graph([subnet, ip_group])

        assert graph.dependencies_of(ip_group.id) == {subnet.id}


class TestDescendantExpansion:
    """Tests for parent-to-descendant edge expansion."""

    def test_dependency_on_parent_waits_for_children(self) -> None:
        """Test that depending on a policy means depending on its groups."""
        policy = create_resource("firewallPolicy", "afwp", LOCATION)
        group_a = create_resource("ruleCollectionGroup", "rcg-a", LOCATION, parent=policy)
        group_b = create_resource("ruleCollectionGroup", "rcg-b", LOCATION, parent=policy)
        firewall = create_resource(
            "azureFirewall", "afw", LOCATION, {"firewallPolicy": {"id": policy.ref()}}
        )

        graph = build_graph([policy, group_a, group_b, firewall])

        assert graph.dependencies_of(firewall.id) == {policy.id, group_a.id, group_b.id}
        assert graph.reasons[(firewall.id, group_a.id)] == EdgeReason.DESCENDANT

    def test_descendant_does_not_depend_on_itself(self) -> None:
        """Test that a child referencing its parent does not wait on itself."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnet = create_resource("subnet", "snet", LOCATION, {"vnet": {"id": vnet.ref()}}, parent=vnet)

        graph = build_graph([vnet, subnet])

        assert graph.dependencies_of(subnet.id) == {vnet.id}

    def test_extension_resources_are_not_children(self) -> None:
        """Test that role assignments on a parent are not pulled into its descendants."""
        policy = create_resource("firewallPolicy", "afwp", LOCATION)
        assignment = create_resource(
            "roleAssignment", "0f3a8a52-5f6e-4b6c-9d2e-1c2b3a4d5e6f", None, parent=policy
        )
        firewall = create_resource(
            "azureFirewall", "afw", LOCATION, {"firewallPolicy": {"id": policy.ref()}}
        )

        graph = build_graph([policy, assignment, firewall])

        assert graph.dependencies_of(firewall.id) == {policy.id}
        assert graph.dependencies_of(assignment.id) == {policy.id}


class TestSiblingSerialization:
    """Tests for serialized children of single-writer parents."""

    def test_siblings_chained(self) -> None:
        """Test that each subnet waits for all earlier subnets."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnets = [
            create_resource("subnet", f"snet-{i}", LOCATION, parent=vnet) for i in range(3)
        ]

        graph = build_graph([vnet, *subnets])

        assert graph.dependencies_of(subnets[1].id) == {vnet.id, subnets[0].id}
        assert graph.dependencies_of(subnets[2].id) == {vnet.id, subnets[0].id, subnets[1].id}
        assert graph.reasons[(subnets[1].id, subnets[0].id)] == EdgeReason.SERIALIZED

    def test_serialization_follows_existing_edges(self) -> None:
        """Test that sibling order respects data dependencies over declaration order."""
        policy = create_resource("firewallPolicy", "afwp", LOCATION)
        late = create_resource("ruleCollectionGroup", "rcg-late", LOCATION, parent=policy)
        early = create_resource(
            "ruleCollectionGroup", "rcg-early", LOCATION, parent=policy, depends_on=[late.id]
        )
        # rcg-early is declared first but depends on rcg-late
        graph = build_graph([policy, early, late])

        assert late.id in graph.dependencies_of(early.id)
        assert early.id not in graph.dependencies_of(late.id)

    def test_edge_list_in_declaration_order(self) -> None:
        """Test that edges are listed by source then target declaration order."""
        graph = DependencyGraph()
        a, b, c = _ip_group("a"), _ip_group("b"), _ip_group("c")
        for node in (a, b, c):
            graph.add_node(node)
        graph.add_edge(c.id, b.id, EdgeReason.EXPLICIT)
        graph.add_edge(c.id, a.id, EdgeReason.EXPLICIT)
        graph.add_edge(b.id, a.id, EdgeReason.EXPLICIT)

        assert graph.edge_list() == [(b.id, a.id), (c.id, a.id), (c.id, b.id)]
        assert graph.dependents_of(a.id) == {b.id, c.id}


class TestCycles:
    """Tests for cycle detection."""

    def test_cycle_reported_in_full(self) -> None:
        """Test that every node on the cycle is reported."""
        a = _ip_group("a", depends_on=["ipGroup/c"])
        b = _ip_group("b", depends_on=["ipGroup/a"])
        c = _ip_group("c", depends_on=["ipGroup/b"])

        with pytest.raises(CycleDetectedError, match="Circular dependency") as exc_info:
            build_graph([a, b, c])

        cycle = exc_info.value.cycle
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {a.id, b.id, c.id}

    def test_self_reference_ignored(self) -> None:
        """Test that a node referencing its own attribute is not a cycle."""
        node = create_resource("ipGroup", "a", LOCATION)
        node.properties["self"] = node.ref("name")

        graph = build_graph([node])

        assert graph.dependencies_of(node.id) == set()

    def test_self_dependency_is_cycle(self) -> None:
        """Test that an explicit self-dependency is a cycle."""
        with pytest.raises(CycleDetectedError):
            build_graph([_ip_group("a", depends_on=["ipGroup/a"])])

    def test_topological_order_stable(self) -> None:
        """Test that independent nodes keep declaration order."""
        nodes = [_ip_group(name) for name in ("c", "a", "b")]

        graph = build_graph(nodes)

        assert graph.topological_order() == ["ipGroup/c", "ipGroup/a", "ipGroup/b"]
