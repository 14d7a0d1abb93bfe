"""Tests for stage scheduling."""

from __future__ import annotations

import json

import pytest
import yaml

from hubprovisioner.errors import CycleDetectedError
from hubprovisioner.graph import DependencyGraph, EdgeReason, build_graph
from hubprovisioner.models import ResourceNode, create_resource, external_resource, resource_family
from hubprovisioner.scheduler import PlannedAction, schedule

LOCATION = "westeurope"
SUBNET_ID = (
    "/subscriptions/11111111-2222-3333-4444-555555555555/resourceGroups/rg-spokes/providers/"
    "Microsoft.Network/virtualNetworks/vnet-a/subnets/snet-app"
)


def _assert_edges_respected(graph: DependencyGraph, stage_of: dict[str, int]) -> None:
    for source, target in graph.edge_list():
        if target in stage_of:
            assert stage_of[source] > stage_of[target], f"{source} not after {target}"


def _firewall_with_ips(count: int) -> list[ResourceNode]:
    ips = resource_family("publicIPAddress", "pip-hub", count, LOCATION, zones=["1", "2", "3"])
    firewall = create_resource(
        "azureFirewall",
        "afw-hub",
        LOCATION,
        {
            "ipConfigurations": [
                {"name": f"ipconfig-{i}", "properties": {"publicIPAddress": {"id": ip.ref()}}}
                for i, ip in enumerate(ips, start=1)
            ]
        },
        zones=["1", "2", "3"],
    )
    return [*ips, firewall]


class TestSchedule:
    """Tests for schedule()."""

    def test_three_ips_and_firewall(self) -> None:
        """Test that the firewall is last and the IPs share one earlier stage."""
        nodes = _firewall_with_ips(3)

        plan = schedule(build_graph(nodes))

        assert len(plan.stages) == 2
        assert plan.stages[0].node_ids == [n.id for n in nodes[:3]]
        assert plan.stages[-1].node_ids == ["azureFirewall/afw-hub"]

    def test_individually_referenced_family_member(self) -> None:
        """Test that only the referenced family member constrains ordering."""
        ips = resource_family("publicIPAddress", "pip-hub", 3, LOCATION)
        consumer = create_resource("ipGroup", "ipg", LOCATION, {"x": ips[1].ref()})
        other = create_resource("ipGroup", "ipg-free", LOCATION)

        plan = schedule(build_graph([*ips, consumer, other]))

        assert plan.stage_of(ips[0].id) == plan.stage_of(ips[2].id) == plan.stage_of(other.id) == 0
        assert plan.stage_of(consumer.id) == 1

    def test_edges_cross_stages(self) -> None:
        """Test that every edge source lands strictly after its target."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnets = [create_resource("subnet", f"snet-{i}", LOCATION, parent=vnet) for i in range(4)]
        policy = create_resource("firewallPolicy", "afwp", LOCATION)
        groups = [
            create_resource("ruleCollectionGroup", f"rcg-{i}", LOCATION, parent=policy)
            for i in range(3)
        ]
        firewall = create_resource(
            "azureFirewall",
            "afw",
            LOCATION,
            {
                "firewallPolicy": {"id": policy.ref()},
                "ipConfigurations": [{"properties": {"subnet": {"id": subnets[0].ref()}}}],
            },
        )
        graph = build_graph([vnet, *subnets, policy, *groups, firewall])

        plan = schedule(graph)

        stage_of = {n: plan.stage_of(n) for n in plan.node_ids}
        _assert_edges_respected(graph, stage_of)
        assert plan.stage_of(firewall.id) == len(plan.stages) - 1

    def test_siblings_never_share_a_stage(self) -> None:
        """Test the serialization invariant for children of one parent."""
        vnet = create_resource("virtualNetwork", "vnet", LOCATION)
        subnets = [create_resource("subnet", f"snet-{i}", LOCATION, parent=vnet) for i in range(5)]

        plan = schedule(build_graph([vnet, *subnets]))

        stages = [plan.stage_of(s.id) for s in subnets]
        assert len(set(stages)) == len(stages)

    def test_tiered_rule_collection_groups_deterministic(self) -> None:
        """Test that the second group always follows the first across runs."""

        def build() -> list[list[str]]:
            policy = create_resource("firewallPolicy", "afwp", LOCATION)
            first = create_resource("ruleCollectionGroup", "rcg-platform", LOCATION, parent=policy)
            second = create_resource(
                "ruleCollectionGroup",
                "rcg-workloads",
                LOCATION,
                parent=policy,
                depends_on=[first.id],
            )
            plan = schedule(build_graph([policy, first, second]))
            assert plan.stage_of(first.id) < plan.stage_of(second.id)
            return [stage.node_ids for stage in plan.stages]

        runs = [build() for _ in range(5)]
        assert all(run == runs[0] for run in runs)

    def test_external_nodes_not_scheduled(self) -> None:
        """Test that existing resources are satisfied and never staged."""
        subnet = external_resource(SUBNET_ID)
        ip_group = create_resource(
            "ipGroup", "ipg", LOCATION, {"ipAddresses": [subnet.ref("properties.addressPrefix")]}
        )

        plan = schedule(build_graph([subnet, ip_group]))

        assert plan.node_ids == [ip_group.id]
        assert plan.stages[0].index == 0

    def test_cycle_produces_no_plan(self) -> None:
        """Test that a cyclic graph raises instead of returning a partial plan."""
        graph = DependencyGraph()
        a = create_resource("ipGroup", "a", LOCATION)
        b = create_resource("ipGroup", "b", LOCATION)
        graph.add_node(a)
        graph.add_node(b)
        graph.add_edge(a.id, b.id, EdgeReason.EXPLICIT)
        graph.add_edge(b.id, a.id, EdgeReason.EXPLICIT)

        with pytest.raises(CycleDetectedError) as exc_info:
            schedule(graph)

        assert set(exc_info.value.cycle) == {a.id, b.id}


class TestPlanRendering:
    """Tests for plan output."""

    def test_render_yaml_with_actions(self) -> None:
        """Test YAML rendering of stages, actions and summary."""
        nodes = _firewall_with_ips(2)
        plan = schedule(build_graph(nodes))
        plan.actions = {
            nodes[0].id: PlannedAction.NO_OP,
            nodes[1].id: PlannedAction.CREATE,
            nodes[2].id: PlannedAction.UPDATE,
        }

        data = yaml.safe_load(plan.render("yaml"))

        assert data["stages"][0]["resources"][0] == {
            "id": "publicIPAddress/pip-hub-1",
            "kind": "publicIPAddress",
            "name": "pip-hub-1",
            "action": "no-op",
        }
        firewall_entry = data["stages"][1]["resources"][0]
        assert firewall_entry["action"] == "update"
        assert firewall_entry["after"] == ["publicIPAddress/pip-hub-1", "publicIPAddress/pip-hub-2"]
        assert data["summary"] == {"create": 1, "update": 1, "no-op": 1}

    def test_render_json_without_preview(self) -> None:
        """Test JSON rendering before any preview."""
        plan = schedule(build_graph(_firewall_with_ips(1)))

        data = json.loads(plan.render("json"))

        assert len(data["stages"]) == 2
        assert data["summary"] == {}
        assert "action" not in data["stages"][0]["resources"][0]
