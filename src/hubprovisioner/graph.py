"""Dependency graph construction for resource graphs.

This module derives apply-order constraints between resource nodes:
1. Reference edges from ExternalReferences embedded in properties
2. Explicit edges from `depends_on`
3. Parent edges: a child resource applies after its parent
4. Descendant expansion: depending on a parent means depending on all of
   its children too (a firewall that depends on its policy waits for the
   policy's rule collection groups)
5. Sibling serialization: children of a parent that is a single
   optimistic-concurrency unit are chained so no two of them are written
   at the same time (concurrent PUTs on them return 409 Conflict)

Cycles are fatal and reported with the full cycle path. No partial graph is
ever returned.

EXAMPLE:
```
firewallPolicy/hub          <- ruleCollectionGroup platform (priority 200)
                            <- ruleCollectionGroup workloads (priority 300)
azureFirewall/hub  -> firewallPolicy/hub (+ both groups), publicIPAddress/*, subnet
```
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from .errors import CycleDetectedError, DanglingReferenceError, ValidationError
from .models import ResourceNode

logger = logging.getLogger(__name__)


class EdgeReason(str, Enum):
    """Why an apply-order edge exists."""

    REFERENCE = "reference"
    EXPLICIT = "explicit"
    PARENT = "parent"
    DESCENDANT = "descendant"
    SERIALIZED = "serialized"


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource apply-order constraints.

    An edge (a, b) means "a must be applied strictly after b".
    """

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    edges: dict[str, set[str]] = field(default_factory=dict)
    reasons: dict[tuple[str, str], EdgeReason] = field(default_factory=dict)

    def add_node(self, node: ResourceNode) -> None:
        if node.id in self.nodes:
            raise ValidationError(f"Duplicate resource id '{node.id}'")
        self.nodes[node.id] = node
        self.edges[node.id] = set()

    def add_edge(self, source: str, target: str, reason: EdgeReason) -> None:
        """Record that `source` applies after `target`.

        The first recorded reason for an edge is kept.
        """
        if source == target:
            raise CycleDetectedError([source, source])
        self.edges[source].add(target)
        self.reasons.setdefault((source, target), reason)

    def dependencies_of(self, node_id: str) -> set[str]:
        return set(self.edges.get(node_id, set()))

    def dependents_of(self, node_id: str) -> set[str]:
        return {source for source, targets in self.edges.items() if node_id in targets}

    def edge_list(self) -> list[tuple[str, str]]:
        """All edges, ordered by declaration of source then target."""
        order = self.declaration_index
        return sorted(
            ((s, t) for s, targets in self.edges.items() for t in targets),
            key=lambda e: (order(e[0]), order(e[1])),
        )

    def declaration_index(self, node_id: str) -> int:
        return list(self.nodes).index(node_id)

    def children_of(self, node_id: str) -> list[ResourceNode]:
        """Child resources of a node. Extension resources scoped to it are not children."""
        return [
            n
            for n in self.nodes.values()
            if n.parent_id == node_id and not n.resource_kind.extension
        ]

    def descendants_of(self, node_id: str) -> list[ResourceNode]:
        result: list[ResourceNode] = []
        pending = self.children_of(node_id)
        while pending:
            child = pending.pop(0)
            result.append(child)
            pending.extend(self.children_of(child.id))
        return result

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a closed path of node ids, or None."""
        order = {node_id: index for index, node_id in enumerate(self.nodes)}
        visiting: set[str] = set()
        done: set[str] = set()
        stack: list[str] = []

        def visit(node_id: str) -> list[str] | None:
            visiting.add(node_id)
            stack.append(node_id)
            for dep in sorted(self.edges[node_id], key=order.__getitem__):
                if dep in visiting:
                    start = stack.index(dep)
                    return [*stack[start:], dep]
                if dep not in done:
                    cycle = visit(dep)
                    if cycle is not None:
                        return cycle
            stack.pop()
            visiting.discard(node_id)
            done.add(node_id)
            return None

        for node_id in self.nodes:
            if node_id not in done:
                cycle = visit(node_id)
                if cycle is not None:
                    return cycle
        return None

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CycleDetectedError: If a cycle is detected.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleDetectedError(cycle)

    def topological_order(self) -> list[str]:
        """Return node ids dependencies-first, ties broken by declaration order.

        Raises:
            CycleDetectedError: If a cycle is detected.
        """
        self.validate()

        order = {node_id: index for index, node_id in enumerate(self.nodes)}
        in_degree = {node_id: len(deps) for node_id, deps in self.edges.items()}
        dependents: dict[str, list[str]] = {node_id: [] for node_id in self.nodes}
        for source, targets in self.edges.items():
            for target in targets:
                dependents[target].append(source)

        ready = [(order[n], n) for n, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result: list[str] = []
        while ready:
            _, current = heapq.heappop(ready)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (order[dependent], dependent))
        return result


def build_graph(nodes: Iterable[ResourceNode]) -> DependencyGraph:
    """Derive the dependency graph for a list of nodes.

    Args:
        nodes: Nodes in declaration order (managed and external).

    Returns:
        A validated, acyclic DependencyGraph.

    Raises:
        ValidationError: Duplicate node ids.
        DanglingReferenceError: A parent, dependency or reference names an
            id that is not in the graph.
        CycleDetectedError: The constraints are circular.
    """
    graph = DependencyGraph()
    for node in nodes:
        graph.add_node(node)

    for node in graph.nodes.values():
        if node.parent_id is not None:
            if node.parent_id not in graph.nodes:
                raise DanglingReferenceError(node.id, node.parent_id, via="parent")
            graph.add_edge(node.id, node.parent_id, EdgeReason.PARENT)

        for dep in sorted(node.depends_on):
            if dep not in graph.nodes:
                raise DanglingReferenceError(node.id, dep, via="dependsOn")
            graph.add_edge(node.id, dep, EdgeReason.EXPLICIT)

        for ref in node.references():
            if ref.target_id not in graph.nodes:
                raise DanglingReferenceError(node.id, ref.target_id)
            if ref.target_id == node.id:
                continue
            graph.add_edge(node.id, ref.target_id, EdgeReason.REFERENCE)

    _expand_descendants(graph)
    _serialize_siblings(graph)
    graph.validate()

    logger.info(
        "Dependency graph built",
        extra={
            "node_count": len(graph.nodes),
            "edge_count": sum(len(t) for t in graph.edges.values()),
        },
    )
    return graph


def _expand_descendants(graph: DependencyGraph) -> None:
    """Make edges onto a parent also wait for that parent's descendants."""
    for source in list(graph.nodes):
        for target in sorted(graph.edges[source], key=graph.declaration_index):
            descendants = graph.descendants_of(target)
            if not descendants:
                continue
            descendant_ids = {d.id for d in descendants}
            if source in descendant_ids:
                continue
            for descendant in descendants:
                if descendant.id == source or descendant.is_external:
                    continue
                graph.add_edge(source, descendant.id, EdgeReason.DESCENDANT)


def _serialize_siblings(graph: DependencyGraph) -> None:
    """Chain managed children of single-concurrency-unit parents.

    Siblings are ordered consistently with the edges already present
    (declaration order breaks ties), so the added edges never close a cycle.
    """
    position = {node_id: index for index, node_id in enumerate(graph.topological_order())}

    for parent in list(graph.nodes.values()):
        if not parent.resource_kind.serialize_children:
            continue
        siblings = sorted(
            (c for c in graph.children_of(parent.id) if not c.is_external),
            key=lambda c: position[c.id],
        )
        for later_index, later in enumerate(siblings):
            for earlier in siblings[:later_index]:
                graph.add_edge(later.id, earlier.id, EdgeReason.SERIALIZED)
        if len(siblings) > 1:
            logger.debug(
                "Serialized sibling writes",
                extra={"parent": parent.id, "order": [s.id for s in siblings]},
            )
