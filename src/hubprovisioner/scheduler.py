"""Stage scheduling for apply plans.

Stages are produced by repeatedly extracting every managed node whose
dependencies are all satisfied. Nodes within a stage have no edges between
them and may run concurrently; stages run strictly in sequence. Ties are
broken by declaration order, so identical input always yields an identical
plan (reproducible dry-runs).

External nodes are prerequisites that already exist; they count as
satisfied from the start and never appear in a stage.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .errors import CycleDetectedError
from .graph import DependencyGraph

logger = logging.getLogger(__name__)


class PlannedAction(str, Enum):
    """What applying a node would do."""

    CREATE = "create"
    UPDATE = "update"
    NO_OP = "no-op"


@dataclass
class Stage:
    """A set of nodes with no edges between them."""

    index: int
    node_ids: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.node_ids)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.node_ids


@dataclass
class ApplyPlan:
    """Ordered sequence of stages derived from a dependency graph."""

    graph: DependencyGraph
    stages: list[Stage] = field(default_factory=list)
    # Filled in by a preview against live state
    actions: dict[str, PlannedAction] = field(default_factory=dict)

    def stage_of(self, node_id: str) -> int:
        for stage in self.stages:
            if node_id in stage:
                return stage.index
        raise KeyError(node_id)

    @property
    def node_ids(self) -> list[str]:
        return [node_id for stage in self.stages for node_id in stage.node_ids]

    def to_dict(self) -> dict[str, Any]:
        """Render the plan for human or machine review."""
        stages = []
        for stage in self.stages:
            resources = []
            for node_id in stage.node_ids:
                node = self.graph.nodes[node_id]
                entry: dict[str, Any] = {"id": node_id, "kind": node.kind, "name": node.name}
                action = self.actions.get(node_id)
                if action is not None:
                    entry["action"] = action.value
                after = sorted(self.graph.edges[node_id], key=self.graph.declaration_index)
                if after:
                    entry["after"] = after
                resources.append(entry)
            stages.append({"stage": stage.index, "resources": resources})

        summary = {action.value: 0 for action in PlannedAction}
        for action in self.actions.values():
            summary[action.value] += 1
        return {"stages": stages, "summary": summary if self.actions else {}}

    def render(self, output_format: str = "yaml") -> str:
        data = self.to_dict()
        if output_format == "json":
            return json.dumps(data, indent=2)
        return yaml.safe_dump(data, sort_keys=False, default_flow_style=False)


def schedule(graph: DependencyGraph) -> ApplyPlan:
    """Produce a staged apply plan from a dependency graph.

    Raises:
        CycleDetectedError: If the graph contains a cycle.
    """
    order = {node_id: index for index, node_id in enumerate(graph.nodes)}
    managed = [node_id for node_id, node in graph.nodes.items() if not node.is_external]
    managed_set = set(managed)

    remaining: dict[str, set[str]] = {
        node_id: {dep for dep in graph.edges[node_id] if dep in managed_set} for node_id in managed
    }

    plan = ApplyPlan(graph=graph)
    while remaining:
        ready = sorted((n for n, deps in remaining.items() if not deps), key=order.__getitem__)
        if not ready:
            cycle = graph.find_cycle()
            raise CycleDetectedError(cycle or sorted(remaining, key=order.__getitem__))

        plan.stages.append(Stage(index=len(plan.stages), node_ids=ready))
        for node_id in ready:
            del remaining[node_id]
        for deps in remaining.values():
            deps.difference_update(ready)

    logger.info(
        "Apply plan scheduled",
        extra={
            "stage_count": len(plan.stages),
            "node_count": len(managed),
            "max_stage_width": max((len(s) for s in plan.stages), default=0),
        },
    )
    return plan
