"""Provisioning run orchestration.

One run:
1. Expand parameters into ResourceNodes (pure, validates names/regions)
2. Build the dependency graph (dangling references and cycles abort here)
3. Schedule stages
4. Resolve every reference, reading live state of existing resources
5. Preview (dry-run) or apply stage by stage

Steps 1-4 make no remote writes, so any failure there leaves Azure untouched.
Graphs, resolvers and caches are rebuilt per run; Azure is the source of truth.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .client import CloudResourceClient
from .config import MAX_GRAPH_NODES, Config
from .diff import DiffNormalizer
from .errors import ValidationError
from .executor import ApplyExecutor, ApplyResult
from .graph import DependencyGraph, build_graph
from .models import ResourceNode, ResourceScope
from .references import ReferenceResolver
from .scheduler import ApplyPlan, schedule
from .topology import HubNetworkSpec, build_hub_nodes

logger = logging.getLogger(__name__)


@dataclass
class PreparedRun:
    """Everything computed before the first remote write."""

    nodes: list[ResourceNode]
    graph: DependencyGraph
    plan: ApplyPlan
    resolver: ReferenceResolver


class Provisioner:
    """Plans and applies hub network parameters against a cloud client."""

    def __init__(
        self,
        config: Config,
        client: CloudResourceClient,
        *,
        normalizer: DiffNormalizer | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.config = config
        self._client = client
        self._normalizer = normalizer or DiffNormalizer()
        self._cancel_event = cancel_event or asyncio.Event()
        self._scope = ResourceScope(config.subscription_id, config.resource_group)

    @property
    def scope(self) -> ResourceScope:
        return self._scope

    def shutdown(self) -> None:
        """Signal the current run to stop after in-flight work."""
        logger.info("Shutdown requested")
        self._cancel_event.set()

    def prepare(self, spec: HubNetworkSpec) -> PreparedRun:
        """Build nodes, graph and plan without touching Azure.

        Raises:
            ValidationError, DanglingReferenceError, CycleDetectedError
        """
        nodes = build_hub_nodes(spec, self._scope, default_location=self.config.location)
        if len(nodes) > MAX_GRAPH_NODES:
            raise ValidationError(
                f"Hub expands to {len(nodes)} resources, more than the limit of {MAX_GRAPH_NODES}"
            )
        graph = build_graph(nodes)
        plan = schedule(graph)
        resolver = ReferenceResolver(nodes, self._scope, live_state_query=self._client.get)
        return PreparedRun(nodes=nodes, graph=graph, plan=plan, resolver=resolver)

    async def _resolve(self, run: PreparedRun) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, run.resolver.resolve_all)

    def _executor(self, resolver: ReferenceResolver) -> ApplyExecutor:
        return ApplyExecutor(
            self._client,
            resolver,
            max_concurrency=self.config.max_concurrency,
            retry=self.config.retry,
            normalizer=self._normalizer,
            cancel_event=self._cancel_event,
        )

    async def plan(self, spec: HubNetworkSpec) -> ApplyPlan:
        """Compute the staged plan with per-node actions, without writing.

        Raises:
            UnresolvedReferenceError: An existing resource is missing.
            CloudApiError: Live state could not be read.
        """
        run = self.prepare(spec)
        await self._resolve(run)
        await self._executor(run.resolver).preview(run.plan)
        logger.info(
            "Plan computed",
            extra={
                "stages": len(run.plan.stages),
                "actions": run.plan.to_dict()["summary"],
            },
        )
        return run.plan

    async def apply(self, spec: HubNetworkSpec) -> ApplyResult:
        """Apply the hub parameters.

        Pre-flight errors are raised before any write. Apply-time failures
        are returned in ApplyResult.failures.
        """
        run = self.prepare(spec)
        await self._resolve(run)
        logger.info(
            "Starting apply",
            extra={
                "resource_group": self.config.resource_group,
                "stages": len(run.plan.stages),
                "nodes": len(run.plan.node_ids),
            },
        )
        return await self._executor(run.resolver).apply(run.plan)
