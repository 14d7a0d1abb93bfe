"""Staged apply of a plan against the cloud resource API.

Execution model:
- Stages run strictly in sequence; stage K+1 starts only after every node
  of stage K has terminated and none failed
- Nodes within a stage run concurrently on a worker pool bounded by the
  configured concurrency limit
- Each node: read live state, skip if it already satisfies desired state,
  otherwise create-or-update (never create-only, so re-runs converge)
- Conflict (409): exponential backoff with jitter, bounded attempts
- Throttled (429): wait the provider's retry-after hint, bounded attempts
- Anything else: the node fails, the stage finishes, later stages are skipped

There is no rollback. Nodes committed before a failure stay committed and
the run is re-driven by applying again.

Cancellation: setting the run's cancel event stops new stages from starting;
in-flight nodes stop at their next retry decision.
"""

from __future__ import annotations

import asyncio
import copy
import functools
import logging
import random
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .client import CloudResourceClient
from .config import RetryPolicy
from .diff import DiffNormalizer
from .errors import ApplyFailed, CloudApiError, CloudErrorKind
from .references import ReferenceResolver
from .scheduler import ApplyPlan, PlannedAction

logger = logging.getLogger(__name__)

# Max differing paths included in a log record
MAX_LOGGED_DIFF_PATHS = 20


class NodeStatus(str, Enum):
    """Terminal status of a node within one apply run."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"  # Never attempted: an earlier stage failed or the run was cancelled


@dataclass
class NodeResult:
    """Outcome of applying one node."""

    node_id: str
    stage_index: int
    status: NodeStatus
    attempts: int = 0
    resource_id: str | None = None
    error: BaseException | None = None


@dataclass
class ApplyResult:
    """Result of one apply run."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    results: dict[str, NodeResult] = field(default_factory=dict)
    failures: list[ApplyFailed] = field(default_factory=list)
    stages_completed: int = 0
    cancelled: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return not self.failures and not self.cancelled

    @property
    def changes_applied(self) -> int:
        return sum(
            1 for r in self.results.values() if r.status in (NodeStatus.CREATED, NodeStatus.UPDATED)
        )

    @property
    def failed_stage(self) -> int | None:
        return self.failures[0].stage_index if self.failures else None

    def with_status(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, r in self.results.items() if r.status == status]

    def raise_for_failure(self) -> None:
        """Raise the first ApplyFailed of the run, if any."""
        if self.failures:
            raise self.failures[0]


class ApplyExecutor:
    """Executes apply plans stage by stage.

    The executor holds no state between runs; everything mutable lives in
    the ApplyResult of the current run.
    """

    def __init__(
        self,
        client: CloudResourceClient,
        resolver: ReferenceResolver,
        *,
        max_concurrency: int = 4,
        retry: RetryPolicy | None = None,
        normalizer: DiffNormalizer | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._client = client
        self._resolver = resolver
        self._max_concurrency = max_concurrency
        self._retry = retry or RetryPolicy()
        self._normalizer = normalizer or DiffNormalizer()
        self._cancel_event = cancel_event or asyncio.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._semaphore: asyncio.Semaphore | None = None

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Request cooperative cancellation of the current run."""
        self._cancel_event.set()

    async def apply(self, plan: ApplyPlan) -> ApplyResult:
        """Apply every stage of the plan in order.

        Returns:
            ApplyResult with per-node outcomes. Failures are reported in
            `failures` rather than raised, so callers always see which
            stage and node stopped the run.
        """
        result = ApplyResult()
        self._open()
        try:
            for stage in plan.stages:
                if self._cancel_event.is_set():
                    result.cancelled = True
                    logger.warning(
                        "Apply cancelled before stage",
                        extra={"stage": stage.index, "stages_completed": result.stages_completed},
                    )
                    break

                logger.info(
                    "Applying stage",
                    extra={"stage": stage.index, "nodes": stage.node_ids},
                )
                outcomes = await asyncio.gather(
                    *(self._apply_node(plan, node_id, stage.index) for node_id in stage.node_ids)
                )
                for outcome in outcomes:
                    result.results[outcome.node_id] = outcome

                failed = [o for o in outcomes if o.status == NodeStatus.FAILED]
                for outcome in failed:
                    assert outcome.error is not None
                    failure = ApplyFailed(outcome.node_id, stage.index, outcome.error)
                    result.failures.append(failure)
                    logger.error(
                        "Node apply failed",
                        extra={
                            "stage": stage.index,
                            "node_id": outcome.node_id,
                            "attempts": outcome.attempts,
                            "error": str(outcome.error),
                            "error_type": type(outcome.error).__name__,
                        },
                    )
                if failed:
                    break

                if any(o.status == NodeStatus.CANCELLED for o in outcomes):
                    result.cancelled = True
                    break

                result.stages_completed += 1
        finally:
            self._close()

        for node_id in plan.node_ids:
            if node_id not in result.results:
                result.results[node_id] = NodeResult(
                    node_id=node_id,
                    stage_index=plan.stage_of(node_id),
                    status=NodeStatus.SKIPPED,
                )

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    async def preview(self, plan: ApplyPlan) -> dict[str, PlannedAction]:
        """Compute each node's action against live state without writing.

        Fills `plan.actions` and returns it.

        Raises:
            CloudApiError: If live state cannot be read.
        """
        self._open()
        try:
            node_ids = plan.node_ids
            actions = await asyncio.gather(*(self._preview_node(plan, n) for n in node_ids))
        finally:
            self._close()
        plan.actions = dict(zip(node_ids, actions, strict=True))
        return plan.actions

    def _open(self) -> None:
        self._pool = ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="hubprovisioner-apply"
        )
        self._semaphore = asyncio.Semaphore(self._max_concurrency)

    def _close(self) -> None:
        if self._pool is not None:
            self._pool.shutdown(wait=True)
        self._pool = None
        self._semaphore = None

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking client call on the worker pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, functools.partial(fn, *args))

    async def _preview_node(self, plan: ApplyPlan, node_id: str) -> PlannedAction:
        assert self._semaphore is not None
        node = plan.graph.nodes[node_id]
        resource_id = self._resolver.resource_id(node)
        document = self._resolver.resolve_document(node)
        async with self._semaphore:
            live = await self._call(self._client.get, node.kind, resource_id)
        if live is None:
            return PlannedAction.CREATE
        if self._normalizer.needs_update(document, live, node.resource_kind.arm_type):
            return PlannedAction.UPDATE
        return PlannedAction.NO_OP

    async def _apply_node(self, plan: ApplyPlan, node_id: str, stage_index: int) -> NodeResult:
        node = plan.graph.nodes[node_id]
        outcome = NodeResult(node_id=node_id, stage_index=stage_index, status=NodeStatus.FAILED)
        try:
            outcome.resource_id = self._resolver.resource_id(node)
            document = self._resolver.resolve_document(node)
        except Exception as e:
            outcome.error = e
            return outcome

        arm_type = node.resource_kind.arm_type
        conflict_retries = 0
        throttle_retries = 0

        while True:
            outcome.attempts += 1
            try:
                assert self._semaphore is not None
                async with self._semaphore:
                    live = await self._call(self._client.get, node.kind, outcome.resource_id)
                    if live is not None and not self._normalizer.needs_update(
                        document, live, arm_type
                    ):
                        outcome.status = NodeStatus.UNCHANGED
                        logger.debug("Node already converged", extra={"node_id": node_id})
                        return outcome

                    if live is not None:
                        changed = self._normalizer.diff_paths(document, live, arm_type)
                        logger.info(
                            "Updating resource",
                            extra={
                                "node_id": node_id,
                                "changed_paths": changed[:MAX_LOGGED_DIFF_PATHS],
                            },
                        )
                    else:
                        logger.info("Creating resource", extra={"node_id": node_id})

                    await self._call(
                        self._client.create_or_update,
                        node.kind,
                        outcome.resource_id,
                        _with_live_children(document, live, node.resource_kind.live_children),
                    )
                outcome.status = NodeStatus.UPDATED if live is not None else NodeStatus.CREATED
                outcome.error = None
                return outcome

            except CloudApiError as e:
                outcome.error = e
                if not e.kind.transient:
                    return outcome
                if e.kind == CloudErrorKind.THROTTLED:
                    throttle_retries += 1
                    if throttle_retries > self._retry.max_throttle_retries:
                        return outcome
                    wait_time = self._throttle_wait(e, throttle_retries)
                else:
                    conflict_retries += 1
                    if conflict_retries > self._retry.max_conflict_retries:
                        return outcome
                    wait_time = self._backoff(conflict_retries)

            except Exception as e:
                logger.exception("Unexpected error applying node", extra={"node_id": node_id})
                outcome.error = e
                return outcome

            logger.warning(
                "Transient error, retrying",
                extra={
                    "node_id": node_id,
                    "error_kind": e.kind.value,
                    "attempt": outcome.attempts,
                    "wait_seconds": wait_time,
                },
            )
            if await self._wait_or_cancel(wait_time):
                outcome.status = NodeStatus.CANCELLED
                logger.warning("Node cancelled at retry", extra={"node_id": node_id})
                return outcome

    def _backoff(self, retry_number: int) -> float:
        """Exponential backoff with jitter."""
        backoff = self._retry.backoff_base_seconds * (2 ** (retry_number - 1))
        jitter = random.uniform(0, backoff * 0.2)
        return min(backoff + jitter, self._retry.max_retry_after_seconds)

    def _throttle_wait(self, error: CloudApiError, retry_number: int) -> float:
        if error.retry_after_seconds is not None:
            return min(error.retry_after_seconds, self._retry.max_retry_after_seconds)
        return self._backoff(retry_number)

    async def _wait_or_cancel(self, seconds: float) -> bool:
        """Sleep for `seconds` unless cancelled first. Returns True if cancelled."""
        if self._cancel_event.is_set():
            return True
        try:
            await asyncio.wait_for(self._cancel_event.wait(), timeout=seconds)
        except TimeoutError:
            return False
        return True

    def _log_result(self, result: ApplyResult) -> None:
        extra = {
            "success": result.success,
            "duration_seconds": result.duration_seconds,
            "stages_completed": result.stages_completed,
            "created": len(result.with_status(NodeStatus.CREATED)),
            "updated": len(result.with_status(NodeStatus.UPDATED)),
            "unchanged": len(result.with_status(NodeStatus.UNCHANGED)),
            "skipped": len(result.with_status(NodeStatus.SKIPPED)),
            "cancelled": result.cancelled,
        }
        if result.failures:
            extra["failed_stage"] = result.failed_stage
            extra["failed_nodes"] = [f.node_id for f in result.failures]
            logger.error("Apply failed", extra=extra)
        elif result.cancelled:
            logger.warning("Apply cancelled", extra=extra)
        else:
            logger.info("Apply completed", extra=extra)


def _with_live_children(
    document: dict[str, Any], live: dict[str, Any] | None, paths: tuple[str, ...]
) -> dict[str, Any]:
    """Copy child collections from live state into a parent's PUT document.

    Children managed as separate nodes are not part of the parent's desired
    document; without echoing them back a whole-object PUT would delete them.
    """
    if live is None or not paths:
        return document
    merged = copy.deepcopy(document)
    for path in paths:
        *parents, leaf = path.split(".")
        source: Any = live
        for part in [*parents, leaf]:
            source = source.get(part) if isinstance(source, dict) else None
        if source is None:
            continue
        target = merged
        for part in parents:
            target = target.setdefault(part, {})
        target.setdefault(leaf, copy.deepcopy(source))
    return merged
