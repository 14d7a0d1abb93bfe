"""Error taxonomy for graph construction and apply.

Construction-time errors (validation, dangling references, cycles, missing
live prerequisites) are raised before any remote write. Apply-time errors
stop forward progress only; completed work is never undone. Recovery is
"fix and re-run", relying on idempotent create-or-update.
"""

from __future__ import annotations

from enum import Enum


class ProvisioningError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(ProvisioningError):
    """Raised when input fails pre-flight validation."""

    pass


class DanglingReferenceError(ProvisioningError):
    """Raised when a node references an id absent from the graph."""

    def __init__(self, source_id: str, target_id: str, via: str = "reference") -> None:
        self.source_id = source_id
        self.target_id = target_id
        self.via = via
        super().__init__(
            f"Node '{source_id}' has a {via} to '{target_id}', which is not in the graph"
        )


class CycleDetectedError(ProvisioningError):
    """Raised when the dependency graph contains a cycle.

    Attributes:
        cycle: Node ids on the cycle, in edge order, first id repeated at the end.
    """

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


class UnresolvedReferenceError(ProvisioningError):
    """Raised when an existing (external) resource cannot be found.

    Fatal for the run: it indicates a missing prerequisite deployment.
    """

    def __init__(self, target_id: str, identifier: str, detail: str = "") -> None:
        self.target_id = target_id
        self.identifier = identifier
        message = f"Existing resource '{target_id}' not found at {identifier}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class CloudErrorKind(str, Enum):
    """Classification of cloud resource API failures."""

    CONFLICT = "conflict"  # Another operation is in progress on the resource
    THROTTLED = "throttled"  # Rate limited, retry after hint
    NOT_FOUND = "not_found"
    VALIDATION_REJECTED = "validation_rejected"  # Provider rejected the payload
    UNKNOWN = "unknown"

    @property
    def transient(self) -> bool:
        return self in (CloudErrorKind.CONFLICT, CloudErrorKind.THROTTLED)


class CloudApiError(ProvisioningError):
    """A classified failure from the cloud resource API."""

    def __init__(
        self,
        kind: CloudErrorKind,
        message: str,
        retry_after_seconds: float | None = None,
        status_code: int | None = None,
        error_code: str | None = None,
    ) -> None:
        self.kind = kind
        self.retry_after_seconds = retry_after_seconds
        self.status_code = status_code
        self.error_code = error_code  # ARM error code, e.g. RoleAssignmentExists
        super().__init__(message)


class ApplyFailed(ProvisioningError):
    """Terminal failure of a single node after retries were exhausted."""

    def __init__(self, node_id: str, stage_index: int, cause: BaseException) -> None:
        self.node_id = node_id
        self.stage_index = stage_index
        self.cause = cause
        super().__init__(f"Stage {stage_index}: node '{node_id}' failed: {cause}")
