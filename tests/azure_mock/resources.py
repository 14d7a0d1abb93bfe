"""Mock cloud resource API state and operations.

Provides an in-memory CloudResourceClient with realistic control plane
behavior:
- Provider-added fields (id, type, etag, provisioningState) on every read
- Whole-object PUT: writing a virtual network without its subnets drops them
- Child writes update the parent's embedded collection
- Overlapping writes to children of one parent return 409 Conflict
- Error injection (conflict, throttle, rejection) per resource name
"""

from __future__ import annotations

import copy
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from hubprovisioner.client import WriteResult
from hubprovisioner.errors import CloudApiError, CloudErrorKind
from hubprovisioner.models import get_kind, parse_resource_id

# Child collections embedded in the parent document, keyed by parent ARM type
EMBEDDED_CHILDREN = {
    "microsoft.network/virtualnetworks": "subnets",
}

# Parents that reject overlapping writes to their children
SINGLE_WRITER_PARENTS = frozenset(
    {"microsoft.network/virtualnetworks", "microsoft.network/firewallpolicies"}
)


@dataclass
class InjectedError:
    """An error returned for the next `times` matching calls."""

    name: str
    kind: CloudErrorKind
    operation: str = "put"
    times: int = 1
    retry_after: float | None = None
    message: str = "injected"


@dataclass
class RecordedCall:
    """A call made against the mock."""

    operation: str
    kind: str
    resource_id: str
    document: dict[str, Any] | None = None


@dataclass
class MockResourceState:
    """In-memory resource state keyed by lower-cased ARM id."""

    resources: dict[str, dict[str, Any]] = field(default_factory=dict)

    def get(self, resource_id: str) -> dict[str, Any] | None:
        return self.resources.get(resource_id.lower())

    def put(self, resource_id: str, document: dict[str, Any]) -> None:
        self.resources[resource_id.lower()] = document

    def delete(self, resource_id: str) -> None:
        self.resources.pop(resource_id.lower(), None)

    def children_of(self, resource_id: str, segment: str) -> list[str]:
        prefix = f"{resource_id.lower()}/{segment.lower()}/"
        return [rid for rid in self.resources if rid.startswith(prefix) and "/" not in rid[len(prefix) :]]


class MockCloudClient:
    """In-memory implementation of the CloudResourceClient protocol.

    Thread-safe: the executor calls it from a worker pool.
    """

    def __init__(self, *, write_delay_seconds: float = 0.0) -> None:
        self.state = MockResourceState()
        self.calls: list[RecordedCall] = []
        self.overlapping_writes: list[tuple[str, str]] = []
        self._injected: list[InjectedError] = []
        self._in_flight: dict[str, str] = {}
        self._lock = threading.Lock()
        self._write_delay = write_delay_seconds

    # -------------------------------------------------------------------------
    # Test setup
    # -------------------------------------------------------------------------

    def seed(self, resource_id: str, properties: dict[str, Any], **top_level: Any) -> None:
        """Pre-populate an existing resource (e.g. a spoke subnet)."""
        arm_type, names = parse_resource_id(resource_id)
        document = {
            "id": resource_id,
            "name": names[-1],
            "type": arm_type,
            "properties": {"provisioningState": "Succeeded", **copy.deepcopy(properties)},
            **copy.deepcopy(top_level),
        }
        with self._lock:
            self.state.put(resource_id, document)

    def inject(
        self,
        name: str,
        kind: CloudErrorKind,
        *,
        operation: str = "put",
        times: int = 1,
        retry_after: float | None = None,
    ) -> None:
        """Fail the next `times` calls on resources named `name`."""
        self._injected.append(
            InjectedError(name=name, kind=kind, operation=operation, times=times, retry_after=retry_after)
        )

    def reset_calls(self) -> None:
        with self._lock:
            self.calls.clear()
            self.overlapping_writes.clear()

    # -------------------------------------------------------------------------
    # Assertions
    # -------------------------------------------------------------------------

    @property
    def writes(self) -> list[RecordedCall]:
        return [c for c in self.calls if c.operation == "put"]

    @property
    def written_names(self) -> list[str]:
        return [c.resource_id.rsplit("/", 1)[-1] for c in self.writes]

    def live(self, resource_id: str) -> dict[str, Any] | None:
        document = self.state.get(resource_id)
        return copy.deepcopy(document) if document is not None else None

    # -------------------------------------------------------------------------
    # CloudResourceClient
    # -------------------------------------------------------------------------

    def get(self, kind: str, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            self.calls.append(RecordedCall("get", kind, resource_id))
            self._raise_injected("get", resource_id)
            document = self.state.get(resource_id)
            return copy.deepcopy(document) if document is not None else None

    def create_or_update(
        self, kind: str, resource_id: str, document: dict[str, Any]
    ) -> WriteResult:
        arm_type, _ = parse_resource_id(resource_id)
        parent_id = resource_id.rsplit("/", 2)[0] if get_kind(kind).parent_kind else None
        parent_type = parse_resource_id(parent_id)[0].lower() if parent_id else None

        with self._lock:
            self.calls.append(RecordedCall("put", kind, resource_id, copy.deepcopy(document)))
            self._raise_injected("put", resource_id)
            if parent_id is not None and parent_type in SINGLE_WRITER_PARENTS:
                unit = parent_id.lower()
                if unit in self._in_flight:
                    self.overlapping_writes.append((self._in_flight[unit], resource_id))
                    raise CloudApiError(
                        CloudErrorKind.CONFLICT,
                        f"AnotherOperationInProgress on {parent_id}",
                        status_code=409,
                    )
                self._in_flight[unit] = resource_id

        try:
            if self._write_delay:
                time.sleep(self._write_delay)
            with self._lock:
                stored = self._store(arm_type, resource_id, document, parent_id, parent_type)
        finally:
            if parent_id is not None:
                with self._lock:
                    if self._in_flight.get(parent_id.lower()) == resource_id:
                        del self._in_flight[parent_id.lower()]

        return WriteResult(resource_id=resource_id, document=copy.deepcopy(stored))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _raise_injected(self, operation: str, resource_id: str) -> None:
        name = resource_id.rsplit("/", 1)[-1].lower()
        for injected in self._injected:
            if injected.operation == operation and injected.name.lower() == name and injected.times > 0:
                injected.times -= 1
                raise CloudApiError(
                    injected.kind,
                    f"{injected.message} {injected.kind.value} on {resource_id}",
                    retry_after_seconds=injected.retry_after,
                )

    def _store(
        self,
        arm_type: str,
        resource_id: str,
        document: dict[str, Any],
        parent_id: str | None,
        parent_type: str | None,
    ) -> dict[str, Any]:
        existing = self.state.get(resource_id)
        stored = copy.deepcopy(document)
        stored["id"] = resource_id
        stored["name"] = resource_id.rsplit("/", 1)[-1]
        stored["type"] = arm_type
        stored["etag"] = f'W/"{uuid.uuid4()}"'
        properties = stored.setdefault("properties", {})
        properties["provisioningState"] = "Succeeded"
        properties.setdefault(
            "resourceGuid",
            (existing or {}).get("properties", {}).get("resourceGuid", str(uuid.uuid4())),
        )

        # Whole-object PUT: embedded children missing from the body are removed
        segment = EMBEDDED_CHILDREN.get(arm_type.lower())
        if segment is not None:
            kept = {c.get("name", "").lower() for c in properties.get(segment) or []}
            for child_id in self.state.children_of(resource_id, segment):
                if child_id.rsplit("/", 1)[-1] not in kept:
                    self.state.delete(child_id)
            properties.setdefault(segment, [])

        self.state.put(resource_id, stored)

        if parent_id is not None and parent_type in EMBEDDED_CHILDREN:
            parent = self.state.get(parent_id)
            if parent is not None:
                collection = parent["properties"].setdefault(EMBEDDED_CHILDREN[parent_type], [])
                collection[:] = [c for c in collection if c.get("name") != stored["name"]]
                collection.append(
                    {"id": resource_id, "name": stored["name"], "properties": copy.deepcopy(properties)}
                )
        return stored
