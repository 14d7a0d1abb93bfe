"""Reference resolution for resource graphs.

References are resolved structurally, never by string-matching ids at apply
time:

- Same-graph targets are a local lookup. "id" is the deterministic ARM id
  of the target; any other attribute is read from its desired document.
- External targets (existing resources) are read through a synchronous
  live-state query. A missing resource is a missing prerequisite and is
  fatal for the run.

Resolution is idempotent within a run: values are cached per
(target id, attribute) so a reference resolved twice yields the same value.
"""

from __future__ import annotations

import copy
import ipaddress
import logging
from collections.abc import Callable, Iterable
from typing import Any

from .errors import DanglingReferenceError, UnresolvedReferenceError, ValidationError
from .models import ExternalReference, ResourceNode, ResourceScope

logger = logging.getLogger(__name__)

# (kind, identifier) -> live document, or None when the resource does not exist
LiveStateQuery = Callable[[str, str], dict[str, Any] | None]

_MISSING = object()


def _extract(document: dict[str, Any], attribute: str) -> Any:
    """Read a dotted path; "a|b" tries each alternative in turn."""
    for alternative in attribute.split("|"):
        value: Any = document
        for part in alternative.split("."):
            if not isinstance(value, dict) or part not in value:
                value = _MISSING
                break
            value = value[part]
        if value is not _MISSING:
            return value
    return _MISSING


class ReferenceResolver:
    """Resolves ExternalReferences against a graph and live state."""

    def __init__(
        self,
        nodes: Iterable[ResourceNode],
        scope: ResourceScope,
        live_state_query: LiveStateQuery | None = None,
    ) -> None:
        self._nodes: dict[str, ResourceNode] = {node.id: node for node in nodes}
        self._scope = scope
        self._live_state_query = live_state_query
        self._cache: dict[tuple[str, str], Any] = {}
        self._live_documents: dict[str, dict[str, Any]] = {}

    @property
    def scope(self) -> ResourceScope:
        return self._scope

    def resource_id(self, node: ResourceNode) -> str:
        return self._scope.resource_id(node, self._nodes)

    def resolve(
        self,
        ref: ExternalReference,
        live_state_query: LiveStateQuery | None = None,
    ) -> Any:
        """Resolve a reference to its concrete value.

        Raises:
            DanglingReferenceError: Target id is not in the graph.
            UnresolvedReferenceError: External target does not exist or lacks
                the requested attribute.
        """
        key = (ref.target_id, ref.attribute)
        if key in self._cache:
            ref.bind(self._cache[key])
            return self._cache[key]

        target = self._nodes.get(ref.target_id)
        if target is None:
            raise DanglingReferenceError("<reference>", ref.target_id)

        if target.is_external:
            value = self._resolve_external(target, ref.attribute, live_state_query)
        else:
            value = self._resolve_local(target, ref.attribute)

        self._cache[key] = value
        ref.bind(value)
        logger.debug(
            "Reference resolved",
            extra={
                "target_id": ref.target_id,
                "attribute": ref.attribute,
                "external": target.is_external,
            },
        )
        return value

    def _resolve_local(self, target: ResourceNode, attribute: str) -> Any:
        if attribute == "id":
            return self.resource_id(target)
        if attribute == "name":
            return target.name

        value = _extract(target.desired_document(), attribute)
        if value is _MISSING:
            raise ValidationError(
                f"Attribute '{attribute}' is not set on '{target.id}' and cannot be referenced"
            )
        return self._resolve_value(value)

    def _resolve_external(
        self,
        target: ResourceNode,
        attribute: str,
        live_state_query: LiveStateQuery | None,
    ) -> Any:
        identifier = self.resource_id(target)
        if attribute == "id":
            return identifier
        if attribute == "name":
            return target.name

        document = self._live_documents.get(target.id)
        if document is None:
            query = live_state_query or self._live_state_query
            if query is None:
                raise UnresolvedReferenceError(
                    target.id, identifier, "no live state query configured"
                )
            document = query(target.kind, identifier)
            if document is None:
                raise UnresolvedReferenceError(target.id, identifier)
            self._live_documents[target.id] = document

        value = _extract(document, attribute)
        if value is _MISSING:
            raise UnresolvedReferenceError(
                target.id, identifier, f"attribute '{attribute}' not present"
            )
        return value

    def _resolve_value(self, value: Any) -> Any:
        """Deep-copy a value, replacing embedded references with their values."""
        if isinstance(value, ExternalReference):
            return self.resolve(value)
        if isinstance(value, dict):
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self._resolve_value(v) for v in value]
        if isinstance(value, set | frozenset):
            return sorted((self._resolve_value(v) for v in value), key=str)
        return copy.deepcopy(value)

    def resolve_document(self, node: ResourceNode) -> dict[str, Any]:
        """Return the node's desired ARM document with all references resolved."""
        document = self._resolve_value(node.desired_document())
        if node.kind == "ipGroup":
            properties = document.setdefault("properties", {})
            properties["ipAddresses"] = ip_group_addresses(properties.get("ipAddresses", []))
        return document

    def resolve_properties(self, node: ResourceNode) -> dict[str, Any]:
        return self.resolve_document(node)["properties"]

    def resolve_all(self) -> None:
        """Resolve every reference of every managed node.

        Called before any remote write so that missing prerequisites abort
        the run without side effects.
        """
        for node in self._nodes.values():
            if node.is_external:
                continue
            for ref in node.references():
                self.resolve(ref)


def ip_group_addresses(values: Iterable[Any]) -> list[str]:
    """Collapse resolved prefixes into a sorted, de-duplicated CIDR list.

    Subnets report either a single addressPrefix or an addressPrefixes list;
    both shapes are accepted.
    """
    addresses: set[str] = set()
    for value in values:
        items = value if isinstance(value, list | tuple) else [value]
        for item in items:
            try:
                network = ipaddress.ip_network(str(item), strict=False)
            except ValueError as e:
                raise ValidationError(f"IP group member '{item}' is not a valid CIDR") from e
            addresses.add(str(network))
    return sorted(addresses, key=lambda a: (ipaddress.ip_network(a).version, ipaddress.ip_network(a)))
