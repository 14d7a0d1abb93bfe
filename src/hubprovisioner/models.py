"""Resource model: nodes, references, kinds and firewall rule documents.

A ResourceNode is a pure description of one provisionable unit. Nodes refer
to each other through ExternalReference objects embedded anywhere in their
properties document; the graph builder walks those references to derive
apply-order edges, and the resolver swaps them for concrete values.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationError

# =============================================================================
# Kinds
# =============================================================================

# Regions with availability zone support; zonal resources may only be placed here
AVAILABILITY_ZONE_REGIONS: frozenset[str] = frozenset(
    {
        "australiaeast",
        "brazilsouth",
        "canadacentral",
        "centralindia",
        "centralus",
        "eastasia",
        "eastus",
        "eastus2",
        "francecentral",
        "germanywestcentral",
        "israelcentral",
        "italynorth",
        "japaneast",
        "koreacentral",
        "mexicocentral",
        "northeurope",
        "norwayeast",
        "polandcentral",
        "qatarcentral",
        "southafricanorth",
        "southcentralus",
        "southeastasia",
        "spaincentral",
        "swedencentral",
        "switzerlandnorth",
        "uaenorth",
        "uksouth",
        "westeurope",
        "westus2",
        "westus3",
    }
)

_LOCATION_PATTERN = re.compile(r"^[a-z]{2,}[a-z0-9]*$")


@dataclass(frozen=True)
class ResourceKind:
    """Static description of a resource type.

    Attributes:
        name: Short kind name used in graphs (e.g. "subnet").
        arm_type: Fully qualified ARM type.
        api_version: API version used for generic resource calls.
        name_pattern: Regex the resource name must match.
        min_length / max_length: Name length bounds.
        zonal: Restricted to regions with availability zones.
        parent_kind: Required parent kind for child resources.
        serialize_children: The resource is a single optimistic-concurrency
            unit for its named sub-resources; child writes must not overlap.
        extension: Extension resource scoped to its parent (or the resource group).
        location_bound: Whether the resource carries a location.
        live_children: Property paths holding child collections that a PUT of
            the parent must echo back from live state, or the children are dropped.
    """

    name: str
    arm_type: str
    api_version: str
    name_pattern: str = r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*[a-zA-Z0-9_]$|^[a-zA-Z0-9]$"
    min_length: int = 1
    max_length: int = 80
    zonal: bool = False
    parent_kind: str | None = None
    serialize_children: bool = False
    extension: bool = False
    location_bound: bool = True
    live_children: tuple[str, ...] = ()

    @property
    def segment(self) -> str:
        """Last path segment of the ARM type, used for child resource ids."""
        return self.arm_type.rsplit("/", 1)[-1]


_GUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

KINDS: dict[str, ResourceKind] = {
    "virtualNetwork": ResourceKind(
        name="virtualNetwork",
        arm_type="Microsoft.Network/virtualNetworks",
        api_version="2023-09-01",
        min_length=2,
        max_length=64,
        serialize_children=True,
        live_children=("properties.subnets",),
    ),
    "subnet": ResourceKind(
        name="subnet",
        arm_type="Microsoft.Network/virtualNetworks/subnets",
        api_version="2023-09-01",
        max_length=80,
        parent_kind="virtualNetwork",
        location_bound=False,
    ),
    "publicIPAddress": ResourceKind(
        name="publicIPAddress",
        arm_type="Microsoft.Network/publicIPAddresses",
        api_version="2023-09-01",
        zonal=True,
    ),
    "ipGroup": ResourceKind(
        name="ipGroup",
        arm_type="Microsoft.Network/ipGroups",
        api_version="2023-09-01",
    ),
    "firewallPolicy": ResourceKind(
        name="firewallPolicy",
        arm_type="Microsoft.Network/firewallPolicies",
        api_version="2023-09-01",
        serialize_children=True,
    ),
    "ruleCollectionGroup": ResourceKind(
        name="ruleCollectionGroup",
        arm_type="Microsoft.Network/firewallPolicies/ruleCollectionGroups",
        api_version="2023-09-01",
        parent_kind="firewallPolicy",
        location_bound=False,
    ),
    "azureFirewall": ResourceKind(
        name="azureFirewall",
        arm_type="Microsoft.Network/azureFirewalls",
        api_version="2023-09-01",
        min_length=1,
        max_length=56,
        zonal=True,
    ),
    "roleAssignment": ResourceKind(
        name="roleAssignment",
        arm_type="Microsoft.Authorization/roleAssignments",
        api_version="2022-04-01",
        name_pattern=_GUID_PATTERN,
        min_length=36,
        max_length=36,
        extension=True,
        location_bound=False,
    ),
}

_KINDS_BY_ARM_TYPE: dict[str, ResourceKind] = {k.arm_type.lower(): k for k in KINDS.values()}


def get_kind(kind: str) -> ResourceKind:
    """Look up a resource kind by short name.

    Raises:
        ValidationError: If the kind is not registered.
    """
    try:
        return KINDS[kind]
    except KeyError:
        raise ValidationError(f"Unknown resource kind '{kind}'. Valid kinds: {sorted(KINDS)}") from None


def kind_for_arm_type(arm_type: str) -> ResourceKind:
    """Look up a resource kind by its ARM type (case-insensitive)."""
    kind = _KINDS_BY_ARM_TYPE.get(arm_type.lower())
    if kind is None:
        raise ValidationError(f"Unsupported resource type '{arm_type}'")
    return kind


# =============================================================================
# Nodes and references
# =============================================================================


class ResourceMode(str, Enum):
    """Whether a node is provisioned by this engine or only read."""

    MANAGED = "managed"
    EXTERNAL = "external"  # Existing resource owned elsewhere, read-only


@dataclass
class ExternalReference:
    """Lazy binding to an attribute of another node.

    The attribute is "id", "name", or a dotted path into the target's
    document (e.g. "properties.addressPrefix").
    """

    target_id: str
    target_kind: str
    attribute: str = "id"
    resolved: bool = False
    value: Any = None

    def bind(self, value: Any) -> None:
        self.value = value
        self.resolved = True


@dataclass
class ResourceNode:
    """A provisionable unit in a resource graph."""

    id: str
    kind: str
    name: str
    location: str | None
    properties: dict[str, Any] = field(default_factory=dict)
    parent_id: str | None = None
    depends_on: set[str] = field(default_factory=set)
    mode: ResourceMode = ResourceMode.MANAGED
    # Numeric-indexed family this node belongs to, e.g. "pip-fw"
    family: str | None = None
    # Full ARM id, set for external nodes bound to an existing resource
    resource_id: str | None = None
    zones: list[str] = field(default_factory=list)
    sku: dict[str, Any] | None = None
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def resource_kind(self) -> ResourceKind:
        return get_kind(self.kind)

    @property
    def is_external(self) -> bool:
        return self.mode == ResourceMode.EXTERNAL

    def ref(self, attribute: str = "id") -> ExternalReference:
        """Create a reference to one of this node's attributes."""
        return ExternalReference(target_id=self.id, target_kind=self.kind, attribute=attribute)

    def references(self) -> Iterator[ExternalReference]:
        """Yield every ExternalReference embedded in this node's document."""
        yield from iter_references(self.properties)
        if self.sku:
            yield from iter_references(self.sku)

    def desired_document(self) -> dict[str, Any]:
        """Return the top-level ARM document for this node (references unresolved)."""
        document: dict[str, Any] = {"properties": self.properties}
        if self.location and self.resource_kind.location_bound:
            document["location"] = self.location
        if self.zones:
            document["zones"] = list(self.zones)
        if self.sku:
            document["sku"] = self.sku
        if self.tags:
            document["tags"] = dict(self.tags)
        return document


def iter_references(value: Any) -> Iterator[ExternalReference]:
    """Walk a document and yield embedded references in document order."""
    if isinstance(value, ExternalReference):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list | tuple | set | frozenset):
        for item in value:
            yield from iter_references(item)


def validate_name(kind: ResourceKind, name: str) -> None:
    """Check a resource name against the kind's naming constraints."""
    if not kind.min_length <= len(name) <= kind.max_length:
        raise ValidationError(
            f"{kind.name} name '{name}' must be between {kind.min_length} "
            f"and {kind.max_length} characters"
        )
    if not re.match(kind.name_pattern, name):
        raise ValidationError(f"{kind.name} name '{name}' contains invalid characters")


def validate_location(kind: ResourceKind, location: str | None) -> None:
    """Check that a location is acceptable for the kind."""
    if not kind.location_bound:
        return
    if not location:
        raise ValidationError(f"{kind.name} requires a location")
    if not _LOCATION_PATTERN.match(location):
        raise ValidationError(f"Invalid Azure region '{location}'")
    if kind.zonal and location not in AVAILABILITY_ZONE_REGIONS:
        raise ValidationError(
            f"{kind.name} is zonal and '{location}' has no availability zone support"
        )


def create_resource(
    kind: str,
    name: str,
    location: str | None,
    properties: dict[str, Any] | None = None,
    parent: ResourceNode | None = None,
    *,
    node_id: str | None = None,
    depends_on: set[str] | list[str] | tuple[str, ...] = (),
    zones: list[str] | None = None,
    sku: dict[str, Any] | None = None,
    tags: dict[str, str] | None = None,
    family: str | None = None,
) -> ResourceNode:
    """Construct a managed ResourceNode after validating name, region and parent.

    Args:
        kind: Registered kind name.
        name: Resource name.
        location: Azure region (ignored for kinds without a location).
        properties: ARM properties document, may embed ExternalReferences.
        parent: Parent node for child and extension resources.
        node_id: Graph id; defaults to "<kind>/<name>" (prefixed by the parent id).
        depends_on: Explicit dependencies on other node ids.

    Raises:
        ValidationError: If any constraint is violated.
    """
    resource_kind = get_kind(kind)
    validate_name(resource_kind, name)
    validate_location(resource_kind, location)

    if resource_kind.parent_kind is not None:
        if parent is None:
            raise ValidationError(f"{kind} '{name}' requires a {resource_kind.parent_kind} parent")
        if parent.kind != resource_kind.parent_kind:
            raise ValidationError(
                f"{kind} '{name}' parent must be a {resource_kind.parent_kind}, got {parent.kind}"
            )
    elif parent is not None and not resource_kind.extension:
        raise ValidationError(f"{kind} is a top-level resource and cannot have a parent")

    if zones:
        if not resource_kind.zonal:
            raise ValidationError(f"{kind} does not support availability zones")
        invalid = [z for z in zones if z not in ("1", "2", "3")]
        if invalid:
            raise ValidationError(f"Invalid availability zones {invalid}; expected 1, 2 or 3")

    if node_id is None:
        node_id = f"{kind}/{name}" if parent is None else f"{parent.id}/{kind}/{name}"

    return ResourceNode(
        id=node_id,
        kind=kind,
        name=name,
        location=location if resource_kind.location_bound else None,
        properties=properties or {},
        parent_id=parent.id if parent is not None else None,
        depends_on=set(depends_on),
        zones=list(zones or []),
        sku=sku,
        tags=dict(tags or {}),
        family=family,
    )


def resource_family(
    kind: str,
    base_name: str,
    count: int,
    location: str | None,
    properties: dict[str, Any] | None = None,
    **kwargs: Any,
) -> list[ResourceNode]:
    """Construct `count` identical nodes named "<base_name>-1" .. "<base_name>-N"."""
    if count < 1:
        raise ValidationError(f"{kind} family '{base_name}' needs at least one member")
    return [
        create_resource(
            kind,
            f"{base_name}-{index}",
            location,
            dict(properties or {}),
            family=base_name,
            **kwargs,
        )
        for index in range(1, count + 1)
    ]


def parse_resource_id(resource_id: str) -> tuple[str, list[str]]:
    """Split an ARM id into its ARM type and name chain.

    /subscriptions/s/resourceGroups/rg/providers/Microsoft.Network/virtualNetworks/hub/subnets/a
    -> ("Microsoft.Network/virtualNetworks/subnets", ["hub", "a"])
    """
    parts = resource_id.strip("/").split("/")
    try:
        provider_index = len(parts) - 1 - parts[::-1].index("providers")
    except ValueError:
        raise ValidationError(f"Not an ARM resource id: '{resource_id}'") from None

    tail = parts[provider_index + 1 :]
    if len(tail) < 3 or len(tail) % 2 == 0:
        raise ValidationError(f"Malformed ARM resource id: '{resource_id}'")

    namespace = tail[0]
    types = tail[1::2]
    names = tail[2::2]
    return f"{namespace}/{'/'.join(types)}", names


def external_resource(resource_id: str, node_id: str | None = None) -> ResourceNode:
    """Declare an existing resource that this graph reads but never writes."""
    arm_type, names = parse_resource_id(resource_id)
    kind = kind_for_arm_type(arm_type)
    return ResourceNode(
        id=node_id or resource_id.lower(),
        kind=kind.name,
        name=names[-1],
        location=None,
        mode=ResourceMode.EXTERNAL,
        resource_id=resource_id,
    )


@dataclass(frozen=True)
class ResourceScope:
    """Subscription and resource group that managed nodes are deployed into."""

    subscription_id: str
    resource_group: str

    @property
    def resource_group_id(self) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{self.resource_group}"

    def resource_id(self, node: ResourceNode, nodes: dict[str, ResourceNode]) -> str:
        """Compute the deterministic ARM id of a node.

        Child ids extend their parent's id; extension resources hang off
        their parent's id under the provider namespace.
        """
        if node.resource_id:
            return node.resource_id

        kind = node.resource_kind
        parent = nodes.get(node.parent_id) if node.parent_id else None

        if kind.extension:
            base = self.resource_id(parent, nodes) if parent is not None else self.resource_group_id
            return f"{base}/providers/{kind.arm_type}/{node.name}"

        if parent is not None:
            return f"{self.resource_id(parent, nodes)}/{kind.segment}/{node.name}"

        return f"{self.resource_group_id}/providers/{kind.arm_type}/{node.name}"


# =============================================================================
# Firewall policy rule documents
# =============================================================================

MIN_RULE_PRIORITY = 100
MAX_RULE_PRIORITY = 65000

RuleType = Literal["ApplicationRule", "NetworkRule", "NatRule"]
CollectionType = Literal["FirewallPolicyFilterRuleCollection", "FirewallPolicyNatRuleCollection"]
RuleAction = Literal["Allow", "Deny", "Dnat"]


class Rule(BaseModel):
    """A single firewall policy rule.

    Rules inside a collection are evaluated by position. IP group fields hold
    IP group names from the same parameter set; they are turned into id
    references when the rule collection group node is built. Every other
    ARM rule property passes through unchanged.
    """

    model_config = {"extra": "allow", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    rule_type: RuleType = Field(alias="ruleType")
    source_ip_groups: list[str] = Field(default_factory=list, alias="sourceIpGroups")
    destination_ip_groups: list[str] = Field(default_factory=list, alias="destinationIpGroups")

    def to_document(self, ip_groups: dict[str, Any]) -> dict[str, Any]:
        document = self.model_dump(by_alias=True, exclude_none=True)
        for key in ("sourceIpGroups", "destinationIpGroups"):
            names = document.pop(key, [])
            if not names:
                continue
            missing = [n for n in names if n not in ip_groups]
            if missing:
                raise ValidationError(f"Rule '{self.name}' references unknown IP groups {missing}")
            document[key] = [ip_groups[n] for n in names]
        return document


class RuleCollection(BaseModel):
    """A prioritized collection of rules sharing one action."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    priority: Annotated[int, Field(ge=MIN_RULE_PRIORITY, le=MAX_RULE_PRIORITY)]
    collection_type: CollectionType = Field(
        "FirewallPolicyFilterRuleCollection", alias="ruleCollectionType"
    )
    action: RuleAction = "Allow"
    rules: list[Rule] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_action_and_rules(self) -> RuleCollection:
        if self.collection_type == "FirewallPolicyNatRuleCollection":
            if self.action != "Dnat":
                raise ValueError(f"NAT collection '{self.name}' must use action Dnat")
            wrong = [r.name for r in self.rules if r.rule_type != "NatRule"]
        else:
            if self.action not in ("Allow", "Deny"):
                raise ValueError(f"Filter collection '{self.name}' must use Allow or Deny")
            wrong = [r.name for r in self.rules if r.rule_type == "NatRule"]
        if wrong:
            raise ValueError(f"Collection '{self.name}' contains incompatible rules {wrong}")

        names = [r.name for r in self.rules]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate rule names in collection '{self.name}'")
        return self

    def to_document(self, ip_groups: dict[str, Any]) -> dict[str, Any]:
        return {
            "ruleCollectionType": self.collection_type,
            "name": self.name,
            "priority": self.priority,
            "action": {"type": self.action},
            "rules": [rule.to_document(ip_groups) for rule in self.rules],
        }


class RuleCollectionGroup(BaseModel):
    """A prioritized group of rule collections within a firewall policy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    priority: Annotated[int, Field(ge=MIN_RULE_PRIORITY, le=MAX_RULE_PRIORITY)]
    rule_collections: list[RuleCollection] = Field(min_length=1, alias="ruleCollections")

    @field_validator("rule_collections")
    @classmethod
    def validate_unique_priorities(cls, v: list[RuleCollection]) -> list[RuleCollection]:
        check_unique_priorities(v, "rule collection")
        names = [c.name for c in v]
        if len(names) != len(set(names)):
            raise ValueError("rule collection names must be unique within a group")
        return v

    def to_properties(self, ip_groups: dict[str, Any]) -> dict[str, Any]:
        """Build the ARM properties document, collections in evaluation order."""
        ordered = sorted(self.rule_collections, key=lambda c: c.priority)
        return {
            "priority": self.priority,
            "ruleCollections": [c.to_document(ip_groups) for c in ordered],
        }


def check_unique_priorities(items: list[Any], label: str) -> None:
    """Raise ValueError if any two siblings share a priority."""
    seen: dict[int, str] = {}
    for item in items:
        if item.priority in seen:
            raise ValueError(
                f"{label} '{item.name}' reuses priority {item.priority} "
                f"of '{seen[item.priority]}'"
            )
        seen[item.priority] = item.name
