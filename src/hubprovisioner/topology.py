"""Hub network parameters and their expansion into a resource graph.

The parameter models validate at the boundary (fail fast, fail loudly):
CIDR bounds, subnet containment, minimum list lengths and role assignment
scope are all checked before any node is built or any API call is made.

build_hub_nodes() turns validated parameters into ResourceNodes in
declaration order:

    virtualNetwork        vnet-<name>
      subnet              AzureFirewallSubnet + workload subnets
    publicIPAddress       pip-<name>-1 .. pip-<name>-N (zonal family)
    subnet (external)     one per distinct subnet id listed in an IP group
    ipGroup               addresses resolved from live subnet prefixes
    firewallPolicy        afwp-<name>
      ruleCollectionGroup tiered by priority, each after the previous one
    azureFirewall         afw-<name> (zonal), after policy, IPs and subnet
    roleAssignment        scoped to the resource group or a hub resource
"""

from __future__ import annotations

import ipaddress
import os
import uuid
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ValidationError
from .models import (
    ExternalReference,
    ResourceNode,
    ResourceScope,
    RuleCollectionGroup,
    check_unique_priorities,
    create_resource,
    external_resource,
    parse_resource_id,
    resource_family,
)

FIREWALL_SUBNET_NAME = "AzureFirewallSubnet"

# CIDR length bounds
MIN_ADDRESS_SPACE_PREFIX_LENGTH = 8
MAX_SUBNET_PREFIX_LENGTH = 29
MAX_FIREWALL_SUBNET_PREFIX_LENGTH = 26  # Azure Firewall needs at least a /26

MAX_PUBLIC_IP_COUNT = 250

# Subnets report either form depending on whether they carry several prefixes
SUBNET_PREFIX_ATTRIBUTE = "properties.addressPrefix|properties.addressPrefixes"

# Built-in role definition ids denied by default (Owner, Contributor, User Access Administrator)
HIGH_PRIVILEGE_ROLE_IDS: frozenset[str] = frozenset(
    {
        "8e3af657-a8ff-443c-a75c-2fe8c4bcb635",
        "b24988ac-6180-42a0-ab88-20f7382dd24c",
        "18d7d88d-d35e-4fb5-a5c3-7773c20a72d9",
    }
)

ROLE_ASSIGNMENT_NAMESPACE = uuid.UUID("5f2b7c1e-8a43-4d5e-9b6f-0c1d2e3f4a5b")


def _network(value: str, label: str) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    if "/" not in value:
        raise ValueError(f"{label} must be in CIDR notation (e.g., 10.0.0.0/24): {value}")
    try:
        return ipaddress.ip_network(value, strict=True)
    except ValueError as e:
        raise ValueError(f"{label} '{value}' is not a valid network address: {e}") from e


def _env_flag(key: str) -> bool:
    return os.environ.get(key, "").lower() in ("true", "1", "yes")


# =============================================================================
# Parameters
# =============================================================================


class SubnetSpec(BaseModel):
    """Workload subnet inside the hub virtual network."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    address_prefix: str = Field(alias="addressPrefix")

    @field_validator("name")
    @classmethod
    def validate_not_reserved(cls, v: str) -> str:
        if v == FIREWALL_SUBNET_NAME:
            raise ValueError(f"'{FIREWALL_SUBNET_NAME}' is created from firewall.subnetPrefix")
        return v

    @field_validator("address_prefix")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        network = _network(v, "addressPrefix")
        if network.prefixlen > MAX_SUBNET_PREFIX_LENGTH:
            raise ValueError(f"addressPrefix must be /{MAX_SUBNET_PREFIX_LENGTH} or larger")
        return v


class FirewallSpec(BaseModel):
    """Azure Firewall and firewall policy settings."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    subnet_prefix: str = Field(alias="subnetPrefix")
    tier: Literal["Standard", "Premium"] = "Standard"
    threat_intel_mode: Literal["Alert", "Deny", "Off"] = Field("Alert", alias="threatIntelMode")
    public_ip_count: Annotated[int, Field(ge=1, le=MAX_PUBLIC_IP_COUNT)] = Field(
        1, alias="publicIpCount"
    )
    availability_zones: list[str] = Field(
        default_factory=lambda: ["1", "2", "3"], alias="availabilityZones"
    )
    dns_proxy: bool = Field(False, alias="dnsProxy")

    @field_validator("subnet_prefix")
    @classmethod
    def validate_subnet_prefix(cls, v: str) -> str:
        network = _network(v, "subnetPrefix")
        if network.prefixlen > MAX_FIREWALL_SUBNET_PREFIX_LENGTH:
            raise ValueError(
                f"subnetPrefix must be /{MAX_FIREWALL_SUBNET_PREFIX_LENGTH} or larger"
            )
        return v

    @field_validator("availability_zones", mode="before")
    @classmethod
    def validate_zones(cls, v: Any) -> list[str]:
        zones = [str(z) for z in v or []]
        invalid = [z for z in zones if z not in ("1", "2", "3")]
        if invalid:
            raise ValueError(f"availabilityZones must be drawn from 1, 2, 3; got {invalid}")
        if len(zones) != len(set(zones)):
            raise ValueError("availabilityZones must not repeat a zone")
        return sorted(zones)


class IpGroupSpec(BaseModel):
    """IP group whose addresses track the live prefixes of existing subnets."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=80)]
    subnet_ids: list[str] = Field(min_length=1, alias="subnetIds")

    @field_validator("subnet_ids")
    @classmethod
    def validate_subnet_ids(cls, v: list[str]) -> list[str]:
        for subnet_id in v:
            try:
                arm_type, _ = parse_resource_id(subnet_id)
            except ValidationError as e:
                raise ValueError(str(e)) from e
            if arm_type.lower() != "microsoft.network/virtualnetworks/subnets":
                raise ValueError(f"'{subnet_id}' is not a subnet resource id")
        if len({s.lower() for s in v}) != len(v):
            raise ValueError("subnetIds must not repeat a subnet")
        return v


class RoleAssignmentSpec(BaseModel):
    """RBAC role assignment on the hub.

    SECURITY: Owner, Contributor and User Access Administrator are denied
    unless ALLOW_HIGH_PRIVILEGE_ROLES=true is set.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    principal_id: Annotated[str, Field(alias="principalId")]
    role_definition_id: Annotated[str, Field(min_length=36, alias="roleDefinitionId")]
    principal_type: Literal["ServicePrincipal", "User", "Group"] = Field(
        "ServicePrincipal", alias="principalType"
    )
    scope: Literal["resourceGroup", "virtualNetwork", "firewallPolicy", "firewall"] = (
        "resourceGroup"
    )
    description: str | None = None

    @field_validator("principal_id")
    @classmethod
    def validate_principal_id(cls, v: str) -> str:
        try:
            return str(uuid.UUID(v))
        except ValueError as e:
            raise ValueError(f"principalId must be a GUID: {v}") from e

    @field_validator("role_definition_id")
    @classmethod
    def validate_role(cls, v: str) -> str:
        guid = v.rstrip("/").rsplit("/", 1)[-1].lower()
        try:
            uuid.UUID(guid)
        except ValueError as e:
            raise ValueError(f"roleDefinitionId must end in a GUID: {v}") from e
        if guid in HIGH_PRIVILEGE_ROLE_IDS and not _env_flag("ALLOW_HIGH_PRIVILEGE_ROLES"):
            raise ValueError(
                f"Role '{guid}' is a high-privilege role and is denied by default. "
                f"Use a more specific role (e.g., Network Contributor) "
                f"or set ALLOW_HIGH_PRIVILEGE_ROLES=true to override."
            )
        return guid


class HubNetworkSpec(BaseModel):
    """Parameters of one hub network deployment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=40, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9-]*$")]
    location: str | None = None
    address_space: list[str] = Field(min_length=1, alias="addressSpace")
    subnets: list[SubnetSpec] = Field(default_factory=list)
    firewall: FirewallSpec
    ip_groups: list[IpGroupSpec] = Field(default_factory=list, alias="ipGroups")
    rule_collection_groups: list[RuleCollectionGroup] = Field(
        default_factory=list, alias="ruleCollectionGroups"
    )
    role_assignments: list[RoleAssignmentSpec] = Field(
        default_factory=list, alias="roleAssignments"
    )
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("address_space", mode="before")
    @classmethod
    def validate_address_space(cls, v: Any) -> list[str]:
        prefixes = [v] if isinstance(v, str) else list(v or [])
        for prefix in prefixes:
            network = _network(prefix, "addressSpace")
            if network.prefixlen < MIN_ADDRESS_SPACE_PREFIX_LENGTH:
                raise ValueError(
                    f"addressSpace '{prefix}' is larger than /{MIN_ADDRESS_SPACE_PREFIX_LENGTH}"
                )
        return prefixes

    @field_validator("rule_collection_groups")
    @classmethod
    def validate_rule_collection_groups(
        cls, v: list[RuleCollectionGroup]
    ) -> list[RuleCollectionGroup]:
        check_unique_priorities(v, "rule collection group")
        names = [g.name for g in v]
        if len(names) != len(set(names)):
            raise ValueError("rule collection group names must be unique")
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> HubNetworkSpec:
        space = [ipaddress.ip_network(p) for p in self.address_space]
        named = [(FIREWALL_SUBNET_NAME, self.firewall.subnet_prefix)] + [
            (s.name, s.address_prefix) for s in self.subnets
        ]

        names = [name for name, _ in named]
        if len(names) != len(set(names)):
            raise ValueError("subnet names must be unique")

        networks = []
        for name, prefix in named:
            network = ipaddress.ip_network(prefix)
            if not any(
                network.version == parent.version and network.subnet_of(parent)
                for parent in space
            ):
                raise ValueError(f"subnet '{name}' ({prefix}) is outside the address space")
            for other_name, other in networks:
                if network.overlaps(other):
                    raise ValueError(f"subnet '{name}' ({prefix}) overlaps subnet '{other_name}'")
            networks.append((name, network))

        ip_group_names = [g.name for g in self.ip_groups]
        if len(ip_group_names) != len(set(ip_group_names)):
            raise ValueError("IP group names must be unique")
        for group in self.rule_collection_groups:
            for collection in group.rule_collections:
                for rule in collection.rules:
                    missing = sorted(
                        set(rule.source_ip_groups + rule.destination_ip_groups)
                        - set(ip_group_names)
                    )
                    if missing:
                        raise ValueError(
                            f"rule '{rule.name}' in '{group.name}/{collection.name}' "
                            f"references unknown IP groups {missing}"
                        )
        return self


# =============================================================================
# Graph construction
# =============================================================================


def build_hub_nodes(
    spec: HubNetworkSpec,
    scope: ResourceScope,
    default_location: str | None = None,
) -> list[ResourceNode]:
    """Expand hub parameters into ResourceNodes in declaration order.

    Args:
        spec: Validated hub parameters.
        scope: Subscription and resource group the hub is deployed into.
        default_location: Region used when the parameters set none.

    Raises:
        ValidationError: If a resource name, region or zone is not acceptable.
    """
    location = spec.location or default_location
    tags = dict(spec.tags)
    nodes: list[ResourceNode] = []

    vnet = create_resource(
        "virtualNetwork",
        f"vnet-{spec.name}",
        location,
        {"addressSpace": {"addressPrefixes": list(spec.address_space)}},
        tags=tags,
    )
    nodes.append(vnet)

    firewall_subnet = create_resource(
        "subnet",
        FIREWALL_SUBNET_NAME,
        location,
        {"addressPrefix": spec.firewall.subnet_prefix},
        parent=vnet,
    )
    nodes.append(firewall_subnet)
    for subnet in spec.subnets:
        nodes.append(
            create_resource(
                "subnet", subnet.name, location, {"addressPrefix": subnet.address_prefix}, parent=vnet
            )
        )

    zones = list(spec.firewall.availability_zones)
    public_ips = resource_family(
        "publicIPAddress",
        f"pip-{spec.name}",
        spec.firewall.public_ip_count,
        location,
        {"publicIPAllocationMethod": "Static", "publicIPAddressVersion": "IPv4"},
        sku={"name": "Standard", "tier": "Regional"},
        zones=zones,
        tags=tags,
    )
    nodes.extend(public_ips)

    existing_subnets: dict[str, ResourceNode] = {}
    ip_group_refs: dict[str, ExternalReference] = {}
    for group in spec.ip_groups:
        members = []
        for subnet_id in group.subnet_ids:
            key = subnet_id.lower()
            if key not in existing_subnets:
                existing_subnets[key] = external_resource(subnet_id)
                nodes.append(existing_subnets[key])
            members.append(existing_subnets[key].ref(SUBNET_PREFIX_ATTRIBUTE))
        ip_group = create_resource(
            "ipGroup", group.name, location, {"ipAddresses": members}, tags=tags
        )
        nodes.append(ip_group)
        ip_group_refs[group.name] = ip_group.ref()

    policy_properties: dict[str, Any] = {
        "sku": {"tier": spec.firewall.tier},
        "threatIntelMode": spec.firewall.threat_intel_mode,
        "dnsSettings": {"enableProxy": spec.firewall.dns_proxy},
    }
    policy = create_resource(
        "firewallPolicy", f"afwp-{spec.name}", location, policy_properties, tags=tags
    )
    nodes.append(policy)

    previous: ResourceNode | None = None
    for group in sorted(spec.rule_collection_groups, key=lambda g: g.priority):
        node = create_resource(
            "ruleCollectionGroup",
            group.name,
            location,
            group.to_properties(ip_group_refs),
            parent=policy,
            depends_on=[previous.id] if previous is not None else [],
        )
        nodes.append(node)
        previous = node

    ip_configurations = []
    for index, public_ip in enumerate(public_ips, start=1):
        ip_properties: dict[str, Any] = {"publicIPAddress": {"id": public_ip.ref()}}
        if index == 1:
            ip_properties["subnet"] = {"id": firewall_subnet.ref()}
        ip_configurations.append({"name": f"ipconfig-{index}", "properties": ip_properties})

    firewall = create_resource(
        "azureFirewall",
        f"afw-{spec.name}",
        location,
        {
            "sku": {"name": "AZFW_VNet", "tier": spec.firewall.tier},
            "firewallPolicy": {"id": policy.ref()},
            "ipConfigurations": ip_configurations,
        },
        zones=zones,
        tags=tags,
    )
    nodes.append(firewall)

    scope_nodes = {
        "resourceGroup": None,
        "virtualNetwork": vnet,
        "firewallPolicy": policy,
        "firewall": firewall,
    }
    for assignment in spec.role_assignments:
        parent = scope_nodes[assignment.scope]
        scope_key = parent.id if parent is not None else scope.resource_group_id.lower()
        name = str(
            uuid.uuid5(
                ROLE_ASSIGNMENT_NAMESPACE,
                f"{scope_key}|{assignment.principal_id}|{assignment.role_definition_id}",
            )
        )
        properties: dict[str, Any] = {
            "roleDefinitionId": (
                f"/subscriptions/{scope.subscription_id}/providers/"
                f"Microsoft.Authorization/roleDefinitions/{assignment.role_definition_id}"
            ),
            "principalId": assignment.principal_id,
            "principalType": assignment.principal_type,
        }
        if assignment.description:
            properties["description"] = assignment.description
        nodes.append(create_resource("roleAssignment", name, None, properties, parent=parent))

    return nodes
