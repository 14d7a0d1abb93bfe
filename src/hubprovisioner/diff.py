"""Desired-vs-live comparison for idempotent apply.

A node is only written when its desired document differs from the live
document in a field the desired document actually sets. Azure returns many
provider-added fields (provisioningState, etag, resourceGuid, computed ids)
that must never trigger an update.

COMPARISON RULES:
- Subset semantics: keys present only in the live document are ignored
- Empty equivalence: an empty desired list/dict matches a missing live field
- Ordered lists compare by position; rule collections and rules carry
  evaluation order, so a reordering is a semantic change
- Lists declared unordered (IP group addresses, zones, address prefixes)
  compare as sorted sequences
- Normalization rules absorb ARM casing and type quirks
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import ExternalReference

logger = logging.getLogger(__name__)

_INDEX_PATTERN = re.compile(r"\[\d+\]")


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Boolean normalization: "true", "True", True are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "443" == 443
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums and resource ids
    CASE_INSENSITIVE = "case_insensitive"

    # Region display names: "West Europe" == "westeurope"
    LOCATION = "location"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        resource_type: ARM resource type to match (supports wildcards)
        path_pattern: Property path pattern to match, list indices stripped
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        if self.resource_type != "*" and not _glob_match(
            resource_type.lower(), self.resource_type.lower()
        ):
            return False

        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Simple glob matching with * and ** support."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        elif pattern[i] in r"\.[]{}()+^$|":
            regex_pattern += "\\" + pattern[i]
            i += 1
        else:
            regex_pattern += pattern[i]
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        resource_type="*",
        path_pattern="location",
        normalization_type=NormalizationType.LOCATION,
        reason="Regions may be returned as display names",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.id",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="ARM ids are case-insensitive and often re-cased by the provider",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="sku.*",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.sku.*",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Ports may be string or number",
    ),
    NormalizationRule(
        resource_type="*",
        path_pattern="zones",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Zone order doesn't matter",
    ),
    NormalizationRule(
        resource_type="Microsoft.Network/ipGroups",
        path_pattern="properties.ipAddresses",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="IP group membership is a set",
    ),
    NormalizationRule(
        resource_type="Microsoft.Network/virtualNetworks",
        path_pattern="properties.addressSpace.addressPrefixes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address space prefixes are a set",
    ),
    NormalizationRule(
        resource_type="Microsoft.Network/firewallPolicies/ruleCollectionGroups",
        path_pattern="properties.ruleCollections.rules.*",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address, port and FQDN lists inside a rule are sets",
    ),
]


class DiffNormalizer:
    """Compares desired and live documents under normalization rules."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def _matching(self, resource_type: str, path: str) -> list[NormalizationRule]:
        pattern_path = _INDEX_PATTERN.sub("", path)
        return [r for r in self._rules if r.matches(resource_type, pattern_path)]

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        """Normalize a scalar value based on applicable rules."""
        normalized = value
        for rule in self._matching(resource_type, path):
            normalized = _apply_normalization(normalized, rule.normalization_type)
        return normalized

    def is_unordered(self, resource_type: str, path: str) -> bool:
        return any(
            r.normalization_type == NormalizationType.ARRAY_UNORDERED
            for r in self._matching(resource_type, path)
        )

    def diff_paths(
        self,
        desired: Any,
        live: Any,
        resource_type: str = "*",
        path: str = "",
    ) -> list[str]:
        """Return the property paths where live does not satisfy desired.

        Args:
            desired: Desired document (references must be resolved).
            live: Live document from the provider, or None if absent.
            resource_type: ARM type used to select normalization rules.
            path: Path prefix for nested calls.

        Returns:
            Differing paths; empty when live already satisfies desired.
        """
        if isinstance(desired, ExternalReference):
            if not desired.resolved:
                raise ValueError(f"Unresolved reference to '{desired.target_id}' at '{path}'")
            desired = desired.value

        # Unset fields and empty objects place no constraint on live state
        if desired is None or (isinstance(desired, dict) and not desired):
            return []
        if _is_empty(desired) and _is_empty(live):
            return []

        if isinstance(desired, dict):
            if not isinstance(live, dict):
                return [path or "<root>"]
            differences: list[str] = []
            for key, value in desired.items():
                child = f"{path}.{key}" if path else key
                differences.extend(self.diff_paths(value, live.get(key), resource_type, child))
            return differences

        if isinstance(desired, list | tuple | set | frozenset):
            if not isinstance(live, list | tuple):
                return [path]
            desired_items = list(desired)
            if self.is_unordered(resource_type, path) or isinstance(desired, set | frozenset):
                return self._diff_unordered(desired_items, list(live), resource_type, path)
            if len(desired_items) != len(live):
                return [path]
            differences = []
            for index, (d_item, l_item) in enumerate(zip(desired_items, live, strict=True)):
                differences.extend(self.diff_paths(d_item, l_item, resource_type, f"{path}[{index}]"))
            return differences

        if self.normalize_value(desired, resource_type, path) == self.normalize_value(
            live, resource_type, path
        ):
            if desired != live:
                logger.debug(
                    "Change normalized away",
                    extra={"resource_type": resource_type, "path": path},
                )
            return []
        return [path]

    def _diff_unordered(
        self,
        desired: list[Any],
        live: list[Any],
        resource_type: str,
        path: str,
    ) -> list[str]:
        def key(item: Any) -> str:
            if isinstance(item, ExternalReference):
                item = item.value
            normalized = self.normalize_value(item, resource_type, f"{path}[0]")
            return json.dumps(normalized, sort_keys=True, default=str)

        if sorted(key(i) for i in desired) != sorted(key(i) for i in live):
            return [path]
        return []

    def needs_update(self, desired: Any, live: Any, resource_type: str = "*") -> bool:
        """Return True when live state does not already satisfy desired."""
        if live is None:
            return True
        return bool(self.diff_paths(desired, live, resource_type))


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, list | tuple | set | frozenset | dict | str) and len(value) == 0


def _apply_normalization(value: Any, normalization_type: NormalizationType) -> Any:
    match normalization_type:
        case NormalizationType.BOOLEAN_NORMALIZE:
            if isinstance(value, str):
                if value.lower() in ("true", "yes", "1", "on"):
                    return True
                if value.lower() in ("false", "no", "0", "off"):
                    return False
            return value
        case NormalizationType.NUMERIC_STRING:
            if isinstance(value, str):
                try:
                    return float(value) if "." in value else int(value)
                except ValueError:
                    return value
            return value
        case NormalizationType.CASE_INSENSITIVE:
            return value.lower() if isinstance(value, str) else value
        case NormalizationType.LOCATION:
            return value.replace(" ", "").lower() if isinstance(value, str) else value
        case _:
            return value


_default_normalizer = DiffNormalizer()


def needs_update(desired: Any, live: Any, resource_type: str = "*") -> bool:
    """Module-level convenience wrapper using the default rules."""
    return _default_normalizer.needs_update(desired, live, resource_type)


def diff_paths(desired: Any, live: Any, resource_type: str = "*") -> list[str]:
    return _default_normalizer.diff_paths(desired, live, resource_type)
