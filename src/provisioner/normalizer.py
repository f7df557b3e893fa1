"""Property normalization rules for desired-vs-stored comparison.

Providers echo back values that differ syntactically from what was
declared but mean the same thing. Normalizing both sides before comparing
keeps those differences from showing up as spurious Updates.

COMMON FALSE POSITIVES HANDLED:
1. Empty list / empty mapping / null / missing property
2. String "true" vs boolean true
3. Numeric strings ("8080" vs 8080)
4. Case differences in enums ("TCP" vs "tcp", "Linux" vs "linux")
5. Defaults filled in by the provider
6. Ordering of unordered collections (platforms, tags)

Rule paths are dotted property paths; list items use their index
(``containers.0.ports.0.protocol``). ``*`` matches one segment, ``**``
any number of segments.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (supports wildcards)
        path_pattern: Property path pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a resource kind and property path."""
        if self.kind != "*" and not _glob_match(kind.lower(), self.kind.lower(), ":"):
            return False

        return not (
            self.path_pattern != "*"
            and not _glob_match(path.lower(), self.path_pattern.lower(), ".")
        )


def _glob_match(value: str, pattern: str, separator: str) -> bool:
    """Glob matching where * stays within one segment and ** crosses segments."""
    sep = re.escape(separator)
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += f"[^{sep}]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


# Default normalization rules for the shipped resource kinds
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    # Empty equivalence
    NormalizationRule(
        kind="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags mapping equals null/missing",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.environmentVariables",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty environment variable list equals null",
    ),

    # Boolean normalization
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        kind="azure:containerregistry:Registry",
        path_pattern="adminUserEnabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Admin user flag may be string or bool",
    ),
    NormalizationRule(
        kind="docker-build:Image",
        path_pattern="push",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Push flag may be string or bool",
    ),

    # Numeric strings
    NormalizationRule(
        kind="*",
        path_pattern="**.port",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Ports may be declared as strings",
    ),
    NormalizationRule(
        kind="azure:containerinstance:ContainerGroup",
        path_pattern="**.requests.*",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="CPU and memory requests may be declared as strings",
    ),

    # Case insensitive enums
    NormalizationRule(
        kind="azure:**",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Azure regions are case-insensitive",
    ),
    NormalizationRule(
        kind="azure:**",
        path_pattern="sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.protocol",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Protocol names may have case variations",
    ),
    NormalizationRule(
        kind="azure:containerinstance:ContainerGroup",
        path_pattern="osType",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="OS type may have case variations",
    ),
    NormalizationRule(
        kind="azure:containerinstance:ContainerGroup",
        path_pattern="restartPolicy",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Restart policy may have case variations",
    ),
    NormalizationRule(
        kind="azure:containerinstance:ContainerGroup",
        path_pattern="ipAddress.type",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="IP address type may have case variations",
    ),

    # Default values
    NormalizationRule(
        kind="azure:containerregistry:Registry",
        path_pattern="adminUserEnabled",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": False},
        reason="Admin user defaults to disabled",
    ),
    NormalizationRule(
        kind="azure:containerinstance:ContainerGroup",
        path_pattern="restartPolicy",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": "always"},
        reason="Restart policy defaults to Always",
    ),

    # Unordered collections
    NormalizationRule(
        kind="docker-build:Image",
        path_pattern="platforms",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Build platform order doesn't matter",
    ),
    NormalizationRule(
        kind="docker-build:Image",
        path_pattern="tags",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Image tag order doesn't matter",
    ),
]


class DiffNormalizer:
    """Normalizes property values to handle semantic equivalence."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    @property
    def rules(self) -> list[NormalizationRule]:
        return list(self._rules)

    def has_rule(self, kind: str, path: str, normalization_type: NormalizationType) -> bool:
        return any(
            rule.normalization_type == normalization_type and rule.matches(kind, path)
            for rule in self._rules
        )

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value

        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)

        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if value is None:
            return None
        if isinstance(value, str | list | dict | tuple) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return float(value) if isinstance(value, float) and not value.is_integer() else int(value)
        if isinstance(value, str):
            try:
                number = float(value)
            except ValueError:
                return value
            return int(number) if number.is_integer() else number
        return value

    def _normalize_case(self, value: Any) -> str | Any:
        if isinstance(value, str):
            return value.lower()
        return value

    def _normalize_array_order(self, value: Any) -> tuple | Any:
        """Sort arrays so order is irrelevant; returns a tuple."""
        if isinstance(value, list | tuple):
            return tuple(sorted(value, key=lambda x: str(x)))
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value

    def are_equivalent(self, before: Any, after: Any, kind: str, path: str) -> bool:
        """Check if two values are semantically equivalent at a path."""
        return self.normalize_value(before, kind, path) == self.normalize_value(after, kind, path)


@dataclass
class NormalizationConfig:
    """Configuration for diff normalization."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            PROVISIONER_DEFAULT_NORMALIZATION: If "false", disable default rules
        """
        return cls(
            enable_default_rules=os.environ.get(
                "PROVISIONER_DEFAULT_NORMALIZATION", "true"
            ).lower() in ("true", "1", "yes"),
        )

    def build(self) -> DiffNormalizer:
        return DiffNormalizer(rules=self.rules, enable_default_rules=self.enable_default_rules)
