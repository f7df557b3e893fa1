"""Pydantic models for stack declarations and persisted state.

These models provide:
1. Type-safe YAML parsing of stack files
2. Typed reference values instead of opaque string interpolation
3. Validation at the boundary (fail fast, fail loudly)
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import VALID_LOGICAL_NAME_PATTERN

# =============================================================================
# Reference values
# =============================================================================
#
# In a stack file a reference is a single-key mapping whose key starts with "$":
#
#   loginServer:  {$ref: acr.loginServer}
#   image:        {$concat: [{$ref: acr.loginServer}, "/", {$config: imageName}]}
#   port:         {$config: containerPort}
#   apiKey:       {$secret: weather-api-key}


class OutputRef(BaseModel):
    """Reference to an output property of another declared resource."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    resource: str
    output: str

    def __str__(self) -> str:
        return f"{self.resource}.{self.output}"


class ConfigRef(BaseModel):
    """Reference to a stack configuration value."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str


class SecretRef(BaseModel):
    """Reference to a value held by an external secret store."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field(min_length=1)


class Concat(BaseModel):
    """String concatenation of literals and references."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    parts: tuple[Any, ...]


Reference = OutputRef | ConfigRef | SecretRef | Concat
REFERENCE_TYPES = (OutputRef, ConfigRef, SecretRef, Concat)


class _Unknown:
    """Placeholder for a value that is only known after an upstream apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unknown>"


UNKNOWN = _Unknown()


def parse_reference(raw: Any) -> Any:
    """Convert YAML reference markers into typed reference values.

    Args:
        raw: A property value as loaded from YAML (or already typed).

    Returns:
        The same structure with markers replaced by reference models.

    Raises:
        ValueError: If a marker is malformed or unknown.
    """
    if isinstance(raw, REFERENCE_TYPES):
        return raw

    if isinstance(raw, list | tuple):
        return [parse_reference(item) for item in raw]

    if not isinstance(raw, dict):
        return raw

    marker_keys = [k for k in raw if isinstance(k, str) and k.startswith("$")]
    if not marker_keys:
        return {key: parse_reference(value) for key, value in raw.items()}

    if len(raw) != 1:
        raise ValueError(f"Reference marker must be the only key in its mapping: {sorted(raw)}")

    marker = marker_keys[0]
    value = raw[marker]

    match marker:
        case "$ref":
            if isinstance(value, dict):
                if set(value) != {"resource", "output"}:
                    raise ValueError(f"$ref mapping needs exactly 'resource' and 'output': {value!r}")
                return OutputRef(resource=str(value["resource"]), output=str(value["output"]))
            if not isinstance(value, str) or "." not in value:
                raise ValueError(f"$ref must look like '<resource>.<output>': {value!r}")
            resource, output = value.split(".", 1)
            return OutputRef(resource=resource, output=output)
        case "$config":
            if not isinstance(value, str) or not value:
                raise ValueError(f"$config must name a configuration key: {value!r}")
            return ConfigRef(key=value)
        case "$secret":
            if not isinstance(value, str) or not value:
                raise ValueError(f"$secret must name a secret: {value!r}")
            return SecretRef(name=value)
        case "$concat":
            if not isinstance(value, list):
                raise ValueError("$concat takes a list of parts")
            return Concat(parts=tuple(parse_reference(part) for part in value))
        case _:
            raise ValueError(f"Unknown reference marker: {marker}")


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference value nested anywhere in a property value."""
    if isinstance(value, Concat):
        yield value
        for part in value.parts:
            yield from iter_references(part)
    elif isinstance(value, REFERENCE_TYPES):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, list | tuple):
        for item in value:
            yield from iter_references(item)


def transform_references(value: Any, fn: Callable[[Any], Any]) -> Any:
    """Return a copy of ``value`` with each non-Concat reference replaced by ``fn(ref)``.

    Concat values are rebuilt from their transformed parts; when every part
    becomes a plain string the result is joined into a single string.
    """
    if isinstance(value, Concat):
        parts = [transform_references(part, fn) for part in value.parts]
        if any(part is UNKNOWN for part in parts):
            return UNKNOWN
        if all(not isinstance(part, REFERENCE_TYPES) for part in parts):
            return "".join(str(part) for part in parts)
        return Concat(parts=tuple(parts))
    if isinstance(value, REFERENCE_TYPES):
        return fn(value)
    if isinstance(value, dict):
        return {key: transform_references(item, fn) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [transform_references(item, fn) for item in value]
    return value


def get_path(data: Any, path: str) -> Any:
    """Look up a dotted path (``ipAddress.fqdn``, ``ports.0.port``) in nested data.

    Raises:
        KeyError: If any segment is missing.
    """
    current = data
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise KeyError(path)
    return current


# =============================================================================
# Declarations
# =============================================================================


class ResourceSpec(BaseModel):
    """A declared resource: the desired state for one logical name."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    name: str = Field(pattern=VALID_LOGICAL_NAME_PATTERN)
    kind: str = Field(min_length=1)
    properties: dict[str, Any] = Field(default_factory=dict)

    # Explicit dependencies, unioned with references found in properties
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Refuse Delete and Replace for this resource
    protect: bool = False

    # Property paths excluded from diffing (e.g. "tags", "sku.name")
    ignore_changes: list[str] = Field(default_factory=list, alias="ignoreChanges")

    @field_validator("properties", mode="before")
    @classmethod
    def parse_properties(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("properties must be a mapping")
        return parse_reference(v)

    @field_validator("depends_on")
    @classmethod
    def dedupe_depends_on(cls, v: list[str]) -> list[str]:
        seen: dict[str, None] = {}
        for name in v:
            if name and name.strip():
                seen.setdefault(name.strip(), None)
        return list(seen)

    def references(self) -> list[OutputRef]:
        """Output references declared anywhere in this resource's properties."""
        return [ref for ref in iter_references(self.properties) if isinstance(ref, OutputRef)]

    def referenced_names(self) -> set[str]:
        return {ref.resource for ref in self.references()}


class StackSpec(BaseModel):
    """A stack file: configuration values, resources and exported outputs."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = Field("stack", min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)
    resources: list[ResourceSpec] = Field(default_factory=list)
    outputs: dict[str, Any] = Field(default_factory=dict)

    @field_validator("outputs", mode="before")
    @classmethod
    def parse_outputs(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("outputs must be a mapping")
        return parse_reference(v)


# =============================================================================
# Persisted state
# =============================================================================


class StateRecord(BaseModel):
    """Last-known state of one applied resource."""

    model_config = ConfigDict(extra="ignore")

    name: str
    kind: str
    id: str | None = None

    # Resolved last-applied properties, secrets redacted.
    # None marks a degraded record whose properties could not be trusted.
    properties: dict[str, Any] | None = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    # Logical names this resource depended on when last applied
    dependencies: list[str] = Field(default_factory=list)
    protect: bool = False
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def degraded(self) -> bool:
        """True when the record exists but its properties are unknown."""
        return self.properties is None


class PendingDelete(BaseModel):
    """An instance replaced by a new one whose delete has not completed."""

    model_config = ConfigDict(extra="ignore")

    name: str
    kind: str
    id: str
