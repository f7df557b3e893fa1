"""Provider contract and kind capability registry.

The engine talks to the outside world only through providers:

    create(kind, properties) -> (id, outputs)
    update(id, kind, properties) -> outputs
    delete(id, kind) -> None

Each resource kind is registered with a KindSchema describing which
properties identify an instance (a change forces Replace), which are
required, and which outputs it exposes. A kind that is not registered is
a schema error for the resource declaring it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised by a provider when a create, update or delete fails."""

    pass


class SchemaError(Exception):
    """Raised when a resource does not match the registered capability set."""

    pass


@dataclass(frozen=True)
class KindSchema:
    """Capabilities of one resource kind.

    Attributes:
        kind: Kind tag as used in stack files.
        identity_properties: Property paths the provider cannot change in place.
        required_properties: Top-level properties that must be declared.
        outputs: Output names the provider publishes after apply.
        api_version: Provider API version, where the provider needs one.
    """

    kind: str
    identity_properties: tuple[str, ...] = ()
    required_properties: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    api_version: str | None = None

    def is_identity_path(self, path: str) -> bool:
        """True if ``path`` is, or is nested under, an identity property."""
        return any(
            path == identity or path.startswith(f"{identity}.")
            for identity in self.identity_properties
        )


@runtime_checkable
class Provider(Protocol):
    """Contract every provider plugin implements."""

    async def create(self, kind: str, properties: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        ...

    async def update(
        self, resource_id: str, kind: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        ...

    async def delete(self, resource_id: str, kind: str) -> None:
        ...


class ProviderRegistry:
    """Maps resource kinds to their schema and provider."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[KindSchema, Provider]] = {}

    def register(self, schema: KindSchema, provider: Provider) -> None:
        if schema.kind in self._entries:
            logger.warning("Replacing registered provider", extra={"kind": schema.kind})
        self._entries[schema.kind] = (schema, provider)

    def register_all(self, schemas: list[KindSchema], provider: Provider) -> None:
        for schema in schemas:
            self.register(schema, provider)

    def __contains__(self, kind: object) -> bool:
        return kind in self._entries

    def kinds(self) -> list[str]:
        return sorted(self._entries)

    def schema_for(self, kind: str) -> KindSchema:
        """Get the schema for a kind.

        Raises:
            SchemaError: If the kind is not registered.
        """
        entry = self._entries.get(kind)
        if entry is None:
            raise SchemaError(
                f"Unknown resource kind '{kind}'. Registered kinds: {self.kinds()}"
            )
        return entry[0]

    def provider_for(self, kind: str) -> Provider:
        """Get the provider for a kind.

        Raises:
            SchemaError: If the kind is not registered.
        """
        entry = self._entries.get(kind)
        if entry is None:
            raise SchemaError(f"No provider registered for kind '{kind}'")
        return entry[1]

    def validate(self, name: str, kind: str, properties: dict[str, Any]) -> KindSchema:
        """Check a declaration against its kind's schema.

        Returns:
            The kind schema.

        Raises:
            SchemaError: If the kind is unknown or required properties are missing.
        """
        schema = self.schema_for(kind)
        missing = [
            prop for prop in schema.required_properties if properties.get(prop) is None
        ]
        if missing:
            raise SchemaError(
                f"Resource '{name}' of kind '{kind}' is missing required properties: {missing}"
            )
        return schema
