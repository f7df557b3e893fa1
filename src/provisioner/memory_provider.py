"""In-memory provider for previews and tests.

Keeps resources in a dictionary and simulates the outputs the real
providers publish for the shipped kinds (registry login server, container
group address, image reference), so a whole stack can be reconciled
without cloud connectivity.

Usage:
    provider = InMemoryProvider()
    provider.inject_error("create", "acr", "quota exceeded")
    registry.register_all(AZURE_KIND_SCHEMAS, provider)
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .providers import ProviderError

logger = logging.getLogger(__name__)


def _stable_digest(properties: dict[str, Any]) -> str:
    payload = json.dumps(properties, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()


def _resource_group_outputs(props: dict[str, Any]) -> dict[str, Any]:
    return {"name": props.get("name"), "location": props.get("location")}


def _registry_outputs(props: dict[str, Any]) -> dict[str, Any]:
    name = str(props.get("name", "registry"))
    return {"name": name, "loginServer": f"{name.lower()}.azurecr.io"}


def _container_group_outputs(props: dict[str, Any]) -> dict[str, Any]:
    ip_config = props.get("ipAddress") or {}
    label = ip_config.get("dnsNameLabel") or props.get("name", "cg")
    location = props.get("location") or "westeurope"
    octet = int(_stable_digest({"name": props.get("name")})[:2], 16)
    return {
        "name": props.get("name"),
        "ipAddress": {
            "ip": f"20.0.0.{octet}",
            "fqdn": f"{label}.{location}.azurecontainer.io",
        },
    }


def _image_outputs(props: dict[str, Any]) -> dict[str, Any]:
    tags = props.get("tags") or ["image:latest"]
    digest = _stable_digest(props)
    return {"ref": f"{tags[0]}@sha256:{digest}", "digest": f"sha256:{digest}", "tags": tags}


SIMULATED_OUTPUTS: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    "azure:resources:ResourceGroup": _resource_group_outputs,
    "azure:containerregistry:Registry": _registry_outputs,
    "azure:containerinstance:ContainerGroup": _container_group_outputs,
    "docker-build:Image": _image_outputs,
}


@dataclass
class MockResource:
    """A resource held by the in-memory provider."""

    resource_id: str
    kind: str
    properties: dict[str, Any]
    outputs: dict[str, Any] = field(default_factory=dict)


class InMemoryProvider:
    """Provider that stores resources in memory.

    Tracks every call for test assertions and the peak number of calls in
    flight at once. Errors can be injected per operation and resource
    name (the ``name`` property, or the stored name for deletes).
    """

    def __init__(self, latency_seconds: float = 0.0) -> None:
        self._latency = latency_seconds
        self._counter = 0
        self._errors: dict[tuple[str, str], str] = {}
        self._in_flight = 0

        self.resources: dict[str, MockResource] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.max_in_flight = 0

    def inject_error(self, operation: str, name: str, message: str = "injected failure") -> None:
        """Make the next ``operation`` on resource ``name`` fail.

        Args:
            operation: "create", "update" or "delete".
            name: Value of the resource's ``name`` property.
            message: Error message raised as ProviderError.
        """
        if operation not in ("create", "update", "delete"):
            raise ValueError(f"Unknown operation: {operation}")
        self._errors[(operation, name)] = message

    def clear_errors(self) -> None:
        self._errors.clear()

    def calls_for(self, operation: str) -> list[str]:
        """Names passed to ``operation`` in call order."""
        return [name for op, _, name in self.calls if op == operation]

    def get_by_name(self, name: str) -> MockResource | None:
        for resource in self.resources.values():
            if resource.properties.get("name") == name:
                return resource
        return None

    async def _enter(self, operation: str, kind: str, name: str) -> None:
        self.calls.append((operation, kind, name))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self._latency:
                await asyncio.sleep(self._latency)
            else:
                await asyncio.sleep(0)
            message = self._errors.pop((operation, name), None)
            if message is not None:
                raise ProviderError(f"{operation} {kind} '{name}' failed: {message}")
        finally:
            self._in_flight -= 1

    def _outputs(self, resource_id: str, kind: str, properties: dict[str, Any]) -> dict[str, Any]:
        simulate = SIMULATED_OUTPUTS.get(kind)
        outputs = simulate(properties) if simulate else copy.deepcopy(properties)
        outputs["id"] = resource_id
        return outputs

    async def create(self, kind: str, properties: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        name = str(properties.get("name", ""))
        await self._enter("create", kind, name)

        self._counter += 1
        resource_id = f"mem://{kind}/{name or 'resource'}/{self._counter}"
        outputs = self._outputs(resource_id, kind, properties)
        self.resources[resource_id] = MockResource(
            resource_id=resource_id,
            kind=kind,
            properties=copy.deepcopy(properties),
            outputs=outputs,
        )
        logger.debug("Created in-memory resource", extra={"resource_id": resource_id})
        return resource_id, copy.deepcopy(outputs)

    async def update(
        self, resource_id: str, kind: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        name = str(properties.get("name", ""))
        await self._enter("update", kind, name)

        outputs = self._outputs(resource_id, kind, properties)
        self.resources[resource_id] = MockResource(
            resource_id=resource_id,
            kind=kind,
            properties=copy.deepcopy(properties),
            outputs=outputs,
        )
        return copy.deepcopy(outputs)

    async def delete(self, resource_id: str, kind: str) -> None:
        existing = self.resources.get(resource_id)
        name = str(existing.properties.get("name", "")) if existing else ""
        await self._enter("delete", kind, name)

        # Deleting something already gone is success
        self.resources.pop(resource_id, None)
