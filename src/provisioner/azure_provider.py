"""Azure Resource Manager provider.

Resources are managed through the ARM generic resources API, so each kind
only needs a body builder and an output extractor:

    azure:resources:ResourceGroup            -> resource_groups.create_or_update
    azure:containerregistry:Registry         -> Microsoft.ContainerRegistry/registries
    azure:containerinstance:ContainerGroup   -> Microsoft.ContainerInstance/containerGroups

SECURITY:
- The SDK client authenticates with a managed identity only
  (see security.get_managed_identity_credential).
- Registries are created with the admin user disabled; container groups
  pull images with a managed identity, never with registry passwords.
- Environment variables with secret-looking names are sent as
  ``secureValue`` so ARM never echoes them back.

SDK calls are blocking; they run in the default thread pool executor and
are retried with exponential backoff on transient HttpResponseErrors.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from typing import Any

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    Identity,
    IdentityUserAssignedIdentitiesValue,
    ResourceGroup,
    Sku,
)

from .config import MAX_PROVIDER_RETRIES, RETRY_BACKOFF_BASE_SECONDS
from .providers import KindSchema, ProviderError
from .security import SECRET_KEY_PATTERN

logger = logging.getLogger(__name__)

RESOURCE_GROUP_KIND = "azure:resources:ResourceGroup"
REGISTRY_KIND = "azure:containerregistry:Registry"
CONTAINER_GROUP_KIND = "azure:containerinstance:ContainerGroup"

RESOURCE_GROUP_API_VERSION = "2022-09-01"

# HTTP statuses worth retrying; other 4xx errors are final
RETRYABLE_STATUS_CODES = frozenset({408, 409, 429})

# Tags stamped on every managed resource
MANAGED_BY_TAG = {"managedBy": "declarative-provisioner"}

AZURE_KIND_SCHEMAS: list[KindSchema] = [
    KindSchema(
        kind=RESOURCE_GROUP_KIND,
        identity_properties=("name", "location"),
        required_properties=("name",),
        outputs=("id", "name", "location"),
        api_version=RESOURCE_GROUP_API_VERSION,
    ),
    KindSchema(
        kind=REGISTRY_KIND,
        identity_properties=("name", "resourceGroupName", "location"),
        required_properties=("name", "resourceGroupName"),
        outputs=("id", "name", "loginServer"),
        api_version="2023-07-01",
    ),
    KindSchema(
        kind=CONTAINER_GROUP_KIND,
        identity_properties=("name", "resourceGroupName", "location", "osType"),
        required_properties=("name", "resourceGroupName", "containers"),
        outputs=("id", "name", "ipAddress.ip", "ipAddress.fqdn"),
        api_version="2023-05-01",
    ),
]

_SCHEMAS_BY_KIND = {schema.kind: schema for schema in AZURE_KIND_SCHEMAS}

_ARM_TYPES = {
    REGISTRY_KIND: "Microsoft.ContainerRegistry/registries",
    CONTAINER_GROUP_KIND: "Microsoft.ContainerInstance/containerGroups",
}


def _is_retryable(error: HttpResponseError) -> bool:
    status = error.status_code
    return status is None or status >= 500 or status in RETRYABLE_STATUS_CODES


def _identity(value: dict[str, Any] | None) -> Identity | None:
    """Build an ARM identity block from ``{type, userAssignedIdentities: [ids]}``."""
    if not value:
        return None
    assigned = value.get("userAssignedIdentities") or []
    return Identity(
        type=value.get("type", "SystemAssigned"),
        user_assigned_identities=(
            {rid: IdentityUserAssignedIdentitiesValue() for rid in assigned} if assigned else None
        ),
    )


def _environment_variable(entry: dict[str, Any]) -> dict[str, Any]:
    name = str(entry.get("name", ""))
    value = entry.get("value")
    if value is not None and SECRET_KEY_PATTERN.search(name):
        return {"name": name, "secureValue": str(value)}
    return {key: (str(item) if key == "value" else item) for key, item in entry.items()}


def _container(entry: dict[str, Any]) -> dict[str, Any]:
    """Wrap a flat container declaration into the ARM ``properties`` shape."""
    properties = {key: value for key, value in entry.items() if key != "name"}
    if "environmentVariables" in properties:
        properties["environmentVariables"] = [
            _environment_variable(item) for item in properties["environmentVariables"] or []
        ]
    return {"name": entry.get("name"), "properties": properties}


class AzureResourceProvider:
    """Provider for Azure resources via ARM.

    Args:
        credential: Managed identity credential.
        subscription_id: Target subscription.
        default_location: Location used when a declaration omits one.
        client: Pre-built ResourceManagementClient (tests).
    """

    def __init__(
        self,
        credential: TokenCredential | None,
        subscription_id: str,
        default_location: str | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._default_location = default_location
        self._client = client or ResourceManagementClient(
            credential=credential,
            subscription_id=subscription_id,
        )

    # -------------------------------------------------------------------------
    # Provider contract
    # -------------------------------------------------------------------------

    async def create(self, kind: str, properties: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        resource_id, outputs = await self._put(kind, properties)
        logger.info("Created Azure resource", extra={"kind": kind, "resource_id": resource_id})
        return resource_id, outputs

    async def update(
        self, resource_id: str, kind: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        new_id, outputs = await self._put(kind, properties)
        if new_id.lower() != resource_id.lower():
            raise ProviderError(
                f"Update of {resource_id} resolved to a different resource {new_id}"
            )
        logger.info("Updated Azure resource", extra={"kind": kind, "resource_id": resource_id})
        return outputs

    async def delete(self, resource_id: str, kind: str) -> None:
        schema = self._schema(kind)

        def begin() -> Any:
            if kind == RESOURCE_GROUP_KIND:
                name = resource_id.rstrip("/").rsplit("/", 1)[-1]
                return self._client.resource_groups.begin_delete(resource_group_name=name)
            return self._client.resources.begin_delete_by_id(
                resource_id=resource_id,
                api_version=schema.api_version,
            )

        try:
            await self._with_retry(f"delete {resource_id}", begin, wait=True)
        except ResourceNotFoundError:
            logger.info("Azure resource already gone", extra={"resource_id": resource_id})
            return
        logger.info("Deleted Azure resource", extra={"kind": kind, "resource_id": resource_id})

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _schema(self, kind: str) -> KindSchema:
        schema = _SCHEMAS_BY_KIND.get(kind)
        if schema is None:
            raise ProviderError(f"Azure provider does not handle kind '{kind}'")
        return schema

    def resource_id(self, kind: str, properties: dict[str, Any]) -> str:
        """ARM id of the resource a declaration describes."""
        name = properties["name"]
        if kind == RESOURCE_GROUP_KIND:
            return f"/subscriptions/{self._subscription_id}/resourceGroups/{name}"
        return (
            f"/subscriptions/{self._subscription_id}/resourceGroups/"
            f"{properties['resourceGroupName']}/providers/{_ARM_TYPES[kind]}/{name}"
        )

    def _location(self, properties: dict[str, Any]) -> str:
        location = properties.get("location") or self._default_location
        if not location:
            raise ProviderError(
                f"No location for '{properties.get('name')}' and no default location configured"
            )
        return str(location)

    def _tags(self, properties: dict[str, Any]) -> dict[str, str]:
        return {**MANAGED_BY_TAG, **{k: str(v) for k, v in (properties.get("tags") or {}).items()}}

    async def _put(self, kind: str, properties: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        schema = self._schema(kind)

        if kind == RESOURCE_GROUP_KIND:
            name = str(properties["name"])
            body = ResourceGroup(location=self._location(properties), tags=self._tags(properties))

            def begin_rg() -> Any:
                return self._client.resource_groups.create_or_update(
                    resource_group_name=name,
                    parameters=body,
                )

            result = await self._with_retry(f"create resource group {name}", begin_rg, wait=False)
            return result.id, {"id": result.id, "name": result.name, "location": result.location}

        resource_id = self.resource_id(kind, properties)
        builder: Callable[[dict[str, Any]], GenericResource] = {
            REGISTRY_KIND: self._registry_body,
            CONTAINER_GROUP_KIND: self._container_group_body,
        }[kind]
        body = builder(properties)

        def begin() -> Any:
            return self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=schema.api_version,
                parameters=body,
            )

        result = await self._with_retry(f"put {resource_id}", begin, wait=True)
        return result.id or resource_id, self._outputs(kind, result)

    def _registry_body(self, properties: dict[str, Any]) -> GenericResource:
        if properties.get("adminUserEnabled"):
            raise ProviderError(
                f"Registry '{properties['name']}' must not enable the admin user; "
                "grant AcrPull to a managed identity instead"
            )
        sku = properties.get("sku") or {"name": "Basic"}
        extra = {
            key: value
            for key, value in properties.items()
            if key not in ("name", "resourceGroupName", "location", "tags", "sku")
        }
        return GenericResource(
            location=self._location(properties),
            tags=self._tags(properties),
            sku=Sku(name=sku.get("name", "Basic")),
            properties={**extra, "adminUserEnabled": False},
        )

    def _container_group_body(self, properties: dict[str, Any]) -> GenericResource:
        credentials = properties.get("imageRegistryCredentials") or []
        for credential in credentials:
            if "password" in credential or "username" in credential:
                raise ProviderError(
                    f"Container group '{properties['name']}' must pull images with a "
                    "managed identity; remove username/password from imageRegistryCredentials"
                )

        arm_properties: dict[str, Any] = {
            "osType": properties.get("osType", "Linux"),
            "restartPolicy": properties.get("restartPolicy", "Always"),
            "containers": [_container(entry) for entry in properties["containers"]],
        }
        if credentials:
            arm_properties["imageRegistryCredentials"] = credentials
        for key in ("ipAddress", "volumes", "diagnostics", "subnetIds", "sku"):
            if key in properties:
                arm_properties[key] = properties[key]

        return GenericResource(
            location=self._location(properties),
            tags=self._tags(properties),
            identity=_identity(properties.get("identity")),
            properties=arm_properties,
        )

    def _outputs(self, kind: str, result: Any) -> dict[str, Any]:
        arm_properties = getattr(result, "properties", None) or {}
        outputs: dict[str, Any] = {"id": result.id, "name": result.name}
        if kind == REGISTRY_KIND:
            outputs["loginServer"] = arm_properties.get("loginServer")
        elif kind == CONTAINER_GROUP_KIND:
            ip_address = arm_properties.get("ipAddress") or {}
            outputs["ipAddress"] = {"ip": ip_address.get("ip"), "fqdn": ip_address.get("fqdn")}
        return outputs

    async def _with_retry(self, operation: str, begin: Callable[[], Any], wait: bool) -> Any:
        """Run a blocking SDK call in the executor with exponential backoff retry.

        Args:
            operation: Human-readable operation for logging.
            begin: Callable returning a result, or an LROPoller when ``wait``.
            wait: Block on ``poller.result()`` as well.

        Raises:
            ResourceNotFoundError: Passed through for the caller to interpret.
            ProviderError: When retries are exhausted or the error is final.
        """
        loop = asyncio.get_running_loop()
        last_error: HttpResponseError | None = None

        for attempt in range(1, MAX_PROVIDER_RETRIES + 1):
            try:
                result = await loop.run_in_executor(None, begin)
                if wait:
                    result = await loop.run_in_executor(None, result.result)
                return result
            except ResourceNotFoundError:
                raise
            except HttpResponseError as e:
                last_error = e
                if not _is_retryable(e) or attempt == MAX_PROVIDER_RETRIES:
                    break

                # Exponential backoff with jitter
                backoff = RETRY_BACKOFF_BASE_SECONDS * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter

                logger.warning(
                    "Azure call failed, retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": MAX_PROVIDER_RETRIES,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise ProviderError(f"Azure {operation} failed: {last_error.message}") from last_error
