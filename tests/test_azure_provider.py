"""Tests for the Azure provider with a mocked ARM client."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from provisioner.azure_provider import (
    CONTAINER_GROUP_KIND,
    MANAGED_BY_TAG,
    REGISTRY_KIND,
    RESOURCE_GROUP_KIND,
    AzureResourceProvider,
)
from provisioner.providers import ProviderError

SUB = "00000000-0000-0000-0000-000000000001"
RG_ID = f"/subscriptions/{SUB}/resourceGroups/demo-rg"
ACR_ID = f"{RG_ID}/providers/Microsoft.ContainerRegistry/registries/demoacr"
CG_ID = f"{RG_ID}/providers/Microsoft.ContainerInstance/containerGroups/demo-cg"


@pytest.fixture(autouse=True)
def no_backoff():
    with patch("provisioner.azure_provider.RETRY_BACKOFF_BASE_SECONDS", 0):
        yield


@pytest.fixture
def client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def azure(client: MagicMock) -> AzureResourceProvider:
    return AzureResourceProvider(
        credential=None, subscription_id=SUB, default_location="westeurope", client=client
    )


def http_error(status: int | None, message: str = "failed") -> HttpResponseError:
    error = HttpResponseError(message=message)
    error.status_code = status
    return error


def poller(result: object) -> MagicMock:
    mock = MagicMock()
    mock.result.return_value = result
    return mock


def registry_props(**overrides: object) -> dict[str, object]:
    return {"name": "demoacr", "resourceGroupName": "demo-rg", "sku": {"name": "Basic"}, **overrides}


def container_group_props(**overrides: object) -> dict[str, object]:
    return {
        "name": "demo-cg",
        "resourceGroupName": "demo-rg",
        "osType": "Linux",
        "identity": {"type": "UserAssigned", "userAssignedIdentities": ["/ids/pull"]},
        "imageRegistryCredentials": [{"server": "demoacr.azurecr.io", "identity": "/ids/pull"}],
        "containers": [
            {
                "name": "app",
                "image": "demoacr.azurecr.io/app:1",
                "ports": [{"port": 8080}],
                "environmentVariables": [
                    {"name": "WEATHER_API_KEY", "value": "s3cr3t"},
                    {"name": "PORT", "value": 8080},
                ],
            }
        ],
        "ipAddress": {"type": "Public", "ports": [{"port": 8080}]},
        **overrides,
    }


class TestResourceGroups:
    """Tests for resource groups."""

    @pytest.mark.asyncio
    async def test_create(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        client.resource_groups.create_or_update.return_value = SimpleNamespace(
            id=RG_ID, name="demo-rg", location="westeurope"
        )

        resource_id, outputs = await azure.create(
            RESOURCE_GROUP_KIND, {"name": "demo-rg", "tags": {"env": "dev"}}
        )

        assert resource_id == RG_ID
        assert outputs == {"id": RG_ID, "name": "demo-rg", "location": "westeurope"}
        kwargs = client.resource_groups.create_or_update.call_args.kwargs
        assert kwargs["resource_group_name"] == "demo-rg"
        assert kwargs["parameters"].location == "westeurope"
        assert kwargs["parameters"].tags == {**MANAGED_BY_TAG, "env": "dev"}

    @pytest.mark.asyncio
    async def test_delete(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        await azure.delete(RG_ID, RESOURCE_GROUP_KIND)

        client.resource_groups.begin_delete.assert_called_once_with(resource_group_name="demo-rg")
        client.resource_groups.begin_delete.return_value.result.assert_called_once()

    @pytest.mark.asyncio
    async def test_no_location(self, client: MagicMock) -> None:
        azure = AzureResourceProvider(credential=None, subscription_id=SUB, client=client)

        with pytest.raises(ProviderError, match="no default location"):
            await azure.create(RESOURCE_GROUP_KIND, {"name": "demo-rg"})


class TestRegistries:
    """Tests for container registries."""

    @pytest.mark.asyncio
    async def test_create(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test the registry is created by id with the admin user disabled."""
        client.resources.begin_create_or_update_by_id.return_value = poller(
            SimpleNamespace(id=ACR_ID, name="demoacr", properties={"loginServer": "demoacr.azurecr.io"})
        )

        resource_id, outputs = await azure.create(REGISTRY_KIND, registry_props())

        assert resource_id == ACR_ID
        assert outputs == {"id": ACR_ID, "name": "demoacr", "loginServer": "demoacr.azurecr.io"}
        kwargs = client.resources.begin_create_or_update_by_id.call_args.kwargs
        assert kwargs["resource_id"] == ACR_ID
        assert kwargs["api_version"] == "2023-07-01"
        assert kwargs["parameters"].properties == {"adminUserEnabled": False}
        assert kwargs["parameters"].sku.name == "Basic"

    @pytest.mark.asyncio
    async def test_admin_user_refused(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        with pytest.raises(ProviderError, match="admin user"):
            await azure.create(REGISTRY_KIND, registry_props(adminUserEnabled=True))

        client.resources.begin_create_or_update_by_id.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_same_id(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        client.resources.begin_create_or_update_by_id.return_value = poller(
            SimpleNamespace(id=ACR_ID, name="demoacr", properties={"loginServer": "x"})
        )

        outputs = await azure.update(ACR_ID.upper(), REGISTRY_KIND, registry_props())

        assert outputs["loginServer"] == "x"

    @pytest.mark.asyncio
    async def test_update_different_id(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        client.resources.begin_create_or_update_by_id.return_value = poller(
            SimpleNamespace(id=ACR_ID, name="demoacr", properties={})
        )

        with pytest.raises(ProviderError, match="different resource"):
            await azure.update(f"{RG_ID}/providers/x/y/other", REGISTRY_KIND, registry_props())

    @pytest.mark.asyncio
    async def test_delete_already_gone(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test deleting a missing resource succeeds."""
        client.resources.begin_delete_by_id.side_effect = ResourceNotFoundError("gone")

        await azure.delete(ACR_ID, REGISTRY_KIND)

        client.resources.begin_delete_by_id.assert_called_once_with(
            resource_id=ACR_ID, api_version="2023-07-01"
        )


class TestContainerGroups:
    """Tests for container groups."""

    @pytest.mark.asyncio
    async def test_create_body(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test containers are wrapped and secret env vars sent as secureValue."""
        client.resources.begin_create_or_update_by_id.return_value = poller(
            SimpleNamespace(
                id=CG_ID,
                name="demo-cg",
                properties={"ipAddress": {"ip": "20.1.2.3", "fqdn": "demo.westeurope.azurecontainer.io"}},
            )
        )

        _, outputs = await azure.create(CONTAINER_GROUP_KIND, container_group_props())

        assert outputs["ipAddress"] == {"ip": "20.1.2.3", "fqdn": "demo.westeurope.azurecontainer.io"}
        body = client.resources.begin_create_or_update_by_id.call_args.kwargs["parameters"]
        container = body.properties["containers"][0]
        assert container["name"] == "app"
        assert container["properties"]["image"] == "demoacr.azurecr.io/app:1"
        assert container["properties"]["environmentVariables"] == [
            {"name": "WEATHER_API_KEY", "secureValue": "s3cr3t"},
            {"name": "PORT", "value": "8080"},
        ]
        assert body.properties["restartPolicy"] == "Always"
        assert body.identity.type == "UserAssigned"
        assert list(body.identity.user_assigned_identities) == ["/ids/pull"]

    @pytest.mark.asyncio
    async def test_password_credentials_refused(
        self, azure: AzureResourceProvider, client: MagicMock
    ) -> None:
        props = container_group_props(
            imageRegistryCredentials=[{"server": "demoacr.azurecr.io", "username": "u", "password": "p"}]
        )

        with pytest.raises(ProviderError, match="managed identity"):
            await azure.create(CONTAINER_GROUP_KIND, props)


class TestRetry:
    """Tests for transient error handling."""

    @pytest.mark.asyncio
    async def test_retries_throttling(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        """Test a 429 is retried and the next attempt succeeds."""
        client.resources.begin_create_or_update_by_id.side_effect = [
            http_error(429, "throttled"),
            poller(SimpleNamespace(id=ACR_ID, name="demoacr", properties={})),
        ]

        resource_id, _ = await azure.create(REGISTRY_KIND, registry_props())

        assert resource_id == ACR_ID
        assert client.resources.begin_create_or_update_by_id.call_count == 2

    @pytest.mark.asyncio
    async def test_final_error_not_retried(
        self, azure: AzureResourceProvider, client: MagicMock
    ) -> None:
        client.resources.begin_create_or_update_by_id.side_effect = http_error(400, "bad sku")

        with pytest.raises(ProviderError, match="bad sku"):
            await azure.create(REGISTRY_KIND, registry_props())

        assert client.resources.begin_create_or_update_by_id.call_count == 1

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, azure: AzureResourceProvider, client: MagicMock) -> None:
        client.resources.begin_create_or_update_by_id.side_effect = http_error(503, "unavailable")

        with pytest.raises(ProviderError, match="unavailable"):
            await azure.create(REGISTRY_KIND, registry_props())

        assert client.resources.begin_create_or_update_by_id.call_count == 3

    @pytest.mark.asyncio
    async def test_unknown_kind(self, azure: AzureResourceProvider) -> None:
        with pytest.raises(ProviderError, match="does not handle"):
            await azure.create("azure:storage:Account", {"name": "x"})
