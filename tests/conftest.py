"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from provisioner.azure_provider import AZURE_KIND_SCHEMAS  # noqa: E402
from provisioner.docker_provider import DOCKER_KIND_SCHEMAS  # noqa: E402
from provisioner.memory_provider import InMemoryProvider  # noqa: E402
from provisioner.providers import KindSchema, ProviderRegistry  # noqa: E402

# Kind used by engine-level tests: "name" is its only identity property
TEST_KIND = "test:Thing"

# rg <- acr <- cg, the minimal shape of the weather app stack
EXAMPLE_STACK_YAML = """
name: example
config:
  prefix: demo
  location: westeurope
resources:
  - name: rg
    kind: azure:resources:ResourceGroup
    properties:
      name: {$concat: [{$config: prefix}, "-rg"]}
      location: {$config: location}
  - name: acr
    kind: azure:containerregistry:Registry
    properties:
      name: {$concat: [{$config: prefix}, "acr"]}
      resourceGroupName: {$ref: rg.name}
      location: {$config: location}
      sku: {name: Basic}
  - name: cg
    kind: azure:containerinstance:ContainerGroup
    properties:
      name: {$concat: [{$config: prefix}, "-cg"]}
      resourceGroupName: {$ref: rg.name}
      location: {$config: location}
      osType: Linux
      imageRegistryCredentials:
        - server: {$ref: acr.loginServer}
      containers:
        - name: app
          image: {$concat: [{$ref: acr.loginServer}, "/app:1"]}
          environmentVariables:
            - {name: API_KEY, value: {$secret: api-key}}
      ipAddress: {type: Public, dnsNameLabel: demo}
outputs:
  hostname: {$ref: cg.ipAddress.fqdn}
  url: {$concat: ["http://", {$ref: cg.ipAddress.fqdn}, ":8080"]}
"""


@pytest.fixture
def provider() -> InMemoryProvider:
    """In-memory provider standing in for Azure and docker."""
    return InMemoryProvider()


@pytest.fixture
def registry(provider: InMemoryProvider) -> ProviderRegistry:
    """Registry with every shipped kind plus a generic test kind."""
    registry = ProviderRegistry()
    registry.register_all(AZURE_KIND_SCHEMAS, provider)
    registry.register_all(DOCKER_KIND_SCHEMAS, provider)
    registry.register(
        KindSchema(kind=TEST_KIND, identity_properties=("name",), required_properties=("name",)),
        provider,
    )
    return registry


@pytest.fixture
def stack_file(tmp_path: Path) -> Path:
    """The example stack written to disk."""
    path = tmp_path / "stack.yaml"
    path.write_text(EXAMPLE_STACK_YAML)
    return path
