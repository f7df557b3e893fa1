"""Container image provider backed by ``docker buildx``.

Kind ``docker-build:Image`` declares an image build:

```yaml
- name: image
  kind: docker-build:Image
  properties:
    tags: [{$concat: [{$ref: acr.loginServer}, "/weather:", {$config: imageTag}]}]
    context: {location: ./app}
    dockerfile: {location: ./app/Dockerfile}
    target: production
    platforms: [linux/amd64, linux/arm64]
    push: true
    registries: [{address: {$ref: acr.loginServer}}]
```

Registries under ``*.azurecr.io`` are logged into with ``az acr login``,
which uses the ambient Azure CLI identity; no registry password is ever
passed to docker. The ``ref`` output pins the pushed digest.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any

from .providers import KindSchema, ProviderError

logger = logging.getLogger(__name__)

IMAGE_KIND = "docker-build:Image"

# Timeout constants (seconds)
LOGIN_TIMEOUT_SECONDS = 120
BUILD_TIMEOUT_SECONDS = 1800

AZURE_REGISTRY_SUFFIX = ".azurecr.io"

DOCKER_KIND_SCHEMAS: list[KindSchema] = [
    KindSchema(
        kind=IMAGE_KIND,
        required_properties=("tags", "context"),
        outputs=("ref", "digest", "tags"),
    ),
]


def _location(value: Any) -> str | None:
    if isinstance(value, dict):
        location = value.get("location")
        return str(location) if location else None
    return str(value) if value else None


def build_command(properties: dict[str, Any], metadata_file: Path) -> list[str]:
    """Assemble the ``docker buildx build`` invocation for a declaration."""
    tags = properties.get("tags") or []
    if not tags:
        raise ProviderError("Image declaration needs at least one tag")

    context = _location(properties.get("context"))
    if context is None:
        raise ProviderError("Image declaration needs a build context location")

    cmd = ["docker", "buildx", "build"]
    for tag in tags:
        cmd.extend(["--tag", str(tag)])

    dockerfile = _location(properties.get("dockerfile"))
    if dockerfile:
        cmd.extend(["--file", dockerfile])

    if properties.get("target"):
        cmd.extend(["--target", str(properties["target"])])

    platforms = properties.get("platforms") or []
    if platforms:
        cmd.extend(["--platform", ",".join(str(p) for p in platforms)])

    for key, value in sorted((properties.get("buildArgs") or {}).items()):
        cmd.extend(["--build-arg", f"{key}={value}"])

    if properties.get("push", True):
        cmd.append("--push")

    cmd.extend(["--metadata-file", str(metadata_file), context])
    return cmd


class DockerImageProvider:
    """Builds and pushes images; images are never deleted from registries."""

    def __init__(self, docker_binary: str = "docker", az_binary: str = "az") -> None:
        self._docker = docker_binary
        self._az = az_binary

    async def create(self, kind: str, properties: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        outputs = await self._build(properties)
        return outputs["ref"], outputs

    async def update(
        self, resource_id: str, kind: str, properties: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._build(properties)

    async def delete(self, resource_id: str, kind: str) -> None:
        # Registry retention policies own image cleanup
        logger.info("Leaving pushed image in registry", extra={"image": resource_id})

    async def _build(self, properties: dict[str, Any]) -> dict[str, Any]:
        if not shutil.which(self._docker):
            raise ProviderError(f"Docker not found ({self._docker}); install Docker with buildx")

        for registry in properties.get("registries") or []:
            address = str(registry.get("address", "")) if isinstance(registry, dict) else ""
            if address.endswith(AZURE_REGISTRY_SUFFIX):
                await self._acr_login(address)

        fd, metadata_name = tempfile.mkstemp(prefix="buildx-metadata-", suffix=".json")
        os.close(fd)
        metadata_file = Path(metadata_name)
        try:
            cmd = build_command(properties, metadata_file)
            cmd[0] = self._docker
            await self._run(cmd, BUILD_TIMEOUT_SECONDS)
            metadata = self._read_metadata(metadata_file)
        finally:
            metadata_file.unlink(missing_ok=True)

        tags = [str(tag) for tag in properties["tags"]]
        digest = metadata.get("containerimage.digest")
        if not digest:
            raise ProviderError(f"docker buildx did not report an image digest for {tags[0]}")

        logger.info("Built image", extra={"tag": tags[0], "digest": digest})
        return {"ref": f"{tags[0]}@{digest}", "digest": digest, "tags": tags}

    async def _acr_login(self, address: str) -> None:
        registry_name = address.removesuffix(AZURE_REGISTRY_SUFFIX)
        await self._run([self._az, "acr", "login", "--name", registry_name], LOGIN_TIMEOUT_SECONDS)

    def _read_metadata(self, path: Path) -> dict[str, Any]:
        try:
            content = path.read_text(encoding="utf-8")
            return json.loads(content) if content.strip() else {}
        except (OSError, json.JSONDecodeError) as e:
            raise ProviderError(f"Unreadable buildx metadata file {path}: {e}") from e

    async def _run(self, cmd: list[str], timeout: int) -> subprocess.CompletedProcess[str]:
        """Run a command in the thread pool, raising ProviderError on failure."""
        loop = asyncio.get_running_loop()

        def run() -> subprocess.CompletedProcess[str]:
            return subprocess.run(
                cmd,
                timeout=timeout,
                capture_output=True,
                text=True,
                check=False,
            )

        try:
            result = await loop.run_in_executor(None, run)
        except subprocess.TimeoutExpired as e:
            raise ProviderError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e
        except FileNotFoundError as e:
            raise ProviderError(f"Command not found: {cmd[0]}") from e

        if result.returncode != 0:
            raise ProviderError(
                f"Command failed with exit code {result.returncode}: {' '.join(cmd[:3])}: "
                f"{result.stderr.strip()[-2000:]}"
            )
        return result
