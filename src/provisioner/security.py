"""Secret handling and secretless credential enforcement.

SECURITY INVARIANTS:
1. Secret values are never declared literally in a stack file; they are
   referenced with ``{$secret: <name>}`` and resolved from a secret store
   at apply time.
2. Secret values are never persisted; state and comparisons use a digest
   marker instead.
3. Azure calls authenticate with a managed identity only. Client secrets
   and passwords in the environment block startup.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Any, Protocol

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRET_ENV_PREFIX = "PROVISIONER_SECRET_"

# Property keys (or environment variable names) that must never carry literals
SECRET_KEY_PATTERN = re.compile(
    r"(password|passwd|secret|token|connection[_-]?string|secure[_-]?value"
    r"|(api|access|private|shared|storage|account|primary|secondary|master|signing"
    r"|encryption|subscription|auth)[_-]?key)$",
    re.IGNORECASE,
)

REDACTED_PREFIX = "secret:sha256:"

SECRETLESS_VIOLATION_MESSAGE = (
    "Detected {env_var} in the environment. This tool authenticates to Azure with a "
    "managed identity only; remove credential environment variables and grant the "
    "identity RBAC roles on the target scope instead."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment."""

    pass


class SecretLiteralError(Exception):
    """Raised when a stack file embeds a secret value literally."""

    pass


class SecretNotFoundError(Exception):
    """Raised when a referenced secret is not available in the secret store."""

    pass


class SecretStore(Protocol):
    """Source of secret values referenced by ``SecretRef``."""

    def get_secret(self, name: str) -> str:
        ...


class EnvironmentSecretStore:
    """Reads secrets from ``PROVISIONER_SECRET_<NAME>`` environment variables.

    The secret name is upper-cased and dashes/dots become underscores:
    ``weather-api-key`` is read from ``PROVISIONER_SECRET_WEATHER_API_KEY``.
    """

    def __init__(self, prefix: str = SECRET_ENV_PREFIX) -> None:
        self._prefix = prefix

    def env_var_for(self, name: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]", "_", name).upper()

    def get_secret(self, name: str) -> str:
        env_var = self.env_var_for(name)
        value = os.environ.get(env_var)
        if not value:
            raise SecretNotFoundError(f"Secret '{name}' not found (expected {env_var})")
        return value


class StaticSecretStore:
    """Secret store backed by a mapping (tests and local previews)."""

    def __init__(self, secrets: dict[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def get_secret(self, name: str) -> str:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(f"Secret '{name}' not found") from None


def redact_secret(value: str) -> str:
    """Digest marker that stands in for a secret value in state."""
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]
    return f"{REDACTED_PREFIX}{digest}"


def find_secret_literals(value: Any, path: str = "") -> list[str]:
    """Find property paths that declare a secret as a literal string.

    Catches both ``password: hunter2`` and name/value pairs such as
    ``{name: WEATHER_API_KEY, value: c1cd...}``.

    Returns:
        Dotted paths of offending values.
    """
    found: list[str] = []

    if isinstance(value, dict):
        pair_name = value.get("name")
        pair_is_secret = isinstance(pair_name, str) and bool(SECRET_KEY_PATTERN.search(pair_name))

        for key, item in value.items():
            child = f"{path}.{key}" if path else str(key)
            literal = isinstance(item, str) and item != ""
            if literal and SECRET_KEY_PATTERN.search(str(key)):
                found.append(child)
            elif literal and pair_is_secret and key == "value":
                found.append(child)
            else:
                found.extend(find_secret_literals(item, child))

    elif isinstance(value, list | tuple):
        for index, item in enumerate(value):
            child = f"{path}.{index}" if path else str(index)
            found.extend(find_secret_literals(item, child))

    return found


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
