"""Configuration management with validation.

Two layers of configuration exist:

- ``Config``: how the engine runs (state location, concurrency, timeouts,
  mode). Loaded from environment variables and validated at load time.
- ``StackConfig``: typed values declared in the stack file ``config:``
  section. Passed explicitly into the graph builder; never process-wide.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class ReconciliationMode(str, Enum):
    """What the reconciler does with detected drift."""

    OBSERVE = "observe"  # Plan and report only
    ENFORCE = "enforce"  # Apply the plan


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_CONCURRENCY = 4
MIN_CONCURRENCY = 1
MAX_CONCURRENCY = 64

DEFAULT_PROVIDER_TIMEOUT_SECONDS = 1800
MAX_PROVIDER_TIMEOUT_SECONDS = 7200

DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 60
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CHANGES = 100

MAX_PROVIDER_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 5

# File limits
MAX_STACK_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file
MAX_STATE_FILE_SIZE_BYTES = 50 * 1024 * 1024  # 50MB max state document

# Input validation patterns
VALID_LOGICAL_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]{0,79}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_CONFIG_KEY_PATTERN = r"^[A-Za-z][A-Za-z0-9_.-]*$"


@dataclass(frozen=True)
class Config:
    """Engine configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    stack_file: Path
    state_file: Path = field(default_factory=lambda: Path("provisioner-state.json"))

    mode: ReconciliationMode = ReconciliationMode.ENFORCE
    concurrency: int = DEFAULT_CONCURRENCY
    provider_timeout_seconds: int = DEFAULT_PROVIDER_TIMEOUT_SECONDS
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS

    # Upper bound on non-NoOp changes in a single plan
    max_changes: int = DEFAULT_MAX_CHANGES

    dry_run: bool = False

    # Azure provider settings (optional, only needed for azure:* kinds)
    subscription_id: str | None = None
    location: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not str(self.stack_file):
            errors.append("PROVISIONER_STACK_FILE is required")
        elif not self.stack_file.exists():
            errors.append(f"Stack file does not exist: {self.stack_file}")

        if self.state_file.exists() and self.state_file.is_dir():
            errors.append(f"State file path is a directory: {self.state_file}")

        if not MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY:
            errors.append(
                f"PROVISIONER_CONCURRENCY must be between {MIN_CONCURRENCY} "
                f"and {MAX_CONCURRENCY}"
            )

        if not 1 <= self.provider_timeout_seconds <= MAX_PROVIDER_TIMEOUT_SECONDS:
            errors.append(
                f"PROVISIONER_PROVIDER_TIMEOUT must be between 1 "
                f"and {MAX_PROVIDER_TIMEOUT_SECONDS} seconds"
            )

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"PROVISIONER_RECONCILE_INTERVAL must be between "
                f"{MIN_RECONCILE_INTERVAL_SECONDS} and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if self.max_changes < 1:
            errors.append("PROVISIONER_MAX_CHANGES must be at least 1")

        if self.subscription_id and not re.match(
            VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()
        ):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if self.location and not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, **overrides: Any) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            PROVISIONER_STACK_FILE: Path to the stack YAML (default: stack.yaml)
            PROVISIONER_STATE_FILE: Path to the state document
                (default: provisioner-state.json)
            PROVISIONER_MODE: observe or enforce (default: enforce)
            PROVISIONER_CONCURRENCY: Max in-flight provider calls (default: 4)
            PROVISIONER_PROVIDER_TIMEOUT: Per provider call timeout in seconds
                (default: 1800)
            PROVISIONER_RECONCILE_INTERVAL: Seconds between watch cycles (default: 300)
            PROVISIONER_MAX_CHANGES: Max non-NoOp changes per plan (default: 100)
            PROVISIONER_DRY_RUN: If "true", plan only (default: false)
            AZURE_SUBSCRIPTION_ID: Target subscription for azure:* kinds
            AZURE_LOCATION: Default location for azure:* kinds

        Keyword overrides (e.g. from CLI flags) take precedence over the
        environment when not None.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_mode(value: str | None) -> ReconciliationMode:
            if not value:
                return ReconciliationMode.ENFORCE
            try:
                return ReconciliationMode(value.lower())
            except ValueError as e:
                valid = [m.value for m in ReconciliationMode]
                raise ConfigurationError(f"PROVISIONER_MODE must be one of {valid}: {value}") from e

        values: dict[str, Any] = {
            "stack_file": Path(os.environ.get("PROVISIONER_STACK_FILE", "stack.yaml")),
            "state_file": Path(
                os.environ.get("PROVISIONER_STATE_FILE", "provisioner-state.json")
            ),
            "mode": get_mode(os.environ.get("PROVISIONER_MODE")),
            "concurrency": get_int("PROVISIONER_CONCURRENCY", DEFAULT_CONCURRENCY),
            "provider_timeout_seconds": get_int(
                "PROVISIONER_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT_SECONDS
            ),
            "reconcile_interval_seconds": get_int(
                "PROVISIONER_RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            "max_changes": get_int("PROVISIONER_MAX_CHANGES", DEFAULT_MAX_CHANGES),
            "dry_run": get_bool("PROVISIONER_DRY_RUN", False),
            "subscription_id": os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            "location": os.environ.get("AZURE_LOCATION") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class StackConfig:
    """Typed accessor over the stack file ``config:`` section.

    Replaces flat global config values: the graph builder receives an
    instance at construction and resolves ``ConfigRef`` values against it.
    """

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        values = dict(values or {})
        invalid = [k for k in values if not re.match(VALID_CONFIG_KEY_PATTERN, str(k))]
        if invalid:
            raise ConfigurationError(f"Invalid stack config keys: {sorted(invalid)}")
        self._values = values

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def __len__(self) -> int:
        return len(self._values)

    def keys(self) -> list[str]:
        return sorted(self._values)

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def require(self, key: str) -> Any:
        """Return a config value, raising if it is not defined."""
        if key not in self._values:
            raise ConfigurationError(f"Missing required stack configuration value: '{key}'")
        return self._values[key]

    def require_int(self, key: str) -> int:
        value = self.require(key)
        if isinstance(value, bool):
            raise ConfigurationError(f"Stack configuration '{key}' must be an integer: {value}")
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Stack configuration '{key}' must be an integer: {value}"
            ) from e

    def require_float(self, key: str) -> float:
        value = self.require(key)
        if isinstance(value, bool):
            raise ConfigurationError(f"Stack configuration '{key}' must be a number: {value}")
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Stack configuration '{key}' must be a number: {value}"
            ) from e

    def as_dict(self) -> dict[str, Any]:
        return dict(self._values)
