"""Stack file loading with validation.

SECURITY: File operations enforce size limits, and stack files that embed
secret values literally are rejected at load time.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_STACK_FILE_SIZE_BYTES
from .models import StackSpec
from .security import SecretLiteralError, find_secret_literals

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when stack loading or validation fails."""

    pass


def parse_stack(raw_data: Any, source: str = "<stack>") -> StackSpec:
    """Validate already-parsed stack data.

    Supports both a flat document and a Kubernetes-style wrapper
    (``apiVersion`` / ``kind`` / ``metadata`` / ``spec``).

    Raises:
        SpecLoadError: If the data fails validation.
        SecretLiteralError: If a secret value is declared literally.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Stack file must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec", {})
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        stack = StackSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    offending: list[str] = []
    for resource in stack.resources:
        offending.extend(
            f"{resource.name}.{path}" for path in find_secret_literals(resource.properties)
        )
    offending.extend(f"config.{path}" for path in find_secret_literals(stack.config))
    if offending:
        raise SecretLiteralError(
            f"Secret values must not be declared literally in {source}; "
            f"use {{$secret: <name>}} instead. Offending properties: {offending}"
        )

    return stack


def load_stack(path: Path, config_overrides: dict[str, Any] | None = None) -> StackSpec:
    """Load and validate a stack file from YAML.

    Args:
        path: Stack file path.
        config_overrides: Values that replace entries of the ``config:`` section.

    Returns:
        Validated stack.

    Raises:
        SpecLoadError: If the stack cannot be loaded or fails validation.
        SecretLiteralError: If a secret value is declared literally.
    """
    if not path.exists():
        raise SpecLoadError(f"Stack file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat stack file {path}: {e}") from e

    if file_size > MAX_STACK_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Stack file exceeds maximum size of {MAX_STACK_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read stack file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if config_overrides and isinstance(raw_data, dict):
        target = raw_data.get("spec") if "apiVersion" in raw_data else raw_data
        if isinstance(target, dict):
            target["config"] = {**(target.get("config") or {}), **config_overrides}

    stack = parse_stack(raw_data, source=str(path))

    logger.info(
        "Loaded stack '%s' from %s",
        stack.name,
        path,
        extra={"resource_count": len(stack.resources)},
    )
    return stack

