"""Desired-vs-stored comparison producing one typed change per resource.

Decision table for a declared resource:

    no record                          -> Create
    degraded record with id            -> Replace (unknown state)
    degraded record without id         -> Create
    record kind differs                -> Replace
    identity property differs          -> Replace
    other properties differ            -> Update
    nothing differs                    -> NoOp

Records without a declaration, and replaced instances still awaiting
deletion, become Delete changes.

Output references are resolved against stored outputs. A reference to a
resource that is being created or replaced is unknown until that apply
completes, and unknown always counts as a difference. A resource being
updated exposes its stored outputs with changed properties projected in.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .graph import ResourceGraph, UnresolvedReferenceError
from .models import (
    UNKNOWN,
    ConfigRef,
    OutputRef,
    PendingDelete,
    ResourceSpec,
    SecretRef,
    StateRecord,
    get_path,
    transform_references,
)
from .normalizer import DiffNormalizer, NormalizationType
from .providers import KindSchema, ProviderRegistry, SchemaError
from .security import SecretNotFoundError, SecretStore, redact_secret
from .state import StateStore

logger = logging.getLogger(__name__)


class ChangeType(str, Enum):
    """Kinds of change the planner knows how to execute."""

    CREATE = "Create"
    UPDATE = "Update"
    REPLACE = "Replace"
    DELETE = "Delete"
    NO_OP = "NoOp"


class ProtectedResourceError(Exception):
    """Raised when a change would delete or replace a protected resource."""

    pass


class UnresolvedOutputError(Exception):
    """Raised when a referenced output does not exist after its resource applied."""

    pass


@dataclass(frozen=True)
class PropertyDiff:
    """A single differing property path."""

    path: str
    before: Any
    after: Any


@dataclass
class Change:
    """The change computed for one resource in this run."""

    name: str
    change_type: ChangeType
    kind: str
    old: StateRecord | None = None
    desired: ResourceSpec | None = None
    diffs: list[PropertyDiff] = field(default_factory=list)
    replace_reasons: list[str] = field(default_factory=list)
    error: Exception | None = None

    # Set when this Delete removes an instance left behind by a replacement
    pending_delete: PendingDelete | None = None

    @property
    def key(self) -> str:
        """Unique key within a plan (a name can have a pending delete too)."""
        if self.pending_delete is not None:
            return f"{self.name}#{self.pending_delete.id}"
        return self.name

    @property
    def requires_action(self) -> bool:
        return self.change_type != ChangeType.NO_OP


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_unknown(v) for v in value)
    return False


def project_outputs(outputs: dict[str, Any], diffs: list[PropertyDiff]) -> dict[str, Any]:
    """Expected outputs of a resource after an Update.

    Outputs that echo a changed property take its desired value (possibly
    UNKNOWN). Computed outputs keep their last known value.
    """
    projected = copy.deepcopy(outputs)
    for diff in diffs:
        segments = diff.path.split(".")
        parent: Any = projected
        for segment in segments[:-1]:
            try:
                parent = get_path(parent, segment)
            except KeyError:
                parent = None
                break
        last = segments[-1]
        if isinstance(parent, dict) and last in parent:
            parent[last] = diff.after
        elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
            parent[int(last)] = diff.after
    return projected


def resolve_properties(
    value: Any,
    outputs_for: Callable[[str], dict[str, Any] | None],
    secret_store: SecretStore | None,
    *,
    redact: bool,
    strict: bool = False,
) -> Any:
    """Replace references with concrete values.

    Args:
        value: Property structure containing reference values.
        outputs_for: Returns the outputs of a resource, or None when unknown.
        secret_store: Source for SecretRef values.
        redact: Replace secret values with their digest marker.
        strict: Raise instead of yielding UNKNOWN for unavailable outputs.

    Raises:
        SecretNotFoundError: If a secret cannot be resolved.
        UnresolvedOutputError: In strict mode, if an output is unavailable.
    """

    def resolve(ref: Any) -> Any:
        if isinstance(ref, OutputRef):
            outputs = outputs_for(ref.resource)
            if outputs is None:
                if strict:
                    raise UnresolvedOutputError(f"Outputs of '{ref.resource}' are not available")
                return UNKNOWN
            try:
                return get_path(outputs, ref.output)
            except KeyError:
                if strict:
                    raise UnresolvedOutputError(
                        f"Resource '{ref.resource}' has no output '{ref.output}'"
                    ) from None
                return UNKNOWN
        if isinstance(ref, SecretRef):
            if secret_store is None:
                raise SecretNotFoundError(f"No secret store configured for secret '{ref.name}'")
            secret = secret_store.get_secret(ref.name)
            return redact_secret(secret) if redact else secret
        if isinstance(ref, ConfigRef):
            raise UnresolvedReferenceError(
                f"Configuration value '{ref.key}' was not substituted by the graph builder"
            )
        return ref

    return transform_references(value, resolve)


def _is_ignored(path: str, ignore_changes: list[str]) -> bool:
    return any(path == p or path.startswith(f"{p}.") for p in ignore_changes)


def diff_properties(
    kind: str,
    before: Any,
    after: Any,
    normalizer: DiffNormalizer,
    ignore_changes: list[str] | None = None,
    path: str = "",
) -> list[PropertyDiff]:
    """Compute leaf-level differences between stored and desired properties."""
    ignore = ignore_changes or []
    if path and _is_ignored(path, ignore):
        return []

    if not contains_unknown(after):
        norm_before = normalizer.normalize_value(before, kind, path) if path else before
        norm_after = normalizer.normalize_value(after, kind, path) if path else after
        if norm_before == norm_after:
            return []
    else:
        norm_before, norm_after = before, after

    if isinstance(norm_before, dict) and isinstance(norm_after, dict):
        diffs: list[PropertyDiff] = []
        for key in list(dict.fromkeys([*norm_after, *norm_before])):
            child = f"{path}.{key}" if path else str(key)
            diffs.extend(
                diff_properties(
                    kind,
                    norm_before.get(key),
                    norm_after.get(key),
                    normalizer,
                    ignore,
                    child,
                )
            )
        return diffs

    unordered = path and normalizer.has_rule(kind, path, NormalizationType.ARRAY_UNORDERED)
    if (
        isinstance(norm_before, list)
        and isinstance(norm_after, list)
        and len(norm_before) == len(norm_after)
        and not unordered
    ):
        diffs = []
        for index, (old_item, new_item) in enumerate(zip(norm_before, norm_after, strict=True)):
            diffs.extend(
                diff_properties(kind, old_item, new_item, normalizer, ignore, f"{path}.{index}")
            )
        return diffs

    return [PropertyDiff(path=path or "<root>", before=before, after=after)]


class Differ:
    """Compares desired declarations against stored state."""

    def __init__(
        self,
        registry: ProviderRegistry,
        normalizer: DiffNormalizer | None = None,
        secret_store: SecretStore | None = None,
    ) -> None:
        self._registry = registry
        self._normalizer = normalizer or DiffNormalizer()
        self._secret_store = secret_store

    @property
    def normalizer(self) -> DiffNormalizer:
        return self._normalizer

    def diff(self, graph: ResourceGraph, state: StateStore) -> list[Change]:
        """Compute changes for every declared and every recorded resource.

        Returns:
            Changes for declared resources in dependency order, followed by
            deletes sorted by name.
        """
        records = state.records()
        changes: dict[str, Change] = {}

        for name in graph.topological_sort():
            resource = graph.resources[name]
            change = self._diff_resource(resource, records.get(name), changes, records)
            changes[name] = change

        result = list(changes.values())

        for name in sorted(set(records) - set(graph.resources)):
            result.append(self._delete_change(records[name]))

        for pending in state.pending_deletes():
            result.append(self._pending_delete_change(pending))

        counts: dict[str, int] = {}
        for change in result:
            counts[change.change_type.value] = counts.get(change.change_type.value, 0) + 1
        logger.info(
            "Diff complete",
            extra={"change_counts": counts, "errors": sum(1 for c in result if c.error)},
        )
        return result

    def diff_destroy(self, state: StateStore) -> list[Change]:
        """Changes that remove every recorded resource."""
        changes = [self._delete_change(record) for _, record in sorted(state.records().items())]
        changes.extend(self._pending_delete_change(p) for p in state.pending_deletes())
        return changes

    def _diff_resource(
        self,
        resource: ResourceSpec,
        record: StateRecord | None,
        planned: dict[str, Change],
        records: dict[str, StateRecord],
    ) -> Change:
        name = resource.name
        fallback_type = ChangeType.CREATE if record is None else ChangeType.UPDATE

        try:
            schema = self._registry.validate(name, resource.kind, resource.properties)
        except SchemaError as e:
            logger.error("Schema error", extra={"resource": name, "error": str(e)})
            return Change(name, fallback_type, resource.kind, record, resource, error=e)

        if record is None or record.id is None:
            return Change(name, ChangeType.CREATE, resource.kind, record, resource)

        if record.degraded:
            if record.kind not in self._registry:
                # The old instance is deleted through the provider of the desired kind
                record = record.model_copy(update={"kind": resource.kind})
            return self._guard_protect(
                Change(
                    name,
                    ChangeType.REPLACE,
                    resource.kind,
                    record,
                    resource,
                    replace_reasons=["<unknown state>"],
                )
            )

        if record.kind != resource.kind:
            return self._guard_protect(
                Change(
                    name,
                    ChangeType.REPLACE,
                    resource.kind,
                    record,
                    resource,
                    replace_reasons=["<kind>"],
                )
            )

        def outputs_for(target: str) -> dict[str, Any] | None:
            target_change = planned.get(target)
            if target_change is not None and target_change.change_type in (
                ChangeType.CREATE,
                ChangeType.REPLACE,
            ):
                return None
            target_record = records.get(target)
            if target_record is None or target_record.degraded:
                return None
            if target_change is not None and target_change.change_type == ChangeType.UPDATE:
                return project_outputs(target_record.outputs, target_change.diffs)
            return target_record.outputs

        try:
            desired = resolve_properties(
                resource.properties, outputs_for, self._secret_store, redact=True
            )
        except SecretNotFoundError as e:
            logger.error("Secret unavailable", extra={"resource": name, "error": str(e)})
            return Change(name, fallback_type, resource.kind, record, resource, error=e)

        diffs = diff_properties(
            resource.kind,
            record.properties,
            desired,
            self._normalizer,
            resource.ignore_changes,
        )
        if not diffs:
            return Change(name, ChangeType.NO_OP, resource.kind, record, resource)

        replace_reasons = self._replace_reasons(schema, diffs)
        if replace_reasons:
            return self._guard_protect(
                Change(
                    name,
                    ChangeType.REPLACE,
                    resource.kind,
                    record,
                    resource,
                    diffs=diffs,
                    replace_reasons=replace_reasons,
                )
            )

        return Change(name, ChangeType.UPDATE, resource.kind, record, resource, diffs=diffs)

    def _replace_reasons(self, schema: KindSchema, diffs: list[PropertyDiff]) -> list[str]:
        return [d.path for d in diffs if schema.is_identity_path(d.path)]

    def _guard_protect(self, change: Change) -> Change:
        protected = (change.desired is not None and change.desired.protect) or (
            change.old is not None and change.old.protect
        )
        if protected and change.change_type in (ChangeType.REPLACE, ChangeType.DELETE):
            change.error = ProtectedResourceError(
                f"Resource '{change.name}' is protected; refusing {change.change_type.value}"
            )
        return change

    def _delete_change(self, record: StateRecord) -> Change:
        change = Change(record.name, ChangeType.DELETE, record.kind, old=record)
        if record.kind not in self._registry:
            change.error = SchemaError(
                f"Cannot delete '{record.name}': no provider registered for kind '{record.kind}'"
            )
            return change
        if record.id is None:
            # Nothing was ever created remotely; the delete only drops the record
            return change
        return self._guard_protect(change)

    def _pending_delete_change(self, pending: PendingDelete) -> Change:
        record = StateRecord(name=pending.name, kind=pending.kind, id=pending.id)
        change = Change(
            pending.name,
            ChangeType.DELETE,
            pending.kind,
            old=record,
            pending_delete=pending,
        )
        if pending.kind not in self._registry:
            change.error = SchemaError(
                f"Cannot delete replaced '{pending.name}': no provider for kind '{pending.kind}'"
            )
        return change
