"""Tests for desired-vs-stored diffing."""

from __future__ import annotations

from typing import Any

import pytest
from conftest import TEST_KIND

from provisioner.differ import (
    ChangeType,
    Differ,
    ProtectedResourceError,
    UnresolvedOutputError,
    diff_properties,
    resolve_properties,
)
from provisioner.graph import GraphBuilder
from provisioner.models import (
    UNKNOWN,
    Concat,
    OutputRef,
    PendingDelete,
    ResourceSpec,
    SecretRef,
    StateRecord,
)
from provisioner.normalizer import DiffNormalizer
from provisioner.providers import KindSchema, ProviderRegistry, SchemaError
from provisioner.security import SecretNotFoundError, StaticSecretStore, redact_secret
from provisioner.state import StateStore

ZONED_KIND = "test:Zoned"


def spec(name: str, **kwargs: Any) -> ResourceSpec:
    properties = {"name": name, **kwargs.pop("properties", {})}
    return ResourceSpec(name=name, kind=kwargs.pop("kind", TEST_KIND), properties=properties, **kwargs)


def stored(name: str, properties: dict[str, Any] | None = None, **kwargs: Any) -> StateRecord:
    return StateRecord(
        name=name,
        kind=kwargs.pop("kind", TEST_KIND),
        id=kwargs.pop("id", f"mem://{name}"),
        properties={"name": name, **(properties or {})},
        outputs=kwargs.pop("outputs", {"name": name, "id": f"mem://{name}"}),
        **kwargs,
    )


async def state_with(*records: StateRecord, pending: list[PendingDelete] | None = None) -> StateStore:
    store = StateStore()
    for record in records:
        await store.put(record)
    for entry in pending or []:
        await store.add_pending_delete(entry)
    return store


def changes_by_name(changes: list) -> dict[str, Any]:
    return {change.key: change for change in changes}


class TestResolveProperties:
    """Tests for reference resolution."""

    def test_output_and_concat(self) -> None:
        """Test outputs resolve and concatenations join."""
        value = {"image": Concat(parts=(OutputRef(resource="acr", output="loginServer"), "/app"))}
        result = resolve_properties(
            value, {"acr": {"loginServer": "demo.azurecr.io"}}.get, None, redact=False
        )
        assert result == {"image": "demo.azurecr.io/app"}

    def test_unavailable_output_is_unknown(self) -> None:
        """Test unavailable outputs resolve to UNKNOWN when not strict."""
        value = {"group": OutputRef(resource="rg", output="name")}
        assert resolve_properties(value, {}.get, None, redact=False)["group"] is UNKNOWN

    def test_strict_missing_output(self) -> None:
        """Test strict mode raises for an output the resource never published."""
        value = {"group": OutputRef(resource="rg", output="missing")}
        with pytest.raises(UnresolvedOutputError, match="no output 'missing'"):
            resolve_properties(value, {"rg": {"name": "x"}}.get, None, redact=False, strict=True)

    def test_secret_redaction(self) -> None:
        """Test secrets resolve to their value or digest marker."""
        store = StaticSecretStore({"api-key": "s3cr3t"})
        value = {"key": SecretRef(name="api-key")}

        assert resolve_properties(value, {}.get, store, redact=False) == {"key": "s3cr3t"}
        redacted = resolve_properties(value, {}.get, store, redact=True)
        assert redacted == {"key": redact_secret("s3cr3t")}
        assert "s3cr3t" not in redacted["key"]

    def test_missing_secret(self) -> None:
        """Test a missing secret raises."""
        with pytest.raises(SecretNotFoundError):
            resolve_properties({"k": SecretRef(name="x")}, {}.get, StaticSecretStore(), redact=True)


class TestDiffProperties:
    """Tests for the recursive property diff."""

    def test_nested_paths(self) -> None:
        """Test leaf differences are reported with dotted paths."""
        before = {"sku": {"name": "Basic"}, "ports": [{"port": 80}]}
        after = {"sku": {"name": "Premium"}, "ports": [{"port": 8080}]}

        diffs = diff_properties(TEST_KIND, before, after, DiffNormalizer())

        assert sorted(d.path for d in diffs) == ["ports.0.port", "sku.name"]

    def test_normalized_equal(self) -> None:
        """Test normalization suppresses semantic non-changes."""
        before = {"location": "westeurope", "tags": {}}
        after = {"location": "WestEurope"}

        diffs = diff_properties("azure:resources:ResourceGroup", before, after, DiffNormalizer())

        assert diffs == []

    def test_unknown_always_differs(self) -> None:
        """Test an unknown value is a difference even against anything."""
        diffs = diff_properties(TEST_KIND, {"group": "rg1"}, {"group": UNKNOWN}, DiffNormalizer())
        assert [d.path for d in diffs] == ["group"]

    def test_ignore_changes(self) -> None:
        """Test ignored paths and their children are excluded."""
        before = {"tags": {"a": "1"}, "sku": {"name": "Basic"}}
        after = {"tags": {"a": "2"}, "sku": {"name": "Premium"}}

        diffs = diff_properties(TEST_KIND, before, after, DiffNormalizer(), ["tags", "sku.name"])

        assert diffs == []


class TestDiffer:
    """Tests for change classification."""

    @pytest.mark.asyncio
    async def test_create_when_no_record(self, registry: ProviderRegistry) -> None:
        """Test undeclared-in-state resources are created."""
        graph = GraphBuilder().build([spec("a")])

        changes = Differ(registry).diff(graph, await state_with())

        assert [c.change_type for c in changes] == [ChangeType.CREATE]

    @pytest.mark.asyncio
    async def test_noop_when_equal(self, registry: ProviderRegistry) -> None:
        """Test identical properties produce NoOp."""
        graph = GraphBuilder().build([spec("a", properties={"size": 1})])
        state = await state_with(stored("a", {"size": 1}))

        changes = Differ(registry).diff(graph, state)

        assert changes[0].change_type == ChangeType.NO_OP
        assert not changes[0].requires_action

    @pytest.mark.asyncio
    async def test_update_when_mutable_property_differs(self, registry: ProviderRegistry) -> None:
        """Test non-identity differences produce Update."""
        graph = GraphBuilder().build([spec("a", properties={"size": 2})])
        state = await state_with(stored("a", {"size": 1}))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.UPDATE
        assert [d.path for d in change.diffs] == ["size"]

    @pytest.mark.asyncio
    async def test_replace_when_identity_differs(self, registry: ProviderRegistry) -> None:
        """Test identity property differences produce Replace."""
        graph = GraphBuilder().build(
            [ResourceSpec(name="a", kind=TEST_KIND, properties={"name": "renamed"})]
        )
        state = await state_with(stored("a"))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.REPLACE
        assert change.replace_reasons == ["name"]

    @pytest.mark.asyncio
    async def test_replace_when_kind_changes(self, registry: ProviderRegistry) -> None:
        """Test a different kind for the same name produces Replace."""
        graph = GraphBuilder().build(
            [spec("a", kind="azure:resources:ResourceGroup", properties={"location": "x"})]
        )
        state = await state_with(stored("a"))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.REPLACE
        assert change.replace_reasons == ["<kind>"]

    @pytest.mark.asyncio
    async def test_degraded_record_replaced(self, registry: ProviderRegistry) -> None:
        """Test a record with unknown properties is conservatively replaced."""
        graph = GraphBuilder().build([spec("a")])
        state = await state_with(
            StateRecord(name="a", kind=TEST_KIND, id="mem://a", properties=None)
        )

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.REPLACE
        assert change.replace_reasons == ["<unknown state>"]

    @pytest.mark.asyncio
    async def test_degraded_record_without_id_created(self, registry: ProviderRegistry) -> None:
        """Test a record that never got an id is created."""
        graph = GraphBuilder().build([spec("a")])
        state = await state_with(StateRecord(name="a", kind=TEST_KIND, properties=None))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.CREATE

    @pytest.mark.asyncio
    async def test_delete_for_undeclared_record(self, registry: ProviderRegistry) -> None:
        """Test recorded resources without a declaration are deleted."""
        graph = GraphBuilder().build([spec("a")])
        state = await state_with(stored("a"), stored("old"))

        changes = changes_by_name(Differ(registry).diff(graph, state))

        assert changes["old"].change_type == ChangeType.DELETE
        assert changes["old"].old.id == "mem://old"

    @pytest.mark.asyncio
    async def test_pending_delete_change(self, registry: ProviderRegistry) -> None:
        """Test replaced instances awaiting deletion become Delete changes."""
        graph = GraphBuilder().build([spec("a")])
        pending = PendingDelete(name="a", kind=TEST_KIND, id="mem://a-old")
        state = await state_with(stored("a"), pending=[pending])

        changes = changes_by_name(Differ(registry).diff(graph, state))

        assert changes["a"].change_type == ChangeType.NO_OP
        assert changes["a#mem://a-old"].change_type == ChangeType.DELETE
        assert changes["a#mem://a-old"].pending_delete == pending

    @pytest.mark.asyncio
    async def test_reference_to_created_resource_is_unknown(
        self, registry: ProviderRegistry
    ) -> None:
        """Test a dependent of a resource being created must change."""
        b = spec("b")
        a = spec("a", properties={"target": OutputRef(resource="b", output="id")})
        graph = GraphBuilder().build([a, b])
        # a exists, b does not
        state = await state_with(stored("a", {"target": "mem://old-b"}))

        changes = changes_by_name(Differ(registry).diff(graph, state))

        assert changes["b"].change_type == ChangeType.CREATE
        assert changes["a"].change_type == ChangeType.UPDATE
        assert changes["a"].diffs[0].after is UNKNOWN

    @pytest.mark.asyncio
    async def test_reference_resolved_from_state(self, registry: ProviderRegistry) -> None:
        """Test references resolve from stored outputs of unchanged resources."""
        b = spec("b")
        a = spec("a", properties={"target": OutputRef(resource="b", output="id")})
        graph = GraphBuilder().build([a, b])
        state = await state_with(stored("b"), stored("a", {"target": "mem://b"}))

        changes = changes_by_name(Differ(registry).diff(graph, state))

        assert changes["a"].change_type == ChangeType.NO_OP
        assert changes["b"].change_type == ChangeType.NO_OP

    @pytest.mark.asyncio
    async def test_reference_to_updated_resource_is_projected(
        self, registry: ProviderRegistry
    ) -> None:
        """Test dependents see the new value of a property their upstream updates."""
        registry.register(
            KindSchema(
                kind=ZONED_KIND, identity_properties=("name", "zone"), required_properties=("name",)
            ),
            registry.provider_for(TEST_KIND),
        )
        a = spec("a", properties={"tier": "2"})
        b = spec("b", kind=ZONED_KIND, properties={"zone": OutputRef(resource="a", output="tier")})
        c = spec("c", properties={"aName": OutputRef(resource="a", output="name")})
        graph = GraphBuilder().build([a, b, c])
        state = await state_with(
            stored("a", {"tier": "1"}, outputs={"name": "a", "tier": "1", "id": "mem://a"}),
            stored("b", {"zone": "1"}, kind=ZONED_KIND),
            stored("c", {"aName": "a"}),
        )

        changes = changes_by_name(Differ(registry).diff(graph, state))

        assert changes["a"].change_type == ChangeType.UPDATE
        assert changes["b"].change_type == ChangeType.REPLACE
        assert changes["b"].replace_reasons == ["zone"]
        # Outputs the update does not touch keep their stored values
        assert changes["c"].change_type == ChangeType.NO_OP

    @pytest.mark.asyncio
    async def test_degraded_record_without_kind_replaced_as_desired_kind(
        self, registry: ProviderRegistry
    ) -> None:
        """Test a record that lost its kind is replaced through the declared kind."""
        graph = GraphBuilder().build([spec("a")])
        state = await state_with(
            StateRecord(name="a", kind="unknown", id="mem://a", properties=None)
        )

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.REPLACE
        assert change.old is not None
        assert change.old.kind == TEST_KIND
        assert change.old.id == "mem://a"

    @pytest.mark.asyncio
    async def test_unknown_kind_is_schema_error(self, registry: ProviderRegistry) -> None:
        """Test unregistered kinds attach a SchemaError."""
        graph = GraphBuilder().build([spec("a", kind="aws:s3:Bucket")])

        change = Differ(registry).diff(graph, await state_with())[0]

        assert isinstance(change.error, SchemaError)

    @pytest.mark.asyncio
    async def test_missing_required_property(self, registry: ProviderRegistry) -> None:
        """Test missing required properties attach a SchemaError."""
        graph = GraphBuilder().build(
            [ResourceSpec(name="acr", kind="azure:containerregistry:Registry", properties={"name": "x"})]
        )

        change = Differ(registry).diff(graph, await state_with())[0]

        assert isinstance(change.error, SchemaError)
        assert "resourceGroupName" in str(change.error)

    @pytest.mark.asyncio
    async def test_protected_replace_refused(self, registry: ProviderRegistry) -> None:
        """Test protected resources cannot be replaced."""
        graph = GraphBuilder().build(
            [ResourceSpec(name="a", kind=TEST_KIND, properties={"name": "renamed"}, protect=True)]
        )
        state = await state_with(stored("a"))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.REPLACE
        assert isinstance(change.error, ProtectedResourceError)

    @pytest.mark.asyncio
    async def test_protected_delete_refused(self, registry: ProviderRegistry) -> None:
        """Test recorded protection blocks deletion after removal from the stack."""
        graph = GraphBuilder().build([])
        state = await state_with(stored("a", protect=True))

        change = Differ(registry).diff(graph, state)[0]

        assert change.change_type == ChangeType.DELETE
        assert isinstance(change.error, ProtectedResourceError)

    @pytest.mark.asyncio
    async def test_secret_unchanged_is_noop(self, registry: ProviderRegistry) -> None:
        """Test secrets compare by digest: same value NoOp, rotated value Update."""
        graph = GraphBuilder().build([spec("a", properties={"key": SecretRef(name="k")})])
        state = await state_with(stored("a", {"key": redact_secret("v1")}))

        same = Differ(registry, secret_store=StaticSecretStore({"k": "v1"})).diff(graph, state)
        rotated = Differ(registry, secret_store=StaticSecretStore({"k": "v2"})).diff(graph, state)

        assert same[0].change_type == ChangeType.NO_OP
        assert rotated[0].change_type == ChangeType.UPDATE
        assert "v2" not in repr(rotated[0].diffs)

    @pytest.mark.asyncio
    async def test_missing_secret_is_error(self, registry: ProviderRegistry) -> None:
        """Test an unavailable secret fails the change, not the diff."""
        graph = GraphBuilder().build([spec("a", properties={"key": SecretRef(name="k")})])
        state = await state_with(stored("a", {"key": "x"}))

        change = Differ(registry, secret_store=StaticSecretStore()).diff(graph, state)[0]

        assert isinstance(change.error, SecretNotFoundError)

    @pytest.mark.asyncio
    async def test_diff_destroy(self, registry: ProviderRegistry) -> None:
        """Test destroy produces a Delete for every record."""
        state = await state_with(stored("a"), stored("b"))

        changes = Differ(registry).diff_destroy(state)

        assert [(c.name, c.change_type) for c in changes] == [
            ("a", ChangeType.DELETE),
            ("b", ChangeType.DELETE),
        ]
