"""Tests for resource graph construction."""

from __future__ import annotations

import pytest

from provisioner.config import StackConfig
from provisioner.graph import (
    CycleError,
    DependencyGraph,
    GraphBuilder,
    GraphError,
    UnresolvedReferenceError,
)
from provisioner.models import ConfigRef, OutputRef, ResourceSpec


def resource(name: str, depends_on: list[str] | None = None, **properties: object) -> ResourceSpec:
    return ResourceSpec(
        name=name,
        kind="test:Thing",
        properties={"name": name, **properties},
        depends_on=depends_on or [],
    )


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_add_node(self) -> None:
        """Test adding nodes."""
        graph = DependencyGraph()
        graph.add_node("cg", ["acr"])

        assert "cg" in graph.nodes
        assert "acr" in graph.nodes  # Auto-created
        assert graph.nodes["cg"].depends_on == ["acr"]

    def test_validate_detects_cycle(self) -> None:
        """Test validation names the cycle."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])

        with pytest.raises(CycleError, match="Circular dependency") as exc_info:
            graph.validate()

        assert exc_info.value.chain == ["a", "b", "c", "a"]

    def test_topological_sort(self) -> None:
        """Test dependencies come first."""
        graph = DependencyGraph()
        graph.add_node("cg", ["acr", "rg"])
        graph.add_node("acr", ["rg"])
        graph.add_node("rg", [])

        assert graph.topological_sort() == ["rg", "acr", "cg"]

    def test_topological_sort_deterministic(self) -> None:
        """Test independent nodes come out sorted."""
        graph = DependencyGraph()
        for name in ("zeta", "alpha", "mid"):
            graph.add_node(name)

        assert graph.topological_sort() == ["alpha", "mid", "zeta"]

    def test_get_ready(self) -> None:
        """Test the frontier contains nodes with satisfied dependencies only."""
        graph = DependencyGraph()
        graph.add_node("a")
        graph.add_node("b", ["a"])
        graph.add_node("c")

        assert graph.get_ready(set()) == ["a", "c"]
        assert graph.get_ready({"a"}) == ["b", "c"]

    def test_transitive_dependents(self) -> None:
        """Test indirect dependents are found."""
        graph = DependencyGraph()
        graph.add_node("b", ["a"])
        graph.add_node("c", ["b"])
        graph.add_node("d")

        assert graph.transitive_dependents("a") == {"b", "c"}


class TestGraphBuilder:
    """Tests for GraphBuilder."""

    def test_implicit_edges_from_references(self) -> None:
        """Test output references create dependency edges."""
        rg = resource("rg")
        acr = resource("acr", resourceGroupName=OutputRef(resource="rg", output="name"))

        graph = GraphBuilder().build([acr, rg])

        assert graph.dependencies("acr") == ["rg"]
        assert graph.topological_sort() == ["rg", "acr"]

    def test_explicit_and_implicit_union(self) -> None:
        """Test dependsOn and references are combined."""
        rg = resource("rg")
        acr = resource("acr")
        cg = resource("cg", depends_on=["acr"], group=OutputRef(resource="rg", output="name"))

        graph = GraphBuilder().build([rg, acr, cg])

        assert graph.dependencies("cg") == ["acr", "rg"]
        assert graph.dependents("rg") == ["cg"]

    def test_cycle_rejected(self) -> None:
        """Test cyclic declarations raise CycleError."""
        a = resource("a", x=OutputRef(resource="b", output="id"))
        b = resource("b", x=OutputRef(resource="a", output="id"))

        with pytest.raises(CycleError) as exc_info:
            GraphBuilder().build([a, b])

        assert exc_info.value.chain[0] == exc_info.value.chain[-1]

    def test_undeclared_reference(self) -> None:
        """Test references to undeclared resources are rejected."""
        acr = resource("acr", resourceGroupName=OutputRef(resource="rg", output="name"))

        with pytest.raises(UnresolvedReferenceError, match="undeclared resource 'rg'"):
            GraphBuilder().build([acr])

    def test_undeclared_depends_on(self) -> None:
        """Test explicit dependencies must be declared."""
        with pytest.raises(UnresolvedReferenceError, match="depends on"):
            GraphBuilder().build([resource("cg", depends_on=["acr"])])

    def test_self_reference(self) -> None:
        """Test a resource cannot reference itself."""
        a = resource("a", x=OutputRef(resource="a", output="id"))

        with pytest.raises(UnresolvedReferenceError, match="itself"):
            GraphBuilder().build([a])

    def test_duplicate_names(self) -> None:
        """Test logical names must be unique."""
        with pytest.raises(GraphError, match="Duplicate"):
            GraphBuilder().build([resource("a"), resource("a")])

    def test_config_substituted(self) -> None:
        """Test ConfigRef values are replaced by stack config values."""
        cg = resource("cg", port=ConfigRef(key="containerPort"))

        graph = GraphBuilder(StackConfig({"containerPort": 8080})).build([cg])

        assert graph.resources["cg"].properties["port"] == 8080

    def test_missing_config(self) -> None:
        """Test undefined config keys are rejected at build time."""
        cg = resource("cg", port=ConfigRef(key="containerPort"))

        with pytest.raises(UnresolvedReferenceError, match="containerPort"):
            GraphBuilder().build([cg])
