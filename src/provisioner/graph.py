"""Resource dependency graph construction and validation.

This module implements the graph builder:
1. Dependency graph construction from declared resources
2. Implicit edges from typed output references in properties
3. Topological sorting for apply order
4. Cycle detection naming the offending chain

EXAMPLE STACK:
```yaml
resources:
  - name: rg
    kind: azure:resources:ResourceGroup
  - name: acr
    kind: azure:containerregistry:Registry
    properties:
      resourceGroupName: {$ref: rg.name}     # implicit edge acr -> rg
  - name: cg
    kind: azure:containerinstance:ContainerGroup
    dependsOn: [acr]                         # explicit edge cg -> acr
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .config import ConfigurationError, StackConfig
from .models import ConfigRef, ResourceSpec, transform_references

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the resource graph cannot be built."""

    pass


class CycleError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(f"Circular dependency detected: {' -> '.join(chain)}")


class UnresolvedReferenceError(GraphError):
    """Raised when a declaration references something that does not exist."""

    pass


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    name: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph; edges point from a node to what it depends on."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    def add_node(self, name: str, depends_on: Iterable[str] | None = None) -> None:
        """Add a node to the dependency graph.

        Args:
            name: Node name.
            depends_on: Names this node depends on.
        """
        deps = list(dict.fromkeys(depends_on or []))
        if name in self.nodes:
            for dep in deps:
                if dep not in self.nodes[name].depends_on:
                    self.nodes[name].depends_on.append(dep)
        else:
            self.nodes[name] = DependencyNode(name=name, depends_on=deps)

        # Ensure all dependencies have nodes (even if not yet defined)
        for dep in deps:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(name=dep)

    def add_edge(self, node: str, depends_on: str) -> None:
        self.add_node(node, [depends_on])

    def edges(self) -> list[tuple[str, str]]:
        """All (from, to) pairs where ``from`` depends on ``to``."""
        return [(node.name, dep) for node in self.nodes.values() for dep in node.depends_on]

    def dependents(self, name: str) -> list[str]:
        """Nodes that depend directly on ``name``."""
        return sorted(n.name for n in self.nodes.values() if name in n.depends_on)

    def transitive_dependents(self, name: str) -> set[str]:
        """Every node that depends on ``name`` directly or indirectly."""
        reverse = self._reverse_edges()
        found: set[str] = set()
        stack = list(reverse.get(name, []))
        while stack:
            current = stack.pop()
            if current in found:
                continue
            found.add(current)
            stack.extend(reverse.get(current, []))
        return found

    def _reverse_edges(self) -> dict[str, list[str]]:
        reverse: dict[str, list[str]] = {name: [] for name in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                reverse.setdefault(dep, []).append(node.name)
        return reverse

    def validate(self) -> None:
        """Validate the dependency graph for cycles.

        Raises:
            CycleError: If a cycle is detected; ``chain`` names it in order.
        """
        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {name: len(node.depends_on) for name, node in self.nodes.items()}
        reverse = self._reverse_edges()
        queue = [name for name, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop()
            processed += 1
            for dependent in reverse[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            remaining = {name for name, degree in in_degree.items() if degree > 0}
            raise CycleError(self._find_cycle(remaining))

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Walk dependency edges inside ``candidates`` until a node repeats."""
        for start in sorted(candidates):
            path: list[str] = []
            on_path: dict[str, int] = {}
            current = start
            while current not in on_path:
                on_path[current] = len(path)
                path.append(current)
                # Every remaining node has at least one dependency that is also remaining
                next_nodes = sorted(d for d in self.nodes[current].depends_on if d in candidates)
                if not next_nodes:
                    break
                current = next_nodes[0]
            else:
                cycle = path[on_path[current]:]
                return [*cycle, current]
        return sorted(candidates)

    def topological_sort(self) -> list[str]:
        """Return node names in dependency order (dependencies first).

        Returns:
            List of names in execution order.

        Raises:
            CycleError: If a cycle is detected.
        """
        self.validate()

        in_degree: dict[str, int] = {name: len(node.depends_on) for name, node in self.nodes.items()}
        reverse = self._reverse_edges()

        result: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in reverse[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_ready(self, satisfied: set[str]) -> list[str]:
        """Get the frontier: nodes whose dependencies are all satisfied.

        Args:
            satisfied: Names already completed.

        Returns:
            Sorted names that can start now.
        """
        ready = []
        for node in self.nodes.values():
            if node.name in satisfied:
                continue
            if all(dep in satisfied for dep in node.depends_on):
                ready.append(node.name)
        return sorted(ready)


@dataclass
class ResourceGraph:
    """Declared resources with their dependency graph."""

    resources: dict[str, ResourceSpec]
    graph: DependencyGraph

    def __contains__(self, name: object) -> bool:
        return name in self.resources

    def dependencies(self, name: str) -> list[str]:
        return list(self.graph.nodes[name].depends_on)

    def dependents(self, name: str) -> list[str]:
        return self.graph.dependents(name)

    def topological_sort(self) -> list[str]:
        return self.graph.topological_sort()


class GraphBuilder:
    """Builds a validated ResourceGraph from declarations.

    Stack configuration is passed in at construction; ConfigRef values are
    substituted during build so the resulting graph only carries literals,
    output references, secret references and concatenations.
    """

    def __init__(self, stack_config: StackConfig | None = None) -> None:
        self._stack_config = stack_config or StackConfig()

    def build(self, resources: Iterable[ResourceSpec]) -> ResourceGraph:
        """Build the dependency graph.

        Args:
            resources: Declarations in declaration order.

        Returns:
            Validated ResourceGraph.

        Raises:
            GraphError: On duplicate logical names.
            UnresolvedReferenceError: On references to undeclared resources
                or undefined configuration keys.
            CycleError: If the declarations form a cycle.
        """
        declared: dict[str, ResourceSpec] = {}
        for resource in resources:
            if resource.name in declared:
                raise GraphError(f"Duplicate resource name: '{resource.name}'")
            declared[resource.name] = resource

        resolved: dict[str, ResourceSpec] = {}
        graph = DependencyGraph()

        for name, resource in declared.items():
            resource = self._substitute_config(resource)
            resolved[name] = resource

            implicit = resource.referenced_names()
            explicit = set(resource.depends_on)

            for dep in sorted(implicit | explicit):
                if dep == name:
                    raise UnresolvedReferenceError(f"Resource '{name}' cannot depend on itself")
                if dep not in declared:
                    source = "references" if dep in implicit else "depends on"
                    raise UnresolvedReferenceError(
                        f"Resource '{name}' {source} undeclared resource '{dep}'"
                    )

            # Keep explicit order first, then implicit edges sorted
            deps = list(resource.depends_on) + sorted(implicit - explicit)
            graph.add_node(name, deps)

        graph.validate()

        logger.info(
            "Resource graph built",
            extra={"resource_count": len(resolved), "edge_count": len(graph.edges())},
        )
        return ResourceGraph(resources=resolved, graph=graph)

    def resolve_config(self, value: Any, owner: str = "stack") -> Any:
        """Substitute ConfigRef values in an arbitrary property structure."""

        def substitute(ref: Any) -> Any:
            if not isinstance(ref, ConfigRef):
                return ref
            try:
                return self._stack_config.require(ref.key)
            except ConfigurationError as e:
                raise UnresolvedReferenceError(
                    f"'{owner}' references undefined configuration value '{ref.key}'"
                ) from e

        return transform_references(value, substitute)

    def _substitute_config(self, resource: ResourceSpec) -> ResourceSpec:
        properties = self.resolve_config(resource.properties, owner=resource.name)
        return resource.model_copy(update={"properties": properties})
