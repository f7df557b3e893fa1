"""Plan construction: changes decomposed into ordered steps.

Each change becomes one or two steps:

    Create   -> create
    Update   -> update
    NoOp     -> noop (completes without a provider call)
    Replace  -> create_replacement, then delete_replaced
    Delete   -> delete

Step dependencies:
- A forward step (create, update, noop, create_replacement) waits for the
  forward step of every dependency of its resource.
- delete_replaced waits for its own create_replacement and for the forward
  step of every declared dependent, so dependents move to the new instance
  before the old one disappears.
- delete waits for the delete of every recorded dependent that is also
  going away, and for the forward step of every declared resource that
  recorded a dependency on it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from .differ import Change, ChangeType
from .graph import DependencyGraph, ResourceGraph

logger = logging.getLogger(__name__)


class PlanLimitError(Exception):
    """Raised when a plan exceeds the configured change limit."""

    pass


class StepAction(str, Enum):
    """What a step asks the provider to do."""

    CREATE = "create"
    UPDATE = "update"
    NOOP = "noop"
    CREATE_REPLACEMENT = "create_replacement"
    DELETE_REPLACED = "delete_replaced"
    DELETE = "delete"

    @property
    def is_forward(self) -> bool:
        return self in FORWARD_ACTIONS


FORWARD_ACTIONS = frozenset(
    {StepAction.CREATE, StepAction.UPDATE, StepAction.NOOP, StepAction.CREATE_REPLACEMENT}
)


@dataclass(frozen=True)
class Step:
    """One executable unit of a plan."""

    key: str
    action: StepAction
    change: Change

    @property
    def name(self) -> str:
        return self.change.name


@dataclass
class Plan:
    """Steps, their dependencies and the changes they came from."""

    changes: list[Change] = field(default_factory=list)
    steps: dict[str, Step] = field(default_factory=dict)
    graph: DependencyGraph = field(default_factory=DependencyGraph)

    # Declared dependencies per logical name, recorded into state on apply
    resource_dependencies: dict[str, list[str]] = field(default_factory=dict)

    def order(self) -> list[Step]:
        """Steps in a deterministic dependency-respecting order."""
        return [self.steps[key] for key in self.graph.topological_sort()]

    def dependencies_of(self, key: str) -> list[str]:
        return list(self.graph.nodes[key].depends_on)

    def transitive_dependents(self, key: str) -> set[str]:
        return self.graph.transitive_dependents(key)

    def steps_for(self, change: Change) -> list[Step]:
        return [step for step in self.steps.values() if step.change.key == change.key]

    def change_for(self, name: str) -> Change | None:
        for change in self.changes:
            if change.name == name and change.pending_delete is None:
                return change
        return None

    @property
    def has_changes(self) -> bool:
        return any(change.requires_action for change in self.changes)

    @property
    def errors(self) -> dict[str, Exception]:
        return {c.key: c.error for c in self.changes if c.error is not None}

    def summary(self) -> dict[str, int]:
        """Number of changes per change type."""
        counts = {change_type.value: 0 for change_type in ChangeType}
        for change in self.changes:
            counts[change.change_type.value] += 1
        return counts


def _step_key(change: Change, action: StepAction) -> str:
    return f"{change.key}/{action.value}"


class Planner:
    """Turns a list of changes into an executable Plan."""

    def __init__(self, max_changes: int | None = None) -> None:
        self._max_changes = max_changes

    def plan(self, changes: list[Change], resources: ResourceGraph | None = None) -> Plan:
        """Build the step graph.

        Args:
            changes: Output of the differ.
            resources: Declared resource graph (None for destroy).

        Raises:
            PlanLimitError: If more than ``max_changes`` changes need action.
            CycleError: If the step graph is cyclic.
        """
        actionable = sum(1 for change in changes if change.requires_action)
        if self._max_changes is not None and actionable > self._max_changes:
            raise PlanLimitError(
                f"Plan contains {actionable} changes, exceeding the limit of {self._max_changes}"
            )

        plan = Plan(changes=list(changes))
        forward: dict[str, str] = {}
        replaced: dict[str, str] = {}
        deletes: dict[str, str] = {}

        for change in changes:
            for action in self._actions_for(change):
                key = _step_key(change, action)
                plan.steps[key] = Step(key=key, action=action, change=change)
                plan.graph.add_node(key)
                if action.is_forward:
                    forward[change.name] = key
                elif action == StepAction.DELETE_REPLACED:
                    replaced[change.name] = key
                elif change.pending_delete is None:
                    deletes[change.name] = key

        if resources is not None:
            for name in resources.resources:
                plan.resource_dependencies[name] = resources.dependencies(name)

        # Forward steps follow declared dependencies
        for name, key in forward.items():
            for dep in plan.resource_dependencies.get(name, []):
                if dep in forward:
                    plan.graph.add_edge(key, forward[dep])

        # Old instances go only after dependents moved to the new ones
        for name, key in replaced.items():
            plan.graph.add_edge(key, forward[name])
            if resources is not None:
                for dependent in resources.dependents(name):
                    if dependent in forward:
                        plan.graph.add_edge(key, forward[dependent])

        for change in changes:
            if change.change_type != ChangeType.DELETE:
                continue
            key = _step_key(change, StepAction.DELETE)
            for other in changes:
                if other.old is None or change.name not in other.old.dependencies:
                    continue
                if other.name in deletes and other.pending_delete is None:
                    if deletes[other.name] != key:
                        plan.graph.add_edge(key, deletes[other.name])
                elif other.name in forward:
                    plan.graph.add_edge(key, forward[other.name])
            if change.pending_delete is not None and resources is not None:
                for dependent in resources.dependents(change.name):
                    if dependent in forward:
                        plan.graph.add_edge(key, forward[dependent])

        plan.graph.validate()

        logger.info(
            "Plan built",
            extra={"summary": plan.summary(), "step_count": len(plan.steps)},
        )
        return plan

    def _actions_for(self, change: Change) -> list[StepAction]:
        match change.change_type:
            case ChangeType.CREATE:
                return [StepAction.CREATE]
            case ChangeType.UPDATE:
                return [StepAction.UPDATE]
            case ChangeType.NO_OP:
                return [StepAction.NOOP]
            case ChangeType.REPLACE:
                return [StepAction.CREATE_REPLACEMENT, StepAction.DELETE_REPLACED]
            case ChangeType.DELETE:
                return [StepAction.DELETE]
        raise ValueError(f"Unhandled change type: {change.change_type}")
