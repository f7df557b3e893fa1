"""Plan execution with bounded concurrency.

The executor walks the plan's step graph frontier by frontier:
1. A step starts once every step it depends on has succeeded
2. Ready steps run concurrently; a semaphore bounds provider calls
3. Each provider call runs under a timeout
4. State is written as each resource completes, never at the end
5. A failed step skips every step that transitively depends on it

Cancellation is cooperative: once the cancel event is set no new step
starts, in-flight calls run to completion and their state is saved, and
every step that never started is reported as cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import DEFAULT_CONCURRENCY, DEFAULT_PROVIDER_TIMEOUT_SECONDS
from .differ import Change, diff_properties, resolve_properties
from .models import PendingDelete, StateRecord
from .normalizer import DiffNormalizer
from .planner import Plan, Step, StepAction
from .providers import ProviderRegistry
from .security import SecretStore
from .state import StateStore

logger = logging.getLogger(__name__)

EXIT_CODE_SUCCESS = 0
EXIT_CODE_FAILURE = 1
EXIT_CODE_CANCELLED = 130


class ReplacementRequiredError(Exception):
    """Raised when upstream outputs changed an identity property mid-run."""

    pass


class StepStatus(str, Enum):
    """Lifecycle of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class RunReport:
    """Outcome of executing a plan, per resource."""

    applied: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)

    # Stack outputs, resolved by the reconciler after a successful apply
    outputs: dict[str, Any] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped and not self.cancelled

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CODE_CANCELLED
        if self.failed or self.skipped:
            return EXIT_CODE_FAILURE
        return EXIT_CODE_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "outputs": self.outputs,
            "duration_seconds": round(self.duration_seconds, 3),
            "success": self.success,
        }


@dataclass
class _StepResult:
    changed: bool = True


class Executor:
    """Applies a Plan through registered providers."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state: StateStore,
        secret_store: SecretStore | None = None,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout_seconds: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        cancel_event: asyncio.Event | None = None,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        self._registry = registry
        self._state = state
        self._secret_store = secret_store
        self._concurrency = concurrency
        self._timeout_seconds = timeout_seconds
        self._cancel_event = cancel_event or asyncio.Event()
        self._normalizer = normalizer or DiffNormalizer()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    def cancel(self) -> None:
        """Stop starting new steps; in-flight steps finish."""
        if not self._cancel_event.is_set():
            logger.warning("Cancellation requested, no new steps will start")
        self._cancel_event.set()

    async def execute(self, plan: Plan) -> RunReport:
        """Execute every step of the plan.

        Returns:
            RunReport describing each resource's outcome.
        """
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self._concurrency)
        status: dict[str, StepStatus] = {key: StepStatus.PENDING for key in plan.steps}
        results: dict[str, _StepResult] = {}
        errors: dict[str, str] = {}
        outputs: dict[str, dict[str, Any]] = {}
        running: dict[asyncio.Task[_StepResult], str] = {}

        logger.info(
            "Executing plan",
            extra={"step_count": len(plan.steps), "concurrency": self._concurrency},
        )

        while True:
            if not self._cancel_event.is_set():
                for key in self._ready(plan, status):
                    status[key] = StepStatus.RUNNING
                    task = asyncio.create_task(
                        self._run_step(plan, plan.steps[key], outputs, semaphore),
                        name=key,
                    )
                    running[task] = key

            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                key = running.pop(task)
                error = task.exception()
                if error is None:
                    status[key] = StepStatus.SUCCEEDED
                    results[key] = task.result()
                    continue

                status[key] = StepStatus.FAILED
                errors[key] = f"{type(error).__name__}: {error}"
                logger.error(
                    "Step failed",
                    extra={"step": key, "error": errors[key]},
                )
                for dependent in sorted(plan.transitive_dependents(key)):
                    if status[dependent] == StepStatus.PENDING:
                        status[dependent] = StepStatus.SKIPPED
                        logger.warning(
                            "Step skipped after upstream failure",
                            extra={"step": dependent, "failed_step": key},
                        )

        for key, step_status in status.items():
            if step_status == StepStatus.PENDING:
                status[key] = StepStatus.CANCELLED

        report = self._build_report(plan, status, results, errors)
        report.duration_seconds = time.monotonic() - started

        logger.info(
            "Plan execution finished",
            extra={
                "applied": len(report.applied),
                "unchanged": len(report.unchanged),
                "failed": len(report.failed),
                "skipped": len(report.skipped),
                "cancelled": len(report.cancelled),
                "duration_seconds": report.duration_seconds,
            },
        )
        return report

    def _ready(self, plan: Plan, status: dict[str, StepStatus]) -> list[str]:
        satisfied = {key for key, s in status.items() if s == StepStatus.SUCCEEDED}
        return [
            key
            for key in plan.graph.get_ready(satisfied)
            if status[key] == StepStatus.PENDING
        ]

    def _build_report(
        self,
        plan: Plan,
        status: dict[str, StepStatus],
        results: dict[str, _StepResult],
        errors: dict[str, str],
    ) -> RunReport:
        report = RunReport()
        for change in plan.changes:
            keys = [step.key for step in plan.steps_for(change)]
            statuses = [status[key] for key in keys]
            if StepStatus.FAILED in statuses:
                report.failed[change.key] = next(errors[k] for k in keys if k in errors)
            elif StepStatus.CANCELLED in statuses:
                report.cancelled.append(change.key)
            elif StepStatus.SKIPPED in statuses:
                report.skipped.append(change.key)
            elif not any(results[k].changed for k in keys):
                report.unchanged.append(change.key)
            else:
                report.applied.append(change.key)
        return report

    # -------------------------------------------------------------------------
    # Step execution
    # -------------------------------------------------------------------------

    async def _run_step(
        self,
        plan: Plan,
        step: Step,
        outputs: dict[str, dict[str, Any]],
        semaphore: asyncio.Semaphore,
    ) -> _StepResult:
        change = step.change
        if change.error is not None:
            raise change.error

        logger.info(
            "Starting step",
            extra={"step": step.key, "resource": change.name, "action": step.action.value},
        )

        match step.action:
            case StepAction.CREATE | StepAction.CREATE_REPLACEMENT:
                result = await self._create(plan, step, outputs, semaphore)
            case StepAction.UPDATE | StepAction.NOOP:
                result = await self._reconcile_existing(plan, step, outputs, semaphore)
            case StepAction.DELETE_REPLACED:
                result = await self._delete_replaced(change, semaphore)
            case StepAction.DELETE:
                result = await self._delete(change, semaphore)

        logger.info(
            "Step complete",
            extra={"step": step.key, "resource": change.name, "changed": result.changed},
        )
        return result

    async def _call(self, semaphore: asyncio.Semaphore, coro: Any, operation: str) -> Any:
        """Run a provider coroutine under the concurrency limit and timeout."""
        async with semaphore:
            try:
                return await asyncio.wait_for(coro, timeout=self._timeout_seconds)
            except TimeoutError:
                logger.error(
                    f"{operation} timed out",
                    extra={"timeout_seconds": self._timeout_seconds},
                )
                raise TimeoutError(
                    f"{operation} timed out after {self._timeout_seconds}s"
                ) from None

    def _resolve(
        self, change: Change, outputs: dict[str, dict[str, Any]], *, redact: bool
    ) -> dict[str, Any]:
        assert change.desired is not None
        return resolve_properties(
            change.desired.properties,
            outputs.get,
            self._secret_store,
            redact=redact,
            strict=True,
        )

    def _record(
        self,
        plan: Plan,
        change: Change,
        resource_id: str,
        properties: dict[str, Any],
        resource_outputs: dict[str, Any],
    ) -> StateRecord:
        assert change.desired is not None
        return StateRecord(
            name=change.name,
            kind=change.kind,
            id=resource_id,
            properties=properties,
            outputs=resource_outputs,
            dependencies=plan.resource_dependencies.get(change.name, []),
            protect=change.desired.protect,
        )

    async def _create(
        self,
        plan: Plan,
        step: Step,
        outputs: dict[str, dict[str, Any]],
        semaphore: asyncio.Semaphore,
    ) -> _StepResult:
        change = step.change
        provider = self._registry.provider_for(change.kind)
        properties = self._resolve(change, outputs, redact=False)
        redacted = self._resolve(change, outputs, redact=True)

        resource_id, resource_outputs = await self._call(
            semaphore,
            provider.create(change.kind, properties),
            f"Create of '{change.name}'",
        )
        record = self._record(plan, change, resource_id, redacted, resource_outputs)

        old = change.old
        if step.action == StepAction.CREATE_REPLACEMENT and old is not None and old.id:
            replaced = PendingDelete(name=old.name, kind=old.kind, id=old.id)
            await self._state.put_replacement(record, replaced)
        else:
            await self._state.put(record)

        outputs[change.name] = resource_outputs
        return _StepResult(changed=True)

    async def _reconcile_existing(
        self,
        plan: Plan,
        step: Step,
        outputs: dict[str, dict[str, Any]],
        semaphore: asyncio.Semaphore,
    ) -> _StepResult:
        change = step.change
        old = change.old
        assert old is not None and old.id is not None and change.desired is not None

        redacted = self._resolve(change, outputs, redact=True)
        diffs = diff_properties(
            change.kind,
            old.properties,
            redacted,
            self._normalizer,
            change.desired.ignore_changes,
        )

        dependencies = plan.resource_dependencies.get(change.name, [])
        if not diffs:
            # Upstream outputs settled to what was last applied
            if dependencies != old.dependencies or change.desired.protect != old.protect:
                await self._state.put(
                    old.model_copy(
                        update={"dependencies": dependencies, "protect": change.desired.protect}
                    )
                )
            outputs[change.name] = dict(old.outputs)
            return _StepResult(changed=False)

        schema = self._registry.schema_for(change.kind)
        identity = [d.path for d in diffs if schema.is_identity_path(d.path)]
        if identity:
            raise ReplacementRequiredError(
                f"Resource '{change.name}' needs replacement after upstream changes to "
                f"{identity}; run again to replace it"
            )

        provider = self._registry.provider_for(change.kind)
        properties = self._resolve(change, outputs, redact=False)
        resource_outputs = await self._call(
            semaphore,
            provider.update(old.id, change.kind, properties),
            f"Update of '{change.name}'",
        )
        await self._state.put(self._record(plan, change, old.id, redacted, resource_outputs))
        outputs[change.name] = resource_outputs
        return _StepResult(changed=True)

    async def _delete_replaced(self, change: Change, semaphore: asyncio.Semaphore) -> _StepResult:
        old = change.old
        assert old is not None and old.id is not None
        provider = self._registry.provider_for(old.kind)
        await self._call(
            semaphore,
            provider.delete(old.id, old.kind),
            f"Delete of replaced '{change.name}'",
        )
        await self._state.remove_pending_delete(
            PendingDelete(name=old.name, kind=old.kind, id=old.id)
        )
        return _StepResult(changed=True)

    async def _delete(self, change: Change, semaphore: asyncio.Semaphore) -> _StepResult:
        old = change.old
        assert old is not None
        if old.id is not None:
            provider = self._registry.provider_for(old.kind)
            await self._call(
                semaphore,
                provider.delete(old.id, old.kind),
                f"Delete of '{change.name}'",
            )

        if change.pending_delete is not None:
            await self._state.remove_pending_delete(change.pending_delete)
        else:
            await self._state.remove(change.name)
        return _StepResult(changed=True)
