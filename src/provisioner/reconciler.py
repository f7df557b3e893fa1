"""Run orchestration and the watch loop.

A run walks the pipeline once:
1. Load the stack file and build the resource graph
2. Load last-applied state
3. Diff desired against stored state
4. Plan steps and their ordering
5. Execute (enforce mode) or only report drift (observe mode)
6. Resolve the stack's exported outputs

``run()`` repeats this on an interval until ``shutdown()``. A circuit
breaker pauses reconciliation after repeated failures so a broken stack
or provider cannot hammer the cloud API.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .azure_provider import AZURE_KIND_SCHEMAS, AzureResourceProvider
from .config import Config, ConfigurationError, ReconciliationMode, StackConfig
from .differ import Change, Differ, UnresolvedOutputError, resolve_properties
from .docker_provider import DOCKER_KIND_SCHEMAS, DockerImageProvider
from .executor import Executor, RunReport
from .graph import GraphBuilder, ResourceGraph
from .memory_provider import InMemoryProvider
from .models import StackSpec
from .normalizer import NormalizationConfig
from .planner import Plan, Planner
from .provenance import ChangeProvenanceSummary, RunProvenance, get_provenance_logger
from .providers import ProviderRegistry
from .security import EnvironmentSecretStore, SecretStore, get_managed_identity_credential
from .spec_loader import load_stack
from .state import StateStore

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes

PROVIDER_CHOICES = ("azure", "memory")


def build_registry(config: Config, provider: str = "azure") -> ProviderRegistry:
    """Register the shipped providers for every shipped kind.

    Args:
        config: Engine configuration (subscription and default location).
        provider: "azure" for real clouds, "memory" for local simulation.

    Raises:
        ConfigurationError: If the Azure provider lacks a subscription.
        SecretlessViolationError: If credential secrets are in the environment.
    """
    registry = ProviderRegistry()

    if provider == "memory":
        memory = InMemoryProvider()
        registry.register_all(AZURE_KIND_SCHEMAS, memory)
        registry.register_all(DOCKER_KIND_SCHEMAS, memory)
        return registry

    if provider != "azure":
        raise ConfigurationError(f"Unknown provider '{provider}', expected one of {PROVIDER_CHOICES}")

    if not config.subscription_id:
        raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the azure provider")

    # SECURITY: Secretless architecture - always use managed identity
    credential = get_managed_identity_credential(os.environ.get("AZURE_CLIENT_ID") or None)
    registry.register_all(
        AZURE_KIND_SCHEMAS,
        AzureResourceProvider(
            credential=credential,
            subscription_id=config.subscription_id,
            default_location=config.location,
        ),
    )
    registry.register_all(DOCKER_KIND_SCHEMAS, DockerImageProvider())
    return registry


@dataclass
class ReconcileResult:
    """Result of a single watch-loop cycle."""

    mode: ReconciliationMode = ReconciliationMode.ENFORCE
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    drift_found: bool = False
    plan: Plan | None = None
    report: RunReport | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the cycle succeeded."""
        if self.error is not None:
            return False
        return self.report is None or self.report.success


class Reconciler:
    """Drives preview, apply and destroy for one stack.

    SECURITY: Provider credentials are owned by the registry; the
    reconciler never sees them. Secrets flow from the secret store to
    providers and are redacted in state and logs.
    """

    def __init__(
        self,
        config: Config,
        registry: ProviderRegistry,
        secret_store: SecretStore | None = None,
        state: StateStore | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._secret_store = secret_store if secret_store is not None else EnvironmentSecretStore()
        self._state = state if state is not None else StateStore(config.state_file)
        self._normalizer = NormalizationConfig.from_env().build()
        self._differ = Differ(registry, self._normalizer, self._secret_store)

        # Shared with the executor as its cancellation event
        self._shutdown_event = asyncio.Event()

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def state(self) -> StateStore:
        return self._state

    # -------------------------------------------------------------------------
    # Single runs
    # -------------------------------------------------------------------------

    def load(self) -> tuple[StackSpec, ResourceGraph]:
        """Load the stack file and build its resource graph.

        Raises:
            SpecLoadError: If the stack file is invalid.
            GraphError: If the declarations do not form a valid graph.
        """
        stack = load_stack(self._config.stack_file)
        graph = GraphBuilder(StackConfig(stack.config)).build(stack.resources)
        return stack, graph

    def preview(self) -> Plan:
        """Compute the plan without touching any resource.

        Raises:
            PlanLimitError: If the plan exceeds ``max_changes``.
        """
        stack, graph = self.load()
        self._state.load()
        plan = self._plan(graph)

        provenance = self._start_provenance(stack, "preview")
        self._finish_provenance(provenance, plan, None)
        return plan

    async def apply(self) -> RunReport:
        """Apply the stack and return per-resource outcomes."""
        stack, graph = self.load()
        self._state.load()
        plan = self._plan(graph)

        provenance = self._start_provenance(stack, "apply")
        report = await self._executor().execute(plan)
        if report.success:
            report.outputs = self.resolve_outputs(stack)
        self._finish_provenance(provenance, plan, report)
        return report

    async def destroy(self) -> RunReport:
        """Delete every resource recorded in state, dependents first."""
        stack = load_stack(self._config.stack_file)
        self._state.load()
        changes = self._differ.diff_destroy(self._state)
        plan = Planner().plan(changes)

        provenance = self._start_provenance(stack, "destroy")
        report = await self._executor().execute(plan)
        self._finish_provenance(provenance, plan, report)
        return report

    def outputs(self) -> dict[str, Any]:
        """Resolve the stack's exported outputs from current state."""
        stack = load_stack(self._config.stack_file)
        self._state.load()
        return self.resolve_outputs(stack)

    def resolve_outputs(self, stack: StackSpec) -> dict[str, Any]:
        """Resolve ``outputs:`` values; unavailable ones resolve to None."""
        builder = GraphBuilder(StackConfig(stack.config))
        resolved: dict[str, Any] = {}

        def outputs_for(name: str) -> dict[str, Any] | None:
            record = self._state.get(name)
            return record.outputs if record is not None else None

        for key, value in stack.outputs.items():
            try:
                resolved[key] = resolve_properties(
                    builder.resolve_config(value, owner=f"outputs.{key}"),
                    outputs_for,
                    self._secret_store,
                    redact=True,
                    strict=True,
                )
            except UnresolvedOutputError as e:
                logger.warning("Stack output unavailable", extra={"output": key, "error": str(e)})
                resolved[key] = None
        return resolved

    def shutdown(self) -> None:
        """Signal the reconciler to stop; an in-flight apply starts no new steps."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()

    def _plan(self, graph: ResourceGraph) -> Plan:
        changes = self._differ.diff(graph, self._state)
        return Planner(self._config.max_changes).plan(changes, graph)

    def _executor(self) -> Executor:
        return Executor(
            self._registry,
            self._state,
            self._secret_store,
            concurrency=self._config.concurrency,
            timeout_seconds=self._config.provider_timeout_seconds,
            cancel_event=self._shutdown_event,
            normalizer=self._normalizer,
        )

    def _start_provenance(self, stack: StackSpec, operation: str) -> RunProvenance:
        return get_provenance_logger().create_provenance(
            stack=stack.name,
            operation=operation,
            mode=self._config.mode.value,
            stack_file=self._config.stack_file,
            dry_run=self._config.dry_run,
        )

    def _finish_provenance(
        self, provenance: RunProvenance, plan: Plan, report: RunReport | None
    ) -> None:
        provenance_logger = get_provenance_logger()
        provenance.change_summary = ChangeProvenanceSummary.from_counts(plan.summary())
        for change in plan.changes:
            if change.requires_action:
                provenance_logger.log_change_detail(
                    provenance,
                    change.key,
                    change.change_type.value,
                    [diff.path for diff in change.diffs],
                )
        if report is not None:
            provenance.applied = len(report.applied)
            provenance.unchanged = len(report.unchanged)
            provenance.failed = len(report.failed)
            provenance.skipped = len(report.skipped)
            provenance.cancelled = len(report.cancelled)
            provenance.duration_seconds = report.duration_seconds
        provenance_logger.log_provenance(provenance)

    # -------------------------------------------------------------------------
    # Watch loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "stack_file": str(self._config.stack_file),
                "mode": self._config.mode.value,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait(min(remaining, self._config.reconcile_interval_seconds))
                    continue

                logger.info("Circuit breaker reset, resuming reconciliation")
                self._circuit_open_until = None
                self._consecutive_failures = 0

            result = await self.reconcile_once()
            self._log_result(result)

            if not result.success:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            await self._wait(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    async def _wait(self, seconds: float) -> None:
        """Sleep until the timeout or shutdown, whichever comes first."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def reconcile_once(self) -> ReconcileResult:
        """One watch-loop cycle; errors are captured in the result."""
        result = ReconcileResult(mode=self._config.mode)
        try:
            if self._config.mode == ReconciliationMode.OBSERVE or self._config.dry_run:
                result.plan = self.preview()
                result.drift_found = result.plan.has_changes
                if result.drift_found:
                    self._log_drift(result.plan.changes)
            else:
                result.report = await self.apply()
                result.drift_found = bool(result.report.applied or result.report.failed)
        except Exception as e:
            logger.exception("Reconciliation cycle failed")
            result.error = e
        finally:
            result.end_time = datetime.now(UTC)
        return result

    def _log_drift(self, changes: list[Change]) -> None:
        for change in changes:
            if change.requires_action:
                logger.warning(
                    "Drift detected",
                    extra={
                        "resource": change.key,
                        "change_type": change.change_type.value,
                        "paths": [diff.path for diff in change.diffs],
                    },
                )

    def _log_result(self, result: ReconcileResult) -> None:
        """Log cycle result with structured data."""
        extra: dict[str, Any] = {
            "mode": result.mode.value,
            "duration_seconds": result.duration_seconds,
            "drift_found": result.drift_found,
        }
        if result.report is not None:
            extra.update(
                changes_applied=len(result.report.applied),
                changes_failed=len(result.report.failed),
                changes_skipped=len(result.report.skipped),
            )

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif not result.success:
            logger.error("Reconciliation finished with failures", extra=extra)
        elif result.drift_found and result.mode == ReconciliationMode.OBSERVE:
            logger.warning("Reconciliation: drift detected (observe mode)", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
