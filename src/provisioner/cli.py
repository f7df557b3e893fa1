"""Provisioner CLI (prov).

Usage:
    prov preview              # Show what would change
    prov up                   # Apply the stack
    prov destroy              # Delete everything recorded in state
    prov graph                # Print the dependency graph
    prov state show           # Print the state document
    prov outputs              # Print resolved stack outputs

Common options pick the stack file, the state file and the provider set
(``--provider memory`` simulates every kind locally without cloud access).
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click

from .config import Config, ConfigurationError
from .differ import Change, ChangeType
from .executor import RunReport
from .graph import GraphError
from .main import EXIT_CODE_SECURITY_VIOLATION, run_with_signals, setup_logging
from .planner import Plan, PlanLimitError
from .reconciler import PROVIDER_CHOICES, Reconciler, build_registry
from .security import SecretLiteralError, SecretlessViolationError
from .spec_loader import SpecLoadError
from .state import StateStoreError

# Errors that mean "the inputs are wrong", reported without a traceback
USER_ERRORS = (
    ConfigurationError,
    SpecLoadError,
    SecretLiteralError,
    GraphError,
    PlanLimitError,
    StateStoreError,
)

CHANGE_SYMBOLS: dict[ChangeType, tuple[str, str | None]] = {
    ChangeType.CREATE: ("+", "green"),
    ChangeType.UPDATE: ("~", "yellow"),
    ChangeType.REPLACE: ("-/+", "magenta"),
    ChangeType.DELETE: ("-", "red"),
    ChangeType.NO_OP: (" ", None),
}


@dataclass
class CliContext:
    """Options shared by all commands."""

    stack_file: Path | None
    state_file: Path | None
    provider: str
    concurrency: int | None

    def config(self) -> Config:
        return Config.from_env(
            stack_file=self.stack_file,
            state_file=self.state_file,
            concurrency=self.concurrency,
        )

    def reconciler(self) -> Reconciler:
        """Build a reconciler, exiting with the security exit code on violations."""
        try:
            config = self.config()
            return Reconciler(config, build_registry(config, self.provider))
        except SecretlessViolationError as e:
            click.secho(f"Security violation: {e}", fg="red", err=True)
            sys.exit(EXIT_CODE_SECURITY_VIOLATION)
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e


def _fail(error: Exception) -> NoReturn:
    raise click.ClickException(f"{type(error).__name__}: {error}") from error


def render_change(change: Change) -> None:
    symbol, color = CHANGE_SYMBOLS[change.change_type]
    label = f"{symbol:>3} {change.key} ({change.kind}) {change.change_type.value}"
    if change.replace_reasons:
        label += f" [replace: {', '.join(change.replace_reasons)}]"
    click.secho(label, fg=color)
    for diff in change.diffs:
        click.echo(f"      {diff.path}: {diff.before!r} => {diff.after!r}")
    if change.error is not None:
        click.secho(f"      error: {type(change.error).__name__}: {change.error}", fg="red")


def render_plan(plan: Plan) -> None:
    for change in plan.changes:
        render_change(change)
    summary = ", ".join(f"{count} {kind}" for kind, count in plan.summary().items() if count)
    click.echo(f"\nPlan: {summary or 'no resources'}")


def render_report(report: RunReport) -> None:
    for name in report.applied:
        click.secho(f"  applied    {name}", fg="green")
    for name in report.unchanged:
        click.echo(f"  unchanged  {name}")
    for name, error in report.failed.items():
        click.secho(f"  failed     {name}: {error}", fg="red")
    for name in report.skipped:
        click.secho(f"  skipped    {name}", fg="yellow")
    for name in report.cancelled:
        click.secho(f"  cancelled  {name}", fg="yellow")

    if report.outputs:
        click.echo("\nOutputs:")
        for key, value in report.outputs.items():
            click.echo(f"  {key}: {value}")

    status = "succeeded" if report.success else "did not complete"
    click.secho(
        f"\nRun {status} in {report.duration_seconds:.1f}s",
        fg="green" if report.success else "red",
    )


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="prov")
@click.option(
    "--stack",
    "-f",
    "stack_file",
    type=click.Path(path_type=Path),
    help="Stack file (default: $PROVISIONER_STACK_FILE or stack.yaml)",
)
@click.option(
    "--state",
    "state_file",
    type=click.Path(path_type=Path),
    help="State file (default: $PROVISIONER_STATE_FILE or provisioner-state.json)",
)
@click.option(
    "--provider",
    type=click.Choice(PROVIDER_CHOICES),
    default="azure",
    show_default=True,
    help="Provider set to register for the shipped kinds",
)
@click.option("--concurrency", "-c", type=int, help="Max provider calls in flight")
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default="text",
    show_default=True,
)
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(
    ctx: click.Context,
    stack_file: Path | None,
    state_file: Path | None,
    provider: str,
    concurrency: int | None,
    log_format: str,
    verbose: bool,
) -> None:
    """Provisioner CLI (prov).

    Reconciles the resources declared in a stack file.

    \b
    Quick Start:
        prov --provider memory preview   # Simulated plan, no cloud access
        prov up                          # Apply to Azure
    """
    # Logs go to stderr so command output stays parseable
    setup_logging(log_format, logging.DEBUG if verbose else logging.WARNING, sys.stderr)
    ctx.obj = CliContext(
        stack_file=stack_file,
        state_file=state_file,
        provider=provider,
        concurrency=concurrency,
    )


@cli.command()
@click.pass_obj
def preview(obj: CliContext) -> None:
    """Show the changes an apply would make."""
    reconciler = obj.reconciler()
    try:
        plan = reconciler.preview()
    except USER_ERRORS as e:
        _fail(e)

    render_plan(plan)
    if plan.errors:
        raise click.ClickException(f"{len(plan.errors)} resource(s) cannot be applied")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
def up(obj: CliContext, yes: bool) -> None:
    """Apply the stack."""
    reconciler = obj.reconciler()
    try:
        plan = reconciler.preview()
        render_plan(plan)
        if not plan.has_changes:
            click.echo("Nothing to do.")
        elif not yes:
            click.confirm("\nApply these changes?", abort=True)
        report = asyncio.run(run_with_signals(reconciler, reconciler.apply))
    except USER_ERRORS as e:
        _fail(e)

    click.echo()
    render_report(report)
    sys.exit(report.exit_code)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt")
@click.pass_obj
def destroy(obj: CliContext, yes: bool) -> None:
    """Delete every resource recorded in state."""
    reconciler = obj.reconciler()
    try:
        reconciler.state.load()
        records = reconciler.state.records()
        if not records and not reconciler.state.pending_deletes():
            click.echo("State is empty; nothing to destroy.")
            return
        if not yes:
            click.confirm(f"Destroy {len(records)} resource(s)?", abort=True)
        report = asyncio.run(run_with_signals(reconciler, reconciler.destroy))
    except USER_ERRORS as e:
        _fail(e)

    render_report(report)
    sys.exit(report.exit_code)


@cli.command()
@click.pass_obj
def graph(obj: CliContext) -> None:
    """Print resources in apply order with their dependencies."""
    reconciler = obj.reconciler()
    try:
        _, resources = reconciler.load()
    except USER_ERRORS as e:
        _fail(e)

    for name in resources.topological_sort():
        deps = resources.dependencies(name)
        kind = resources.resources[name].kind
        suffix = f" <- {', '.join(deps)}" if deps else ""
        click.echo(f"{name} ({kind}){suffix}")


@cli.group()
def state() -> None:
    """State commands: show."""
    pass


@state.command("show")
@click.pass_obj
def state_show(obj: CliContext) -> None:
    """Print the state document (secrets are stored redacted)."""
    reconciler = obj.reconciler()
    try:
        reconciler.state.load()
    except StateStoreError as e:
        _fail(e)
    _dump(reconciler.state.to_document())


@cli.command()
@click.pass_obj
def outputs(obj: CliContext) -> None:
    """Print the stack's exported outputs resolved from state."""
    reconciler = obj.reconciler()
    try:
        resolved = reconciler.outputs()
    except USER_ERRORS as e:
        _fail(e)
    _dump(resolved)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
