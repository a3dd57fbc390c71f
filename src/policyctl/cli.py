"""policyctl command line.

Usage:
    policyctl init                    # Resolve credentials, create state
    policyctl validate                # Check stack and rule documents
    policyctl plan [--out plan.json]  # Show changes against state
    policyctl apply [plan.json]       # Apply changes under the state lock
    policyctl destroy                 # Remove everything in state
    policyctl show                    # Print recorded state
    policyctl force-unlock LOCK_ID    # Remove a stale state lock
    policyctl pipeline run            # Run the CI path for the current event
"""

from __future__ import annotations

import dataclasses
import json
import logging
from pathlib import Path

import click

from .config import Config, ConfigurationError, LogFormat
from .document_loader import PolicyDocumentError
from .main import setup_logging, write_step_summary
from .pipeline import Pipeline, TriggerEvent, TriggerKind
from .plan import ChangeAction, DependencyOrderingError, Plan
from .reconciler import ApplyError, NotInitializedError, Reconciler
from .security import AuthenticationError, AuthorizationError
from .state import LockContentionError, StateError

logger = logging.getLogger(__name__)

# Exit code for `plan --detailed-exitcode` when changes are present
EXIT_CHANGES_PRESENT = 2

# Errors surfaced to the user verbatim, exit code 1
HANDLED_ERRORS: tuple[type[Exception], ...] = (
    PolicyDocumentError,
    DependencyOrderingError,
    AuthenticationError,
    AuthorizationError,
    LockContentionError,
    StateError,
    ApplyError,
    NotInitializedError,
)

ACTION_SYMBOLS: dict[ChangeAction, str] = {
    ChangeAction.CREATE: "+",
    ChangeAction.UPDATE: "~",
    ChangeAction.REPLACE: "-/+",
    ChangeAction.DELETE: "-",
    ChangeAction.MOVE: "->",
}


def render_plan(plan: Plan) -> str:
    """Render a plan the way reviewers read it in a PR log."""
    if plan.is_empty:
        return "No changes. Live state matches the declared stack."

    lines = []
    for change in plan.changes:
        symbol = ACTION_SYMBOLS[change.action]
        lines.append(f"  {symbol} {change.address} ({change.action.value})")
        lines.append(f"      id: {change.resource_id}")
        if change.action == ChangeAction.REPLACE:
            lines.append(f"      replaces: {change.prior_resource_id}")
        if change.action == ChangeAction.UPDATE:
            lines.append(f"      changed: {', '.join(change.changed_attributes)}")
        if change.prior_address:
            lines.append(f"      moved from: {change.prior_address}")

    summary = plan.summary()
    totals = (
        f"Plan: {summary['add']} to add, {summary['change']} to change, "
        f"{summary['destroy']} to destroy"
    )
    if summary["move"]:
        totals += f", {summary['move']} to move"
    lines.append("")
    lines.append(totals + ".")
    return "\n".join(lines)


def _reconciler(ctx: click.Context) -> Reconciler:
    return Reconciler(ctx.obj["config"])


@click.group()
@click.version_option(version="0.1.0", prog_name="policyctl")
@click.option("--stack-file", type=click.Path(path_type=Path), help="Stack manifest path")
@click.option("--state-dir", type=click.Path(path_type=Path), help="State directory")
@click.option(
    "--log-format",
    type=click.Choice([f.value for f in LogFormat]),
    help="Log output format",
)
@click.pass_context
def cli(
    ctx: click.Context,
    stack_file: Path | None,
    state_dir: Path | None,
    log_format: str | None,
) -> None:
    """Reconcile Azure Policy definitions and assignments.

    \b
    Quick Start:
        policyctl init
        policyctl plan
        policyctl apply
    """
    try:
        config = Config.from_env()
        overrides: dict[str, object] = {}
        if stack_file is not None:
            overrides["stack_file"] = stack_file
        if state_dir is not None:
            overrides["state_dir"] = state_dir
        if log_format is not None:
            overrides["log_format"] = LogFormat(log_format)
        if overrides:
            config = dataclasses.replace(config, **overrides)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    setup_logging(config.log_format, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Resolve credentials and initialise the state backend."""
    try:
        snapshot = _reconciler(ctx).init()
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e)) from e
    click.echo(
        f"Initialized. State serial {snapshot.serial}, "
        f"{len(snapshot.resources)} managed resources."
    )


@cli.command()
@click.pass_context
def validate(ctx: click.Context) -> None:
    """Validate the stack manifest and every rule document."""
    report = _reconciler(ctx).validate()
    if not report.ok:
        for error in report.errors:
            click.echo(f"Error: {error}", err=True)
        raise click.ClickException(f"{len(report.errors)} validation error(s)")
    click.secho(
        f"Success! {report.definitions} definition(s), {report.assignments} assignment(s).",
        fg="green",
    )


@cli.command()
@click.option("--out", "out_file", type=click.Path(path_type=Path), help="Save plan to file")
@click.option("--destroy", is_flag=True, help="Plan removal of everything in state")
@click.option(
    "--detailed-exitcode",
    is_flag=True,
    help="Exit 0 when there are no changes, 2 when there are",
)
@click.pass_context
def plan(ctx: click.Context, out_file: Path | None, destroy: bool, detailed_exitcode: bool) -> None:
    """Show the changes needed to converge state with the stack."""
    try:
        computed = _reconciler(ctx).plan(destroy=destroy)
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e)) from e

    click.echo(render_plan(computed))
    if out_file is not None:
        out_file.write_text(json.dumps(computed.to_dict(), indent=2), encoding="utf-8")
        click.echo(f"Saved plan to {out_file}")

    if detailed_exitcode and not computed.is_empty:
        ctx.exit(EXIT_CHANGES_PRESENT)


@cli.command()
@click.argument("plan_file", required=False, type=click.Path(exists=True, path_type=Path))
@click.pass_context
def apply(ctx: click.Context, plan_file: Path | None) -> None:
    """Apply a saved plan, or plan and apply in one locked step."""
    saved: Plan | None = None
    if plan_file is not None:
        try:
            saved = Plan.from_dict(json.loads(plan_file.read_text(encoding="utf-8")))
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise click.ClickException(f"Invalid plan file {plan_file}: {e}") from e

    reconciler = _reconciler(ctx)
    try:
        reconciler.init()
        result = reconciler.apply(saved)
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e)) from e

    click.echo(render_plan(result.plan))
    click.secho(f"Apply complete. {len(result.applied)} write(s).", fg="green")


@cli.command()
@click.option("--yes", is_flag=True, help="Skip confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Delete every policy resource recorded in state."""
    if not yes:
        click.confirm("Destroy all managed policy resources?", abort=True)
    reconciler = _reconciler(ctx)
    try:
        reconciler.init()
        result = reconciler.destroy()
    except HANDLED_ERRORS as e:
        raise click.ClickException(str(e)) from e
    click.echo(render_plan(result.plan))
    click.secho(f"Destroy complete. {len(result.applied)} write(s).", fg="green")


@cli.command()
@click.pass_context
def show(ctx: click.Context) -> None:
    """Print the recorded state as JSON."""
    try:
        snapshot = _reconciler(ctx).show()
    except StateError as e:
        raise click.ClickException(str(e)) from e
    click.echo(json.dumps(snapshot.to_dict(), indent=2, sort_keys=True))


@cli.command("force-unlock")
@click.argument("lock_id")
@click.pass_context
def force_unlock(ctx: click.Context, lock_id: str) -> None:
    """Remove a stale state lock (only if LOCK_ID matches)."""
    try:
        _reconciler(ctx).force_unlock(lock_id)
    except StateError as e:
        raise click.ClickException(str(e)) from e
    click.secho("State unlocked.", fg="green")


@cli.group()
def pipeline() -> None:
    """CI pipeline commands."""
    pass


@pipeline.command("run")
@click.option(
    "--event",
    "event_name",
    type=click.Choice([k.value for k in TriggerKind]),
    help="Event kind (default: from GITHUB_EVENT_NAME)",
)
@click.option("--branch", help="Target branch (default: from GITHUB_BASE_REF / GITHUB_REF)")
@click.option("--main-branch", default="main", show_default=True, help="Protected branch")
@click.pass_context
def pipeline_run(
    ctx: click.Context,
    event_name: str | None,
    branch: str | None,
    main_branch: str,
) -> None:
    """Run the validate or apply path for an event."""
    event = TriggerEvent.from_github_env()
    if event_name is not None or branch is not None:
        event = TriggerEvent(
            kind=TriggerKind(event_name) if event_name else event.kind,
            target_branch=branch if branch is not None else event.target_branch,
            sha=event.sha,
        )

    config: Config = ctx.obj["config"]
    run = Pipeline(lambda: Reconciler(config), main_branch=main_branch).run(event)
    write_step_summary(run)

    if run.skipped:
        click.echo(f"No pipeline path for {event.kind.value} on '{event.target_branch}'.")
        return

    for step in run.steps:
        status = "ok" if step.success else "FAILED"
        click.echo(f"[{status}] {step.step.value} ({step.duration_seconds:.1f}s)")

    failed = run.failed_step
    if failed is not None:
        click.echo(failed.error or "", err=True)
        raise click.ClickException(f"Pipeline {run.state.value} at step '{failed.step.value}'")
    click.secho(f"Pipeline {run.state.value}.", fg="green")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
