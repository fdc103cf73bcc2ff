"""CLI commands for deploying skiff projects.

Implements 'skiff deploy', 'skiff rollback', 'skiff versions',
'skiff destroy', 'skiff start' and 'skiff stop'.
"""

from __future__ import annotations

import json
import sys
from contextlib import closing

import click

from skiff.cli.common import (
    cancel_on_interrupt,
    common_options,
    echo_build_errors,
    echo_change,
    handle_errors,
    load_engine,
)
from skiff.lib.errors import EXIT_BUILD
from skiff.lib.logging_config import get_logger
from skiff.models.deployment import DeployOutcome

logger = get_logger(__name__)


def _display_outcome(outcome: DeployOutcome, quiet: bool) -> None:
    if quiet:
        return
    click.echo()
    if outcome.hotswap:
        click.secho("Hotswap complete", fg="green", bold=True)
        click.echo(f"  Functions:  {len(outcome.changes)}")
        click.secho(
            "  Note: hotswaps record no version and cannot be rolled back to",
            fg="yellow",
        )
    elif outcome.version is None:
        click.secho("Nothing to deploy", fg="green")
        return
    else:
        click.secho("Deployment complete", fg="green", bold=True)
        click.echo(f"  Version:    {outcome.version}")
        click.echo(f"  Deploy ID:  {outcome.deploy_id}")
        click.echo(f"  Changes:    {len(outcome.changes)}")
    click.echo(
        f"  Uploaded:   {len(outcome.uploaded)} "
        f"(skipped {len(outcome.skipped_uploads)} already stored)"
    )


@click.command()
@click.argument("names", nargs=-1)
@click.option(
    "--hotswap",
    is_flag=True,
    help="Swap function code in place when only code changed",
)
@click.option("--message", "-m", default=None, help="Note stored with the version")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would be done without deploying",
)
@common_options
def deploy(
    project_dir: str,
    names: tuple[str, ...],
    hotswap: bool,
    message: str | None,
    dry_run: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Deploy all functions, or only the named ones.

    A partial deploy leaves every other function and its resources
    untouched. Functions that fail to build keep their deployed version;
    the command then exits with code 3 after deploying the rest.

    Example:

        skiff deploy

        skiff deploy hello-endpoint --hotswap
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:

        if dry_run:
            plan = engine.plan(names or None)
            click.secho("[DRY RUN] Would apply:", fg="yellow")
            if plan.is_empty:
                click.echo("  No changes.")
            for change in plan.changeset.changes:
                echo_change(change)
            if plan.build.errors:
                echo_build_errors(plan.build.errors)
                sys.exit(EXIT_BUILD)
            return

        if not quiet:
            click.echo(f"Deploying {engine.project}...")
        with cancel_on_interrupt(engine.cancel_event):
            result = engine.deploy(names or None, hotswap=hotswap, message=message)

        for warning in result.warnings:
            click.secho(f"Warning: {warning}", fg="yellow", err=True)
        if not quiet:
            for change in result.outcome.changes:
                echo_change(change)
        _display_outcome(result.outcome, quiet)

        if result.plan.build.errors:
            echo_build_errors(result.plan.build.errors)
            sys.exit(EXIT_BUILD)


@click.command()
@click.option(
    "--version",
    "target",
    type=int,
    default=None,
    help="Version to roll back to (default: the one before the active version)",
)
@common_options
def rollback(project_dir: str, target: int | None, verbose: bool, quiet: bool) -> None:
    """Revert live resources to a recorded version.

    Example:

        skiff rollback

        skiff rollback --version 3
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        with cancel_on_interrupt(engine.cancel_event):
            outcome = engine.rollback(target)
        if not quiet:
            click.secho(f"Rolled back to version {outcome.version}", fg="green")


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Print versions as JSON")
@common_options
def versions(project_dir: str, as_json: bool, verbose: bool, quiet: bool) -> None:
    """List the recorded versions of the project.

    Example:

        skiff versions
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        entries = engine.versions()

        if as_json:
            payload = [e.model_dump(mode="json") for e in entries]
            click.echo(json.dumps(payload, indent=2))
            return

        if not entries:
            click.echo(f"No versions recorded for {engine.project}.")
            return

        for entry in entries:
            marker = "*" if entry.active else " "
            line = (
                f"{marker} {entry.version:>4}  {entry.created_at:%Y-%m-%d %H:%M:%S}  "
                f"{entry.deploy_id}"
            )
            if entry.message:
                line += f"  {entry.message}"
            click.echo(line)


@click.command()
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.option("--message", "-m", default=None, help="Note stored with the version")
@common_options
def destroy(
    project_dir: str, force: bool, message: str | None, verbose: bool, quiet: bool
) -> None:
    """Delete every deployed function and resource of the project.

    The teardown is recorded as a new version; `skiff rollback` restores
    the previous one.

    Example:

        skiff destroy --force
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        if not force:
            confirm = click.confirm(
                f"Destroy every deployed resource of '{engine.project}'?",
                default=False,
            )
            if not confirm:
                click.secho("Destroy aborted.", fg="yellow")
                return

        with cancel_on_interrupt(engine.cancel_event):
            outcome = engine.destroy(message)

        if outcome.version is None:
            click.echo(f"Nothing deployed for {engine.project}.")
            return
        if not quiet:
            for change in outcome.changes:
                echo_change(change)
            click.echo()
            click.secho("Project destroyed", fg="green", bold=True)
            click.echo(f"  Version:    {outcome.version}")
            click.echo(f"  Deploy ID:  {outcome.deploy_id}")


def _toggle(project_dir: str, name: str, enabled: bool, quiet: bool) -> None:
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        changed = engine.toggle(name, enabled=enabled)
        if quiet:
            return
        if changed:
            click.secho(f"{name} {'started' if enabled else 'stopped'}", fg="green")
        else:
            state = "not" if enabled else "already"
            click.secho(f"Nothing changed. {name} is {state} stopped.", fg="yellow")


@click.command()
@click.argument("name")
@common_options
def start(project_dir: str, name: str, verbose: bool, quiet: bool) -> None:
    """Let a stopped function receive requests again."""
    _toggle(project_dir, name, True, quiet)


@click.command()
@click.argument("name")
@common_options
def stop(project_dir: str, name: str, verbose: bool, quiet: bool) -> None:
    """Stop a deployed function from receiving requests.

    The function stays deployed; its endpoint answers "Service
    Unavailable" until `skiff start` is run.
    """
    _toggle(project_dir, name, False, quiet)
