"""CLI commands working on declared functions: list, build, plan, invoke, envs."""

from __future__ import annotations

import json
import sys
from contextlib import closing
from pathlib import Path

import click

from skiff.cli.common import (
    common_options,
    echo_build_errors,
    echo_change,
    handle_errors,
    load_engine,
)
from skiff.config.defaults import DEFAULT_MIGRATIONS_DIR
from skiff.lib.errors import EXIT_BUILD, EXIT_EMULATION, ConfigError
from skiff.lib.logging_config import get_logger
from skiff.models.workload import (
    CronParams,
    EndpointParams,
    WorkerParams,
    WorkloadDeclaration,
)

logger = get_logger(__name__)


def _trigger(declaration: WorkloadDeclaration) -> str:
    params = declaration.params
    if isinstance(params, EndpointParams):
        return params.url_path
    if isinstance(params, WorkerParams):
        suffix = " (fifo)" if params.fifo else ""
        return f"queue:{params.queue_alias}{suffix}"
    if isinstance(params, CronParams):
        return params.schedule
    return ""


@click.command(name="list")
@click.option("--json", "as_json", is_flag=True, help="Print declarations as JSON")
@common_options
def list_functions(
    project_dir: str, as_json: bool, verbose: bool, quiet: bool
) -> None:
    """List the functions declared in the project.

    Example:

        skiff list

        skiff list --json
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        declarations = engine.discover()

        if as_json:
            payload = [d.model_dump(mode="json") for d in declarations]
            click.echo(json.dumps(payload, indent=2))
            return

        if not declarations:
            click.echo("No functions declared.")
            return

        width = max(len(d.name) for d in declarations)
        for declaration in declarations:
            click.echo(
                f"{declaration.name:<{width}}  {declaration.kind.value:<8}  "
                f"{_trigger(declaration):<28}  {declaration.source}"
            )


@click.command()
@click.argument("names", nargs=-1)
@common_options
def build(project_dir: str, names: tuple[str, ...], verbose: bool, quiet: bool) -> None:
    """Build deployable bundles for all or the named functions.

    Functions build independently; one failure does not stop the others.
    Exits with code 3 when any build failed.

    Example:

        skiff build

        skiff build hello-endpoint
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        result = engine.build(names or None)

        if not quiet:
            for name, artifact in sorted(result.artifacts.items()):
                click.echo(
                    f"  {name}: {artifact.content_hash[:12]} ({artifact.size} bytes)"
                )
        if result.errors:
            echo_build_errors(result.errors)
            sys.exit(EXIT_BUILD)
        if not quiet:
            click.secho(f"Built {len(result.artifacts)} function(s)", fg="green")


@click.command()
@click.argument("names", nargs=-1)
@click.option(
    "--show-template", is_flag=True, help="Print the rendered template as well"
)
@common_options
def plan(
    project_dir: str,
    names: tuple[str, ...],
    show_template: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Show what a deploy would change, without deploying.

    Example:

        skiff plan

        skiff plan hello-endpoint --show-template
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        result = engine.plan(names or None)
        changeset = result.changeset

        base = changeset.base_version
        click.secho(
            f"Plan for {changeset.project} "
            f"(from version {base if base is not None else 'none'}):",
            bold=True,
        )
        if changeset.is_empty:
            click.echo("  No changes.")
        for change in changeset.changes:
            echo_change(change)
        if changeset.is_hotswap_only:
            click.echo("All changes are code-only; `skiff deploy --hotswap` applies.")

        if show_template:
            click.echo()
            click.echo(result.template, nl=False)

        if result.build.errors:
            echo_build_errors(result.build.errors)
            sys.exit(EXIT_BUILD)


def _read_payload(payload: str | None) -> str | None:
    """Inline payload, or the contents of a file for ``@path``."""
    if payload is None or not payload.startswith("@"):
        return payload
    path = Path(payload[1:])
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            field="payload", message=f"Cannot read payload file {path}: {exc}"
        ) from exc


def _parse_headers(headers: str | None) -> dict[str, str]:
    if not headers:
        return {}
    try:
        parsed = json.loads(headers)
    except json.JSONDecodeError as exc:
        raise ConfigError(
            field="headers", message=f"Headers must be a JSON object: {exc}"
        ) from exc
    if not isinstance(parsed, dict):
        raise ConfigError(field="headers", message="Headers must be a JSON object")
    return {str(k): str(v) for k, v in parsed.items()}


@click.command()
@click.argument("name")
@click.option(
    "--payload",
    "-p",
    default=None,
    help="Request or message body; '@file' reads it from a file",
)
@click.option("--headers", default=None, help="Headers as a JSON object")
@click.option("--url-path", default=None, help="Request path (endpoints)")
@click.option("--method", default="POST", show_default=True, help="HTTP method")
@click.option("--with-db", is_flag=True, help="Provide a local database")
@click.option(
    "--with-migrations",
    is_flag=False,
    flag_value=DEFAULT_MIGRATIONS_DIR,
    default=None,
    help="Apply *.sql migrations (default directory: migrations/)",
)
@click.option("--with-queue", is_flag=True, help="Provide local queues")
@click.option(
    "--remote", is_flag=True, help="Call the deployed function through the backend"
)
@click.option("--timeout", type=float, default=None, help="Timeout in seconds")
@common_options
def invoke(
    project_dir: str,
    name: str,
    payload: str | None,
    headers: str | None,
    url_path: str | None,
    method: str,
    with_db: bool,
    with_migrations: str | None,
    with_queue: bool,
    remote: bool,
    timeout: float | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Run one function locally against emulated services.

    NAME is the workload name shown by `skiff list`.

    Example:

        skiff invoke hello-endpoint --payload '{"name": "John"}'

        skiff invoke save-user --with-db --with-migrations

        skiff invoke hello-endpoint --remote
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        if remote:
            if with_db or with_migrations or with_queue:
                raise ConfigError(
                    field="remote",
                    message="--with-db, --with-migrations and --with-queue "
                    "only apply to local runs",
                )
            response = engine.invoke_remote(
                name,
                payload=_read_payload(payload),
                headers=_parse_headers(headers),
                url_path=url_path,
                method=method,
            )
            color = "green" if response.ok else "red"
            click.secho(f"Status {response.status}", fg=color, err=True)
            click.echo(response.body)
            return

        result = engine.invoke(
            name,
            payload=_read_payload(payload),
            headers=_parse_headers(headers),
            url_path=url_path,
            method=method,
            with_db=with_db,
            migrations=Path(with_migrations) if with_migrations else None,
            with_queue=with_queue,
            timeout=timeout,
        )

        if not quiet:
            if result.migrations:
                click.echo(f"Applied migrations: {', '.join(result.migrations)}")
            for alias, bodies in sorted(result.enqueued.items()):
                click.echo(f"Enqueued to {alias}: {len(bodies)} message(s)")

        if not result.ok:
            click.secho(f"Error: {name} raised {result.error}", fg="red", err=True)
            if verbose and result.traceback:
                click.echo(result.traceback, err=True)
            sys.exit(EXIT_EMULATION)

        click.echo(json.dumps(result.value, indent=2, default=str))
        if not quiet:
            click.secho(f"Completed in {result.duration:.3f}s", fg="green", err=True)


@click.command()
@click.option(
    "--remote", is_flag=True, help="Show what the deployed functions run with"
)
@click.option("--json", "as_json", is_flag=True, help="Print variables as JSON")
@common_options
def envs(
    project_dir: str, remote: bool, as_json: bool, verbose: bool, quiet: bool
) -> None:
    """List environment variables of each function.

    Placeholders are shown resolved. Functions without variables are
    left out.

    Example:

        skiff envs

        skiff envs --remote
    """
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        values = engine.envs(remote=remote)

        if as_json:
            click.echo(json.dumps(values, indent=2, sort_keys=True))
            return

        if not values:
            click.secho("No environment variables found.", fg="yellow")
            return

        for name, variables in values.items():
            click.secho(name, bold=True)
            for key, value in sorted(variables.items()):
                click.echo(f"  {key}={value}")
