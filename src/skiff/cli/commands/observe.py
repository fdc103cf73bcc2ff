"""CLI commands reading deployed functions: logs and stats."""

from __future__ import annotations

import json
from contextlib import closing

import click

from skiff.cli.common import common_options, handle_errors, load_engine


@click.command()
@click.argument("name")
@click.option(
    "--limit", "-n", type=int, default=100, show_default=True, help="Lines to show"
)
@common_options
def logs(project_dir: str, name: str, limit: int, verbose: bool, quiet: bool) -> None:
    """Show recent log lines of a deployed function."""
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        lines = engine.logs(name, limit=limit)
        if not lines:
            click.echo(f"No logs for {name}.")
        for line in lines:
            click.echo(line)


@click.command()
@click.argument("name")
@click.option("--json", "as_json", is_flag=True, help="Print stats as JSON")
@common_options
def stats(
    project_dir: str, name: str, as_json: bool, verbose: bool, quiet: bool
) -> None:
    """Show invocation statistics of a deployed function."""
    with handle_errors(), closing(load_engine(project_dir)) as engine:
        values = engine.stats(name)
        if as_json:
            click.echo(json.dumps(values, indent=2, default=str))
            return
        width = max((len(key) for key in values), default=0)
        for key, value in values.items():
            click.echo(f"{key:<{width}}  {value}")
