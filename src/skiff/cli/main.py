"""Entry point of the skiff command line."""

from __future__ import annotations

import click

from skiff import __version__
from skiff.cli.commands.deploy import (
    deploy,
    destroy,
    rollback,
    start,
    stop,
    versions,
)
from skiff.cli.commands.functions import build, envs, invoke, list_functions, plan
from skiff.cli.commands.observe import logs, stats


@click.group()
@click.version_option(__version__, prog_name="skiff")
def cli() -> None:
    """Skiff - deploy annotated Python functions as serverless workloads.

    Functions decorated with @skiff.endpoint, @skiff.worker or @skiff.cron
    are discovered from source, built into bundles and deployed together
    with the project's database, queues, schedules and domains.
    """


cli.add_command(list_functions)
cli.add_command(build)
cli.add_command(plan)
cli.add_command(invoke)
cli.add_command(envs)
cli.add_command(deploy)
cli.add_command(rollback)
cli.add_command(versions)
cli.add_command(destroy)
cli.add_command(start)
cli.add_command(stop)
cli.add_command(logs)
cli.add_command(stats)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
