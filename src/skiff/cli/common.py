"""Shared helpers for skiff CLI commands."""

from __future__ import annotations

import signal
import sys
import threading
from collections.abc import Callable, Generator
from contextlib import contextmanager
from functools import wraps
from typing import Any, TypeVar

import click

from skiff.config.context import CommandContext
from skiff.engine import SkiffEngine
from skiff.lib.errors import (
    BuildError,
    ConfigError,
    DeploymentError,
    DeployTimeoutError,
    DiffConflictError,
    EmulationError,
    SkiffError,
    UploadError,
    ValidationError,
)
from skiff.lib.logging_config import get_logger, setup_logging
from skiff.models.changeset import Change, ChangeKind

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

CHANGE_COLORS = {
    ChangeKind.CREATE: "green",
    ChangeKind.UPDATE: "yellow",
    ChangeKind.DELETE: "red",
}


@contextmanager
def handle_errors() -> Generator[None, None, None]:
    """Context manager mapping skiff errors to messages and exit codes.

    Exit codes:
        2: Validation or configuration error
        3: Build failure
        4: Deploy, backend or diff conflict error
        5: Status polling timed out
        6: Local emulation failure
    """
    try:
        yield
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        click.secho("Error: Validation failed", fg="red", err=True)
        for violation in e.violations:
            click.echo(f"  - {violation}", err=True)
        sys.exit(e.exit_code)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.field}: {e.message}", err=True)
        sys.exit(e.exit_code)
    except BuildError as e:
        logger.error(f"Build error: {e}")
        click.secho(f"Error: build of {e.function} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(e.exit_code)
    except DiffConflictError as e:
        logger.error(f"Conflict: {e}")
        click.secho(f"Error: cannot reconcile {e.target}", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(e.exit_code)
    except DeployTimeoutError as e:
        logger.error(f"Timeout: {e}")
        click.secho("Error: deployment timed out", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(e.exit_code)
    except UploadError as e:
        logger.error(f"Upload error: {e}")
        click.secho("Error: upload failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        for function, reason in sorted(e.failed.items()):
            click.echo(f"  - {function}: {reason}", err=True)
        sys.exit(e.exit_code)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(e.exit_code)
    except EmulationError as e:
        logger.error(f"Emulation error: {e}")
        click.secho(f"Error: local invoke of {e.function} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(e.exit_code)
    except SkiffError as e:
        logger.error(f"Error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(e.exit_code)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(1)


@contextmanager
def cancel_on_interrupt(event: threading.Event) -> Generator[None, None, None]:
    """Turn Ctrl-C into a cancel request for the running deploy."""

    def _handler(signum: int, frame: Any) -> None:
        if event.is_set():
            raise KeyboardInterrupt
        click.secho(
            "Cancelling... (press Ctrl-C again to abort)", fg="yellow", err=True
        )
        event.set()

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def common_options(func: F) -> F:
    """Add --project-dir, --verbose and --quiet to a command."""

    @click.option(
        "--project-dir",
        "-C",
        type=click.Path(file_okay=False),
        default=".",
        show_default=True,
        help="Project root directory",
    )
    @click.option(
        "--verbose",
        "-v",
        is_flag=True,
        help="Enable verbose debug logging",
    )
    @click.option(
        "--quiet",
        "-q",
        is_flag=True,
        help="Suppress progress output",
    )
    @wraps(func)
    def wrapper(*args: Any, verbose: bool, quiet: bool, **kwargs: Any) -> Any:
        setup_logging(verbose=verbose, quiet=quiet)
        return func(*args, verbose=verbose, quiet=quiet, **kwargs)

    return wrapper  # type: ignore[return-value]


def load_engine(project_dir: str) -> SkiffEngine:
    """Resolve the command context and create an engine for it."""
    return SkiffEngine(CommandContext.load(project_dir))


def echo_change(change: Change) -> None:
    """Print one changeset entry."""
    color = CHANGE_COLORS[change.kind]
    label = f"{change.kind.value}/{change.mode.value}"
    click.secho(f"  {label:<15}", fg=color, nl=False)
    click.echo(f" {change.target_type.value:<9} {change.target}", nl=False)
    click.echo(f"  ({change.reason})" if change.reason else "")


def echo_build_errors(errors: dict[str, BuildError]) -> None:
    """Print failed builds to stderr."""
    click.secho(f"{len(errors)} function(s) failed to build:", fg="red", err=True)
    for name in sorted(errors):
        click.echo(f"  - {name}: {errors[name].message}", err=True)
