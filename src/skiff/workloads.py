"""Workload decorators.

The decorators mark a plain function as a deployable workload. At runtime
they only attach the declared options to the function; discovery reads
the decorator arguments from source and never imports user code, so every
argument must be a literal.

Example:

    from skiff import endpoint, worker

    @endpoint(url_path="/hello", environment={"GREETING": "hi"})
    def hello(request, secrets, config):
        return {"message": config.environment["GREETING"]}

    @worker(concurrency=2, fifo=True)
    def process(records, secrets, config):
        ...
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

F = TypeVar("F", bound=Callable[..., Any])

MARKER_ATTRIBUTE = "__skiff_workload__"


def _mark(kind: str, func: F | None, options: dict[str, Any]) -> Any:
    def decorate(fn: F) -> F:
        setattr(fn, MARKER_ATTRIBUTE, {"kind": kind, **options})
        return fn

    # Bare usage: @endpoint
    if func is not None:
        return decorate(func)
    return decorate


def endpoint(
    func: F | None = None,
    *,
    url_path: str | None = None,
    queues: list[str] | None = None,
    name: str | None = None,
    environment: dict[str, str] | None = None,
    secrets: list[str] | None = None,
) -> Any:
    """Mark a function as an HTTP-triggered workload."""
    return _mark(
        "endpoint",
        func,
        {
            "url_path": url_path,
            "queues": queues or [],
            "name": name,
            "environment": environment or {},
            "secrets": secrets or [],
        },
    )


def worker(
    func: F | None = None,
    *,
    concurrency: int = 1,
    fifo: bool = False,
    queue_alias: str | None = None,
    name: str | None = None,
    environment: dict[str, str] | None = None,
    secrets: list[str] | None = None,
) -> Any:
    """Mark a function as a queue-triggered workload."""
    return _mark(
        "worker",
        func,
        {
            "concurrency": concurrency,
            "fifo": fifo,
            "queue_alias": queue_alias,
            "name": name,
            "environment": environment or {},
            "secrets": secrets or [],
        },
    )


def cron(
    func: F | None = None,
    *,
    schedule: str | None = None,
    name: str | None = None,
    environment: dict[str, str] | None = None,
    secrets: list[str] | None = None,
) -> Any:
    """Mark a function as a schedule-triggered workload."""
    return _mark(
        "cron",
        func,
        {
            "schedule": schedule,
            "name": name,
            "environment": environment or {},
            "secrets": secrets or [],
        },
    )


def workload_options(func: Callable[..., Any]) -> dict[str, Any] | None:
    """Return the options attached by a workload decorator, if any."""
    return getattr(func, MARKER_ATTRIBUTE, None)
