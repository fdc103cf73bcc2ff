"""Local emulation of workloads and their backing services."""

from skiff.emulation.executor import (
    InvocationResult,
    LocalEmulationExecutor,
    build_event,
)
from skiff.emulation.migrations import apply_migrations, discover_migrations
from skiff.emulation.services import LocalKvStore, LocalQueue, LocalSqlDatabase

__all__ = [
    "InvocationResult",
    "LocalEmulationExecutor",
    "LocalKvStore",
    "LocalQueue",
    "LocalSqlDatabase",
    "apply_migrations",
    "build_event",
    "discover_migrations",
]
