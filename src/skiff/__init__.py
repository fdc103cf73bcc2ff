"""Skiff - deploy annotated Python functions as serverless workloads.

Skiff discovers functions marked with the workload decorators, builds a
self-contained bundle per function, computes the minimal changeset against
what is deployed and drives a provisioning backend to apply it.

Main features:
- Declare HTTP endpoints, queue workers and cron jobs with decorators
- Deterministic, content-addressed builds with a shared hash cache
- Plan/deploy with hotswap for code-only changes, versions and rollback
- Local invocation against emulated databases and queues
"""

from skiff.lib.errors import SkiffError, ValidationError
from skiff.runtime import QueueRecord, Request, Response, RuntimeConfig
from skiff.workloads import cron, endpoint, worker

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "QueueRecord",
    "Request",
    "Response",
    "RuntimeConfig",
    "SkiffError",
    "ValidationError",
    "cron",
    "endpoint",
    "worker",
]
