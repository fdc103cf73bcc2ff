"""Skiff deployment engine.

This package drives provisioning backends: artifact uploads, template
submission, status polling, version history and rollback.
"""

from skiff.deploy.backends import BaseBackend, create_backend
from skiff.deploy.executor import DeploymentExecutor, default_rollback_target
from skiff.deploy.lock import ProjectLock

__all__ = [
    "BaseBackend",
    "DeploymentExecutor",
    "ProjectLock",
    "create_backend",
    "default_rollback_target",
]
