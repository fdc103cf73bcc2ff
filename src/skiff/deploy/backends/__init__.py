"""Provisioning backends driven by the deployment executor."""

from __future__ import annotations

from pathlib import Path

from skiff.deploy.backends.base import BaseBackend
from skiff.lib.errors import ConfigError
from skiff.models.manifest import BackendType
from skiff.models.settings import SkiffSettings


def create_backend(settings: SkiffSettings, state_dir: Path) -> BaseBackend:
    """Create a provisioning backend based on the resolved settings."""
    if settings.backend == BackendType.LOCAL:
        from skiff.deploy.backends.local import LocalBackend

        return LocalBackend(state_dir / "backend")

    if settings.backend == BackendType.HTTP:
        if not settings.url:
            raise ConfigError(
                field="deploy.url",
                message="A backend URL is required for the http backend.",
            )
        from skiff.deploy.backends.http import HttpBackend

        return HttpBackend(settings.url, token=settings.api_token)

    raise ConfigError(
        field="deploy.backend",
        message=f"Unsupported backend: {settings.backend}",
    )


__all__ = ["BaseBackend", "create_backend"]
