"""Resolved deploy/build settings."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from skiff.models.manifest import BackendType


class SkiffSettings(BaseModel):
    """Settings after merging defaults, manifest and environment.

    Attributes:
        backend: Provisioning backend to drive
        url: Base URL of the HTTP backend
        api_token: Bearer token for the HTTP backend
        state_dir: Directory (relative to the project root) for local state
        poll_interval: Initial status polling interval in seconds
        poll_max_interval: Upper bound of the polling interval
        poll_timeout: Overall polling timeout in seconds
        upload_concurrency: Maximum parallel artifact uploads
        upload_attempts: Attempts per artifact upload
        upload_retry_delay: Initial delay between upload attempts
        build_workers: Build pool size (None: CPU count)
        invoke_timeout: Local invocation timeout in seconds
    """

    model_config = ConfigDict(extra="forbid")

    backend: BackendType = BackendType.LOCAL
    url: str | None = None
    api_token: str | None = Field(default=None, repr=False)
    state_dir: str = ".skiff"
    poll_interval: float = Field(default=1.0, gt=0)
    poll_max_interval: float = Field(default=10.0, gt=0)
    poll_timeout: float = Field(default=900.0, gt=0)
    upload_concurrency: int = Field(default=4, ge=1)
    upload_attempts: int = Field(default=3, ge=1)
    upload_retry_delay: float = Field(default=0.5, ge=0)
    build_workers: int | None = Field(default=None, ge=1)
    invoke_timeout: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def validate_backend_url(self) -> SkiffSettings:
        """The HTTP backend needs a base URL."""
        if self.backend == BackendType.HTTP and not self.url:
            raise ValueError("url is required when backend is 'http'")
        return self
