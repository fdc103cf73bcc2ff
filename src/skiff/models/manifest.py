"""Pydantic models for the project manifest (``skiff.yaml``).

This module defines the schema of the project-level resource block:
the optional database binding, custom domains, the named value store
used for environment templating and deploy setting overrides.
"""

import re
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

RESOURCE_NAME_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_-]{0,62}$")
DOMAIN_PATTERN = re.compile(
    r"^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$"
)
VARIABLE_KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class DatabaseEngine(str, Enum):
    """Data-access protocol of the project database."""

    SQL = "sql"
    KV = "kv"


class BackendType(str, Enum):
    """Provisioning backends the executor can drive."""

    LOCAL = "local"
    HTTP = "http"


class ProjectSection(BaseModel):
    """``project:`` section of the manifest.

    Attributes:
        name: Project name, used as a prefix for all provisioned resources
        source: Directory (relative to the project root) scanned for workloads
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, description="Project name")
    source: str | None = Field(default=None, description="Source directory")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        """Validate project name pattern."""
        if v is not None and not RESOURCE_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid project name: {v}. Must start with a letter and contain "
                "only letters, digits, '-' and '_' (max 63 chars)"
            )
        return v


class DatabaseBinding(BaseModel):
    """Relational or key-value database shared by the project's workloads."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Stable database name")
    engine: DatabaseEngine = Field(
        default=DatabaseEngine.SQL, description="Data-access protocol"
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate database name pattern."""
        if not RESOURCE_NAME_PATTERN.match(v):
            raise ValueError(f"Invalid database name: {v}")
        return v


class CustomDomain(BaseModel):
    """Custom domain routed to the project's endpoints."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Fully qualified domain name")
    target: str = Field(default="/", description="Path prefix served on the domain")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate domain name format."""
        lowered = v.lower()
        if not DOMAIN_PATTERN.match(lowered):
            raise ValueError(f"Invalid domain name: {v}")
        return lowered

    @field_validator("target")
    @classmethod
    def validate_target(cls, v: str) -> str:
        """Validate the target path prefix."""
        if not v.startswith("/"):
            raise ValueError(f"Domain target must start with '/': {v}")
        return v


class DeploySection(BaseModel):
    """``deploy:`` section, overriding default deploy settings."""

    model_config = ConfigDict(extra="forbid")

    backend: BackendType | None = None
    url: str | None = None
    state_dir: str | None = None
    poll_interval: float | None = Field(default=None, gt=0)
    poll_max_interval: float | None = Field(default=None, gt=0)
    poll_timeout: float | None = Field(default=None, gt=0)
    upload_concurrency: int | None = Field(default=None, ge=1)
    upload_attempts: int | None = Field(default=None, ge=1)
    build_workers: int | None = Field(default=None, ge=1)
    invoke_timeout: float | None = Field(default=None, gt=0)


class ProjectManifest(BaseModel):
    """Top-level project manifest."""

    model_config = ConfigDict(extra="forbid")

    project: ProjectSection = Field(default_factory=ProjectSection)
    database: DatabaseBinding | None = Field(
        default=None, description="Optional project database"
    )
    domains: list[CustomDomain] = Field(
        default_factory=list, description="Custom domain bindings"
    )
    variables: dict[str, str] = Field(
        default_factory=dict, description="Named value store for env templating"
    )
    deploy: DeploySection = Field(default_factory=DeploySection)

    @field_validator("domains")
    @classmethod
    def validate_unique_domains(cls, v: list[CustomDomain]) -> list[CustomDomain]:
        """Reject the same domain declared twice."""
        seen: set[str] = set()
        for domain in v:
            if domain.name in seen:
                raise ValueError(f"Duplicate domain: {domain.name}")
            seen.add(domain.name)
        return v

    @field_validator("variables")
    @classmethod
    def validate_variable_keys(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate variable names."""
        for key in v:
            if not VARIABLE_KEY_PATTERN.match(key):
                raise ValueError(f"Invalid variable name: {key}")
        return v
