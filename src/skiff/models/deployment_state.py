"""Deployment state models for persisted deployments."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from skiff.models.workload import WorkloadDeclaration, WorkloadKind


class ResourceType(str, Enum):
    """Project-level resource categories tracked in deployed state."""

    DATABASE = "database"
    DOMAIN = "domain"
    SECRETS = "secrets"


class DeployedWorkload(BaseModel):
    """Persisted record of one deployed workload."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Workload name")
    kind: WorkloadKind = Field(..., description="Workload kind")
    declaration: WorkloadDeclaration = Field(
        ..., description="Declaration as it was deployed"
    )
    config_hash: str = Field(..., description="Fingerprint of non-code attributes")
    artifact_hash: str = Field(..., description="Deployed bundle hash")
    resource_ids: dict[str, str] = Field(
        default_factory=dict, description="Backend identifiers (function, queue)"
    )


class DeployedResource(BaseModel):
    """Persisted record of a project-level resource."""

    model_config = ConfigDict(extra="forbid")

    key: str = Field(..., description="Stable key, e.g. 'database:main'")
    type: ResourceType
    name: str
    fingerprint: str = Field(..., description="Fingerprint of the resource shape")
    attributes: dict[str, str] = Field(default_factory=dict)
    resource_id: str | None = Field(default=None, description="Backend identifier")


class DeployedState(BaseModel):
    """Snapshot of the last successfully applied deployment of a project."""

    model_config = ConfigDict(extra="forbid")

    project: str = Field(..., description="Project name")
    version: int | None = Field(default=None, description="Active version number")
    template_hash: str | None = Field(default=None, description="Applied template")
    workloads: dict[str, DeployedWorkload] = Field(
        default_factory=dict, description="Deployed workloads keyed by name"
    )
    resources: dict[str, DeployedResource] = Field(
        default_factory=dict, description="Project resources keyed by key"
    )
    updated_at: datetime | None = Field(default=None)

    @classmethod
    def empty(cls, project: str) -> DeployedState:
        """Return the state of a project that was never deployed."""
        return cls(project=project)

    @property
    def is_empty(self) -> bool:
        """True when nothing has been deployed."""
        return not self.workloads and not self.resources


class VersionEntry(BaseModel):
    """One entry of a project's version history."""

    model_config = ConfigDict(extra="forbid")

    version: int = Field(..., ge=1)
    deploy_id: str = Field(..., description="Deployment that produced the version")
    created_at: datetime
    template_hash: str | None = None
    message: str | None = None
    active: bool = False


class ProjectHistory(BaseModel):
    """Backend-side record: current snapshot plus the version history."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1.0", description="State file version")
    current: DeployedState
    versions: list[VersionEntry] = Field(default_factory=list)
    snapshots: dict[int, DeployedState] = Field(
        default_factory=dict, description="Snapshot recorded for each version"
    )
    stopped: list[str] = Field(
        default_factory=list, description="Deployed functions taken out of service"
    )
