"""Pydantic models exchanged with the provisioning backend.

This module defines deploy phases, backend status reports, and the
outcome returned by the deployment executor.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from skiff.models.changeset import Change


class DeployPhase(str, Enum):
    """Executor state machine phases for one deploy invocation."""

    PLANNED = "planned"
    UPLOADING = "uploading"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


# Allowed phase transitions. An empty plan succeeds straight from PLANNED and
# a rollback has nothing to upload.
PHASE_TRANSITIONS: dict[DeployPhase, frozenset[DeployPhase]] = {
    DeployPhase.PLANNED: frozenset(
        {
            DeployPhase.UPLOADING,
            DeployPhase.SUBMITTED,
            DeployPhase.SUCCEEDED,
            DeployPhase.FAILED,
        }
    ),
    DeployPhase.UPLOADING: frozenset({DeployPhase.SUBMITTED, DeployPhase.FAILED}),
    DeployPhase.SUBMITTED: frozenset(
        {
            DeployPhase.IN_PROGRESS,
            DeployPhase.SUCCEEDED,
            DeployPhase.FAILED,
            DeployPhase.ROLLED_BACK,
        }
    ),
    DeployPhase.IN_PROGRESS: frozenset(
        {DeployPhase.SUCCEEDED, DeployPhase.FAILED, DeployPhase.ROLLED_BACK}
    ),
    DeployPhase.SUCCEEDED: frozenset(),
    DeployPhase.FAILED: frozenset(),
    DeployPhase.ROLLED_BACK: frozenset(),
}


class BackendStatus(str, Enum):
    """Status values reported by the provisioning backend."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    ROLLED_BACK = "ROLLED_BACK"

    @property
    def is_terminal(self) -> bool:
        """True when the backend will not change this status again."""
        return self not in (BackendStatus.PENDING, BackendStatus.IN_PROGRESS)


class StatusResult(BaseModel):
    """Result of a status check operation.

    Attributes:
        deploy_id: Backend identifier of the deployment
        status: Current deployment status
        diagnostic: Backend-provided explanation for failures
        resource_ids: Identifiers of provisioned resources, on success
    """

    model_config = ConfigDict(extra="forbid")

    deploy_id: str
    status: BackendStatus
    diagnostic: str | None = None
    resource_ids: dict[str, dict[str, str]] = Field(default_factory=dict)


class DeployOutcome(BaseModel):
    """What a deploy, hotswap or rollback invocation ended with."""

    model_config = ConfigDict(extra="forbid")

    project: str
    phase: DeployPhase
    deploy_id: str | None = None
    version: int | None = Field(
        default=None, description="Version recorded, None for hotswap or no-op"
    )
    hotswap: bool = False
    changes: list[Change] = Field(default_factory=list)
    uploaded: list[str] = Field(
        default_factory=list, description="Artifact hashes uploaded this run"
    )
    skipped_uploads: list[str] = Field(
        default_factory=list, description="Artifact hashes already in storage"
    )
    message: str | None = None

    @property
    def succeeded(self) -> bool:
        """True for a successful or rolled back terminal phase."""
        return self.phase in (DeployPhase.SUCCEEDED, DeployPhase.ROLLED_BACK)


class RemoteResponse(BaseModel):
    """Response of a deployed function invoked through the backend."""

    model_config = ConfigDict(extra="ignore")

    status: int = Field(..., description="HTTP status returned by the function")
    body: str = ""
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
