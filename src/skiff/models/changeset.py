"""Changeset models: the transient plan moving deployed state to desired state."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from skiff.models.deployment_state import DeployedState


class ChangeKind(str, Enum):
    """Operation applied to a target."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ChangeMode(str, Enum):
    """Blast radius of an operation."""

    FULL = "full"
    HOTSWAP = "hotswap"


class TargetType(str, Enum):
    """What a change operates on."""

    WORKLOAD = "workload"
    RESOURCE = "resource"


class Change(BaseModel):
    """A single create/update/delete operation."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    target: str = Field(..., description="Workload name or resource key")
    target_type: TargetType
    kind: ChangeKind
    mode: ChangeMode = ChangeMode.FULL
    reason: str = Field(default="", description="Why the change is needed")
    artifact_hash: str | None = Field(
        default=None, description="Artifact to deploy for workload create/update"
    )

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.mode.value}: {self.target}"


class Changeset(BaseModel):
    """Ordered list of operations plus the state they produce."""

    model_config = ConfigDict(extra="forbid")

    project: str
    changes: list[Change] = Field(default_factory=list)
    target_state: DeployedState = Field(
        ..., description="Deployed state after applying the changes"
    )
    base_version: int | None = Field(
        default=None, description="Version of the state the plan was computed from"
    )

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to apply."""
        return not self.changes

    @property
    def is_hotswap_only(self) -> bool:
        """True when every change is a code-only workload update."""
        return bool(self.changes) and all(
            c.mode == ChangeMode.HOTSWAP for c in self.changes
        )

    def for_target(self, target: str) -> Change | None:
        """Return the change for a target, if any."""
        for change in self.changes:
            if change.target == target:
                return change
        return None

    def summary(self) -> list[str]:
        """Human readable one-line descriptions, in execution order."""
        return [str(c) for c in self.changes]
