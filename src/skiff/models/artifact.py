"""Build artifact model."""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class BuildArtifact(BaseModel):
    """Self-contained deployable bundle produced for one workload.

    Attributes:
        function: Name of the workload the artifact was built for
        content_hash: sha256 of the final bundle bytes
        size: Bundle size in bytes
        platform: Target platform identifier (e.g. python3.12)
        path: Location of the packaged bytes on disk
        handler: Dotted entry point inside the bundle
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    function: str = Field(..., description="Workload name")
    content_hash: str = Field(..., description="sha256 of the bundle bytes")
    size: int = Field(..., ge=0, description="Bundle size in bytes")
    platform: str = Field(..., description="Target platform identifier")
    path: Path = Field(..., description="Path to the packaged bundle")
    handler: str = Field(..., description="Entry point inside the bundle")

    @property
    def storage_key(self) -> str:
        """Content-addressed key used in backend artifact storage."""
        return artifact_key(self.content_hash)

    def read_bytes(self) -> bytes:
        """Return the packaged bundle bytes."""
        return self.path.read_bytes()


def artifact_key(content_hash: str) -> str:
    """Return the storage key for an artifact hash."""
    return f"artifacts/{content_hash}.zip"
