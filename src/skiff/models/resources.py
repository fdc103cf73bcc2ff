"""In-memory resource model of a project.

The resource model aggregates every workload declaration with the
project-level resources read from the manifest. It is built once per
command invocation and is read-only afterwards.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from skiff.models.manifest import CustomDomain, DatabaseBinding
from skiff.models.workload import WorkerParams, WorkloadDeclaration


class QueueResource(BaseModel):
    """Queue provisioned for exactly one worker."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    alias: str
    worker: str = Field(..., description="Name of the consuming worker")
    fifo: bool = False
    concurrency: int = 1


class ResourceModel(BaseModel):
    """All declared workloads plus project-level resources."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    project: str = Field(..., description="Project name")
    workloads: tuple[WorkloadDeclaration, ...] = Field(default=())
    database: DatabaseBinding | None = None
    secrets: frozenset[str] = Field(default=frozenset())
    secrets_fingerprint: str | None = Field(
        default=None, description="Digest of secret names and values"
    )
    domains: tuple[CustomDomain, ...] = Field(default=())
    variables: dict[str, str] = Field(default_factory=dict)

    def get(self, name: str) -> WorkloadDeclaration | None:
        """Return a workload by name."""
        for workload in self.workloads:
            if workload.name == name:
                return workload
        return None

    def names(self) -> list[str]:
        """Return workload names in declaration order."""
        return [w.name for w in self.workloads]

    @property
    def queues(self) -> dict[str, QueueResource]:
        """Queues keyed by alias, one per worker."""
        queues: dict[str, QueueResource] = {}
        for workload in self.workloads:
            params = workload.params
            if not isinstance(params, WorkerParams):
                continue
            queues[params.queue_alias] = QueueResource(
                alias=params.queue_alias,
                worker=workload.name,
                fifo=params.fifo,
                concurrency=params.concurrency,
            )
        return queues

    def bindings_for(self, workload: WorkloadDeclaration) -> dict[str, str]:
        """Resource bindings attached to a workload.

        Every workload binds the project database when one is declared.
        """
        bindings: dict[str, str] = {}
        if self.database is not None:
            bindings["database"] = (
                f"{self.database.engine.value}:{self.database.name}"
            )
        return bindings

    def resolve_environment(self, workload: WorkloadDeclaration) -> dict[str, str]:
        """Substitute ``${NAME}`` placeholders from the variable store."""
        from skiff.config.env_loader import substitute_variables

        return {
            key: substitute_variables(value, self.variables)
            for key, value in workload.environment.items()
        }
