"""Pydantic models for workload declarations.

A workload declaration is the structured record produced for every
annotated function: its unique name, kind, kind-specific parameters,
environment mapping and secret requirements.
"""

from __future__ import annotations

import hashlib
import json
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


class WorkloadKind(str, Enum):
    """Supported workload kinds."""

    ENDPOINT = "endpoint"
    WORKER = "worker"
    CRON = "cron"


class EndpointParams(BaseModel):
    """Parameters of an HTTP-triggered workload.

    Attributes:
        url_path: Route served by the endpoint, always starting with '/'
        queues: Aliases of worker queues the endpoint sends messages to
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["endpoint"] = "endpoint"
    url_path: str = Field(..., description="URL path served by the endpoint")
    queues: tuple[str, ...] = Field(
        default=(), description="Queue aliases the endpoint sends to"
    )


class WorkerParams(BaseModel):
    """Parameters of a queue-triggered workload.

    Attributes:
        concurrency: Maximum concurrent invocations consuming the queue
        fifo: Whether the backing queue preserves ordering
        queue_alias: Alias of the queue the worker consumes
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["worker"] = "worker"
    concurrency: int = Field(default=1, ge=1, description="Concurrency limit")
    fifo: bool = Field(default=False, description="FIFO queue flag")
    queue_alias: str = Field(..., description="Alias of the consumed queue")


class CronParams(BaseModel):
    """Parameters of a schedule-triggered workload."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["cron"] = "cron"
    schedule: str = Field(..., description="Schedule expression")


WorkloadParams = Annotated[
    Union[EndpointParams, WorkerParams, CronParams],
    Field(discriminator="kind"),
]


class SourceLocation(BaseModel):
    """Where a workload is defined inside the project source tree."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str = Field(..., description="POSIX path relative to the source root")
    module: str = Field(..., description="Dotted module name")
    function: str = Field(..., description="Python function name")
    line: int = Field(default=0, description="Line of the function definition")

    def __str__(self) -> str:
        return f"{self.path}:{self.line} ({self.function})"


class WorkloadDeclaration(BaseModel):
    """Immutable declaration of one deployable function."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Unique workload name")
    kind: WorkloadKind = Field(..., description="Workload kind")
    params: WorkloadParams
    environment: dict[str, str] = Field(
        default_factory=dict, description="Ordered environment variables"
    )
    secrets: tuple[str, ...] = Field(
        default=(), description="Secret names required by the workload"
    )
    source: SourceLocation

    @property
    def queue_alias(self) -> str | None:
        """Alias of the queue provisioned for a worker, None otherwise."""
        if isinstance(self.params, WorkerParams):
            return self.params.queue_alias
        return None

    def config_fingerprint(self, bindings: dict[str, str] | None = None) -> str:
        """Hash every non-code attribute that shapes the infrastructure.

        Args:
            bindings: Resource bindings (e.g. database) attached to the workload

        Returns:
            A ``sha256:`` prefixed digest, stable across runs
        """
        payload = json.dumps(
            {
                "kind": self.kind.value,
                "params": self.params.model_dump(mode="json"),
                "environment": sorted(self.environment.items()),
                "secrets": sorted(self.secrets),
                "bindings": sorted((bindings or {}).items()),
            },
            sort_keys=True,
        )
        return "sha256:" + hashlib.sha256(payload.encode("utf-8")).hexdigest()
