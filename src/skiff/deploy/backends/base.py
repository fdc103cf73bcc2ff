"""Base interface for provisioning backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from skiff.models.changeset import Changeset
from skiff.models.deployment import RemoteResponse, StatusResult
from skiff.models.deployment_state import DeployedState, VersionEntry


class BaseBackend(ABC):
    """Abstract capability interface of a provisioning backend.

    The executor drives a backend toward the desired state; it never talks
    to cloud provider APIs directly.
    """

    @abstractmethod
    def has_artifact(self, content_hash: str) -> bool:
        """Return True when an artifact is already in backend storage.

        Raises:
            BackendError: If the lookup fails.
        """

    @abstractmethod
    def upload_artifact(self, content_hash: str, data: bytes) -> str:
        """Upload artifact bytes under their content hash.

        Args:
            content_hash: sha256 of ``data``.
            data: Bundle bytes.

        Returns:
            Storage reference of the uploaded artifact.

        Raises:
            UploadError: On a (possibly transient) upload failure.
        """

    @abstractmethod
    def submit_deploy(
        self,
        *,
        project: str,
        template: str,
        changeset: Changeset,
        artifact_refs: dict[str, str],
    ) -> str:
        """Submit a template and changeset for provisioning.

        Args:
            project: Project name.
            template: Rendered infrastructure template.
            changeset: Ordered changes the template applies.
            artifact_refs: Artifact hash -> storage reference.

        Returns:
            Deployment identifier used for status polling.

        Raises:
            DeploymentInProgressError: If another deployment is in flight.
            DiffConflictError: If the deployed version moved past
                ``changeset.base_version``.
            BackendError: If the backend rejects the submission.
        """

    @abstractmethod
    def get_deploy_status(self, deploy_id: str) -> StatusResult:
        """Return the current status of a deployment.

        Raises:
            BackendError: If the status check fails.
        """

    @abstractmethod
    def cancel_deploy(self, deploy_id: str) -> None:
        """Request cancellation of an in-flight deployment (best effort).

        Raises:
            BackendError: If the request cannot be delivered.
        """

    @abstractmethod
    def commit_state(
        self,
        project: str,
        state: DeployedState,
        *,
        deploy_id: str,
        message: str | None,
        base_version: int | None,
    ) -> VersionEntry:
        """Record a successfully applied state and append a version entry.

        Args:
            project: Project name.
            state: State the deployment produced.
            deploy_id: Deployment that produced the state.
            message: Optional note stored with the version.
            base_version: Version the state was planned from; the commit is
                refused when the active version is no longer this one.

        Raises:
            DiffConflictError: If another deploy committed in the meantime.
            BackendError: If the state cannot be recorded.
        """

    @abstractmethod
    def get_deployed_state(self, project: str) -> DeployedState:
        """Return the last successfully applied state of a project.

        Returns:
            The active snapshot, or an empty state for a new project.

        Raises:
            BackendError: If the state cannot be fetched.
        """

    @abstractmethod
    def hotswap(self, project: str, function: str, artifact_ref: str) -> None:
        """Replace the running code of one function.

        Raises:
            BackendError: If the swap is not acknowledged.
        """

    @abstractmethod
    def record_hotswap(self, project: str, state: DeployedState) -> None:
        """Update the active snapshot after hotswaps, without a new version.

        Raises:
            BackendError: If the state cannot be recorded.
        """

    @abstractmethod
    def rollback(self, project: str, version: int) -> str:
        """Start reverting live resources to a recorded version.

        Returns:
            Deployment identifier used for status polling.

        Raises:
            DeploymentError: If the version does not exist.
            BackendError: If the backend rejects the request.
        """

    @abstractmethod
    def list_versions(self, project: str) -> list[VersionEntry]:
        """Return the version history of a project, oldest first."""

    @abstractmethod
    def fetch_logs(
        self, project: str, function: str, *, limit: int = 100
    ) -> Iterable[str]:
        """Return recent log lines of a deployed function.

        Raises:
            NotImplementedError: When the backend does not provide logs.
        """

    @abstractmethod
    def fetch_stats(self, project: str, function: str) -> dict[str, Any]:
        """Return invocation statistics of a deployed function.

        Raises:
            NotImplementedError: When the backend does not provide stats.
        """

    @abstractmethod
    def toggle_function(self, project: str, function: str, *, enabled: bool) -> bool:
        """Start or stop a deployed function.

        A stopped function stays deployed but receives no traffic; its
        endpoint answers "Service Unavailable".

        Returns:
            False when the function already was in the requested state.

        Raises:
            BackendError: If the function is not deployed or the platform
                refuses the change.
        """

    @abstractmethod
    def invoke_function(
        self,
        project: str,
        function: str,
        *,
        payload: str | None = None,
        headers: dict[str, str] | None = None,
        url_path: str | None = None,
        method: str = "POST",
    ) -> RemoteResponse:
        """Call a deployed function through its public trigger.

        Raises:
            BackendError: If the call cannot be made.
        """

    def close(self) -> None:
        """Release connections held by the backend."""
