"""HTTP provisioning backend client."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from skiff.deploy.backends.base import BaseBackend
from skiff.lib.errors import (
    BackendError,
    DeploymentError,
    DeploymentInProgressError,
    DiffConflictError,
    UploadError,
)
from skiff.lib.logging_config import get_logger
from skiff.models.changeset import Changeset
from skiff.models.deployment import RemoteResponse, StatusResult
from skiff.models.deployment_state import DeployedState, VersionEntry

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0


def _diagnostic(response: httpx.Response) -> str:
    """Extract the backend's own error message from a response."""
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason_phrase
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or payload)
    return str(payload)


class HttpBackend(BaseBackend):
    """Backend reached over HTTP with bearer-token authentication.

    Args:
        base_url: Backend base URL
        token: API token sent as a bearer token
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use ``httpx.MockTransport``)
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        operation: str,
        method: str,
        url: str,
        *,
        allow: tuple[int, ...] = (),
        project: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise BackendError(operation, f"{method} {url} failed: {exc}") from exc

        if response.status_code in allow or response.is_success:
            return response
        if response.status_code == 409 and project is not None:
            raise DeploymentInProgressError(project)
        if response.status_code == 412 and project is not None:
            raise DiffConflictError(project, _diagnostic(response))
        raise BackendError(
            operation,
            f"{method} {url} returned {response.status_code}",
            diagnostic=_diagnostic(response),
        )

    @staticmethod
    def _json(operation: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                operation, f"Invalid JSON from backend: {exc}"
            ) from exc

    def has_artifact(self, content_hash: str) -> bool:
        response = self._request(
            "upload", "HEAD", f"/v1/artifacts/{content_hash}", allow=(404,)
        )
        return response.status_code != 404

    def upload_artifact(self, content_hash: str, data: bytes) -> str:
        url = f"/v1/artifacts/{content_hash}"
        try:
            response = self._client.put(
                url,
                content=data,
                headers={"Content-Type": "application/zip"},
            )
        except httpx.HTTPError as exc:
            raise UploadError(f"Upload of {content_hash} failed: {exc}") from exc

        # Server errors and throttling are worth retrying
        if response.status_code >= 500 or response.status_code == 429:
            raise UploadError(
                f"Upload of {content_hash} returned {response.status_code}: "
                f"{_diagnostic(response)}"
            )
        if not response.is_success:
            raise BackendError(
                "upload",
                f"Upload of {content_hash} rejected with {response.status_code}",
                diagnostic=_diagnostic(response),
            )
        payload = self._json("upload", response)
        return str(payload.get("ref", f"artifacts/{content_hash}.zip"))

    def submit_deploy(
        self,
        *,
        project: str,
        template: str,
        changeset: Changeset,
        artifact_refs: dict[str, str],
    ) -> str:
        response = self._request(
            "submit",
            "POST",
            f"/v1/projects/{project}/deployments",
            project=project,
            json={
                "template": template,
                "changes": [c.model_dump(mode="json") for c in changeset.changes],
                "target_state": changeset.target_state.model_dump(mode="json"),
                "base_version": changeset.base_version,
                "artifact_refs": artifact_refs,
            },
        )
        payload = self._json("submit", response)
        try:
            return str(payload["deploy_id"])
        except (KeyError, TypeError) as exc:
            raise BackendError(
                "submit", "Backend response lacks deploy_id"
            ) from exc

    def get_deploy_status(self, deploy_id: str) -> StatusResult:
        response = self._request("status", "GET", f"/v1/deployments/{deploy_id}")
        payload = self._json("status", response)
        try:
            return StatusResult.model_validate({"deploy_id": deploy_id, **payload})
        except PydanticValidationError as exc:
            raise BackendError(
                "status", f"Unexpected status payload: {exc}"
            ) from exc

    def cancel_deploy(self, deploy_id: str) -> None:
        self._request("cancel", "POST", f"/v1/deployments/{deploy_id}/cancel")

    def commit_state(
        self,
        project: str,
        state: DeployedState,
        *,
        deploy_id: str,
        message: str | None,
        base_version: int | None,
    ) -> VersionEntry:
        response = self._request(
            "commit",
            "POST",
            f"/v1/projects/{project}/versions",
            project=project,
            json={
                "deploy_id": deploy_id,
                "message": message,
                "base_version": base_version,
                "state": state.model_dump(mode="json"),
            },
        )
        return VersionEntry.model_validate(self._json("commit", response))

    def get_deployed_state(self, project: str) -> DeployedState:
        response = self._request(
            "state", "GET", f"/v1/projects/{project}/state", allow=(404,)
        )
        if response.status_code == 404:
            return DeployedState.empty(project)
        try:
            return DeployedState.model_validate(self._json("state", response))
        except PydanticValidationError as exc:
            raise BackendError("state", f"Invalid deployed state: {exc}") from exc

    def hotswap(self, project: str, function: str, artifact_ref: str) -> None:
        self._request(
            "hotswap",
            "POST",
            f"/v1/projects/{project}/functions/{function}/hotswap",
            json={"artifact_ref": artifact_ref},
        )

    def record_hotswap(self, project: str, state: DeployedState) -> None:
        self._request(
            "hotswap",
            "PUT",
            f"/v1/projects/{project}/state",
            json={"state": state.model_dump(mode="json")},
        )

    def rollback(self, project: str, version: int) -> str:
        response = self._request(
            "rollback",
            "POST",
            f"/v1/projects/{project}/rollback",
            json={"version": version},
            allow=(404,),
            project=project,
        )
        if response.status_code == 404:
            raise DeploymentError(
                operation="rollback",
                message=f"Version {version} does not exist for project '{project}'",
            )
        return str(self._json("rollback", response)["deploy_id"])

    def list_versions(self, project: str) -> list[VersionEntry]:
        response = self._request(
            "versions", "GET", f"/v1/projects/{project}/versions", allow=(404,)
        )
        if response.status_code == 404:
            return []
        payload = self._json("versions", response)
        return [
            VersionEntry.model_validate(item) for item in payload.get("versions", [])
        ]

    def toggle_function(self, project: str, function: str, *, enabled: bool) -> bool:
        response = self._request(
            "toggle",
            "POST",
            f"/v1/projects/{project}/functions/{function}/toggle",
            json={"operation": "start" if enabled else "stop"},
            allow=(304, 403),
        )
        if response.status_code == 304:
            return False
        if response.status_code == 403:
            raise BackendError(
                "toggle",
                f"Function '{function}' is stopped by the platform",
                diagnostic=_diagnostic(response),
            )
        return True

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
        response = self._request(
            "invoke",
            "POST",
            f"/v1/projects/{project}/functions/{function}/invoke",
            json={
                "payload": payload,
                "headers": dict(headers or {}),
                "url_path": url_path,
                "method": method,
            },
        )
        try:
            return RemoteResponse.model_validate(self._json("invoke", response))
        except PydanticValidationError as exc:
            raise BackendError(
                "invoke", f"Unexpected invoke payload: {exc}"
            ) from exc

    def fetch_logs(
        self, project: str, function: str, *, limit: int = 100
    ) -> Iterable[str]:
        response = self._request(
            "logs",
            "GET",
            f"/v1/projects/{project}/functions/{function}/logs",
            params={"limit": limit},
        )
        return list(self._json("logs", response).get("lines", []))

    def fetch_stats(self, project: str, function: str) -> dict[str, Any]:
        response = self._request(
            "stats", "GET", f"/v1/projects/{project}/functions/{function}/stats"
        )
        return dict(self._json("stats", response))
