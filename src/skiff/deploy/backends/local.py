"""File-backed provisioning backend.

Keeps artifact storage, deployments and the version history of each
project under a local directory (``.skiff/backend`` by default). A
submitted deployment is provisioned when its status is first polled, so
the executor exercises the same submit/poll path as against a remote
backend. Used for offline workflows and tests.
"""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ulid import ULID

from skiff.deploy.backends.base import BaseBackend
from skiff.deploy.state import get_history_path, load_history, save_history
from skiff.lib.errors import (
    BackendError,
    DeploymentError,
    DiffConflictError,
    UploadError,
)
from skiff.lib.logging_config import get_logger
from skiff.models.artifact import artifact_key
from skiff.models.changeset import ChangeKind, Changeset, TargetType
from skiff.models.deployment import BackendStatus, RemoteResponse, StatusResult
from skiff.models.deployment_state import DeployedState, ProjectHistory, VersionEntry
from skiff.template.generator import physical_name

logger = get_logger(__name__)


class LocalBackend(BaseBackend):
    """Provisioning backend persisted to the local filesystem.

    Attributes:
        root: Backend directory
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    # Storage layout

    def _artifact_path(self, content_hash: str) -> Path:
        return self.root / artifact_key(content_hash)

    def _deployments_dir(self) -> Path:
        return self.root / "deployments"

    def _deployment_path(self, deploy_id: str) -> Path:
        return self._deployments_dir() / f"{deploy_id}.json"

    def _log_path(self, project: str, function: str) -> Path:
        return self.root / "logs" / project / f"{function}.log"

    def _history(self, project: str) -> ProjectHistory:
        return load_history(get_history_path(self.root, project), project)

    def _save(self, project: str, history: ProjectHistory) -> None:
        # Functions that are no longer deployed cannot stay stopped
        history.stopped = sorted(
            name for name in history.stopped if name in history.current.workloads
        )
        save_history(get_history_path(self.root, project), history)

    def _read_deployment(self, deploy_id: str) -> dict[str, Any]:
        path = self._deployment_path(deploy_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise BackendError("status", f"Unknown deployment {deploy_id}") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise BackendError(
                "status", f"Cannot read deployment {deploy_id}: {exc}"
            ) from exc

    def _write_deployment(self, deploy_id: str, record: dict[str, Any]) -> None:
        path = self._deployment_path(deploy_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(record, indent=2, sort_keys=True)
            path.write_text(payload, encoding="utf-8")
        except OSError as exc:
            raise BackendError(
                "submit", f"Cannot record deployment {deploy_id}: {exc}"
            ) from exc

    def _append_log(self, project: str, function: str, line: str) -> None:
        path = self._log_path(project, function)
        path.parent.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).isoformat()
        with path.open("a", encoding="utf-8") as handle:
            handle.write(f"{stamp} {line}\n")

    def _settle_in_flight(self, project: str) -> None:
        """Provision deployments of a project that nobody polled to the end.

        Provisioning happens on the first status poll, so a client that
        died after submitting leaves its record in progress. The next
        submit or rollback settles it exactly as that poll would have.
        """
        directory = self._deployments_dir()
        if not directory.is_dir():
            return
        for path in sorted(directory.glob("*.json")):
            record = json.loads(path.read_text(encoding="utf-8"))
            status = BackendStatus(record["status"])
            if record["project"] != project or status.is_terminal:
                continue
            record = self._provision(record)
            self._write_deployment(record["deploy_id"], record)
            logger.warning(
                f"Settled unpolled deployment {record['deploy_id']} of {project}: "
                f"{record['status']}"
            )

    @staticmethod
    def _check_base(history: ProjectHistory, base_version: int | None) -> None:
        active = history.current.version
        if active != base_version:
            raise DiffConflictError(
                history.current.project,
                f"planned from version {base_version or 'none'} but version "
                f"{active or 'none'} is active; plan again",
            )

    # Artifacts

    def has_artifact(self, content_hash: str) -> bool:
        return self._artifact_path(content_hash).is_file()

    def upload_artifact(self, content_hash: str, data: bytes) -> str:
        path = self._artifact_path(content_hash)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(f".{threading.get_ident()}.part")
            tmp.write_bytes(data)
            os.replace(tmp, path)
        except OSError as exc:
            raise UploadError(f"Cannot store artifact {content_hash}: {exc}") from exc
        return artifact_key(content_hash)

    # Deployments

    def submit_deploy(
        self,
        *,
        project: str,
        template: str,
        changeset: Changeset,
        artifact_refs: dict[str, str],
    ) -> str:
        with self._lock:
            self._settle_in_flight(project)
            self._check_base(self._history(project), changeset.base_version)

            deploy_id = str(ULID())
            self._write_deployment(
                deploy_id,
                {
                    "deploy_id": deploy_id,
                    "project": project,
                    "operation": "deploy",
                    "status": BackendStatus.IN_PROGRESS.value,
                    "base_version": changeset.base_version,
                    "template": template,
                    "target_state": changeset.target_state.model_dump(mode="json"),
                    "changes": [str(c) for c in changeset.changes],
                    "deleted": [
                        c.target
                        for c in changeset.changes
                        if c.kind == ChangeKind.DELETE
                        and c.target_type == TargetType.WORKLOAD
                    ],
                    "artifact_refs": artifact_refs,
                },
            )
        logger.debug(f"Accepted deployment {deploy_id} for {project}")
        return deploy_id

    def get_deploy_status(self, deploy_id: str) -> StatusResult:
        with self._lock:
            record = self._read_deployment(deploy_id)
            if record["status"] == BackendStatus.IN_PROGRESS.value:
                record = self._provision(record)
                self._write_deployment(deploy_id, record)

        return StatusResult(
            deploy_id=deploy_id,
            status=BackendStatus(record["status"]),
            diagnostic=record.get("diagnostic"),
            resource_ids=record.get("resource_ids", {}),
        )

    def _provision(self, record: dict[str, Any]) -> dict[str, Any]:
        """Apply a pending deployment or rollback."""
        project = record["project"]

        if record["operation"] == "rollback":
            return self._apply_rollback(record)

        state = DeployedState.model_validate(record["target_state"])
        missing = sorted(
            w.artifact_hash
            for w in state.workloads.values()
            if not self.has_artifact(w.artifact_hash)
        )
        if missing:
            return {
                **record,
                "status": BackendStatus.FAILED.value,
                "diagnostic": f"Artifacts not found in storage: {', '.join(missing)}",
            }

        resource_ids: dict[str, dict[str, str]] = {}
        for workload in state.workloads.values():
            function = physical_name(project, workload.name)
            ids = {"function": f"local:function:{function}"}
            alias = workload.declaration.queue_alias
            if alias is not None:
                ids["queue"] = f"local:queue:{physical_name(project, alias)}"
            resource_ids[workload.name] = ids
            self._append_log(
                project,
                workload.name,
                f"deployed {workload.artifact_hash} ({record['deploy_id']})",
            )
        for name in record.get("deleted", []):
            self._append_log(project, name, f"deleted ({record['deploy_id']})")
        for key, resource in state.resources.items():
            resource_ids[key] = {
                "resource": f"local:{resource.type.value}:{resource.name}"
            }

        return {
            **record,
            "status": BackendStatus.SUCCEEDED.value,
            "resource_ids": resource_ids,
        }

    def cancel_deploy(self, deploy_id: str) -> None:
        with self._lock:
            record = self._read_deployment(deploy_id)
            if BackendStatus(record["status"]).is_terminal:
                return
            record["status"] = BackendStatus.CANCELLED.value
            record["diagnostic"] = "Cancelled by user"
            self._write_deployment(deploy_id, record)

    # State and versions

    def commit_state(
        self,
        project: str,
        state: DeployedState,
        *,
        deploy_id: str,
        message: str | None,
        base_version: int | None,
    ) -> VersionEntry:
        with self._lock:
            history = self._history(project)
            self._check_base(history, base_version)
            version = max((v.version for v in history.versions), default=0) + 1
            now = datetime.now(timezone.utc)

            snapshot = state.model_copy(update={"version": version, "updated_at": now})
            entry = VersionEntry(
                version=version,
                deploy_id=deploy_id,
                created_at=now,
                template_hash=state.template_hash,
                message=message,
                active=True,
            )
            history.versions = [
                v.model_copy(update={"active": False}) for v in history.versions
            ] + [entry]
            history.snapshots[version] = snapshot
            history.current = snapshot
            self._save(project, history)
        return entry

    def get_deployed_state(self, project: str) -> DeployedState:
        return self._history(project).current

    def hotswap(self, project: str, function: str, artifact_ref: str) -> None:
        state = self.get_deployed_state(project)
        if function not in state.workloads:
            raise BackendError("hotswap", f"Function '{function}' is not deployed")
        content_hash = Path(artifact_ref).stem
        if not self.has_artifact(content_hash):
            raise BackendError(
                "hotswap", f"Artifact {artifact_ref} not found in storage"
            )
        self._append_log(project, function, f"hotswapped to {content_hash}")

    def record_hotswap(self, project: str, state: DeployedState) -> None:
        with self._lock:
            history = self._history(project)
            history.current = state.model_copy(
                update={"updated_at": datetime.now(timezone.utc)}
            )
            self._save(project, history)

    def rollback(self, project: str, version: int) -> str:
        if version not in self._history(project).snapshots:
            raise DeploymentError(
                operation="rollback",
                message=f"Version {version} does not exist for project '{project}'",
            )
        with self._lock:
            self._settle_in_flight(project)
            deploy_id = str(ULID())
            self._write_deployment(
                deploy_id,
                {
                    "deploy_id": deploy_id,
                    "project": project,
                    "operation": "rollback",
                    "status": BackendStatus.IN_PROGRESS.value,
                    "version": version,
                },
            )
        return deploy_id

    def _apply_rollback(self, record: dict[str, Any]) -> dict[str, Any]:
        project, version = record["project"], record["version"]
        history = self._history(project)
        snapshot = history.snapshots[version]

        missing = sorted(
            w.artifact_hash
            for w in snapshot.workloads.values()
            if not self.has_artifact(w.artifact_hash)
        )
        if missing:
            return {
                **record,
                "status": BackendStatus.FAILED.value,
                "diagnostic": f"Artifacts not found in storage: {', '.join(missing)}",
            }

        history.current = snapshot
        history.versions = [
            v.model_copy(update={"active": v.version == version})
            for v in history.versions
        ]
        self._save(project, history)
        for name in snapshot.workloads:
            self._append_log(project, name, f"rolled back to version {version}")
        return {**record, "status": BackendStatus.ROLLED_BACK.value}

    def list_versions(self, project: str) -> list[VersionEntry]:
        return list(self._history(project).versions)

    # Functions

    def toggle_function(self, project: str, function: str, *, enabled: bool) -> bool:
        with self._lock:
            history = self._history(project)
            if function not in history.current.workloads:
                raise BackendError("toggle", f"Function '{function}' is not deployed")
            stopped = set(history.stopped)
            if (function not in stopped) == enabled:
                return False
            if enabled:
                stopped.discard(function)
            else:
                stopped.add(function)
            history.stopped = sorted(stopped)
            self._save(project, history)
        self._append_log(project, function, "started" if enabled else "stopped")
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
        history = self._history(project)
        if function not in history.current.workloads:
            raise BackendError("invoke", f"Function '{function}' is not deployed")
        if function in history.stopped:
            return RemoteResponse(status=503, body="Service Unavailable")
        raise BackendError(
            "invoke",
            "The local backend serves no deployed endpoints; "
            "use `skiff invoke` without --remote to run the function locally",
        )

    # Observability

    def fetch_logs(
        self, project: str, function: str, *, limit: int = 100
    ) -> Iterable[str]:
        path = self._log_path(project, function)
        if not path.exists():
            return []
        lines = path.read_text(encoding="utf-8").splitlines()
        return lines[-limit:]

    def fetch_stats(self, project: str, function: str) -> dict[str, Any]:
        history = self._history(project)
        workload = history.current.workloads.get(function)
        if workload is None:
            raise BackendError("stats", f"Function '{function}' is not deployed")
        active = next((v.version for v in history.versions if v.active), None)
        hotswaps = sum(
            1 for line in self.fetch_logs(project, function, limit=10_000)
            if " hotswapped to " in line
        )
        return {
            "function": function,
            "kind": workload.kind.value,
            "artifact_hash": workload.artifact_hash,
            "active_version": active,
            "enabled": function not in history.stopped,
            "hotswaps": hotswaps,
            "invocations": 0,
        }
