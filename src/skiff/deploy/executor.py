"""Deployment executor: uploads, submits and tracks one deploy invocation.

The executor walks the phase machine

    PLANNED -> UPLOADING -> SUBMITTED -> IN_PROGRESS -> SUCCEEDED | FAILED

and records a new deployed state only after the backend confirms success.
Hotswap deploys replace function code directly and record no version;
rollbacks ask the backend to revert to a recorded snapshot.
"""

from __future__ import annotations

import contextlib
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path

from skiff.deploy.backends.base import BaseBackend
from skiff.deploy.lock import ProjectLock
from skiff.lib.errors import (
    BackendError,
    DeploymentCancelledError,
    DeploymentError,
    DeployTimeoutError,
    SkiffError,
    UploadError,
)
from skiff.lib.logging_config import get_logger
from skiff.lib.logging_utils import log_retry
from skiff.models.artifact import BuildArtifact, artifact_key
from skiff.models.changeset import ChangeKind, Changeset, TargetType
from skiff.models.deployment import (
    PHASE_TRANSITIONS,
    BackendStatus,
    DeployOutcome,
    DeployPhase,
    StatusResult,
)
from skiff.models.deployment_state import DeployedState, VersionEntry
from skiff.models.settings import SkiffSettings
from skiff.template.generator import template_hash

logger = get_logger(__name__)


def default_rollback_target(versions: list[VersionEntry]) -> int | None:
    """Return the newest version older than the active one, if any."""
    active = next((v for v in versions if v.active), None)
    if active is None:
        return None
    older = [v.version for v in versions if v.version < active.version]
    return max(older, default=None)


class DeploymentExecutor:
    """Drives a provisioning backend through one deploy or rollback.

    Args:
        backend: Provisioning backend
        settings: Poll and upload settings
        lock_path: Project lock file; no client-side lock when None
        cancel_event: Set by the caller to request cancellation
        sleep: Sleep function used between polls
        clock: Monotonic clock used for the poll deadline
    """

    def __init__(
        self,
        backend: BaseBackend,
        settings: SkiffSettings,
        *,
        lock_path: Path | None = None,
        cancel_event: threading.Event | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.settings = settings
        self.lock_path = lock_path
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._clock = clock
        self._phase = DeployPhase.PLANNED
        self._history: list[DeployPhase] = [DeployPhase.PLANNED]

    @property
    def phase(self) -> DeployPhase:
        return self._phase

    @property
    def phase_history(self) -> list[DeployPhase]:
        """Phases visited by the current invocation, in order."""
        return list(self._history)

    def _reset(self) -> None:
        self._phase = DeployPhase.PLANNED
        self._history = [DeployPhase.PLANNED]

    def _transition(self, phase: DeployPhase) -> None:
        if phase not in PHASE_TRANSITIONS[self._phase]:
            raise DeploymentError(
                operation="deploy",
                message=(
                    f"Invalid phase transition {self._phase.value} -> {phase.value}"
                ),
            )
        logger.debug(f"Deploy phase {self._phase.value} -> {phase.value}")
        self._phase = phase
        self._history.append(phase)

    def _fail(self) -> None:
        if not PHASE_TRANSITIONS[self._phase]:
            return
        self._transition(DeployPhase.FAILED)

    @contextlib.contextmanager
    def _locked(self, project: str) -> Iterator[None]:
        if self.lock_path is None:
            yield
            return
        with ProjectLock(self.lock_path, project):
            yield

    # Deploy

    def deploy(
        self,
        changeset: Changeset,
        template: str,
        artifacts: Mapping[str, BuildArtifact],
        *,
        hotswap: bool = False,
        message: str | None = None,
    ) -> DeployOutcome:
        """Apply a changeset.

        Args:
            changeset: Planned changes and the state they produce
            template: Rendered infrastructure template
            artifacts: Built artifacts keyed by workload name
            hotswap: Swap function code only; requires a hotswap-only changeset
            message: Optional note stored with the new version

        Returns:
            The outcome; ``version`` is None for hotswaps and empty plans

        Raises:
            DeploymentInProgressError: If another deploy holds the project
            DiffConflictError: If another deploy moved the project past
                ``changeset.base_version``
            UploadError: If artifacts could not be uploaded
            BackendError: If the backend reports failure
            DeployTimeoutError: If polling exceeds the configured bound
            DeploymentCancelledError: If cancelled before submission
        """
        self._reset()
        project = changeset.project

        if changeset.is_empty:
            self._transition(DeployPhase.SUCCEEDED)
            logger.info(f"Nothing to deploy for {project}")
            return DeployOutcome(
                project=project,
                phase=self._phase,
                message="No changes",
            )

        if hotswap and not changeset.is_hotswap_only:
            raise DeploymentError(
                operation="hotswap",
                message="Changeset contains changes that need a full deploy",
            )

        with self._locked(project):
            try:
                if hotswap:
                    return self._run_hotswap(changeset, artifacts)
                return self._run_full(changeset, template, artifacts, message)
            except SkiffError:
                self._fail()
                raise

    def _run_full(
        self,
        changeset: Changeset,
        template: str,
        artifacts: Mapping[str, BuildArtifact],
        message: str | None,
    ) -> DeployOutcome:
        project = changeset.project
        self._transition(DeployPhase.UPLOADING)
        refs, uploaded, skipped = self.upload(changeset, artifacts)
        self._check_cancelled("submit")

        deploy_id = self.backend.submit_deploy(
            project=project,
            template=template,
            changeset=changeset,
            artifact_refs=refs,
        )
        self._transition(DeployPhase.SUBMITTED)
        logger.info(f"Submitted deployment {deploy_id} for {project}")

        status = self._poll(deploy_id)
        if status.status != BackendStatus.SUCCEEDED:
            self._raise_for_status(status, "deploy")

        state = self._applied_state(changeset.target_state, status, template)
        entry = self.backend.commit_state(
            project,
            state,
            deploy_id=deploy_id,
            message=message,
            base_version=changeset.base_version,
        )
        self._transition(DeployPhase.SUCCEEDED)
        logger.info(f"Deployed {project} as version {entry.version}")

        return DeployOutcome(
            project=project,
            phase=self._phase,
            deploy_id=deploy_id,
            version=entry.version,
            changes=list(changeset.changes),
            uploaded=uploaded,
            skipped_uploads=skipped,
            message=message,
        )

    def _run_hotswap(
        self, changeset: Changeset, artifacts: Mapping[str, BuildArtifact]
    ) -> DeployOutcome:
        project = changeset.project
        self._transition(DeployPhase.UPLOADING)
        refs, uploaded, skipped = self.upload(changeset, artifacts)
        self._check_cancelled("hotswap")

        self._transition(DeployPhase.SUBMITTED)
        for change in changeset.changes:
            if change.artifact_hash is None:
                continue
            self.backend.hotswap(project, change.target, refs[change.artifact_hash])
            logger.info(f"Hotswapped {change.target} to {change.artifact_hash[:12]}")

        self.backend.record_hotswap(project, changeset.target_state)
        self._transition(DeployPhase.SUCCEEDED)
        return DeployOutcome(
            project=project,
            phase=self._phase,
            hotswap=True,
            changes=list(changeset.changes),
            uploaded=uploaded,
            skipped_uploads=skipped,
            message="Hotswap records no new version and cannot be rolled back to",
        )

    @staticmethod
    def _applied_state(
        target: DeployedState, status: StatusResult, template: str
    ) -> DeployedState:
        """Merge backend resource identifiers into the target state."""
        workloads = {
            name: workload.model_copy(
                update={
                    "resource_ids": status.resource_ids.get(
                        name, workload.resource_ids
                    )
                }
            )
            for name, workload in target.workloads.items()
        }
        resources = {}
        for key, resource in target.resources.items():
            ids = status.resource_ids.get(key, {})
            resources[key] = resource.model_copy(
                update={"resource_id": ids.get("resource", resource.resource_id)}
            )
        return target.model_copy(
            update={
                "workloads": workloads,
                "resources": resources,
                "template_hash": template_hash(template),
            }
        )

    # Uploads

    def upload(
        self, changeset: Changeset, artifacts: Mapping[str, BuildArtifact]
    ) -> tuple[dict[str, str], list[str], list[str]]:
        """Upload every artifact the changeset needs.

        Returns:
            (artifact hash -> storage reference, uploaded hashes, skipped hashes)

        Raises:
            UploadError: With every failed function, after retries
            DeploymentCancelledError: If cancellation is requested
        """
        needed = self._needed_artifacts(changeset, artifacts)
        refs: dict[str, str] = {}
        uploaded: list[str] = []
        skipped: list[str] = []
        failed: dict[str, str] = {}
        if not needed:
            return refs, uploaded, skipped

        workers = min(self.settings.upload_concurrency, len(needed))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="skiff-upload"
        ) as pool:
            futures: dict[Future[tuple[str, bool]], BuildArtifact] = {
                pool.submit(self._upload_one, artifact): artifact
                for artifact in needed.values()
            }
            for future in as_completed(futures):
                artifact = futures[future]
                try:
                    ref, fresh = future.result()
                except DeploymentCancelledError:
                    for pending in futures:
                        pending.cancel()
                    raise
                except (UploadError, BackendError) as exc:
                    failed[artifact.function] = exc.message
                    continue
                refs[artifact.content_hash] = ref
                (uploaded if fresh else skipped).append(artifact.content_hash)

        if failed:
            names = ", ".join(sorted(failed))
            raise UploadError(f"Could not upload artifacts for: {names}", failed)

        logger.info(
            f"Uploaded {len(uploaded)} artifact(s), "
            f"{len(skipped)} already in storage"
        )
        return refs, sorted(uploaded), sorted(skipped)

    @staticmethod
    def _needed_artifacts(
        changeset: Changeset, artifacts: Mapping[str, BuildArtifact]
    ) -> dict[str, BuildArtifact]:
        needed: dict[str, BuildArtifact] = {}
        for change in changeset.changes:
            if (
                change.target_type != TargetType.WORKLOAD
                or change.kind == ChangeKind.DELETE
                or change.artifact_hash is None
            ):
                continue
            artifact = artifacts.get(change.target)
            if artifact is None or artifact.content_hash != change.artifact_hash:
                raise DeploymentError(
                    operation="upload",
                    message=(
                        f"No built artifact {change.artifact_hash[:12]} "
                        f"for '{change.target}'"
                    ),
                )
            needed.setdefault(artifact.content_hash, artifact)
        return needed

    def _upload_one(self, artifact: BuildArtifact) -> tuple[str, bool]:
        content_hash = artifact.content_hash
        self._check_cancelled("upload")
        if self.backend.has_artifact(content_hash):
            logger.debug(f"Artifact {content_hash[:12]} already in storage")
            return artifact_key(content_hash), False

        try:
            data = artifact.read_bytes()
        except OSError as exc:
            raise UploadError(f"Cannot read {artifact.path}: {exc}") from exc

        attempts = self.settings.upload_attempts
        delay = self.settings.upload_retry_delay
        attempt = 1
        while True:
            self._check_cancelled("upload")
            try:
                return self.backend.upload_artifact(content_hash, data), True
            except UploadError as exc:
                if attempt >= attempts:
                    raise
                log_retry(
                    logger,
                    f"Upload of {artifact.function}",
                    attempt=attempt,
                    max_attempts=attempts,
                    delay=delay,
                    error=exc,
                )
                self._sleep(delay)
                delay *= 2
                attempt += 1

    def _check_cancelled(self, operation: str) -> None:
        if self.cancel_event.is_set():
            raise DeploymentCancelledError(
                operation=operation,
                message="Cancelled by user; deployed state is unchanged",
            )

    # Polling

    def _poll(self, deploy_id: str) -> StatusResult:
        """Poll until the backend reports a terminal status.

        A cancel request is forwarded once; the outcome is taken from the
        polls that follow it.
        """
        interval = self.settings.poll_interval
        deadline = self._clock() + self.settings.poll_timeout
        cancel_sent = False

        while True:
            status = self.backend.get_deploy_status(deploy_id)
            if status.status.is_terminal:
                logger.debug(f"Deployment {deploy_id} finished: {status.status}")
                return status

            if self._phase == DeployPhase.SUBMITTED:
                self._transition(DeployPhase.IN_PROGRESS)

            if self.cancel_event.is_set() and not cancel_sent:
                logger.warning(f"Requesting cancellation of deployment {deploy_id}")
                self.backend.cancel_deploy(deploy_id)
                cancel_sent = True

            remaining = deadline - self._clock()
            if remaining <= 0:
                raise DeployTimeoutError(deploy_id, self.settings.poll_timeout)
            self._sleep(min(interval, remaining))
            interval = min(interval * 2, self.settings.poll_max_interval)

    def _raise_for_status(self, status: StatusResult, operation: str) -> None:
        if status.status == BackendStatus.CANCELLED:
            raise DeploymentCancelledError(
                operation=operation,
                message=(
                    f"Deployment {status.deploy_id} was cancelled; "
                    "deployed state is unchanged"
                ),
            )
        raise BackendError(
            operation,
            f"Deployment {status.deploy_id} ended with {status.status.value}",
            diagnostic=status.diagnostic,
        )

    # Rollback and history

    def rollback(self, project: str, version: int | None = None) -> DeployOutcome:
        """Revert the project's live resources to a recorded version.

        Args:
            project: Project name
            version: Target version; defaults to the one before the active one

        Raises:
            DeploymentError: If there is nothing to roll back to or the version
                does not exist
        """
        self._reset()
        versions = self.backend.list_versions(project)
        if version is None:
            version = default_rollback_target(versions)
            if version is None:
                raise DeploymentError(
                    operation="rollback",
                    message=f"Nothing to roll back to for project '{project}'",
                )
        elif version not in {v.version for v in versions}:
            raise DeploymentError(
                operation="rollback",
                message=f"Version {version} does not exist for project '{project}'",
            )

        with self._locked(project):
            try:
                deploy_id = self.backend.rollback(project, version)
                self._transition(DeployPhase.SUBMITTED)
                logger.info(f"Rolling back {project} to version {version}")
                status = self._poll(deploy_id)
                if status.status not in (
                    BackendStatus.ROLLED_BACK,
                    BackendStatus.SUCCEEDED,
                ):
                    self._raise_for_status(status, "rollback")
                self._transition(DeployPhase.ROLLED_BACK)
            except SkiffError:
                self._fail()
                raise

        return DeployOutcome(
            project=project,
            phase=self._phase,
            deploy_id=deploy_id,
            version=version,
            message=f"Rolled back to version {version}",
        )

    def list_versions(self, project: str) -> list[VersionEntry]:
        return self.backend.list_versions(project)
