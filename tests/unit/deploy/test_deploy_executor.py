"""Unit tests for the deployment executor."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from skiff.deploy.backends.base import BaseBackend
from skiff.deploy.backends.local import LocalBackend
from skiff.deploy.executor import DeploymentExecutor, default_rollback_target
from skiff.deploy.lock import ProjectLock
from skiff.diff.engine import compute_changeset
from skiff.discovery.model import build_resource_model
from skiff.lib.errors import (
    BackendError,
    DeploymentCancelledError,
    DeploymentError,
    DeploymentInProgressError,
    DeployTimeoutError,
    DiffConflictError,
    UploadError,
)
from skiff.models.artifact import BuildArtifact
from skiff.models.changeset import Changeset
from skiff.models.deployment import (
    BackendStatus,
    DeployOutcome,
    DeployPhase,
    StatusResult,
)
from skiff.models.deployment_state import DeployedState, VersionEntry
from skiff.models.manifest import ProjectManifest
from skiff.models.resources import ResourceModel
from skiff.models.settings import SkiffSettings
from skiff.models.workload import WorkloadDeclaration, WorkloadKind
from skiff.template.generator import render_template

Factory = Callable[..., WorkloadDeclaration]

SETTINGS = SkiffSettings(
    poll_interval=1.0,
    poll_max_interval=4.0,
    poll_timeout=30.0,
    upload_attempts=3,
    upload_retry_delay=0.5,
)


def _artifact(tmp_path: Path, function: str, content_hash: str) -> BuildArtifact:
    path = tmp_path / "bundles" / f"{content_hash}.zip"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(f"bundle {content_hash}".encode())
    return BuildArtifact(
        function=function,
        content_hash=content_hash,
        size=path.stat().st_size,
        platform="python3.12",
        path=path,
        handler="skiff_handler.handle",
    )


def _status(status: BackendStatus, diagnostic: str | None = None) -> StatusResult:
    return StatusResult(deploy_id="d-1", status=status, diagnostic=diagnostic)


def _mock_backend() -> MagicMock:
    backend = MagicMock(spec=BaseBackend)
    backend.has_artifact.return_value = False
    backend.upload_artifact.side_effect = lambda h, data: f"artifacts/{h}.zip"
    backend.submit_deploy.return_value = "d-1"
    backend.get_deploy_status.return_value = _status(BackendStatus.SUCCEEDED)
    backend.commit_state.return_value = VersionEntry(
        version=1, deploy_id="d-1", created_at=datetime.now(timezone.utc), active=True
    )
    return backend


def _executor(backend: BaseBackend, **kwargs: object) -> DeploymentExecutor:
    kwargs.setdefault("sleep", lambda seconds: None)
    return DeploymentExecutor(backend, SETTINGS, **kwargs)  # type: ignore[arg-type]


class Project:
    """A two-function project whose artifacts can be rebuilt with new hashes."""

    def __init__(self, tmp_path: Path, declaration_factory: Factory) -> None:
        self.tmp_path = tmp_path
        self.declaration_factory = declaration_factory
        self.configure()

    def configure(self, environment: dict[str, str] | None = None) -> None:
        """Rebuild the resource model with a new api environment."""
        self.model: ResourceModel = build_resource_model(
            "demo",
            [
                self.declaration_factory(
                    "api", queues=["jobs"], environment=environment
                ),
                self.declaration_factory("jobs", WorkloadKind.WORKER),
            ],
            ProjectManifest(),
            {},
        )

    def artifacts(self, suffix: str = "1") -> dict[str, BuildArtifact]:
        return {
            name: _artifact(self.tmp_path, name, f"{name}-{suffix}")
            for name in ("api", "jobs")
        }

    def plan(
        self, deployed: DeployedState, artifacts: dict[str, BuildArtifact]
    ) -> tuple[Changeset, str]:
        changeset = compute_changeset(deployed, self.model, artifacts)
        return changeset, render_template(changeset, self.model)


@pytest.fixture
def project(tmp_path: Path, declaration_factory: Factory) -> Project:
    return Project(tmp_path, declaration_factory)


@pytest.fixture
def backend(tmp_path: Path) -> LocalBackend:
    return LocalBackend(tmp_path / "backend")


def _deploy(
    executor: DeploymentExecutor,
    backend: BaseBackend,
    project: Project,
    suffix: str,
    **kwargs: object,
) -> DeployOutcome:
    artifacts = project.artifacts(suffix)
    changeset, template = project.plan(backend.get_deployed_state("demo"), artifacts)
    return executor.deploy(
        changeset, template, artifacts, **kwargs  # type: ignore[arg-type]
    )


class TestFullDeploy:
    """Tests for full deploys against the local backend."""

    def test_first_deploy_records_version_one(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)

        outcome = _deploy(executor, backend, project, "1", message="initial")

        assert outcome.phase == DeployPhase.SUCCEEDED
        assert outcome.version == 1
        assert outcome.uploaded == ["api-1", "jobs-1"]
        assert executor.phase_history == [
            DeployPhase.PLANNED,
            DeployPhase.UPLOADING,
            DeployPhase.SUBMITTED,
            DeployPhase.SUCCEEDED,
        ]
        state = backend.get_deployed_state("demo")
        assert state.version == 1
        assert state.template_hash is not None
        assert state.workloads["jobs"].resource_ids["queue"] == "local:queue:demo-jobs"
        [entry] = backend.list_versions("demo")
        assert entry.message == "initial"
        assert entry.active

    def test_unchanged_artifacts_are_not_uploaded_again(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")
        project.configure(environment={"MODE": "fast"})

        outcome = _deploy(executor, backend, project, "1")

        assert [str(c) for c in outcome.changes] == ["update/full: api"]
        assert outcome.uploaded == []
        assert outcome.skipped_uploads == ["api-1"]
        assert outcome.version == 2

    def test_stale_plan_is_rejected(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        stale, template = project.plan(
            backend.get_deployed_state("demo"), project.artifacts("1")
        )
        _deploy(executor, backend, project, "1")

        with pytest.raises(DiffConflictError, match="plan again"):
            executor.deploy(stale, template, project.artifacts("1"))

        assert executor.phase == DeployPhase.FAILED
        assert [v.version for v in backend.list_versions("demo")] == [1]

    def test_commit_carries_base_version(self, project: Project) -> None:
        backend = _mock_backend()
        backend.get_deployed_state.return_value = DeployedState.empty("demo")
        artifacts = project.artifacts("1")
        changeset, template = project.plan(
            DeployedState.empty("demo").model_copy(update={"version": 4}), artifacts
        )

        _executor(backend).deploy(changeset, template, artifacts)

        assert backend.commit_state.call_args.kwargs["base_version"] == 4

    def test_empty_changeset_touches_nothing(self) -> None:
        backend = _mock_backend()
        changeset = Changeset(
            project="demo", target_state=DeployedState.empty("demo")
        )

        outcome = _executor(backend).deploy(changeset, "{}", {})

        assert outcome.phase == DeployPhase.SUCCEEDED
        assert outcome.version is None
        assert outcome.message == "No changes"
        backend.submit_deploy.assert_not_called()
        backend.commit_state.assert_not_called()

    def test_backend_failure_keeps_state_and_versions(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")
        before = backend.get_deployed_state("demo")

        backend.get_deploy_status = MagicMock(  # type: ignore[method-assign]
            return_value=_status(BackendStatus.FAILED, "quota exceeded")
        )
        with pytest.raises(BackendError) as exc_info:
            _deploy(executor, backend, project, "2")

        assert exc_info.value.diagnostic == "quota exceeded"
        assert executor.phase == DeployPhase.FAILED
        assert backend.get_deployed_state("demo") == before
        assert [v.version for v in backend.list_versions("demo")] == [1]

    def test_missing_artifact_is_an_error(self, project: Project) -> None:
        backend = _mock_backend()
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)
        del artifacts["jobs"]

        with pytest.raises(DeploymentError, match="No built artifact"):
            _executor(backend).deploy(changeset, template, artifacts)

        backend.submit_deploy.assert_not_called()


class TestUploads:
    """Tests for upload retries and failures."""

    def test_transient_failure_is_retried(self, project: Project) -> None:
        backend = _mock_backend()
        calls: dict[str, int] = {}

        def flaky(content_hash: str, data: bytes) -> str:
            calls[content_hash] = calls.get(content_hash, 0) + 1
            if content_hash == "api-1" and calls[content_hash] == 1:
                raise UploadError("503 Service Unavailable")
            return f"artifacts/{content_hash}.zip"

        backend.upload_artifact.side_effect = flaky
        sleep = MagicMock()
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        outcome = _executor(backend, sleep=sleep).deploy(
            changeset, template, artifacts
        )

        assert outcome.phase == DeployPhase.SUCCEEDED
        assert calls == {"api-1": 2, "jobs-1": 1}
        sleep.assert_called_once_with(0.5)

    def test_exhausted_retries_name_the_function(self, project: Project) -> None:
        backend = _mock_backend()

        def failing(content_hash: str, data: bytes) -> str:
            if content_hash == "api-1":
                raise UploadError("503 Service Unavailable")
            return f"artifacts/{content_hash}.zip"

        backend.upload_artifact.side_effect = failing
        executor = _executor(backend)
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(UploadError) as exc_info:
            executor.deploy(changeset, template, artifacts)

        assert list(exc_info.value.failed) == ["api"]
        assert executor.phase == DeployPhase.FAILED
        backend.submit_deploy.assert_not_called()

    def test_stored_artifacts_are_skipped(self, project: Project) -> None:
        backend = _mock_backend()
        backend.has_artifact.side_effect = lambda h: h == "jobs-1"
        executor = _executor(backend)
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        outcome = executor.deploy(changeset, template, artifacts)

        assert outcome.uploaded == ["api-1"]
        assert outcome.skipped_uploads == ["jobs-1"]


class TestPolling:
    """Tests for status polling, timeout and cancellation."""

    def test_poll_interval_backs_off(self, project: Project) -> None:
        backend = _mock_backend()
        backend.get_deploy_status.side_effect = [
            _status(BackendStatus.PENDING),
            _status(BackendStatus.IN_PROGRESS),
            _status(BackendStatus.IN_PROGRESS),
            _status(BackendStatus.IN_PROGRESS),
            _status(BackendStatus.SUCCEEDED),
        ]
        sleep = MagicMock()
        executor = _executor(backend, sleep=sleep, clock=lambda: 0.0)
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        executor.deploy(changeset, template, artifacts)

        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0, 4.0, 4.0]
        assert DeployPhase.IN_PROGRESS in executor.phase_history

    def test_timeout_reports_unknown_outcome(self, project: Project) -> None:
        backend = _mock_backend()
        backend.get_deploy_status.return_value = _status(BackendStatus.IN_PROGRESS)
        ticks = itertools.count(0, 10)
        executor = _executor(backend, clock=lambda: float(next(ticks)))
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(DeployTimeoutError) as exc_info:
            executor.deploy(changeset, template, artifacts)

        assert exc_info.value.exit_code == 5
        assert "skiff versions" in str(exc_info.value)
        assert executor.phase == DeployPhase.FAILED
        backend.commit_state.assert_not_called()

    def test_cancel_before_submission(self, project: Project) -> None:
        backend = _mock_backend()
        event = threading.Event()
        event.set()
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(DeploymentCancelledError):
            _executor(backend, cancel_event=event).deploy(
                changeset, template, artifacts
            )

        backend.submit_deploy.assert_not_called()

    def test_cancel_while_in_progress(self, project: Project) -> None:
        backend = _mock_backend()
        event = threading.Event()

        def status(deploy_id: str) -> StatusResult:
            if not event.is_set():
                event.set()
                return _status(BackendStatus.IN_PROGRESS)
            return _status(BackendStatus.CANCELLED)

        backend.get_deploy_status.side_effect = status
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(DeploymentCancelledError):
            _executor(backend, cancel_event=event).deploy(
                changeset, template, artifacts
            )

        backend.cancel_deploy.assert_called_once_with("d-1")
        backend.commit_state.assert_not_called()


class TestHotswap:
    """Tests for hotswap deploys."""

    def test_hotswap_records_no_version(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")

        outcome = _deploy(executor, backend, project, "2", hotswap=True)

        assert outcome.hotswap
        assert outcome.version is None
        assert [v.version for v in backend.list_versions("demo")] == [1]
        state = backend.get_deployed_state("demo")
        assert state.workloads["api"].artifact_hash == "api-2"
        assert backend.fetch_stats("demo", "api")["hotswaps"] == 1

    def test_hotswap_refused_for_config_changes(self, project: Project) -> None:
        backend = _mock_backend()
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(DeploymentError, match="full deploy"):
            _executor(backend).deploy(changeset, template, artifacts, hotswap=True)

        backend.upload_artifact.assert_not_called()


class TestRollback:
    """Tests for rollbacks."""

    def test_rollback_to_previous_version(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")
        _deploy(executor, backend, project, "2")

        outcome = executor.rollback("demo")

        assert outcome.phase == DeployPhase.ROLLED_BACK
        assert outcome.version == 1
        state = backend.get_deployed_state("demo")
        assert state.workloads["api"].artifact_hash == "api-1"
        active = [v.version for v in backend.list_versions("demo") if v.active]
        assert active == [1]

    def test_nothing_to_roll_back_to(
        self, backend: LocalBackend, project: Project
    ) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")

        with pytest.raises(DeploymentError, match="Nothing to roll back to"):
            executor.rollback("demo")

    def test_unknown_version(self, backend: LocalBackend, project: Project) -> None:
        executor = _executor(backend)
        _deploy(executor, backend, project, "1")

        with pytest.raises(DeploymentError, match="Version 7 does not exist"):
            executor.rollback("demo", 7)


class TestLocking:
    """Tests for the client-side project lock."""

    def test_held_lock_rejects_second_deploy(
        self, tmp_path: Path, project: Project
    ) -> None:
        backend = _mock_backend()
        lock_path = tmp_path / "deploy.lock"
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with ProjectLock(lock_path, "demo"):
            with pytest.raises(DeploymentInProgressError):
                _executor(backend, lock_path=lock_path).deploy(
                    changeset, template, artifacts
                )

        backend.upload_artifact.assert_not_called()
        assert not lock_path.exists()

    def test_lock_released_after_failure(
        self, tmp_path: Path, project: Project
    ) -> None:
        backend = _mock_backend()
        backend.get_deploy_status.return_value = _status(BackendStatus.FAILED)
        lock_path = tmp_path / "deploy.lock"
        artifacts = project.artifacts("1")
        changeset, template = project.plan(DeployedState.empty("demo"), artifacts)

        with pytest.raises(BackendError):
            _executor(backend, lock_path=lock_path).deploy(
                changeset, template, artifacts
            )

        assert not lock_path.exists()


class TestDefaultRollbackTarget:
    """Tests for default_rollback_target."""

    @staticmethod
    def _entry(version: int, active: bool = False) -> VersionEntry:
        return VersionEntry(
            version=version,
            deploy_id=f"d-{version}",
            created_at=datetime.now(timezone.utc),
            active=active,
        )

    def test_previous_version(self) -> None:
        versions = [self._entry(1), self._entry(2), self._entry(3, active=True)]

        assert default_rollback_target(versions) == 2

    def test_after_a_rollback(self) -> None:
        versions = [self._entry(1), self._entry(2, active=True), self._entry(3)]

        assert default_rollback_target(versions) == 1

    def test_no_history(self) -> None:
        assert default_rollback_target([]) is None
        assert default_rollback_target([self._entry(1, active=True)]) is None
