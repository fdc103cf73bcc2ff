"""Unit tests for changeset computation."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from skiff.diff.engine import DiffEngine, compute_changeset, destroy_changeset
from skiff.discovery.model import build_resource_model
from skiff.lib.errors import DiffConflictError, ValidationError
from skiff.models.artifact import BuildArtifact
from skiff.models.changeset import ChangeKind, ChangeMode, Changeset, TargetType
from skiff.models.deployment_state import DeployedState
from skiff.models.manifest import (
    CustomDomain,
    DatabaseBinding,
    DatabaseEngine,
    ProjectManifest,
)
from skiff.models.resources import ResourceModel
from skiff.models.workload import WorkloadDeclaration, WorkloadKind

Factory = Callable[..., WorkloadDeclaration]
ArtifactFactory = Callable[[str, str], BuildArtifact]


def _model(
    *declarations: WorkloadDeclaration,
    manifest: ProjectManifest | None = None,
    secrets: dict[str, str] | None = None,
) -> ResourceModel:
    return build_resource_model(
        "demo", declarations, manifest or ProjectManifest(), secrets or {}
    )


def _applied(changeset: Changeset) -> DeployedState:
    return changeset.target_state.model_copy(update={"version": 1})


def _kinds(changeset: Changeset) -> list[tuple[str, str, str]]:
    return [(c.target, c.kind.value, c.mode.value) for c in changeset.changes]


class TestFirstDeploy:
    """Tests against an empty deployed state."""

    def test_hello_endpoint_is_created(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(declaration_factory("hello-endpoint", url_path="/hello"))

        changeset = compute_changeset(
            DeployedState.empty("demo"),
            model,
            {"hello-endpoint": artifact_factory("hello-endpoint", "h1")},
        )

        [change] = changeset.changes
        assert change.target == "hello-endpoint"
        assert change.kind == ChangeKind.CREATE
        assert change.mode == ChangeMode.FULL
        assert change.reason == "not deployed yet"
        assert change.artifact_hash == "h1"
        assert changeset.target_state.workloads["hello-endpoint"].artifact_hash == "h1"

    def test_resources_come_before_workloads(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(
            declaration_factory("api", queues=["jobs"], secrets=("KEY",)),
            declaration_factory("jobs", WorkloadKind.WORKER),
            manifest=ProjectManifest(
                database=DatabaseBinding(name="main"),
                domains=[CustomDomain(name="api.example.com")],
            ),
            secrets={"KEY": "v"},
        )
        artifacts = {
            "api": artifact_factory("api", "a1"),
            "jobs": artifact_factory("jobs", "j1"),
        }

        changeset = compute_changeset(DeployedState.empty("demo"), model, artifacts)

        assert [c.target for c in changeset.changes] == [
            "database:main",
            "domain:api.example.com",
            "secrets:demo",
            "jobs",
            "api",
        ]
        assert changeset.changes[0].target_type == TargetType.RESOURCE

    def test_failed_build_is_skipped(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(declaration_factory("a"), declaration_factory("b"))

        changeset = compute_changeset(
            DeployedState.empty("demo"), model, {"a": artifact_factory("a", "a1")}
        )

        assert [c.target for c in changeset.changes] == ["a"]
        assert "b" not in changeset.target_state.workloads


class TestRedeploy:
    """Tests against a previously applied state."""

    def test_unchanged_project_has_no_changes(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(
            declaration_factory("api"),
            manifest=ProjectManifest(database=DatabaseBinding(name="main")),
        )
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = _applied(
            compute_changeset(DeployedState.empty("demo"), model, artifacts)
        )

        changeset = compute_changeset(deployed, model, artifacts)

        assert changeset.is_empty
        assert changeset.base_version == 1
        assert changeset.target_state.workloads == deployed.workloads
        assert changeset.target_state.resources == deployed.resources

    def test_code_only_change_is_hotswap(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(declaration_factory("api"))
        first = {"api": artifact_factory("api", "a1")}
        deployed = _applied(
            compute_changeset(DeployedState.empty("demo"), model, first)
        )

        changeset = compute_changeset(
            deployed, model, {"api": artifact_factory("api", "a2")}
        )

        assert _kinds(changeset) == [("api", "update", "hotswap")]
        assert changeset.is_hotswap_only
        assert changeset.changes[0].reason == "code changed"

    def test_schedule_change_is_full_update(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        before = _model(
            declaration_factory("tick", WorkloadKind.CRON, schedule="rate(1 day)")
        )
        after = _model(
            declaration_factory("tick", WorkloadKind.CRON, schedule="rate(2 days)")
        )
        artifacts = {"tick": artifact_factory("tick", "t1")}
        deployed = _applied(
            compute_changeset(DeployedState.empty("demo"), before, artifacts)
        )

        changeset = compute_changeset(deployed, after, artifacts)

        assert _kinds(changeset) == [("tick", "update", "full")]
        assert not changeset.is_hotswap_only

    def test_environment_change_is_full_update(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = _applied(
            compute_changeset(
                DeployedState.empty("demo"),
                _model(declaration_factory("api", environment={"MODE": "a"})),
                artifacts,
            )
        )

        changeset = compute_changeset(
            deployed,
            _model(declaration_factory("api", environment={"MODE": "b"})),
            artifacts,
        )

        assert _kinds(changeset) == [("api", "update", "full")]

    def test_variable_change_reaches_workloads(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        declaration = declaration_factory("api", environment={"URL": "${BASE}"})
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = _applied(
            compute_changeset(
                DeployedState.empty("demo"),
                _model(declaration, manifest=ProjectManifest(variables={"BASE": "x"})),
                artifacts,
            )
        )

        changeset = compute_changeset(
            deployed,
            _model(declaration, manifest=ProjectManifest(variables={"BASE": "y"})),
            artifacts,
        )

        assert _kinds(changeset) == [("api", "update", "full")]
        resolved = changeset.target_state.workloads["api"].declaration
        assert resolved.environment == {"URL": "y"}

    def test_removed_workload_and_resource_are_deleted_last(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {
            "a": artifact_factory("a", "a1"),
            "b": artifact_factory("b", "b1"),
        }
        deployed = _applied(
            compute_changeset(
                DeployedState.empty("demo"),
                _model(
                    declaration_factory("a"),
                    declaration_factory("b"),
                    manifest=ProjectManifest(
                        domains=[CustomDomain(name="old.example.com")]
                    ),
                ),
                artifacts,
            )
        )

        changeset = compute_changeset(
            deployed,
            _model(declaration_factory("a")),
            {"a": artifact_factory("a", "a2")},
        )

        assert _kinds(changeset) == [
            ("a", "update", "hotswap"),
            ("b", "delete", "full"),
            ("domain:old.example.com", "delete", "full"),
        ]
        assert "b" not in changeset.target_state.workloads
        assert changeset.target_state.resources == {}

    def test_secret_value_change_updates_secrets_resource(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        declaration = declaration_factory("api", secrets=("KEY",))
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = _applied(
            compute_changeset(
                DeployedState.empty("demo"),
                _model(declaration, secrets={"KEY": "one"}),
                artifacts,
            )
        )

        changeset = compute_changeset(
            deployed, _model(declaration, secrets={"KEY": "two"}), artifacts
        )

        assert _kinds(changeset) == [("secrets:demo", "update", "full")]
        assert changeset.changes[0].reason == "secrets changed"


class TestConflicts:
    """Tests for states that cannot be reconciled."""

    def _deployed(
        self, model: ResourceModel, artifacts: dict[str, BuildArtifact]
    ) -> DeployedState:
        return _applied(
            compute_changeset(DeployedState.empty("demo"), model, artifacts)
        )

    def test_kind_change(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {"job": artifact_factory("job", "j1")}
        deployed = self._deployed(_model(declaration_factory("job")), artifacts)

        with pytest.raises(DiffConflictError, match="kind changed"):
            compute_changeset(
                deployed,
                _model(declaration_factory("job", WorkloadKind.WORKER)),
                artifacts,
            )

    def test_fifo_switch_on_same_queue(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {"job": artifact_factory("job", "j1")}
        deployed = self._deployed(
            _model(declaration_factory("job", WorkloadKind.WORKER)), artifacts
        )

        with pytest.raises(DiffConflictError, match="fifo"):
            compute_changeset(
                deployed,
                _model(declaration_factory("job", WorkloadKind.WORKER, fifo=True)),
                artifacts,
            )

    def test_database_engine_change(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = self._deployed(
            _model(
                declaration_factory("api"),
                manifest=ProjectManifest(database=DatabaseBinding(name="main")),
            ),
            artifacts,
        )
        kv = DatabaseBinding(name="main", engine=DatabaseEngine.KV)

        with pytest.raises(DiffConflictError, match="engine cannot change"):
            compute_changeset(
                deployed,
                _model(
                    declaration_factory("api"),
                    manifest=ProjectManifest(database=kv),
                ),
                artifacts,
            )

    def test_database_rename(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {"api": artifact_factory("api", "a1")}
        deployed = self._deployed(
            _model(
                declaration_factory("api"),
                manifest=ProjectManifest(database=DatabaseBinding(name="main")),
            ),
            artifacts,
        )

        with pytest.raises(DiffConflictError, match="would be replaced"):
            compute_changeset(
                deployed,
                _model(
                    declaration_factory("api"),
                    manifest=ProjectManifest(database=DatabaseBinding(name="other")),
                ),
                artifacts,
            )


class TestPartialDeploy:
    """Tests for changesets restricted to named functions."""

    def test_only_named_functions_change(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(
            declaration_factory("a"),
            declaration_factory("b"),
            manifest=ProjectManifest(
                database=DatabaseBinding(name="main"),
                domains=[CustomDomain(name="api.example.com")],
            ),
        )
        artifacts = {
            "a": artifact_factory("a", "a1"),
            "b": artifact_factory("b", "b1"),
        }

        changeset = DiffEngine(DeployedState.empty("demo"), model, artifacts).compute(
            ["a"]
        )

        assert [c.target for c in changeset.changes] == ["database:main", "a"]
        assert set(changeset.target_state.workloads) == {"a"}

    def test_undeployed_functions_are_kept(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        artifacts = {
            "a": artifact_factory("a", "a1"),
            "b": artifact_factory("b", "b1"),
        }
        model = _model(declaration_factory("a"), declaration_factory("b"))
        deployed = _applied(
            compute_changeset(DeployedState.empty("demo"), model, artifacts)
        )

        changeset = compute_changeset(
            deployed,
            _model(declaration_factory("a")),
            {"a": artifact_factory("a", "a2")},
            only=["a"],
        )

        assert _kinds(changeset) == [("a", "update", "hotswap")]
        assert set(changeset.target_state.workloads) == {"a", "b"}

    def test_unknown_function(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(declaration_factory("a"))

        with pytest.raises(ValidationError) as exc_info:
            compute_changeset(DeployedState.empty("demo"), model, {}, only=["nope"])

        assert exc_info.value.violations[0].rule == "unknown-function"

    def test_queue_of_undeployed_worker_is_a_conflict(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(
            declaration_factory("api", queues=["jobs"]),
            declaration_factory("jobs", WorkloadKind.WORKER),
        )
        artifacts = {
            "api": artifact_factory("api", "a1"),
            "jobs": artifact_factory("jobs", "j1"),
        }

        with pytest.raises(DiffConflictError, match="jobs"):
            compute_changeset(
                DeployedState.empty("demo"), model, artifacts, only=["api"]
            )


class TestDestroy:
    """Tests for the changeset tearing down a whole project."""

    def test_workloads_go_before_resources(
        self, declaration_factory: Factory, artifact_factory: ArtifactFactory
    ) -> None:
        model = _model(
            declaration_factory("web"),
            declaration_factory("api"),
            manifest=ProjectManifest(database=DatabaseBinding(name="main")),
        )
        artifacts = {
            "web": artifact_factory("web", "w1"),
            "api": artifact_factory("api", "a1"),
        }
        deployed = _applied(
            compute_changeset(DeployedState.empty("demo"), model, artifacts)
        )

        changeset = destroy_changeset(deployed)

        assert _kinds(changeset) == [
            ("api", "delete", "full"),
            ("web", "delete", "full"),
            ("database:main", "delete", "full"),
        ]
        assert changeset.base_version == 1
        assert changeset.target_state.workloads == {}
        assert changeset.target_state.resources == {}
        assert not changeset.is_hotswap_only

    def test_nothing_deployed(self) -> None:
        changeset = destroy_changeset(DeployedState.empty("demo"))

        assert changeset.is_empty
        assert changeset.base_version is None
