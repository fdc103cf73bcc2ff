"""Scenario tests for SkiffEngine against the local backend."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from skiff.config.context import CommandContext
from skiff.deploy.backends.base import BaseBackend
from skiff.deploy.backends.http import HttpBackend
from skiff.deploy.lock import ProjectLock
from skiff.engine import SkiffEngine
from skiff.lib.errors import (
    BackendError,
    BuildError,
    DeploymentError,
    DeploymentInProgressError,
    DiffConflictError,
    ValidationError,
)

GREETER_SOURCE = '''\
from skiff import endpoint


@endpoint(url_path="/hello", name="hello-endpoint")
def hello(request, secrets, config):
    body = request.json() or {}
    return {"message": "Hello, " + body.get("name", "world") + "!"}
'''

WORKER_SOURCE = """\
from skiff import worker


@worker(name="jobs", fifo=True)
def jobs(records, secrets, config):
    return len(records)
"""

STAGED_SOURCE = """\
from skiff import cron


@cron(
    schedule="rate(1 hour)",
    name="report",
    environment={"STAGE": "${STAGE}", "MODE": "fast"},
)
def report(secrets, config):
    return config.environment
"""

STAGED_MANIFEST = """\
project:
  name: demo
variables:
  STAGE: prod
"""

BROKEN_IMPORT_SOURCE = """\
from skiff import cron

from build import helpers


@cron(schedule="rate(1 hour)", name="nightly")
def nightly(secrets, config):
    return helpers.run()
"""

LoadContext = Callable[..., CommandContext]


@pytest.fixture
def engine_for(load_context: LoadContext) -> Callable[..., SkiffEngine]:
    """Fresh engine per call, so every step rediscovers the source."""

    def _make(root: Path, environ: dict[str, str] | None = None) -> SkiffEngine:
        return SkiffEngine(load_context(root, environ))

    return _make


@pytest.fixture
def project(make_project: Callable[..., Path]) -> Path:
    return make_project({"app.py": GREETER_SOURCE})


class TestDeployLifecycle:
    """Deploy, redeploy, hotswap and rollback of one project."""

    def test_first_deploy_records_version(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        result = engine_for(project).deploy()

        assert result.outcome.version == 1
        assert [c.target for c in result.outcome.changes] == ["hello-endpoint"]
        assert not result.warnings

        engine = engine_for(project)
        [entry] = engine.versions()
        assert entry.active
        assert any("deployed" in line for line in engine.logs("hello-endpoint"))

    def test_redeploy_without_changes(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()

        result = engine_for(project).deploy()

        assert result.plan.is_empty
        assert result.outcome.version is None
        assert len(engine_for(project).versions()) == 1

    def test_code_change_hotswaps(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        app = project / "src" / "app.py"
        app.write_text(GREETER_SOURCE.replace("Hello, ", "Hi, "), encoding="utf-8")

        result = engine_for(project).deploy(hotswap=True)

        assert result.outcome.hotswap
        assert result.outcome.version is None
        engine = engine_for(project)
        assert len(engine.versions()) == 1
        assert engine.stats("hello-endpoint")["hotswaps"] == 1
        assert engine.plan().is_empty

    def test_config_change_ignores_hotswap(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        app = project / "src" / "app.py"
        app.write_text(GREETER_SOURCE.replace('"/hello"', '"/hi"'), encoding="utf-8")

        result = engine_for(project).deploy(hotswap=True)

        assert result.warnings == ["Changes need a full deploy; ignoring --hotswap"]
        assert not result.outcome.hotswap
        assert result.outcome.version == 2

    def test_rollback_to_previous_version(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        app = project / "src" / "app.py"
        app.write_text(GREETER_SOURCE.replace('"/hello"', '"/hi"'), encoding="utf-8")
        engine_for(project).deploy()

        outcome = engine_for(project).rollback()

        assert outcome.version == 1
        engine = engine_for(project)
        assert [v.active for v in engine.versions()] == [True, False]
        assert engine.backend.get_deployed_state("demo").version == 1

    def test_rollback_without_history(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        with pytest.raises(DeploymentError, match="Nothing to roll back to"):
            engine_for(project).rollback()


class TestPartialAndFailedBuilds:
    """Deploying a subset, and deploying around build failures."""

    def test_partial_deploy_leaves_others_alone(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        root = make_project({"app.py": GREETER_SOURCE, "jobs.py": WORKER_SOURCE})

        result = engine_for(root).deploy(["jobs"])

        assert [c.target for c in result.outcome.changes] == ["jobs"]
        state = engine_for(root).backend.get_deployed_state("demo")
        assert set(state.workloads) == {"jobs"}

    def test_unknown_function(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            engine_for(project).deploy(["nope"])

        assert [v.rule for v in exc_info.value.violations] == ["unknown-function"]

    def test_failed_build_does_not_block_others(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        root = make_project(
            {
                "app.py": GREETER_SOURCE,
                "nightly.py": BROKEN_IMPORT_SOURCE,
                "build/helpers.py": "def run(:\n",
            }
        )

        result = engine_for(root).deploy()

        assert list(result.plan.build.errors) == ["nightly"]
        assert result.outcome.version == 1
        state = engine_for(root).backend.get_deployed_state("demo")
        assert set(state.workloads) == {"hello-endpoint"}


class TestValidationBeforeBuild:
    """Invalid projects fail before anything is built."""

    def test_secret_conflict_builds_nothing(
        self, make_project: Callable[..., Path], load_context: LoadContext
    ) -> None:
        root = make_project(
            {"app.py": GREETER_SOURCE}, files={".env.secrets": "API_KEY=one\n"}
        )

        with pytest.raises(ValidationError) as exc_info:
            load_context(root, {"SKIFF_SECRET_API_KEY": "two"})

        assert exc_info.value.violations[0].rule == "secret-conflict"
        assert not (root / ".skiff").exists()

    def test_dangling_secret_reference(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        source = GREETER_SOURCE.replace(
            'name="hello-endpoint"', 'name="hello-endpoint", secrets=["API_KEY"]'
        )
        root = make_project({"app.py": source})
        engine = engine_for(root)

        with pytest.raises(ValidationError) as exc_info:
            engine.build()

        assert exc_info.value.violations[0].rule == "secret-ref"
        assert not (root / ".skiff" / "build").exists()


class TestInvoke:
    """Local invocation through the engine."""

    def test_invoke_endpoint(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        result = engine_for(project).invoke(
            "hello-endpoint", payload='{"name": "John"}'
        )

        assert result.ok
        assert result.value["body"] == {"message": "Hello, John!"}

    def test_invoke_function_that_does_not_build(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        root = make_project(
            {"nightly.py": BROKEN_IMPORT_SOURCE, "build/helpers.py": "def run(:\n"}
        )

        with pytest.raises(BuildError) as exc_info:
            engine_for(root).invoke("nightly")

        assert exc_info.value.function == "nightly"

    def test_logs_of_unknown_function(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        with pytest.raises(ValidationError, match="No workload named 'ghost'"):
            engine_for(project).logs("ghost")


class TestConcurrentDeploys:
    """Deploys of one project cannot overwrite each other's state."""

    def test_stale_plan_is_rejected(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        root = make_project({"app.py": GREETER_SOURCE, "jobs.py": WORKER_SOURCE})
        late = engine_for(root)
        stale = late.plan(["hello-endpoint"])

        first = engine_for(root).deploy()

        with pytest.raises(DiffConflictError, match="plan again"):
            late.executor().deploy(
                stale.changeset, stale.template, stale.build.artifacts
            )
        engine = engine_for(root)
        state = engine.backend.get_deployed_state("demo")
        assert first.outcome.version == 1
        assert set(state.workloads) == {"hello-endpoint", "jobs"}
        assert len(engine.versions()) == 1

    def test_lock_is_held_while_planning(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine = engine_for(project)

        with ProjectLock(engine.lock_path, "demo"):
            with pytest.raises(DeploymentInProgressError):
                engine.deploy()

        assert not (project / ".skiff" / "build").exists()
        assert engine.versions() == []

    def test_unpolled_submission_does_not_block(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine = engine_for(project)
        plan = engine.plan()
        engine.backend.submit_deploy(
            project="demo",
            template=plan.template,
            changeset=plan.changeset,
            artifact_refs={},
        )

        result = engine_for(project).deploy()

        assert result.outcome.version == 1
        [entry] = engine_for(project).versions()
        assert entry.deploy_id == result.outcome.deploy_id


class TestDestroy:
    """Project teardown."""

    def test_destroy_records_empty_version(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()

        outcome = engine_for(project).destroy()

        assert outcome.version == 2
        assert [str(c) for c in outcome.changes] == ["delete/full: hello-endpoint"]
        engine = engine_for(project)
        assert engine.backend.get_deployed_state("demo").is_empty
        assert any("deleted" in line for line in engine.logs("hello-endpoint"))

    def test_rollback_restores_destroyed_project(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        engine_for(project).destroy()

        engine_for(project).rollback()

        state = engine_for(project).backend.get_deployed_state("demo")
        assert set(state.workloads) == {"hello-endpoint"}

    def test_nothing_deployed(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        outcome = engine_for(project).destroy()

        assert outcome.version is None
        assert engine_for(project).versions() == []


class TestStartStop:
    """Taking deployed functions out of service and back."""

    def test_stop_then_start(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        engine = engine_for(project)

        assert engine.stop("hello-endpoint") is True
        assert engine.stop("hello-endpoint") is False
        assert engine.stats("hello-endpoint")["enabled"] is False
        assert engine.start("hello-endpoint") is True
        assert engine.stats("hello-endpoint")["enabled"] is True

    def test_stopped_function_answers_unavailable(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        engine = engine_for(project)
        engine.stop("hello-endpoint")

        response = engine.invoke_remote("hello-endpoint")

        assert response.status == 503
        assert not response.ok

    def test_running_function_has_no_local_endpoint(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()

        with pytest.raises(BackendError, match="no deployed endpoints"):
            engine_for(project).invoke_remote("hello-endpoint")

    def test_undeployed_function(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        with pytest.raises(DeploymentError, match="not deployed"):
            engine_for(project).stop("hello-endpoint")

    def test_redeploy_keeps_function_stopped(
        self, project: Path, engine_for: Callable[..., SkiffEngine]
    ) -> None:
        engine_for(project).deploy()
        engine_for(project).stop("hello-endpoint")
        app = project / "src" / "app.py"
        app.write_text(GREETER_SOURCE.replace('"/hello"', '"/hi"'), encoding="utf-8")

        engine_for(project).deploy()

        assert engine_for(project).stats("hello-endpoint")["enabled"] is False


class TestEnvs:
    """Environment listing of declared and deployed functions."""

    def test_declared_and_deployed(
        self,
        make_project: Callable[..., Path],
        engine_for: Callable[..., SkiffEngine],
    ) -> None:
        root = make_project(
            {"report.py": STAGED_SOURCE, "app.py": GREETER_SOURCE},
            manifest=STAGED_MANIFEST,
        )
        expected = {"report": {"STAGE": "prod", "MODE": "fast"}}

        assert engine_for(root).envs() == expected
        assert engine_for(root).envs(remote=True) == {}

        engine_for(root).deploy()

        assert engine_for(root).envs(remote=True) == expected


class TestClose:
    """Releasing the backend."""

    def test_closes_backend_it_created(
        self, project: Path, load_context: LoadContext
    ) -> None:
        context = load_context(
            project,
            {"SKIFF_BACKEND": "http", "SKIFF_BACKEND_URL": "https://deploy.test"},
        )
        engine = SkiffEngine(context)
        backend = engine.backend
        assert isinstance(backend, HttpBackend)

        engine.close()

        assert backend._client.is_closed

    def test_leaves_given_backend_open(
        self, project: Path, load_context: LoadContext
    ) -> None:
        backend = MagicMock(spec=BaseBackend)

        SkiffEngine(load_context(project), backend=backend).close()

        backend.close.assert_not_called()
