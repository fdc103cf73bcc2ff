"""High-level operations behind every skiff command.

SkiffEngine ties discovery, the build pipeline, the diff engine, the
template generator, the deployment executor and local emulation together
for one CommandContext. The CLI is a thin shell over these methods.
"""

from __future__ import annotations

import threading
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from skiff.build.pipeline import BuildPipeline, PipelineResult
from skiff.config.context import CommandContext
from skiff.deploy.backends import create_backend
from skiff.deploy.backends.base import BaseBackend
from skiff.deploy.executor import DeploymentExecutor
from skiff.deploy.lock import LOCK_FILENAME, ProjectLock
from skiff.diff.engine import compute_changeset, destroy_changeset
from skiff.discovery.extractor import extract_declarations
from skiff.discovery.model import build_resource_model
from skiff.emulation.executor import InvocationResult, LocalEmulationExecutor
from skiff.lib.errors import DeploymentError, ValidationError, Violation
from skiff.lib.logging_config import get_logger
from skiff.models.changeset import Changeset
from skiff.models.deployment import DeployOutcome, RemoteResponse
from skiff.models.deployment_state import DeployedState, VersionEntry
from skiff.models.resources import ResourceModel
from skiff.models.workload import WorkloadDeclaration
from skiff.template.generator import render_template

logger = get_logger(__name__)


@dataclass
class DeployPlan:
    """Everything a deploy would apply, computed without side effects.

    Attributes:
        changeset: Ordered changes against the deployed state
        template: Rendered infrastructure template
        build: Build results the changeset was computed from
        deployed: Deployed state the plan starts from
    """

    changeset: Changeset
    template: str
    build: PipelineResult
    deployed: DeployedState

    @property
    def is_empty(self) -> bool:
        return self.changeset.is_empty


@dataclass
class DeployResult:
    """A plan together with the outcome of applying it."""

    plan: DeployPlan
    outcome: DeployOutcome
    warnings: list[str] = field(default_factory=list)


class SkiffEngine:
    """Runs skiff operations for one project.

    Args:
        context: Resolved command context
        backend: Provisioning backend; created from the settings when None
        cancel_event: Set to cancel an in-flight deploy or rollback
    """

    def __init__(
        self,
        context: CommandContext,
        *,
        backend: BaseBackend | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.context = context
        self._backend = backend
        self._owns_backend = backend is None
        self.cancel_event = cancel_event or threading.Event()
        self._declarations: list[WorkloadDeclaration] | None = None
        self._model: ResourceModel | None = None

    @property
    def backend(self) -> BaseBackend:
        if self._backend is None:
            self._backend = create_backend(
                self.context.settings, self.context.state_dir
            )
        return self._backend

    @property
    def project(self) -> str:
        return self.context.project_name

    def close(self) -> None:
        """Release the backend created by this engine."""
        if self._owns_backend and self._backend is not None:
            self._backend.close()
            self._backend = None

    # Discovery and build

    def discover(self) -> list[WorkloadDeclaration]:
        """Extract workload declarations from the project source.

        Raises:
            ValidationError: With every invalid declaration
        """
        if self._declarations is None:
            self._declarations = extract_declarations(self.context.source_dir)
        return list(self._declarations)

    def resource_model(self) -> ResourceModel:
        """Build (once) the resource model of the project."""
        if self._model is None:
            self._model = build_resource_model(
                self.project,
                self.discover(),
                self.context.manifest,
                self.context.secrets,
            )
        return self._model

    def select(self, names: Collection[str] | None) -> list[WorkloadDeclaration]:
        """Return the named declarations, or all of them.

        Raises:
            ValidationError: If a name is not declared
        """
        model = self.resource_model()
        if not names:
            return list(model.workloads)
        known = set(model.names())
        unknown = sorted(set(names) - known)
        if unknown:
            raise ValidationError(
                Violation(
                    location=name,
                    rule="unknown-function",
                    message=f"No workload named '{name}'",
                )
                for name in unknown
            )
        return [w for w in model.workloads if w.name in set(names)]

    def build(self, names: Collection[str] | None = None) -> PipelineResult:
        """Build the selected workloads (all by default).

        Validation runs first, so an invalid project builds nothing.
        """
        declarations = self.select(names)
        settings = self.context.settings
        pipeline = BuildPipeline(
            self.context.source_dir,
            self.context.build_dir,
            workers=settings.build_workers,
        )
        result = pipeline.build(declarations)
        logger.info(
            f"Built {len(result.artifacts)} of {len(declarations)} function(s)"
        )
        return result

    # Plan and deploy

    def plan(self, names: Collection[str] | None = None) -> DeployPlan:
        """Build and diff without touching the backend's resources."""
        build = self.build(names)
        model = self.resource_model()
        deployed = self.backend.get_deployed_state(self.project)
        changeset = compute_changeset(
            deployed, model, build.artifacts, only=list(names) if names else None
        )
        return DeployPlan(
            changeset=changeset,
            template=render_template(changeset, model),
            build=build,
            deployed=deployed,
        )

    def executor(self, *, lock: bool = True) -> DeploymentExecutor:
        """Deployment executor for this project.

        Args:
            lock: Take the project lock per operation; False when the
                caller already holds it
        """
        return DeploymentExecutor(
            self.backend,
            self.context.settings,
            lock_path=self.lock_path if lock else None,
            cancel_event=self.cancel_event,
        )

    @property
    def lock_path(self) -> Path:
        return self.context.state_dir / LOCK_FILENAME

    def deploy(
        self,
        names: Collection[str] | None = None,
        *,
        hotswap: bool = False,
        message: str | None = None,
    ) -> DeployResult:
        """Build, plan and apply.

        The project lock is held from reading the deployed state until the
        new state is recorded, so the plan cannot go stale in between.
        With ``hotswap`` the code of changed functions is swapped in place
        when every change is code-only; otherwise a full deploy runs.

        Raises:
            DeploymentInProgressError: If another deploy holds the project
        """
        with ProjectLock(self.lock_path, self.project):
            plan = self.plan(names)
            warnings: list[str] = []
            use_hotswap = hotswap and plan.changeset.is_hotswap_only
            if hotswap and not plan.is_empty and not use_hotswap:
                warning = "Changes need a full deploy; ignoring --hotswap"
                logger.warning(warning)
                warnings.append(warning)

            outcome = self.executor(lock=False).deploy(
                plan.changeset,
                plan.template,
                plan.build.artifacts,
                hotswap=use_hotswap,
                message=message,
            )
        return DeployResult(plan=plan, outcome=outcome, warnings=warnings)

    def destroy(self, message: str | None = None) -> DeployOutcome:
        """Delete every deployed workload and resource of the project.

        The teardown is recorded as a new, empty version, so it can be
        rolled back like any other deploy.
        """
        with ProjectLock(self.lock_path, self.project):
            deployed = self.backend.get_deployed_state(self.project)
            changeset = destroy_changeset(deployed)
            template = render_template(changeset, ResourceModel(project=self.project))
            logger.info(
                f"Destroying {len(deployed.workloads)} function(s) and "
                f"{len(deployed.resources)} resource(s) of {self.project}"
            )
            return self.executor(lock=False).deploy(
                changeset, template, {}, message=message or "destroy"
            )

    def rollback(self, version: int | None = None) -> DeployOutcome:
        return self.executor().rollback(self.project, version)

    def versions(self) -> list[VersionEntry]:
        return self.backend.list_versions(self.project)

    # Local emulation

    def invoke(
        self,
        name: str,
        *,
        payload: str | None = None,
        headers: Mapping[str, str] | None = None,
        url_path: str | None = None,
        method: str = "POST",
        with_db: bool = False,
        migrations: Path | None = None,
        with_queue: bool = False,
        timeout: float | None = None,
    ) -> InvocationResult:
        """Build one workload and run it locally.

        Raises:
            ValidationError: If the workload is not declared
            BuildError: If the workload does not build
            EmulationError: If local services or the invocation fail
        """
        declaration = self.select([name])[0]
        build = self.build([name])
        if name in build.errors:
            raise build.errors[name]

        emulator = LocalEmulationExecutor(
            self.resource_model(),
            self.context.secrets,
            project_dir=self.context.project_dir,
            timeout=timeout or self.context.settings.invoke_timeout,
        )
        return emulator.invoke(
            declaration,
            build.artifacts[name],
            payload=payload,
            headers=headers,
            url_path=url_path,
            method=method,
            with_db=with_db,
            migrations=migrations,
            with_queue=with_queue,
        )

    # Observability

    def _known_function(self, name: str) -> None:
        declared = set(self.resource_model().names())
        deployed = set(self.backend.get_deployed_state(self.project).workloads)
        if name not in declared | deployed:
            raise ValidationError.single(
                name, "unknown-function", f"No workload named '{name}'"
            )

    def logs(self, name: str, *, limit: int = 100) -> list[str]:
        self._known_function(name)
        return list(self.backend.fetch_logs(self.project, name, limit=limit))

    def stats(self, name: str) -> dict[str, Any]:
        self._known_function(name)
        return self.backend.fetch_stats(self.project, name)

    def envs(self, *, remote: bool = False) -> dict[str, dict[str, str]]:
        """Environment variables per function, placeholders resolved.

        Args:
            remote: Read what the deployed functions run with instead of
                what the source declares
        """
        if remote:
            state = self.backend.get_deployed_state(self.project)
            envs = {
                name: dict(workload.declaration.environment)
                for name, workload in state.workloads.items()
            }
        else:
            model = self.resource_model()
            envs = {w.name: model.resolve_environment(w) for w in model.workloads}
        return {name: env for name, env in sorted(envs.items()) if env}

    # Deployed functions

    def _deployed_function(self, name: str) -> None:
        self._known_function(name)
        if name not in self.backend.get_deployed_state(self.project).workloads:
            raise DeploymentError(
                operation="function", message=f"Function '{name}' is not deployed"
            )

    def toggle(self, name: str, *, enabled: bool) -> bool:
        """Start or stop one deployed function.

        Returns:
            False when the function already was in the requested state
        """
        self._deployed_function(name)
        changed = self.backend.toggle_function(self.project, name, enabled=enabled)
        state = "started" if enabled else "stopped"
        if changed:
            logger.info(f"{name} {state}")
        else:
            logger.info(f"{name} already {state}")
        return changed

    def start(self, name: str) -> bool:
        return self.toggle(name, enabled=True)

    def stop(self, name: str) -> bool:
        return self.toggle(name, enabled=False)

    def invoke_remote(
        self,
        name: str,
        *,
        payload: str | None = None,
        headers: Mapping[str, str] | None = None,
        url_path: str | None = None,
        method: str = "POST",
    ) -> RemoteResponse:
        """Call a deployed function through the backend."""
        self._deployed_function(name)
        return self.backend.invoke_function(
            self.project,
            name,
            payload=payload,
            headers=dict(headers or {}),
            url_path=url_path,
            method=method,
        )
