"""Changeset computation between deployed state and the resource model.

Classification per workload:

- not deployed yet                      -> create/full
- non-code attributes changed           -> update/full
- only the artifact hash changed        -> update/hotswap
- deployed but no longer declared       -> delete

Anything that cannot be proven code-only is a full update.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Collection, Mapping

from skiff.lib.errors import DiffConflictError, ValidationError, Violation
from skiff.lib.logging_config import get_logger
from skiff.models.artifact import BuildArtifact
from skiff.models.changeset import (
    Change,
    ChangeKind,
    ChangeMode,
    Changeset,
    TargetType,
)
from skiff.models.deployment_state import (
    DeployedResource,
    DeployedState,
    DeployedWorkload,
    ResourceType,
)
from skiff.models.resources import ResourceModel
from skiff.models.workload import (
    EndpointParams,
    WorkerParams,
    WorkloadDeclaration,
    WorkloadKind,
)

logger = get_logger(__name__)


def _fingerprint(payload: object) -> str:
    data = json.dumps(payload, sort_keys=True)
    return "sha256:" + hashlib.sha256(data.encode("utf-8")).hexdigest()


def database_key(name: str) -> str:
    return f"database:{name}"


def domain_key(name: str) -> str:
    return f"domain:{name}"


def secrets_key(project: str) -> str:
    return f"secrets:{project}"


def desired_resources(model: ResourceModel) -> dict[str, DeployedResource]:
    """Project-level resources the model asks for, keyed by resource key."""
    resources: dict[str, DeployedResource] = {}

    if model.database is not None:
        db = model.database
        key = database_key(db.name)
        resources[key] = DeployedResource(
            key=key,
            type=ResourceType.DATABASE,
            name=db.name,
            fingerprint=_fingerprint({"name": db.name, "engine": db.engine.value}),
            attributes={"engine": db.engine.value},
        )

    for domain in model.domains:
        key = domain_key(domain.name)
        resources[key] = DeployedResource(
            key=key,
            type=ResourceType.DOMAIN,
            name=domain.name,
            fingerprint=_fingerprint({"name": domain.name, "target": domain.target}),
            attributes={"target": domain.target},
        )

    if model.secrets:
        key = secrets_key(model.project)
        names = ",".join(sorted(model.secrets))
        resources[key] = DeployedResource(
            key=key,
            type=ResourceType.SECRETS,
            name=model.project,
            fingerprint=model.secrets_fingerprint or _fingerprint({"names": names}),
            attributes={"names": names},
        )

    return resources


def resolved_declaration(
    model: ResourceModel, declaration: WorkloadDeclaration
) -> WorkloadDeclaration:
    """Declaration with its environment placeholders substituted."""
    return declaration.model_copy(
        update={"environment": model.resolve_environment(declaration)}
    )


def desired_workload(
    model: ResourceModel,
    declaration: WorkloadDeclaration,
    artifact_hash: str,
    resource_ids: Mapping[str, str] | None = None,
) -> DeployedWorkload:
    """DeployedWorkload record the model asks for."""
    resolved = resolved_declaration(model, declaration)
    return DeployedWorkload(
        name=declaration.name,
        kind=declaration.kind,
        declaration=resolved,
        config_hash=resolved.config_fingerprint(model.bindings_for(declaration)),
        artifact_hash=artifact_hash,
        resource_ids=dict(resource_ids or {}),
    )


def _check_workload_conflicts(
    deployed: DeployedWorkload, desired: DeployedWorkload
) -> None:
    if deployed.kind != desired.kind:
        raise DiffConflictError(
            desired.name,
            f"kind changed from {deployed.kind.value} to {desired.kind.value}; "
            "rename the function or delete the deployed one first",
        )
    old, new = deployed.declaration.params, desired.declaration.params
    if isinstance(old, WorkerParams) and isinstance(new, WorkerParams):
        if old.fifo != new.fifo and old.queue_alias == new.queue_alias:
            raise DiffConflictError(
                desired.name,
                f"queue '{new.queue_alias}' cannot switch fifo={old.fifo} to "
                f"fifo={new.fifo}; use a new queue_alias",
            )


def _check_resource_conflicts(
    deployed: Mapping[str, DeployedResource], desired: Mapping[str, DeployedResource]
) -> None:
    old_dbs = [r for r in deployed.values() if r.type == ResourceType.DATABASE]
    new_dbs = [r for r in desired.values() if r.type == ResourceType.DATABASE]
    for old in old_dbs:
        for new in new_dbs:
            old_engine = old.attributes.get("engine")
            new_engine = new.attributes.get("engine")
            if old.name != new.name:
                raise DiffConflictError(
                    new.key,
                    f"database '{old.name}' would be replaced by '{new.name}'; "
                    "remove the old database in a separate deploy first",
                )
            if old_engine != new_engine:
                raise DiffConflictError(
                    new.key,
                    f"engine cannot change from {old_engine} to {new_engine} "
                    "for an existing database",
                )


class DiffEngine:
    """Computes the changeset moving deployed state to the resource model.

    Args:
        deployed: Last successfully applied state
        model: Desired resource model
        artifacts: Successful builds keyed by workload name; declared
            workloads missing here are treated as failed builds and carried
            over untouched
    """

    def __init__(
        self,
        deployed: DeployedState,
        model: ResourceModel,
        artifacts: Mapping[str, BuildArtifact],
    ) -> None:
        self.deployed = deployed
        self.model = model
        self.artifacts = artifacts

    def compute(self, only: Collection[str] | None = None) -> Changeset:
        """Compute the changeset, optionally restricted to named workloads.

        Raises:
            ValidationError: If ``only`` names an unknown workload
            DiffConflictError: If the model cannot be reconciled
        """
        selected = self._select(only)
        partial = only is not None

        workload_changes, workloads = self._diff_workloads(selected, partial)
        resource_changes, resources = self._diff_resources(selected, partial)

        if partial:
            self._check_partial_queue_refs(selected, workloads)

        changes = self._order(resource_changes, workload_changes)
        target_state = DeployedState(
            project=self.model.project,
            version=self.deployed.version,
            template_hash=self.deployed.template_hash,
            workloads=dict(sorted(workloads.items())),
            resources=dict(sorted(resources.items())),
            updated_at=self.deployed.updated_at,
        )
        logger.debug(f"Computed {len(changes)} change(s) for {self.model.project}")
        return Changeset(
            project=self.model.project,
            changes=changes,
            target_state=target_state,
            base_version=self.deployed.version,
        )

    def _select(self, only: Collection[str] | None) -> list[WorkloadDeclaration]:
        if only is None:
            return list(self.model.workloads)

        known = set(self.model.names())
        unknown = sorted(set(only) - known)
        if unknown:
            raise ValidationError(
                Violation(
                    location=name,
                    rule="unknown-function",
                    message=f"No workload named '{name}' in this project",
                )
                for name in unknown
            )
        wanted = set(only)
        return [w for w in self.model.workloads if w.name in wanted]

    def _diff_workloads(
        self, selected: list[WorkloadDeclaration], partial: bool
    ) -> tuple[list[Change], dict[str, DeployedWorkload]]:
        changes: list[Change] = []
        # Everything deployed is kept unless a change says otherwise
        workloads = dict(self.deployed.workloads)

        for declaration in selected:
            artifact = self.artifacts.get(declaration.name)
            current = self.deployed.workloads.get(declaration.name)
            if artifact is None:
                logger.info(f"Skipping {declaration.name}: no build artifact")
                continue

            desired = desired_workload(
                self.model,
                declaration,
                artifact.content_hash,
                current.resource_ids if current else None,
            )

            if current is None:
                changes.append(
                    Change(
                        target=declaration.name,
                        target_type=TargetType.WORKLOAD,
                        kind=ChangeKind.CREATE,
                        mode=ChangeMode.FULL,
                        reason="not deployed yet",
                        artifact_hash=artifact.content_hash,
                    )
                )
                workloads[declaration.name] = desired
                continue

            _check_workload_conflicts(current, desired)

            if current.config_hash != desired.config_hash:
                changes.append(
                    Change(
                        target=declaration.name,
                        target_type=TargetType.WORKLOAD,
                        kind=ChangeKind.UPDATE,
                        mode=ChangeMode.FULL,
                        reason="configuration changed",
                        artifact_hash=artifact.content_hash,
                    )
                )
            elif current.artifact_hash != desired.artifact_hash:
                changes.append(
                    Change(
                        target=declaration.name,
                        target_type=TargetType.WORKLOAD,
                        kind=ChangeKind.UPDATE,
                        mode=ChangeMode.HOTSWAP,
                        reason="code changed",
                        artifact_hash=artifact.content_hash,
                    )
                )
            workloads[declaration.name] = desired

        if not partial:
            declared = set(self.model.names())
            for name in sorted(self.deployed.workloads):
                if name in declared:
                    continue
                changes.append(
                    Change(
                        target=name,
                        target_type=TargetType.WORKLOAD,
                        kind=ChangeKind.DELETE,
                        mode=ChangeMode.FULL,
                        reason="no longer declared",
                    )
                )
                del workloads[name]

        logger.debug(
            f"Workload diff over {len(selected)} declaration(s): "
            f"{len(changes)} change(s)"
        )
        return changes, workloads

    def _diff_resources(
        self, selected: list[WorkloadDeclaration], partial: bool
    ) -> tuple[list[Change], dict[str, DeployedResource]]:
        desired = desired_resources(self.model)
        deployed = self.deployed.resources
        _check_resource_conflicts(deployed, desired)

        if partial:
            desired = {
                key: resource
                for key, resource in desired.items()
                if self._needed_by(resource, selected)
            }

        changes: list[Change] = []
        resources = dict(deployed)

        for key, resource in desired.items():
            current = deployed.get(key)
            if current is None:
                changes.append(
                    Change(
                        target=key,
                        target_type=TargetType.RESOURCE,
                        kind=ChangeKind.CREATE,
                        reason=f"{resource.type.value} not provisioned yet",
                    )
                )
                resources[key] = resource
            elif current.fingerprint != resource.fingerprint:
                changes.append(
                    Change(
                        target=key,
                        target_type=TargetType.RESOURCE,
                        kind=ChangeKind.UPDATE,
                        reason=f"{resource.type.value} changed",
                    )
                )
                resources[key] = resource.model_copy(
                    update={"resource_id": current.resource_id}
                )

        if not partial:
            for key in sorted(deployed):
                if key in desired:
                    continue
                changes.append(
                    Change(
                        target=key,
                        target_type=TargetType.RESOURCE,
                        kind=ChangeKind.DELETE,
                        reason=f"{deployed[key].type.value} no longer declared",
                    )
                )
                del resources[key]

        return changes, resources

    def _needed_by(
        self, resource: DeployedResource, selected: list[WorkloadDeclaration]
    ) -> bool:
        """Whether any selected workload depends on a project resource."""
        if resource.type == ResourceType.DATABASE:
            return bool(selected)
        if resource.type == ResourceType.SECRETS:
            return any(w.secrets for w in selected)
        return False

    def _check_partial_queue_refs(
        self,
        selected: list[WorkloadDeclaration],
        workloads: Mapping[str, DeployedWorkload],
    ) -> None:
        deployed_aliases = {w.declaration.queue_alias for w in workloads.values()}
        for declaration in selected:
            if not isinstance(declaration.params, EndpointParams):
                continue
            for alias in declaration.params.queues:
                if alias not in deployed_aliases:
                    owner = self.model.queues[alias].worker
                    raise DiffConflictError(
                        declaration.name,
                        f"sends to queue '{alias}' whose worker '{owner}' is not "
                        "deployed; include it in the deploy",
                    )

    def _order(
        self, resource_changes: list[Change], workload_changes: list[Change]
    ) -> list[Change]:
        """Shared resources first, dependants next, deletes last."""

        def workload_rank(change: Change) -> tuple[int, str]:
            workload = self.model.get(change.target)
            # Workers own the queues other workloads send to
            is_worker = workload is not None and workload.kind == WorkloadKind.WORKER
            return (0 if is_worker else 1, change.target)

        resource_upserts = sorted(
            (c for c in resource_changes if c.kind != ChangeKind.DELETE),
            key=lambda c: c.target,
        )
        workload_upserts = sorted(
            (c for c in workload_changes if c.kind != ChangeKind.DELETE),
            key=workload_rank,
        )
        workload_deletes = sorted(
            (c for c in workload_changes if c.kind == ChangeKind.DELETE),
            key=lambda c: c.target,
        )
        resource_deletes = sorted(
            (c for c in resource_changes if c.kind == ChangeKind.DELETE),
            key=lambda c: c.target,
        )
        return resource_upserts + workload_upserts + workload_deletes + resource_deletes


def compute_changeset(
    deployed: DeployedState,
    model: ResourceModel,
    artifacts: Mapping[str, BuildArtifact],
    only: Collection[str] | None = None,
) -> Changeset:
    """Compute the changeset moving ``deployed`` to ``model``."""
    return DiffEngine(deployed, model, artifacts).compute(only)


def destroy_changeset(deployed: DeployedState) -> Changeset:
    """Changeset deleting every deployed workload, then every resource."""
    changes = [
        Change(
            target=name,
            target_type=TargetType.WORKLOAD,
            kind=ChangeKind.DELETE,
            reason="project destroyed",
        )
        for name in sorted(deployed.workloads)
    ] + [
        Change(
            target=key,
            target_type=TargetType.RESOURCE,
            kind=ChangeKind.DELETE,
            reason="project destroyed",
        )
        for key in sorted(deployed.resources)
    ]
    return Changeset(
        project=deployed.project,
        changes=changes,
        target_state=DeployedState(
            project=deployed.project,
            version=deployed.version,
            template_hash=deployed.template_hash,
            updated_at=deployed.updated_at,
        ),
        base_version=deployed.version,
    )
