"""Infrastructure template rendering.

The template describes the final desired state of every resource of the
project plus the ordered changes that produce it. Rendering is a pure
function: identical inputs give byte-identical output (sorted keys, no
timestamps), so the backend can apply it idempotently.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from skiff.build.templates import HANDLER_ENTRY
from skiff.models.artifact import artifact_key
from skiff.models.changeset import Changeset
from skiff.models.deployment_state import (
    DeployedResource,
    DeployedWorkload,
    ResourceType,
)
from skiff.models.resources import ResourceModel
from skiff.models.workload import CronParams, EndpointParams, WorkerParams

TEMPLATE_FORMAT_VERSION = "2024-06-01"

_WORD_SPLIT = re.compile(r"[^A-Za-z0-9]+")


def logical_id(*parts: str) -> str:
    """PascalCase identifier from name parts: ``hello-world`` -> ``HelloWorld``."""
    words = [w for part in parts for w in _WORD_SPLIT.split(part) if w]
    return "".join(w[:1].upper() + w[1:] for w in words)


def physical_name(project: str, name: str) -> str:
    return f"{project}-{name}"


def queue_name(project: str, alias: str, fifo: bool) -> str:
    name = physical_name(project, alias)
    return f"{name}.fifo" if fifo else name


def _ref(logical: str) -> dict[str, str]:
    return {"Ref": logical}


class TemplateGenerator:
    """Renders a Changeset and ResourceModel into a JSON template."""

    def __init__(self, changeset: Changeset, model: ResourceModel) -> None:
        if changeset.project != model.project:
            raise ValueError(
                f"Changeset for '{changeset.project}' does not match "
                f"project '{model.project}'"
            )
        self.changeset = changeset
        self.model = model
        self.project = model.project
        self.state = changeset.target_state

    def build(self) -> dict[str, Any]:
        """Return the template document as plain data."""
        resources: dict[str, dict[str, Any]] = {}

        for resource in self.state.resources.values():
            resources.update(self._project_resource(resource))

        queue_ids = self._queue_ids()
        for workload in self.state.workloads.values():
            resources.update(self._workload_resources(workload, queue_ids))

        return {
            "FormatVersion": TEMPLATE_FORMAT_VERSION,
            "Project": self.project,
            "BaseVersion": self.changeset.base_version,
            "Resources": resources,
            "Changes": [
                {
                    "Target": change.target,
                    "TargetType": change.target_type.value,
                    "Kind": change.kind.value,
                    "Mode": change.mode.value,
                    **(
                        {"ArtifactSha256": change.artifact_hash}
                        if change.artifact_hash
                        else {}
                    ),
                }
                for change in self.changeset.changes
            ],
        }

    def render(self) -> str:
        """Return the template as canonical JSON text."""
        return json.dumps(self.build(), indent=2, sort_keys=True) + "\n"

    def _dependencies(self, workload: DeployedWorkload) -> list[str]:
        depends: list[str] = []
        for resource in self.state.resources.values():
            if resource.type == ResourceType.DATABASE:
                depends.append(logical_id("Database", resource.name))
            elif resource.type == ResourceType.SECRETS and workload.declaration.secrets:
                depends.append(logical_id("Secrets"))
        return sorted(depends)

    def _queue_ids(self) -> dict[str, str]:
        ids: dict[str, str] = {}
        for workload in self.state.workloads.values():
            params = workload.declaration.params
            if isinstance(params, WorkerParams):
                ids[params.queue_alias] = logical_id("Queue", params.queue_alias)
        return ids

    def _bindings(self) -> dict[str, str]:
        for resource in self.state.resources.values():
            if resource.type == ResourceType.DATABASE:
                engine = resource.attributes.get("engine")
                return {"database": f"{engine}:{resource.name}"}
        return {}

    def _project_resource(
        self, resource: DeployedResource
    ) -> dict[str, dict[str, Any]]:
        if resource.type == ResourceType.DATABASE:
            return {
                logical_id("Database", resource.name): {
                    "Type": "Skiff::Database",
                    "Properties": {
                        "DatabaseName": physical_name(self.project, resource.name),
                        "Engine": resource.attributes.get("engine"),
                    },
                }
            }
        if resource.type == ResourceType.DOMAIN:
            return {
                logical_id("Domain", resource.name): {
                    "Type": "Skiff::Domain",
                    "Properties": {
                        "DomainName": resource.name,
                        "PathPrefix": resource.attributes.get("target", "/"),
                    },
                }
            }
        names = resource.attributes.get("names", "")
        return {
            logical_id("Secrets"): {
                "Type": "Skiff::SecretSet",
                "Properties": {
                    "SecretSetName": physical_name(self.project, "secrets"),
                    "Names": [n for n in names.split(",") if n],
                },
            }
        }

    def _workload_resources(
        self, workload: DeployedWorkload, queue_ids: dict[str, str]
    ) -> dict[str, dict[str, Any]]:
        declaration = workload.declaration
        function_id = logical_id("Function", workload.name)
        resources: dict[str, dict[str, Any]] = {
            function_id: {
                "Type": "Skiff::Function",
                "DependsOn": self._dependencies(workload),
                "Properties": {
                    "FunctionName": physical_name(self.project, workload.name),
                    "Kind": workload.kind.value,
                    "Handler": HANDLER_ENTRY,
                    "Code": {
                        "Key": artifact_key(workload.artifact_hash),
                        "Sha256": workload.artifact_hash,
                    },
                    "Environment": dict(declaration.environment),
                    "Secrets": sorted(declaration.secrets),
                    "Bindings": self._bindings(),
                },
            }
        }

        params = declaration.params
        if isinstance(params, EndpointParams):
            targets = [queue_ids[a] for a in params.queues if a in queue_ids]
            resources[logical_id("Route", workload.name)] = {
                "Type": "Skiff::Route",
                "DependsOn": sorted(targets),
                "Properties": {
                    "Path": params.url_path,
                    "Function": _ref(function_id),
                    "SendsTo": [_ref(t) for t in targets],
                },
            }
        elif isinstance(params, WorkerParams):
            queue_id = queue_ids[params.queue_alias]
            resources[queue_id] = {
                "Type": "Skiff::Queue",
                "Properties": {
                    "QueueName": queue_name(
                        self.project, params.queue_alias, params.fifo
                    ),
                    "Fifo": params.fifo,
                },
            }
            resources[logical_id("Trigger", workload.name)] = {
                "Type": "Skiff::QueueTrigger",
                "DependsOn": [queue_id],
                "Properties": {
                    "Queue": _ref(queue_id),
                    "Function": _ref(function_id),
                    "Concurrency": params.concurrency,
                },
            }
        elif isinstance(params, CronParams):
            resources[logical_id("Schedule", workload.name)] = {
                "Type": "Skiff::Schedule",
                "Properties": {
                    "Expression": params.schedule,
                    "Function": _ref(function_id),
                },
            }
        return resources


def render_template(changeset: Changeset, model: ResourceModel) -> str:
    """Render the deterministic template text for a changeset."""
    return TemplateGenerator(changeset, model).render()


def template_hash(template: str) -> str:
    """Content hash recorded with each deployed version."""
    return "sha256:" + hashlib.sha256(template.encode("utf-8")).hexdigest()
