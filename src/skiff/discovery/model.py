"""Resource model construction and cross-workload validation."""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from skiff.config.env_loader import find_placeholders
from skiff.config.secrets import secrets_fingerprint
from skiff.lib.errors import ValidationError, Violation
from skiff.models.manifest import ProjectManifest
from skiff.models.resources import ResourceModel
from skiff.models.workload import EndpointParams, WorkloadDeclaration


def validate_references(
    declarations: Iterable[WorkloadDeclaration],
    secret_names: Iterable[str],
    variables: Mapping[str, str],
) -> list[Violation]:
    """Check queue, secret and variable references across workloads.

    Returns:
        Every violation found, empty when the references resolve
    """
    declarations = list(declarations)
    available_secrets = set(secret_names)
    violations: list[Violation] = []

    queue_owners: dict[str, WorkloadDeclaration] = {}
    for declaration in declarations:
        alias = declaration.queue_alias
        if alias is None:
            continue
        owner = queue_owners.setdefault(alias, declaration)
        if owner is not declaration:
            violations.append(
                Violation(
                    location=str(declaration.source),
                    rule="queue-alias",
                    message=(
                        f"Queue alias '{alias}' is already consumed by "
                        f"worker '{owner.name}'"
                    ),
                )
            )

    for declaration in declarations:
        location = str(declaration.source)

        if isinstance(declaration.params, EndpointParams):
            for alias in declaration.params.queues:
                if alias not in queue_owners:
                    violations.append(
                        Violation(
                            location=location,
                            rule="queue-ref",
                            message=f"No worker consumes queue '{alias}'",
                        )
                    )

        for secret in declaration.secrets:
            if secret not in available_secrets:
                violations.append(
                    Violation(
                        location=location,
                        rule="secret-ref",
                        message=(
                            f"Secret '{secret}' is not defined in .env.secrets "
                            f"or as SKIFF_SECRET_{secret}"
                        ),
                    )
                )

        for key, value in declaration.environment.items():
            for placeholder in find_placeholders(value):
                if placeholder not in variables:
                    violations.append(
                        Violation(
                            location=location,
                            rule="variable-ref",
                            message=(
                                f"Environment '{key}' references unknown "
                                f"variable '{placeholder}'"
                            ),
                        )
                    )

    return violations


def build_resource_model(
    project: str,
    declarations: Iterable[WorkloadDeclaration],
    manifest: ProjectManifest,
    secrets: Mapping[str, str],
) -> ResourceModel:
    """Aggregate declarations and manifest resources into a ResourceModel.

    Args:
        project: Project name
        declarations: Output of the declaration extractor
        manifest: Validated project manifest
        secrets: Merged secret values (only the names are kept)

    Raises:
        ValidationError: If any queue, secret or variable reference dangles
    """
    declarations = tuple(declarations)
    violations = validate_references(declarations, secrets.keys(), manifest.variables)
    if violations:
        raise ValidationError(violations)

    return ResourceModel(
        project=project,
        workloads=declarations,
        database=manifest.database,
        secrets=frozenset(secrets),
        secrets_fingerprint=secrets_fingerprint(secrets) if secrets else None,
        domains=tuple(manifest.domains),
        variables=dict(manifest.variables),
    )
