"""Manifest and settings loader for skiff projects.

This module provides the ManifestLoader class for loading, parsing and
validating the project manifest (``skiff.yaml``) and for resolving the
deploy settings from defaults, manifest and environment variables.
"""

import logging
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from skiff.config.defaults import (
    DEFAULT_SETTINGS,
    DEFAULT_SOURCE_DIR,
    MANIFEST_FILENAME,
)
from skiff.config.env_loader import substitute_env_vars
from skiff.config.validator import pydantic_violations
from skiff.lib.errors import ConfigError, ValidationError
from skiff.models.manifest import ProjectManifest
from skiff.models.settings import SkiffSettings

logger = logging.getLogger(__name__)

# Environment variable to field name mapping
ENV_VAR_MAP = {
    "backend": "SKIFF_BACKEND",
    "url": "SKIFF_BACKEND_URL",
    "api_token": "SKIFF_API_TOKEN",
    "state_dir": "SKIFF_STATE_DIR",
    "poll_interval": "SKIFF_POLL_INTERVAL",
    "poll_max_interval": "SKIFF_POLL_MAX_INTERVAL",
    "poll_timeout": "SKIFF_POLL_TIMEOUT",
    "upload_concurrency": "SKIFF_UPLOAD_CONCURRENCY",
    "upload_attempts": "SKIFF_UPLOAD_ATTEMPTS",
    "build_workers": "SKIFF_BUILD_WORKERS",
    "invoke_timeout": "SKIFF_INVOKE_TIMEOUT",
}

_INT_FIELDS = ("upload_concurrency", "upload_attempts", "build_workers")
_FLOAT_FIELDS = ("poll_interval", "poll_max_interval", "poll_timeout", "invoke_timeout")

_NAME_SANITIZE = re.compile(r"[^a-zA-Z0-9-]+")


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse environment variable value to appropriate type.

    Args:
        field_name: Name of the field (used to determine type)
        value: String value from environment variable

    Returns:
        Parsed value in correct type (int, float, or str)

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in _INT_FIELDS:
        return int(value)
    elif field_name in _FLOAT_FIELDS:
        return float(value)
    else:
        return value


def _get_env_value(field_name: str, env_vars: Mapping[str, str]) -> Any | None:
    """Get environment variable value for a field.

    Args:
        field_name: Name of field to get
        env_vars: Environment variables mapping

    Returns:
        Parsed value or None if not found

    Raises:
        ConfigError: If the variable is set but cannot be parsed
    """
    env_var_name = ENV_VAR_MAP.get(field_name)
    if not env_var_name or env_var_name not in env_vars:
        return None

    try:
        return _parse_env_value(field_name, env_vars[env_var_name])
    except ValueError as exc:
        raise ConfigError(
            field=env_var_name,
            message=f"Invalid value {env_vars[env_var_name]!r}: {exc}",
        ) from exc


def _read_yaml_with_env_substitution(
    path: Path, environ: Mapping[str, str]
) -> dict[str, Any] | None:
    """Read a YAML file with environment variable substitution.

    Args:
        path: Path to YAML file
        environ: Environment used for ``${VAR}`` substitution

    Returns:
        Parsed dictionary or None if empty

    Raises:
        OSError: If file cannot be read
        yaml.YAMLError: If YAML parsing fails
        ConfigError: If env var substitution fails
    """
    raw_text = path.read_text(encoding="utf-8")
    substituted = substitute_env_vars(raw_text, environ)
    content = yaml.safe_load(substituted)
    return content if content else None


def sanitize_project_name(name: str) -> str:
    """Turn a directory name into a valid project name."""
    cleaned = _NAME_SANITIZE.sub("-", name).strip("-")
    if not cleaned or not cleaned[0].isalpha():
        cleaned = f"p-{cleaned}" if cleaned else "project"
    return cleaned[:63]


class ManifestLoader:
    """Loads and validates the project manifest and deploy settings.

    This class handles:
    - Parsing ``skiff.yaml`` into a ProjectManifest
    - Environment variable substitution in the manifest text
    - Merging settings with precedence env > manifest > defaults
    - Converting validation errors into human-readable violations
    """

    def __init__(self, environ: Mapping[str, str]) -> None:
        """Create a loader bound to an environment mapping."""
        self.environ = environ

    def load_manifest(self, project_dir: Path) -> ProjectManifest:
        """Load the manifest of a project.

        A project without ``skiff.yaml`` gets the default manifest.

        Args:
            project_dir: Project root directory

        Returns:
            Validated ProjectManifest

        Raises:
            ConfigError: If the file cannot be read or is not valid YAML
            ValidationError: If the manifest does not match the schema
        """
        path = project_dir / MANIFEST_FILENAME
        if not path.exists():
            logger.debug(f"No {MANIFEST_FILENAME} in {project_dir}, using defaults")
            return ProjectManifest()

        try:
            content = _read_yaml_with_env_substitution(path, self.environ)
        except OSError as exc:
            raise ConfigError(
                field=MANIFEST_FILENAME, message=f"Failed to read manifest: {exc}"
            ) from exc
        except yaml.YAMLError as exc:
            raise ConfigError(
                field=MANIFEST_FILENAME, message=f"Invalid YAML: {exc}"
            ) from exc

        if content is None:
            return ProjectManifest()
        if not isinstance(content, dict):
            raise ConfigError(
                field=MANIFEST_FILENAME,
                message="Manifest must be a mapping at the top level",
            )

        try:
            return ProjectManifest.model_validate(content)
        except PydanticValidationError as exc:
            raise ValidationError(
                pydantic_violations(exc, location=MANIFEST_FILENAME)
            ) from exc

    def resolve_settings(self, manifest: ProjectManifest) -> SkiffSettings:
        """Merge defaults, manifest ``deploy:`` overrides and environment.

        Raises:
            ConfigError: If the merged settings are invalid
        """
        merged: dict[str, Any] = dict(DEFAULT_SETTINGS)

        for key, value in manifest.deploy.model_dump(exclude_none=True).items():
            merged[key] = value

        for field_name in ENV_VAR_MAP:
            env_value = _get_env_value(field_name, self.environ)
            if env_value is not None:
                merged[field_name] = env_value

        try:
            return SkiffSettings.model_validate(merged)
        except PydanticValidationError as exc:
            violations = pydantic_violations(exc, "settings")
            messages = "; ".join(v.message for v in violations)
            raise ConfigError(field="deploy", message=messages) from exc

    @staticmethod
    def project_name(manifest: ProjectManifest, project_dir: Path) -> str:
        """Project name from the manifest, falling back to the directory name."""
        if manifest.project.name:
            return manifest.project.name
        return sanitize_project_name(project_dir.resolve().name)

    @staticmethod
    def source_dir(manifest: ProjectManifest, project_dir: Path) -> Path:
        """Directory scanned for workloads.

        Raises:
            ConfigError: If an explicitly configured source dir does not exist
        """
        if manifest.project.source:
            source = project_dir / manifest.project.source
            if not source.is_dir():
                raise ConfigError(
                    field="project.source",
                    message=f"Source directory not found: {source}",
                )
            return source

        default = project_dir / DEFAULT_SOURCE_DIR
        return default if default.is_dir() else project_dir
