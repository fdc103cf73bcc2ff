"""Explicit per-command context.

Everything the engine needs from the user's session (project directory,
manifest, settings, environment and secrets) is resolved once and passed
around in a CommandContext instead of being read from global state.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from skiff.config.loader import ManifestLoader
from skiff.config.secrets import load_secrets
from skiff.lib.errors import ConfigError
from skiff.models.manifest import ProjectManifest
from skiff.models.settings import SkiffSettings


@dataclass(frozen=True)
class CommandContext:
    """Resolved configuration for one command invocation.

    Attributes:
        project_dir: Project root directory
        project_name: Name used to prefix provisioned resources
        source_dir: Directory scanned for workloads
        manifest: Validated project manifest
        settings: Merged deploy/build settings
        secrets: Resolved secret values keyed by name
        environ: Environment mapping the context was built from
    """

    project_dir: Path
    project_name: str
    source_dir: Path
    manifest: ProjectManifest
    settings: SkiffSettings
    secrets: dict[str, str] = field(default_factory=dict, repr=False)
    environ: Mapping[str, str] = field(default_factory=dict, repr=False)

    @classmethod
    def load(
        cls, project_dir: Path | str, environ: Mapping[str, str] | None = None
    ) -> CommandContext:
        """Load manifest, settings and secrets of a project.

        Args:
            project_dir: Project root directory
            environ: Environment mapping (defaults to a copy of ``os.environ``)

        Raises:
            ConfigError: If the project directory or manifest is unusable
            ValidationError: If the manifest is invalid or secrets conflict
        """
        root = Path(project_dir).resolve()
        if not root.is_dir():
            raise ConfigError(
                field="project", message=f"Project directory not found: {root}"
            )

        env = dict(os.environ) if environ is None else dict(environ)
        loader = ManifestLoader(env)
        manifest = loader.load_manifest(root)

        return cls(
            project_dir=root,
            project_name=loader.project_name(manifest, root),
            source_dir=loader.source_dir(manifest, root),
            manifest=manifest,
            settings=loader.resolve_settings(manifest),
            secrets=load_secrets(root, env),
            environ=env,
        )

    @property
    def state_dir(self) -> Path:
        """Local state directory (build cache, local backend, locks)."""
        return self.project_dir / self.settings.state_dir

    @property
    def build_dir(self) -> Path:
        """Directory holding built artifacts and the content-hash cache."""
        return self.state_dir / "build"
