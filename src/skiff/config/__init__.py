"""Configuration loading for skiff projects.

Main components:
- ManifestLoader: Load and validate skiff.yaml and deploy settings
- CommandContext: Explicit per-command configuration
- Secret resolution from .env.secrets and SKIFF_SECRET_* variables
- Placeholder substitution (${NAME} pattern)
"""

from skiff.config.context import CommandContext
from skiff.config.env_loader import substitute_env_vars, substitute_variables
from skiff.config.loader import ManifestLoader
from skiff.config.secrets import load_secrets, merge_secrets

__all__ = [
    "CommandContext",
    "ManifestLoader",
    "load_secrets",
    "merge_secrets",
    "substitute_env_vars",
    "substitute_variables",
]
