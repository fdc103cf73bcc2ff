"""Placeholder substitution for manifest text and environment templates."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

from skiff.lib.errors import ConfigError

# ${NAME} with NAME a valid identifier
PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def find_placeholders(value: str) -> list[str]:
    """Return placeholder names referenced by a value, in order."""
    return PLACEHOLDER_PATTERN.findall(value)


def substitute_env_vars(
    text: str, environ: Mapping[str, str] | None = None
) -> str:
    """Replace ``${VAR}`` references in manifest text with environment values.

    Args:
        text: Raw manifest text
        environ: Environment mapping (defaults to ``os.environ``)

    Returns:
        Text with all placeholders substituted

    Raises:
        ConfigError: If a referenced variable is not set
    """
    env = os.environ if environ is None else environ

    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in env:
            raise ConfigError(
                field=name,
                message=f"Environment variable '{name}' is referenced but not set",
            )
        return env[name]

    return PLACEHOLDER_PATTERN.sub(replace, text)


def substitute_variables(value: str, variables: Mapping[str, str]) -> str:
    """Resolve ``${NAME}`` placeholders of an env value against the value store.

    Unknown names are left untouched; resource-model validation reports them
    before anything reaches this point.
    """
    return PLACEHOLDER_PATTERN.sub(
        lambda m: variables.get(m.group(1), m.group(0)), value
    )
