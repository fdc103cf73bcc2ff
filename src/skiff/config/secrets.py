"""Secret resolution from the secrets file and prefixed environment variables."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from skiff.config.defaults import SECRET_ENV_PREFIX, SECRETS_FILENAME
from skiff.lib.errors import ConfigError, ValidationError, Violation

logger = logging.getLogger(__name__)


def read_secrets_file(path: Path) -> dict[str, str]:
    """Read ``KEY=VALUE`` lines from a secrets file.

    Returns an empty mapping when the file does not exist.

    Raises:
        ConfigError: If the file exists but cannot be read
    """
    if not path.exists():
        return {}

    try:
        values = dotenv_values(path)
    except OSError as exc:
        raise ConfigError(
            field=SECRETS_FILENAME, message=f"Failed to read {path}: {exc}"
        ) from exc

    # Keys without '=' come back as None
    return {key: value for key, value in values.items() if value is not None}


def read_secret_env(
    environ: Mapping[str, str], prefix: str = SECRET_ENV_PREFIX
) -> dict[str, str]:
    """Collect secrets from environment variables carrying the prefix."""
    return {
        name[len(prefix) :]: value
        for name, value in environ.items()
        if name.startswith(prefix) and name != prefix
    }


def merge_secrets(
    file_secrets: Mapping[str, str], env_secrets: Mapping[str, str]
) -> dict[str, str]:
    """Merge both secret sources.

    The environment source takes precedence. A key present in both sources
    with different values is an error rather than a silent override.

    Raises:
        ValidationError: Naming every conflicting key
    """
    violations = [
        Violation(
            location=f"secret '{key}'",
            rule="secret-conflict",
            message=(
                f"Secret '{key}' is defined in {SECRETS_FILENAME} and in "
                f"{SECRET_ENV_PREFIX}{key} with different values"
            ),
        )
        for key in sorted(set(file_secrets) & set(env_secrets))
        if file_secrets[key] != env_secrets[key]
    ]
    if violations:
        raise ValidationError(violations)

    merged = dict(file_secrets)
    merged.update(env_secrets)
    return merged


def load_secrets(project_dir: Path, environ: Mapping[str, str]) -> dict[str, str]:
    """Resolve the project's secrets from both sources."""
    file_secrets = read_secrets_file(project_dir / SECRETS_FILENAME)
    env_secrets = read_secret_env(environ)

    if not file_secrets and not env_secrets:
        logger.debug(
            f"No {SECRETS_FILENAME} file and no {SECRET_ENV_PREFIX}* variables found"
        )

    return merge_secrets(file_secrets, env_secrets)


def secrets_fingerprint(secrets: Mapping[str, str]) -> str:
    """Fingerprint secret names and values without exposing the values."""
    digest = hashlib.sha256()
    for key in sorted(secrets):
        digest.update(key.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(secrets[key].encode("utf-8")).digest())
    return f"sha256:{digest.hexdigest()}"
