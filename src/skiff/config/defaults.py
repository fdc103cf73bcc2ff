"""Default configuration values for skiff."""

import logging
import os
import sys

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "skiff.yaml"
SECRETS_FILENAME = ".env.secrets"
SECRET_ENV_PREFIX = "SKIFF_SECRET_"
DEFAULT_SOURCE_DIR = "src"
DEFAULT_MIGRATIONS_DIR = "migrations"
STATE_DIR = ".skiff"

# Deploy/build settings defaults
DEFAULT_SETTINGS: dict[str, int | float | str | None] = {
    "backend": "local",
    "url": None,
    "api_token": None,
    "state_dir": STATE_DIR,
    "poll_interval": 1.0,  # seconds
    "poll_max_interval": 10.0,  # seconds
    "poll_timeout": 900.0,  # seconds
    "upload_concurrency": 4,
    "upload_attempts": 3,
    "upload_retry_delay": 0.5,  # seconds
    "build_workers": None,
    "invoke_timeout": 30.0,  # seconds
}

# Names longer than this are rejected by the provisioning backend
MAX_WORKLOAD_NAME_LENGTH = 64


def default_platform() -> str:
    """Target platform identifier of the running interpreter."""
    return f"python{sys.version_info.major}.{sys.version_info.minor}"


def default_build_workers() -> int:
    """Build pool size derived from available CPU parallelism."""
    count = os.cpu_count()
    if not count:
        logger.warning("Could not detect CPU count, building with 1 worker")
        return 1
    return count
