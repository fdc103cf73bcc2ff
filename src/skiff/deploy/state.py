"""Deployment history persistence helpers."""

from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from skiff.lib.errors import DeploymentError
from skiff.models.deployment_state import DeployedState, ProjectHistory

STATE_VERSION = "1.0"


def get_history_path(backend_dir: Path, project: str) -> Path:
    """Return the history file of a project inside a backend directory."""
    return backend_dir / "projects" / project / "history.json"


def load_history(history_path: Path, project: str) -> ProjectHistory:
    """Load a project's deployment history from disk."""
    empty = ProjectHistory(version=STATE_VERSION, current=DeployedState.empty(project))
    if not history_path.exists():
        return empty

    try:
        content = history_path.read_text(encoding="utf-8")
        if not content.strip():
            return empty
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to read deployment state at {history_path}: {exc}",
        ) from exc

    try:
        history = ProjectHistory.model_validate_json(content)
    except ValidationError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Invalid deployment state format in {history_path}: {exc}",
        ) from exc

    if history.current.project != project:
        raise DeploymentError(
            operation="state",
            message=(
                f"State at {history_path} belongs to project "
                f"'{history.current.project}', not '{project}'"
            ),
        )
    return history


def save_history(history_path: Path, history: ProjectHistory) -> None:
    """Persist a project's deployment history atomically."""
    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(history.model_dump(mode="json"), indent=2, sort_keys=True)
        tmp = history_path.with_suffix(".tmp")
        tmp.write_text(payload, encoding="utf-8")
        os.replace(tmp, history_path)
    except OSError as exc:
        raise DeploymentError(
            operation="state",
            message=f"Failed to write deployment state to {history_path}: {exc}",
        ) from exc
