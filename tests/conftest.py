"""Pytest configuration and shared fixtures for skiff tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from skiff.config.context import CommandContext
from skiff.models.artifact import BuildArtifact
from skiff.models.workload import (
    CronParams,
    EndpointParams,
    SourceLocation,
    WorkerParams,
    WorkloadDeclaration,
    WorkloadKind,
)

HELLO_SOURCE = '''\
from skiff import endpoint


@endpoint(url_path="/hello", name="hello-endpoint")
def hello(request, secrets, config):
    body = request.json() or {}
    return {"message": "Hello, " + body.get("name", "world") + "!"}
'''

DEMO_MANIFEST = """\
project:
  name: demo
"""


@pytest.fixture
def make_project(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a skiff project below tmp_path.

    Source files are written relative to ``src/``; other files relative to
    the project root.
    """

    def _make(
        sources: dict[str, str],
        *,
        manifest: str | None = DEMO_MANIFEST,
        files: dict[str, str] | None = None,
        name: str = "project",
    ) -> Path:
        root = tmp_path / name
        source_root = root / "src"
        source_root.mkdir(parents=True, exist_ok=True)
        for relative, content in sources.items():
            path = source_root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        if manifest is not None:
            (root / "skiff.yaml").write_text(manifest, encoding="utf-8")
        for relative, content in (files or {}).items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return root

    return _make


@pytest.fixture
def hello_project(make_project: Callable[..., Path]) -> Path:
    """Project declaring the single /hello endpoint."""
    return make_project({"app.py": HELLO_SOURCE})


@pytest.fixture
def load_context() -> Callable[..., CommandContext]:
    """Load a CommandContext with an isolated environment."""

    def _load(root: Path, environ: dict[str, str] | None = None) -> CommandContext:
        return CommandContext.load(root, environ=environ or {})

    return _load


def make_declaration(
    name: str,
    kind: WorkloadKind = WorkloadKind.ENDPOINT,
    *,
    environment: dict[str, str] | None = None,
    secrets: tuple[str, ...] = (),
    **params: Any,
) -> WorkloadDeclaration:
    """Build a declaration without going through source extraction."""
    if kind == WorkloadKind.ENDPOINT:
        built: Any = EndpointParams(
            url_path=params.get("url_path", f"/{name}"),
            queues=tuple(params.get("queues", ())),
        )
    elif kind == WorkloadKind.WORKER:
        built = WorkerParams(
            concurrency=params.get("concurrency", 1),
            fifo=params.get("fifo", False),
            queue_alias=params.get("queue_alias", name),
        )
    else:
        built = CronParams(schedule=params.get("schedule", "rate(5 minutes)"))

    return WorkloadDeclaration(
        name=name,
        kind=kind,
        params=built,
        environment=environment or {},
        secrets=secrets,
        source=SourceLocation(
            path="app.py", module="app", function=name.replace("-", "_"), line=1
        ),
    )


def make_artifact(function: str, content_hash: str, path: Path) -> BuildArtifact:
    """Build an artifact record pointing at an arbitrary file."""
    return BuildArtifact(
        function=function,
        content_hash=content_hash,
        size=0,
        platform="python3.12",
        path=path,
        handler="skiff_handler.handle",
    )


@pytest.fixture
def declaration_factory() -> Callable[..., WorkloadDeclaration]:
    return make_declaration


@pytest.fixture
def artifact_factory(tmp_path: Path) -> Callable[[str, str], BuildArtifact]:
    """Artifacts whose path is a placeholder file below tmp_path."""
    placeholder = tmp_path / "artifact.zip"
    placeholder.write_bytes(b"")

    def _make(function: str, content_hash: str) -> BuildArtifact:
        return make_artifact(function, content_hash, placeholder)

    return _make
