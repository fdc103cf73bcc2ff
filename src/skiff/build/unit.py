"""Isolated build of one workload into a deployable bundle.

A BuildUnit owns a temporary working directory for its function. It copies
the function's import closure into it, byte-compiles every file, adds the
generated handler and metadata, and archives the result into a
deterministic zip. Nothing in the working directory is shared with other
units; the only shared state is the content-hash cache.
"""

from __future__ import annotations

import io
import json
import os
import tempfile
import zipfile
from pathlib import Path

from skiff.build.closure import resolve_closure
from skiff.build.filehash import ContentHashCache, fingerprint_inputs, sha256_hex
from skiff.build.templates import HANDLER_ENTRY, HANDLER_MODULE, generate_handler
from skiff.lib.errors import BuildError
from skiff.lib.logging_config import get_logger
from skiff.models.artifact import BuildArtifact
from skiff.models.workload import WorkloadDeclaration

logger = get_logger(__name__)

METADATA_FILENAME = "skiff-metadata.json"

# Fixed zip entry attributes so identical inputs yield identical bytes
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
ZIP_FILE_MODE = 0o644


def write_deterministic_zip(files: dict[str, bytes]) -> bytes:
    """Archive files with sorted entries and fixed timestamps/permissions."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name in sorted(files):
            info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
            info.external_attr = (0o100000 | ZIP_FILE_MODE) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            info.create_system = 3
            archive.writestr(info, files[name])
    return buffer.getvalue()


class BuildUnit:
    """Builds one WorkloadDeclaration into a BuildArtifact.

    Attributes:
        declaration: Workload being built
        source_root: Project source root
        artifacts_dir: Directory where finished bundles are stored
        platform: Target platform identifier
    """

    def __init__(
        self,
        declaration: WorkloadDeclaration,
        source_root: Path,
        *,
        artifacts_dir: Path,
        platform: str,
        cache: ContentHashCache | None = None,
    ) -> None:
        self.declaration = declaration
        self.source_root = source_root.resolve()
        self.artifacts_dir = artifacts_dir
        self.platform = platform
        self.cache = cache

    @property
    def name(self) -> str:
        return self.declaration.name

    def build(self) -> BuildArtifact:
        """Produce the artifact, reusing a cached bundle for unchanged inputs.

        Raises:
            BuildError: Scoped to this function
        """
        entry = self.source_root / self.declaration.source.path
        if not entry.is_file():
            raise BuildError(self.name, f"Source file not found: {entry}")
        if not self.declaration.source.module:
            raise BuildError(
                self.name, "Workloads cannot live in the source root's __init__.py"
            )

        try:
            closure = resolve_closure(self.source_root, entry)
        except BuildError as exc:
            raise BuildError(self.name, exc.message) from exc

        sources = self._read_sources(closure)
        handler = generate_handler(self.declaration)
        metadata = self._metadata()

        files = dict(sources)
        files[f"{HANDLER_MODULE}.py"] = handler.encode("utf-8")
        files[METADATA_FILENAME] = metadata
        fingerprint = fingerprint_inputs(
            [*files.items(), ("platform", self.platform.encode("utf-8"))]
        )

        if self.cache is None:
            return self._package(files)

        with self.cache.lock_for(fingerprint):
            cached = self.cache.get(fingerprint)
            if cached is not None:
                artifact = self._existing_artifact(cached)
                if artifact is not None:
                    logger.debug(f"Reusing cached bundle for {self.name}: {cached}")
                    return artifact

            artifact = self._package(files)
            self.cache.put(fingerprint, artifact.content_hash)
            return artifact

    def _read_sources(self, closure: list[Path]) -> dict[str, bytes]:
        sources: dict[str, bytes] = {}
        for path in closure:
            relative = path.relative_to(self.source_root).as_posix()
            try:
                sources[relative] = path.read_bytes()
            except OSError as exc:
                raise BuildError(self.name, f"Cannot read {relative}: {exc}") from exc
        return sources

    def _metadata(self) -> bytes:
        declaration = self.declaration
        payload = {
            "name": declaration.name,
            "kind": declaration.kind.value,
            "handler": HANDLER_ENTRY,
            "module": declaration.source.module,
            "function": declaration.source.function,
            "platform": self.platform,
            "params": declaration.params.model_dump(mode="json"),
            "environment_keys": sorted(declaration.environment),
            "secrets": sorted(declaration.secrets),
        }
        return (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")

    def _package(self, files: dict[str, bytes]) -> BuildArtifact:
        with tempfile.TemporaryDirectory(prefix=f"skiff-build-{self.name}-") as tmp:
            workdir = Path(tmp)
            for relative, data in files.items():
                target = workdir / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(data)

            self._compile(workdir, files)
            bundle = write_deterministic_zip(
                {
                    path.relative_to(workdir).as_posix(): path.read_bytes()
                    for path in workdir.rglob("*")
                    if path.is_file()
                }
            )

        content_hash = sha256_hex(bundle)
        path = self._store(content_hash, bundle)
        logger.debug(f"Built {self.name}: {content_hash} ({len(bundle)} bytes)")
        return BuildArtifact(
            function=self.name,
            content_hash=content_hash,
            size=len(bundle),
            platform=self.platform,
            path=path,
            handler=HANDLER_ENTRY,
        )

    def _compile(self, workdir: Path, files: dict[str, bytes]) -> None:
        """Byte-compile every Python file; bytecode is not shipped."""
        for relative in sorted(files):
            if not relative.endswith(".py"):
                continue
            try:
                compile((workdir / relative).read_bytes(), relative, "exec")
            except SyntaxError as exc:
                raise BuildError(
                    self.name, f"Syntax error at {relative}:{exc.lineno}: {exc.msg}"
                ) from exc
            except ValueError as exc:
                raise BuildError(
                    self.name, f"Cannot compile {relative}: {exc}"
                ) from exc

    def _store(self, content_hash: str, bundle: bytes) -> Path:
        path = self.artifacts_dir / f"{content_hash}.zip"
        if path.exists():
            return path
        try:
            self.artifacts_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.artifacts_dir, suffix=".part")
            with os.fdopen(fd, "wb") as handle:
                handle.write(bundle)
            os.replace(tmp_name, path)
        except OSError as exc:
            raise BuildError(self.name, f"Cannot store bundle: {exc}") from exc
        return path

    def _existing_artifact(self, content_hash: str) -> BuildArtifact | None:
        path = self.artifacts_dir / f"{content_hash}.zip"
        if not path.is_file():
            return None
        return BuildArtifact(
            function=self.name,
            content_hash=content_hash,
            size=path.stat().st_size,
            platform=self.platform,
            path=path,
            handler=HANDLER_ENTRY,
        )
