"""Concurrent build of every workload in a project."""

from __future__ import annotations

from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from skiff.build.filehash import ContentHashCache
from skiff.build.unit import BuildUnit
from skiff.config.defaults import default_build_workers, default_platform
from skiff.lib.errors import BuildError
from skiff.lib.logging_config import get_logger
from skiff.models.artifact import BuildArtifact
from skiff.models.workload import WorkloadDeclaration

logger = get_logger(__name__)

CACHE_FILENAME = "checksums.json"


@dataclass
class PipelineResult:
    """Per-function outcome of a pipeline run.

    Attributes:
        artifacts: Successful builds keyed by workload name
        errors: Build errors keyed by workload name
    """

    artifacts: dict[str, BuildArtifact] = field(default_factory=dict)
    errors: dict[str, BuildError] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return sorted(self.artifacts)

    @property
    def failed(self) -> list[str]:
        return sorted(self.errors)

    @property
    def is_partial(self) -> bool:
        """True when some, but not all, functions built."""
        return bool(self.artifacts) and bool(self.errors)

    @property
    def ok(self) -> bool:
        return not self.errors

    def manifest(self) -> dict[str, str]:
        """Function name -> artifact hash, or the error for failed builds."""
        report = {name: a.content_hash for name, a in self.artifacts.items()}
        report.update({name: f"error: {e.message}" for name, e in self.errors.items()})
        return dict(sorted(report.items()))


class BuildPipeline:
    """Builds workloads in a bounded thread pool.

    A failing build never stops the others; every unit reports its own
    result.
    """

    def __init__(
        self,
        source_root: Path,
        build_dir: Path,
        *,
        workers: int | None = None,
        platform: str | None = None,
    ) -> None:
        self.source_root = source_root
        self.build_dir = build_dir
        self.workers = workers or default_build_workers()
        self.platform = platform or default_platform()
        self.cache = ContentHashCache(build_dir / CACHE_FILENAME)

    @property
    def artifacts_dir(self) -> Path:
        return self.build_dir / "artifacts"

    def build(self, declarations: Iterable[WorkloadDeclaration]) -> PipelineResult:
        """Build every declaration and collect per-function results."""
        units = [
            BuildUnit(
                declaration,
                self.source_root,
                artifacts_dir=self.artifacts_dir,
                platform=self.platform,
                cache=self.cache,
            )
            for declaration in declarations
        ]
        result = PipelineResult()
        if not units:
            return result

        logger.info(f"Building {len(units)} function(s) with {self.workers} worker(s)")
        with ThreadPoolExecutor(
            max_workers=min(self.workers, len(units)), thread_name_prefix="skiff-build"
        ) as pool:
            futures = {pool.submit(unit.build): unit for unit in units}
            for future in as_completed(futures):
                unit = futures[future]
                try:
                    result.artifacts[unit.name] = future.result()
                except BuildError as exc:
                    logger.warning(f"Build failed for {unit.name}: {exc.message}")
                    result.errors[unit.name] = exc
                except Exception as exc:  # noqa: BLE001
                    logger.exception(f"Unexpected build failure for {unit.name}")
                    result.errors[unit.name] = BuildError(unit.name, str(exc))

        self.cache.save()
        return result
