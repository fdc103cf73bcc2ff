"""Build pipeline: one isolated, content-addressed bundle per workload."""

from skiff.build.filehash import ContentHashCache
from skiff.build.pipeline import BuildPipeline, PipelineResult
from skiff.build.unit import BuildUnit

__all__ = ["BuildPipeline", "BuildUnit", "ContentHashCache", "PipelineResult"]
