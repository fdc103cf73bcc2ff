"""Workload discovery: source tree to WorkloadDeclaration records."""

from skiff.discovery.extractor import (
    DeclarationExtractor,
    derive_workload_name,
    extract_declarations,
)
from skiff.discovery.model import build_resource_model

__all__ = [
    "DeclarationExtractor",
    "build_resource_model",
    "derive_workload_name",
    "extract_declarations",
]
