"""Diff engine: deployed state + resource model -> ordered changeset."""

from skiff.diff.engine import DiffEngine, compute_changeset

__all__ = ["DiffEngine", "compute_changeset"]
