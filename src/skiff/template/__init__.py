"""Template generation from a changeset and the resource model."""

from skiff.template.generator import render_template, template_hash

__all__ = ["render_template", "template_hash"]
