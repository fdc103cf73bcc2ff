"""Local import closure of a workload module.

Starting from the module defining a workload, follow every absolute and
relative import that resolves to a file under the source root. Imports of
third-party or standard-library modules are not followed.
"""

from __future__ import annotations

import ast
from pathlib import Path

from skiff.lib.errors import BuildError


def module_file(root: Path, parts: tuple[str, ...]) -> Path | None:
    """Return the file implementing a module under the root, if any."""
    if not parts:
        return None
    base = root.joinpath(*parts)
    candidate = base.with_name(base.name + ".py")
    if candidate.is_file():
        return candidate
    package = base / "__init__.py"
    if package.is_file():
        return package
    return None


def package_parts_for_path(path: Path, root: Path) -> tuple[str, ...]:
    """Package containing a file, used to resolve relative imports."""
    parts = path.relative_to(root).parts
    return tuple(parts[:-1])


def resolve_relative_base(
    package_parts: tuple[str, ...], level: int
) -> tuple[str, ...]:
    if level <= 0:
        return package_parts
    cutoff = max(len(package_parts) - (level - 1), 0)
    return package_parts[:cutoff]


def imported_modules(tree: ast.Module, path: Path, root: Path) -> list[tuple[str, ...]]:
    """Candidate module parts imported by a parsed file."""
    package_parts = package_parts_for_path(path, root)
    targets: list[tuple[str, ...]] = []

    for node in ast.walk(tree):
        if isinstance(node, ast.Import):
            for alias in node.names:
                targets.append(tuple(alias.name.split(".")))
        elif isinstance(node, ast.ImportFrom):
            if node.level:
                base = resolve_relative_base(package_parts, node.level)
            else:
                base = ()
            module = base + tuple(node.module.split(".")) if node.module else base
            targets.append(module)
            # `from pkg import submodule`
            for alias in node.names:
                if alias.name != "*":
                    targets.append(module + (alias.name,))
    return targets


def resolve_closure(root: Path, entry: Path) -> list[Path]:
    """Resolve the files a workload module needs, relative to the root.

    Parent package ``__init__.py`` files of every collected module are
    included so the bundle imports the same way the project does.

    Args:
        root: Source root
        entry: File defining the workload

    Returns:
        Sorted list of files (absolute paths) in the closure

    Raises:
        BuildError: If a file in the closure cannot be read or parsed
    """
    seen: set[Path] = set()
    pending = [entry.resolve()]
    root = root.resolve()

    while pending:
        path = pending.pop()
        if path in seen:
            continue
        seen.add(path)

        # Parent packages
        parent = path.parent
        while parent != root and root in parent.parents:
            init = parent / "__init__.py"
            if init.is_file() and init not in seen:
                pending.append(init)
            parent = parent.parent

        relative = path.relative_to(root).as_posix()
        try:
            tree = ast.parse(path.read_text(encoding="utf-8"), filename=relative)
        except SyntaxError as exc:
            raise BuildError(
                function=relative,
                message=f"Syntax error at {relative}:{exc.lineno}: {exc.msg}",
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise BuildError(
                function=relative, message=f"Cannot read {relative}: {exc}"
            ) from exc

        for parts in imported_modules(tree, path, root):
            target = module_file(root, parts)
            if target is not None and target.resolve() not in seen:
                pending.append(target.resolve())

    return sorted(seen)
