"""Declaration extraction from project source.

The extractor parses every Python file below the source root with ``ast``,
finds module-level functions decorated with ``skiff.endpoint``,
``skiff.worker`` or ``skiff.cron`` and turns the literal decorator
arguments into WorkloadDeclaration records. User code is never imported
or executed.

All violations found in one pass are collected and raised together.
"""

from __future__ import annotations

import ast
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from skiff.config.validator import pydantic_violations
from skiff.discovery.rules import check_workload_name, rules_for
from skiff.lib.errors import ValidationError, Violation
from skiff.lib.logging_config import get_logger
from skiff.models.workload import (
    CronParams,
    EndpointParams,
    SourceLocation,
    WorkerParams,
    WorkloadDeclaration,
    WorkloadKind,
)

logger = get_logger(__name__)

SKIFF_MODULES = frozenset({"skiff", "skiff.workloads"})
DECORATOR_NAMES = {kind.value: kind for kind in WorkloadKind}

# Directories never scanned for workloads
SKIPPED_DIRS = frozenset(
    {"__pycache__", "node_modules", "venv", "site-packages", "build", "dist"}
)

_NAME_FOLD = re.compile(r"[^a-z0-9]+")


def iter_source_files(root: Path) -> Iterator[Path]:
    """Yield Python files under the source root in a stable order."""
    for path in sorted(root.rglob("*.py")):
        relative = path.relative_to(root).parts[:-1]
        if any(part.startswith(".") or part in SKIPPED_DIRS for part in relative):
            continue
        yield path


def module_parts_for_path(path: Path, root: Path) -> tuple[str, ...]:
    """Return dotted module parts of a file relative to the source root."""
    parts = list(path.relative_to(root).parts)
    if parts[-1] == "__init__.py":
        parts = parts[:-1]
    else:
        parts[-1] = parts[-1].removesuffix(".py")
    return tuple(parts)


def derive_workload_name(relative_path: str, function: str) -> str:
    """Derive the default workload name from source location.

    ``handlers/greet.py`` + ``say_hello`` -> ``handlers-greet-say-hello``.
    """
    stem = relative_path.removesuffix(".py")
    if stem.endswith("/__init__") or stem == "__init__":
        stem = stem.removesuffix("__init__").rstrip("/")
    raw = f"{stem}/{function}" if stem else function
    return _NAME_FOLD.sub("-", raw.lower()).strip("-")


@dataclass
class ImportBindings:
    """Names in a module that refer to skiff decorators or modules."""

    decorators: dict[str, WorkloadKind] = field(default_factory=dict)
    modules: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_tree(cls, tree: ast.Module) -> ImportBindings:
        bindings = cls()
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    if alias.name.split(".")[0] != "skiff":
                        continue
                    if alias.asname:
                        bindings.modules[alias.asname] = alias.name
                    else:
                        # `import skiff.workloads` binds `skiff`
                        bindings.modules["skiff"] = "skiff"
            elif isinstance(node, ast.ImportFrom) and not node.level:
                if node.module in SKIFF_MODULES:
                    for alias in node.names:
                        local = alias.asname or alias.name
                        if alias.name in DECORATOR_NAMES:
                            bindings.decorators[local] = DECORATOR_NAMES[alias.name]
                        elif alias.name == "workloads" and node.module == "skiff":
                            bindings.modules[local] = "skiff.workloads"
        return bindings

    def resolve(self, node: ast.expr) -> WorkloadKind | None:
        """Return the workload kind a decorator expression refers to."""
        if isinstance(node, ast.Call):
            node = node.func

        if isinstance(node, ast.Name):
            return self.decorators.get(node.id)

        chain: list[str] = []
        while isinstance(node, ast.Attribute):
            chain.append(node.attr)
            node = node.value
        if not isinstance(node, ast.Name) or node.id not in self.modules:
            return None

        chain.reverse()
        *module_path, attr = chain
        module = ".".join([self.modules[node.id], *module_path])
        if module in SKIFF_MODULES and attr in DECORATOR_NAMES:
            return DECORATOR_NAMES[attr]
        return None


class DeclarationExtractor:
    """Extracts workload declarations from a source tree.

    Example:
        >>> extractor = DeclarationExtractor(Path("src"))
        >>> declarations = extractor.extract()
    """

    def __init__(self, source_root: Path) -> None:
        self.source_root = source_root
        self._violations: list[Violation] = []

    def extract(self) -> list[WorkloadDeclaration]:
        """Scan the source tree and return every declaration.

        Returns:
            Declarations ordered by file path and line

        Raises:
            ValidationError: With every violation found in the tree
        """
        self._violations = []
        declarations: list[WorkloadDeclaration] = []

        for path in iter_source_files(self.source_root):
            declarations.extend(self._extract_file(path))

        self._check_unique_names(declarations)

        if self._violations:
            raise ValidationError(self._violations)

        logger.debug(
            f"Discovered {len(declarations)} workload(s) in {self.source_root}"
        )
        return declarations

    def _violation(self, location: str, rule: str, message: str) -> None:
        self._violations.append(
            Violation(location=location, rule=rule, message=message)
        )

    def _extract_file(self, path: Path) -> list[WorkloadDeclaration]:
        relative = path.relative_to(self.source_root).as_posix()

        try:
            source = path.read_text(encoding="utf-8")
            tree = ast.parse(source, filename=relative)
        except SyntaxError as exc:
            self._violation(
                f"{relative}:{exc.lineno or 0}",
                "syntax",
                f"Cannot parse file: {exc.msg}",
            )
            return []
        except (OSError, UnicodeDecodeError) as exc:
            self._violation(relative, "read", f"Cannot read file: {exc}")
            return []

        bindings = ImportBindings.from_tree(tree)
        if not bindings.decorators and not bindings.modules:
            return []

        module = ".".join(module_parts_for_path(path, self.source_root))
        declarations: list[WorkloadDeclaration] = []
        top_level: set[int] = set()

        for node in tree.body:
            if not isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                continue
            top_level.add(id(node))
            declaration = self._extract_function(node, bindings, relative, module)
            if declaration is not None:
                declarations.append(declaration)

        # Decorated functions that are not module-level cannot be deployed
        for node in ast.walk(tree):
            if (
                isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
                and id(node) not in top_level
                and self._workload_decorators(node, bindings)
            ):
                self._violation(
                    f"{relative}:{node.lineno} ({node.name})",
                    "top-level",
                    "Workloads must be module-level functions",
                )

        return declarations

    @staticmethod
    def _workload_decorators(
        node: ast.FunctionDef | ast.AsyncFunctionDef, bindings: ImportBindings
    ) -> list[tuple[ast.expr, WorkloadKind]]:
        found = []
        for decorator in node.decorator_list:
            kind = bindings.resolve(decorator)
            if kind is not None:
                found.append((decorator, kind))
        return found

    def _extract_function(
        self,
        node: ast.FunctionDef | ast.AsyncFunctionDef,
        bindings: ImportBindings,
        relative: str,
        module: str,
    ) -> WorkloadDeclaration | None:
        decorators = self._workload_decorators(node, bindings)
        if not decorators:
            return None

        location = f"{relative}:{node.lineno} ({node.name})"
        if len(decorators) > 1:
            self._violation(
                location,
                "single-kind",
                "A function can carry only one workload decorator",
            )
            return None
        if isinstance(node, ast.AsyncFunctionDef):
            self._violation(
                location, "sync", "Workloads must be plain (non-async) functions"
            )
            return None

        decorator, kind = decorators[0]
        options = self._read_options(decorator, kind, location)
        if options is None:
            return None

        explicit_name = options.pop("name")
        name = explicit_name or derive_workload_name(relative, node.name)
        if explicit_name is None:
            error = check_workload_name(name)
            if error:
                self._violation(
                    location,
                    "name",
                    f"Derived name {error}; pass name=... to the decorator",
                )
                return None

        environment = options.pop("environment")
        secrets = tuple(options.pop("secrets"))
        if kind == WorkloadKind.WORKER and options.get("queue_alias") is None:
            options["queue_alias"] = name

        try:
            return WorkloadDeclaration(
                name=name,
                kind=kind,
                params=_build_params(kind, options),
                environment=environment,
                secrets=secrets,
                source=SourceLocation(
                    path=relative, module=module, function=node.name, line=node.lineno
                ),
            )
        except PydanticValidationError as exc:
            self._violations.extend(pydantic_violations(exc, location))
            return None

    def _read_options(
        self, decorator: ast.expr, kind: WorkloadKind, location: str
    ) -> dict[str, Any] | None:
        """Evaluate literal decorator keywords and apply the kind's rules."""
        rules = rules_for(kind)
        values: dict[str, Any] = {}
        ok = True

        if isinstance(decorator, ast.Call):
            if decorator.args:
                self._violation(
                    location,
                    "keywords",
                    "Decorator arguments must be passed by keyword",
                )
                ok = False
            for keyword in decorator.keywords:
                if keyword.arg is None:
                    self._violation(
                        location, "literal", "'**' arguments are not supported"
                    )
                    ok = False
                    continue
                if keyword.arg not in rules:
                    self._violation(
                        location,
                        "unknown-parameter",
                        f"'{keyword.arg}' is not a {kind.value} parameter",
                    )
                    ok = False
                    continue
                value = self._literal(keyword.value, keyword.arg, location)
                if value is _INVALID:
                    ok = False
                    continue
                values[keyword.arg] = value

        for keyword, rule in rules.items():
            if keyword not in values or values[keyword] is None:
                if rule.required:
                    self._violation(
                        location, keyword, f"'{keyword}' is required for {kind.value}"
                    )
                    ok = False
                values[keyword] = rule.default
                continue
            error = rule.check(values[keyword])
            if error:
                self._violation(location, keyword, f"{keyword} {error}")
                ok = False

        return values if ok else None

    def _literal(self, node: ast.expr, keyword: str, location: str) -> Any:
        if isinstance(node, ast.Dict):
            # A dict literal silently collapses duplicate keys
            keys = [k.value for k in node.keys if isinstance(k, ast.Constant)]
            duplicates = sorted({k for k in keys if keys.count(k) > 1}, key=str)
            if duplicates:
                self._violation(
                    location,
                    "duplicate-key",
                    f"{keyword} declares {', '.join(map(str, duplicates))} "
                    "more than once",
                )
                return _INVALID
        try:
            return ast.literal_eval(node)
        except (ValueError, TypeError, SyntaxError, MemoryError, RecursionError):
            self._violation(
                location, "literal", f"{keyword} must be a literal value"
            )
            return _INVALID

    def _check_unique_names(self, declarations: list[WorkloadDeclaration]) -> None:
        seen: dict[str, WorkloadDeclaration] = {}
        for declaration in declarations:
            first = seen.get(declaration.name)
            if first is None:
                seen[declaration.name] = declaration
                continue
            self._violation(
                str(declaration.source),
                "unique-name",
                f"Workload name '{declaration.name}' is already used by {first.source}",
            )


_INVALID = object()


def _build_params(
    kind: WorkloadKind, options: dict[str, Any]
) -> EndpointParams | WorkerParams | CronParams:
    if kind == WorkloadKind.ENDPOINT:
        return EndpointParams(
            url_path=options["url_path"], queues=tuple(options["queues"])
        )
    if kind == WorkloadKind.WORKER:
        return WorkerParams(
            concurrency=options["concurrency"],
            fifo=options["fifo"],
            queue_alias=options["queue_alias"],
        )
    return CronParams(schedule=options["schedule"])


def extract_declarations(source_root: Path) -> list[WorkloadDeclaration]:
    """Convenience wrapper around DeclarationExtractor."""
    return DeclarationExtractor(source_root).extract()
