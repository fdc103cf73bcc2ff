"""In-process invocation of a built workload.

The workload's bundle is unpacked into a temporary directory and its
generated handler is imported from there, so local runs exercise the same
code that would be deployed. Backing services are local stand-ins created
per invocation and only when asked for.
"""

from __future__ import annotations

import importlib
import json
import sys
import tempfile
import threading
import time
import traceback
import zipfile
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from pathlib import Path
from types import ModuleType
from typing import Any

from skiff.build.templates import HANDLER_MODULE
from skiff.emulation.migrations import apply_migrations
from skiff.emulation.services import LocalKvStore, LocalQueue, LocalSqlDatabase
from skiff.lib.errors import EmulationError
from skiff.lib.logging_config import get_logger
from skiff.models.artifact import BuildArtifact
from skiff.models.manifest import DatabaseEngine
from skiff.models.resources import ResourceModel
from skiff.models.workload import EndpointParams, WorkloadDeclaration, WorkloadKind
from skiff.runtime import RuntimeConfig

logger = get_logger(__name__)

DEFAULT_TIMEOUT = 30.0

# sys.path and sys.modules are process-wide
_IMPORT_LOCK = threading.Lock()


@dataclass
class InvocationResult:
    """Outcome of one local invocation.

    Attributes:
        function: Invoked workload
        kind: Workload kind
        value: Value returned by the workload
        error: Exception raised by the workload, formatted
        traceback: Traceback of the exception, if any
        duration: Wall time in seconds
        database_url: Connection string of the emulated database, if any
        migrations: Migrations applied before the invocation
        enqueued: Messages sent to emulated queues, keyed by alias
    """

    function: str
    kind: WorkloadKind
    value: Any = None
    error: str | None = None
    traceback: str | None = None
    duration: float = 0.0
    database_url: str | None = None
    migrations: list[str] = field(default_factory=list)
    enqueued: dict[str, list[str]] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "function": self.function,
            "kind": self.kind.value,
            "ok": self.ok,
            "value": self.value,
            "error": self.error,
            "duration": round(self.duration, 3),
            "database_url": self.database_url,
            "migrations": self.migrations,
            "enqueued": self.enqueued,
        }


def build_event(
    declaration: WorkloadDeclaration,
    *,
    payload: str | None = None,
    headers: Mapping[str, str] | None = None,
    url_path: str | None = None,
    method: str = "POST",
) -> dict[str, Any]:
    """Build the platform event a workload's handler receives."""
    if declaration.kind == WorkloadKind.ENDPOINT:
        params = declaration.params
        default_path = params.url_path if isinstance(params, EndpointParams) else "/"
        return {
            "body": payload or "",
            "headers": dict(headers or {}),
            "path": url_path or default_path,
            "method": method,
        }
    if declaration.kind == WorkloadKind.WORKER:
        # A local invoke delivers the payload exactly once
        return {
            "records": [
                {
                    "body": payload or "",
                    "message_id": "local-0",
                    "attributes": dict(headers or {}),
                }
            ]
        }
    return {}


def _load_handler(bundle_dir: Path, function: str) -> ModuleType:
    """Import the generated handler of an unpacked bundle.

    Modules imported from the bundle are removed from ``sys.modules``
    afterwards so that bundles of different workloads do not see each
    other's code.
    """
    with _IMPORT_LOCK:
        before = set(sys.modules)
        sys.path.insert(0, str(bundle_dir))
        try:
            importlib.invalidate_caches()
            return importlib.import_module(HANDLER_MODULE)
        except Exception as exc:
            raise EmulationError(
                function, f"Cannot load bundle: {type(exc).__name__}: {exc}"
            ) from exc
        finally:
            sys.path.remove(str(bundle_dir))
            for name in set(sys.modules) - before:
                module = sys.modules.get(name)
                location = getattr(module, "__file__", None) or ""
                if location.startswith(str(bundle_dir)):
                    del sys.modules[name]


class LocalEmulationExecutor:
    """Runs workloads locally against emulated services.

    Args:
        model: Resource model of the project
        secrets: Resolved project secrets
        project_dir: Project root; default migrations live below it
        timeout: Seconds to wait for the workload before giving up
    """

    def __init__(
        self,
        model: ResourceModel,
        secrets: Mapping[str, str],
        *,
        project_dir: Path | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.model = model
        self.secrets = dict(secrets)
        self.project_dir = project_dir
        self.timeout = timeout

    def invoke(
        self,
        declaration: WorkloadDeclaration,
        artifact: BuildArtifact,
        *,
        payload: str | None = None,
        headers: Mapping[str, str] | None = None,
        url_path: str | None = None,
        method: str = "POST",
        with_db: bool = False,
        migrations: Path | None = None,
        with_queue: bool = False,
    ) -> InvocationResult:
        """Invoke a workload once and wait for it.

        Args:
            declaration: Workload to invoke
            artifact: Its built bundle
            payload: Request body (endpoint) or message body (worker)
            headers: Request headers or message attributes
            url_path: Request path override for endpoints
            method: HTTP method for endpoints
            with_db: Provide a local database
            migrations: Apply ``*.sql`` files from this directory first
                (implies ``with_db``)
            with_queue: Provide local queues for every declared worker

        Returns:
            Result value or the workload's exception

        Raises:
            EmulationError: If a service, migration or the bundle cannot be
                started, or the workload exceeds the timeout
        """
        name = declaration.name
        if artifact.function != name:
            raise EmulationError(
                name, f"Artifact was built for '{artifact.function}'"
            )
        if not artifact.path.is_file():
            raise EmulationError(name, f"Artifact not found: {artifact.path}")

        event = build_event(
            declaration,
            payload=payload,
            headers=headers,
            url_path=url_path,
            method=method,
        )
        result = InvocationResult(function=name, kind=declaration.kind)
        use_db = with_db or migrations is not None

        with tempfile.TemporaryDirectory(prefix="skiff-invoke-") as tmp:
            workdir = Path(tmp)
            bundle_dir = workdir / "bundle"
            self._unpack(artifact, bundle_dir, name)

            config = RuntimeConfig(
                function=name,
                environment=self.model.resolve_environment(declaration),
            )
            database: LocalSqlDatabase | None = None
            try:
                if use_db:
                    database = self._start_database(
                        config, result, workdir / "db", name, migrations
                    )
                queues = self._start_queues(config) if with_queue else {}

                handler = _load_handler(bundle_dir, name)
                secrets = {
                    key: self.secrets[key]
                    for key in declaration.secrets
                    if key in self.secrets
                }
                self._run(handler, event, secrets, config, result)
                result.enqueued = {
                    alias: queue.pending() for alias, queue in queues.items() if queue
                }
            finally:
                if database is not None:
                    database.close()

        logger.debug(f"Invoked {name} locally in {result.duration:.3f}s")
        return result

    @staticmethod
    def _unpack(artifact: BuildArtifact, target: Path, function: str) -> None:
        try:
            with zipfile.ZipFile(artifact.path) as bundle:
                bundle.extractall(target)
        except (OSError, zipfile.BadZipFile) as exc:
            raise EmulationError(function, f"Cannot unpack bundle: {exc}") from exc

    def _start_database(
        self,
        config: RuntimeConfig,
        result: InvocationResult,
        directory: Path,
        function: str,
        migrations: Path | None,
    ) -> LocalSqlDatabase | None:
        binding = self.model.database
        if binding is None:
            raise EmulationError(
                function, "The project declares no database to emulate"
            )

        if binding.engine == DatabaseEngine.KV:
            if migrations is not None:
                raise EmulationError(
                    function, "Migrations need a sql database, not a kv store"
                )
            store = LocalKvStore(binding.name)
            config.database = store
            config.database_url = store.url
            result.database_url = store.url
            return None

        database = LocalSqlDatabase(directory, binding.name)
        connection = database.connect()
        config.database = connection
        config.database_url = database.url
        result.database_url = database.url
        if migrations is not None:
            if not migrations.is_absolute() and self.project_dir is not None:
                migrations = self.project_dir / migrations
            try:
                result.migrations = apply_migrations(
                    connection, migrations, function=function
                )
            except EmulationError:
                database.close()
                raise
        return database

    def _start_queues(self, config: RuntimeConfig) -> dict[str, LocalQueue]:
        queues = {
            alias: LocalQueue(alias, fifo=queue.fifo)
            for alias, queue in self.model.queues.items()
        }
        config.queues = dict(queues)
        return queues

    def _run(
        self,
        handler: ModuleType,
        event: dict[str, Any],
        secrets: dict[str, str],
        config: RuntimeConfig,
        result: InvocationResult,
    ) -> None:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="skiff-invoke")
        started = time.monotonic()
        future = pool.submit(handler.handle, event, secrets, config)
        try:
            result.value = _jsonable(future.result(timeout=self.timeout))
        except FutureTimeoutError as exc:
            raise EmulationError(
                config.function, f"Timed out after {self.timeout:.0f}s"
            ) from exc
        except Exception as exc:
            result.error = f"{type(exc).__name__}: {exc}"
            result.traceback = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        finally:
            result.duration = time.monotonic() - started
            # A timed out workload keeps its thread; do not wait for it
            pool.shutdown(wait=False, cancel_futures=True)


def _jsonable(value: Any) -> Any:
    """Return the value unchanged if JSON-serializable, else its repr."""
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value

