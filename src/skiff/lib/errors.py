"""Custom exception hierarchy for skiff discovery, build and deployment."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

# Process exit codes used by the CLI
EXIT_VALIDATION = 2
EXIT_BUILD = 3
EXIT_DEPLOY = 4
EXIT_TIMEOUT = 5
EXIT_EMULATION = 6


class SkiffError(Exception):
    """Base exception for all skiff errors.

    All skiff-specific exceptions inherit from this class, enabling
    centralized exception handling and exit code mapping in the CLI.
    """

    exit_code: int = EXIT_DEPLOY


class ConfigError(SkiffError):
    """Exception raised for manifest and settings errors.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    exit_code = EXIT_VALIDATION

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


@dataclass(frozen=True)
class Violation:
    """A single broken rule found while validating declarations."""

    location: str
    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: [{self.rule}] {self.message}"


class ValidationError(SkiffError):
    """Exception raised when declarations or the manifest are invalid.

    Collects every violation found in one pass so that all of them can be
    reported together.

    Attributes:
        violations: All violations, in discovery order
    """

    exit_code = EXIT_VALIDATION

    def __init__(self, violations: Iterable[Violation]) -> None:
        """Initialize ValidationError with the collected violations.

        Args:
            violations: Violations found during validation (at least one)
        """
        self.violations = list(violations)
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(
            f"Validation failed with {len(self.violations)} error(s):\n{lines}"
        )

    @classmethod
    def single(cls, location: str, rule: str, message: str) -> ValidationError:
        """Build a ValidationError carrying exactly one violation."""
        return cls([Violation(location=location, rule=rule, message=message)])


class BuildError(SkiffError):
    """Exception raised when a single function fails to build.

    Attributes:
        function: Name of the workload whose build failed
        message: Human-readable error message
    """

    exit_code = EXIT_BUILD

    def __init__(self, function: str, message: str) -> None:
        """Create a build error scoped to one function."""
        self.function = function
        self.message = message
        super().__init__(f"Build of '{function}' failed: {message}")


class DiffConflictError(SkiffError):
    """Desired state cannot be reconciled with the deployed state."""

    def __init__(self, target: str, message: str) -> None:
        """Create a conflict error for a resource or workload."""
        self.target = target
        self.message = message
        super().__init__(f"Cannot reconcile '{target}': {message}")


class DeploymentError(SkiffError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: Operation that failed (upload, submit, rollback, ...)
        message: Human-readable error message
    """

    def __init__(self, operation: str, message: str) -> None:
        """Create a deployment error with operation context."""
        self.operation = operation
        self.message = message
        super().__init__(f"Deployment {operation} failed: {message}")


class UploadError(DeploymentError):
    """Transient failure while uploading an artifact."""

    def __init__(self, message: str, failed: dict[str, str] | None = None) -> None:
        """Create an upload error.

        Args:
            message: Descriptive error message
            failed: Mapping of function name to failure reason, when aggregated
        """
        self.failed = failed or {}
        super().__init__(operation="upload", message=message)


class BackendError(DeploymentError):
    """The provisioning backend rejected a request or reported a failure."""

    def __init__(
        self, operation: str, message: str, diagnostic: str | None = None
    ) -> None:
        """Create a backend error carrying the backend's own diagnostic."""
        self.diagnostic = diagnostic
        full = f"{message}: {diagnostic}" if diagnostic else message
        super().__init__(operation=operation, message=full)


class DeploymentInProgressError(DeploymentError):
    """Another deployment of the same project is already in flight."""

    def __init__(self, project: str) -> None:
        """Create an in-progress error for a project."""
        self.project = project
        super().__init__(
            operation="deploy",
            message=f"A deployment of project '{project}' is already in progress",
        )


class DeploymentCancelledError(DeploymentError):
    """The user cancelled a deployment."""


class DeployTimeoutError(DeploymentError):
    """Status polling exceeded its bound; the remote outcome is unknown."""

    exit_code = EXIT_TIMEOUT

    def __init__(self, deploy_id: str, timeout: float) -> None:
        """Create a timeout error for a deployment."""
        self.deploy_id = deploy_id
        self.timeout = timeout
        super().__init__(
            operation="poll",
            message=(
                f"Deployment {deploy_id} did not finish within {timeout:.0f}s. "
                "Provisioning may still complete out-of-band; "
                "check `skiff versions` before retrying."
            ),
        )


class EmulationError(SkiffError):
    """Local invocation failed (service startup, migration or function error)."""

    exit_code = EXIT_EMULATION

    def __init__(self, function: str, message: str) -> None:
        """Create an emulation error scoped to one invocation."""
        self.function = function
        self.message = message
        super().__init__(f"Local invocation of '{function}' failed: {message}")
