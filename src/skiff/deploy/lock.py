"""Client-side lock serializing deploys of one project."""

from __future__ import annotations

import json
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from types import TracebackType

from skiff.lib.errors import DeploymentError, DeploymentInProgressError
from skiff.lib.logging_config import get_logger

logger = get_logger(__name__)

LOCK_FILENAME = "deploy.lock"


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProjectLock:
    """Exclusive lock file held for the duration of a deploy.

    Creation uses ``O_EXCL`` so two processes cannot both acquire it. A
    held lock makes the second deploy fail immediately rather than wait.
    A lock left behind by a process of this host that no longer runs is
    broken and acquired again.

    Example:
        >>> with ProjectLock(Path(".skiff/deploy.lock"), "shop"):
        ...     executor.deploy(changeset)
    """

    def __init__(self, path: Path, project: str) -> None:
        self.path = path
        self.project = project
        self._held = False

    def acquire(self) -> None:
        try:
            self._create()
        except FileExistsError as exc:
            if not self._owner_gone():
                raise DeploymentInProgressError(self.project) from exc
            logger.warning(f"Breaking deploy lock {self.path} of a dead process")
            self.path.unlink(missing_ok=True)
            try:
                self._create()
            except FileExistsError as retry_exc:
                raise DeploymentInProgressError(self.project) from retry_exc
        self._held = True
        logger.debug(f"Acquired deploy lock {self.path}")

    def _create(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise
        except OSError as exc:
            raise DeploymentError(
                operation="lock", message=f"Cannot create {self.path}: {exc}"
            ) from exc

        owner = {
            "project": self.project,
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "acquired_at": datetime.now(timezone.utc).isoformat(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(owner, handle)

    def _owner_gone(self) -> bool:
        """True only when the lock names a process of this host that exited."""
        try:
            owner = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return True
        except (OSError, ValueError):
            return False
        if not isinstance(owner, dict):
            return False
        pid = owner.get("pid")
        if not isinstance(pid, int) or owner.get("host") != socket.gethostname():
            return False
        return not _process_alive(pid)

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Deploy lock {self.path} vanished before release")

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> ProjectLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
