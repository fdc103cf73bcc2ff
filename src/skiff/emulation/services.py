"""Local stand-ins for the backing services of a workload.

Each invocation gets its own instances; nothing is shared between
invocations unless the caller passes the same object twice.
"""

from __future__ import annotations

import sqlite3
import threading
from collections import deque
from pathlib import Path
from types import TracebackType
from typing import Any

from skiff.lib.errors import EmulationError
from skiff.lib.logging_config import get_logger
from skiff.runtime import QueueRecord

logger = get_logger(__name__)


class LocalSqlDatabase:
    """SQLite database file standing in for the project's SQL database.

    Attributes:
        name: Database name from the manifest
        path: Location of the SQLite file
    """

    def __init__(self, directory: Path, name: str) -> None:
        self.name = name
        self.path = directory / f"{name}.sqlite3"
        self._connection: sqlite3.Connection | None = None

    @property
    def url(self) -> str:
        return f"sqlite:///{self.path}"

    def connect(self) -> sqlite3.Connection:
        """Open (once) and return the DB-API connection."""
        if self._connection is None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                # The workload runs on a worker thread
                self._connection = sqlite3.connect(
                    self.path, check_same_thread=False
                )
            except (OSError, sqlite3.Error) as exc:
                raise EmulationError(
                    self.name, f"Cannot start local database: {exc}"
                ) from exc
            logger.debug(f"Started local database {self.url}")
        return self._connection

    def close(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def __enter__(self) -> LocalSqlDatabase:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class LocalKvStore:
    """In-memory key-value store standing in for a record store."""

    def __init__(self, name: str = "kv") -> None:
        self.name = name
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return f"memory://{self.name}"

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(key, default)

    def put(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        """Remove a key; return whether it existed."""
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._data)

    def __len__(self) -> int:
        return len(self._data)


class LocalQueue:
    """In-memory FIFO queue.

    Messages are delivered at most once; there is no visibility timeout,
    retry or dead-letter handling.
    """

    def __init__(self, alias: str, fifo: bool = False) -> None:
        self.alias = alias
        self.fifo = fifo
        self._messages: deque[QueueRecord] = deque()
        self._sent = 0
        self._lock = threading.Lock()

    def send(self, body: str, attributes: dict[str, str] | None = None) -> str:
        """Enqueue a message and return its id."""
        with self._lock:
            message_id = f"{self.alias}-{self._sent}"
            self._sent += 1
            self._messages.append(
                QueueRecord(
                    body=body,
                    message_id=message_id,
                    attributes=dict(attributes or {}),
                )
            )
        return message_id

    def receive(self, max_messages: int = 1) -> list[QueueRecord]:
        with self._lock:
            count = min(max_messages, len(self._messages))
            return [self._messages.popleft() for _ in range(count)]

    def pending(self) -> list[str]:
        """Bodies of messages not yet received, oldest first."""
        with self._lock:
            return [record.body for record in self._messages]

    def __len__(self) -> int:
        return len(self._messages)
