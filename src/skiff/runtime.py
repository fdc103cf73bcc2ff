"""Objects handed to workload functions at invocation time.

Endpoints receive ``(request, secrets, config)``, workers receive
``(records, secrets, config)`` and cron jobs receive ``(secrets, config)``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Request:
    """HTTP request delivered to an endpoint."""

    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    path: str = "/"
    method: str = "POST"

    def json(self) -> Any:
        """Decode the body as JSON (None for an empty body)."""
        if not self.body:
            return None
        return json.loads(self.body)

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default


@dataclass(frozen=True)
class Response:
    """Explicit HTTP response an endpoint may return instead of a plain value."""

    status: int = 200
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class QueueRecord:
    """One message delivered to a worker."""

    body: str
    message_id: str = "local-0"
    attributes: dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        """Decode the message body as JSON."""
        return json.loads(self.body)


@dataclass
class RuntimeConfig:
    """Environment and resource handles available to a running workload.

    Attributes:
        function: Name of the running workload
        environment: Resolved environment variables of the workload
        database_url: Connection string of the bound database, if any
        database: Database handle (DB-API connection or key-value store)
        queues: Queue handles keyed by alias
    """

    function: str
    environment: dict[str, str] = field(default_factory=dict)
    database_url: str | None = None
    database: Any = None
    queues: dict[str, Any] = field(default_factory=dict)

    def queue(self, alias: str) -> Any:
        """Return the queue bound under an alias.

        Raises:
            KeyError: If no queue is bound under the alias
        """
        try:
            return self.queues[alias]
        except KeyError:
            raise KeyError(
                f"Queue '{alias}' is not available to '{self.function}'"
            ) from None
