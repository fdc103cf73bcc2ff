"""Content-hash cache shared by concurrent builds.

Maps a fingerprint of a build unit's inputs to the hash of the bundle it
produced. Lookups are safe from any thread; writers take a per-key lock so
that at most one build produces the artifact for a given fingerprint.
"""

from __future__ import annotations

import hashlib
import json
import os
import threading
from collections.abc import Iterable
from pathlib import Path

from skiff.lib.errors import BuildError
from skiff.lib.logging_config import get_logger

logger = get_logger(__name__)

CACHE_VERSION = "1"


def sha256_hex(data: bytes) -> str:
    """Hex sha256 digest of bytes."""
    return hashlib.sha256(data).hexdigest()


def fingerprint_inputs(parts: Iterable[tuple[str, bytes]]) -> str:
    """Fingerprint named input blobs independent of iteration order."""
    digest = hashlib.sha256()
    for name, data in sorted(parts, key=lambda item: item[0]):
        digest.update(name.encode("utf-8"))
        digest.update(b"\0")
        digest.update(hashlib.sha256(data).digest())
    return f"sha256:{digest.hexdigest()}"


class ContentHashCache:
    """Persistent fingerprint -> artifact hash mapping.

    Attributes:
        path: JSON file backing the cache
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._entries: dict[str, str] = {}
        self._guard = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._dirty = False
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            # A broken cache only costs a rebuild
            logger.warning(f"Ignoring unreadable build cache {self.path}: {exc}")
            return
        if data.get("version") != CACHE_VERSION:
            logger.debug(f"Build cache version mismatch in {self.path}, starting fresh")
            return
        self._entries = dict(data.get("entries", {}))

    def lock_for(self, key: str) -> threading.Lock:
        """Return the writer lock of a fingerprint."""
        with self._guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            return lock

    def get(self, key: str) -> str | None:
        """Return the artifact hash stored for a fingerprint."""
        with self._guard:
            return self._entries.get(key)

    def put(self, key: str, artifact_hash: str) -> None:
        """Record the artifact hash produced for a fingerprint."""
        with self._guard:
            if self._entries.get(key) != artifact_hash:
                self._entries[key] = artifact_hash
                self._dirty = True

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def save(self) -> None:
        """Persist the cache when it changed.

        Raises:
            BuildError: If the cache file cannot be written
        """
        with self._guard:
            if not self._dirty:
                return
            payload = json.dumps(
                {"version": CACHE_VERSION, "entries": self._entries},
                indent=2,
                sort_keys=True,
            )
            self._dirty = False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(payload, encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as exc:
            raise BuildError(
                function="*", message=f"Failed to write build cache {self.path}: {exc}"
            ) from exc
