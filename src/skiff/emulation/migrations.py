"""SQL schema migrations for the local database."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from skiff.lib.errors import EmulationError
from skiff.lib.logging_config import get_logger

logger = get_logger(__name__)

MIGRATIONS_TABLE = "schema_migrations"


def discover_migrations(directory: Path) -> list[Path]:
    """Return ``*.sql`` files of a directory in filename order."""
    if not directory.is_dir():
        return []
    return sorted(
        (p for p in directory.glob("*.sql") if p.is_file()), key=lambda p: p.name
    )


def applied_migrations(connection: sqlite3.Connection) -> list[str]:
    """Return names of migrations already recorded in the database."""
    connection.execute(
        f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} "
        "(name TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    rows = connection.execute(
        f"SELECT name FROM {MIGRATIONS_TABLE} ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows]


def apply_migrations(
    connection: sqlite3.Connection, directory: Path, *, function: str
) -> list[str]:
    """Apply pending migrations in filename order.

    Args:
        connection: Open connection to the local database
        directory: Directory holding ``*.sql`` files
        function: Invoked workload, for error reporting

    Returns:
        Names of the migrations applied by this call

    Raises:
        EmulationError: If the directory is missing or a migration fails
    """
    if not directory.is_dir():
        raise EmulationError(
            function, f"Migrations directory not found: {directory}"
        )

    try:
        done = set(applied_migrations(connection))
    except sqlite3.Error as exc:
        raise EmulationError(function, f"Cannot read migration table: {exc}") from exc

    applied: list[str] = []
    for path in discover_migrations(directory):
        if path.name in done:
            continue
        try:
            script = path.read_text(encoding="utf-8")
            connection.executescript(script)
            connection.execute(
                f"INSERT INTO {MIGRATIONS_TABLE} (name, applied_at) VALUES (?, ?)",
                (path.name, datetime.now(timezone.utc).isoformat()),
            )
            connection.commit()
        except (OSError, sqlite3.Error) as exc:
            connection.rollback()
            raise EmulationError(
                function, f"Migration {path.name} failed: {exc}"
            ) from exc
        logger.debug(f"Applied migration {path.name}")
        applied.append(path.name)

    return applied
