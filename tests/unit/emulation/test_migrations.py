"""Unit tests for local SQL schema migrations."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from skiff.emulation.migrations import (
    applied_migrations,
    apply_migrations,
    discover_migrations,
)
from skiff.lib.errors import EmulationError


@pytest.fixture
def connection() -> Iterator[sqlite3.Connection]:
    conn = sqlite3.connect(":memory:")
    yield conn
    conn.close()


def _write(directory: Path, files: dict[str, str]) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for name, script in files.items():
        (directory / name).write_text(script, encoding="utf-8")
    return directory


class TestDiscoverMigrations:
    """Tests for discover_migrations."""

    def test_sorted_by_filename(self, tmp_path: Path) -> None:
        directory = _write(
            tmp_path / "migrations",
            {"010_b.sql": "", "002_a.sql": "", "notes.txt": ""},
        )

        assert [p.name for p in discover_migrations(directory)] == [
            "002_a.sql",
            "010_b.sql",
        ]

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert discover_migrations(tmp_path / "nope") == []


class TestApplyMigrations:
    """Tests for apply_migrations."""

    def test_applies_in_order(
        self, tmp_path: Path, connection: sqlite3.Connection
    ) -> None:
        directory = _write(
            tmp_path / "migrations",
            {
                "001_create.sql": "CREATE TABLE items (name TEXT);",
                "002_seed.sql": "INSERT INTO items VALUES ('a');",
            },
        )

        applied = apply_migrations(connection, directory, function="api")

        assert applied == ["001_create.sql", "002_seed.sql"]
        assert connection.execute("SELECT name FROM items").fetchall() == [("a",)]
        assert applied_migrations(connection) == applied

    def test_each_migration_runs_once(
        self, tmp_path: Path, connection: sqlite3.Connection
    ) -> None:
        directory = _write(
            tmp_path / "migrations",
            {"001_create.sql": "CREATE TABLE items (name TEXT);"},
        )
        apply_migrations(connection, directory, function="api")
        _write(directory, {"002_seed.sql": "INSERT INTO items VALUES ('b');"})

        second = apply_migrations(connection, directory, function="api")
        third = apply_migrations(connection, directory, function="api")

        assert second == ["002_seed.sql"]
        assert third == []
        assert connection.execute("SELECT COUNT(*) FROM items").fetchone() == (1,)

    def test_failing_migration_stops(
        self, tmp_path: Path, connection: sqlite3.Connection
    ) -> None:
        directory = _write(
            tmp_path / "migrations",
            {
                "001_create.sql": "CREATE TABLE items (name TEXT);",
                "002_broken.sql": "INSERT INTO missing VALUES (1);",
                "003_never.sql": "CREATE TABLE later (id INTEGER);",
            },
        )

        with pytest.raises(EmulationError, match="002_broken.sql failed"):
            apply_migrations(connection, directory, function="api")

        assert applied_migrations(connection) == ["001_create.sql"]

    def test_missing_directory(
        self, tmp_path: Path, connection: sqlite3.Connection
    ) -> None:
        with pytest.raises(EmulationError) as exc_info:
            apply_migrations(connection, tmp_path / "nope", function="api")

        assert exc_info.value.function == "api"
        assert "not found" in exc_info.value.message
