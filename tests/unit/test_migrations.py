"""Tests for the schema migration runner."""

import sqlite3

import pytest

from tabletop_suggest.errors import MigrationError
from tabletop_suggest.migrations import (
    get_current_version,
    get_migration_files,
    pending_migrations,
    run_migrations,
)


def table_names(db_path):
    conn = sqlite3.connect(db_path)
    try:
        return {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        conn.close()


class TestMigrations:
    """Tests for run_migrations()."""

    def test_creates_tables(self, tmp_path):
        db_path = tmp_path / "fresh.db"
        applied = run_migrations(db_path, verbose=False)

        assert applied == [version for version, _ in get_migration_files()]
        assert {"suggestions", "suggestion_events", "schema_migrations"} <= table_names(db_path)

    def test_idempotent(self, db_path):
        assert run_migrations(db_path, verbose=False) == []

    def test_current_version(self, db_path, tmp_path):
        assert get_current_version(db_path) == get_migration_files()[-1][0]
        assert get_current_version(tmp_path / "missing.db") == 0

    def test_files_are_ordered(self):
        versions = [version for version, _ in get_migration_files()]
        assert versions == sorted(versions)
        assert versions[0] == 1

    def test_check_constraints(self, db_path):
        conn = sqlite3.connect(db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError):
                conn.execute(
                    """
                    INSERT INTO suggestions
                        (scope_key, kind, id, name, original_name, type, manufacturer, game,
                         first_seen, last_used)
                    VALUES ('gw_40k', 'armies', 'orks', 'orks', 'Orks', 'faction', 'gw', '40k',
                            '2025-01-01', '2025-01-01')
                    """
                )
        finally:
            conn.close()


class TestMigrationFiles:
    """Tests for custom migration directories."""

    @pytest.fixture
    def migrations_dir(self, tmp_path):
        directory = tmp_path / "migrations"
        directory.mkdir()
        (directory / "0001_widgets.sql").write_text(
            "CREATE TABLE widgets (id INTEGER PRIMARY KEY);"
        )
        return directory

    def test_failed_migration_rolls_back(self, tmp_path, migrations_dir):
        """Should leave the database at the last good version."""
        (migrations_dir / "0002_broken.sql").write_text(
            "CREATE TABLE gadgets (id INTEGER PRIMARY KEY);\nINSERT INTO missing_table VALUES (1);"
        )
        db_path = tmp_path / "custom.db"

        with pytest.raises(MigrationError, match="0002_broken.sql"):
            run_migrations(db_path, verbose=False, directory=migrations_dir)

        assert get_current_version(db_path) == 1
        assert "widgets" in table_names(db_path)
        assert "gadgets" not in table_names(db_path)
        assert pending_migrations(db_path, migrations_dir) == [2]

    def test_duplicate_version(self, migrations_dir):
        (migrations_dir / "0001_other.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="used twice"):
            get_migration_files(migrations_dir)

    def test_misnamed_file(self, migrations_dir):
        (migrations_dir / "add_gadgets.sql").write_text("SELECT 1;")
        with pytest.raises(MigrationError, match="0001_name.sql"):
            get_migration_files(migrations_dir)

    def test_pending(self, tmp_path, migrations_dir):
        db_path = tmp_path / "custom.db"
        assert pending_migrations(db_path, migrations_dir) == [1]

        run_migrations(db_path, verbose=False, directory=migrations_dir)
        assert pending_migrations(db_path, migrations_dir) == []
