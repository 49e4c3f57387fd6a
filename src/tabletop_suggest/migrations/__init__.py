"""
Schema migrations for the suggestion store.

Each file named NNNN_description.sql in this directory runs once, in version
order. The file's statements and its schema_migrations row are applied in one
transaction, so a failing file leaves the database at the previous version.
"""

import logging
import re
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from ..errors import MigrationError

MIGRATIONS_DIR = Path(__file__).parent
MIGRATION_NAME = re.compile(r"^(\d{4})_\w+\.sql$")

VERSION_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    applied_ts TEXT NOT NULL
)
"""

logger = logging.getLogger(__name__)


def get_migration_files(directory: Path = MIGRATIONS_DIR) -> list[tuple[int, Path]]:
    """Numbered migration files as (version, path), lowest version first."""
    found: dict[int, Path] = {}
    for path in Path(directory).glob("*.sql"):
        match = MIGRATION_NAME.match(path.name)
        if match is None:
            raise MigrationError(f"Migration file name must look like 0001_name.sql: {path.name}")
        version = int(match.group(1))
        if version in found:
            raise MigrationError(
                f"Migration version {version} used twice: {found[version].name}, {path.name}"
            )
        found[version] = path
    return sorted(found.items())


def _applied_versions(conn: sqlite3.Connection) -> set[int]:
    try:
        return {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}
    except sqlite3.OperationalError:
        return set()


def _apply(conn: sqlite3.Connection, version: int, path: Path) -> None:
    applied_ts = datetime.now(UTC).isoformat()
    script = (
        "BEGIN;\n"
        f"{path.read_text()}\n"
        "INSERT INTO schema_migrations (version, applied_ts) "
        f"VALUES ({version:d}, '{applied_ts}');\n"
        "COMMIT;\n"
    )
    try:
        conn.executescript(script)
    except sqlite3.Error as e:
        if conn.in_transaction:
            conn.rollback()
        raise MigrationError(f"Migration {path.name} failed: {e}") from e


def pending_migrations(db_path: Path, directory: Path = MIGRATIONS_DIR) -> list[int]:
    """Versions present on disk but not yet applied to db_path."""
    db_path = Path(db_path)
    available = [version for version, _ in get_migration_files(directory)]
    if not db_path.exists():
        return available

    conn = sqlite3.connect(db_path)
    try:
        applied = _applied_versions(conn)
    finally:
        conn.close()
    return [version for version in available if version not in applied]


def run_migrations(
    db_path: Path, verbose: bool = True, directory: Path = MIGRATIONS_DIR
) -> list[int]:
    """
    Bring the suggestion database at db_path up to date.

    Creates the file and its parent directory if needed. Returns the
    versions applied by this call; raises MigrationError on the first
    file that fails.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    migrations = get_migration_files(directory)

    conn = sqlite3.connect(db_path)
    try:
        conn.execute(VERSION_TABLE)
        conn.commit()
        done = _applied_versions(conn)

        applied = []
        for version, path in migrations:
            if version in done:
                continue
            if verbose:
                logger.info(f"Applying migration {version}: {path.name}")
            _apply(conn, version, path)
            applied.append(version)
    finally:
        conn.close()

    if verbose and not applied:
        logger.info(f"Schema up to date for {db_path}")
    return applied


def get_current_version(db_path: Path) -> int:
    """Highest applied version, or 0 for a missing or empty database."""
    db_path = Path(db_path)
    if not db_path.exists():
        return 0

    conn = sqlite3.connect(db_path)
    try:
        return max(_applied_versions(conn), default=0)
    finally:
        conn.close()
