# GNOME Desktop Air Monitor - Schema Migrations
# Forward-only migrations stored as <version>_<slug>/{up,down}.sql

import os
import re
import sqlite3
import logging
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations')

VERSION_PATTERN = re.compile(r'^(\d+)')

SCHEMA_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY
)
"""


class MigrationError(Exception):
    """A migration could not be discovered or applied."""


def parse_version(dir_name: str) -> int:
    """
    Extract the leading integer of a migration directory name.

    Raises:
        MigrationError: If the name does not start with a number
    """
    match = VERSION_PATTERN.match(dir_name)
    if not match:
        raise MigrationError(f"Invalid migration directory name: {dir_name}")
    return int(match.group(1))


@dataclass(frozen=True)
class Migration:
    version: int
    path: str

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    def _read(self, file_name: str) -> str:
        sql_path = os.path.join(self.path, file_name)
        try:
            with open(sql_path, 'r', encoding='utf-8') as f:
                return f.read()
        except OSError as e:
            raise MigrationError(f"Failed to read {file_name} for migration {self.name}: {e}") from e

    def up_sql(self) -> str:
        return self._read('up.sql')

    def down_sql(self) -> str:
        """Reverse script. Kept for manual use, never run automatically."""
        return self._read('down.sql')


def discover_migrations(migrations_dir: str = MIGRATIONS_DIR) -> List[Migration]:
    """List migrations in *migrations_dir*, ascending by version."""
    migrations = []
    for entry in os.listdir(migrations_dir):
        path = os.path.join(migrations_dir, entry)
        if not os.path.isdir(path) or entry.startswith(('_', '.')):
            continue
        migrations.append(Migration(version=parse_version(entry), path=path))

    migrations.sort(key=lambda m: m.version)

    versions = [m.version for m in migrations]
    if len(versions) != len(set(versions)):
        raise MigrationError(f"Duplicate migration versions in {migrations_dir}")

    return migrations


class Migrator:
    """
    Applies pending migrations to an autocommit sqlite3 connection.

    Each migration runs in its own transaction: the version row is inserted
    first, then up.sql. A failure rolls that migration back and stops.
    """

    def __init__(self, conn: sqlite3.Connection, migrations_dir: str = MIGRATIONS_DIR):
        self.conn = conn
        self.migrations_dir = migrations_dir

    def ensure_table(self):
        self.conn.execute(SCHEMA_MIGRATIONS_TABLE)

    def current_version(self) -> int:
        row = self.conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
        return row[0] if row and row[0] is not None else 0

    def pending(self, current: int) -> List[Migration]:
        return [m for m in discover_migrations(self.migrations_dir) if m.version > current]

    def migrate(self) -> int:
        """
        Bring the schema up to date.

        Returns:
            Schema version after migrating

        Raises:
            MigrationError: If any migration fails
        """
        self.ensure_table()
        current = self.current_version()
        pending = self.pending(current)

        if not pending:
            logger.debug(f"[DB] Schema up to date at version {current}")
            return current

        for migration in pending:
            self._apply(migration)
            current = migration.version

        logger.info(f"[DB] Schema migrated to version {current}")
        return current

    def _apply(self, migration: Migration):
        up_sql = migration.up_sql().strip()
        if up_sql and not up_sql.endswith(';'):
            up_sql += ';'

        script = (
            "BEGIN;\n"
            f"INSERT INTO schema_migrations (version) VALUES ({int(migration.version)});\n"
            f"{up_sql}\n"
            "COMMIT;"
        )

        logger.info(f"[DB] Applying migration {migration.name}")
        try:
            self.conn.executescript(script)
        except sqlite3.Error as e:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise MigrationError(f"Failed to apply migration {migration.version}: {e}") from e
